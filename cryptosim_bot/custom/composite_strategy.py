# cryptosim_bot/custom/composite_strategy.py
from typing import Dict, List, Optional, Any, Sequence
import logging
import pandas as pd

from ..core.base import Candle, Signal, StrategyResult
from .indicators import (
    CustomIndicator,
    TrendIndicator,
    MomentumIndicator,
    VolatilityIndicator,
    NEUTRAL_SCORE
)

STRATEGY_NAME = "Probability"


class CompositeProbabilityStrategy:
    """
    Weighted composite of trend (EMA 9/21), momentum (RSI 9) and volatility
    (Bollinger 20) scores, each on a 0-100 scale.

    BUY at or above `buy_threshold`, SELL at or below `sell_threshold`. The
    band between them is wider on the buy side so exits trigger before new
    entries do.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.logger = logging.getLogger(__name__)
        self.min_candles = int(config.get('min_candles', 25))
        self.buy_threshold = float(config.get('buy_threshold', 55))
        self.sell_threshold = float(config.get('sell_threshold', 48))

        weights = config.get('weights', {}) or {}
        self.weights = {
            'trend': float(weights.get('trend', 0.4)),
            'momentum': float(weights.get('momentum', 0.3)),
            'volatility': float(weights.get('volatility', 0.3))
        }
        self.indicators: Dict[str, CustomIndicator] = {
            'trend': TrendIndicator(config),
            'momentum': MomentumIndicator(config),
            'volatility': VolatilityIndicator(config)
        }

    def evaluate(self, candles: Sequence[Candle]) -> StrategyResult:
        if len(candles) < self.min_candles:
            return StrategyResult(name=STRATEGY_NAME, signal=Signal.HOLD, confidence=NEUTRAL_SCORE)

        closes = pd.Series([c.close for c in candles], dtype=float)
        components: Dict[str, float] = {}
        score = 0.0

        for name, indicator in self.indicators.items():
            result = indicator.calculate(closes)
            components[name] = result.score
            components.update(result.values)
            score += result.score * self.weights[name]

        # Float noise must not move a score across a threshold
        score = round(score, 6)

        return StrategyResult(
            name=STRATEGY_NAME,
            signal=self._generate_signal(score),
            confidence=min(max(score, 0.0), 100.0),
            components=components
        )

    def _generate_signal(self, score: float) -> Signal:
        if score >= self.buy_threshold:
            return Signal.BUY
        if score <= self.sell_threshold:
            return Signal.SELL
        return Signal.HOLD

    def describe(self, results: List[StrategyResult]) -> str:
        if not results:
            return "no analysis"
        result = results[0]
        return f"{result.name} {result.confidence:.1f}% -> {result.signal.value}"
