# cryptosim_bot/custom/indicators.py
from typing import Dict, Optional, Any, Tuple
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
import logging
from abc import ABC, abstractmethod

NEUTRAL_SCORE = 50.0


def ema(closes: pd.Series, period: int) -> float:
    """Exponential moving average seeded with the first close"""
    return float(closes.ewm(span=period, adjust=False).mean().iloc[-1])


def rsi(closes: pd.Series, period: int) -> float:
    """RSI from the simple average of the last `period` gains and losses"""
    if len(closes) < period + 1:
        return NEUTRAL_SCORE

    diffs = closes.diff().iloc[-period:]
    avg_gain = diffs.clip(lower=0).sum() / period
    avg_loss = -diffs.clip(upper=0).sum() / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


def bollinger_bands(closes: pd.Series, period: int, num_std: float = 2.0) -> Tuple[float, float, float]:
    """Return (lower, middle, upper) over the last `period` closes, population std"""
    window = closes.iloc[-period:]
    middle = float(window.mean())
    dev = float(np.std(window.to_numpy(), ddof=0))
    return middle - num_std * dev, middle, middle + num_std * dev


@dataclass
class IndicatorResult:
    score: float
    values: Dict[str, float] = field(default_factory=dict)


class CustomIndicator(ABC):
    def __init__(self, params: Optional[Dict[str, Any]] = None):
        self.params = params or {}
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    def calculate(self, closes: pd.Series) -> IndicatorResult:
        pass


class TrendIndicator(CustomIndicator):
    def __init__(self, params: Optional[Dict[str, Any]] = None):
        super().__init__(params)
        self.short_period = self.params.get('ema_short', 9)
        self.long_period = self.params.get('ema_long', 21)

    def calculate(self, closes: pd.Series) -> IndicatorResult:
        ema_short = ema(closes, self.short_period)
        ema_long = ema(closes, self.long_period)

        score = NEUTRAL_SCORE
        if ema_short > ema_long:
            score = 70.0
        elif ema_short < ema_long:
            score = 30.0

        return IndicatorResult(
            score=score,
            values={'ema_short': ema_short, 'ema_long': ema_long}
        )


class MomentumIndicator(CustomIndicator):
    def __init__(self, params: Optional[Dict[str, Any]] = None):
        super().__init__(params)
        self.rsi_period = self.params.get('rsi_period', 9)
        self.oversold = self.params.get('rsi_oversold', 40)
        self.overbought = self.params.get('rsi_overbought', 60)

    def calculate(self, closes: pd.Series) -> IndicatorResult:
        value = rsi(closes, self.rsi_period)

        score = NEUTRAL_SCORE
        if value < self.oversold:
            score = 70.0
        elif value > self.overbought:
            score = 30.0

        return IndicatorResult(score=score, values={'rsi': value})


class VolatilityIndicator(CustomIndicator):
    def __init__(self, params: Optional[Dict[str, Any]] = None):
        super().__init__(params)
        self.window = self.params.get('bollinger_period', 20)
        self.num_std = self.params.get('bollinger_std', 2.0)

    def calculate(self, closes: pd.Series) -> IndicatorResult:
        lower, middle, upper = bollinger_bands(closes, self.window, self.num_std)
        price = float(closes.iloc[-1])

        score = NEUTRAL_SCORE
        if price <= lower:
            score = 80.0
        elif price >= upper:
            score = 20.0

        return IndicatorResult(
            score=score,
            values={'bb_lower': lower, 'bb_middle': middle, 'bb_upper': upper}
        )
