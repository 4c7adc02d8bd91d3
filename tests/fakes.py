from typing import Any, Callable, Dict, List, Optional
import asyncio
from datetime import datetime, timedelta, timezone

from cryptosim_bot.core.base import (
    BalanceStore,
    BotConfig,
    BotStatus,
    Candle,
    MarketDataFeed,
    NotificationSink,
    Position,
    PositionStatus,
    PositionStore,
    RiskConfig,
    Signal,
    StatusStore,
    StrategyResult,
    TradeLedger,
    TradeRecord
)
from cryptosim_bot.core.commands import InMemoryCommandChannel
from cryptosim_bot.core.position_manager import PositionManager
from cryptosim_bot.core.risk_management import Account, RiskSizer, TradeExecutor
from cryptosim_bot.core.trader import BotController
from cryptosim_bot.analytics.monitor import PerformanceAnalytics

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
CANDLE_START = int(T0.timestamp())

# Rising run then a sharp drop below the lower band
DIP_CLOSES = [100.0 + i for i in range(39)] + [108.0]


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


def make_candles(closes: List[float], start: int = CANDLE_START, step: int = 60) -> List[Candle]:
    return [
        Candle(time=start + i * step, open=close, high=close, low=close, close=close)
        for i, close in enumerate(closes)
    ]


def next_candle(previous: Candle, close: float) -> Candle:
    return Candle(time=previous.time + 60, open=close, high=close, low=close, close=close)


class FakeFeed(MarketDataFeed):
    def __init__(self, history: Optional[Dict[str, List[Candle]]] = None):
        self.history = history or {}
        self.fetches: List[str] = []
        self.subscriptions: List[str] = []
        self.cancelled: List[str] = []
        self.callbacks: Dict[str, Callable[[Candle], None]] = {}

    async def fetch_history(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        self.fetches.append(symbol)
        return list(self.history.get(symbol, []))[-limit:]

    def subscribe(self, symbol, interval, on_candle):
        self.subscriptions.append(symbol)
        self.callbacks[symbol] = on_candle
        return lambda: self.cancelled.append(symbol)


class UnreachableFeed(FakeFeed):
    """History requests fail for the symbols listed in `down`"""

    def __init__(self, history=None, down=None):
        super().__init__(history)
        self.down = set(down or ())

    async def fetch_history(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        if symbol in self.down:
            raise ConnectionError(f"klines for {symbol} unavailable")
        return await super().fetch_history(symbol, interval, limit)


class MemoryStore(BalanceStore, PositionStore, TradeLedger, StatusStore):
    def __init__(self, balance: float = 10000.0):
        self.balance = balance
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.trades: List[TradeRecord] = []
        self.statuses: List[tuple] = []
        self.fail_positions = False
        self.fail_balance_read = False
        self.fail_balance_write = False

    async def get_balance(self) -> float:
        if self.fail_balance_read:
            raise ConnectionError("balance unavailable")
        return self.balance

    async def update_balance(self, balance: float):
        if self.fail_balance_write:
            raise ConnectionError("balance write failed")
        self.balance = balance

    async def get_open_position(self, symbol: str) -> Optional[Position]:
        for record in self.positions.values():
            if record['symbol'] == symbol and record['status'] == PositionStatus.OPEN.value:
                return Position.from_record(record)
        return None

    async def save_position(self, position: Position):
        if self.fail_positions:
            raise ConnectionError("positions table unavailable")
        self.positions[position.id] = position.to_record()

    async def delete_position(self, position_id: str):
        if self.fail_positions:
            raise ConnectionError("positions table unavailable")
        self.positions.pop(position_id, None)

    async def save_trade(self, trade: TradeRecord):
        self.trades.append(trade)

    async def update_bot_status(self, status: BotStatus, symbol: str):
        self.statuses.append((status, symbol))


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.trades: List[tuple] = []
        self.reports: List[Dict[str, Any]] = []

    async def notify_trade(self, trade: TradeRecord, balance: float):
        self.trades.append((trade, balance))

    async def notify_status(self, report: Dict[str, Any]):
        self.reports.append(report)


class FailingNotifier(NotificationSink):
    async def notify_trade(self, trade, balance):
        raise RuntimeError("webhook down")

    async def notify_status(self, report):
        raise RuntimeError("webhook down")


class ScriptedEvaluator:
    """Returns whatever signal the test sets"""

    def __init__(self, signal: Signal = Signal.HOLD, confidence: float = 50.0):
        self.signal = signal
        self.confidence = confidence
        self.calls = 0

    def evaluate(self, candles) -> StrategyResult:
        self.calls += 1
        return StrategyResult(
            name="Probability",
            signal=self.signal,
            confidence=self.confidence,
            components={'trend': 50.0, 'momentum': 50.0, 'volatility': 50.0}
        )

    def describe(self, results) -> str:
        return f"scripted {self.signal.value}"


def build_controller(
    evaluator=None,
    store: Optional[MemoryStore] = None,
    feed: Optional[FakeFeed] = None,
    clock: Optional[FakeClock] = None,
    notifier: Optional[NotificationSink] = None,
    config: Optional[BotConfig] = None,
    commands: Optional[InMemoryCommandChannel] = None
) -> BotController:
    config = config or BotConfig(symbol="BTC", base_trade_amount=1.0, risk=RiskConfig())
    store = store if store is not None else MemoryStore()
    feed = feed or FakeFeed({config.symbol: make_candles([100.0] * 30)})
    sizer = RiskSizer(config.risk, config.random_sizing)
    executor = TradeExecutor(Account(store), sizer, ledger=store)
    return BotController(
        config=config,
        feed=feed,
        evaluator=evaluator or ScriptedEvaluator(),
        position_manager=PositionManager(config.risk),
        executor=executor,
        position_store=store,
        command_channel=commands,
        notifier=notifier,
        status_store=store,
        analytics=PerformanceAnalytics(),
        clock=clock or FakeClock()
    )


async def settle():
    """Let fire-and-forget notification tasks run"""
    for _ in range(3):
        await asyncio.sleep(0)
