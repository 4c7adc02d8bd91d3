# cryptosim_bot/core/base.py
from typing import Dict, List, Optional, Any, Callable
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import uuid
import yaml
import pandas as pd

logger = logging.getLogger(__name__)

MAX_CANDLES = 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Core Data Structures
class Signal(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class BotStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ExitReason(str, Enum):
    TAKE_PROFIT = "take profit"
    TRAILING_STOP = "trailing stop"
    STOP_LOSS = "stop loss"
    SIGNAL_REVERSAL = "signal reversal"


@dataclass
class Candle:
    time: int
    open: float
    high: float
    low: float
    close: float

    @classmethod
    def from_kline(cls, kline: List[Any]) -> 'Candle':
        """Build a candle from a Binance REST kline row (open time in ms)"""
        return cls(
            time=int(kline[0]) // 1000,
            open=float(kline[1]),
            high=float(kline[2]),
            low=float(kline[3]),
            close=float(kline[4])
        )


@dataclass
class StrategyResult:
    name: str
    signal: Signal
    confidence: float
    components: Dict[str, float] = field(default_factory=dict)


@dataclass
class Position:
    symbol: str
    amount: float
    entry_price: float
    entry_time: datetime
    stop_loss_pct: float
    take_profit_pct: float
    highest_price: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: PositionStatus = PositionStatus.OPEN
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    profit: Optional[float] = None
    profit_percent: Optional[float] = None
    exit_reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'type': 'BUY',
            'amount': self.amount,
            'entry_price': self.entry_price,
            'entry_time': self.entry_time.isoformat(),
            'stop_loss': self.stop_loss_pct,
            'take_profit': self.take_profit_pct,
            'highest_price': self.highest_price,
            'status': self.status.value,
            'exit_price': self.exit_price,
            'exit_time': self.exit_time.isoformat() if self.exit_time else None,
            'profit': self.profit,
            'profit_percent': self.profit_percent,
            'exit_reason': self.exit_reason
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Position':
        entry_price = float(record['entry_price'])
        exit_time = record.get('exit_time')
        return cls(
            id=str(record['id']),
            symbol=record['symbol'],
            amount=float(record['amount']),
            entry_price=entry_price,
            entry_time=_parse_time(record['entry_time']),
            stop_loss_pct=float(record.get('stop_loss') or 0.0),
            take_profit_pct=float(record.get('take_profit') or 0.0),
            # Older rows carry no peak; the entry price is a safe floor
            highest_price=max(float(record.get('highest_price') or entry_price), entry_price),
            status=PositionStatus(record.get('status', 'OPEN')),
            exit_price=record.get('exit_price'),
            exit_time=_parse_time(exit_time) if exit_time else None,
            profit=record.get('profit'),
            profit_percent=record.get('profit_percent'),
            exit_reason=record.get('exit_reason')
        )


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TradeRecord:
    type: Signal
    symbol: str
    amount: float
    price: float
    total: float
    reason: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_record(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'symbol': self.symbol,
            'amount': self.amount,
            'price': self.price,
            'total': self.total,
            'reason': self.reason
        }


@dataclass
class BotCommand:
    command: str
    symbol: Optional[str] = None
    id: Optional[str] = None
    processed: bool = False

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'BotCommand':
        command_id = record.get('id')
        return cls(
            command=str(record['command']).lower(),
            symbol=record.get('symbol'),
            id=str(command_id) if command_id is not None else None,
            processed=bool(record.get('processed', False))
        )


@dataclass
class RiskConfig:
    stop_loss_percent: float = 2.0
    take_profit_percent: float = 5.0
    max_drawdown_percent: float = 10.0
    # Fraction of the balance, 0.2 == 20%
    max_trade_balance_percent: float = 0.2
    trailing_activation_percent: float = 0.5
    trailing_distance_percent: float = 0.5


@dataclass
class RandomSizingConfig:
    enabled: bool = False
    max_amount: float = 0.0


@dataclass
class BotConfig:
    symbol: str = "BTC"
    base_trade_amount: float = 0.001
    risk: RiskConfig = field(default_factory=RiskConfig)
    random_sizing: RandomSizingConfig = field(default_factory=RandomSizingConfig)
    interval: str = "1m"
    history_limit: int = 200
    cooldown_seconds: float = 60.0
    heartbeat_seconds: float = 60.0
    min_candles: int = 25
    max_candle_age_seconds: float = 180.0
    command_poll_seconds: float = 2.0

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'BotConfig':
        """Build a BotConfig from the parsed YAML sections"""
        trading = config.get('trading', {}) or {}
        risk = config.get('risk_management', {}) or {}
        sizing = trading.get('random_sizing', {}) or {}
        strategy = config.get('strategy', {}) or {}

        defaults = cls()
        risk_defaults = RiskConfig()
        return cls(
            symbol=str(trading.get('symbol', defaults.symbol)).upper(),
            base_trade_amount=float(trading.get('base_trade_amount', defaults.base_trade_amount)),
            risk=RiskConfig(
                stop_loss_percent=float(risk.get('stop_loss_percent', risk_defaults.stop_loss_percent)),
                take_profit_percent=float(risk.get('take_profit_percent', risk_defaults.take_profit_percent)),
                max_drawdown_percent=float(risk.get('max_drawdown_percent', risk_defaults.max_drawdown_percent)),
                max_trade_balance_percent=float(
                    risk.get('max_trade_balance_percent', risk_defaults.max_trade_balance_percent)
                ),
                trailing_activation_percent=float(
                    risk.get('trailing_activation_percent', risk_defaults.trailing_activation_percent)
                ),
                trailing_distance_percent=float(
                    risk.get('trailing_distance_percent', risk_defaults.trailing_distance_percent)
                )
            ),
            random_sizing=RandomSizingConfig(
                enabled=bool(sizing.get('enabled', False)),
                max_amount=float(sizing.get('max_amount', 0.0))
            ),
            interval=str(trading.get('interval', defaults.interval)),
            history_limit=int(trading.get('history_limit', defaults.history_limit)),
            cooldown_seconds=float(trading.get('cooldown_seconds', defaults.cooldown_seconds)),
            heartbeat_seconds=float(trading.get('heartbeat_seconds', defaults.heartbeat_seconds)),
            min_candles=int(strategy.get('min_candles', defaults.min_candles)),
            max_candle_age_seconds=float(
                trading.get('max_candle_age_seconds', defaults.max_candle_age_seconds)
            ),
            command_poll_seconds=float(trading.get('command_poll_seconds', defaults.command_poll_seconds))
        )


@dataclass
class BotState:
    status: BotStatus = BotStatus.IDLE
    last_signal: Signal = Signal.HOLD
    last_analysis: List[StrategyResult] = field(default_factory=list)
    trades_count: int = 0
    cumulative_profit_loss: float = 0.0
    last_trade_time: Optional[datetime] = None
    current_position: Optional[Position] = None
    last_rejection: Optional[str] = None
    persistence_failures: int = 0


class CandleSeries:
    """Ordered candle history keyed by bucket start time"""

    def __init__(self, candles: Optional[List[Candle]] = None, maxlen: int = MAX_CANDLES):
        self._candles: deque = deque(maxlen=maxlen)
        self.last_update: Optional[datetime] = None
        for candle in candles or []:
            self.apply(candle)

    def apply(self, candle: Candle, received_at: Optional[datetime] = None) -> bool:
        """Replace the open bucket or append a newer one; older buckets are dropped"""
        if self._candles:
            last = self._candles[-1]
            if candle.time == last.time:
                self._candles[-1] = candle
            elif candle.time > last.time:
                self._candles.append(candle)
            else:
                logger.debug(f"Ignoring out-of-order candle {candle.time} (last {last.time})")
                return False
        else:
            self._candles.append(candle)

        self.last_update = received_at or utc_now()
        return True

    def reset(self, candles: List[Candle], received_at: Optional[datetime] = None):
        self._candles.clear()
        for candle in sorted(candles, key=lambda c: c.time):
            self.apply(candle, received_at)

    @property
    def last(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def closes(self) -> pd.Series:
        return pd.Series([c.close for c in self._candles], dtype=float)

    def to_list(self) -> List[Candle]:
        return list(self._candles)

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self):
        return iter(self._candles)


# Collaborator contracts
class MarketDataFeed(ABC):
    @abstractmethod
    async def fetch_history(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        pass

    @abstractmethod
    def subscribe(
        self,
        symbol: str,
        interval: str,
        on_candle: Callable[[Candle], None]
    ) -> Callable[[], None]:
        """Start streaming candle updates; returns a function that cancels the stream"""


class CommandChannel(ABC):
    @abstractmethod
    async def poll(self) -> List[BotCommand]:
        pass

    @abstractmethod
    async def mark_processed(self, command_id: str):
        pass


class BalanceStore(ABC):
    @abstractmethod
    async def get_balance(self) -> float:
        pass

    @abstractmethod
    async def update_balance(self, balance: float):
        pass


class PositionStore(ABC):
    @abstractmethod
    async def get_open_position(self, symbol: str) -> Optional[Position]:
        pass

    @abstractmethod
    async def save_position(self, position: Position):
        pass

    @abstractmethod
    async def delete_position(self, position_id: str):
        pass


class TradeLedger(ABC):
    @abstractmethod
    async def save_trade(self, trade: TradeRecord):
        pass


class StatusStore(ABC):
    @abstractmethod
    async def update_bot_status(self, status: BotStatus, symbol: str):
        pass


class NotificationSink(ABC):
    """Best-effort outbound alerts; callers never depend on delivery"""

    @abstractmethod
    async def notify_trade(self, trade: TradeRecord, balance: float):
        pass

    @abstractmethod
    async def notify_status(self, report: Dict[str, Any]):
        pass


class ConfigManager:
    def __init__(self, config_path: str):
        self.config_path = config_path
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as file:
                return yaml.safe_load(file) or {}
        except Exception as e:
            logger.error(f"Error loading config: {str(e)}")
            raise

    def get_config(self) -> Dict[str, Any]:
        return self.config.copy()

    def update_config(self, new_config: Dict[str, Any]):
        try:
            self.config.update(new_config)
            with open(self.config_path, 'w', encoding='utf-8') as file:
                yaml.safe_dump(self.config, file)
        except Exception as e:
            logger.error(f"Error updating config: {str(e)}")
            raise
