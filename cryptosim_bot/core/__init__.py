# cryptosim_bot/core/__init__.py
"""
Core functionality module.
"""
from .base import (
    Candle,
    CandleSeries,
    StrategyResult,
    Position,
    BotConfig,
    BotState,
    BotCommand,
    TradeRecord,
    Signal,
    BotStatus
)
from .position_manager import PositionManager
from .risk_management import RiskSizer, Account, TradeExecutor
from .state_manager import LocalStateStore
