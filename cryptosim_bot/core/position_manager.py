# cryptosim_bot/core/position_manager.py
from typing import Dict, List, Optional
from datetime import datetime
import logging

from .base import (
    Position,
    PositionStatus,
    RiskConfig,
    ExitReason,
    Signal,
    utc_now
)


class PositionManager:
    """
    Per-symbol long position book.

    A symbol is either flat or holds exactly one OPEN position. Closing a
    position records it in `closed_positions` and returns the symbol to flat.
    """

    def __init__(self, risk: RiskConfig):
        self.risk = risk
        self.logger = logging.getLogger(__name__)
        self.positions: Dict[str, Position] = {}
        self.closed_positions: List[Position] = []
        self.realized_pnl: Dict[str, float] = {}

    def get(self, symbol: str) -> Optional[Position]:
        return self.positions.get(symbol)

    def has_open(self, symbol: str) -> bool:
        return symbol in self.positions

    @property
    def total_realized_pnl(self) -> float:
        return sum(self.realized_pnl.values())

    def open_position(
        self,
        symbol: str,
        amount: float,
        price: float,
        entry_time: Optional[datetime] = None
    ) -> Optional[Position]:
        """Open a position at `price`; returns None if one is already open"""
        if self.has_open(symbol):
            self.logger.info(f"Position already open for {symbol}, ignoring open request")
            return None

        position = Position(
            symbol=symbol,
            amount=amount,
            entry_price=price,
            entry_time=entry_time or utc_now(),
            stop_loss_pct=self.risk.stop_loss_percent,
            take_profit_pct=self.risk.take_profit_percent,
            highest_price=price
        )
        self.positions[symbol] = position
        self.logger.info(
            f"Opened {symbol} position {position.id}: {amount:.6f} @ {price:.2f} "
            f"(SL {position.stop_loss_pct}%, TP {position.take_profit_pct}%)"
        )
        return position

    def restore(self, position: Position) -> bool:
        """Put a persisted OPEN position back into the book"""
        if not position.is_open:
            return False
        existing = self.positions.get(position.symbol)
        if existing is not None:
            if existing.id != position.id:
                self.logger.warning(
                    f"Not restoring {position.id}: {position.symbol} already holds {existing.id}"
                )
            return False

        # Rows may carry null levels; a zero level would exit on the first tick
        if position.stop_loss_pct <= 0:
            position.stop_loss_pct = self.risk.stop_loss_percent
        if position.take_profit_pct <= 0:
            position.take_profit_pct = self.risk.take_profit_percent
        position.highest_price = max(position.highest_price, position.entry_price)
        self.positions[position.symbol] = position
        self.logger.info(
            f"Restored {position.symbol} position {position.id}: "
            f"{position.amount:.6f} @ {position.entry_price:.2f}"
        )
        return True

    def mark_price(self, symbol: str, price: float) -> Optional[Position]:
        position = self.positions.get(symbol)
        if position is not None and price > position.highest_price:
            position.highest_price = price
        return position

    def check_risk(self, symbol: str, price: float) -> Optional[ExitReason]:
        """Update the peak and return the first risk exit that fires, if any"""
        position = self.mark_price(symbol, price)
        if position is None:
            return None

        pnl_pct = (price - position.entry_price) / position.entry_price * 100
        drop_pct = (position.highest_price - price) / position.highest_price * 100

        if pnl_pct >= position.take_profit_pct:
            return ExitReason.TAKE_PROFIT
        if (pnl_pct >= self.risk.trailing_activation_percent
                and drop_pct >= self.risk.trailing_distance_percent):
            return ExitReason.TRAILING_STOP
        if pnl_pct <= -position.stop_loss_pct:
            return ExitReason.STOP_LOSS
        return None

    def evaluate_exit(self, symbol: str, price: float, signal: Signal) -> Optional[ExitReason]:
        reason = self.check_risk(symbol, price)
        if reason is None and self.has_open(symbol) and signal == Signal.SELL:
            return ExitReason.SIGNAL_REVERSAL
        return reason

    def close_position(
        self,
        symbol: str,
        price: float,
        reason: str,
        exit_time: Optional[datetime] = None
    ) -> Optional[Position]:
        position = self.positions.pop(symbol, None)
        if position is None:
            self.logger.info(f"No open position for {symbol}, ignoring close request")
            return None

        position.status = PositionStatus.CLOSED
        position.exit_price = price
        position.exit_time = exit_time or utc_now()
        position.exit_reason = reason
        position.profit = (price - position.entry_price) * position.amount
        position.profit_percent = (price - position.entry_price) / position.entry_price * 100

        self.realized_pnl[symbol] = self.realized_pnl.get(symbol, 0.0) + position.profit
        self.closed_positions.append(position)

        self.logger.info(
            f"Closed {symbol} position {position.id} @ {price:.2f} ({reason}): "
            f"P/L {position.profit:+.2f} ({position.profit_percent:+.2f}%)"
        )
        return position
