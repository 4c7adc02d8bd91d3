# cryptosim_bot/core/risk_management.py
from typing import Callable, Optional
import asyncio
import logging
from dataclasses import dataclass
import numpy as np

from .base import (
    BalanceStore,
    TradeLedger,
    TradeRecord,
    RiskConfig,
    RandomSizingConfig,
    Signal
)

REJECT_TOO_SMALL = "amount too small"


@dataclass
class SizingResult:
    quantity: float
    total_value: float
    adjusted: bool = False
    rejected_reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.rejected_reason is None


class RiskSizer:
    def __init__(
        self,
        risk: RiskConfig,
        random_sizing: Optional[RandomSizingConfig] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.risk = risk
        self.random_sizing = random_sizing or RandomSizingConfig()
        self.rng = rng or np.random.default_rng()
        self.logger = logging.getLogger(__name__)

    def requested_amount(self, side: Signal, base_amount: float, price: float) -> float:
        """Quantity the bot asks for before balance caps"""
        if side == Signal.BUY and self.random_sizing.enabled and price > 0:
            budget = float(self.rng.uniform(0.0, self.random_sizing.max_amount))
            self.logger.info(f"Random budget drawn: {budget:.2f} -> {budget / price:.6f} units")
            return budget / price
        return base_amount

    def size_order(self, side: Signal, amount: float, price: float, balance: float) -> SizingResult:
        quantity = amount
        total_value = amount * price
        adjusted = False

        if side == Signal.BUY and price > 0:
            max_trade_value = balance * self.risk.max_trade_balance_percent

            if total_value > balance:
                self.logger.warning(f"Insufficient funds: {total_value:.2f} > {balance:.2f}")
                safe_value = min(balance, max_trade_value)
                quantity = safe_value / price
                adjusted = True
            elif total_value > max_trade_value:
                self.logger.warning(
                    f"Trade exceeds risk limit ({self.risk.max_trade_balance_percent:.0%}): "
                    f"{total_value:.2f} > {max_trade_value:.2f}"
                )
                quantity = max_trade_value / price
                adjusted = True

            total_value = quantity * price

        if quantity <= 0:
            self.logger.error("Trade amount too small. Skipping.")
            return SizingResult(quantity=0.0, total_value=0.0, rejected_reason=REJECT_TOO_SMALL)

        if adjusted:
            self.logger.warning(f"Adjusted trade to {quantity:.6f} units ({total_value:.2f})")

        return SizingResult(quantity=quantity, total_value=total_value, adjusted=adjusted)


class Account:
    """
    Simulated cash balance. Every change is a read-modify-write performed under
    one lock so concurrent trades can never lose an update.
    """

    def __init__(self, store: BalanceStore, name: str = "default"):
        self.store = store
        self.name = name
        self.lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

    async def get_balance(self) -> float:
        return await self.store.get_balance()

    async def apply(self, compute: Callable[[float], Optional[float]]) -> Optional[float]:
        """
        Read the balance, compute the new one and write it back.

        `compute` returns None to abort without writing.
        """
        async with self.lock:
            balance = await self.store.get_balance()
            new_balance = compute(balance)
            if new_balance is None:
                return None
            await self.store.update_balance(new_balance)
            return new_balance


@dataclass
class ExecutedTrade:
    trade: TradeRecord
    balance_before: float
    balance_after: float
    persisted: bool = True


class TradeExecutor:
    def __init__(self, account: Account, sizer: RiskSizer, ledger: Optional[TradeLedger] = None):
        self.account = account
        self.sizer = sizer
        self.ledger = ledger
        self.logger = logging.getLogger(__name__)

    async def execute_trade(
        self,
        side: Signal,
        symbol: str,
        amount: float,
        price: float,
        reason: str
    ) -> Optional[ExecutedTrade]:
        """Size the order against the live balance and book it; None when rejected"""
        outcome = {}

        def compute(balance: float) -> Optional[float]:
            sizing = self.sizer.size_order(side, amount, price, balance)
            if not sizing.accepted:
                return None
            outcome['sizing'] = sizing
            outcome['balance'] = balance
            if side == Signal.BUY:
                return balance - sizing.total_value
            return balance + sizing.total_value

        persisted = True
        try:
            new_balance = await self.account.apply(compute)
        except Exception as e:
            if 'sizing' not in outcome:
                self.logger.error(f"Error reading balance for {side.value} {symbol}: {str(e)}")
                return None
            # The trade is decided; the in-memory book stays authoritative
            sizing = outcome['sizing']
            new_balance = outcome['balance'] + (
                -sizing.total_value if side == Signal.BUY else sizing.total_value
            )
            persisted = False
            self.logger.error(
                f"Error writing balance after {side.value} {symbol}: {str(e)}. "
                f"Durability gap: stored balance lags runtime ({new_balance:.2f})"
            )

        if new_balance is None:
            return None

        sizing = outcome['sizing']
        trade = TradeRecord(
            type=side,
            symbol=symbol,
            amount=sizing.quantity,
            price=price,
            total=sizing.total_value,
            reason=reason
        )
        self.logger.info(
            f"EXECUTING: {side.value} {sizing.quantity:.6f} {symbol} @ {price:.2f} ({reason})"
        )
        self.logger.info(f"Balance updated: {new_balance:.2f} USDT")

        if self.ledger is not None:
            try:
                await self.ledger.save_trade(trade)
            except Exception as e:
                persisted = False
                self.logger.error(
                    f"Error saving trade to ledger: {str(e)}. "
                    f"Durability gap: trade audit record missing"
                )

        return ExecutedTrade(
            trade=trade,
            balance_before=outcome['balance'],
            balance_after=new_balance,
            persisted=persisted
        )
