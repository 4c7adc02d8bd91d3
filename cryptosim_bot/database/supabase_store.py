# cryptosim_bot/database/supabase_store.py
from typing import Dict, List, Optional, Any
import asyncio
import logging
from datetime import datetime, timezone
from supabase import create_client, Client

from ..core.base import (
    BalanceStore,
    PositionStore,
    TradeLedger,
    StatusStore,
    CommandChannel,
    BotCommand,
    BotStatus,
    Position,
    PositionStatus,
    TradeRecord
)
from ..core.state_manager import DEFAULT_BALANCE

LOG_LEVELS = {
    logging.DEBUG: 'info',
    logging.INFO: 'info',
    logging.WARNING: 'warning',
    logging.ERROR: 'error',
    logging.CRITICAL: 'error'
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseStore(BalanceStore, PositionStore, TradeLedger, StatusStore, CommandChannel):
    """
    Supabase tables behind every store contract.

    The supabase-py client is synchronous, so each call runs in a worker
    thread to keep the event loop free.
    """

    def __init__(self, supabase_url: str, supabase_key: str, client: Optional[Client] = None):
        self.logger = logging.getLogger(__name__)
        self.client = client or create_client(supabase_url, supabase_key)
        self.logger.info("Supabase client initialized")

    async def _run(self, query):
        return await asyncio.to_thread(query.execute)

    # BalanceStore
    async def get_balance(self) -> float:
        response = await self._run(self.client.table("portfolios").select("balance").limit(1))
        if response.data:
            return float(response.data[0]['balance'])
        self.logger.info(f"No portfolio row found, using default balance {DEFAULT_BALANCE:.2f}")
        return DEFAULT_BALANCE

    async def update_balance(self, balance: float):
        await self._run(
            self.client.table("portfolios").upsert({'id': 1, 'balance': balance, 'updated_at': _now_iso()})
        )

    # PositionStore
    async def get_open_position(self, symbol: str) -> Optional[Position]:
        response = await self._run(
            self.client.table("positions")
            .select("*")
            .eq("status", PositionStatus.OPEN.value)
            .eq("symbol", symbol)
            .limit(1)
        )
        if not response.data:
            return None
        return Position.from_record(response.data[0])

    async def save_position(self, position: Position):
        record = position.to_record()
        record['updated_at'] = _now_iso()
        await self._run(self.client.table("positions").upsert(record))

    async def delete_position(self, position_id: str):
        await self._run(self.client.table("positions").delete().eq("id", position_id))

    # TradeLedger
    async def save_trade(self, trade: TradeRecord):
        await self._run(self.client.table("bot_trades").insert(trade.to_record()))
        self.logger.info("Trade saved to DB")

    async def get_trades(self, limit: int = 100) -> List[Dict[str, Any]]:
        response = await self._run(
            self.client.table("bot_trades").select("*").order("created_at", desc=True).limit(limit)
        )
        return response.data or []

    # StatusStore
    async def update_bot_status(self, status: BotStatus, symbol: str):
        await self._run(
            self.client.table("bot_status").upsert({
                'id': 1,
                'status': status.value,
                'symbol': symbol,
                'updated_at': _now_iso()
            })
        )

    # CommandChannel
    async def poll(self) -> List[BotCommand]:
        response = await self._run(
            self.client.table("bot_commands")
            .select("*")
            .eq("processed", False)
            .order("created_at")
        )
        return [BotCommand.from_record(row) for row in response.data or []]

    async def mark_processed(self, command_id: str):
        await self._run(self.client.table("bot_commands").update({'processed': True}).eq("id", command_id))

    def save_log(self, level: str, message: str):
        """Blocking insert into bot_logs; called from the log listener thread"""
        self.client.table("bot_logs").insert({'type': level, 'message': message}).execute()


class SupabaseLogHandler(logging.Handler):
    """
    Ships log records to the bot_logs table.

    Meant to sit behind a QueueListener so the network call happens off the
    event loop thread.
    """

    def __init__(self, store: SupabaseStore, level: int = logging.INFO):
        super().__init__(level)
        self.store = store

    def emit(self, record: logging.LogRecord):
        try:
            level = LOG_LEVELS.get(record.levelno, 'info')
            self.store.save_log(level, self.format(record))
        except Exception:
            self.handleError(record)
