# cryptosim_bot/core/state_manager.py

from typing import Dict, List, Optional, Any
import pickle
from pathlib import Path
from datetime import datetime
import logging
from dataclasses import dataclass, field

from .base import (
    BalanceStore,
    PositionStore,
    TradeLedger,
    StatusStore,
    Position,
    PositionStatus,
    TradeRecord,
    BotStatus
)

DEFAULT_BALANCE = 10000.0


@dataclass
class StoreState:
    balance: float = DEFAULT_BALANCE
    positions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    trades: List[Dict[str, Any]] = field(default_factory=list)
    bot_status: Dict[str, Any] = field(default_factory=dict)


class LocalStateStore(BalanceStore, PositionStore, TradeLedger, StatusStore):
    """Pickle-file persistence for the local backend, with rolling backups"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.state_dir = Path(config.get('state_path', 'state'))
        self.state_file = self.state_dir / 'bot_state.pkl'
        self.backup_dir = self.state_dir / 'backups'
        self.max_backups = int(config.get('max_backups', 20))
        self.initial_balance = float(config.get('initial_balance', DEFAULT_BALANCE))
        self.initialize_state_directory()
        self.state = self.load_state() or StoreState(balance=self.initial_balance)

    def initialize_state_directory(self):
        """Create necessary directories for state management"""
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            self.logger.error(f"Error creating state directories: {str(e)}")
            raise

    def save_state(self):
        """Save current store state to disk"""
        try:
            if self.state_file.exists():
                self._create_backup()

            state_dict = {
                'balance': self.state.balance,
                'positions': self.state.positions,
                'trades': self.state.trades,
                'bot_status': self.state.bot_status
            }
            tmp_file = self.state_file.with_suffix('.tmp')
            with open(tmp_file, 'wb') as f:
                pickle.dump(state_dict, f)
            tmp_file.replace(self.state_file)

        except Exception as e:
            self.logger.error(f"Error saving store state: {str(e)}")
            raise

    def load_state(self) -> Optional[StoreState]:
        """Load store state from disk, falling back to the newest backup"""
        if not self.state_file.exists():
            self.logger.info("No existing state found")
            return None

        try:
            with open(self.state_file, 'rb') as f:
                state_dict = pickle.load(f)
            self.logger.info("Bot state loaded successfully")
            return self._restore_state_from_dict(state_dict)

        except Exception as e:
            self.logger.error(f"Error loading bot state: {str(e)}")
            recovered = self._attempt_state_recovery()
            if recovered is None:
                raise
            return recovered

    def _create_backup(self):
        """Create a backup of the current state file"""
        try:
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
            backup_file = self.backup_dir / f'bot_state_{timestamp}.pkl'

            with open(self.state_file, 'rb') as src, open(backup_file, 'wb') as dst:
                dst.write(src.read())

            backups = sorted(self.backup_dir.glob('bot_state_*.pkl'))
            for old in backups[:-self.max_backups]:
                old.unlink()

        except Exception as e:
            self.logger.error(f"Error creating state backup: {str(e)}")
            raise

    def _attempt_state_recovery(self) -> Optional[StoreState]:
        """Attempt to recover state from most recent backup"""
        backup_files = sorted(self.backup_dir.glob('bot_state_*.pkl'))
        if not backup_files:
            self.logger.error("No backup files found for recovery")
            return None

        latest_backup = backup_files[-1]
        self.logger.info(f"Attempting recovery from backup: {latest_backup}")

        with open(latest_backup, 'rb') as f:
            state_dict = pickle.load(f)

        return self._restore_state_from_dict(state_dict)

    def _restore_state_from_dict(self, state_dict: Dict[str, Any]) -> StoreState:
        return StoreState(
            balance=float(state_dict.get('balance', self.initial_balance)),
            positions=dict(state_dict.get('positions', {})),
            trades=list(state_dict.get('trades', [])),
            bot_status=dict(state_dict.get('bot_status', {}))
        )

    # BalanceStore
    async def get_balance(self) -> float:
        return self.state.balance

    async def update_balance(self, balance: float):
        self.state.balance = balance
        self.save_state()

    # PositionStore
    async def get_open_position(self, symbol: str) -> Optional[Position]:
        for record in self.state.positions.values():
            if record['symbol'] == symbol and record['status'] == PositionStatus.OPEN.value:
                return Position.from_record(record)
        return None

    async def save_position(self, position: Position):
        self.state.positions[position.id] = position.to_record()
        self.save_state()

    async def delete_position(self, position_id: str):
        if self.state.positions.pop(position_id, None) is not None:
            self.save_state()

    # TradeLedger
    async def save_trade(self, trade: TradeRecord):
        record = trade.to_record()
        record['created_at'] = trade.timestamp.isoformat()
        self.state.trades.append(record)
        self.save_state()

    def get_trades(self, limit: int = 100) -> List[Dict[str, Any]]:
        return list(reversed(self.state.trades[-limit:]))

    # StatusStore
    async def update_bot_status(self, status: BotStatus, symbol: str):
        self.state.bot_status = {
            'status': status.value,
            'symbol': symbol,
            'updated_at': datetime.now().isoformat()
        }
        self.save_state()

    def clear_state(self):
        """Clear all state data"""
        try:
            if self.state_file.exists():
                self._create_backup()
                self.state_file.unlink()
            self.state = StoreState(balance=self.initial_balance)
            self.logger.info("Bot state cleared successfully")
        except Exception as e:
            self.logger.error(f"Error clearing bot state: {str(e)}")
            raise
