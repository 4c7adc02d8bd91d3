# cryptosim_bot/core/commands.py
from typing import Dict, List, Optional
import itertools
import logging

from .base import BotCommand, CommandChannel

START = "start"
STOP = "stop"
VALID_COMMANDS = (START, STOP)


class InMemoryCommandChannel(CommandChannel):
    """Command queue for the local backend; delivery is at-least-once like the database channel"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._commands: Dict[str, BotCommand] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._commands)

    def send(self, command: str, symbol: Optional[str] = None) -> BotCommand:
        if command not in VALID_COMMANDS:
            raise ValueError(f"Unknown bot command: {command}")
        cmd = BotCommand(command=command, symbol=symbol, id=str(next(self._ids)))
        self._commands[cmd.id] = cmd
        return cmd

    async def poll(self) -> List[BotCommand]:
        return [cmd for cmd in self._commands.values() if not cmd.processed]

    async def mark_processed(self, command_id: str):
        cmd = self._commands.pop(command_id, None)
        if cmd is not None:
            cmd.processed = True
