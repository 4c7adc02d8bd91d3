# cryptosim_bot/core/trader.py
from typing import Dict, List, Optional, Any, Callable, Awaitable, Set
import asyncio
import logging
from dataclasses import replace
from datetime import datetime

from .base import (
    BotConfig,
    BotState,
    BotStatus,
    BotCommand,
    Candle,
    CandleSeries,
    CommandChannel,
    MarketDataFeed,
    NotificationSink,
    PositionStore,
    StatusStore,
    Signal,
    StrategyResult,
    utc_now
)
from .commands import START, STOP
from .position_manager import PositionManager
from .risk_management import TradeExecutor, ExecutedTrade
from ..custom.composite_strategy import CompositeProbabilityStrategy, STRATEGY_NAME
from ..analytics.monitor import PerformanceAnalytics


class BotController:
    """
    Drives the decision pipeline for one account and one active symbol.

    Every state change (analysis ticks, trades, commands, symbol switches)
    runs under `self._lock`. Feed callbacks only enqueue candles; a single
    worker task drains the queue, so candle updates and heartbeat ticks can
    never interleave inside an analysis.
    """

    def __init__(
        self,
        config: BotConfig,
        feed: MarketDataFeed,
        evaluator: CompositeProbabilityStrategy,
        position_manager: PositionManager,
        executor: TradeExecutor,
        position_store: Optional[PositionStore] = None,
        command_channel: Optional[CommandChannel] = None,
        notifier: Optional[NotificationSink] = None,
        status_store: Optional[StatusStore] = None,
        analytics: Optional[PerformanceAnalytics] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.feed = feed
        self.evaluator = evaluator
        self.position_manager = position_manager
        self.executor = executor
        self.position_store = position_store
        self.command_channel = command_channel
        self.notifier = notifier
        self.status_store = status_store
        self.analytics = analytics
        self._clock = clock

        self.symbol = config.symbol
        self.candles = CandleSeries()
        self.state = BotState()

        self._lock = asyncio.Lock()
        self._events: asyncio.Queue = asyncio.Queue()
        self._cancel_feed: Optional[Callable[[], Any]] = None
        self._tasks: List[asyncio.Task] = []
        self._notify_tasks: Set[asyncio.Task] = set()
        self._last_trade_time: Dict[str, datetime] = {}
        self._handled_commands: Set[str] = set()
        self._session_start_balance: Optional[float] = None
        self._session_pnl_baseline = 0.0

    @property
    def is_running(self) -> bool:
        return self.state.status == BotStatus.RUNNING

    def get_state(self) -> BotState:
        """Snapshot of the bot state for the active symbol"""
        position = self.position_manager.get(self.symbol)
        return replace(
            self.state,
            last_analysis=list(self.state.last_analysis),
            cumulative_profit_loss=self.position_manager.total_realized_pnl,
            current_position=replace(position) if position is not None else None
        )

    # Lifecycle
    async def run(self):
        """Load the active symbol, rehydrate, then serve feed, commands and heartbeat"""
        try:
            self.logger.info(f"Starting bot controller on {self.symbol}...")
            await self.switch_symbol(self.symbol, force=True)

            if not await self.rehydrate():
                await self._publish_status()
                self.logger.info("Bot initialized. Waiting for commands...")

            self._tasks = [
                asyncio.create_task(self._candle_worker(), name="candle-worker"),
                asyncio.create_task(self._heartbeat_loop(), name="heartbeat")
            ]
            if self.command_channel is not None:
                self._tasks.append(asyncio.create_task(self._command_loop(), name="commands"))

            await asyncio.gather(*self._tasks)

        except asyncio.CancelledError:
            self.logger.info("Bot controller cancelled")
            raise
        except Exception as e:
            self.logger.error(f"Error running bot controller: {str(e)}")
            raise

    async def shutdown(self):
        """Stop background work; open positions and their persisted state are left as they are"""
        self.logger.info("Shutting down bot controller...")
        if self._cancel_feed is not None:
            self._cancel_feed()
            self._cancel_feed = None

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        async with self._lock:
            self.state.status = BotStatus.IDLE
            await self._publish_status()

        if self._notify_tasks:
            await asyncio.gather(*self._notify_tasks, return_exceptions=True)
        self.logger.info("Bot controller stopped")

    async def start(self) -> bool:
        async with self._lock:
            return await self._start_locked()

    async def stop(self) -> bool:
        async with self._lock:
            return await self._stop_locked()

    async def _start_locked(self) -> bool:
        if self.is_running:
            return False

        self.state.status = BotStatus.RUNNING
        self.state.last_rejection = None
        self._session_pnl_baseline = self.position_manager.total_realized_pnl
        try:
            self._session_start_balance = await self.executor.account.get_balance()
        except Exception as e:
            self._session_start_balance = None
            self.logger.error(f"Error reading balance at start, drawdown guard disabled: {str(e)}")

        await self._publish_status()
        self.logger.info(f"Bot STARTED on {self.symbol}")
        return True

    async def _stop_locked(self) -> bool:
        if not self.is_running:
            return False

        self.state.status = BotStatus.IDLE
        await self._publish_status()
        self.logger.warning("Bot STOPPED")

        position = self.position_manager.get(self.symbol)
        if position is not None:
            self.logger.warning(
                f"{self.symbol} position {position.id} stays open with no stop-loss or "
                f"take-profit checks until the bot is started again"
            )
        return True

    async def rehydrate(self) -> bool:
        """Restore a persisted OPEN position for the active symbol and resume RUNNING"""
        async with self._lock:
            await self._restore_open_position(self.symbol)
            if not self.position_manager.has_open(self.symbol):
                return False

            self.logger.info(f"Resuming with open {self.symbol} position after restart")
            await self._start_locked()
            return True

    async def _restore_open_position(self, symbol: str) -> bool:
        if self.position_manager.has_open(symbol):
            return True
        if self.position_store is None:
            return False

        try:
            position = await self.position_store.get_open_position(symbol)
        except Exception as e:
            self.state.persistence_failures += 1
            self.logger.error(f"Error loading open position for {symbol}: {str(e)}")
            return False

        if position is None or not self.position_manager.restore(position):
            return False

        self._last_trade_time[symbol] = position.entry_time
        return True

    # Symbol handling
    async def switch_symbol(self, symbol: str, force: bool = False):
        async with self._lock:
            await self._switch_symbol_locked(symbol, force)

    async def _switch_symbol_locked(self, symbol: str, force: bool = False):
        symbol = symbol.upper()
        if symbol == self.symbol and len(self.candles) > 0 and not force:
            return

        previous = self.position_manager.get(self.symbol)
        if previous is not None and symbol != self.symbol:
            self.logger.warning(
                f"Switching away from {self.symbol} with position {previous.id} open; "
                f"it gets no risk checks while {symbol} is active"
            )

        self.logger.info(f"Switching to {symbol}...")
        # The active symbol and its subscription stay untouched if the fetch fails
        history = await self.feed.fetch_history(symbol, self.config.interval, self.config.history_limit)

        if self._cancel_feed is not None:
            self._cancel_feed()
            self._cancel_feed = None

        self.symbol = symbol
        self.config.symbol = symbol
        self._drain_events()
        self.candles.reset(history, received_at=self._clock())
        self._cancel_feed = self.feed.subscribe(symbol, self.config.interval, self.on_candle)

        await self._restore_open_position(symbol)
        self.logger.info(f"Switched to {symbol}. Loaded {len(self.candles)} candles.")

    def _drain_events(self):
        while not self._events.empty():
            self._events.get_nowait()
            self._events.task_done()

    # Analysis
    def on_candle(self, candle: Candle):
        """Feed callback; only enqueues"""
        self._events.put_nowait(candle)

    async def process_candle(self, candle: Candle) -> List[StrategyResult]:
        async with self._lock:
            self.candles.apply(candle, received_at=self._clock())
            return await self._analyze_locked()

    async def analyze(self) -> List[StrategyResult]:
        async with self._lock:
            return await self._analyze_locked()

    async def _analyze_locked(self) -> List[StrategyResult]:
        if not self.is_running or len(self.candles) < self.config.min_candles:
            return self.state.last_analysis

        if self._is_stale():
            self.logger.warning(
                f"Latest {self.symbol} candle is older than "
                f"{self.config.max_candle_age_seconds:.0f}s, holding"
            )
            result = StrategyResult(name=STRATEGY_NAME, signal=Signal.HOLD, confidence=50.0)
            self.state.last_analysis = [result]
            self.state.last_signal = Signal.HOLD
            return self.state.last_analysis

        symbol = self.symbol
        price = self.candles.last.close

        exit_reason = None
        if self.position_manager.has_open(symbol):
            exit_reason = self.position_manager.check_risk(symbol, price)

        result = self.evaluator.evaluate(self.candles.to_list())
        self.state.last_analysis = [result]
        self.state.last_signal = result.signal
        self.logger.debug(f"{symbol} @ {price:.2f}: {self.evaluator.describe(self.state.last_analysis)}")

        if exit_reason is None and self.position_manager.has_open(symbol) and result.signal == Signal.SELL:
            exit_reason = self.position_manager.evaluate_exit(symbol, price, result.signal)

        if exit_reason is not None:
            await self._close_position(price, exit_reason.value)
        elif result.signal == Signal.BUY:
            await self._open_position(price, result)
        elif result.signal == Signal.SELL:
            self._reject(f"SELL ignored: no open {symbol} position")

        return self.state.last_analysis

    def _is_stale(self) -> bool:
        if self.config.max_candle_age_seconds <= 0 or self.candles.last_update is None:
            return False
        age = (self._clock() - self.candles.last_update).total_seconds()
        return age > self.config.max_candle_age_seconds

    def _cooldown_elapsed(self, symbol: str) -> bool:
        last = self._last_trade_time.get(symbol)
        if last is None:
            return True
        return (self._clock() - last).total_seconds() >= self.config.cooldown_seconds

    def _drawdown_exceeded(self) -> bool:
        limit = self.config.risk.max_drawdown_percent
        if limit <= 0 or not self._session_start_balance:
            return False
        session_pnl = self.position_manager.total_realized_pnl - self._session_pnl_baseline
        if session_pnl >= 0:
            return False
        return -session_pnl / self._session_start_balance * 100 >= limit

    def _reject(self, reason: str):
        if reason != self.state.last_rejection:
            self.logger.info(reason)
        self.state.last_rejection = reason

    # Trade decisions
    async def _open_position(self, price: float, result: StrategyResult):
        symbol = self.symbol
        if self.position_manager.has_open(symbol):
            self._reject(f"BUY ignored: {symbol} position already open")
            return
        if not self._cooldown_elapsed(symbol):
            self.logger.debug(f"BUY on {symbol} skipped: cooldown active")
            return
        if self._drawdown_exceeded():
            self._reject(
                f"BUY refused: session loss reached {self.config.risk.max_drawdown_percent}% drawdown limit"
            )
            return

        amount = self.executor.sizer.requested_amount(Signal.BUY, self.config.base_trade_amount, price)
        reason = f"Bot: {result.name} {result.confidence:.1f}%"
        executed = await self.executor.execute_trade(Signal.BUY, symbol, amount, price, reason)
        if executed is None:
            self._reject(f"BUY on {symbol} rejected by risk sizing")
            return

        now = self._clock()
        position = self.position_manager.open_position(symbol, executed.trade.amount, price, now)
        self._record_execution(symbol, executed, now)

        if self.position_store is not None:
            await self._persist(f"saving position {position.id}", lambda: self.position_store.save_position(position))
        self._notify_trade(executed)

    async def _close_position(self, price: float, reason: str):
        symbol = self.symbol
        position = self.position_manager.get(symbol)
        if position is None:
            return
        if not self._cooldown_elapsed(symbol):
            self.logger.debug(f"Exit on {symbol} ({reason}) deferred: cooldown active")
            return

        executed = await self.executor.execute_trade(Signal.SELL, symbol, position.amount, price, reason)
        if executed is None:
            return

        now = self._clock()
        closed = self.position_manager.close_position(symbol, price, reason, now)
        self.state.cumulative_profit_loss = self.position_manager.total_realized_pnl
        self._record_execution(symbol, executed, now)

        if self.position_store is not None:
            await self._persist(f"deleting position {closed.id}", lambda: self.position_store.delete_position(closed.id))
        self._notify_trade(executed)

    def _record_execution(self, symbol: str, executed: ExecutedTrade, now: datetime):
        self._last_trade_time[symbol] = now
        self.state.last_trade_time = now
        self.state.trades_count += 1
        self.state.last_rejection = None
        if not executed.persisted:
            self.state.persistence_failures += 1

    async def _persist(self, description: str, operation: Callable[[], Awaitable[Any]]):
        try:
            await operation()
        except Exception as e:
            self.state.persistence_failures += 1
            self.logger.error(
                f"Error {description}: {str(e)}. "
                f"Durability gap: runtime state is ahead of storage"
            )

    async def _publish_status(self):
        if self.status_store is None:
            return
        await self._persist(
            f"publishing {self.state.status.value} status",
            lambda: self.status_store.update_bot_status(self.state.status, self.symbol)
        )

    # Commands
    async def handle_command(self, command: BotCommand) -> bool:
        """Apply a start/stop command once; redelivered or processed commands are ignored"""
        if command.processed or (command.id is not None and command.id in self._handled_commands):
            self.logger.debug(f"Ignoring already processed command {command.id}")
            return False

        self.logger.info(f"Command received: {command.command.upper()}")
        async with self._lock:
            if command.command == START:
                if command.symbol:
                    await self._switch_symbol_locked(command.symbol)
                await self._start_locked()
                await self._analyze_locked()
            elif command.command == STOP:
                await self._stop_locked()
            else:
                self.logger.warning(f"Unknown command: {command.command}")

        if command.id is not None:
            self._handled_commands.add(command.id)
            if self.command_channel is not None:
                await self._persist(
                    f"marking command {command.id} processed",
                    lambda: self.command_channel.mark_processed(command.id)
                )
        command.processed = True
        return True

    async def poll_commands(self) -> int:
        try:
            commands = await self.command_channel.poll()
        except Exception as e:
            self.logger.error(f"Error polling commands: {str(e)}")
            return 0

        handled = 0
        for command in commands:
            try:
                if await self.handle_command(command):
                    handled += 1
            except Exception as e:
                self.logger.error(f"Error handling command {command.id}: {str(e)}")
        return handled

    # Background loops
    async def _candle_worker(self):
        while True:
            candle = await self._events.get()
            try:
                await self.process_candle(candle)
            except Exception as e:
                self.logger.error(f"Error processing candle for {self.symbol}: {str(e)}")
            finally:
                self._events.task_done()

    async def _command_loop(self):
        while True:
            await self.poll_commands()
            await asyncio.sleep(self.config.command_poll_seconds)

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.config.heartbeat_seconds)
            try:
                await self.heartbeat()
            except Exception as e:
                self.logger.error(f"Error in heartbeat: {str(e)}")

    async def heartbeat(self) -> Optional[Dict[str, Any]]:
        """Re-run analysis and send a periodic status report"""
        if not self.is_running or len(self.candles) == 0:
            return None

        results = await self.analyze()
        price = self.candles.last.close
        self.logger.info(f"Analyzing {self.symbol} @ ${price:.2f}...")

        try:
            balance = await self.executor.account.get_balance()
        except Exception as e:
            self.logger.error(f"Error reading balance for status report: {str(e)}")
            balance = None

        report = self._build_report(results, price, balance)
        self._fire_and_forget(lambda: self.notifier.notify_status(report))
        return report

    def _build_report(
        self,
        results: List[StrategyResult],
        price: float,
        balance: Optional[float]
    ) -> Dict[str, Any]:
        result = results[0] if results else None
        components = result.components if result else {}
        position = self.position_manager.get(self.symbol)

        report = {
            'symbol': self.symbol,
            'price': price,
            'action': self.state.last_signal.value,
            'probability': result.confidence if result else 50.0,
            'trend_score': components.get('trend', 50.0),
            'momentum_score': components.get('momentum', 50.0),
            'volatility_score': components.get('volatility', 50.0),
            'balance': balance,
            'position': position.to_record() if position else None,
            'cumulative_profit_loss': self.position_manager.total_realized_pnl
        }
        if self.analytics is not None:
            report['performance'] = self.analytics.summarize(self.position_manager.closed_positions)
        return report

    # Notifications
    def _notify_trade(self, executed: ExecutedTrade):
        self._fire_and_forget(lambda: self.notifier.notify_trade(executed.trade, executed.balance_after))

    def _fire_and_forget(self, send: Callable[[], Awaitable[Any]]):
        if self.notifier is None:
            return
        task = asyncio.create_task(self._safe_notify(send))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _safe_notify(self, send: Callable[[], Awaitable[Any]]):
        try:
            await send()
        except Exception as e:
            self.logger.warning(f"Notification failed: {str(e)}")
