# cryptosim_bot/analytics/monitor.py
from typing import Dict, List, Optional, Any, Sequence
import pandas as pd
import numpy as np
from datetime import datetime, timezone
import logging
from dataclasses import dataclass, asdict
import asyncio
import requests
import telegram

from ..core.base import NotificationSink, Position, TradeRecord, Signal


@dataclass
class PerformanceMetrics:
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    profit_factor: float
    total_profit: float
    avg_profit_per_trade: float
    largest_win: float
    largest_loss: float


class PerformanceAnalytics:
    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def calculate_metrics(self, trades_df: pd.DataFrame) -> PerformanceMetrics:
        if trades_df.empty:
            return self._get_empty_metrics()

        pnl = trades_df['profit'].astype(float)
        wins = pnl[pnl > 0]
        losses = pnl[pnl <= 0]

        gross_loss = abs(losses.sum())
        profit_factor = wins.sum() / gross_loss if gross_loss > 0 else float('inf')

        return PerformanceMetrics(
            total_trades=len(pnl),
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / len(pnl),
            profit_factor=float(profit_factor),
            total_profit=float(pnl.sum()),
            avg_profit_per_trade=float(pnl.mean()),
            largest_win=float(np.max(pnl)),
            largest_loss=float(np.min(pnl))
        )

    def summarize(self, closed_positions: Sequence[Position]) -> Dict[str, Any]:
        trades_df = pd.DataFrame(
            [{'symbol': p.symbol, 'profit': p.profit} for p in closed_positions if p.profit is not None],
            columns=['symbol', 'profit']
        )
        return asdict(self.calculate_metrics(trades_df))

    def _get_empty_metrics(self) -> PerformanceMetrics:
        return PerformanceMetrics(
            total_trades=0,
            winning_trades=0,
            losing_trades=0,
            win_rate=0.0,
            profit_factor=0.0,
            total_profit=0.0,
            avg_profit_per_trade=0.0,
            largest_win=0.0,
            largest_loss=0.0
        )


def format_trade_message(trade: TradeRecord, balance: float) -> str:
    icon = '🟢' if trade.type == Signal.BUY else '🔴'
    return (
        f"{icon} {trade.type.value} {trade.amount:.6f} {trade.symbol} @ ${trade.price:,.2f}\n"
        f"Total: ${trade.total:,.2f}\n"
        f"Reason: {trade.reason}\n"
        f"Balance: ${balance:,.2f}"
    )


def format_status_message(report: Dict[str, Any]) -> str:
    balance = report.get('balance')
    lines = [
        f"📊 Market Analysis - {report['symbol']}/USDT @ ${report['price']:,.2f}",
        f"Trend: {report['trend_score']:.1f}% | Momentum: {report['momentum_score']:.1f}% | "
        f"Volatility: {report['volatility_score']:.1f}%",
        f"Probability: {report['probability']:.1f}% -> {report['action']}",
        f"Balance: ${balance:,.2f}" if balance is not None else "Balance: unavailable"
    ]
    if report.get('position'):
        position = report['position']
        lines.append(f"Open position: {position['amount']:.6f} @ ${position['entry_price']:,.2f}")
    return "\n".join(lines)


class TelegramNotifier(NotificationSink):
    def __init__(self, token: str, chat_id: str):
        self.logger = logging.getLogger(__name__)
        self.chat_id = chat_id
        self.bot = telegram.Bot(token=token)

    async def notify_trade(self, trade: TradeRecord, balance: float):
        await self.bot.send_message(chat_id=self.chat_id, text=format_trade_message(trade, balance))

    async def notify_status(self, report: Dict[str, Any]):
        await self.bot.send_message(chat_id=self.chat_id, text=format_status_message(report))


class DiscordNotifier(NotificationSink):
    def __init__(self, webhook_url: str, username: str = "Trading Bot", timeout: float = 10.0):
        self.logger = logging.getLogger(__name__)
        self.webhook_url = webhook_url
        self.username = username
        self.timeout = timeout

    async def notify_trade(self, trade: TradeRecord, balance: float):
        color = 0x00ff00 if trade.type == Signal.BUY else 0xff0000
        embed = {
            'title': f"{trade.type.value} {trade.symbol}/USDT",
            'color': color,
            'description': format_trade_message(trade, balance),
            'timestamp': trade.timestamp.isoformat()
        }
        await self._post(embed)

    async def notify_status(self, report: Dict[str, Any]):
        action = report['action']
        color = {'BUY': 0x00ff00, 'SELL': 0xff0000}.get(action, 0x808080)
        balance = report.get('balance')
        embed = {
            'title': f"📊 Market Analysis - {report['symbol']}/USDT",
            'color': color,
            'fields': [
                {'name': '📈 Trend', 'value': f"{report['trend_score']:.1f}%", 'inline': True},
                {'name': '🚀 Momentum', 'value': f"{report['momentum_score']:.1f}%", 'inline': True},
                {'name': '📉 Volatility', 'value': f"{report['volatility_score']:.1f}%", 'inline': True},
                {
                    'name': '🎯 Probability',
                    'value': f"**{report['probability']:.1f}%** chance of increase",
                    'inline': False
                },
                {
                    'name': 'Action',
                    'value': 'HOLD - Waiting for clearer signal' if action == 'HOLD' else f"**{action}**",
                    'inline': False
                },
                {
                    'name': '💰 Portfolio Balance',
                    'value': f"${balance:,.2f}" if balance is not None else 'n/a',
                    'inline': True
                }
            ],
            'footer': {'text': self.username},
            'timestamp': datetime.now(timezone.utc).isoformat()
        }
        await self._post(embed)

    async def _post(self, embed: Dict[str, Any]):
        payload = {'username': self.username, 'embeds': [embed]}
        response = await asyncio.to_thread(
            requests.post, self.webhook_url, json=payload, timeout=self.timeout
        )
        response.raise_for_status()


class CompositeNotifier(NotificationSink):
    """Fan out to several sinks; one failing sink does not stop the others"""

    def __init__(self, sinks: List[NotificationSink]):
        self.logger = logging.getLogger(__name__)
        self.sinks = sinks

    async def notify_trade(self, trade: TradeRecord, balance: float):
        await self._broadcast([sink.notify_trade(trade, balance) for sink in self.sinks])

    async def notify_status(self, report: Dict[str, Any]):
        await self._broadcast([sink.notify_status(report) for sink in self.sinks])

    async def _broadcast(self, sends: List[Any]):
        results = await asyncio.gather(*sends, return_exceptions=True)
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                self.logger.error(f"Error sending {type(sink).__name__} notification: {str(result)}")


def build_notifier(config: Dict[str, Any]) -> Optional[NotificationSink]:
    """Create the configured sinks; returns None when disabled or nothing is configured"""
    logger = logging.getLogger(__name__)
    if not config.get('enabled', True):
        logger.info("Notifications disabled in monitoring config")
        return None

    sinks: List[NotificationSink] = []

    if config.get('telegram_token') and config.get('telegram_chat_id'):
        try:
            sinks.append(TelegramNotifier(config['telegram_token'], config['telegram_chat_id']))
        except Exception as e:
            logger.error(f"Error initializing Telegram bot: {str(e)}")

    if config.get('discord_webhook_url'):
        sinks.append(DiscordNotifier(config['discord_webhook_url']))

    if not sinks:
        return None
    return CompositeNotifier(sinks)
