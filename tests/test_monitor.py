import asyncio
import math

import pytest

from cryptosim_bot.analytics.monitor import (
    CompositeNotifier,
    DiscordNotifier,
    PerformanceAnalytics,
    build_notifier,
    format_status_message,
    format_trade_message
)
from cryptosim_bot.core.base import Position, PositionStatus, Signal, TradeRecord
from fakes import FailingNotifier, RecordingNotifier, T0


def closed_position(profit: float) -> Position:
    return Position(
        symbol="BTC",
        amount=1.0,
        entry_price=100.0,
        entry_time=T0,
        stop_loss_pct=2.0,
        take_profit_pct=5.0,
        highest_price=100.0,
        status=PositionStatus.CLOSED,
        exit_price=100.0 + profit,
        profit=profit
    )


def sample_report(**overrides):
    report = {
        'symbol': 'BTC',
        'price': 42000.0,
        'action': 'HOLD',
        'probability': 51.5,
        'trend_score': 70.0,
        'momentum_score': 50.0,
        'volatility_score': 30.0,
        'balance': 10000.0,
        'position': None
    }
    report.update(overrides)
    return report


class TestPerformanceAnalytics:
    def test_empty_summary(self):
        summary = PerformanceAnalytics().summarize([])
        assert summary['total_trades'] == 0
        assert summary['win_rate'] == 0.0

    def test_summary_of_closed_positions(self):
        summary = PerformanceAnalytics().summarize([
            closed_position(10.0),
            closed_position(-4.0),
            closed_position(6.0)
        ])
        assert summary['total_trades'] == 3
        assert summary['winning_trades'] == 2
        assert summary['losing_trades'] == 1
        assert summary['win_rate'] == pytest.approx(2 / 3)
        assert summary['total_profit'] == pytest.approx(12.0)
        assert summary['profit_factor'] == pytest.approx(4.0)
        assert summary['largest_win'] == 10.0
        assert summary['largest_loss'] == -4.0

    def test_profit_factor_without_losses(self):
        summary = PerformanceAnalytics().summarize([closed_position(5.0)])
        assert math.isinf(summary['profit_factor'])


class TestMessages:
    def test_trade_message(self):
        trade = TradeRecord(Signal.SELL, "BTC", 0.5, 42000.0, 21000.0, "take profit")
        message = format_trade_message(trade, 10500.0)
        assert "SELL 0.500000 BTC @ $42,000.00" in message
        assert "Reason: take profit" in message
        assert "Balance: $10,500.00" in message

    def test_status_message_with_position(self):
        message = format_status_message(sample_report(
            balance=None,
            position={'amount': 0.25, 'entry_price': 41000.0}
        ))
        assert "BTC/USDT @ $42,000.00" in message
        assert "Probability: 51.5% -> HOLD" in message
        assert "Balance: unavailable" in message
        assert "Open position: 0.250000 @ $41,000.00" in message


class TestNotifiers:
    def test_composite_isolates_failures(self):
        recorder = RecordingNotifier()
        notifier = CompositeNotifier([FailingNotifier(), recorder])
        asyncio.run(notifier.notify_status(sample_report()))
        assert len(recorder.reports) == 1

    def test_build_notifier_without_sinks(self):
        assert build_notifier({}) is None

    def test_build_notifier_with_discord(self):
        notifier = build_notifier({'discord_webhook_url': 'https://discord.test/hook'})
        assert isinstance(notifier, CompositeNotifier)
        assert isinstance(notifier.sinks[0], DiscordNotifier)

    def test_disabled_monitoring_builds_no_sinks(self):
        assert build_notifier({'enabled': False, 'discord_webhook_url': 'https://discord.test/hook'}) is None

    def test_discord_posts_embed(self, monkeypatch):
        calls = []

        class Response:
            def raise_for_status(self):
                pass

        def fake_post(url, json=None, timeout=None):
            calls.append((url, json))
            return Response()

        monkeypatch.setattr("cryptosim_bot.analytics.monitor.requests.post", fake_post)
        notifier = DiscordNotifier("https://discord.test/hook")
        asyncio.run(notifier.notify_status(sample_report(action='BUY')))

        url, payload = calls[0]
        embed = payload['embeds'][0]
        assert url == "https://discord.test/hook"
        assert embed['color'] == 0x00ff00
        assert embed['fields'][4]['value'] == "**BUY**"
