from datetime import timezone

from cryptosim_bot.core.base import (
    BotCommand,
    BotConfig,
    Candle,
    CandleSeries,
    ConfigManager,
    Position,
    PositionStatus
)
from fakes import T0, make_candles


class TestCandleSeries:
    def test_same_bucket_replaces_last_candle(self):
        series = CandleSeries(make_candles([1.0, 2.0]))
        last = series.last
        assert series.apply(Candle(time=last.time, open=2.0, high=2.5, low=2.0, close=2.4))
        assert len(series) == 2
        assert series.last.close == 2.4

    def test_newer_bucket_appends(self):
        series = CandleSeries(make_candles([1.0, 2.0]))
        assert series.apply(Candle(time=series.last.time + 60, open=2.0, high=3.0, low=2.0, close=3.0))
        assert list(series.closes()) == [1.0, 2.0, 3.0]

    def test_out_of_order_candle_is_dropped(self):
        series = CandleSeries(make_candles([1.0, 2.0, 3.0]))
        stale = Candle(time=series.to_list()[0].time, open=9.0, high=9.0, low=9.0, close=9.0)
        assert not series.apply(stale)
        assert list(series.closes()) == [1.0, 2.0, 3.0]

    def test_reset_sorts_history(self):
        series = CandleSeries()
        series.reset(list(reversed(make_candles([1.0, 2.0, 3.0]))), received_at=T0)
        assert list(series.closes()) == [1.0, 2.0, 3.0]
        assert series.last_update == T0

    def test_history_is_bounded(self):
        series = CandleSeries(make_candles([float(i) for i in range(10)]), maxlen=5)
        assert len(series) == 5
        assert series.to_list()[0].close == 5.0


class TestRecords:
    def test_candle_from_kline_uses_seconds(self):
        candle = Candle.from_kline([1704110400000, "100.0", "101.0", "99.0", "100.5", "12.3"])
        assert candle.time == 1704110400
        assert candle.close == 100.5

    def test_position_record_round_trip(self):
        position = Position(
            symbol="BTC",
            amount=0.5,
            entry_price=100.0,
            entry_time=T0,
            stop_loss_pct=2.0,
            take_profit_pct=5.0,
            highest_price=103.0
        )
        restored = Position.from_record(position.to_record())
        assert restored == position

    def test_position_from_row_without_peak(self):
        restored = Position.from_record({
            'id': 17,
            'symbol': 'ETH',
            'amount': '2',
            'entry_price': '10.0',
            'entry_time': '2024-01-01T12:00:00Z',
            'stop_loss': 2,
            'take_profit': 5,
            'status': 'OPEN'
        })
        assert restored.id == "17"
        assert restored.highest_price == 10.0
        assert restored.status == PositionStatus.OPEN
        assert restored.entry_time.tzinfo == timezone.utc

    def test_command_from_record(self):
        command = BotCommand.from_record({'id': 3, 'command': 'START', 'symbol': 'eth', 'processed': False})
        assert command == BotCommand(command='start', symbol='eth', id='3', processed=False)


class TestBotConfig:
    def test_defaults(self):
        config = BotConfig.from_dict({})
        assert config.symbol == "BTC"
        assert config.risk.stop_loss_percent == 2.0
        assert config.risk.take_profit_percent == 5.0
        assert config.risk.max_trade_balance_percent == 0.2
        assert config.cooldown_seconds == 60.0
        assert config.min_candles == 25
        assert not config.random_sizing.enabled

    def test_sections_are_read(self):
        config = BotConfig.from_dict({
            'trading': {
                'symbol': 'eth',
                'base_trade_amount': 0.5,
                'cooldown_seconds': 30,
                'random_sizing': {'enabled': True, 'max_amount': 250}
            },
            'risk_management': {'stop_loss_percent': 1.5, 'trailing_distance_percent': 0.8},
            'strategy': {'min_candles': 40}
        })
        assert config.symbol == "ETH"
        assert config.base_trade_amount == 0.5
        assert config.cooldown_seconds == 30.0
        assert config.random_sizing.enabled
        assert config.random_sizing.max_amount == 250.0
        assert config.risk.stop_loss_percent == 1.5
        assert config.risk.trailing_distance_percent == 0.8
        assert config.risk.take_profit_percent == 5.0
        assert config.min_candles == 40


class TestConfigManager:
    def test_update_writes_yaml(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("trading:\n  symbol: BTC\n", encoding='utf-8')

        manager = ConfigManager(str(path))
        manager.update_config({'strategy': {'min_candles': 30}})

        reloaded = ConfigManager(str(path)).get_config()
        assert reloaded == {'trading': {'symbol': 'BTC'}, 'strategy': {'min_candles': 30}}
