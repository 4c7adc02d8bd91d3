import pytest
import yaml

from cryptosim_bot.core.commands import InMemoryCommandChannel
from cryptosim_bot.core.state_manager import LocalStateStore
from cryptosim_bot.core.trader import BotController
from cryptosim_bot.setup import BotSetup

ENV_VARS = ['SUPABASE_URL', 'SUPABASE_KEY', 'TELEGRAM_TOKEN', 'TELEGRAM_CHAT_ID', 'DISCORD_WEBHOOK_URL']


def base_config():
    return {
        'trading': {'symbol': 'eth', 'base_trade_amount': 0.01, 'autostart': True},
        'risk_management': {'stop_loss_percent': 2.0, 'take_profit_percent': 5.0},
        'strategy': {'min_candles': 25},
        'monitoring': {'enabled': True},
        'storage': {'backend': 'local', 'state_path': 'state'}
    }


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, config):
    (tmp_path / 'config.yaml').write_text(yaml.safe_dump(config), encoding='utf-8')


class TestConfigLoading:
    def test_loads_sections_and_env_secrets(self, tmp_path, monkeypatch):
        monkeypatch.setenv('DISCORD_WEBHOOK_URL', 'https://discord.test/hook')
        write_config(tmp_path, base_config())

        setup = BotSetup('config.yaml', base_path=tmp_path)
        assert setup.config['trading']['symbol'] == 'eth'
        assert setup.config['monitoring']['discord_webhook_url'] == 'https://discord.test/hook'
        assert setup.config['storage']['supabase_url'] is None

    def test_missing_section_is_an_error(self, tmp_path):
        config = base_config()
        del config['risk_management']
        write_config(tmp_path, config)
        with pytest.raises(ValueError):
            BotSetup('config.yaml', base_path=tmp_path)

    def test_missing_file_is_an_error(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            BotSetup('config.yaml', base_path=tmp_path)


class TestValidation:
    def test_local_config_is_valid(self, tmp_path):
        write_config(tmp_path, base_config())
        assert BotSetup('config.yaml', base_path=tmp_path).validate_configuration()

    def test_supabase_requires_credentials(self, tmp_path):
        config = base_config()
        config['storage']['backend'] = 'supabase'
        write_config(tmp_path, config)
        assert not BotSetup('config.yaml', base_path=tmp_path).validate_configuration()

    def test_unknown_backend(self, tmp_path):
        config = base_config()
        config['storage']['backend'] = 'redis'
        write_config(tmp_path, config)
        assert not BotSetup('config.yaml', base_path=tmp_path).validate_configuration()

    def test_balance_fraction_must_be_a_fraction(self, tmp_path):
        config = base_config()
        config['risk_management']['max_trade_balance_percent'] = 20
        write_config(tmp_path, config)
        assert not BotSetup('config.yaml', base_path=tmp_path).validate_configuration()


class TestComponents:
    def test_local_components(self, tmp_path):
        write_config(tmp_path, base_config())
        setup = BotSetup('config.yaml', base_path=tmp_path)
        assert setup.setup_directory_structure()

        components = setup.initialize_components()
        assert isinstance(components['controller'], BotController)
        assert isinstance(components['store'], LocalStateStore)
        assert isinstance(components['commands'], InMemoryCommandChannel)
        assert components['notifier'] is None
        assert components['controller'].symbol == 'ETH'
        assert (tmp_path / 'state' / 'backups').is_dir()

    def test_monitoring_switch(self, tmp_path, monkeypatch):
        monkeypatch.setenv('DISCORD_WEBHOOK_URL', 'https://discord.test/hook')
        write_config(tmp_path, base_config())
        assert BotSetup('config.yaml', base_path=tmp_path).initialize_components()['notifier'] is not None

        config = base_config()
        config['monitoring']['enabled'] = False
        write_config(tmp_path, config)
        assert BotSetup('config.yaml', base_path=tmp_path).initialize_components()['notifier'] is None
