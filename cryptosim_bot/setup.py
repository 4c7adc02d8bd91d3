# cryptosim_bot/setup.py
from pathlib import Path
from queue import Queue
import yaml
import logging
import logging.handlers
from typing import Dict, Any, Optional
import os
from dotenv import load_dotenv

from . import __version__
from .core.base import BotConfig, ConfigManager
from .core.commands import InMemoryCommandChannel
from .core.market_feed import BinanceMarketFeed
from .core.position_manager import PositionManager
from .core.risk_management import RiskSizer, Account, TradeExecutor
from .core.state_manager import LocalStateStore
from .core.trader import BotController
from .custom.composite_strategy import CompositeProbabilityStrategy
from .analytics.monitor import PerformanceAnalytics, build_notifier

REQUIRED_SECTIONS = ['trading', 'risk_management', 'strategy', 'monitoring', 'storage']
STORAGE_BACKENDS = ('local', 'supabase')


class BotSetup:
    def __init__(self, config_path: str, base_path: Optional[Path] = None):
        self.version = __version__
        self.base_path = Path(base_path) if base_path else Path.cwd()
        self.config_path = config_path
        self.logger = self._setup_logging()
        self._log_listener: Optional[logging.handlers.QueueListener] = None

        self._load_environment()
        self.config = self._load_config()

    def _load_environment(self):
        """Load environment variables from .env file"""
        env_path = self.base_path / '.env'
        if not env_path.exists():
            self.logger.info(f".env file not found at: {env_path}")
        load_dotenv(env_path)

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from yaml file"""
        try:
            config_file = self.base_path / self.config_path
            self.logger.info(f"Loading config from: {config_file}")

            if not config_file.exists():
                raise FileNotFoundError(f"Config file not found at: {config_file}")

            config = ConfigManager(str(config_file)).get_config()

            missing_sections = [section for section in REQUIRED_SECTIONS if section not in config]
            if missing_sections:
                raise ValueError(f"Missing required config sections: {missing_sections}")

            # Secrets only come from the environment
            storage = config['storage'] or {}
            storage['supabase_url'] = os.getenv('SUPABASE_URL')
            storage['supabase_key'] = os.getenv('SUPABASE_KEY')
            config['storage'] = storage

            monitoring = config['monitoring'] or {}
            monitoring['telegram_token'] = os.getenv('TELEGRAM_TOKEN')
            monitoring['telegram_chat_id'] = os.getenv('TELEGRAM_CHAT_ID')
            monitoring['discord_webhook_url'] = os.getenv('DISCORD_WEBHOOK_URL')
            config['monitoring'] = monitoring

            self.logger.info("Config loaded successfully")
            return config

        except yaml.YAMLError as e:
            self.logger.error(f"Failed to parse YAML config: {str(e)}")
            raise
        except Exception as e:
            self.logger.error(f"Failed to load config: {str(e)}")
            raise

    def _setup_logging(self) -> logging.Logger:
        """Setup logging configuration"""
        logger = logging.getLogger('cryptosim_bot')
        logger.setLevel(logging.INFO)

        # Avoid adding duplicate handlers
        if not logger.handlers:
            log_dir = self.base_path / 'logs'
            log_dir.mkdir(parents=True, exist_ok=True)

            fh = logging.FileHandler(log_dir / 'cryptosim_bot.log', encoding='utf-8')
            fh.setLevel(logging.INFO)

            ch = logging.StreamHandler()
            ch.setLevel(logging.INFO)

            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            fh.setFormatter(formatter)
            ch.setFormatter(formatter)

            logger.addHandler(fh)
            logger.addHandler(ch)

        return logger

    def setup_directory_structure(self) -> bool:
        """Create the directories the bot writes to"""
        try:
            state_path = self.config['storage'].get('state_path', 'state')
            for directory in ['logs', state_path, f"{state_path}/backups"]:
                (self.base_path / directory).mkdir(parents=True, exist_ok=True)

            self.logger.info("Directory structure created successfully")
            return True
        except Exception as e:
            self.logger.error(f"Error creating directory structure: {str(e)}")
            return False

    def validate_configuration(self) -> bool:
        """Validate the loaded configuration"""
        try:
            backend = self.config['storage'].get('backend', 'local')
            if backend not in STORAGE_BACKENDS:
                self.logger.error(f"Unknown storage backend: {backend}")
                return False

            if backend == 'supabase':
                storage = self.config['storage']
                if not storage.get('supabase_url') or not storage.get('supabase_key'):
                    self.logger.error("SUPABASE_URL and SUPABASE_KEY are required for the supabase backend")
                    return False

            bot_config = BotConfig.from_dict(self.config)
            risk = bot_config.risk
            if not 0 < risk.max_trade_balance_percent <= 1:
                self.logger.error("risk_management.max_trade_balance_percent must be a fraction in (0, 1]")
                return False
            if risk.stop_loss_percent <= 0 or risk.take_profit_percent <= 0:
                self.logger.error("Stop-loss and take-profit percentages must be positive")
                return False
            if bot_config.base_trade_amount <= 0 and not bot_config.random_sizing.enabled:
                self.logger.error("trading.base_trade_amount must be positive")
                return False
            if bot_config.random_sizing.enabled and bot_config.random_sizing.max_amount <= 0:
                self.logger.error("trading.random_sizing.max_amount must be positive when enabled")
                return False
            if bot_config.min_candles < 21:
                self.logger.error("strategy.min_candles must cover the 21-period EMA")
                return False

            self.logger.info("Config validated successfully")
            return True

        except Exception as e:
            self.logger.error(f"Error validating configuration: {str(e)}")
            return False

    def _create_stores(self) -> Dict[str, Any]:
        storage = self.config['storage']
        backend = storage.get('backend', 'local')

        if backend == 'supabase':
            from .database.supabase_store import SupabaseStore, SupabaseLogHandler

            store = SupabaseStore(storage['supabase_url'], storage['supabase_key'])
            if storage.get('ship_logs', True):
                self._start_log_shipping(SupabaseLogHandler(store))
            return {'store': store, 'commands': store}

        local_config = dict(storage)
        local_config['state_path'] = str(self.base_path / storage.get('state_path', 'state'))
        return {'store': LocalStateStore(local_config), 'commands': InMemoryCommandChannel()}

    def _start_log_shipping(self, handler: logging.Handler):
        """Forward bot logs to the database through a background listener thread"""
        handler.setFormatter(logging.Formatter('%(message)s'))
        log_queue: Queue = Queue(-1)
        self.logger.addHandler(logging.handlers.QueueHandler(log_queue))
        self._log_listener = logging.handlers.QueueListener(log_queue, handler)
        self._log_listener.start()

    def stop_log_shipping(self):
        if self._log_listener is not None:
            self._log_listener.stop()
            self._log_listener = None

    def initialize_components(self) -> Dict[str, Any]:
        """Initialize all bot components"""
        try:
            self.logger.info("Starting component initialization...")
            bot_config = BotConfig.from_dict(self.config)

            stores = self._create_stores()
            store = stores['store']
            self.logger.info(f"Storage initialized ({self.config['storage'].get('backend', 'local')})")

            feed = BinanceMarketFeed(self.config.get('market_data', {}))
            evaluator = CompositeProbabilityStrategy(self.config['strategy'])
            position_manager = PositionManager(bot_config.risk)

            account = Account(store)
            sizer = RiskSizer(bot_config.risk, bot_config.random_sizing)
            executor = TradeExecutor(account, sizer, ledger=store)

            notifier = build_notifier(self.config['monitoring'])
            if notifier is None:
                self.logger.info("No notification sinks configured")

            controller = BotController(
                config=bot_config,
                feed=feed,
                evaluator=evaluator,
                position_manager=position_manager,
                executor=executor,
                position_store=store,
                command_channel=stores['commands'],
                notifier=notifier,
                status_store=store,
                analytics=PerformanceAnalytics()
            )

            components = {
                'store': store,
                'commands': stores['commands'],
                'feed': feed,
                'evaluator': evaluator,
                'position_manager': position_manager,
                'account': account,
                'executor': executor,
                'notifier': notifier,
                'controller': controller
            }

            self.logger.info("All components initialized successfully")
            return components

        except Exception as e:
            self.logger.error(f"Error initializing components: {str(e)}")
            raise
