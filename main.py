#!/usr/bin/env python3
from cryptosim_bot.setup import BotSetup
from cryptosim_bot.core.commands import InMemoryCommandChannel, START
from cryptosim_bot.core.state_manager import LocalStateStore
import argparse
import asyncio
import logging
import signal
import sys

# Force UTF-8 encoding for stdout/stderr
if sys.stdout.encoding != 'utf-8':
    sys.stdout.reconfigure(encoding='utf-8')
if sys.stderr.encoding != 'utf-8':
    sys.stderr.reconfigure(encoding='utf-8')

logger = logging.getLogger('cryptosim_bot.main')


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulated crypto trading bot")
    parser.add_argument('--config', default='config.yaml', help="Path to the YAML config file")
    parser.add_argument(
        '--reset-state',
        action='store_true',
        help="Back up and clear the local state file before starting"
    )
    return parser.parse_args(argv)


def handle_exception(loop, context):
    """Global exception handler"""
    exception = context.get('exception')
    if exception:
        logger.error(f"Caught exception: {exception.__class__.__name__}: {str(exception)}")
    else:
        logger.error(f"Caught exception: {context.get('message')}")


async def main(args: argparse.Namespace) -> int:
    setup = None
    controller = None
    try:
        setup = BotSetup(args.config)
        logger.info(f"Initializing Crypto Sim Bot v{setup.version}...")

        if not setup.setup_directory_structure():
            return 1

        if not setup.validate_configuration():
            logger.error("Invalid configuration. Exiting...")
            return 1

        components = setup.initialize_components()
        controller = components['controller']
        store = components['store']
        commands = components['commands']

        if args.reset_state:
            if isinstance(store, LocalStateStore):
                store.clear_state()
            else:
                logger.warning("--reset-state only applies to the local backend, ignoring")

        if setup.config['trading'].get('autostart') and isinstance(commands, InMemoryCommandChannel):
            commands.send(START)
            logger.info("Autostart enabled, start command queued")

        loop = asyncio.get_running_loop()
        loop.set_exception_handler(handle_exception)

        run_task = asyncio.create_task(controller.run(), name="controller")

        def request_shutdown():
            logger.info("Shutdown signal received")
            run_task.cancel()

        if sys.platform != 'win32':
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, request_shutdown)
        else:
            signal.signal(signal.SIGINT, lambda s, f: loop.call_soon_threadsafe(request_shutdown))
            signal.signal(signal.SIGTERM, lambda s, f: loop.call_soon_threadsafe(request_shutdown))

        try:
            await run_task
        except asyncio.CancelledError:
            logger.info("Controller task cancelled")
        return 0

    except Exception as e:
        logger.error(f"Error in main: {str(e)}")
        return 1
    finally:
        if controller is not None:
            await controller.shutdown()
        if setup is not None:
            setup.stop_log_shipping()
        logger.info("Trading bot shutdown complete")


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main(parse_args())))
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
