"""
Simulated crypto trading bot: composite-signal strategy, position risk
management and a command-driven controller.
"""
__version__ = '0.1.0'
