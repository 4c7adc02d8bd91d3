# cryptosim_bot/custom/__init__.py
"""
Indicators and the composite strategy.
"""
from .indicators import CustomIndicator, IndicatorResult
from .composite_strategy import CompositeProbabilityStrategy
