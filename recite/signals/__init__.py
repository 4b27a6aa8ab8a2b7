"""
Signal system for observing the matcher.

This module provides:
- Signal dataclasses (ScalarSignal, TextSignal, LineSignal, StateSignal)
- SignalBus for pub/sub event distribution
- SignalPublisher mixin for components
"""

from recite.signals.base import (
    Signal,
    ScalarSignal,
    TextSignal,
    LineSignal,
    StateSignal,
    SignalLevel,
    AnySignal,
)
from recite.signals.bus import SignalBus, Subscription
from recite.signals.publisher import SignalPublisher

__all__ = [
    # Base signals
    "Signal",
    "ScalarSignal",
    "TextSignal",
    "LineSignal",
    "StateSignal",
    "SignalLevel",
    "AnySignal",
    # Infrastructure
    "SignalBus",
    "Subscription",
    "SignalPublisher",
]
