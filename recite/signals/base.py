"""
Signal dataclasses for the unified signal system.

Four types of signals:
- ScalarSignal: Numeric time series (noise floor, energy threshold, match score)
- TextSignal: Discrete text events (phrase boundaries, match decisions, errors)
- LineSignal: The line currently shown to the reader (or None when cleared)
- StateSignal: Session state and progress (idle/listening, completed count)
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class SignalLevel(Enum):
    """Log level for TextSignals."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True)
class Signal:
    """Base class for all signals."""
    timestamp: float = field(default_factory=time.monotonic)
    source: str = ""  # e.g., "matcher", "capture"

    def __post_init__(self):
        if self.timestamp == 0:
            self.timestamp = time.monotonic()


@dataclass(slots=True)
class ScalarSignal(Signal):
    """
    Signal for numeric time series data.

    Attributes:
        name: Identifier for this scalar ("noise_floor", "energy_threshold", "match_combined")
        value: The scalar value
    """
    name: str = ""
    value: float = 0.0


@dataclass(slots=True)
class TextSignal(Signal):
    """
    Signal for discrete text events.

    Attributes:
        category: Event category ("phrase", "match", "session", "capture")
        message: Human-readable message
        level: Severity level (debug, info, warning, error)
    """
    category: str = ""
    message: str = ""
    level: str = "info"

    @property
    def level_enum(self) -> SignalLevel:
        """Get level as enum."""
        try:
            return SignalLevel(self.level)
        except ValueError:
            return SignalLevel.INFO


@dataclass(slots=True)
class LineSignal(Signal):
    """
    Signal carrying a display update.

    Attributes:
        line: Serialized DisplayLine dict, or None when the display is cleared
    """
    line: Optional[dict] = None


@dataclass(slots=True)
class StateSignal(Signal):
    """
    Signal carrying session state.

    Attributes:
        state: "idle" or "listening"
        permission: "pending", "granted" or "denied"
        position: Current corpus position (-1 if none)
        completed_count: Number of distinct completed lines
        total_lines: Corpus size including the terminal line
        completed_ids: Sorted ids of the completed lines
    """
    state: str = "idle"
    permission: str = "pending"
    position: int = -1
    completed_count: int = 0
    total_lines: int = 0
    completed_ids: Tuple[str, ...] = ()


# Type alias for any signal type
AnySignal = Signal | ScalarSignal | TextSignal | LineSignal | StateSignal
