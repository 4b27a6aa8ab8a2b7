"""SignalPublisher mixin: typed publish helpers stamped with the component's name."""

import time
from typing import TYPE_CHECKING, Iterable, Optional

from recite.signals.base import LineSignal, ScalarSignal, Signal, StateSignal, TextSignal

if TYPE_CHECKING:
    from recite.signals.bus import SignalBus


class SignalPublisher:
    """
    Mixin for components that report to a SignalBus.

    Every helper returns False when no bus is attached, so components work
    unchanged without observers.

    Usage:
        class Matcher(SignalPublisher):
            def __init__(self, bus):
                SignalPublisher.__init__(self, bus, "matcher")
    """

    def __init__(self, signal_bus: Optional["SignalBus"] = None, source_name: str = ""):
        self._signal_bus = signal_bus
        self._source_name = source_name

    @property
    def has_signal_bus(self) -> bool:
        return self._signal_bus is not None

    def _emit(self, signal: Signal) -> bool:
        if self._signal_bus is None:
            return False
        signal.timestamp = time.monotonic()
        signal.source = self._source_name
        return self._signal_bus.publish(signal)

    def publish_text(self, category: str, message: str, level: str = "info") -> bool:
        return self._emit(TextSignal(category=category, message=message, level=level))

    def publish_scalar(self, name: str, value: float) -> bool:
        return self._emit(ScalarSignal(name=name, value=float(value)))

    def publish_line(self, line: Optional[dict]) -> bool:
        """Display update; None clears the display."""
        return self._emit(LineSignal(line=line))

    def publish_state(
        self,
        state: str,
        permission: str,
        position: int,
        completed_count: int,
        total_lines: int,
        completed_ids: Iterable[str] = (),
    ) -> bool:
        return self._emit(StateSignal(
            state=state,
            permission=permission,
            position=position,
            completed_count=completed_count,
            total_lines=total_lines,
            completed_ids=tuple(sorted(completed_ids)),
        ))
