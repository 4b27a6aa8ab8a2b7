"""
SignalBus - pub/sub between the matcher and its observers.

The matcher publishes from the capture thread and must never block on a
slow observer, so publish() only enqueues. Delivery happens either on a
background dispatcher thread (CLI, web) or synchronously through
dispatch_pending() (tests).
"""

import logging
import queue
import threading
from typing import Callable, Dict, List, Optional, Type

from recite.signals.base import AnySignal, Signal

logger = logging.getLogger(__name__)

Callback = Callable[[AnySignal], None]


class Subscription:
    """One observer: a callback plus optional signal type and source filters."""

    def __init__(
        self,
        callback: Callback,
        signal_type: Optional[Type[Signal]] = None,
        source_filter: Optional[str] = None,
    ):
        self.callback = callback
        self.signal_type = signal_type
        self.source_filter = source_filter
        self.active = True
        self.received_count = 0
        self.error_count = 0

    def wants(self, signal: Signal) -> bool:
        if not self.active:
            return False
        if self.signal_type is not None and not isinstance(signal, self.signal_type):
            return False
        return self.source_filter is None or signal.source == self.source_filter

    def deliver(self, signal: Signal) -> None:
        self.received_count += 1
        try:
            self.callback(signal)
        except Exception as e:
            # An observer failing must not stall the matcher's output
            self.error_count += 1
            logger.warning("signal_callback_failed", extra={"signal": type(signal).__name__, "error": str(e)})

    def describe(self) -> dict:
        return {
            "type": self.signal_type.__name__ if self.signal_type else "all",
            "source": self.source_filter or "all",
            "received": self.received_count,
            "errors": self.error_count,
        }


class SignalBus:
    """
    Bounded signal queue with fan-out to subscriptions.

    Usage:
        bus = SignalBus()
        bus.subscribe(LineSignal, show_line)
        bus.start()
        ...
        bus.stop()
    """

    def __init__(self, dispatch_queue_size: int = 1000):
        self._pending: queue.Queue = queue.Queue(maxsize=dispatch_queue_size)
        self._subscriptions: List[Subscription] = []
        self._subscriptions_lock = threading.Lock()

        self._worker: Optional[threading.Thread] = None
        self._halt = threading.Event()

        self._published = 0
        self._dispatched = 0
        self._dropped = 0
        self._dropped_by_type: Dict[str, int] = {}

    @property
    def is_running(self) -> bool:
        return self._worker is not None

    def start(self) -> None:
        """Deliver signals from a daemon thread until stop()."""
        if self._worker is not None:
            return
        self._halt.clear()
        self._worker = threading.Thread(target=self._run, name="SignalBusDispatcher", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 2.0) -> None:
        worker = self._worker
        if worker is None:
            return
        self._halt.set()
        if worker.is_alive():
            worker.join(timeout=timeout)
        self._worker = None

    def publish(self, signal: Signal) -> bool:
        """Queue a signal; False (and counted) when the queue is full."""
        try:
            self._pending.put_nowait(signal)
        except queue.Full:
            self._dropped += 1
            kind = type(signal).__name__
            self._dropped_by_type[kind] = self._dropped_by_type.get(kind, 0) + 1
            if self._dropped_by_type[kind] == 1:
                # Observers will be stale until the next signal of this type
                logger.warning("signal_dropped", extra={"signal": kind, "queue_size": self._pending.maxsize})
            return False
        self._published += 1
        return True

    def subscribe(
        self,
        signal_type: Optional[Type[Signal]] = None,
        callback: Optional[Callback] = None,
        source_filter: Optional[str] = None,
    ) -> Subscription:
        """Register callback for signal_type (None for every type)."""
        if callback is None:
            raise ValueError("callback is required")
        subscription = Subscription(callback, signal_type, source_filter)
        with self._subscriptions_lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        subscription.active = False
        with self._subscriptions_lock:
            if subscription not in self._subscriptions:
                return False
            self._subscriptions.remove(subscription)
            return True

    def dispatch_pending(self) -> int:
        """Deliver everything queued on the calling thread; returns the count."""
        delivered = 0
        while True:
            try:
                signal = self._pending.get_nowait()
            except queue.Empty:
                return delivered
            self._fan_out(signal)
            delivered += 1

    def _fan_out(self, signal: Signal) -> None:
        with self._subscriptions_lock:
            targets = [s for s in self._subscriptions if s.wants(signal)]
        for subscription in targets:
            subscription.deliver(signal)
        self._dispatched += 1

    def _run(self) -> None:
        while not self._halt.is_set():
            try:
                signal = self._pending.get(timeout=0.1)
            except queue.Empty:
                continue
            self._fan_out(signal)

    def get_stats(self) -> dict:
        with self._subscriptions_lock:
            subscribers = [s.describe() for s in self._subscriptions]
        return {
            "published": self._published,
            "dispatched": self._dispatched,
            "dropped": self._dropped,
            "dropped_by_type": dict(self._dropped_by_type),
            "queue_size": self._pending.qsize(),
            "subscribers": subscribers,
        }
