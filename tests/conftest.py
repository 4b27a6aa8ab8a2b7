"""Shared fixtures and fakes for the matcher tests."""

from typing import Callable, Dict, List, Optional

import numpy as np
import pytest

from recite.corpus import FeatureFrame, ReferenceCorpus, ReferencePhrase
from recite.engine import MatchStateMachine
from recite.matching import AttentionScorer
from recite.signals import SignalBus

# 2048 samples at 48 kHz
FRAME_SECONDS = 2048 / 48000

SPEECH_ENERGY = 0.2
LEAD_SILENCE_FRAMES = 20
END_SILENCE_FRAMES = 12


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Records scheduled callbacks; tests fire them explicitly."""

    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def fire_all(self) -> None:
        """Run every scheduled callback, cancelled or not."""
        for timer in list(self.timers):
            timer.callback()


class FakeCapture:
    """Frame source that hands the consumer back to the test."""

    def __init__(self, granted: bool = True):
        self.granted = granted
        self.on_frame = None
        self.start_calls = 0
        self.stop_calls = 0

    def start(self, on_frame) -> bool:
        self.start_calls += 1
        if not self.granted:
            return False
        self.on_frame = on_frame
        return True

    def stop(self) -> None:
        self.stop_calls += 1
        self.on_frame = None


class TableDistance:
    """Distance function returning a fixed value per corpus index."""

    def __init__(self, corpus: ReferenceCorpus, default: float = 5.0):
        self._index_by_array = {id(phrase.normalized): phrase.index for phrase in corpus}
        self.distances: Dict[int, float] = {}
        self.default = default
        self.calls: List[int] = []

    def __call__(self, reference, spoken, band_ratio) -> float:
        index = self._index_by_array[id(reference)]
        self.calls.append(index)
        return self.distances.get(index, self.default)


def make_corpus(size: int, frames_per_phrase: int = 20, duration: float = 1.3, seed: int = 7) -> ReferenceCorpus:
    """Real phrases 0..size-1 with random reference frames, plus the terminal."""
    rng = np.random.default_rng(seed)
    phrases = [
        ReferencePhrase(
            id=f"{index + 1}a",
            index=index,
            text_primary=f"primary {index}",
            text_secondary=f"secondary {index}",
            duration_seconds=duration,
            frames=rng.normal(size=(frames_per_phrase, 12)),
            filename=f"{index + 1}a.wav",
        )
        for index in range(size)
    ]
    return ReferenceCorpus.from_real_phrases(phrases)


def speech_frame(rng: np.random.Generator, energy: float = SPEECH_ENERGY) -> FeatureFrame:
    return FeatureFrame.from_raw(rng.normal(size=12), energy)


def silent_frame(energy: float = 0.0) -> FeatureFrame:
    return FeatureFrame(mfcc=None, energy=energy)


class Speaker:
    """Drives a machine with synthetic frames on a fake clock."""

    def __init__(self, machine: MatchStateMachine, clock: FakeClock, seed: int = 3):
        self.machine = machine
        self.clock = clock
        self.rng = np.random.default_rng(seed)

    def feed(self, frame: FeatureFrame):
        self.clock.advance(FRAME_SECONDS)
        return self.machine.ingest_frame(frame)

    def silence(self, frames: int = LEAD_SILENCE_FRAMES, energy: float = 0.0005) -> list:
        return [self.feed(silent_frame(energy)) for _ in range(frames)]

    def speech(self, frames: int, energy: float = SPEECH_ENERGY) -> list:
        return [self.feed(speech_frame(self.rng, energy)) for _ in range(frames)]

    def end(self) -> list:
        return [self.feed(silent_frame()) for _ in range(END_SILENCE_FRAMES)]

    def phrase(self, frames: int = 20, energy: float = SPEECH_ENERGY) -> list:
        """Lead silence, speech, then enough silence to end the phrase."""
        return self.silence() + self.speech(frames, energy) + self.end()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def scheduler():
    return FakeScheduler()


@pytest.fixture()
def bus():
    """Bus without a dispatcher thread; tests call dispatch_pending()."""
    return SignalBus()


def build_machine(
    corpus: ReferenceCorpus,
    clock: FakeClock,
    scheduler: FakeScheduler,
    bus: Optional[SignalBus] = None,
    capture=None,
    distance: Optional[TableDistance] = None,
) -> MatchStateMachine:
    scorer = AttentionScorer(corpus, distance_fn=distance) if distance is not None else None
    return MatchStateMachine(
        corpus,
        capture=capture,
        signal_bus=bus,
        scorer=scorer,
        clock=clock,
        scheduler=scheduler,
    )
