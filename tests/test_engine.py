"""Tests for the MatchStateMachine session controller."""

import threading

import pytest

from recite.corpus import TERMINAL_ID, ReferenceCorpus
from recite.detection import VADEventType
from recite.engine import Permission, SessionState
from recite.engine.state import MAX_FAILURE_STREAK, MatchState
from recite.matching import ConfidenceLevel
from recite.signals import LineSignal, StateSignal, TextSignal

from conftest import (
    FakeCapture,
    Speaker,
    TableDistance,
    build_machine,
    make_corpus,
)


class SlowTeardownCapture:
    """Capture whose start() is a no-op while running and whose stop() blocks."""

    def __init__(self):
        self.running = False
        self.start_calls = 0
        self.tearing_down = threading.Event()
        self.finish_teardown = threading.Event()

    def start(self, on_frame) -> bool:
        self.start_calls += 1
        self.running = True
        return True

    def stop(self) -> None:
        if not self.running:
            return
        self.tearing_down.set()
        self.finish_teardown.wait(timeout=2.0)
        self.running = False


@pytest.fixture()
def corpus():
    return make_corpus(3)


@pytest.fixture()
def distance(corpus):
    return TableDistance(corpus)


@pytest.fixture()
def machine(corpus, clock, scheduler, bus, distance):
    m = build_machine(corpus, clock, scheduler, bus=bus, distance=distance)
    assert m.start()
    return m


@pytest.fixture()
def speaker(machine, clock):
    return Speaker(machine, clock)


def line_signals(bus):
    received = []
    bus.subscribe(LineSignal, received.append)
    return received


class TestLifecycle:
    def test_starts_idle(self, corpus, clock, scheduler):
        m = build_machine(corpus, clock, scheduler)
        assert m.state is SessionState.IDLE
        assert m.permission is Permission.PENDING
        assert m.current_position == -1
        assert m.current_line is None

    def test_start_without_capture_is_granted(self, machine):
        assert machine.state is SessionState.LISTENING
        assert machine.permission is Permission.GRANTED

    def test_frames_ignored_while_idle(self, corpus, clock, scheduler):
        m = build_machine(corpus, clock, scheduler)
        assert Speaker(m, clock).speech(3) == [None, None, None]

    def test_denied_capture_stays_idle(self, corpus, clock, scheduler, bus):
        capture = FakeCapture(granted=False)
        m = build_machine(corpus, clock, scheduler, bus=bus, capture=capture)
        texts = []
        bus.subscribe(TextSignal, texts.append)

        assert m.start() is False
        bus.dispatch_pending()

        assert m.state is SessionState.IDLE
        assert m.permission is Permission.DENIED
        assert any(t.level == "error" for t in texts)

    def test_denied_capture_can_be_retried(self, corpus, clock, scheduler):
        capture = FakeCapture(granted=False)
        m = build_machine(corpus, clock, scheduler, capture=capture)
        assert not m.start()

        capture.granted = True
        assert m.start()
        assert m.permission is Permission.GRANTED
        assert capture.start_calls == 2

    def test_capture_delivers_frames(self, corpus, clock, scheduler):
        capture = FakeCapture()
        m = build_machine(corpus, clock, scheduler, capture=capture)
        m.start()
        assert capture.on_frame == m.ingest_frame

        m.stop()
        assert capture.stop_calls == 1
        assert m.state is SessionState.IDLE

    def test_stop_discards_phrase_and_keeps_position(self, machine, speaker):
        machine.go_to_index(1)
        speaker.silence()
        speaker.speech(10)
        assert machine.vad.is_speaking

        machine.stop()

        assert not machine.vad.is_speaking
        assert machine.buffer.frame_count == 0
        assert machine.current_position == 1
        assert machine.start()
        assert machine.current_position == 1

    def test_start_waits_for_capture_teardown(self, corpus, clock, scheduler):
        capture = SlowTeardownCapture()
        m = build_machine(corpus, clock, scheduler, capture=capture)
        assert m.start()

        stopper = threading.Thread(target=m.stop)
        stopper.start()
        assert capture.tearing_down.wait(timeout=2.0)

        starter = threading.Thread(target=m.start)
        starter.start()
        starter.join(timeout=0.1)
        assert starter.is_alive()

        capture.finish_teardown.set()
        stopper.join(timeout=2.0)
        starter.join(timeout=2.0)

        assert m.state is SessionState.LISTENING
        assert capture.running
        assert capture.start_calls == 2

    def test_capture_start_exception_is_denied(self, corpus, clock, scheduler):
        capture = FakeCapture()

        def fail(on_frame):
            raise OSError("no such device")

        capture.start = fail
        m = build_machine(corpus, clock, scheduler, capture=capture)

        assert not m.start()
        assert m.permission is Permission.DENIED
        assert m.state is SessionState.IDLE

class TestMatching:
    def test_accepts_expected_line(self, machine, speaker, distance):
        # current 0; reference 1 aligns at 0.5, everything else above 2.0
        machine.go_to_index(0)
        distance.distances = {0: 2.5, 1: 0.5, 2: 2.5}

        events = speaker.phrase()

        assert events[-1].type is VADEventType.PHRASE_ENDED
        assert machine.current_position == 1
        assert machine.current_line.id == "2a"
        assert not machine.current_line.is_pending
        assert machine.current_line.confidence == pytest.approx(0.75)
        assert machine.current_line.confidence_level is ConfidenceLevel.HIGH
        assert machine.completed_ids == {"2a"}
        assert machine.failure_streak == 0

    def test_hard_accept_overrides_position_bias(self, clock, scheduler):
        corpus = make_corpus(8)
        distance = TableDistance(corpus, default=2.0)
        m = build_machine(corpus, clock, scheduler, distance=distance)
        m.start()
        m.go_to_index(1)
        # Raw 0.45 plus three lines of position penalty gives combined 0.9
        distance.distances = {5: 0.45}

        Speaker(m, clock).phrase()

        assert m.current_position == 5
        assert m.current_line.id == "6a"

    def test_rejection_reverts_to_confirmed_line(self, machine, speaker, distance):
        machine.go_to_index(0)
        confirmed = machine.current_line

        speaker.phrase()

        assert machine.current_position == 0
        assert machine.current_line == confirmed
        assert machine.failure_streak == 1
        assert machine.completed_ids == frozenset()

    def test_short_phrase_is_discarded(self, machine, speaker, distance):
        machine.go_to_index(0)
        distance.distances = {1: 0.1}

        speaker.phrase(frames=10)

        assert distance.calls == []
        assert machine.current_position == 0
        assert machine.failure_streak == 0
        assert machine.buffer.frame_count == 0

    def test_buffer_cleared_after_every_phrase(self, machine, speaker, distance):
        distance.distances = {0: 0.3}
        speaker.phrase()
        assert machine.buffer.frame_count == 0

        speaker.phrase()
        assert machine.buffer.frame_count == 0

    def test_sequential_reading(self, machine, speaker, distance):
        for index in range(3):
            distance.distances = {index: 0.4}
            speaker.phrase()
            assert machine.current_position == index

        assert machine.completed_count == 3
        assert machine.match_state.match_attempts == 3

    def test_empty_corpus_rejects_without_error(self, clock, scheduler):
        m = build_machine(ReferenceCorpus.empty(), clock, scheduler)
        m.start()

        Speaker(m, clock).phrase()

        assert m.total_lines == 0
        assert m.current_position == -1
        assert m.failure_streak == 1
        assert m.current_line is None


class TestTerminalPhrase:
    def test_terminal_after_last_real_line(self, machine, speaker, distance, corpus):
        machine.go_to_index(corpus.last_real_index)

        speaker.phrase()

        assert distance.calls == []
        assert machine.current_position == corpus.terminal_index
        assert machine.current_line.id == TERMINAL_ID
        assert machine.current_line.confidence_level is ConfidenceLevel.HIGH
        assert TERMINAL_ID in machine.completed_ids

    def test_quiet_speech_does_not_trigger_terminal(self, machine, speaker, distance, corpus):
        machine.go_to_index(corpus.last_real_index)
        # Noisy room: speech clears the threshold but not 1.25x of it
        speaker.silence(80, energy=0.02)
        speaker.speech(20, energy=0.1)
        speaker.end()

        assert machine.current_position == corpus.last_real_index
        assert distance.calls != []

    def test_terminal_not_considered_mid_corpus(self, machine, speaker, distance):
        machine.go_to_index(0)
        speaker.phrase()
        assert machine.current_position == 0
        assert TERMINAL_ID not in machine.completed_ids


class TestOptimisticPreview:
    def test_preview_shows_expected_line_while_speaking(self, machine, speaker, scheduler):
        machine.go_to_index(0)
        speaker.silence()
        speaker.speech(5)

        assert len(scheduler.pending) == 1
        assert scheduler.pending[0].delay == pytest.approx(0.12)
        scheduler.pending[0].callback()

        line = machine.current_line
        assert line.id == "2a"
        assert line.is_pending
        assert line.confidence == pytest.approx(0.8)
        assert line.confidence_level is ConfidenceLevel.NONE
        assert machine.current_position == 0

    def test_preview_cancelled_at_phrase_end(self, machine, speaker, scheduler):
        machine.go_to_index(0)
        confirmed = machine.current_line

        speaker.phrase()
        assert scheduler.pending == []

        # A stale callback must not overwrite the decision
        scheduler.fire_all()
        assert machine.current_line == confirmed

    def test_preview_reverted_on_reject(self, machine, speaker, scheduler):
        machine.go_to_index(0)
        confirmed = machine.current_line
        speaker.silence()
        speaker.speech(20)
        scheduler.pending[0].callback()
        assert machine.current_line.is_pending

        speaker.end()

        assert machine.current_line == confirmed

    def test_preview_confirmed_in_place(self, machine, speaker, scheduler, distance, bus):
        machine.go_to_index(0)
        distance.distances = {1: 0.5}
        speaker.silence()
        speaker.speech(20)
        scheduler.pending[0].callback()
        bus.dispatch_pending()
        received = line_signals(bus)

        speaker.end()
        bus.dispatch_pending()

        assert machine.current_line.id == "2a"
        assert not machine.current_line.is_pending
        assert len(received) == 1
        assert received[0].line["is_pending"] is False

    def test_preview_cancelled_on_stop(self, machine, speaker, scheduler):
        speaker.silence()
        speaker.speech(5)
        timer = scheduler.pending[0]

        machine.stop()
        timer.callback()

        assert timer.cancelled
        assert machine.current_line is None


class TestNavigation:
    def test_go_next_from_start(self, machine):
        machine.go_next()
        assert machine.current_position == 0
        assert machine.current_line.id == "1a"
        assert machine.current_line.confidence == 1.0
        assert machine.current_line.confidence_level is ConfidenceLevel.HIGH

    def test_go_prev_at_start_is_noop(self, machine):
        machine.go_to_index(0)
        machine.go_prev()
        assert machine.current_position == 0

    def test_go_prev(self, machine):
        machine.go_to_index(2)
        machine.go_prev()
        assert machine.current_position == 1

    def test_go_to_index_clamps(self, machine, corpus):
        machine.go_to_index(99)
        assert machine.current_position == len(corpus) - 1
        machine.go_to_index(-5)
        assert machine.current_position == 0

    def test_go_next_stops_at_end(self, machine, corpus):
        machine.go_to_index(len(corpus) - 1)
        machine.go_next()
        assert machine.current_position == len(corpus) - 1

    def test_navigation_resets_streak_without_completing(self, machine, speaker):
        machine.go_to_index(0)
        speaker.phrase()
        assert machine.failure_streak == 1

        machine.go_next()

        assert machine.failure_streak == 0
        assert machine.completed_count == 0

    def test_go_title_clears_display_only(self, machine, speaker, distance):
        distance.distances = {0: 0.3}
        speaker.phrase()

        machine.go_title()

        assert machine.current_line is None
        assert machine.current_position == 0
        assert machine.completed_count == 1


class TestReset:
    def test_reset_after_matches(self, machine, speaker, distance):
        for index in range(2):
            distance.distances = {index: 0.4}
            speaker.phrase()

        machine.reset()

        assert machine.current_position == -1
        assert machine.completed_count == 0
        assert machine.current_line is None
        assert machine.failure_streak == 0
        assert machine.state is SessionState.IDLE


class TestSignals:
    def test_accept_publishes_line_and_state(self, machine, speaker, distance, bus):
        bus.dispatch_pending()
        lines = line_signals(bus)
        states = []
        bus.subscribe(StateSignal, states.append)
        distance.distances = {0: 0.4}

        speaker.phrase()
        bus.dispatch_pending()

        assert [s.line["id"] for s in lines] == ["1a"]
        assert states[-1].position == 0
        assert states[-1].completed_count == 1
        assert states[-1].completed_ids == ("1a",)
        assert states[-1].state == "listening"

    def test_unchanged_display_is_not_republished(self, machine, speaker, bus):
        machine.go_to_index(0)
        bus.dispatch_pending()
        lines = line_signals(bus)

        speaker.phrase()
        bus.dispatch_pending()

        assert lines == []

    def test_snapshot(self, machine, corpus):
        machine.go_to_index(1)
        snapshot = machine.snapshot()
        assert snapshot["position"] == 1
        assert snapshot["total_lines"] == len(corpus)
        assert snapshot["line"]["id"] == "2a"
        assert snapshot["state"] == "listening"


class TestIngestRaw:
    def test_misshaped_vector_treated_as_absent(self, machine, clock):
        clock.advance(1.0)
        event = machine.ingest_raw([0.1] * 7, 0.5)
        assert event.type is VADEventType.IGNORED
        assert machine.vad.noise_floor > 0.002

    def test_raw_thirteen_coefficients_accepted(self, machine, clock):
        clock.advance(1.0)
        assert machine.ingest_raw([0.5] + [0.1 * i for i in range(12)], 0.5).type is VADEventType.IGNORED
        clock.advance(0.05)
        assert machine.ingest_raw([0.5] + [0.1 * i for i in range(12)], 0.5).started


class TestMatchState:
    def test_failure_streak_is_capped(self):
        state = MatchState()
        for _ in range(MAX_FAILURE_STREAK + 5):
            state.record_failure()
        assert state.failure_streak == MAX_FAILURE_STREAK
