"""
MatchStateMachine - Core engine for the recitation companion.

This module owns the whole matching path:
- Voice activity detection and phrase buffering for every incoming frame
- Sequential-attention matching at each phrase end
- Position, failure streak, confirmed line and completed set
- The terminal-phrase rule once the real corpus is exhausted
- The optimistic "next line" preview while the reader is speaking
- Signal publishing for CLI/web consumers

Frames arrive through ingest_frame() from a single consumer thread. Control
calls (start, stop, navigation) may come from other threads; every mutation
is serialized by one lock so frame order equals state-transition order.
"""

import logging
import threading
import time
from typing import Callable, FrozenSet, Optional, Protocol, Sequence

from recite.corpus.frames import FeatureFrame, FeatureShapeError
from recite.corpus.loader import ReferenceCorpus
from recite.detection import PhraseBuffer, VADEvent, VADParams, VoiceActivityDetector
from recite.engine.state import DisplayLine, MatchState, Permission, SessionState
from recite.matching import AttentionScorer, ConfidenceLevel, MatchResult
from recite.matching.aligner import DEFAULT_BAND_RATIO
from recite.signals import SignalBus, SignalPublisher
from recite.telemetry import add_span_event, create_matcher_metrics, create_span, record_exception

logger = logging.getLogger(__name__)

DEFAULT_MIN_PHRASE_FRAMES = 15
DEFAULT_OPTIMISTIC_DELAY_MS = 120.0
PREVIEW_CONFIDENCE = 0.8

# Terminal phrase needs real speech: long enough and clearly above threshold
TERMINAL_MIN_DURATION_MS = 350.0
TERMINAL_ENERGY_FACTOR = 1.25


class FrameSource(Protocol):
    """Capture pipeline that pushes frames into the engine."""

    def start(self, on_frame: Callable[[FeatureFrame], None]) -> bool:
        """Open the device; False if capture is unavailable or denied."""

    def stop(self) -> None:
        """Tear down capture resources."""


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer_scheduler(delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
    """Run callback once after delay_seconds on a daemon timer thread."""
    timer = threading.Timer(delay_seconds, callback)
    timer.daemon = True
    timer.start()
    return timer


class MatchStateMachine(SignalPublisher):
    """
    Session controller for one reading.

    Usage:
        machine = MatchStateMachine(corpus, capture=CaptureSession(), signal_bus=bus)
        machine.start()
        ...
        machine.stop()
    """

    def __init__(
        self,
        corpus: ReferenceCorpus,
        capture: Optional[FrameSource] = None,
        signal_bus: Optional[SignalBus] = None,
        vad_params: Optional[VADParams] = None,
        min_phrase_frames: int = DEFAULT_MIN_PHRASE_FRAMES,
        optimistic_delay_ms: float = DEFAULT_OPTIMISTIC_DELAY_MS,
        band_ratio: float = DEFAULT_BAND_RATIO,
        scorer: Optional[AttentionScorer] = None,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Scheduler = thread_timer_scheduler,
    ):
        """
        Initialize the state machine.

        Args:
            corpus: Reference corpus (may be empty after a load failure)
            capture: Frame source; None means frames are pushed by the caller
            signal_bus: Optional SignalBus for display/state events
            vad_params: Voice activity parameters
            min_phrase_frames: Phrases with fewer frames are discarded
            optimistic_delay_ms: Delay before previewing the expected line
            band_ratio: DTW band ratio
            scorer: Matcher override (defaults to an AttentionScorer on corpus)
            clock: Monotonic clock in seconds
            scheduler: Schedules the cancellable preview callback
        """
        SignalPublisher.__init__(self, signal_bus, "matcher")

        self.corpus = corpus
        self._capture = capture
        self._min_phrase_frames = min_phrase_frames
        self._optimistic_delay = optimistic_delay_ms / 1000.0
        self._scheduler = scheduler

        self.buffer = PhraseBuffer()
        self.vad = VoiceActivityDetector(self.buffer, vad_params, clock=clock)
        self.scorer = scorer or AttentionScorer(corpus, band_ratio=band_ratio)

        self.match_state = MatchState()
        self._state = SessionState.IDLE
        self._permission = Permission.PENDING
        self._display: Optional[DisplayLine] = None

        # Preview timer; the generation guards against a stale callback
        self._preview_handle: Optional[TimerHandle] = None
        self._preview_generation = 0

        # Session control (start/stop/reset) is serialized separately from
        # frames so capture teardown can join the frame thread
        self._control_lock = threading.RLock()
        self._lock = threading.RLock()
        self._metrics = create_matcher_metrics()

    # ------------------------------------------------------------------
    # Read-only surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def permission(self) -> Permission:
        return self._permission

    @property
    def current_line(self) -> Optional[DisplayLine]:
        return self._display

    @property
    def current_position(self) -> int:
        return self.match_state.current_position

    @property
    def failure_streak(self) -> int:
        return self.match_state.failure_streak

    @property
    def completed_ids(self) -> FrozenSet[str]:
        return frozenset(self.match_state.completed_ids)

    @property
    def completed_count(self) -> int:
        return len(self.match_state.completed_ids)

    @property
    def total_lines(self) -> int:
        return len(self.corpus)

    def snapshot(self) -> dict:
        """Serializable view of the session."""
        with self._lock:
            return {
                "state": self._state.value,
                "permission": self._permission.value,
                "position": self.match_state.current_position,
                "failure_streak": self.match_state.failure_streak,
                "completed_count": self.completed_count,
                "completed_ids": sorted(self.match_state.completed_ids),
                "total_lines": self.total_lines,
                "line": self._display.to_dict() if self._display else None,
            }

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """
        Start listening.

        Position and completed lines are kept so a paused session resumes
        where it left off.

        Returns:
            True if listening, False if capture was unavailable or denied
        """
        with self._control_lock, self._lock:
            if self._state is SessionState.LISTENING:
                return True

            self.vad.begin_session()

            if self._capture is not None:
                with create_span("capture_start"):
                    try:
                        granted = self._capture.start(self.ingest_frame)
                    except (OSError, RuntimeError) as e:
                        logger.error("capture_start_failed", extra={"error": str(e)})
                        record_exception(e)
                        granted = False

                if not granted:
                    self._permission = Permission.DENIED
                    self.publish_text("capture", "Microphone unavailable or denied", "error")
                    self._publish_state()
                    return False

            self._permission = Permission.GRANTED
            self._state = SessionState.LISTENING
            logger.info(
                "listening_started",
                extra={
                    "position": self.match_state.current_position,
                    "expecting": self.match_state.current_position + 1,
                },
            )
            self.publish_text("session", "Listening")
            self._publish_state()
            return True

    def stop(self) -> None:
        """Stop listening and discard any in-flight phrase."""
        with self._control_lock:
            with self._lock:
                self._cancel_preview()
                was_listening = self._state is SessionState.LISTENING
                self._state = SessionState.IDLE
                self.vad.reset_phrase_state()
                if was_listening:
                    logger.info("listening_stopped", extra={"position": self.match_state.current_position})
                    self.publish_text("session", "Stopped")
                    self._publish_state()

            # Frame lock released: capture teardown joins the thread that calls
            # ingest_frame. The control lock keeps start() out until it is done.
            if self._capture is not None:
                self._capture.stop()

    def reset(self) -> None:
        """Stop and return to the beginning of the corpus."""
        with self._control_lock:
            self.stop()
            with self._lock:
                self.match_state.reset()
                self._set_display(None)
                logger.info("session_reset")
                self.publish_text("session", "Reset to start")
                self._publish_state()

    # ------------------------------------------------------------------
    # Manual navigation (bypasses matching)
    # ------------------------------------------------------------------

    def go_to_index(self, target_index: int) -> None:
        with self._lock:
            if not len(self.corpus):
                return
            self._cancel_preview()

            clamped = max(0, min(len(self.corpus) - 1, target_index))
            phrase = self.corpus[clamped]
            line = DisplayLine.from_phrase(phrase, 1.0, ConfidenceLevel.HIGH)

            self.match_state.current_position = phrase.index
            self.match_state.failure_streak = 0
            self.match_state.confirmed_line = line
            self._set_display(line)
            self._publish_state()

    def go_prev(self) -> None:
        with self._lock:
            current = self.match_state.current_position
            if current <= 0:
                return
            self.go_to_index(current - 1)

    def go_next(self) -> None:
        with self._lock:
            if not len(self.corpus):
                return
            current = self.match_state.current_position
            target = 0 if current < 0 else current + 1
            if target > len(self.corpus) - 1:
                return
            self.go_to_index(target)

    def go_title(self) -> None:
        """Clear the display without touching position or progress."""
        with self._lock:
            self._cancel_preview()
            self.match_state.confirmed_line = None
            self._set_display(None)

    # ------------------------------------------------------------------
    # Frame ingestion
    # ------------------------------------------------------------------

    def ingest_raw(self, mfcc: Optional[Sequence[float]], energy: Optional[float]) -> Optional[VADEvent]:
        """
        Ingest extractor output directly.

        A mis-shaped feature vector is treated as absent; its energy still
        feeds the noise floor.
        """
        try:
            frame = FeatureFrame.from_raw(mfcc, energy)
        except FeatureShapeError as e:
            logger.debug("frame_rejected", extra={"error": str(e)})
            frame = FeatureFrame(mfcc=None, energy=float(energy or 0.0))
        return self.ingest_frame(frame)

    def ingest_frame(self, frame: FeatureFrame) -> Optional[VADEvent]:
        """
        Process one frame.

        Precondition: called from a single consumer thread, never re-entered.

        Returns:
            The VAD event for this frame, or None while idle
        """
        with self._lock:
            if self._state is not SessionState.LISTENING:
                return None

            event = self.vad.classify(frame)
            if event.started:
                self.publish_text("phrase", "Speech started", "debug")
                self._schedule_preview()
            elif event.ended:
                self._cancel_preview()
                self._handle_phrase_end(event.duration_ms)
            return event

    # ------------------------------------------------------------------
    # Phrase decisions
    # ------------------------------------------------------------------

    def _handle_phrase_end(self, duration_ms: float) -> None:
        frame_count = self.buffer.frame_count
        self._metrics["phrases"].add(1)
        self.publish_scalar("noise_floor", self.vad.noise_floor)
        self.publish_scalar("energy_threshold", self.vad.threshold)
        logger.info("phrase_ended", extra={"duration_ms": round(duration_ms), "frames": frame_count})

        try:
            if frame_count < self._min_phrase_frames:
                logger.info(
                    "phrase_too_short",
                    extra={"frames": frame_count, "min_frames": self._min_phrase_frames},
                )
                self._set_display(self.match_state.confirmed_line)
                return

            if self._terminal_rule_applies(duration_ms):
                self._accept_terminal()
                return

            self.match_state.match_attempts += 1
            with create_span("phrase_match", frames=frame_count, position=self.match_state.current_position):
                started = time.perf_counter()
                result = self.scorer.score(
                    self.buffer.as_matrix(),
                    duration_ms / 1000.0,
                    self.match_state.current_position,
                    self.match_state.failure_streak,
                )
                self._metrics["match_latency"].record((time.perf_counter() - started) * 1000.0)
                add_span_event("match_decision", accepted=result is not None)

            if result is not None:
                self._accept(result)
            else:
                self._reject()
        finally:
            self.buffer.clear()

    def _is_confident_final_speech(self, duration_ms: float) -> bool:
        if self.buffer.frame_count < self._min_phrase_frames:
            return False
        if duration_ms < TERMINAL_MIN_DURATION_MS:
            return False
        return self.buffer.mean_energy > self.vad.threshold * TERMINAL_ENERGY_FACTOR

    def _terminal_rule_applies(self, duration_ms: float) -> bool:
        last_real = self.corpus.last_real_index
        if last_real is None or self.corpus.terminal_index is None:
            return False
        if self.match_state.current_position != last_real:
            return False
        return self._is_confident_final_speech(duration_ms)

    def _accept_terminal(self) -> None:
        phrase = self.corpus[self.corpus.terminal_index]
        line = DisplayLine.from_phrase(phrase, 1.0, ConfidenceLevel.HIGH)

        self.match_state.failure_streak = 0
        self.match_state.current_position = phrase.index
        self.match_state.completed_ids.add(phrase.id)
        self.match_state.confirmed_line = line
        self._set_display(line)

        self._metrics["terminal"].add(1)
        logger.info("terminal_phrase_triggered", extra={"phrase_id": phrase.id, "index": phrase.index})
        self.publish_text("match", f"Final line reached ({phrase.id})")
        self._publish_state()

    def _accept(self, result: MatchResult) -> None:
        phrase = result.phrase
        state = self.match_state
        state.failure_streak = 0
        state.current_position = phrase.index
        state.completed_ids.add(phrase.id)

        confirmed = DisplayLine.from_phrase(phrase, result.similarity, result.confidence_level)
        state.confirmed_line = confirmed

        # Same line already on screen (e.g. the preview): refresh it in place
        if self._display is not None and self._display.id == phrase.id:
            self._set_display(self._display.confirmed(result.similarity, result.confidence_level))
        else:
            self._set_display(confirmed)

        self._metrics["accepted"].add(1, {"confidence": result.confidence_level.value})
        logger.info(
            "match_accepted",
            extra={
                "phrase_id": phrase.id,
                "index": phrase.index,
                "confidence": result.confidence_level.value,
                "combined": round(result.combined, 4),
                "attempt": state.match_attempts,
            },
        )
        self.publish_text("match", f"Matched {phrase.id} ({result.confidence_level.value})")
        self.publish_scalar("match_combined", result.combined)
        self._publish_state()

    def _reject(self) -> None:
        self.match_state.record_failure()
        self._set_display(self.match_state.confirmed_line)

        self._metrics["rejected"].add(1)
        logger.info(
            "match_rejected",
            extra={
                "failure_streak": self.match_state.failure_streak,
                "attempt": self.match_state.match_attempts,
            },
        )
        self.publish_text("match", "No match - keeping current line", "debug")

    # ------------------------------------------------------------------
    # Optimistic preview
    # ------------------------------------------------------------------

    def _schedule_preview(self) -> None:
        self._cancel_preview()
        generation = self._preview_generation
        self._preview_handle = self._scheduler(
            self._optimistic_delay,
            lambda: self._fire_preview(generation),
        )

    def _cancel_preview(self) -> None:
        self._preview_generation += 1
        if self._preview_handle is not None:
            self._preview_handle.cancel()
            self._preview_handle = None

    def _fire_preview(self, generation: int) -> None:
        with self._lock:
            if generation != self._preview_generation:
                return
            self._preview_handle = None
            if self._state is not SessionState.LISTENING or not self.vad.is_speaking:
                return

            expected = max(0, self.match_state.current_position + 1)
            if expected >= len(self.corpus):
                return
            phrase = self.corpus[expected]
            if self._display is not None and self._display.id == phrase.id and self._display.is_pending:
                return

            self._set_display(DisplayLine.from_phrase(
                phrase, PREVIEW_CONFIDENCE, ConfidenceLevel.NONE, is_pending=True
            ))

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _set_display(self, line: Optional[DisplayLine]) -> None:
        if line == self._display:
            return
        self._display = line
        self.publish_line(line.to_dict() if line is not None else None)

    def _publish_state(self) -> None:
        self.publish_state(
            state=self._state.value,
            permission=self._permission.value,
            position=self.match_state.current_position,
            completed_count=self.completed_count,
            total_lines=self.total_lines,
            completed_ids=self.match_state.completed_ids,
        )

    # ------------------------------------------------------------------
    # Construction from configuration
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        corpus: ReferenceCorpus,
        capture: Optional[FrameSource] = None,
        signal_bus: Optional[SignalBus] = None,
    ) -> "MatchStateMachine":
        from recite.config import Config

        return cls(
            corpus,
            capture=capture,
            signal_bus=signal_bus,
            vad_params=Config.vad_params(),
            min_phrase_frames=Config.MIN_PHRASE_FRAMES,
            optimistic_delay_ms=Config.OPTIMISTIC_DELAY_MS,
            band_ratio=Config.DTW_BAND_RATIO,
        )
