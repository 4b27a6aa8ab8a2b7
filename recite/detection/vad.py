"""
Energy-based voice activity detection with an adaptive noise floor.

Consumes one feature frame at a time and reports phrase boundaries.

State machine:
    IDLE → (start_frames speech-like frames) → IN_PHRASE → (end_frames quiet frames) → IDLE
                                                   ↑                    |
                                                   |__(speech resumes)__|

Quiet frames inside a phrase are still appended for the first two frames
so trailing consonants that dip below threshold are not clipped.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from recite.corpus.frames import FeatureFrame
from recite.detection.buffer import PhraseBuffer

logger = logging.getLogger(__name__)

# Quiet frames inside a phrase that are still appended
TOLERANCE_FRAMES = 2


@dataclass(frozen=True)
class VADParams:
    """Detector parameters, fixed for a session."""
    initial_noise_floor: float = 0.002
    min_energy: float = 0.004
    noise_alpha: float = 0.05
    multiplier: float = 3.2
    start_frames: int = 2
    end_frames: int = 12
    cooldown_ms: float = 200.0
    warmup_ms: float = 600.0


class VADEventType(Enum):
    """Outcome of classifying one frame"""
    IGNORED = "ignored"
    FRAME_APPENDED = "frame_appended"
    PHRASE_STARTED = "phrase_started"
    PHRASE_ENDED = "phrase_ended"


@dataclass(frozen=True)
class VADEvent:
    type: VADEventType
    duration_ms: float = 0.0

    @property
    def started(self) -> bool:
        return self.type is VADEventType.PHRASE_STARTED

    @property
    def ended(self) -> bool:
        return self.type is VADEventType.PHRASE_ENDED


_IGNORED = VADEvent(VADEventType.IGNORED)
_APPENDED = VADEvent(VADEventType.FRAME_APPENDED)
_STARTED = VADEvent(VADEventType.PHRASE_STARTED)


class VoiceActivityDetector:
    """
    Streaming phrase segmenter.

    Must be driven from a single thread: classify() is not re-entrant.
    """

    def __init__(
        self,
        buffer: PhraseBuffer,
        params: Optional[VADParams] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the detector.

        Args:
            buffer: PhraseBuffer that receives in-phrase frames
            params: Detector parameters (defaults if None)
            clock: Monotonic clock in seconds
        """
        self.buffer = buffer
        self.params = params or VADParams()
        self._clock = clock

        # Noise floor persists across phrases and across stop/start
        self.noise_floor = self.params.initial_noise_floor

        self.is_speaking = False
        self._speech_run = 0
        self._silence_frames = 0
        self._phrase_start_time: Optional[float] = None
        self._last_phrase_end: Optional[float] = None
        self._session_start: Optional[float] = None

    @property
    def threshold(self) -> float:
        """Current dynamic energy threshold."""
        return max(self.params.min_energy, self.noise_floor * self.params.multiplier)

    def begin_session(self) -> None:
        """Reset phrase state and start the warm-up interval."""
        self.reset_phrase_state()
        self._last_phrase_end = None
        self._session_start = self._clock()

    def reset_phrase_state(self) -> None:
        """Drop any in-flight phrase (noise floor is kept)."""
        self.is_speaking = False
        self._speech_run = 0
        self._silence_frames = 0
        self._phrase_start_time = None
        self.buffer.clear()

    def reset_noise_floor(self) -> None:
        self.noise_floor = self.params.initial_noise_floor

    def _in_warmup(self, now: float) -> bool:
        if self._session_start is None:
            return False
        return (now - self._session_start) * 1000.0 < self.params.warmup_ms

    def _in_cooldown(self, now: float) -> bool:
        if self._last_phrase_end is None:
            return False
        return (now - self._last_phrase_end) * 1000.0 < self.params.cooldown_ms

    def classify(self, frame: FeatureFrame) -> VADEvent:
        """
        Classify one frame and update phrase state.

        Returns:
            VADEvent describing what happened to this frame
        """
        now = self._clock()
        energy = frame.energy

        if not self.is_speaking:
            alpha = self.params.noise_alpha
            self.noise_floor = (1.0 - alpha) * self.noise_floor + alpha * energy

        # Let device levels settle while still learning the noise floor
        if self._in_warmup(now):
            self._speech_run = 0
            return _IGNORED

        threshold = self.threshold
        speech_like = (
            frame.has_features
            and energy > threshold
            and not self._in_cooldown(now)
        )

        if speech_like:
            self._silence_frames = 0
            self._speech_run += 1

            if not self.is_speaking:
                if self._speech_run < self.params.start_frames:
                    return _IGNORED
                self.is_speaking = True
                self._phrase_start_time = now
                self.buffer.clear()
                self.buffer.append(frame)
                logger.debug(
                    "phrase_started",
                    extra={"threshold": threshold, "noise_floor": self.noise_floor},
                )
                return _STARTED

            self.buffer.append(frame)
            return _APPENDED

        if not self.is_speaking:
            self._speech_run = 0
            return _IGNORED

        self._silence_frames += 1
        self._speech_run = 0

        if self._silence_frames >= self.params.end_frames:
            duration_ms = (now - self._phrase_start_time) * 1000.0
            self.is_speaking = False
            self._silence_frames = 0
            self._phrase_start_time = None
            self._last_phrase_end = now
            logger.debug(
                "phrase_ended",
                extra={"duration_ms": duration_ms, "frames": self.buffer.frame_count},
            )
            return VADEvent(VADEventType.PHRASE_ENDED, duration_ms=duration_ms)

        if self._silence_frames <= TOLERANCE_FRAMES and self.buffer.append(frame):
            return _APPENDED
        return _IGNORED
