"""Session state owned by the match state machine"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Set

from recite.corpus.loader import ReferencePhrase
from recite.matching.attention import ConfidenceLevel

# Failure streak never grows past this
MAX_FAILURE_STREAK = 20


class SessionState(Enum):
    """Whether frames are being consumed"""
    IDLE = "idle"
    LISTENING = "listening"


class Permission(Enum):
    """Outcome of the last attempt to open the capture device"""
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True)
class DisplayLine:
    """The line shown to the reader."""
    id: str
    text_primary: str
    text_secondary: str
    confidence: float
    confidence_level: ConfidenceLevel = ConfidenceLevel.NONE
    is_pending: bool = False

    @classmethod
    def from_phrase(
        cls,
        phrase: ReferencePhrase,
        confidence: float,
        confidence_level: ConfidenceLevel,
        is_pending: bool = False,
    ) -> "DisplayLine":
        return cls(
            id=phrase.id,
            text_primary=phrase.text_primary,
            text_secondary=phrase.text_secondary,
            confidence=confidence,
            confidence_level=confidence_level,
            is_pending=is_pending,
        )

    def confirmed(self, confidence: float, confidence_level: ConfidenceLevel) -> "DisplayLine":
        """Same line, no longer pending."""
        return replace(self, confidence=confidence, confidence_level=confidence_level, is_pending=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text_primary": self.text_primary,
            "text_secondary": self.text_secondary,
            "confidence": self.confidence,
            "confidence_level": self.confidence_level.value,
            "is_pending": self.is_pending,
        }


@dataclass
class MatchState:
    """
    Position and progress for one session.

    Survives stop/start so a reading can be paused and resumed; cleared
    only by reset().
    """
    current_position: int = -1
    failure_streak: int = 0
    confirmed_line: Optional[DisplayLine] = None
    completed_ids: Set[str] = field(default_factory=set)
    match_attempts: int = 0

    def record_failure(self) -> None:
        self.failure_streak = min(MAX_FAILURE_STREAK, self.failure_streak + 1)

    def reset(self) -> None:
        self.current_position = -1
        self.failure_streak = 0
        self.confirmed_line = None
        self.completed_ids = set()
        self.match_attempts = 0
