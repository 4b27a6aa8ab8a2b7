"""
Sequential attention scoring.

Ranks a window of corpus phrases around the expected next line by DTW
distance plus position and duration penalties, then applies an accept gate.
Weak evidence is rejected: once a wrong match is accepted the window
recenters on the wrong line and errors compound.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from recite.corpus.frames import normalize_sequence
from recite.corpus.loader import ReferenceCorpus, ReferencePhrase
from recite.matching.aligner import DEFAULT_BAND_RATIO, dtw_distance

logger = logging.getLogger(__name__)

# Attention window
BASE_RADIUS = 3
MAX_EXTRA_RADIUS = 8
MAX_RADIUS = 10

# Position penalties
PENALTY_PER_LINE = 0.15
REPEAT_PENALTY = 0.25
NEXT_LINE_PENALTY = 0.0

# Duration penalty
DURATION_TOLERANCE_SECONDS = 1.5
DURATION_PENALTY_PER_SECOND = 0.25
MAX_DURATION_PENALTY = 0.6
MIN_REFERENCE_DURATION = 0.05

# Confidence bands (on combined score / relative margin)
HIGH_MAX_COMBINED = 1.15
HIGH_MIN_MARGIN = 0.10
MEDIUM_MAX_COMBINED = 1.65
MEDIUM_MIN_MARGIN = 0.06

# Accept gate
HARD_ACCEPT_MAX_COMBINED = 1.05
NEXT_LINE_MAX_COMBINED = 1.45
NEXT_LINE_MIN_MARGIN = 0.04

DistanceFn = Callable[[np.ndarray, np.ndarray, float], float]


class ConfidenceLevel(Enum):
    """Confidence of a match decision"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


@dataclass(frozen=True)
class CandidateScore:
    """Score breakdown for one candidate phrase"""
    phrase: ReferencePhrase
    dtw_distance: float
    position_penalty: float
    duration_penalty: float
    label: str

    @property
    def penalty(self) -> float:
        return self.position_penalty + self.duration_penalty

    @property
    def combined(self) -> float:
        return self.dtw_distance + self.penalty


@dataclass(frozen=True)
class MatchResult:
    """An accepted match"""
    phrase: ReferencePhrase
    combined: float
    dtw_distance: float
    similarity: float
    margin: float
    relative_margin: float
    confidence_level: ConfidenceLevel
    is_expected: bool


def attention_radius(failure_streak: int) -> int:
    """Window radius, widened by consecutive failures."""
    extra = min(MAX_EXTRA_RADIUS, max(0, failure_streak))
    return min(MAX_RADIUS, BASE_RADIUS + extra)


def expected_index(current_position: int, corpus_size: int) -> int:
    """The next line after current_position, clamped into the corpus."""
    return max(0, min(corpus_size - 1, current_position + 1))


def candidate_indices(current_position: int, failure_streak: int, corpus_size: int) -> List[int]:
    """
    Sorted, deduplicated corpus indices to score.

    The window around the expected line, plus the current line (repeat)
    and the one before it (small backstep).
    """
    if corpus_size <= 0:
        return []

    expected = expected_index(current_position, corpus_size)
    radius = attention_radius(failure_streak)
    start = max(0, expected - radius)
    end = min(corpus_size - 1, expected + radius)

    candidates = set(range(start, end + 1))
    candidates.add(expected)
    if 0 <= current_position < corpus_size:
        candidates.add(current_position)
    if 0 <= current_position - 1 < corpus_size:
        candidates.add(current_position - 1)
    return sorted(candidates)


def position_penalty(
    candidate_index: int,
    current_position: int,
    expected: Optional[int] = None,
) -> float:
    """
    Linear penalty on distance from the expected line.

    At 0.15 per line a candidate five lines away needs a DTW distance
    0.75 better than the expected line to win.
    """
    if expected is None:
        expected = current_position + 1
    if candidate_index == expected:
        return NEXT_LINE_PENALTY
    if candidate_index == current_position:
        return REPEAT_PENALTY
    return PENALTY_PER_LINE * abs(candidate_index - expected)


def duration_penalty(reference_duration: float, spoken_duration: float) -> float:
    """Capped linear penalty for durations further apart than the tolerance."""
    reference_duration = max(MIN_REFERENCE_DURATION, reference_duration or 0.0)
    excess = abs(reference_duration - spoken_duration) - DURATION_TOLERANCE_SECONDS
    return min(MAX_DURATION_PENALTY, max(0.0, excess) * DURATION_PENALTY_PER_SECOND)


def classify_confidence(combined: float, relative_margin: float) -> ConfidenceLevel:
    if combined < HIGH_MAX_COMBINED and relative_margin > HIGH_MIN_MARGIN:
        return ConfidenceLevel.HIGH
    if combined < MEDIUM_MAX_COMBINED and relative_margin > MEDIUM_MIN_MARGIN:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def should_accept(
    combined: float,
    relative_margin: float,
    confidence: ConfidenceLevel,
    is_expected: bool,
) -> bool:
    """Accept gate: hard accept, soft accept, or lenient next-line accept."""
    hard_accept = combined < HARD_ACCEPT_MAX_COMBINED
    soft_accept = confidence in (ConfidenceLevel.HIGH, ConfidenceLevel.MEDIUM)
    next_line_accept = (
        is_expected
        and combined < NEXT_LINE_MAX_COMBINED
        and relative_margin > NEXT_LINE_MIN_MARGIN
    )
    return hard_accept or soft_accept or next_line_accept


def similarity_from_combined(combined: float) -> float:
    return max(0.0, min(1.0, 1.0 - combined / 2.0))


def _label(index: int, expected: int, current_position: int) -> str:
    if index == expected:
        return "NEXT"
    if index == current_position:
        return "CURR"
    return f"{index - expected:+d}"


class AttentionScorer:
    """
    Position-aware matcher over a reference corpus.

    Usage:
        scorer = AttentionScorer(corpus)
        result = scorer.score(frames, duration_s, current_position, failure_streak)
        if result is not None:
            ...
    """

    def __init__(
        self,
        corpus: ReferenceCorpus,
        band_ratio: float = DEFAULT_BAND_RATIO,
        distance_fn: DistanceFn = dtw_distance,
    ):
        """
        Args:
            corpus: Reference corpus (normalized sequences precomputed)
            band_ratio: DTW band ratio
            distance_fn: Alignment distance (reference, spoken, band_ratio) -> float
        """
        self.corpus = corpus
        self.band_ratio = band_ratio
        self._distance_fn = distance_fn

    def rank(
        self,
        spoken_frames: np.ndarray,
        spoken_duration: float,
        current_position: int,
        failure_streak: int,
    ) -> List[CandidateScore]:
        """Score every candidate in the window, best first."""
        corpus_size = len(self.corpus)
        if corpus_size == 0:
            return []

        expected = expected_index(current_position, corpus_size)
        normalized_spoken = normalize_sequence(spoken_frames)
        scores: List[CandidateScore] = []

        for index in candidate_indices(current_position, failure_streak, corpus_size):
            phrase = self.corpus[index]
            if phrase.frame_count == 0:
                continue

            distance = self._distance_fn(phrase.normalized, normalized_spoken, self.band_ratio)
            if not np.isfinite(distance):
                continue

            scores.append(CandidateScore(
                phrase=phrase,
                dtw_distance=float(distance),
                position_penalty=position_penalty(index, current_position, expected),
                duration_penalty=duration_penalty(phrase.duration_seconds, spoken_duration),
                label=_label(index, expected, current_position),
            ))

        scores.sort(key=lambda s: s.combined)
        return scores

    def score(
        self,
        spoken_frames: np.ndarray,
        spoken_duration: float,
        current_position: int,
        failure_streak: int,
    ) -> Optional[MatchResult]:
        """
        Pick the best candidate and run it through the accept gate.

        Args:
            spoken_frames: (frames x coefficients) spoken phrase, not normalized
            spoken_duration: Phrase duration in seconds
            current_position: Last confirmed corpus index (-1 if none)
            failure_streak: Consecutive rejected phrases

        Returns:
            MatchResult if accepted, None if rejected or no candidates
        """
        scores = self.rank(spoken_frames, spoken_duration, current_position, failure_streak)
        if not scores:
            logger.info(
                "match_no_candidates",
                extra={"current_position": current_position, "corpus_size": len(self.corpus)},
            )
            return None

        for candidate in scores if logger.isEnabledFor(logging.DEBUG) else ():
            logger.debug(
                f"  {candidate.phrase.id} [{candidate.label}]: dtw={candidate.dtw_distance:.3f} "
                f"+ pen={candidate.penalty:.2f} = {candidate.combined:.3f}"
            )

        best = scores[0]
        margin = scores[1].combined - best.combined if len(scores) > 1 else best.combined
        relative_margin = margin / max(best.combined, 1e-6)

        confidence = classify_confidence(best.combined, relative_margin)
        is_expected = best.phrase.index == expected_index(current_position, len(self.corpus))
        accepted = should_accept(best.combined, relative_margin, confidence, is_expected)

        logger.info(
            "match_decision",
            extra={
                "best_id": best.phrase.id,
                "label": best.label,
                "combined": round(best.combined, 4),
                "relative_margin": round(relative_margin, 4),
                "confidence": confidence.value,
                "accepted": accepted,
                "candidates": len(scores),
                "radius": attention_radius(failure_streak),
            },
        )
        if not accepted:
            return None

        return MatchResult(
            phrase=best.phrase,
            combined=best.combined,
            dtw_distance=best.dtw_distance,
            similarity=similarity_from_combined(best.combined),
            margin=margin,
            relative_margin=relative_margin,
            confidence_level=confidence,
            is_expected=is_expected,
        )
