"""Sequence alignment and sequential-attention matching"""

from .aligner import DEFAULT_BAND_RATIO, band_width, dtw_distance
from .attention import (
    AttentionScorer,
    CandidateScore,
    ConfidenceLevel,
    MatchResult,
    attention_radius,
    candidate_indices,
    classify_confidence,
    duration_penalty,
    expected_index,
    position_penalty,
    should_accept,
)

__all__ = [
    "DEFAULT_BAND_RATIO",
    "band_width",
    "dtw_distance",
    "AttentionScorer",
    "CandidateScore",
    "ConfidenceLevel",
    "MatchResult",
    "attention_radius",
    "candidate_indices",
    "classify_confidence",
    "duration_penalty",
    "expected_index",
    "position_penalty",
    "should_accept",
]
