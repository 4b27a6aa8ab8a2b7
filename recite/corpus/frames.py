"""
Feature frames and per-frame normalization.

A FeatureFrame is one short audio window summarized as cepstral
coefficients 1..12 plus an energy scalar. Coefficient 0 behaves like an
energy proxy and is dropped at construction time.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

# Stored coefficients per frame (raw extractor output is one longer)
COEFFICIENT_COUNT = 12

# Frames whose coefficient std is below this normalize to the zero vector
NORMALIZE_EPSILON = 0.001


class FeatureShapeError(ValueError):
    """Raised when a feature vector has an unexpected coefficient count."""


@dataclass(frozen=True, eq=False)
class FeatureFrame:
    """
    One frame from the capture pipeline.

    Attributes:
        mfcc: Coefficients 1..12 as a read-only float array, or None when
              the extractor produced no usable vector for this window
        energy: Energy of the window (0.0 when absent)
    """
    mfcc: Optional[np.ndarray]
    energy: float = 0.0

    @classmethod
    def from_raw(
        cls,
        mfcc: Optional[Sequence[float]],
        energy: Optional[float] = None,
        coefficient_count: int = COEFFICIENT_COUNT,
    ) -> "FeatureFrame":
        """
        Build a frame from extractor output.

        Accepts either the raw vector (coefficient_count + 1 values, c0 first)
        or an already trimmed vector of coefficient_count values.

        Raises:
            FeatureShapeError: for any other vector length
        """
        energy_value = float(energy) if energy is not None else 0.0
        if mfcc is None or len(mfcc) == 0:
            return cls(mfcc=None, energy=energy_value)

        vector = np.asarray(mfcc, dtype=np.float64).reshape(-1)
        if vector.shape[0] == coefficient_count + 1:
            vector = vector[1:]
        elif vector.shape[0] != coefficient_count:
            raise FeatureShapeError(
                f"expected {coefficient_count} or {coefficient_count + 1} coefficients, "
                f"got {vector.shape[0]}"
            )

        vector = vector.copy()
        vector.setflags(write=False)
        return cls(mfcc=vector, energy=energy_value)

    @property
    def has_features(self) -> bool:
        return self.mfcc is not None and self.mfcc.size > 0


def normalize_frame(frame: np.ndarray) -> np.ndarray:
    """Z-score a single coefficient vector (zero vector if degenerate)."""
    frame = np.asarray(frame, dtype=np.float64)
    if frame.size == 0:
        return frame.copy()
    std = frame.std()
    if std < NORMALIZE_EPSILON:
        return np.zeros_like(frame)
    return (frame - frame.mean()) / std


def normalize_sequence(sequence) -> np.ndarray:
    """
    Z-score every frame of a (frames x coefficients) sequence independently.

    Returns an empty (0 x COEFFICIENT_COUNT) array for an empty sequence.
    """
    matrix = np.asarray(sequence, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros((0, COEFFICIENT_COUNT), dtype=np.float64)
    if matrix.ndim != 2:
        raise FeatureShapeError(f"expected a 2-D sequence, got shape {matrix.shape}")

    mean = matrix.mean(axis=1, keepdims=True)
    std = matrix.std(axis=1, keepdims=True)
    degenerate = std < NORMALIZE_EPSILON
    safe_std = np.where(degenerate, 1.0, std)
    normalized = (matrix - mean) / safe_std
    normalized[degenerate[:, 0]] = 0.0
    return normalized
