"""Per-phrase accumulation of feature frames and energies"""

from typing import List

import numpy as np

from recite.corpus.frames import COEFFICIENT_COUNT, FeatureFrame


class PhraseBuffer:
    """
    Collects the frames of one detected phrase.

    Cleared on every phrase start and after every phrase end, whether or
    not the phrase was matched.
    """

    def __init__(self, coefficient_count: int = COEFFICIENT_COUNT):
        self._coefficient_count = coefficient_count
        self._frames: List[np.ndarray] = []
        self._energies: List[float] = []

    def append(self, frame: FeatureFrame) -> bool:
        """Append a frame; frames without a feature vector are skipped."""
        if not frame.has_features:
            return False
        self._frames.append(frame.mfcc)
        self._energies.append(frame.energy)
        return True

    def clear(self) -> None:
        self._frames.clear()
        self._energies.clear()

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def mean_energy(self) -> float:
        if not self._energies:
            return 0.0
        return float(np.mean(self._energies))

    def as_matrix(self) -> np.ndarray:
        """Frames as a (frames x coefficients) array."""
        if not self._frames:
            return np.zeros((0, self._coefficient_count), dtype=np.float64)
        return np.vstack(self._frames)
