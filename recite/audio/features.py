"""
Per-frame acoustic features.

One frame is one non-overlapping block of FRAME_SIZE samples. Live capture
and the corpus builder both go through FeatureExtractor so their frames
are directly comparable.
"""

from typing import Iterator, Tuple

import librosa
import numpy as np

from recite.corpus.frames import FeatureFrame

DEFAULT_SAMPLE_RATE = 48000
DEFAULT_FRAME_SIZE = 2048
DEFAULT_MFCC_COEFFICIENTS = 13
MEL_BANDS = 26


class FeatureExtractor:
    """
    MFCC + energy for fixed-size audio blocks.

    Usage:
        extractor = FeatureExtractor(sample_rate=48000, frame_size=2048)
        frame = extractor.extract(block)   # FeatureFrame with 12 coefficients
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        frame_size: int = DEFAULT_FRAME_SIZE,
        n_mfcc: int = DEFAULT_MFCC_COEFFICIENTS,
    ):
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.n_mfcc = n_mfcc

    def _as_block(self, samples: np.ndarray) -> np.ndarray:
        block = np.asarray(samples, dtype=np.float32)
        if block.ndim == 2:
            block = block[:, 0]
        if block.shape[0] != self.frame_size:
            raise ValueError(f"expected {self.frame_size} samples, got {block.shape[0]}")
        return block

    def energy(self, samples: np.ndarray) -> float:
        """Sum of squared samples (float audio in [-1, 1])."""
        block = self._as_block(samples)
        return float(np.dot(block, block))

    def mfcc(self, samples: np.ndarray) -> np.ndarray:
        """Full n_mfcc coefficient vector for one block, coefficient 0 included."""
        block = self._as_block(samples)
        coefficients = librosa.feature.mfcc(
            y=block,
            sr=self.sample_rate,
            n_mfcc=self.n_mfcc,
            n_fft=self.frame_size,
            hop_length=self.frame_size,
            n_mels=MEL_BANDS,
            center=False,
        )
        return coefficients[:, 0]

    def extract(self, samples: np.ndarray) -> FeatureFrame:
        """Features for one block; silent blocks carry no feature vector."""
        energy = self.energy(samples)
        if energy <= 0.0:
            return FeatureFrame(mfcc=None, energy=0.0)
        return FeatureFrame.from_raw(self.mfcc(samples), energy)

    def frames(self, signal: np.ndarray) -> Iterator[Tuple[int, FeatureFrame]]:
        """Yield (offset, frame) for every full block of a mono signal."""
        signal = np.asarray(signal, dtype=np.float32)
        for offset in range(0, signal.shape[0] - self.frame_size + 1, self.frame_size):
            yield offset, self.extract(signal[offset:offset + self.frame_size])
