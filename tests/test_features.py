"""Tests for the librosa feature extractor."""

import numpy as np
import pytest

from recite.audio import FeatureExtractor
from recite.corpus import COEFFICIENT_COUNT


def tone(frames: int = 1, frame_size: int = 2048, sample_rate: int = 48000, amplitude: float = 0.5):
    t = np.arange(frames * frame_size) / sample_rate
    return (amplitude * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)


@pytest.fixture()
def extractor():
    return FeatureExtractor()


class TestFeatureExtractor:
    def test_energy_is_sum_of_squares(self, extractor):
        block = np.full(2048, 0.5, dtype=np.float32)
        assert extractor.energy(block) == pytest.approx(512.0)

    def test_mfcc_has_c0(self, extractor):
        coefficients = extractor.mfcc(tone())
        assert coefficients.shape == (13,)
        assert np.all(np.isfinite(coefficients))

    def test_extract_drops_c0(self, extractor):
        frame = extractor.extract(tone())
        assert frame.has_features
        assert frame.mfcc.shape == (COEFFICIENT_COUNT,)
        assert frame.energy > 100.0

    def test_silent_block_has_no_features(self, extractor):
        frame = extractor.extract(np.zeros(2048, dtype=np.float32))
        assert not frame.has_features
        assert frame.energy == 0.0

    def test_stereo_uses_first_channel(self, extractor):
        block = np.stack([tone(), np.zeros(2048, dtype=np.float32)], axis=1)
        assert extractor.energy(block) == pytest.approx(extractor.energy(tone()))

    def test_wrong_block_length(self, extractor):
        with pytest.raises(ValueError):
            extractor.extract(np.zeros(1000, dtype=np.float32))

    def test_frames_skip_partial_tail(self, extractor):
        signal = np.concatenate([tone(3), np.zeros(500, dtype=np.float32)])
        offsets = [offset for offset, _ in extractor.frames(signal)]
        assert offsets == [0, 2048, 4096]

    def test_same_block_same_features(self, extractor):
        block = tone()
        np.testing.assert_allclose(extractor.extract(block).mfcc, extractor.extract(block.copy()).mfcc)
