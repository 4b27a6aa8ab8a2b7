"""
Offline corpus building.

Turns reference recordings into corpus records using the same
FeatureExtractor as live capture, so reference and spoken frames share
sample rate and frame size.
"""

import logging
from math import gcd
from pathlib import Path
from typing import Iterable, List, Optional, Union

import numpy as np
from scipy.io import wavfile
from scipy.signal import resample_poly

from recite.audio.features import FeatureExtractor
from recite.corpus.frames import COEFFICIENT_COUNT
from recite.corpus.loader import CorpusError

logger = logging.getLogger(__name__)

DEFAULT_ENERGY_THRESHOLD = 0.008
MIN_REFERENCE_FRAMES = 5


def to_float_mono(samples: np.ndarray) -> np.ndarray:
    """Convert wavfile output to float32 mono in [-1, 1]."""
    samples = np.asarray(samples)
    if samples.ndim == 2:
        samples = samples[:, 0]

    if samples.dtype == np.uint8:
        return (samples.astype(np.float32) - 128.0) / 128.0
    if np.issubdtype(samples.dtype, np.integer):
        return samples.astype(np.float32) / float(np.iinfo(samples.dtype).max + 1)
    return samples.astype(np.float32)


def resample(signal: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    if from_rate == to_rate:
        return signal
    divisor = gcd(from_rate, to_rate)
    return resample_poly(signal, to_rate // divisor, from_rate // divisor).astype(np.float32)


def read_wav(path: Union[str, Path], target_rate: int) -> tuple:
    """
    Returns:
        (signal at target_rate, original duration in seconds)
    """
    rate, samples = wavfile.read(str(path))
    signal = to_float_mono(samples)
    duration = signal.shape[0] / float(rate)
    return resample(signal, rate, target_rate), duration


def extract_sequence(
    signal: np.ndarray,
    extractor: FeatureExtractor,
    energy_threshold: float = DEFAULT_ENERGY_THRESHOLD,
) -> np.ndarray:
    """Coefficients 1..12 of every frame above the energy gate."""
    kept = [
        frame.mfcc
        for _, frame in extractor.frames(signal)
        if frame.has_features and frame.energy > energy_threshold
    ]
    if not kept:
        return np.zeros((0, COEFFICIENT_COUNT), dtype=np.float64)
    return np.vstack(kept)


def build_record(
    index: int,
    path: Union[str, Path],
    text_primary: str,
    text_secondary: str,
    extractor: FeatureExtractor,
    energy_threshold: float = DEFAULT_ENERGY_THRESHOLD,
    signal: Optional[np.ndarray] = None,
    duration: Optional[float] = None,
) -> dict:
    """
    Build one corpus record.

    signal/duration may be passed directly instead of reading the file.

    Raises:
        CorpusError: if fewer than MIN_REFERENCE_FRAMES frames pass the gate
    """
    path = Path(path)
    if signal is None:
        signal, duration = read_wav(path, extractor.sample_rate)
    elif duration is None:
        duration = signal.shape[0] / float(extractor.sample_rate)

    sequence = extract_sequence(signal, extractor, energy_threshold)
    if sequence.shape[0] < MIN_REFERENCE_FRAMES:
        raise CorpusError(
            f"{path.name}: only {sequence.shape[0]} frames above energy threshold {energy_threshold}"
        )

    return {
        "id": path.stem,
        "index": index,
        "filename": path.name,
        "text_primary": text_primary,
        "text_secondary": text_secondary,
        "duration": float(duration),
        "mfccSequence": sequence.tolist(),
        "avgMfcc": sequence.mean(axis=0).tolist(),
        "stdMfcc": sequence.std(axis=0).tolist(),
    }


def build_records(
    metadata: Iterable[dict],
    extractor: FeatureExtractor,
    energy_threshold: float = DEFAULT_ENERGY_THRESHOLD,
    base_dir: Optional[Path] = None,
) -> List[dict]:
    """
    Build records for every metadata entry that yields enough frames.

    Entries that fail are logged and skipped; surviving records are
    re-indexed contiguously so the corpus still loads.
    """
    records = []
    for item in metadata:
        path = Path(item["path"])
        if base_dir is not None and not path.is_absolute():
            path = base_dir / path
        try:
            record = build_record(
                len(records),
                path,
                item.get("text_primary", item.get("Hebrew", "")),
                item.get("text_secondary", item.get("English", "")),
                extractor,
                energy_threshold,
            )
        except (CorpusError, OSError, ValueError) as e:
            logger.error("corpus_record_skipped", extra={"path": str(path), "error": str(e)})
            print(f"✗ Skipping {path.name}: {e}")
            continue

        print(f"✓ {record['id']}: {record['duration']:.2f}s, {len(record['mfccSequence'])} frames")
        records.append(record)
    return records
