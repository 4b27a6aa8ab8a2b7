"""
Reference corpus loading.

The corpus file is a JSON array of phrase records produced by
scripts/build_corpus.py. After loading, a synthetic terminal phrase with no
reference audio is appended after the last real phrase.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Union

import numpy as np

from recite.corpus.frames import COEFFICIENT_COUNT, normalize_sequence

logger = logging.getLogger(__name__)

TERMINAL_ID = "final"
TERMINAL_TEXT_PRIMARY = "זֶה הַדָּבָר יְהוָה׃"
TERMINAL_TEXT_SECONDARY = "This is the word of the LORD."

REQUIRED_FIELDS = ("id", "index", "mfccSequence")


class CorpusError(ValueError):
    """Raised when a corpus file is malformed."""


@dataclass(frozen=True, eq=False)
class ReferencePhrase:
    """One corpus entry with its raw and normalized feature sequences."""
    id: str
    index: int
    text_primary: str
    text_secondary: str
    duration_seconds: float
    frames: np.ndarray  # (frames x COEFFICIENT_COUNT), possibly empty
    normalized: np.ndarray = field(repr=False, default=None)
    filename: str = ""
    is_terminal: bool = False

    def __post_init__(self):
        if self.normalized is None:
            object.__setattr__(self, "normalized", normalize_sequence(self.frames))

    @property
    def frame_count(self) -> int:
        return int(self.frames.shape[0])


class ReferenceCorpus:
    """
    Immutable ordered phrase list.

    Indices are contiguous 0..N-1 for the real phrases; when N > 0 the
    terminal phrase sits at index N.
    """

    def __init__(self, phrases: Sequence[ReferencePhrase]):
        self._phrases = tuple(phrases)
        for position, phrase in enumerate(self._phrases):
            if phrase.index != position:
                raise CorpusError(
                    f"phrase {phrase.id!r} has index {phrase.index}, expected {position}"
                )
        self._by_id = {phrase.id: phrase for phrase in self._phrases}
        if len(self._by_id) != len(self._phrases):
            raise CorpusError("phrase ids must be unique")

    @classmethod
    def empty(cls) -> "ReferenceCorpus":
        return cls([])

    @classmethod
    def from_real_phrases(cls, phrases: Sequence[ReferencePhrase]) -> "ReferenceCorpus":
        """Build a corpus and append the terminal phrase after the last entry."""
        phrases = list(phrases)
        if phrases:
            phrases.append(_terminal_phrase(len(phrases)))
        return cls(phrases)

    def __len__(self) -> int:
        return len(self._phrases)

    def __iter__(self) -> Iterator[ReferencePhrase]:
        return iter(self._phrases)

    def __getitem__(self, index: int) -> ReferencePhrase:
        return self._phrases[index]

    def get(self, phrase_id: str) -> Optional[ReferencePhrase]:
        return self._by_id.get(phrase_id)

    @property
    def last_real_index(self) -> Optional[int]:
        """Index of the last phrase with reference audio (None if empty)."""
        terminal = self.terminal_index
        last = terminal - 1 if terminal is not None else len(self._phrases) - 1
        return last if last >= 0 else None

    @property
    def terminal_index(self) -> Optional[int]:
        if self._phrases and self._phrases[-1].is_terminal:
            return len(self._phrases) - 1
        return None

    @property
    def total_reference_frames(self) -> int:
        return sum(phrase.frame_count for phrase in self._phrases)


def _terminal_phrase(index: int) -> ReferencePhrase:
    return ReferencePhrase(
        id=TERMINAL_ID,
        index=index,
        text_primary=TERMINAL_TEXT_PRIMARY,
        text_secondary=TERMINAL_TEXT_SECONDARY,
        duration_seconds=0.0,
        frames=np.zeros((0, COEFFICIENT_COUNT), dtype=np.float64),
        is_terminal=True,
    )


def _parse_record(record: dict) -> ReferencePhrase:
    if not isinstance(record, dict):
        raise CorpusError(f"corpus records must be objects, got {type(record).__name__}")

    missing = [name for name in REQUIRED_FIELDS if name not in record]
    if missing:
        raise CorpusError(f"record {record.get('id', '?')!r} missing fields: {', '.join(missing)}")

    try:
        frames = np.asarray(record["mfccSequence"] or [], dtype=np.float64)
        index = int(record["index"])
        duration = float(record.get("duration", 0.0))
    except (TypeError, ValueError) as e:
        raise CorpusError(f"record {record['id']!r}: {e}") from e

    if frames.size == 0:
        frames = np.zeros((0, COEFFICIENT_COUNT), dtype=np.float64)
    elif frames.ndim != 2 or frames.shape[1] != COEFFICIENT_COUNT:
        raise CorpusError(
            f"record {record['id']!r}: mfccSequence frames must have "
            f"{COEFFICIENT_COUNT} coefficients, got shape {frames.shape}"
        )

    return ReferencePhrase(
        id=str(record["id"]),
        index=index,
        # Older corpus files carry the text under language-specific keys
        text_primary=record.get("text_primary", record.get("Hebrew", "")),
        text_secondary=record.get("text_secondary", record.get("English", "")),
        duration_seconds=duration,
        frames=frames,
        filename=record.get("filename", ""),
    )


def parse_corpus(records: List[dict]) -> ReferenceCorpus:
    """
    Build a corpus from decoded JSON records.

    Records are ordered by their index; indices must then form 0..N-1.

    Raises:
        CorpusError: if the records are malformed
    """
    if not isinstance(records, list):
        raise CorpusError("corpus file must contain a JSON array")

    phrases = sorted((_parse_record(record) for record in records), key=lambda p: p.index)
    for position, phrase in enumerate(phrases):
        if phrase.index != position:
            raise CorpusError(
                f"corpus indices must be contiguous from 0; found {phrase.index} at position {position}"
            )
    return ReferenceCorpus.from_real_phrases(phrases)


def load_corpus(path: Union[str, Path]) -> ReferenceCorpus:
    """
    Load a corpus file.

    Raises:
        CorpusError: if the file is malformed
        OSError: if the file cannot be read
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        try:
            records = json.load(f)
        except UnicodeDecodeError as e:
            raise CorpusError(f"{path}: not UTF-8 text ({e})") from e
        except json.JSONDecodeError as e:
            raise CorpusError(f"{path}: invalid JSON ({e})") from e

    corpus = parse_corpus(records)
    missing_sequences = sum(1 for phrase in corpus if phrase.frame_count == 0 and not phrase.is_terminal)
    if missing_sequences:
        logger.warning(
            "corpus_missing_sequences",
            extra={"path": str(path), "count": missing_sequences},
        )
    logger.info(
        "corpus_loaded",
        extra={
            "path": str(path),
            "lines": len(corpus),
            "reference_frames": corpus.total_reference_frames,
        },
    )
    return corpus


def load_corpus_or_empty(path: Union[str, Path]) -> ReferenceCorpus:
    """Load a corpus, falling back to an empty corpus on any load failure."""
    try:
        return load_corpus(path)
    except (OSError, CorpusError) as e:
        logger.error("corpus_load_failed", extra={"path": str(path), "error": str(e)})
        return ReferenceCorpus.empty()
