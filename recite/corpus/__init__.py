"""Reference corpus: phrase records, feature frames and normalization"""

from .frames import (
    COEFFICIENT_COUNT,
    FeatureFrame,
    FeatureShapeError,
    normalize_frame,
    normalize_sequence,
)
from .loader import (
    TERMINAL_ID,
    CorpusError,
    ReferenceCorpus,
    ReferencePhrase,
    load_corpus,
    load_corpus_or_empty,
    parse_corpus,
)

__all__ = [
    "COEFFICIENT_COUNT",
    "FeatureFrame",
    "FeatureShapeError",
    "normalize_frame",
    "normalize_sequence",
    "TERMINAL_ID",
    "CorpusError",
    "ReferenceCorpus",
    "ReferencePhrase",
    "load_corpus",
    "load_corpus_or_empty",
    "parse_corpus",
]
