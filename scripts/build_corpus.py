#!/usr/bin/env python3
"""
Build a Reference Corpus

Extracts per-frame MFCC sequences from reference recordings and writes the
corpus JSON consumed by the matcher. Frames are extracted exactly as live
capture does (same sample rate, frame size and coefficient count), so
rebuild the corpus whenever those settings change.

Metadata file: a JSON list of
    {"path": "1a.wav", "text_primary": "...", "text_secondary": "..."}
Relative paths are resolved against the metadata file's directory.

Usage:
    python scripts/build_corpus.py metadata.json [--output audio-features.json]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

logging.basicConfig(level=logging.INFO, format="%(message)s", force=True)

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from recite.audio.features import FeatureExtractor  # noqa: E402
from recite.config import Config  # noqa: E402
from recite.corpus.builder import build_records  # noqa: E402


def main():
    parser = argparse.ArgumentParser(description="Build a reference corpus from recordings")
    parser.add_argument("metadata", type=Path, help="metadata JSON list")
    parser.add_argument("--output", type=Path, default=Path(Config.CORPUS_PATH), help="corpus JSON to write")
    parser.add_argument("--energy-threshold", type=float, default=Config.CORPUS_ENERGY_THRESHOLD)
    args = parser.parse_args()

    with args.metadata.open("r", encoding="utf-8") as f:
        metadata = json.load(f)

    print("=" * 60)
    print("Feature extraction for DTW matching")
    print("=" * 60)
    print(f"Frame size:        {Config.FRAME_SIZE}")
    print(f"Sample rate:       {Config.SAMPLE_RATE}")
    print(f"MFCC coefficients: {Config.MFCC_COEFFICIENTS} (storing 1-{Config.MFCC_COEFFICIENTS - 1})")
    print(f"Energy threshold:  {args.energy_threshold}")
    print("=" * 60)

    extractor = FeatureExtractor(
        sample_rate=Config.SAMPLE_RATE,
        frame_size=Config.FRAME_SIZE,
        n_mfcc=Config.MFCC_COEFFICIENTS,
    )
    records = build_records(
        metadata,
        extractor,
        energy_threshold=args.energy_threshold,
        base_dir=args.metadata.resolve().parent,
    )
    if not records:
        print("✗ No usable recordings - corpus not written")
        return 1

    with args.output.open("w", encoding="utf-8") as f:
        json.dump(records, f, ensure_ascii=False, indent=2)

    total_frames = sum(len(r["mfccSequence"]) for r in records)
    print("=" * 60)
    print(f"✓ Corpus saved to {args.output}")
    print(f"   Lines: {len(records)} of {len(metadata)}")
    print(f"   Total frames: {total_frames} (avg {total_frames / len(records):.1f} per line)")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
