#!/usr/bin/env python3
"""
Recitation Companion
====================
Follows a reader through a pre-recorded text and shows the line being read.

Features:
- Energy-based phrase detection with an adaptive noise floor
- Banded DTW matching of each phrase against a reference corpus
- Position-aware attention window with an accept gate
- Optimistic preview of the expected next line while speaking
- OpenTelemetry observability (traces, metrics, logs) when OTEL_ENABLED=true

Usage:
    python main.py [--corpus audio-features.json] [--list-devices]

Requirements:
    - A microphone reachable through PortAudio
    - A corpus built with scripts/build_corpus.py
    - Environment variables: see Config class
"""

import argparse
import logging
import signal
import sys
import threading

# Configure logging BEFORE any other imports so the OTEL handler sees everything
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    force=True,
)

from recite.config import Config
from recite.corpus import load_corpus_or_empty
from recite.engine import MatchStateMachine
from recite.signals import LineSignal, SignalBus, StateSignal, TextSignal
from recite.telemetry import get_logger, setup_telemetry

TEXT_PREFIXES = {
    "debug": "🔍",
    "info": "ℹ️ ",
    "warning": "⚠️ ",
    "error": "✗",
}


def print_line(signal: LineSignal) -> None:
    line = signal.line
    if line is None:
        print("\n   (title)\n")
        return
    marker = "…" if line["is_pending"] else "✓"
    print(f"\n{marker} [{line['id']}] {line['text_primary']}")
    print(f"   {line['text_secondary']}  ({line['confidence']:.2f}, {line['confidence_level']})\n")


def print_state(signal: StateSignal) -> None:
    print(f"   {signal.state} · mic {signal.permission} · {signal.completed_count}/{signal.total_lines} lines")


def print_text(signal: TextSignal) -> None:
    if signal.level == "debug":
        return
    prefix = TEXT_PREFIXES.get(signal.level, "•")
    print(f"{prefix} [{signal.category}] {signal.message}")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Follow a reader through a recorded text")
    parser.add_argument("--corpus", default=None, help=f"corpus JSON (default: {Config.CORPUS_PATH})")
    parser.add_argument("--list-devices", action="store_true", help="list input devices and exit")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    from recite.audio.capture import CaptureSession

    if args.list_devices:
        for index, name in CaptureSession.list_input_devices():
            print(f"  {index}: {name}")
        return 0

    if args.corpus:
        Config.CORPUS_PATH = args.corpus
    Config.validate()

    setup_telemetry(instance_id=Config.INSTANCE_ID, endpoint=Config.OTEL_EXPORTER_ENDPOINT)
    logger = get_logger(__name__, instance_id=Config.INSTANCE_ID)

    print("=" * 60)
    print("📖 Recitation Companion")
    print("=" * 60)
    for key, value in Config.summary().items():
        print(f"   {key}: {value}")
    print("=" * 60)

    corpus = load_corpus_or_empty(Config.CORPUS_PATH)
    if len(corpus) == 0:
        print("⚠️  Corpus is empty - nothing will match")
    else:
        print(f"✓ Loaded {len(corpus)} lines ({corpus.total_reference_frames} reference frames)")

    bus = SignalBus()
    bus.subscribe(LineSignal, print_line)
    bus.subscribe(StateSignal, print_state)
    bus.subscribe(TextSignal, print_text)
    bus.start()

    machine = MatchStateMachine.from_config(corpus, capture=CaptureSession(), signal_bus=bus)

    shutdown = threading.Event()

    def handle_signal(sig, frame):
        print(f"\n🛑 Received {signal.Signals(sig).name} - stopping...")
        shutdown.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if not machine.start():
        print("✗ Could not open the microphone")
        bus.stop()
        return 1

    logger.info("session_started", extra={"lines": len(corpus)})
    print("🎤 Listening - start reading (Ctrl+C to stop)")

    try:
        shutdown.wait()
    finally:
        machine.stop()
        bus.stop()
        logger.info("session_finished", extra={"completed": machine.completed_count, "position": machine.current_position})
        print(f"✓ Completed {machine.completed_count}/{machine.total_lines} lines")

    return 0


if __name__ == "__main__":
    sys.exit(main())
