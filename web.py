#!/usr/bin/env python3
"""
Recitation Companion - Web Control Surface
==========================================

Runs the matcher with a browser reader page and an HTTP/WebSocket API.
Accessible from any device on the same network via http://recite.local:8080

Features:
- Live display of the current line (pending previews shown dimmed)
- Start/stop listening and manual navigation
- Event stream over /ws

Usage:
    python web.py

Environment Variables:
    WEB_HOSTNAME: mDNS hostname (default: "recite" -> recite.local)
    WEB_PORT: Server port (default: 8080)
    WEB_MDNS_ENABLED: Register the mDNS service (default: true)
"""

import asyncio
import logging
import sys

# Configure logging before other imports
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    force=True,
)


def main():
    """Main entry point for the web control surface."""
    from recite.audio.capture import CaptureSession
    from recite.config import Config
    from recite.corpus import load_corpus_or_empty
    from recite.engine import MatchStateMachine
    from recite.signals import SignalBus, TextSignal
    from recite.telemetry import setup_telemetry
    from recite.web import ControlServer

    Config.validate()
    setup_telemetry(instance_id=Config.INSTANCE_ID, endpoint=Config.OTEL_EXPORTER_ENDPOINT)

    print("=" * 60)
    print("🌐 Recitation Companion - Web")
    print("=" * 60)
    print(f"Open the reader at:")
    print(f"  • http://{Config.WEB_HOSTNAME}.local:{Config.WEB_PORT}")
    print(f"  • http://localhost:{Config.WEB_PORT}")
    print("=" * 60)

    corpus = load_corpus_or_empty(Config.CORPUS_PATH)
    print(f"✓ Loaded {len(corpus)} lines")

    bus = SignalBus()
    bus.start()

    def cli_handler(signal: TextSignal):
        """Mirror text events on the console."""
        prefixes = {
            "info": "ℹ️ ",
            "warning": "⚠️ ",
            "error": "✗",
        }
        if signal.level == "debug":
            return
        print(f"{prefixes.get(signal.level, '•')} [{signal.category}] {signal.message}")

    bus.subscribe(signal_type=TextSignal, callback=cli_handler)

    machine = MatchStateMachine.from_config(corpus, capture=CaptureSession(), signal_bus=bus)
    server = ControlServer(machine, bus)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        print("\n🛑 Shutting down...")
    finally:
        machine.stop()
        bus.stop()

    sys.exit(0)


if __name__ == "__main__":
    main()
