"""
CaptureSession - Live microphone capture for the matcher.

Opens one sounddevice input stream and hands feature frames to a single
consumer:
- The realtime callback only copies blocks into a bounded queue
- One distribution thread turns blocks into FeatureFrames and calls on_frame

Usage:
    capture = CaptureSession()
    if capture.start(machine.ingest_frame):
        ...
    capture.stop()
"""

import logging
import queue
import threading
import time
from typing import Callable, Optional

import sounddevice as sd

from recite.audio.features import FeatureExtractor
from recite.corpus.frames import FeatureFrame

logger = logging.getLogger(__name__)

# Blocks waiting for feature extraction (~0.4s at 48kHz / 2048)
DISTRIBUTION_QUEUE_SIZE = 10

# Only log input status warnings this often
STATUS_WARNING_INTERVAL = 5.0


class CaptureSession:
    """Microphone capture that pushes FeatureFrames to one callback."""

    def __init__(
        self,
        sample_rate: Optional[int] = None,
        frame_size: Optional[int] = None,
        device: Optional[int] = None,
        extractor: Optional[FeatureExtractor] = None,
    ):
        """
        Args:
            sample_rate: Capture rate (defaults to Config.SAMPLE_RATE)
            frame_size: Samples per block (defaults to Config.FRAME_SIZE)
            device: sounddevice input index (defaults to Config.INPUT_DEVICE)
            extractor: Feature extractor override
        """
        from recite.config import Config

        self.sample_rate = sample_rate or Config.SAMPLE_RATE
        self.frame_size = frame_size or Config.FRAME_SIZE
        self.device = device if device is not None else Config.INPUT_DEVICE
        self._extractor = extractor or FeatureExtractor(
            sample_rate=self.sample_rate,
            frame_size=self.frame_size,
            n_mfcc=Config.MFCC_COEFFICIENTS,
        )

        self._stream: Optional[sd.InputStream] = None
        self._on_frame: Optional[Callable[[FeatureFrame], None]] = None
        self._is_running = False
        self._lock = threading.Lock()

        self._queue: queue.Queue = queue.Queue(maxsize=DISTRIBUTION_QUEUE_SIZE)
        self._distribution_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self._dropped_blocks = 0
        self._status_warning_count = 0
        self._last_status_warning = 0.0

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def dropped_blocks(self) -> int:
        return self._dropped_blocks

    def start(self, on_frame: Callable[[FeatureFrame], None]) -> bool:
        """
        Open the input device and begin delivering frames.

        Returns:
            True if capture started, False if the device is unavailable
        """
        with self._lock:
            if self._is_running:
                return True

            self._on_frame = on_frame
            try:
                self._stream = sd.InputStream(
                    device=self.device,
                    samplerate=self.sample_rate,
                    channels=1,
                    dtype="float32",
                    blocksize=self.frame_size,
                    latency="high",
                    callback=self._input_callback,
                )
                self._stream.start()
            except (sd.PortAudioError, OSError, ValueError) as e:
                print(f"✗ Microphone unavailable: {e}")
                logger.error("capture_start_failed", extra={"error": str(e), "device": self.device})
                self._close_stream()
                return False

            self._is_running = True
            self._start_distribution_thread()
            print(f"✓ Capture started: {self.sample_rate} Hz, {self.frame_size}-sample frames")
            logger.info(
                "capture_started",
                extra={"sample_rate": self.sample_rate, "frame_size": self.frame_size, "device": self.device},
            )
            return True

    def stop(self) -> None:
        """Stop capture and release the device."""
        with self._lock:
            if not self._is_running:
                return

            self._is_running = False
            self._close_stream()
            self._stop_distribution_thread()
            self._drain_queue()
            logger.info("capture_stopped", extra={"dropped_blocks": self._dropped_blocks})

    def _input_callback(self, indata, frames, time_info, status):
        """Realtime callback: copy the block, never block."""
        if status:
            self._status_warning_count += 1
            now = time.time()
            if now - self._last_status_warning >= STATUS_WARNING_INTERVAL:
                print(f"⚠️  Input status: {status} ({self._status_warning_count}x)")
                self._last_status_warning = now
                self._status_warning_count = 0

        try:
            self._queue.put_nowait(indata[:, 0].copy())
        except queue.Full:
            self._dropped_blocks += 1

    def _start_distribution_thread(self) -> None:
        self._stop_event.clear()
        self._distribution_thread = threading.Thread(
            target=self._distribution_loop, name="capture-distribution", daemon=True
        )
        self._distribution_thread.start()

    def _stop_distribution_thread(self) -> None:
        if self._distribution_thread:
            self._stop_event.set()
            if self._distribution_thread is not threading.current_thread():
                self._distribution_thread.join(timeout=1.0)
            self._distribution_thread = None

    def _distribution_loop(self) -> None:
        """Extract features and deliver frames in capture order."""
        while not self._stop_event.is_set():
            try:
                block = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue

            try:
                frame = self._extractor.extract(block)
            except ValueError as e:
                logger.warning("feature_extraction_failed", extra={"error": str(e)})
                continue

            on_frame = self._on_frame
            if on_frame is None:
                continue
            try:
                on_frame(frame)
            except Exception:
                logger.exception("frame_consumer_failed")

    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def _close_stream(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as e:
                logger.warning("capture_close_failed", extra={"error": str(e)})
            self._stream = None

    @staticmethod
    def list_input_devices() -> list:
        """Input-capable devices as (index, name) pairs."""
        return [
            (index, device["name"])
            for index, device in enumerate(sd.query_devices())
            if device["max_input_channels"] > 0
        ]

