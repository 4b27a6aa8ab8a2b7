"""Configuration management from environment variables"""

import os
import sys
from dotenv import load_dotenv

from recite.detection.vad import VADParams

# Load environment variables
load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    """Application configuration from environment variables"""

    # =========================================================================
    # CORPUS
    # =========================================================================
    CORPUS_PATH = os.getenv("CORPUS_PATH", "audio-features.json")

    # =========================================================================
    # AUDIO / FEATURE SETTINGS
    # =========================================================================
    # Frame size must match between corpus building and live capture,
    # otherwise every alignment distance is meaningless.
    SAMPLE_RATE = _env_int("SAMPLE_RATE", 48000)
    CHANNELS = 1
    FRAME_SIZE = _env_int("FRAME_SIZE", 2048)  # ~43ms frames at 48kHz, no overlap
    MFCC_COEFFICIENTS = _env_int("MFCC_COEFFICIENTS", 13)  # coefficient 0 is dropped
    INPUT_DEVICE = int(os.environ["INPUT_DEVICE"]) if os.getenv("INPUT_DEVICE") else None

    # Energy gate used when building the corpus (frames below are skipped)
    CORPUS_ENERGY_THRESHOLD = _env_float("CORPUS_ENERGY_THRESHOLD", 0.008)

    # =========================================================================
    # VOICE ACTIVITY DETECTION
    # =========================================================================
    VAD_INITIAL_NOISE_FLOOR = _env_float("VAD_INITIAL_NOISE_FLOOR", 0.002)
    VAD_MIN_ENERGY = _env_float("VAD_MIN_ENERGY", 0.004)
    VAD_NOISE_ALPHA = _env_float("VAD_NOISE_ALPHA", 0.05)
    VAD_MULTIPLIER = _env_float("VAD_MULTIPLIER", 3.2)
    VAD_START_FRAMES = _env_int("VAD_START_FRAMES", 2)
    VAD_END_FRAMES = _env_int("VAD_END_FRAMES", 12)
    VAD_COOLDOWN_MS = _env_float("VAD_COOLDOWN_MS", 200)
    VAD_WARMUP_MS = _env_float("VAD_WARMUP_MS", 600)

    # =========================================================================
    # MATCHING
    # =========================================================================
    MIN_PHRASE_FRAMES = _env_int("MIN_PHRASE_FRAMES", 15)
    OPTIMISTIC_DELAY_MS = _env_float("OPTIMISTIC_DELAY_MS", 120)
    DTW_BAND_RATIO = _env_float("DTW_BAND_RATIO", 0.3)

    # =========================================================================
    # TELEMETRY
    # =========================================================================
    OTEL_ENABLED = os.getenv("OTEL_ENABLED", "false").lower() == "true"
    OTEL_EXPORTER_ENDPOINT = os.getenv("OTEL_EXPORTER_ENDPOINT", "http://localhost:4318")
    INSTANCE_ID = os.getenv("INSTANCE_ID", "local")

    # =========================================================================
    # WEB CONTROL SURFACE
    # =========================================================================
    WEB_HOSTNAME = os.getenv("WEB_HOSTNAME", "recite")
    WEB_PORT = _env_int("WEB_PORT", 8080)
    WEB_MDNS_ENABLED = os.getenv("WEB_MDNS_ENABLED", "true").lower() == "true"

    # Environment
    ENV = os.getenv("ENV", "production")

    @classmethod
    def validate(cls):
        """Validate required configuration"""
        problems = []

        if not os.path.exists(cls.CORPUS_PATH):
            problems.append(f"CORPUS_PATH ({cls.CORPUS_PATH}) does not exist")
        if cls.FRAME_SIZE <= 0 or cls.SAMPLE_RATE <= 0:
            problems.append("FRAME_SIZE and SAMPLE_RATE must be positive")

        if problems:
            print(f"✗ Invalid configuration: {'; '.join(problems)}")
            print("   Build a corpus with scripts/build_corpus.py or set CORPUS_PATH.")
            sys.exit(1)

    @classmethod
    def vad_params(cls) -> VADParams:
        """Build the VAD parameter set for one session."""
        return VADParams(
            initial_noise_floor=cls.VAD_INITIAL_NOISE_FLOOR,
            min_energy=cls.VAD_MIN_ENERGY,
            noise_alpha=cls.VAD_NOISE_ALPHA,
            multiplier=cls.VAD_MULTIPLIER,
            start_frames=cls.VAD_START_FRAMES,
            end_frames=cls.VAD_END_FRAMES,
            cooldown_ms=cls.VAD_COOLDOWN_MS,
            warmup_ms=cls.VAD_WARMUP_MS,
        )

    @classmethod
    def summary(cls) -> dict:
        """Configuration values worth printing at startup."""
        return {
            "corpus_path": cls.CORPUS_PATH,
            "sample_rate": cls.SAMPLE_RATE,
            "frame_size": cls.FRAME_SIZE,
            "min_phrase_frames": cls.MIN_PHRASE_FRAMES,
            "dtw_band_ratio": cls.DTW_BAND_RATIO,
            "otel_enabled": cls.OTEL_ENABLED,
        }
