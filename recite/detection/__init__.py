"""Detection module for voice activity and phrase segmentation"""

from .buffer import PhraseBuffer
from .vad import VADEvent, VADEventType, VADParams, VoiceActivityDetector

__all__ = ["PhraseBuffer", "VADEvent", "VADEventType", "VADParams", "VoiceActivityDetector"]
