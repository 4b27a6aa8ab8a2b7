"""Audio capture and feature extraction"""

from .features import FeatureExtractor

__all__ = ["FeatureExtractor"]
