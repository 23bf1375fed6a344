"""Feature extraction and the per-fragment feature cache."""

from .cache import FeatureCache, FeatureCacheConfig
from .extraction import ExtractionConfig, FeatureExtractor

__all__ = ["ExtractionConfig", "FeatureCache", "FeatureCacheConfig", "FeatureExtractor"]
