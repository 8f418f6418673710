"""Artifact cache and invalidation tracking."""

from .artifact_cache import ArtifactCache, CacheEntry, CacheError
from .invalidation import InvalidationPlan, InvalidationReason, InvalidationTracker

__all__ = [
    "ArtifactCache",
    "CacheEntry",
    "CacheError",
    "InvalidationPlan",
    "InvalidationReason",
    "InvalidationTracker",
]
