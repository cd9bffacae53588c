"""Caching primitives for expensive metadata lookups."""

from .manager import DEFAULT_TTL_SECONDS, CachedEntry, CachedResourceManager
from .metrics import CacheMetrics, MetricsSnapshot

__all__ = [
    "CacheMetrics",
    "CachedEntry",
    "CachedResourceManager",
    "DEFAULT_TTL_SECONDS",
    "MetricsSnapshot",
]
