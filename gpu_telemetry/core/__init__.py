"""Core utilities for the GPU telemetry collector."""

from __future__ import annotations

from .cache import CachedValue, CollectorCaches, TTLCache
from .config import APP_NAME, CACHES, DELTA, ESTIMATOR, SECURITY, TIMEOUTS

__all__ = [
    "APP_NAME",
    "CACHES",
    "CachedValue",
    "CollectorCaches",
    "DELTA",
    "ESTIMATOR",
    "SECURITY",
    "TIMEOUTS",
    "TTLCache",
]
