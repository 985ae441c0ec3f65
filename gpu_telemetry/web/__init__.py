"""Web application package for the GPU telemetry API."""

from __future__ import annotations

__all__ = [
    "TelemetryCollector",
    "collector",
    "create_app",
]

from .collector import TelemetryCollector, collector  # noqa: E402
from .server import create_app  # noqa: E402
