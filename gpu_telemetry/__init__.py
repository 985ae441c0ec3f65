"""GPU and GPU-process telemetry collector."""

from __future__ import annotations

__all__ = [
    "TelemetryCollector",
    "collector",
    "create_app",
    "core",
    "data",
    "models",
]

from .web import TelemetryCollector, collector, create_app  # noqa: E402
