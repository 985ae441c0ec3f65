"""Global configuration values for the GPU telemetry collector."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class CacheDurations:
    """Time-to-live (in seconds) for every cached domain."""

    tool_path: float = 60 * 60
    video_controllers: float = 4 * 60 * 60
    gpu_info: float = 600
    gpu_processes: float = 600
    battery: float = 5 * 60
    process_names: float = 30


@dataclass(frozen=True)
class ToolTimeouts:
    """Timeouts (in seconds) for external tool invocations."""

    probe: float = 3.0  # availability checks
    vendor_probe: float = 2.0
    query: float = 4.0  # per-process and utilisation queries
    inventory: float = 10.0  # one-shot hardware listings


def _default_multipliers() -> tuple[tuple[float, tuple[str, ...]], ...]:
    return (
        (3.0, ("game", "unity", "unreal", "blender", "3dsmax", "maya", "davinci", "premiere")),
        (2.5, ("python", "pytorch", "tensorflow", "cuda", "ollama", "stable")),
        (1.5, ("chrome", "firefox", "edge", "brave")),
        (0.5, ("explorer", "dwm", "csrss", "winlogon")),
    )


@dataclass(frozen=True)
class EstimatorConfig:
    """Knobs for attributing aggregate GPU usage to individual processes."""

    distributable_fraction: float = 0.8
    max_process_share: float = 0.6
    baseline_usage: float = 0.3
    baseline_min_aggregate: float = 1.0
    # Checked in order, first keyword hit wins.
    multipliers: tuple[tuple[float, tuple[str, ...]], ...] = field(default_factory=_default_multipliers)


@dataclass(frozen=True)
class DeltaConfig:
    """Bounds for per-session delta snapshots."""

    max_sessions: int = 64


@dataclass(frozen=True)
class SecurityConfig:
    """Security-related defaults for the telemetry web server."""

    allowed_origins: tuple[str, ...] = ("http://127.0.0.1:8080", "http://localhost:8080")
    allow_credentials: bool = False
    basic_auth_username: str | None = None
    basic_auth_password: str | None = None
    enable_rate_limit: bool = True
    rate_limit_requests: int = 120
    rate_limit_window_seconds: int = 60


APP_NAME = "GPU Telemetry"
CACHES = CacheDurations()
TIMEOUTS = ToolTimeouts()
ESTIMATOR = EstimatorConfig()
DELTA = DeltaConfig()
SECURITY = SecurityConfig()
