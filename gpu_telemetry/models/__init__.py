"""Data models exposed by the telemetry collector."""

from __future__ import annotations

from .snapshots import (
    UNSUPPORTED,
    BatterySnapshot,
    CriticalProcessInfo,
    FilterType,
    GPUInfo,
    GPUProcess,
    GPUProcessDelta,
    GPUProcessDeltaResponse,
    GPUProcessFilter,
    GPUProcessQuery,
    GPUProcessResponse,
    GPUProcessSort,
    GPUVendor,
    MethodRecord,
    ProcessTableSnapshot,
    ProtectionLevel,
    SortField,
    SortOrder,
)

__all__ = [
    "UNSUPPORTED",
    "BatterySnapshot",
    "CriticalProcessInfo",
    "FilterType",
    "GPUInfo",
    "GPUProcess",
    "GPUProcessDelta",
    "GPUProcessDeltaResponse",
    "GPUProcessFilter",
    "GPUProcessQuery",
    "GPUProcessResponse",
    "GPUProcessSort",
    "GPUVendor",
    "MethodRecord",
    "ProcessTableSnapshot",
    "ProtectionLevel",
    "SortField",
    "SortOrder",
]
