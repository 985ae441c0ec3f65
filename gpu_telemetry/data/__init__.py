"""Data providers: tool invocation, parsing, GPU collection and process control."""

from __future__ import annotations

from .control import PRIORITY_LEVELS, ProcessController, normalize_priority
from .estimator import UsageEstimator
from .fallback import AdaptiveFallbackExecutor, DetectionMethod
from .gpu import GPUProbe, merge_by_pid, unsupported_vendor_error
from .hardware import HardwareInventory
from .names import ProcessNameResolver, enumerate_process_names, placeholder_name
from .protection import STATIC_CRITICAL_PROCESSES, ProcessProtectionService
from .query import (
    DeltaTracker,
    apply_delta,
    compute_delta,
    filter_processes,
    paginate,
    run_query,
    sort_processes,
)
from .sensors import collect_battery_snapshot
from .tools import ToolRunner, current_platform
from .vendor import VendorDetector

__all__ = [
    "AdaptiveFallbackExecutor",
    "DeltaTracker",
    "DetectionMethod",
    "GPUProbe",
    "HardwareInventory",
    "PRIORITY_LEVELS",
    "ProcessController",
    "ProcessNameResolver",
    "ProcessProtectionService",
    "STATIC_CRITICAL_PROCESSES",
    "ToolRunner",
    "UsageEstimator",
    "VendorDetector",
    "apply_delta",
    "collect_battery_snapshot",
    "compute_delta",
    "current_platform",
    "enumerate_process_names",
    "filter_processes",
    "merge_by_pid",
    "normalize_priority",
    "paginate",
    "placeholder_name",
    "run_query",
    "sort_processes",
    "unsupported_vendor_error",
]
