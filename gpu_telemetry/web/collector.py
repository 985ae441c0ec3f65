"""Demand-driven GPU telemetry service used by the web server and embedders."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable

import psutil

from gpu_telemetry.core import CollectorCaches
from gpu_telemetry.core.config import CACHES, DELTA, ESTIMATOR, TIMEOUTS, CacheDurations, DeltaConfig, EstimatorConfig, ToolTimeouts
from gpu_telemetry.core.errors import TelemetryError
from gpu_telemetry.data import (
    AdaptiveFallbackExecutor,
    DeltaTracker,
    GPUProbe,
    HardwareInventory,
    ProcessController,
    ProcessNameResolver,
    ProcessProtectionService,
    ToolRunner,
    UsageEstimator,
    VendorDetector,
    collect_battery_snapshot,
    current_platform,
    enumerate_process_names,
    merge_by_pid,
    run_query,
    unsupported_vendor_error,
)
from gpu_telemetry.data.gpu import pynvml
from gpu_telemetry.data.hardware import SYS_DRM
from gpu_telemetry.models import (
    BatterySnapshot,
    GPUInfo,
    GPUProcess,
    GPUProcessDeltaResponse,
    GPUProcessQuery,
    GPUProcessResponse,
    GPUVendor,
    ProcessTableSnapshot,
)

_PRIMITIVE_TYPES = (int, float, str, bool)
logger = logging.getLogger(__name__)


def _snapshot_to_dict(snapshot: Any) -> Any:
    """Convert dataclass snapshots into plain serialisable dictionaries."""

    if snapshot is None:
        return None
    if isinstance(snapshot, _PRIMITIVE_TYPES):
        return snapshot
    if hasattr(snapshot, "to_dict"):
        return snapshot.to_dict()
    if hasattr(snapshot, "__dataclass_fields__"):
        return asdict(snapshot)
    if isinstance(snapshot, dict):
        return {key: _snapshot_to_dict(value) for key, value in snapshot.items()}
    if isinstance(snapshot, (list, tuple, set)):
        return [_snapshot_to_dict(item) for item in snapshot]
    return snapshot


class TelemetryCollector:
    """Collects GPU facts on request and keeps them in owned TTL caches.

    Nothing runs in the background: every public call either answers from a
    cache or performs one collection through the adaptive fallback chains.
    """

    def __init__(
        self,
        *,
        platform: str | None = None,
        durations: CacheDurations = CACHES,
        timeouts: ToolTimeouts = TIMEOUTS,
        estimator_config: EstimatorConfig = ESTIMATOR,
        delta_config: DeltaConfig = DELTA,
        clock: Callable[[], float] = time.monotonic,
        runner: ToolRunner | None = None,
        nvml: Any = pynvml,
        enumerate_names: Callable[[], dict[int, str]] = enumerate_process_names,
        process_factory: Callable[[int], Any] = psutil.Process,
        parent_lookup: Callable[[int], tuple[int, str] | None] | None = None,
        battery_source: Callable[[], BatterySnapshot] = collect_battery_snapshot,
        drm_root: Path = SYS_DRM,
    ) -> None:
        self.platform = platform or current_platform()
        self.caches = CollectorCaches(durations, clock=clock)
        self._lock = threading.RLock()
        self._monitoring_enabled = True
        self._battery_source = battery_source

        self._runner = runner if runner is not None else ToolRunner(self.caches.tool_paths)
        self._inventory = HardwareInventory(
            self._runner, self.caches.video_controllers, platform=self.platform, timeouts=timeouts, drm_root=drm_root
        )
        self._names = ProcessNameResolver(
            self.caches.process_names, enumerate_all=enumerate_names, runner=self._runner, platform=self.platform
        )
        self._probe = GPUProbe(
            self._runner,
            self._names,
            UsageEstimator(estimator_config),
            platform=self.platform,
            timeouts=timeouts,
            drm_root=drm_root,
            nvml=nvml,
        )
        self._vendor = VendorDetector(self._probe.nvidia_available, self._inventory.video_controllers)
        self._process_executor = AdaptiveFallbackExecutor("gpu processes")
        self._info_executor = AdaptiveFallbackExecutor("gpu info")
        if parent_lookup is None:
            self.protection = ProcessProtectionService(self.platform)
        else:
            self.protection = ProcessProtectionService(self.platform, parent_lookup=parent_lookup)
        self._controller = ProcessController(
            self.protection,
            process_factory=process_factory,
            gpu_pids=self._known_gpu_pids,
            platform=self.platform,
        )
        self._delta = DeltaTracker(delta_config)

        self._diagnostics: dict[str, Any] = {
            "last_error": None,
            "last_success_at": None,
        }
        self._operation_failures: defaultdict[str, int] = defaultdict(int)

    # -- collection -------------------------------------------------------

    def _tracked(self, key: str, fn: Callable[[], Any]) -> Any:
        try:
            result = fn()
        except TelemetryError as exc:
            logger.warning("Operation '%s' failed: %s", key, exc)
            self._record_failure(key, exc)
            raise
        except Exception as exc:
            logger.exception("Operation '%s' failed unexpectedly", key, exc_info=exc)
            self._record_failure(key, exc)
            raise
        with self._lock:
            self._diagnostics["last_success_at"] = time.time()
        return result

    def _record_failure(self, key: str, exc: BaseException) -> None:
        with self._lock:
            self._operation_failures[key] += 1
            self._diagnostics["last_error"] = {
                "operation": key,
                "message": str(exc),
                "type": exc.__class__.__name__,
                "timestamp": time.time(),
            }

    def collect_gpu_info(self) -> GPUInfo:
        vendor = self._vendor.detect()
        methods = self._probe.info_methods(vendor, self._inventory.video_controllers)
        return self._info_executor.execute(methods)

    def collect_gpu_processes(self) -> ProcessTableSnapshot:
        vendor = self._vendor.detect()
        methods = self._probe.process_methods(vendor)
        if not methods:
            raise unsupported_vendor_error(vendor, self.platform)
        processes = merge_by_pid(self._process_executor.execute(methods))
        logger.debug("Collected %d GPU processes", len(processes))
        return ProcessTableSnapshot(processes=tuple(processes), timestamp=time.time())

    def _process_table(self) -> list[GPUProcess]:
        if not self.is_gpu_process_monitoring_enabled():
            snapshot = self.caches.gpu_processes.peek("table")
            return list(snapshot.processes) if snapshot is not None else []
        snapshot = self._tracked(
            "gpu_processes", lambda: self.caches.gpu_processes.refresh("table", self.collect_gpu_processes)
        )
        return list(snapshot.processes)

    def _known_gpu_pids(self) -> list[int]:
        return [process.pid for process in self._process_table()]

    # -- public API -------------------------------------------------------

    def get_gpu_info(self) -> GPUInfo:
        return self._tracked("gpu_info", lambda: self.caches.gpu_info.refresh("info", self.collect_gpu_info))

    def get_gpu_processes(self) -> list[GPUProcess]:
        return self._process_table()

    def get_gpu_processes_filtered(self, query: GPUProcessQuery | None = None) -> GPUProcessResponse:
        return run_query(self._process_table(), query or GPUProcessQuery())

    def get_gpu_processes_delta(self, last_update_id: str | None = None) -> GPUProcessDeltaResponse:
        return self._delta.delta(last_update_id, self._process_table())

    def kill_gpu_process(self, pid: int) -> None:
        self._controller.kill(pid)
        self.caches.gpu_processes.invalidate("table")

    def suspend_gpu_process(self, pid: int) -> None:
        self._controller.suspend(pid)
        self.caches.gpu_processes.invalidate("table")

    def resume_gpu_process(self, pid: int) -> None:
        self._controller.resume(pid)
        self.caches.gpu_processes.invalidate("table")

    def set_gpu_process_priority(self, pid: int, level: str) -> None:
        self._controller.set_priority(pid, level)

    def set_gpu_process_monitoring_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._monitoring_enabled = bool(enabled)
        logger.info("GPU process monitoring %s", "enabled" if enabled else "disabled")

    def is_gpu_process_monitoring_enabled(self) -> bool:
        with self._lock:
            return self._monitoring_enabled

    def get_battery(self) -> BatterySnapshot:
        return self._tracked("battery", lambda: self.caches.battery.refresh("battery", self._battery_source))

    def detected_vendor(self) -> GPUVendor:
        return self._vendor.detect()

    def diagnostics(self) -> dict[str, Any]:
        with self._lock:
            data = {
                **self._diagnostics,
                "operation_failures": dict(self._operation_failures),
                "monitoring_enabled": self._monitoring_enabled,
            }
        data["vendor"] = self._vendor.detect().value if self._vendor.detected else None
        data["platform"] = self.platform
        data["methods"] = {
            "processes": _snapshot_to_dict(self._process_executor.records()),
            "info": _snapshot_to_dict(self._info_executor.records()),
        }
        data["last_successful_method"] = {
            "processes": self._process_executor.last_success,
            "info": self._info_executor.last_success,
        }
        data["cache_entries"] = {name: len(cache) for name, cache in self.caches.all().items()}
        return data

    def clear_caches(self) -> None:
        self.caches.clear_all()
        logger.debug("All collector caches cleared")


collector = TelemetryCollector()
"""Module-level collector instance used by the web server."""
