"""GPU data provider with multiple backend support.

Each backend is exposed as a named :class:`DetectionMethod` so that the
adaptive fallback executor can reorder them per machine. Backends shell
out to the vendor tools through :class:`ToolRunner`; the NVML bindings are
used when they are installed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterator

from gpu_telemetry.core.config import TIMEOUTS, ToolTimeouts
from gpu_telemetry.core.errors import TelemetryError, ToolNotFound, UnsupportedPlatform
from gpu_telemetry.models import UNSUPPORTED, GPUInfo, GPUProcess, GPUVendor

from .estimator import UsageEstimator
from .fallback import DetectionMethod
from .hardware import SYS_DRM, drm_devices
from .names import ProcessNameResolver, placeholder_name
from .parsers import (
    parse_apps,
    parse_dmon,
    parse_lsof_clients,
    parse_perf_counters,
    parse_pmon,
    parse_query_gpu,
    parse_rocm_showpids,
    parse_system_profiler,
    parse_utilization,
)
from .tools import ToolRunner, current_platform

try:
    import pynvml  # type: ignore[import]
except ModuleNotFoundError:  # pragma: no cover - optional dependency
    pynvml = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_AMD_VENDOR_IDS = {"0x1002", "0x1022"}
_BYTES_PER_MB = 1024 * 1024

_QUERY_GPU = "--query-gpu=name,utilization.gpu,memory.used,memory.total,temperature.gpu,power.draw"
_CSV = "--format=csv,noheader,nounits"
_PERF_MEMORY_SCRIPT = (
    "Get-Counter '\\GPU Process Memory(*)\\Dedicated Usage' | "
    "Select-Object -ExpandProperty CounterSamples | "
    "Select-Object InstanceName,CookedValue | ConvertTo-Csv -NoTypeInformation"
)
_PERF_ENGINE_SCRIPT = (
    "((Get-Counter '\\GPU Engine(*engtype_3D)\\Utilization Percentage').CounterSamples | "
    "Measure-Object -Property CookedValue -Sum).Sum"
)


def _iter_nvml_handles(nvml: Any) -> Iterator[Any]:
    count = nvml.nvmlDeviceGetCount()
    for index in range(count):
        yield nvml.nvmlDeviceGetHandleByIndex(index)


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _read_number(path: Path, scale: float = 1.0) -> float:
    try:
        return float(path.read_text(encoding="utf-8").strip()) / scale
    except (OSError, ValueError):
        return UNSUPPORTED


def merge_by_pid(processes: list[GPUProcess]) -> list[GPUProcess]:
    """Keep the first row for each pid."""
    seen: dict[int, GPUProcess] = {}
    for process in processes:
        seen.setdefault(process.pid, process)
    return list(seen.values())


class GPUProbe:
    """Builds the per-vendor detection methods for GPU info and GPU processes."""

    def __init__(
        self,
        runner: ToolRunner,
        names: ProcessNameResolver,
        estimator: UsageEstimator,
        *,
        platform: str | None = None,
        timeouts: ToolTimeouts = TIMEOUTS,
        drm_root: Path = SYS_DRM,
        nvml: Any = pynvml,
    ) -> None:
        self._runner = runner
        self._names = names
        self._estimator = estimator
        self._platform = platform or current_platform()
        self._timeouts = timeouts
        self._drm_root = drm_root
        self._nvml = nvml

    # -- availability -----------------------------------------------------

    def nvidia_available(self) -> bool:
        if self._runner.resolve("nvidia-smi") is None:
            return False
        output = self._runner.run(
            "nvidia-smi", ["--query-gpu=name", _CSV], self._timeouts.vendor_probe
        )
        return bool(output.strip()) and "No devices" not in output

    # -- method tables ----------------------------------------------------

    def process_methods(self, vendor: GPUVendor) -> list[DetectionMethod]:
        if vendor is GPUVendor.NVIDIA:
            return [
                DetectionMethod("nvidia-pmon", self.nvidia_pmon_processes),
                DetectionMethod("nvidia-compute-apps", lambda: self.nvidia_app_processes("compute")),
                DetectionMethod("nvidia-graphics-apps", lambda: self.nvidia_app_processes("graphics")),
                DetectionMethod("nvidia-nvml", self.nvml_processes),
            ]
        methods: list[DetectionMethod] = []
        if self._platform == "linux":
            if vendor is GPUVendor.AMD:
                methods.append(DetectionMethod("amd-rocm-smi", self.rocm_processes))
            methods.append(DetectionMethod("drm-clients", lambda: self.drm_client_processes(vendor)))
        elif self._platform == "windows":
            methods.append(DetectionMethod("windows-perf-counters", lambda: self.perf_counter_processes(vendor)))
        return methods

    def info_methods(self, vendor: GPUVendor, descriptors: Callable[[], list[str]]) -> list[DetectionMethod]:
        methods: list[DetectionMethod] = []
        if vendor is GPUVendor.NVIDIA:
            methods += [
                DetectionMethod("nvidia-smi", self.nvidia_smi_info),
                DetectionMethod("nvidia-dmon", self.nvidia_dmon_info),
                DetectionMethod("nvidia-nvml", self.nvml_info),
            ]
        if vendor is GPUVendor.AMD and self._platform == "linux":
            methods.append(DetectionMethod("amd-sysfs", lambda: self.amd_sysfs_info(descriptors)))
        if self._platform == "darwin":
            methods.append(DetectionMethod("system-profiler", self.system_profiler_info))
        methods.append(DetectionMethod("descriptor", lambda: self.descriptor_info(vendor, descriptors)))
        return methods

    # -- aggregate utilisation -------------------------------------------

    def aggregate_usage(self, vendor: GPUVendor) -> float | None:
        """Fresh system-wide utilisation, or ``None`` when no source reports it."""
        if vendor is GPUVendor.NVIDIA:
            try:
                return parse_utilization(
                    self._runner.run("nvidia-smi", ["--query-gpu=utilization.gpu", _CSV], self._timeouts.query)
                )
            except TelemetryError as exc:
                logger.debug("utilization.gpu query failed: %s", exc)
            try:
                usage, _ = parse_dmon(self._runner.run("nvidia-smi", ["dmon", "-c", "1"], self._timeouts.query))
                if usage >= 0:
                    return usage
            except TelemetryError as exc:
                logger.debug("dmon query failed: %s", exc)
            try:
                return self.nvml_info().usage
            except TelemetryError as exc:
                logger.debug("NVML utilisation unavailable: %s", exc)
            return None
        if vendor is GPUVendor.AMD and self._platform == "linux":
            for device in self._amd_devices():
                usage = _read_number(device / "gpu_busy_percent")
                if usage >= 0:
                    return usage
        if self._platform == "windows":
            try:
                output = self._runner.run(
                    "powershell", ["-NoProfile", "-Command", _PERF_ENGINE_SCRIPT], self._timeouts.query
                )
                return min(float(output.strip().replace(",", ".")), 100.0)
            except (TelemetryError, ValueError) as exc:
                logger.debug("GPU engine counters unavailable: %s", exc)
        return None

    def _attribute(self, processes: list[GPUProcess], vendor: GPUVendor) -> list[GPUProcess]:
        return self._estimator.estimate(processes, self.aggregate_usage(vendor))

    def _with_names(self, processes: list[GPUProcess]) -> list[GPUProcess]:
        names = self._names.resolve_batch(process.pid for process in processes)
        named: list[GPUProcess] = []
        for process in processes:
            name = names.get(process.pid) or process.name or placeholder_name(process.pid)
            named.append(
                GPUProcess(
                    pid=process.pid,
                    name=name,
                    gpu_usage=process.gpu_usage,
                    gpu_memory=process.gpu_memory,
                    type=process.type,
                    command=process.command or name,
                    status=process.status,
                )
            )
        return named

    # -- process backends -------------------------------------------------

    def nvidia_pmon_processes(self) -> list[GPUProcess]:
        output = self._runner.run("nvidia-smi", ["pmon", "-c", "1", "-s", "um"], self._timeouts.query)
        return self._with_names(merge_by_pid(parse_pmon(output)))

    def nvidia_app_processes(self, kind: str) -> list[GPUProcess]:
        query = f"--query-{kind}-apps=pid,process_name,used_memory"
        output = self._runner.run("nvidia-smi", [query, _CSV], self._timeouts.query)
        processes = merge_by_pid(parse_apps(output, "C" if kind == "compute" else "G"))
        if not processes:
            return []
        return self._attribute(processes, GPUVendor.NVIDIA)

    def nvml_processes(self) -> list[GPUProcess]:
        nvml = self._require_nvml()
        found: dict[int, GPUProcess] = {}
        try:
            nvml.nvmlInit()
            try:
                for handle in _iter_nvml_handles(nvml):
                    for getter, kind in (
                        (nvml.nvmlDeviceGetComputeRunningProcesses, "C"),
                        (nvml.nvmlDeviceGetGraphicsRunningProcesses, "G"),
                    ):
                        for entry in getter(handle):
                            used = getattr(entry, "usedGpuMemory", None)
                            memory = float(used) / _BYTES_PER_MB if used else 0.0
                            previous = found.get(entry.pid)
                            if previous is not None:
                                merged_kind = previous.type if previous.type == kind else "C+G"
                                found[entry.pid] = GPUProcess(
                                    pid=entry.pid,
                                    name=previous.name,
                                    gpu_memory=max(previous.gpu_memory, memory),
                                    type=merged_kind,
                                )
                            else:
                                found[entry.pid] = GPUProcess(pid=entry.pid, name="", gpu_memory=memory, type=kind)
            finally:
                nvml.nvmlShutdown()
        except nvml.NVMLError as exc:
            raise TelemetryError(f"NVML process query failed: {exc}") from exc
        if not found:
            return []
        return self._attribute(self._with_names(list(found.values())), GPUVendor.NVIDIA)

    def rocm_processes(self) -> list[GPUProcess]:
        output = self._runner.run("rocm-smi", ["--showpids"], self._timeouts.query)
        processes = merge_by_pid(parse_rocm_showpids(output))
        if not processes:
            return []
        return self._attribute(self._with_names(processes), GPUVendor.AMD)

    def drm_client_processes(self, vendor: GPUVendor) -> list[GPUProcess]:
        output = self._runner.run("lsof", ["-w", "+D", "/dev/dri"], self._timeouts.query)
        processes = parse_lsof_clients(output)
        if not processes:
            return []
        return self._attribute(processes, vendor)

    def perf_counter_processes(self, vendor: GPUVendor) -> list[GPUProcess]:
        output = self._runner.run(
            "powershell", ["-NoProfile", "-Command", _PERF_MEMORY_SCRIPT], self._timeouts.query
        )
        memory_by_pid = parse_perf_counters(output)
        processes = [
            GPUProcess(pid=pid, name="", gpu_memory=memory, type="G")
            for pid, memory in memory_by_pid.items()
            if memory > 0
        ]
        if not processes:
            return []
        return self._attribute(self._with_names(processes), vendor)

    # -- info backends ----------------------------------------------------

    def nvidia_smi_info(self) -> GPUInfo:
        return parse_query_gpu(self._runner.run("nvidia-smi", [_QUERY_GPU, _CSV], self._timeouts.query))

    def nvidia_dmon_info(self) -> GPUInfo:
        usage, power = parse_dmon(self._runner.run("nvidia-smi", ["dmon", "-c", "1"], self._timeouts.query))
        base = self.nvidia_smi_info()
        return GPUInfo(
            name=base.name,
            usage=usage if usage >= 0 else base.usage,
            memory_used=base.memory_used,
            memory_total=base.memory_total,
            temperature=base.temperature,
            power=power if power >= 0 else base.power,
        )

    def nvml_info(self) -> GPUInfo:
        nvml = self._require_nvml()
        try:
            nvml.nvmlInit()
            try:
                handle = next(_iter_nvml_handles(nvml), None)
                if handle is None:
                    raise TelemetryError("NVML reports no devices")
                memory = nvml.nvmlDeviceGetMemoryInfo(handle)
                util = nvml.nvmlDeviceGetUtilizationRates(handle)
                temperature = nvml.nvmlDeviceGetTemperature(handle, nvml.NVML_TEMPERATURE_GPU)
                try:
                    power = nvml.nvmlDeviceGetPowerUsage(handle) / 1000.0
                except nvml.NVMLError:
                    power = UNSUPPORTED
                return GPUInfo(
                    name=_text(nvml.nvmlDeviceGetName(handle)),
                    usage=float(util.gpu),
                    memory_used=float(memory.used) / _BYTES_PER_MB,
                    memory_total=float(memory.total) / _BYTES_PER_MB,
                    temperature=float(temperature),
                    power=float(power),
                )
            finally:
                nvml.nvmlShutdown()
        except nvml.NVMLError as exc:
            raise TelemetryError(f"NVML info query failed: {exc}") from exc

    def amd_sysfs_info(self, descriptors: Callable[[], list[str]]) -> GPUInfo | None:
        for device in self._amd_devices():
            temperature = UNSUPPORTED
            power = UNSUPPORTED
            for hwmon in sorted(device.glob("hwmon/hwmon*")):
                temperature = _read_number(hwmon / "temp1_input", scale=1000.0)
                power = _read_number(hwmon / "power1_average", scale=1_000_000.0)
                break
            used = _read_number(device / "mem_info_vram_used", scale=_BYTES_PER_MB)
            total = _read_number(device / "mem_info_vram_total", scale=_BYTES_PER_MB)
            return GPUInfo(
                name=self._descriptor_name(GPUVendor.AMD, descriptors) or "AMD GPU",
                usage=_read_number(device / "gpu_busy_percent"),
                memory_used=used,
                memory_total=total,
                temperature=temperature,
                power=power,
            )
        return None

    def system_profiler_info(self) -> GPUInfo | None:
        output = self._runner.run("system_profiler", ["SPDisplaysDataType"], self._timeouts.inventory)
        for name, vram in parse_system_profiler(output):
            return GPUInfo(name=name, memory_total=vram)
        return None

    def descriptor_info(self, vendor: GPUVendor, descriptors: Callable[[], list[str]]) -> GPUInfo | None:
        name = self._descriptor_name(vendor, descriptors)
        return GPUInfo(name=name) if name else None

    # -- helpers ----------------------------------------------------------

    def _descriptor_name(self, vendor: GPUVendor, descriptors: Callable[[], list[str]]) -> str | None:
        names = descriptors()
        keywords = {
            GPUVendor.NVIDIA: ("nvidia",),
            GPUVendor.AMD: ("amd", "radeon"),
            GPUVendor.INTEL: ("intel",),
        }.get(vendor, ())
        for name in names:
            if any(keyword in name.lower() for keyword in keywords):
                return name
        return names[0] if names else None

    def _amd_devices(self) -> list[Path]:
        return [device for device, vendor_id in drm_devices(self._drm_root) if vendor_id in _AMD_VENDOR_IDS]

    def _require_nvml(self) -> Any:
        if self._nvml is None:
            raise ToolNotFound("pynvml")
        return self._nvml


def unsupported_vendor_error(vendor: GPUVendor, platform: str) -> UnsupportedPlatform:
    return UnsupportedPlatform(platform, f"no GPU process detection method for {vendor.value}")
