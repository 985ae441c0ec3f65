"""Dataclasses exchanged between the collectors, the query engine and callers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Mapping

UNSUPPORTED = -1.0


class GPUVendor(str, Enum):
    UNKNOWN = "Unknown"
    NVIDIA = "NVIDIA"
    AMD = "AMD"
    INTEL = "Intel"
    GENERIC = "Generic"


@dataclass(slots=True, frozen=True)
class GPUInfo:
    """Aggregate GPU snapshot. Fields the platform cannot report hold ``UNSUPPORTED``."""

    name: str
    usage: float = UNSUPPORTED
    memory_used: float = UNSUPPORTED  # MB
    memory_total: float = UNSUPPORTED  # MB
    temperature: float = UNSUPPORTED
    power: float = UNSUPPORTED

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class GPUProcess:
    pid: int
    name: str
    gpu_usage: float = 0.0
    gpu_memory: float = 0.0  # MB
    type: str = "C"
    command: str = ""
    status: str = "running"

    def with_usage(self, usage: float) -> GPUProcess:
        return replace(self, gpu_usage=usage)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GPUProcess:
        return cls(
            pid=int(data["pid"]),
            name=str(data.get("name", "")),
            gpu_usage=float(data.get("gpu_usage", 0.0)),
            gpu_memory=float(data.get("gpu_memory", 0.0)),
            type=str(data.get("type", "C")),
            command=str(data.get("command", "")),
            status=str(data.get("status", "running")),
        )


@dataclass(slots=True, frozen=True)
class ProcessTableSnapshot:
    processes: tuple[GPUProcess, ...]
    timestamp: float

    def by_pid(self) -> dict[int, GPUProcess]:
        return {process.pid: process for process in self.processes}


@dataclass(slots=True)
class MethodRecord:
    name: str
    success_count: int = 0
    failure_count: int = 0
    last_success: bool = False

    @property
    def attempts(self) -> int:
        return self.success_count + self.failure_count


class ProtectionLevel(IntEnum):
    NONE = 0
    LOW = 1  # ordinary system helpers
    MEDIUM = 2  # services, control is allowed with a warning
    HIGH = 3
    CRITICAL = 4


@dataclass(slots=True, frozen=True)
class CriticalProcessInfo:
    name: str
    description: str
    level: ProtectionLevel
    platform: str  # windows, linux, darwin or all
    is_kernel: bool = False
    min_pid: int = 0  # 0 means unbounded
    max_pid: int = 0
    is_service: bool = False
    match_pattern: str = ""

    @property
    def blocks_control(self) -> bool:
        return self.level >= ProtectionLevel.HIGH

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["level"] = self.level.name.lower()
        return data


@dataclass(slots=True)
class BatterySnapshot:
    timestamp: float
    percent: float | None
    secs_left: float | None
    power_plugged: bool | None


class FilterType(str, Enum):
    ALL = "all"
    USAGE = "usage"
    MEMORY = "memory"
    BOTH = "both"


class SortField(str, Enum):
    PID = "pid"
    NAME = "name"
    GPU_USAGE = "gpu_usage"
    GPU_MEMORY = "gpu_memory"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(slots=True, frozen=True)
class GPUProcessFilter:
    enabled: bool = False
    type: FilterType = FilterType.ALL
    usage_threshold: float = 0.0
    memory_threshold: float = 0.0


@dataclass(slots=True, frozen=True)
class GPUProcessSort:
    field: SortField = SortField.GPU_USAGE
    order: SortOrder = SortOrder.DESC


@dataclass(slots=True, frozen=True)
class GPUProcessQuery:
    filter: GPUProcessFilter = field(default_factory=GPUProcessFilter)
    sort: GPUProcessSort = field(default_factory=GPUProcessSort)
    max_items: int = 0
    offset: int = 0

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> GPUProcessQuery:
        """Build a query from flat request parameters; raises ``ValueError`` on bad input."""
        filter_type = FilterType(params.get("filter", FilterType.ALL.value))
        usage_threshold = float(params.get("usage_threshold", 0.0))
        memory_threshold = float(params.get("memory_threshold", 0.0))
        enabled = params.get("filter_enabled")
        if enabled is None:
            filter_enabled = filter_type is not FilterType.ALL
        else:
            filter_enabled = str(enabled).lower() in {"1", "true", "yes", "on"}
        return cls(
            filter=GPUProcessFilter(
                enabled=filter_enabled,
                type=filter_type,
                usage_threshold=usage_threshold,
                memory_threshold=memory_threshold,
            ),
            sort=GPUProcessSort(
                field=SortField(params.get("sort", SortField.GPU_USAGE.value)),
                order=SortOrder(params.get("order", SortOrder.DESC.value)),
            ),
            max_items=int(params.get("max_items", 0)),
            offset=int(params.get("offset", 0)),
        )


@dataclass(slots=True)
class GPUProcessResponse:
    processes: list[GPUProcess]
    total_count: int
    filtered_count: int
    has_more: bool
    query_time_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "processes": [process.to_dict() for process in self.processes],
            "total_count": self.total_count,
            "filtered_count": self.filtered_count,
            "has_more": self.has_more,
            "query_time_ms": self.query_time_ms,
        }


@dataclass(slots=True)
class GPUProcessDelta:
    added: list[GPUProcess] = field(default_factory=list)
    updated: list[GPUProcess] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.added or self.updated or self.removed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": [process.to_dict() for process in self.added],
            "updated": [process.to_dict() for process in self.updated],
            "removed": list(self.removed),
        }


@dataclass(slots=True)
class GPUProcessDeltaResponse:
    delta: GPUProcessDelta | None
    full_refresh: bool
    total_count: int
    query_time_ms: float
    update_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "delta": self.delta.to_dict() if self.delta is not None else None,
            "full_refresh": self.full_refresh,
            "total_count": self.total_count,
            "query_time_ms": self.query_time_ms,
            "update_id": self.update_id,
        }
