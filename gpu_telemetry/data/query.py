"""Filter, sort, paginate and diff GPU process tables."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Mapping, Sequence

from gpu_telemetry.core.config import DELTA, DeltaConfig
from gpu_telemetry.models import (
    FilterType,
    GPUProcess,
    GPUProcessDelta,
    GPUProcessDeltaResponse,
    GPUProcessFilter,
    GPUProcessQuery,
    GPUProcessResponse,
    GPUProcessSort,
    SortField,
    SortOrder,
)

logger = logging.getLogger(__name__)


def filter_processes(processes: Sequence[GPUProcess], spec: GPUProcessFilter) -> list[GPUProcess]:
    if not spec.enabled or spec.type is FilterType.ALL:
        return list(processes)

    def keep(process: GPUProcess) -> bool:
        usage_ok = process.gpu_usage >= spec.usage_threshold
        memory_ok = process.gpu_memory >= spec.memory_threshold
        if spec.type is FilterType.USAGE:
            return usage_ok
        if spec.type is FilterType.MEMORY:
            return memory_ok
        return usage_ok and memory_ok

    return [process for process in processes if keep(process)]


_SORT_KEYS: dict[SortField, Callable[[GPUProcess], object]] = {
    SortField.PID: lambda process: process.pid,
    SortField.NAME: lambda process: process.name.lower(),
    SortField.GPU_USAGE: lambda process: process.gpu_usage,
    SortField.GPU_MEMORY: lambda process: process.gpu_memory,
}


def sort_processes(processes: Sequence[GPUProcess], spec: GPUProcessSort) -> list[GPUProcess]:
    # sorted() keeps equal keys in input order for both directions.
    return sorted(processes, key=_SORT_KEYS[spec.field], reverse=spec.order is SortOrder.DESC)


def paginate(processes: Sequence[GPUProcess], offset: int, max_items: int) -> tuple[list[GPUProcess], bool]:
    """Return the requested page and whether rows remain after it."""
    start = min(max(offset, 0), len(processes))
    if max_items <= 0:
        page = list(processes[start:])
    else:
        page = list(processes[start : start + max_items])
    return page, start + len(page) < len(processes)


def run_query(processes: Sequence[GPUProcess], query: GPUProcessQuery) -> GPUProcessResponse:
    started = time.perf_counter()
    filtered = filter_processes(processes, query.filter)
    ordered = sort_processes(filtered, query.sort)
    page, has_more = paginate(ordered, query.offset, query.max_items)
    return GPUProcessResponse(
        processes=page,
        total_count=len(processes),
        filtered_count=len(filtered),
        has_more=has_more,
        query_time_ms=(time.perf_counter() - started) * 1000.0,
    )


def compute_delta(previous: Mapping[int, GPUProcess], current: Sequence[GPUProcess]) -> GPUProcessDelta:
    delta = GPUProcessDelta()
    seen: set[int] = set()
    for process in current:
        seen.add(process.pid)
        old = previous.get(process.pid)
        if old is None:
            delta.added.append(process)
        elif old != process:
            delta.updated.append(process)
    delta.removed = [pid for pid in previous if pid not in seen]
    return delta


def apply_delta(previous: Mapping[int, GPUProcess], delta: GPUProcessDelta) -> dict[int, GPUProcess]:
    table = dict(previous)
    for pid in delta.removed:
        table.pop(pid, None)
    for process in (*delta.added, *delta.updated):
        table[process.pid] = process
    return table


class DeltaTracker:
    """Remembers the table each client last saw, keyed by the update id handed to it.

    Sessions are evicted least-recently-used first once ``max_sessions`` is
    reached; an evicted or unknown id simply gets a full refresh.
    """

    def __init__(self, config: DeltaConfig = DELTA, *, clock_ns: Callable[[], int] = time.time_ns) -> None:
        self._config = config
        self._clock_ns = clock_ns
        self._sessions: OrderedDict[str, dict[int, GPUProcess]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _new_id(self) -> str:
        stamp = self._clock_ns()
        update_id = f"gpu_{stamp}"
        while update_id in self._sessions:
            stamp += 1
            update_id = f"gpu_{stamp}"
        return update_id

    def _store(self, table: dict[int, GPUProcess]) -> str:
        update_id = self._new_id()
        self._sessions[update_id] = table
        while len(self._sessions) > self._config.max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug("Evicted delta session %s", evicted)
        return update_id

    def delta(self, last_update_id: str | None, processes: Sequence[GPUProcess]) -> GPUProcessDeltaResponse:
        started = time.perf_counter()
        current = {process.pid: process for process in processes}
        with self._lock:
            previous = self._sessions.pop(last_update_id, None) if last_update_id else None
            update_id = self._store(current)
        if previous is None:
            delta = None
        else:
            delta = compute_delta(previous, processes)
        return GPUProcessDeltaResponse(
            delta=delta,
            full_refresh=previous is None,
            total_count=len(processes),
            query_time_ms=(time.perf_counter() - started) * 1000.0,
            update_id=update_id,
        )

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
