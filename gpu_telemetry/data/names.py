"""Resolves many pids to process names with a single process enumeration."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Iterable

import psutil

from gpu_telemetry.core.cache import TTLCache
from gpu_telemetry.core.config import CACHES, TIMEOUTS
from gpu_telemetry.core.errors import TelemetryError

from .parsers import parse_tasklist_csv
from .tools import ToolRunner, current_platform

logger = logging.getLogger(__name__)

_PROC = Path("/proc")


def placeholder_name(pid: int) -> str:
    return f"PID_{pid}"


def enumerate_process_names() -> dict[int, str]:
    names: dict[int, str] = {}
    for proc in psutil.process_iter(attrs=["pid", "name"]):
        try:
            info = proc.info
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        name = info.get("name")
        if name:
            names[int(info["pid"])] = str(name)
    return names


class ProcessNameResolver:
    """pid → name lookups backed by one cached bulk enumeration."""

    def __init__(
        self,
        cache: TTLCache[dict[int, str]] | None = None,
        *,
        enumerate_all: Callable[[], dict[int, str]] = enumerate_process_names,
        runner: ToolRunner | None = None,
        platform: str | None = None,
        proc_root: Path = _PROC,
    ) -> None:
        self._cache = cache if cache is not None else TTLCache(CACHES.process_names, name="process_names")
        self._enumerate_all = enumerate_all
        self._runner = runner
        self._platform = platform or current_platform()
        self._proc_root = proc_root
        self._lock = threading.Lock()

    def resolve_batch(self, pids: Iterable[int]) -> dict[int, str]:
        wanted = list(dict.fromkeys(pids))
        if not wanted:
            return {}

        names = self._covering_map(wanted)
        if names is None:
            with self._lock:
                names = self._covering_map(wanted)
                if names is None:
                    names = self._rebuild(len(wanted))
        if names is None:
            return {pid: self.resolve_single(pid) for pid in wanted}
        return {pid: names.get(pid) or placeholder_name(pid) for pid in wanted}

    def _covering_map(self, wanted: list[int]) -> dict[int, str] | None:
        cached, hit = self._cache.get("names")
        if hit and cached is not None and all(pid in cached for pid in wanted):
            return cached
        return None

    def _rebuild(self, count: int) -> dict[int, str] | None:
        try:
            names = self._enumerate_all()
        except (psutil.Error, OSError) as exc:
            logger.warning("Bulk process enumeration failed, resolving %d pids one by one: %s", count, exc)
            return None
        self._cache.put("names", names)
        return names

    def resolve(self, pid: int) -> str:
        return self.resolve_batch([pid])[pid]

    def resolve_single(self, pid: int) -> str:
        if self._platform == "linux":
            try:
                name = (self._proc_root / str(pid) / "comm").read_text(encoding="utf-8").strip()
            except OSError:
                name = ""
            return name or placeholder_name(pid)
        if self._platform == "windows" and self._runner is not None:
            try:
                output = self._runner.run(
                    "tasklist", ["/FI", f"PID eq {pid}", "/FO", "CSV", "/NH"], TIMEOUTS.probe
                )
            except TelemetryError as exc:
                logger.debug("tasklist lookup for pid %d failed: %s", pid, exc)
                return placeholder_name(pid)
            return parse_tasklist_csv(output).get(pid) or placeholder_name(pid)
        try:
            return psutil.Process(pid).name() or placeholder_name(pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return placeholder_name(pid)
