"""Parsers for the text output of the GPU and OS diagnostic utilities.

Each parser handles exactly one tool/format so that a format change in a
driver release only touches one function. Parsers skip malformed lines and
raise :class:`ParseFailed` when nothing usable remains.
"""

from __future__ import annotations

import csv
import io
import os
import re
from typing import Iterator

from gpu_telemetry.core.errors import ParseFailed
from gpu_telemetry.models import UNSUPPORTED, GPUInfo, GPUProcess

_UNAVAILABLE = {"", "-", "n/a", "[n/a]", "[not supported]", "not supported", "[unknown error]"}
_NO_PROCESS_MARKERS = ("no running processes found", "no kfd pids currently running")
_PERF_INSTANCE = re.compile(r"pid_(\d+)_")
_VRAM = re.compile(r"VRAM[^:]*:\s*([\d.]+)\s*(GB|MB)", re.IGNORECASE)
_BYTES_PER_MB = 1024 * 1024


def _lines(output: str) -> Iterator[str]:
    for line in output.splitlines():
        line = line.strip()
        if line:
            yield line


def _number(value: str, default: float = UNSUPPORTED) -> float:
    value = value.strip()
    if value.lower() in _UNAVAILABLE:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _memory_mb(value: str) -> float:
    """Per-process memory in MB; missing or negative values count as zero."""
    value = value.strip()
    if "[" in value or "permission" in value.lower():
        return 0.0
    memory = _number(value, default=0.0)
    return memory if memory > 0 else 0.0


def _only_informational(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in _NO_PROCESS_MARKERS)


def _require_rows(tool: str, output: str, rows: list) -> list:
    if not rows and output.strip() and not _only_informational(output):
        raise ParseFailed(tool, "no usable rows")
    return rows


def parse_query_gpu(output: str) -> GPUInfo:
    """``--query-gpu=name,utilization.gpu,memory.used,memory.total,temperature.gpu,power.draw``."""
    for line in _lines(output):
        fields = [field.strip() for field in line.split(",")]
        if len(fields) < 6:
            raise ParseFailed("nvidia-smi", f"expected 6 fields, got {len(fields)}: {line!r}")
        return GPUInfo(
            name=fields[0],
            usage=_number(fields[1]),
            memory_used=_number(fields[2]),
            memory_total=_number(fields[3]),
            temperature=_number(fields[4]),
            power=_number(fields[5]),
        )
    raise ParseFailed("nvidia-smi", "empty output")


def parse_utilization(output: str) -> float:
    """``--query-gpu=utilization.gpu``; multiple GPUs are averaged."""
    values = [_number(line.split(",")[0]) for line in _lines(output)]
    values = [value for value in values if value >= 0]
    if not values:
        raise ParseFailed("nvidia-smi", "no utilization value")
    return sum(values) / len(values)


def parse_apps(output: str, kind: str = "C") -> list[GPUProcess]:
    """``--query-compute-apps`` / ``--query-graphics-apps=pid,process_name,used_memory``."""
    processes: list[GPUProcess] = []
    for line in _lines(output):
        fields = [field.strip() for field in line.split(",")]
        if len(fields) < 3:
            continue
        try:
            pid = int(fields[0])
        except ValueError:
            continue
        # process_name may contain commas on Windows paths; memory is always last.
        command = ",".join(fields[1:-1]).strip()
        processes.append(
            GPUProcess(
                pid=pid,
                name=os.path.basename(command.replace("\\", "/")) or command,
                gpu_memory=_memory_mb(fields[-1]),
                type=kind,
                command=command,
            )
        )
    return _require_rows("nvidia-smi", output, processes)


def _header_columns(line: str) -> list[str] | None:
    tokens = line.lstrip("#").split()
    if "pid" in tokens or "sm" in tokens or "pwr" in tokens:
        return tokens
    return None


def parse_pmon(output: str) -> list[GPUProcess]:
    """``pmon -c 1 -s um``. Usage comes straight from the ``sm`` column."""
    columns: list[str] | None = None
    merged: dict[int, GPUProcess] = {}
    for line in _lines(output):
        if line.startswith("#"):
            columns = columns or _header_columns(line)
            continue
        fields = line.split()
        if columns and len(fields) >= len(columns) - 1:
            index = {name: position for position, name in enumerate(columns)}
            pid_field = fields[index.get("pid", 1)]
            kind = fields[index.get("type", 2)]
            sm = fields[index.get("sm", 3)]
            memory = fields[index["fb"]] if "fb" in index else fields[index.get("mem", 4)]
            command = fields[index["command"]] if "command" in index and index["command"] < len(fields) else fields[-1]
        elif len(fields) >= 5:
            pid_field, kind, sm, memory, command = fields[1], fields[2], fields[3], fields[4], fields[-1]
        else:
            continue
        try:
            pid = int(pid_field)
        except ValueError:
            continue  # idle GPU rows carry "-" as pid
        usage = _number(sm, default=0.0)
        memory_mb = _number(memory, default=0.0)
        existing = merged.get(pid)
        if existing is not None:
            merged[pid] = GPUProcess(
                pid=pid,
                name=existing.name,
                gpu_usage=existing.gpu_usage + usage,
                gpu_memory=existing.gpu_memory + memory_mb,
                type=existing.type,
                command=existing.command,
            )
            continue
        merged[pid] = GPUProcess(
            pid=pid,
            name=command if command != "-" else "",
            gpu_usage=usage,
            gpu_memory=memory_mb,
            type=kind if kind != "-" else "C",
            command=command if command != "-" else "",
        )
    return _require_rows("nvidia-smi pmon", output, list(merged.values()))


def parse_dmon(output: str) -> tuple[float, float]:
    """``dmon -c 1``: return ``(sm_usage, power)`` for the first GPU."""
    columns: list[str] | None = None
    for line in _lines(output):
        if line.startswith("#"):
            columns = columns or _header_columns(line)
            continue
        fields = line.split()
        if columns and "sm" in columns and "pwr" in columns and len(fields) >= len(columns):
            return _number(fields[columns.index("sm")]), _number(fields[columns.index("pwr")])
        if len(fields) >= 5:
            return _number(fields[4]), _number(fields[1])
    raise ParseFailed("nvidia-smi dmon", "no GPU rows")


def parse_rocm_showpids(output: str) -> list[GPUProcess]:
    """``rocm-smi --showpids``: ``PID NAME GPU(s) VRAM_BYTES ...`` rows."""
    processes: list[GPUProcess] = []
    for line in _lines(output):
        fields = line.split()
        if len(fields) < 4:
            continue
        try:
            pid = int(fields[0])
        except ValueError:
            continue
        vram = _number(fields[3], default=0.0)
        processes.append(
            GPUProcess(
                pid=pid,
                name=fields[1],
                gpu_memory=vram / _BYTES_PER_MB if vram > 0 else 0.0,
                type="C",
                command=fields[1],
            )
        )
    return _require_rows("rocm-smi", output, processes)


def parse_lsof_clients(output: str) -> list[GPUProcess]:
    """``lsof /dev/dri/...``: every process holding a DRM device open."""
    seen: dict[int, GPUProcess] = {}
    for line in _lines(output):
        fields = line.split()
        if len(fields) < 2 or fields[0] == "COMMAND":
            continue
        try:
            pid = int(fields[1])
        except ValueError:
            continue
        seen.setdefault(pid, GPUProcess(pid=pid, name=fields[0], type="G", command=fields[0]))
    return _require_rows("lsof", output, list(seen.values()))


def parse_perf_counters(output: str) -> dict[int, float]:
    """``GPU Process Memory`` counter samples as CSV; returns MB per pid."""
    usage: dict[int, float] = {}
    reader = csv.reader(io.StringIO(output.strip()))
    for row in reader:
        if len(row) < 2:
            continue
        match = _PERF_INSTANCE.search(row[0])
        if not match:
            continue
        value = _number(row[1], default=0.0)
        pid = int(match.group(1))
        usage[pid] = usage.get(pid, 0.0) + max(value, 0.0) / _BYTES_PER_MB
    if not usage and output.strip():
        raise ParseFailed("Get-Counter", "no pid instances")
    return usage


def parse_wmic_names(output: str) -> list[str]:
    """``wmic path win32_VideoController get Name /format:list``."""
    names: list[str] = []
    for line in _lines(output):
        if not line.lower().startswith("name="):
            continue
        name = line.split("=", 1)[1].strip()
        if name and "microsoft" not in name.lower():
            names.append(name)
    return names


_PCI_DISPLAY_CLASSES = ("vga compatible controller", "3d controller", "display controller")


def parse_lspci_gpus(output: str) -> list[str]:
    names: list[str] = []
    for line in _lines(output):
        lowered = line.lower()
        if not any(kind in lowered for kind in _PCI_DISPLAY_CLASSES):
            continue
        parts = line.split(": ", 1)
        names.append(parts[1].strip() if len(parts) == 2 else line)
    return names


def parse_system_profiler(output: str) -> list[tuple[str, float]]:
    """``system_profiler SPDisplaysDataType``: ``(chipset, vram_mb)`` per GPU."""
    gpus: list[tuple[str, float]] = []
    name: str | None = None
    vram = UNSUPPORTED
    for line in _lines(output):
        if line.startswith("Chipset Model:"):
            if name:
                gpus.append((name, vram))
            name = line.split(":", 1)[1].strip()
            vram = UNSUPPORTED
            continue
        match = _VRAM.search(line)
        if match and name:
            amount = float(match.group(1))
            vram = amount * 1024 if match.group(2).upper() == "GB" else amount
    if name:
        gpus.append((name, vram))
    return gpus


def parse_tasklist_csv(output: str) -> dict[int, str]:
    """``tasklist /FO CSV /NH`` rows: ``"image","pid",...``."""
    names: dict[int, str] = {}
    for row in csv.reader(io.StringIO(output.strip())):
        if len(row) < 2:
            continue
        try:
            names[int(row[1])] = row[0]
        except ValueError:
            continue
    return names


def first_line(output: str) -> str:
    return next(iter(_lines(output)), "")


