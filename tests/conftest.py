"""Shared fixtures: a controllable clock, a scripted tool runner and recorded tool output."""

from __future__ import annotations

from typing import Sequence

import pytest

from gpu_telemetry.core.errors import ToolExecutionFailed, ToolNotFound

QUERY_GPU_OUTPUT = "NVIDIA GeForce RTX 3080, 35, 2048, 10240, 60, 120.50\n"

UTILIZATION_OUTPUT = "40\n"

PMON_OUTPUT = """\
# gpu         pid  type    sm    mem   enc   dec    fb   command
# Idx           #   C/G     %     %     %     %    MB   name
    0       1234     C    45    20     -     -   512   python
    0       5678     G    10     5     -     -   128   Xorg
    0          -     -     -     -     -     -     -   -
"""

COMPUTE_APPS_OUTPUT = """\
1234, /usr/bin/python3, 400
5678, /opt/games/game.bin, 100
"""

DMON_OUTPUT = """\
# gpu    pwr  gtemp  mtemp     sm    mem    enc    dec   mclk   pclk
# Idx      W      C      C      %      %      %      %    MHz    MHz
    0     85     60      -     42     10      0      0   9501   1905
"""

ROCM_SHOWPIDS_OUTPUT = """\
======================= ROCm System Management Interface =======================
================================= KFD Processes =================================
KFD process information:
PID\tPROCESS NAME\tGPU(s)\tVRAM USED\tSDMA USED\tCU OCCUPANCY
4242\tblender\t1\t104857600\t0\t0
=================================================================================
"""

LSOF_OUTPUT = """\
COMMAND     PID USER   FD   TYPE DEVICE SIZE/OFF  NODE NAME
Xorg       1001 root   14u   CHR  226,0      0t0   123 /dev/dri/card0
firefox    2002 user   30u   CHR  226,128    0t0   456 /dev/dri/renderD128
firefox    2002 user   31u   CHR  226,128    0t0   456 /dev/dri/renderD128
"""

PERF_COUNTERS_OUTPUT = """\
"InstanceName","CookedValue"
"pid_1234_luid_0x00000000_0x0000c3a1_phys_0","1048576000"
"pid_1234_luid_0x00000000_0x0000c3a1_phys_1","0"
"pid_88_luid_0x00000000_0x0000c3a1_phys_0","52428800"
"""

WMIC_OUTPUT = "\r\n\r\nName=NVIDIA GeForce RTX 3080\r\n\r\nName=Microsoft Basic Display Adapter\r\n\r\n"

LSPCI_OUTPUT = """\
00:02.0 VGA compatible controller: Intel Corporation UHD Graphics 630 (rev 02)
00:1f.3 Audio device: Intel Corporation Cannon Lake PCH cAVS
01:00.0 3D controller: NVIDIA Corporation GA104 [GeForce RTX 3070] (rev a1)
"""

SYSTEM_PROFILER_OUTPUT = """\
Graphics/Displays:

    Apple M1 Pro:

      Chipset Model: Apple M1 Pro
      Type: GPU
      Total Number of Cores: 16

    Intel Iris Plus Graphics:

      Chipset Model: Intel Iris Plus Graphics
      VRAM (Dynamic, Max): 1536 MB
"""

TASKLIST_OUTPUT = '"chrome.exe","4321","Console","1","150,000 K"\n'


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRunner:
    """Stands in for ToolRunner; answers from a table keyed by ``(tool, *args)``."""

    def __init__(self, missing: Sequence[str] = ()) -> None:
        self.outputs: dict[tuple[str, ...], str | Exception] = {}
        self.missing = set(missing)
        self.calls: list[tuple[str, ...]] = []

    def add(self, tool: str, args: Sequence[str], output: str | Exception) -> FakeRunner:
        self.outputs[(tool, *args)] = output
        return self

    def resolve(self, tool: str) -> str | None:
        return None if tool in self.missing else f"/usr/bin/{tool}"

    def run(self, tool: str, args: Sequence[str] = (), timeout: float = 0.0) -> str:
        key = (tool, *args)
        self.calls.append(key)
        if tool in self.missing:
            raise ToolNotFound(tool)
        result = self.outputs.get(key)
        if result is None:
            raise ToolExecutionFailed([tool, *args], returncode=1, stderr="unexpected call")
        if isinstance(result, Exception):
            raise result
        return result

    def count(self, tool: str, *args: str) -> int:
        return sum(1 for call in self.calls if call == (tool, *args))


CSV = "--format=csv,noheader,nounits"


def nvidia_runner() -> FakeRunner:
    """A runner scripted like a machine with one NVIDIA GPU."""
    runner = FakeRunner()
    runner.add("nvidia-smi", ["--query-gpu=name", CSV], "NVIDIA GeForce RTX 3080\n")
    runner.add(
        "nvidia-smi",
        ["--query-gpu=name,utilization.gpu,memory.used,memory.total,temperature.gpu,power.draw", CSV],
        QUERY_GPU_OUTPUT,
    )
    runner.add("nvidia-smi", ["--query-gpu=utilization.gpu", CSV], UTILIZATION_OUTPUT)
    runner.add("nvidia-smi", ["pmon", "-c", "1", "-s", "um"], PMON_OUTPUT)
    runner.add("nvidia-smi", ["--query-compute-apps=pid,process_name,used_memory", CSV], COMPUTE_APPS_OUTPUT)
    runner.add("nvidia-smi", ["dmon", "-c", "1"], DMON_OUTPUT)
    return runner


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner() -> FakeRunner:
    return nvidia_runner()


@pytest.fixture
def process_names() -> dict[int, str]:
    return {1234: "python3", 5678: "Xorg", 1001: "Xorg", 2002: "firefox", 4242: "blender", 88: "dwm.exe"}
