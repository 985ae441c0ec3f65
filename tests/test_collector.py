from __future__ import annotations

import psutil
import pytest

from gpu_telemetry.core.errors import (
    AllMethodsExhausted,
    CriticalProcessProtected,
    ToolExecutionFailed,
    UnsupportedPlatform,
)
from gpu_telemetry.models import BatterySnapshot, FilterType, GPUProcessFilter, GPUProcessQuery, GPUVendor
from gpu_telemetry.web.collector import TelemetryCollector, _snapshot_to_dict

from conftest import SYSTEM_PROFILER_OUTPUT, FakeRunner, nvidia_runner

PMON = ("nvidia-smi", "pmon", "-c", "1", "-s", "um")


@pytest.fixture
def processes(mocker):
    table = {}

    def factory(pid):
        if pid not in table:
            raise psutil.NoSuchProcess(pid)
        return table[pid]

    def add(pid, name):
        proc = mocker.Mock()
        proc.name.return_value = name
        proc.status.return_value = psutil.STATUS_RUNNING
        table[pid] = proc
        return proc

    factory.add = add
    return factory


@pytest.fixture
def battery(mocker):
    return mocker.Mock(return_value=BatterySnapshot(timestamp=1.0, percent=80.0, secs_left=3600.0, power_plugged=False))


@pytest.fixture
def make_collector(clock, process_names, processes, battery, tmp_path):
    def factory(runner=None, platform="linux"):
        return TelemetryCollector(
            platform=platform,
            clock=clock,
            runner=runner if runner is not None else nvidia_runner(),
            nvml=None,
            enumerate_names=lambda: dict(process_names),
            process_factory=processes,
            parent_lookup=lambda pid: None,
            battery_source=battery,
            drm_root=tmp_path,
        )

    return factory


def test_vendor_and_info(make_collector):
    telemetry = make_collector()
    assert telemetry.detected_vendor() is GPUVendor.NVIDIA
    info = telemetry.get_gpu_info()
    assert info.name == "NVIDIA GeForce RTX 3080"
    assert info.usage == 35.0


def test_process_table_is_cached(make_collector, clock):
    runner = nvidia_runner()
    telemetry = make_collector(runner)
    first = telemetry.get_gpu_processes()
    assert [(p.pid, p.name) for p in first] == [(1234, "python3"), (5678, "Xorg")]
    assert telemetry.get_gpu_processes() == first
    assert runner.count(*PMON) == 1
    clock.advance(601)
    telemetry.get_gpu_processes()
    assert runner.count(*PMON) == 2


def test_monitoring_disabled_without_cache_returns_empty(make_collector):
    runner = nvidia_runner()
    telemetry = make_collector(runner)
    telemetry.set_gpu_process_monitoring_enabled(False)
    assert not telemetry.is_gpu_process_monitoring_enabled()
    assert telemetry.get_gpu_processes() == []
    assert telemetry.get_gpu_processes_filtered().total_count == 0
    assert runner.count(*PMON) == 0


def test_monitoring_disabled_serves_last_table(make_collector, clock):
    runner = nvidia_runner()
    telemetry = make_collector(runner)
    table = telemetry.get_gpu_processes()
    telemetry.set_gpu_process_monitoring_enabled(False)
    clock.advance(3600)
    assert telemetry.get_gpu_processes() == table
    assert runner.count(*PMON) == 1
    telemetry.set_gpu_process_monitoring_enabled(True)
    telemetry.get_gpu_processes()
    assert runner.count(*PMON) == 2


def test_filtered_and_delta_views(make_collector):
    telemetry = make_collector()
    query = GPUProcessQuery(filter=GPUProcessFilter(enabled=True, type=FilterType.USAGE, usage_threshold=20))
    response = telemetry.get_gpu_processes_filtered(query)
    assert [p.pid for p in response.processes] == [1234]
    assert (response.total_count, response.filtered_count) == (2, 1)

    first = telemetry.get_gpu_processes_delta(None)
    assert first.full_refresh
    second = telemetry.get_gpu_processes_delta(first.update_id)
    assert not second.full_refresh
    assert second.delta.is_empty()


def test_kill_invalidates_process_table(make_collector, processes):
    runner = nvidia_runner()
    telemetry = make_collector(runner)
    telemetry.get_gpu_processes()
    proc = processes.add(1234, "python3")
    telemetry.kill_gpu_process(1234)
    proc.kill.assert_called_once_with()
    telemetry.get_gpu_processes()
    assert runner.count(*PMON) == 2


def test_protected_process_is_refused_through_the_service(make_collector, processes):
    telemetry = make_collector()
    proc = processes.add(1, "systemd")
    with pytest.raises(CriticalProcessProtected):
        telemetry.set_gpu_process_priority(1, "low")
    proc.nice.assert_not_called()


def test_unsupported_platform_is_counted(make_collector):
    runner = FakeRunner(missing=["nvidia-smi"]).add("system_profiler", ["SPDisplaysDataType"], SYSTEM_PROFILER_OUTPUT)
    telemetry = make_collector(runner, platform="darwin")
    with pytest.raises(UnsupportedPlatform):
        telemetry.get_gpu_processes()
    diagnostics = telemetry.diagnostics()
    assert diagnostics["vendor"] == "Intel"
    assert diagnostics["operation_failures"] == {"gpu_processes": 1}
    assert diagnostics["last_error"]["type"] == "UnsupportedPlatform"
    assert telemetry.get_gpu_info().name == "Apple M1 Pro"


def test_exhaustion_keeps_previous_table(make_collector, clock):
    runner = nvidia_runner()
    telemetry = make_collector(runner)
    table = telemetry.get_gpu_processes()

    broken = ToolExecutionFailed(["nvidia-smi"], returncode=9)
    runner.add(PMON[0], PMON[1:], broken)
    runner.add("nvidia-smi", ["--query-compute-apps=pid,process_name,used_memory", "--format=csv,noheader,nounits"], broken)
    clock.advance(601)
    assert telemetry.get_gpu_processes() == table

    fresh = make_collector(runner)
    with pytest.raises(AllMethodsExhausted) as exc:
        fresh.get_gpu_processes()
    assert exc.value.attempted == 4


def test_battery_is_cached(make_collector, battery, clock):
    telemetry = make_collector()
    assert telemetry.get_battery().percent == 80.0
    telemetry.get_battery()
    assert battery.call_count == 1
    clock.advance(301)
    telemetry.get_battery()
    assert battery.call_count == 2


def test_diagnostics_report_methods(make_collector):
    telemetry = make_collector()
    telemetry.get_gpu_processes()
    diagnostics = telemetry.diagnostics()
    assert diagnostics["vendor"] == "NVIDIA"
    assert diagnostics["monitoring_enabled"] is True
    assert diagnostics["last_successful_method"]["processes"] == "nvidia-pmon"
    assert diagnostics["methods"]["processes"][0]["name"] == "nvidia-pmon"
    assert diagnostics["cache_entries"]["gpu_processes"] == 1


def test_clear_caches_forces_recollection(make_collector):
    runner = nvidia_runner()
    telemetry = make_collector(runner)
    telemetry.get_gpu_processes()
    telemetry.clear_caches()
    telemetry.get_gpu_processes()
    assert runner.count(*PMON) == 2


def test_snapshot_to_dict_handles_nested_values():
    payload = _snapshot_to_dict({"battery": BatterySnapshot(1.0, 50.0, None, True), "ids": (1, 2)})
    assert payload == {
        "battery": {"timestamp": 1.0, "percent": 50.0, "secs_left": None, "power_plugged": True},
        "ids": [1, 2],
    }
