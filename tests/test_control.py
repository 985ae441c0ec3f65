from __future__ import annotations

import psutil
import pytest

from gpu_telemetry.core.errors import (
    AllMethodsExhausted,
    CriticalProcessProtected,
    InvalidPriority,
    PermissionDenied,
    ProcessAlreadyRunning,
    ProcessAlreadyStopped,
    ProcessControlFailed,
    ProcessNotFound,
)
from gpu_telemetry.data.control import PRIORITY_LEVELS, ProcessController, normalize_priority
from gpu_telemetry.data.protection import STATIC_CRITICAL_PROCESSES, ProcessProtectionService

OPERATIONS = {
    "kill": lambda controller, pid: controller.kill(pid),
    "suspend": lambda controller, pid: controller.suspend(pid),
    "resume": lambda controller, pid: controller.resume(pid),
    "priority": lambda controller, pid: controller.set_priority(pid, "low"),
}


def _fake_process(mocker, name="game", status=psutil.STATUS_RUNNING):
    proc = mocker.Mock()
    proc.name.return_value = name
    proc.status.return_value = status
    return proc


def _controller(proc, platform="linux", gpu_pids=None):
    protection = ProcessProtectionService(platform, parent_lookup=lambda pid: None)
    return ProcessController(
        protection, process_factory=lambda pid: proc, gpu_pids=gpu_pids or (lambda: [4242]), platform=platform
    )


def _assert_untouched(proc):
    proc.kill.assert_not_called()
    proc.suspend.assert_not_called()
    proc.resume.assert_not_called()
    proc.nice.assert_not_called()


BLOCKING = [info for info in STATIC_CRITICAL_PROCESSES if info.blocks_control]


@pytest.mark.parametrize("operation", sorted(OPERATIONS))
@pytest.mark.parametrize("info", BLOCKING, ids=lambda info: f"{info.platform}-{info.name}")
def test_protected_processes_are_never_touched(mocker, info, operation):
    name = info.name if not info.match_pattern else info.match_pattern.strip("^$") + "worker"
    pid = info.min_pid or info.max_pid or 4242
    proc = _fake_process(mocker, name=name, status=psutil.STATUS_STOPPED)
    with pytest.raises(CriticalProcessProtected) as exc:
        OPERATIONS[operation](_controller(proc, platform=info.platform), pid)
    _assert_untouched(proc)
    assert exc.value.pid == pid
    assert exc.value.protection is not None


def test_refusal_carries_action_type(mocker):
    proc = _fake_process(mocker, name="lsass.exe")
    with pytest.raises(CriticalProcessProtected) as exc:
        _controller(proc, platform="windows").kill(700)
    assert exc.value.error_type == "KILL_PROCESS"
    assert str(exc.value).startswith("[KILL_PROCESS] PID 700:")
    assert str(exc.value).endswith("(Code: 1002)")


def test_kill(mocker):
    proc = _fake_process(mocker)
    _controller(proc).kill(4242)
    proc.kill.assert_called_once_with()


def test_suspend_and_resume(mocker):
    proc = _fake_process(mocker)
    controller = _controller(proc)
    controller.suspend(4242)
    proc.suspend.assert_called_once_with()

    proc.status.return_value = psutil.STATUS_STOPPED
    with pytest.raises(ProcessAlreadyStopped) as exc:
        controller.suspend(4242)
    assert exc.value.code == 1005
    controller.resume(4242)
    proc.resume.assert_called_once_with()


def test_resume_of_running_process_on_posix(mocker):
    proc = _fake_process(mocker, status=psutil.STATUS_RUNNING)
    with pytest.raises(ProcessAlreadyRunning) as exc:
        _controller(proc).resume(4242)
    assert exc.value.code == 1006
    proc.resume.assert_not_called()


def test_resume_on_windows_does_not_check_state(mocker):
    proc = _fake_process(mocker, name="game.exe", status=psutil.STATUS_RUNNING)
    _controller(proc, platform="windows").resume(4242)
    proc.resume.assert_called_once_with()


@pytest.mark.parametrize(
    ("level", "nice"),
    [
        ("realtime", -20),
        ("RT", -20),
        ("high", -10),
        ("above_normal", -5),
        ("AboveNormal", -5),
        ("normal", 0),
        ("below_normal", 5),
        ("belownormal", 5),
        ("low", 10),
    ],
)
def test_unix_priority_levels(mocker, level, nice):
    proc = _fake_process(mocker)
    _controller(proc).set_priority(4242, level)
    proc.nice.assert_called_once_with(nice)


def test_windows_priority_classes(mocker, monkeypatch):
    for _, class_name in PRIORITY_LEVELS.values():
        monkeypatch.setattr(psutil, class_name, f"<{class_name}>", raising=False)
    proc = _fake_process(mocker, name="game.exe")
    _controller(proc, platform="windows").set_priority(4242, "low")
    proc.nice.assert_called_once_with("<IDLE_PRIORITY_CLASS>")


@pytest.mark.parametrize("level", ["", "turbo", "idle", "-5"])
def test_invalid_priority(mocker, level):
    proc = _fake_process(mocker)
    with pytest.raises(InvalidPriority) as exc:
        _controller(proc).set_priority(4242, level)
    assert exc.value.code == 1004
    proc.nice.assert_not_called()
    assert normalize_priority(level) is None


def test_missing_process(mocker):
    def factory(pid):
        raise psutil.NoSuchProcess(pid)

    controller = ProcessController(
        ProcessProtectionService("linux", parent_lookup=lambda pid: None), process_factory=factory, platform="linux"
    )
    with pytest.raises(ProcessNotFound) as exc:
        controller.kill(999999)
    assert exc.value.code == 1001
    assert exc.value.error_type == "KILL_PROCESS"


def test_access_denied_maps_to_permission_denied(mocker):
    proc = _fake_process(mocker)
    proc.kill.side_effect = psutil.AccessDenied(4242, "game", "operation not permitted")
    with pytest.raises(PermissionDenied) as exc:
        _controller(proc).kill(4242)
    assert exc.value.code == 1003
    assert isinstance(exc.value.__cause__, psutil.AccessDenied)


def test_os_error_text_is_carried_verbatim(mocker):
    proc = _fake_process(mocker)
    proc.nice.side_effect = OSError(22, "Invalid argument")
    with pytest.raises(ProcessControlFailed) as exc:
        _controller(proc).set_priority(4242, "high")
    assert exc.value.message == str(OSError(22, "Invalid argument"))
    assert exc.value.code == 1007


def test_non_gpu_process_only_warns(mocker, caplog):
    proc = _fake_process(mocker)
    _controller(proc, gpu_pids=lambda: [1, 2, 3]).kill(4242)
    proc.kill.assert_called_once_with()
    assert "may not be an active GPU process" in caplog.text


def test_gpu_lookup_failure_only_warns(mocker, caplog):
    def gpu_pids():
        raise AllMethodsExhausted(2, None)

    proc = _fake_process(mocker)
    _controller(proc, gpu_pids=gpu_pids).kill(4242)
    proc.kill.assert_called_once_with()
    assert "Could not verify" in caplog.text
