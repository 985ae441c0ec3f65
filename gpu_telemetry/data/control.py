"""Kill, suspend, resume and re-prioritise GPU processes behind the protection policy."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

import psutil

from gpu_telemetry.core.errors import (
    CriticalProcessProtected,
    InvalidPriority,
    PermissionDenied,
    ProcessAlreadyRunning,
    ProcessAlreadyStopped,
    ProcessControlFailed,
    ProcessNotFound,
    TelemetryError,
)

from .protection import ProcessProtectionService
from .tools import current_platform

logger = logging.getLogger(__name__)

# level -> (unix nice value, psutil Windows priority class name)
PRIORITY_LEVELS: dict[str, tuple[int, str]] = {
    "realtime": (-20, "REALTIME_PRIORITY_CLASS"),
    "high": (-10, "HIGH_PRIORITY_CLASS"),
    "above_normal": (-5, "ABOVE_NORMAL_PRIORITY_CLASS"),
    "normal": (0, "NORMAL_PRIORITY_CLASS"),
    "below_normal": (5, "BELOW_NORMAL_PRIORITY_CLASS"),
    "low": (10, "IDLE_PRIORITY_CLASS"),
}
_PRIORITY_ALIASES = {
    "rt": "realtime",
    "abovenormal": "above_normal",
    "belownormal": "below_normal",
}


def normalize_priority(level: str) -> str | None:
    key = level.strip().lower()
    key = _PRIORITY_ALIASES.get(key, key)
    return key if key in PRIORITY_LEVELS else None


class ProcessController:
    """Applies control actions after resolving and vetting the target process.

    No action is ever retried: a repeated kill or priority change could hit
    a different process that reused the pid.
    """

    def __init__(
        self,
        protection: ProcessProtectionService,
        *,
        process_factory: Callable[[int], Any] = psutil.Process,
        gpu_pids: Callable[[], Iterable[int]] | None = None,
        platform: str | None = None,
    ) -> None:
        self._protection = protection
        self._process_factory = process_factory
        self._gpu_pids = gpu_pids
        self._platform = platform or current_platform()

    def kill(self, pid: int) -> None:
        proc, name = self._prepare("KILL_PROCESS", pid)
        logger.info("Killing process %s (pid %d)", name, pid)
        self._apply("KILL_PROCESS", pid, proc.kill)

    def suspend(self, pid: int) -> None:
        proc, name = self._prepare("SUSPEND_PROCESS", pid)
        if self._status(proc) == psutil.STATUS_STOPPED:
            raise ProcessAlreadyStopped(pid, f"process {name} is already suspended", error_type="SUSPEND_PROCESS")
        logger.info("Suspending process %s (pid %d)", name, pid)
        self._apply("SUSPEND_PROCESS", pid, proc.suspend)

    def resume(self, pid: int) -> None:
        proc, name = self._prepare("RESUME_PROCESS", pid)
        # Windows does not report a stopped state for suspended processes.
        if self._platform != "windows" and self._status(proc) not in (psutil.STATUS_STOPPED, None):
            raise ProcessAlreadyRunning(pid, f"process {name} is not suspended", error_type="RESUME_PROCESS")
        logger.info("Resuming process %s (pid %d)", name, pid)
        self._apply("RESUME_PROCESS", pid, proc.resume)

    def set_priority(self, pid: int, level: str) -> None:
        proc, name = self._prepare("SET_PRIORITY", pid)
        key = normalize_priority(level)
        if key is None:
            raise InvalidPriority(
                pid,
                f"invalid priority level: {level}. Valid options: {', '.join(PRIORITY_LEVELS)}",
                error_type="SET_PRIORITY",
            )
        nice_value, windows_class = PRIORITY_LEVELS[key]
        if self._platform == "windows":
            value = getattr(psutil, windows_class)
        else:
            value = nice_value
        logger.info("Setting priority of %s (pid %d) to %s", name, pid, key)
        self._apply("SET_PRIORITY", pid, lambda: proc.nice(value))

    def _prepare(self, action: str, pid: int) -> tuple[Any, str]:
        try:
            proc = self._process_factory(pid)
            name = proc.name()
        except psutil.NoSuchProcess as exc:
            raise ProcessNotFound(pid, "Process not found", error_type=action) from exc
        except psutil.AccessDenied as exc:
            raise PermissionDenied(pid, f"cannot inspect process: {exc}", error_type=action) from exc

        try:
            info = self._protection.can_control_process(name, pid)
        except CriticalProcessProtected as exc:
            logger.warning("Refusing %s on protected process %s (pid %d): %s", action, name, pid, exc.message)
            raise CriticalProcessProtected(
                pid, exc.message, protection=exc.protection, error_type=action
            ) from exc
        if info is not None:
            logger.info("Protection info for %s (pid %d): %s, %s", name, pid, info.level.name, info.description)

        self._verify_gpu_process(pid)
        return proc, name

    def _verify_gpu_process(self, pid: int) -> None:
        if self._gpu_pids is None:
            return
        try:
            known = set(self._gpu_pids())
        except TelemetryError as exc:
            logger.warning("Could not verify if pid %d is a GPU process: %s", pid, exc)
            return
        if pid not in known:
            logger.warning("pid %d may not be an active GPU process", pid)

    @staticmethod
    def _status(proc: Any) -> str | None:
        try:
            return proc.status()
        except psutil.Error:
            return None

    @staticmethod
    def _apply(action: str, pid: int, operation: Callable[[], Any]) -> None:
        try:
            operation()
        except psutil.NoSuchProcess as exc:
            raise ProcessNotFound(pid, str(exc) or "Process not found", error_type=action) from exc
        except psutil.AccessDenied as exc:
            raise PermissionDenied(pid, str(exc) or "Access denied", error_type=action) from exc
        except (psutil.Error, OSError) as exc:
            raise ProcessControlFailed(pid, str(exc), error_type=action) from exc
