"""Critical-process protection policy consulted before any process control."""

from __future__ import annotations

import logging
import threading
from typing import Callable

import psutil

from gpu_telemetry.core.errors import CriticalProcessProtected
from gpu_telemetry.models import CriticalProcessInfo, ProtectionLevel

from .tools import current_platform

logger = logging.getLogger(__name__)

L = ProtectionLevel

_WINDOWS = (
    CriticalProcessInfo("System", "Windows system process", L.CRITICAL, "windows", is_kernel=True, max_pid=10),
    CriticalProcessInfo("Registry", "Windows registry process", L.CRITICAL, "windows", is_kernel=True),
    CriticalProcessInfo("smss.exe", "Session manager", L.CRITICAL, "windows"),
    CriticalProcessInfo("csrss.exe", "Client/server runtime", L.CRITICAL, "windows"),
    CriticalProcessInfo("wininit.exe", "Windows initialisation", L.CRITICAL, "windows"),
    CriticalProcessInfo("winlogon.exe", "Windows logon", L.CRITICAL, "windows"),
    CriticalProcessInfo("services.exe", "Service control manager", L.CRITICAL, "windows"),
    CriticalProcessInfo("lsass.exe", "Local security authority", L.CRITICAL, "windows"),
    CriticalProcessInfo("ntoskrnl.exe", "Windows kernel", L.CRITICAL, "windows", is_kernel=True),
    CriticalProcessInfo("explorer.exe", "Windows shell", L.HIGH, "windows"),
    CriticalProcessInfo("dwm.exe", "Desktop window manager", L.HIGH, "windows"),
    CriticalProcessInfo("svchost.exe", "Service host", L.HIGH, "windows", is_service=True),
    CriticalProcessInfo("MsMpEng.exe", "Defender antimalware service", L.HIGH, "windows"),
    CriticalProcessInfo("audiodg.exe", "Audio device graph isolation", L.MEDIUM, "windows"),
    CriticalProcessInfo("spoolsv.exe", "Print spooler", L.MEDIUM, "windows", is_service=True),
    CriticalProcessInfo("dllhost.exe", "COM+ surrogate", L.MEDIUM, "windows"),
    CriticalProcessInfo("conhost.exe", "Console window host", L.MEDIUM, "windows"),
    CriticalProcessInfo("RuntimeBroker.exe", "Runtime broker", L.MEDIUM, "windows"),
    CriticalProcessInfo("SecurityHealthService.exe", "Windows security health", L.MEDIUM, "windows"),
    CriticalProcessInfo("nvcontainer.exe", "NVIDIA container", L.MEDIUM, "windows"),
    CriticalProcessInfo("nvidia-container.exe", "NVIDIA container", L.MEDIUM, "windows"),
    CriticalProcessInfo("nvdisplay.container.exe", "NVIDIA display container", L.MEDIUM, "windows"),
    CriticalProcessInfo("nvspcaps64.exe", "NVIDIA capture server proxy", L.LOW, "windows"),
)

_LINUX = (
    CriticalProcessInfo("init", "Init process", L.CRITICAL, "linux", min_pid=1, max_pid=1),
    CriticalProcessInfo("systemd", "systemd init", L.CRITICAL, "linux", min_pid=1, max_pid=1),
    CriticalProcessInfo("kernel", "Kernel", L.CRITICAL, "linux", is_kernel=True, max_pid=100),
    CriticalProcessInfo("kthreadd", "Kernel thread daemon", L.CRITICAL, "linux", is_kernel=True, min_pid=2, max_pid=10),
    CriticalProcessInfo("ksoftirqd", "Soft IRQ daemon", L.HIGH, "linux", is_kernel=True),
    CriticalProcessInfo("migration", "CPU migration thread", L.HIGH, "linux", is_kernel=True),
    CriticalProcessInfo("rcu_", "RCU threads", L.HIGH, "linux", is_kernel=True, match_pattern="^rcu_"),
    CriticalProcessInfo("watchdog", "Hardware watchdog", L.HIGH, "linux", is_kernel=True),
    CriticalProcessInfo("swapper", "Idle task", L.HIGH, "linux", is_kernel=True),
    CriticalProcessInfo("systemd-", "systemd daemons", L.MEDIUM, "linux", match_pattern="^systemd-"),
    CriticalProcessInfo("NetworkManager", "Network manager", L.MEDIUM, "linux"),
    CriticalProcessInfo("dbus", "D-Bus message bus", L.MEDIUM, "linux"),
    CriticalProcessInfo("sshd", "SSH daemon", L.MEDIUM, "linux"),
    CriticalProcessInfo("chronyd", "NTP daemon", L.MEDIUM, "linux"),
    CriticalProcessInfo("nvidia-", "NVIDIA daemons", L.MEDIUM, "linux", match_pattern="^nvidia-"),
    CriticalProcessInfo("Xorg", "X server", L.MEDIUM, "linux"),
    CriticalProcessInfo("gdm", "GNOME display manager", L.MEDIUM, "linux"),
)

_DARWIN = (
    CriticalProcessInfo("kernel_task", "macOS kernel task", L.CRITICAL, "darwin", is_kernel=True),
    CriticalProcessInfo("launchd", "macOS init", L.CRITICAL, "darwin", min_pid=1, max_pid=1),
    CriticalProcessInfo("WindowServer", "macOS window server", L.HIGH, "darwin"),
    CriticalProcessInfo("Finder", "macOS Finder", L.HIGH, "darwin"),
    CriticalProcessInfo("Dock", "macOS Dock", L.HIGH, "darwin"),
    CriticalProcessInfo("com.apple.", "Apple system services", L.MEDIUM, "darwin", match_pattern="^com.apple."),
    CriticalProcessInfo("syslogd", "System log daemon", L.MEDIUM, "darwin"),
    CriticalProcessInfo("mds", "Spotlight metadata server", L.MEDIUM, "darwin"),
)

STATIC_CRITICAL_PROCESSES: tuple[CriticalProcessInfo, ...] = _WINDOWS + _LINUX + _DARWIN


def _parent_of(pid: int) -> tuple[int, str] | None:
    try:
        parent = psutil.Process(pid).parent()
        if parent is None:
            return None
        return parent.pid, parent.name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None


class ProcessProtectionService:
    """Classifies process names and pids by how dangerous it is to control them."""

    def __init__(
        self,
        platform: str | None = None,
        *,
        parent_lookup: Callable[[int], tuple[int, str] | None] = _parent_of,
    ) -> None:
        self.platform = platform or current_platform()
        self._parent_lookup = parent_lookup
        self._table: dict[str, CriticalProcessInfo] = {}
        self._lock = threading.RLock()
        for info in STATIC_CRITICAL_PROCESSES:
            self._table[self._key(info.platform, info.name)] = info
        logger.debug("Loaded %d critical process entries for %s", len(self._table), self.platform)

    @staticmethod
    def _key(platform: str, name: str) -> str:
        return f"{platform}_{name.lower()}"

    @staticmethod
    def _matches_pid(info: CriticalProcessInfo, pid: int) -> bool:
        if info.min_pid > 0 and pid < info.min_pid:
            return False
        if info.max_pid > 0 and pid > info.max_pid:
            return False
        return True

    @staticmethod
    def _matches_name(info: CriticalProcessInfo, name: str) -> bool:
        pattern = (info.match_pattern or info.name).lower()
        if info.match_pattern.startswith("^"):
            return name.startswith(pattern[1:])
        if info.match_pattern.endswith("$"):
            return name.endswith(pattern[:-1])
        return pattern in name

    def _applies(self, info: CriticalProcessInfo) -> bool:
        return info.platform in (self.platform, "all")

    def static_match(self, name: str, pid: int) -> CriticalProcessInfo | None:
        name = name.lower()
        with self._lock:
            for key in (self._key(self.platform, name), self._key("all", name)):
                info = self._table.get(key)
                if info is not None and self._matches_pid(info, pid) and self._matches_name(info, name):
                    return info
            matches = [
                info
                for info in self._table.values()
                if self._applies(info) and self._matches_name(info, name) and self._matches_pid(info, pid)
            ]
        if not matches:
            return None
        return max(matches, key=lambda info: info.level)

    def is_critical_process(self, name: str, pid: int) -> CriticalProcessInfo | None:
        info = self.static_match(name, pid)
        if info is not None:
            return info
        return self._dynamic_match(name, pid)

    def _dynamic_match(self, name: str, pid: int) -> CriticalProcessInfo | None:
        if pid == 1:
            return CriticalProcessInfo(name, "Init process (pid 1)", L.HIGH, self.platform)
        if self.platform == "linux" and 2 <= pid <= 10:
            return CriticalProcessInfo(name, "Early kernel thread", L.HIGH, self.platform, is_kernel=True)
        if self.platform == "windows" and pid == 4:
            return CriticalProcessInfo(name, "Windows system process", L.CRITICAL, self.platform, is_kernel=True)
        parent = self._parent_lookup(pid)
        # pid 1 and kernel threads are the parent of nearly everything.
        if parent is None or parent[0] == 1:
            return None
        parent_info = self.static_match(parent[1], parent[0])
        if parent_info is not None and parent_info.blocks_control and not parent_info.is_kernel:
            return CriticalProcessInfo(name, f"Child of protected process {parent_info.name}", L.MEDIUM, self.platform)
        return None

    def protection_level(self, name: str, pid: int) -> ProtectionLevel:
        info = self.is_critical_process(name, pid)
        return info.level if info is not None else L.NONE

    def can_control_process(self, name: str, pid: int) -> CriticalProcessInfo | None:
        """Raise :class:`CriticalProcessProtected` for HIGH/CRITICAL processes.

        Returns the matching protection entry (or ``None``) when control is
        allowed; MEDIUM entries are logged as warnings.
        """
        info = self.is_critical_process(name, pid)
        if info is None:
            return None
        if info.level is L.CRITICAL:
            raise CriticalProcessProtected(
                pid,
                f"critical system process cannot be controlled: {name} - {info.description}",
                protection=info,
            )
        if info.level is L.HIGH:
            raise CriticalProcessProtected(
                pid,
                f"highly protected process should not be controlled: {name} - {info.description}",
                protection=info,
            )
        if info.level is L.MEDIUM:
            logger.warning("Controlling medium-protected process %s (pid %d): %s", name, pid, info.description)
        return info

    def critical_processes(self) -> list[CriticalProcessInfo]:
        with self._lock:
            return [info for info in self._table.values() if self._applies(info)]

    def add_custom_critical_process(self, info: CriticalProcessInfo) -> None:
        if not info.platform:
            info = CriticalProcessInfo(
                info.name,
                info.description,
                info.level,
                self.platform,
                info.is_kernel,
                info.min_pid,
                info.max_pid,
                info.is_service,
                info.match_pattern,
            )
        with self._lock:
            self._table[self._key(info.platform, info.name)] = info
        logger.info("Added custom critical process %s (%s, %s)", info.name, info.level.name, info.platform)
