"""Video controller inventory used for vendor detection and descriptor-only GPU info."""

from __future__ import annotations

import logging
from pathlib import Path

from gpu_telemetry.core.cache import TTLCache
from gpu_telemetry.core.config import CACHES, TIMEOUTS, ToolTimeouts
from gpu_telemetry.core.errors import TelemetryError, UnsupportedPlatform

from .parsers import parse_lspci_gpus, parse_system_profiler, parse_wmic_names
from .tools import ToolRunner, current_platform

logger = logging.getLogger(__name__)

SYS_DRM = Path("/sys/class/drm")
PCI_VENDOR_NAMES = {
    "0x10de": "NVIDIA",
    "0x1002": "AMD Radeon",
    "0x1022": "AMD",
    "0x8086": "Intel",
}


def drm_devices(drm_root: Path = SYS_DRM) -> list[tuple[Path, str]]:
    """Return ``(device dir, PCI vendor id)`` for every ``card<N>`` under ``drm_root``."""
    devices: list[tuple[Path, str]] = []
    for vendor_file in sorted(drm_root.glob("card*/device/vendor")):
        if not vendor_file.parent.parent.name[4:].isdigit():
            continue
        try:
            vendor_id = vendor_file.read_text(encoding="utf-8").strip().lower()
        except OSError:
            continue
        devices.append((vendor_file.parent, vendor_id))
    return devices


class HardwareInventory:
    """Lists GPU descriptors and caches them for hours."""

    def __init__(
        self,
        runner: ToolRunner,
        cache: TTLCache[list[str]] | None = None,
        *,
        platform: str | None = None,
        timeouts: ToolTimeouts = TIMEOUTS,
        drm_root: Path = SYS_DRM,
    ) -> None:
        self._runner = runner
        self._cache = cache if cache is not None else TTLCache(CACHES.video_controllers, name="video_controllers")
        self._platform = platform or current_platform()
        self._timeouts = timeouts
        self._drm_root = drm_root

    @property
    def platform(self) -> str:
        return self._platform

    def video_controllers(self) -> list[str]:
        return list(self._cache.refresh("controllers", self._collect))

    def _collect(self) -> list[str]:
        if self._platform == "windows":
            output = self._runner.run(
                "wmic", ["path", "win32_VideoController", "get", "Name", "/format:list"], self._timeouts.inventory
            )
            return parse_wmic_names(output)
        if self._platform == "linux":
            try:
                names = parse_lspci_gpus(self._runner.run("lspci", [], self._timeouts.inventory))
            except TelemetryError as exc:
                logger.debug("lspci unavailable, falling back to sysfs: %s", exc)
                names = []
            return names or self._sysfs_vendors()
        if self._platform == "darwin":
            output = self._runner.run("system_profiler", ["SPDisplaysDataType"], self._timeouts.inventory)
            return [name for name, _ in parse_system_profiler(output)]
        raise UnsupportedPlatform(self._platform, "no video controller listing")

    def _sysfs_vendors(self) -> list[str]:
        names: list[str] = []
        for _, vendor_id in drm_devices(self._drm_root):
            name = PCI_VENDOR_NAMES.get(vendor_id)
            if name and name not in names:
                names.append(name)
        return names
