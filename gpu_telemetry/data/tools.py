"""Runs vendor and OS diagnostic utilities as hidden child processes."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from typing import Sequence

from gpu_telemetry.core.cache import TTLCache
from gpu_telemetry.core.config import CACHES, TIMEOUTS
from gpu_telemetry.core.errors import ToolExecutionFailed, ToolNotFound

logger = logging.getLogger(__name__)

CREATE_NO_WINDOW = 0x08000000

# Install locations searched when a tool is not on PATH.
_KNOWN_LOCATIONS: dict[str, tuple[str, ...]] = {
    "nvidia-smi": (
        r"C:\Program Files\NVIDIA Corporation\NVSMI\nvidia-smi.exe",
        r"C:\Windows\System32\nvidia-smi.exe",
        r"C:\Program Files (x86)\NVIDIA Corporation\NVSMI\nvidia-smi.exe",
        "/usr/bin/nvidia-smi",
        "/usr/local/bin/nvidia-smi",
    ),
    "rocm-smi": (
        "/opt/rocm/bin/rocm-smi",
    ),
}


def is_windows() -> bool:
    return sys.platform.startswith("win")


def current_platform() -> str:
    """Return the platform key used by the protection tables and method lists."""
    if is_windows():
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


class ToolRunner:
    """Executes external tools with a bounded timeout and no retries."""

    def __init__(self, path_cache: TTLCache[str | None] | None = None) -> None:
        self._paths = path_cache if path_cache is not None else TTLCache(CACHES.tool_path, name="tool_paths")

    def resolve(self, tool: str) -> str | None:
        """Return an executable path for ``tool`` or ``None`` when it is absent."""
        return self._paths.refresh(tool, lambda: self._locate(tool))

    def _locate(self, tool: str) -> str | None:
        found = shutil.which(tool)
        if found:
            return found
        for candidate in _KNOWN_LOCATIONS.get(tool, ()):
            if os.path.isfile(candidate):
                return candidate
        logger.debug("Tool '%s' not found on PATH or in known locations", tool)
        return None

    def run(self, tool: str, args: Sequence[str] = (), timeout: float = TIMEOUTS.query) -> str:
        executable = self.resolve(tool)
        if executable is None:
            raise ToolNotFound(tool)
        command = [executable, *args]
        kwargs: dict[str, object] = {}
        if is_windows():
            kwargs["creationflags"] = CREATE_NO_WINDOW
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
                check=False,
                **kwargs,
            )
        except FileNotFoundError as exc:
            self._paths.invalidate(tool)
            raise ToolNotFound(tool) from exc
        except subprocess.TimeoutExpired as exc:
            raise ToolExecutionFailed(command, timed_out=True) from exc
        except OSError as exc:
            raise ToolExecutionFailed(command, stderr=str(exc)) from exc

        if result.returncode != 0:
            raise ToolExecutionFailed(command, returncode=result.returncode, stderr=result.stderr or "")
        return result.stdout
