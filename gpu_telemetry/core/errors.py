"""Exception hierarchy shared by collectors, the service and the web layer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Mapping, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from gpu_telemetry.models import CriticalProcessInfo


class TelemetryError(Exception):
    """Base class for every error raised by this package."""


class ToolNotFound(TelemetryError):
    def __init__(self, tool: str) -> None:
        super().__init__(f"diagnostic tool not found: {tool}")
        self.tool = tool


class ToolExecutionFailed(TelemetryError):
    """A tool ran but exited non-zero or hit its deadline."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        returncode: int | None = None,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        self.timed_out = timed_out
        cmdline = " ".join(self.command)
        if timed_out:
            message = f"command timed out: {cmdline}"
        else:
            message = f"command failed with exit code {returncode}: {cmdline}"
        if self.stderr:
            message = f"{message} ({self.stderr})"
        super().__init__(message)


class ParseFailed(TelemetryError):
    def __init__(self, tool: str, detail: str) -> None:
        super().__init__(f"could not parse {tool} output: {detail}")
        self.tool = tool
        self.detail = detail


class UnsupportedPlatform(TelemetryError):
    def __init__(self, platform: str, detail: str = "") -> None:
        message = f"unsupported platform: {platform}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.platform = platform


class AllMethodsExhausted(TelemetryError):
    """Every detection method in a fallback chain failed."""

    def __init__(
        self,
        attempted: int,
        last_error: BaseException | None,
        failures: Mapping[str, str] | None = None,
    ) -> None:
        self.attempted = attempted
        self.last_error = last_error
        self.failures = dict(failures or {})
        super().__init__(
            f"all {attempted} detection methods failed; last error: {last_error}"
        )


class GPUProcessError(TelemetryError):
    """Process control failure with a stable numeric code."""

    code = 1007
    default_type = "SYSTEM_ERROR"

    def __init__(self, pid: int, message: str, *, error_type: str | None = None) -> None:
        self.pid = pid
        self.message = message
        self.error_type = error_type or self.default_type
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.pid:
            return f"[{self.error_type}] PID {self.pid}: {self.message} (Code: {self.code})"
        return f"[{self.error_type}] {self.message} (Code: {self.code})"

    def to_dict(self) -> dict[str, object]:
        return {
            "error": self.__class__.__name__,
            "type": self.error_type,
            "pid": self.pid,
            "message": self.message,
            "code": self.code,
        }


class ProcessNotFound(GPUProcessError):
    code = 1001
    default_type = "PROCESS_NOT_FOUND"


class CriticalProcessProtected(GPUProcessError):
    code = 1002
    default_type = "CRITICAL_PROCESS"

    def __init__(
        self,
        pid: int,
        message: str,
        *,
        protection: CriticalProcessInfo | None = None,
        error_type: str | None = None,
    ) -> None:
        self.protection = protection
        super().__init__(pid, message, error_type=error_type)


class PermissionDenied(GPUProcessError):
    code = 1003
    default_type = "PERMISSION_DENIED"


class InvalidPriority(GPUProcessError):
    code = 1004
    default_type = "INVALID_PRIORITY"


class ProcessAlreadyStopped(GPUProcessError):
    code = 1005
    default_type = "ALREADY_STOPPED"


class ProcessAlreadyRunning(GPUProcessError):
    code = 1006
    default_type = "ALREADY_RUNNING"


class ProcessControlFailed(GPUProcessError):
    code = 1007
    default_type = "SYSTEM_ERROR"


__all__ = [
    "AllMethodsExhausted",
    "CriticalProcessProtected",
    "GPUProcessError",
    "InvalidPriority",
    "ParseFailed",
    "PermissionDenied",
    "ProcessAlreadyRunning",
    "ProcessAlreadyStopped",
    "ProcessControlFailed",
    "ProcessNotFound",
    "TelemetryError",
    "ToolExecutionFailed",
    "ToolNotFound",
    "UnsupportedPlatform",
]
