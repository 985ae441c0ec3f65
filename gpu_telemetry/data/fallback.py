"""Self-ordering fallback chain for GPU detection methods."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import Any, Callable, Sequence

from gpu_telemetry.core.errors import AllMethodsExhausted, TelemetryError
from gpu_telemetry.models import MethodRecord

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 50.0
LAST_SUCCESS_PRIORITY = 1000.0


@dataclass(frozen=True, slots=True)
class DetectionMethod:
    name: str
    detect: Callable[[], Any]


class AdaptiveFallbackExecutor:
    """Runs detection methods ordered by their observed success rate.

    Ordering looks only at method names and the statistics table; the method
    that succeeded most recently is always tried first.
    """

    def __init__(self, name: str = "gpu") -> None:
        self.name = name
        self._records: dict[str, MethodRecord] = {}
        self._last_success: str | None = None
        self._lock = threading.Lock()

    def priority(self, method_name: str) -> float:
        with self._lock:
            if method_name == self._last_success:
                return LAST_SUCCESS_PRIORITY
            record = self._records.get(method_name)
            if record is None or record.attempts == 0:
                return DEFAULT_PRIORITY
            return 100.0 * record.success_count / record.attempts

    def order(self, methods: Sequence[DetectionMethod]) -> list[DetectionMethod]:
        priorities = {method.name: self.priority(method.name) for method in methods}
        return sorted(methods, key=lambda method: priorities[method.name], reverse=True)

    def record_success(self, method_name: str) -> None:
        with self._lock:
            record = self._records.setdefault(method_name, MethodRecord(method_name))
            record.success_count += 1
            record.last_success = True
            for other in self._records.values():
                if other is not record:
                    other.last_success = False
            self._last_success = method_name

    def record_failure(self, method_name: str) -> None:
        with self._lock:
            record = self._records.setdefault(method_name, MethodRecord(method_name))
            record.failure_count += 1
            record.last_success = False
            if self._last_success == method_name:
                self._last_success = None

    def execute(self, methods: Sequence[DetectionMethod]) -> Any:
        ordered = self.order(methods)
        failures: dict[str, str] = {}
        last_error: BaseException | None = None

        for method in ordered:
            try:
                result = method.detect()
            except TelemetryError as exc:
                self.record_failure(method.name)
                failures[method.name] = str(exc)
                last_error = exc
                logger.warning("Detection method '%s' failed: %s", method.name, exc)
                continue
            if not result:
                self.record_failure(method.name)
                failures[method.name] = "empty result"
                last_error = TelemetryError(f"{method.name} returned no data")
                logger.warning("Detection method '%s' returned no data", method.name)
                continue
            self.record_success(method.name)
            logger.debug("Detection method '%s' succeeded", method.name)
            return result

        logger.error("All %s detection methods exhausted (%d tried): %s", self.name, len(ordered), last_error)
        for method_name, message in failures.items():
            logger.debug("  %s: %s", method_name, message)
        raise AllMethodsExhausted(len(ordered), last_error, failures)

    def records(self) -> list[MethodRecord]:
        with self._lock:
            return [
                MethodRecord(r.name, r.success_count, r.failure_count, r.last_success)
                for r in self._records.values()
            ]

    @property
    def last_success(self) -> str | None:
        return self._last_success

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._last_success = None
