"""One-shot GPU vendor detection."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from gpu_telemetry.core.errors import TelemetryError
from gpu_telemetry.models import GPUVendor

logger = logging.getLogger(__name__)


class VendorDetector:
    """Detects the GPU vendor on first use and pins the answer.

    Probes run in priority order NVIDIA, AMD, Intel and the first match wins;
    when none match the vendor is ``GENERIC``. Neither probe is repeated until
    :meth:`reset` is called.
    """

    def __init__(
        self,
        nvidia_probe: Callable[[], bool],
        descriptors: Callable[[], list[str]],
    ) -> None:
        self._nvidia_probe = nvidia_probe
        self._descriptors = descriptors
        self._vendor = GPUVendor.UNKNOWN
        self._detected = False
        self._lock = threading.Lock()

    @property
    def detected(self) -> bool:
        return self._detected

    def detect(self) -> GPUVendor:
        if self._detected:
            return self._vendor
        with self._lock:
            if not self._detected:
                self._vendor = self._probe()
                self._detected = True
                logger.info("Detected GPU vendor: %s", self._vendor.value)
            return self._vendor

    def _probe(self) -> GPUVendor:
        try:
            if self._nvidia_probe():
                return GPUVendor.NVIDIA
        except TelemetryError as exc:
            logger.debug("NVIDIA probe failed: %s", exc)

        try:
            descriptors = [name.lower() for name in self._descriptors()]
        except TelemetryError as exc:
            logger.warning("Could not list video controllers: %s", exc)
            descriptors = []

        if any("amd" in name or "radeon" in name for name in descriptors):
            return GPUVendor.AMD
        if any("intel" in name for name in descriptors):
            return GPUVendor.INTEL
        return GPUVendor.GENERIC

    def reset(self) -> None:
        with self._lock:
            self._vendor = GPUVendor.UNKNOWN
            self._detected = False
