"""Battery facts exposed alongside the GPU telemetry."""

from __future__ import annotations

import time

import psutil

from gpu_telemetry.models import BatterySnapshot


def collect_battery_snapshot() -> BatterySnapshot:
    timestamp = time.time()
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, NotImplementedError):  # pragma: no cover - optional
        battery = None
    if battery is None:
        return BatterySnapshot(timestamp=timestamp, percent=None, secs_left=None, power_plugged=None)

    secs = battery.secsleft
    if secs in (psutil.POWER_TIME_UNKNOWN, psutil.POWER_TIME_UNLIMITED) or secs is None or secs < 0:
        secs_left = None
    else:
        secs_left = float(secs)
    return BatterySnapshot(
        timestamp=timestamp,
        percent=float(battery.percent) if battery.percent is not None else None,
        secs_left=secs_left,
        power_plugged=bool(battery.power_plugged) if battery.power_plugged is not None else None,
    )
