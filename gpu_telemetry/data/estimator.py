"""Attributes an aggregate GPU utilisation figure to individual processes.

Most vendor paths report per-process memory but only a single, system-wide
utilisation percentage. The estimator splits that percentage by memory
share, weighted by what kind of program each process looks like:

* a share of the aggregate (``distributable_fraction``) is handed out, the
  rest stays unattributed as system overhead;
* no process gets more than ``max_process_share`` of the aggregate;
* when the GPU is busy every process gets at least ``baseline_usage``;
* the estimates never add up to more than the aggregate.
"""

from __future__ import annotations

import math
from typing import Sequence

from gpu_telemetry.core.config import ESTIMATOR, EstimatorConfig
from gpu_telemetry.models import GPUProcess


def _trim_excess(usages: list[float], aggregate: float) -> list[float]:
    # Rounding in the rescale can leave the sum a few ulps above the aggregate.
    largest = max(range(len(usages)), key=usages.__getitem__)
    excess = sum(usages) - aggregate
    while excess > 0 and usages[largest] > 0:
        usages[largest] = max(math.nextafter(usages[largest] - excess, 0.0), 0.0)
        excess = sum(usages) - aggregate
    return usages


class UsageEstimator:
    def __init__(self, config: EstimatorConfig = ESTIMATOR) -> None:
        self._config = config

    def multiplier(self, process_name: str) -> float:
        lowered = process_name.lower()
        for factor, keywords in self._config.multipliers:
            if any(keyword in lowered for keyword in keywords):
                return factor
        return 1.0

    def estimate(self, processes: Sequence[GPUProcess], aggregate: float | None) -> list[GPUProcess]:
        if not processes:
            return []
        if aggregate is None or aggregate <= 0:
            return [process.with_usage(0.0) for process in processes]

        config = self._config
        baseline = config.baseline_usage if aggregate >= config.baseline_min_aggregate else 0.0
        memories = [max(process.gpu_memory, 0.0) for process in processes]
        total_memory = sum(memories)

        if total_memory <= 0:
            usages = [baseline] * len(processes)
        else:
            weights = [
                (memory / total_memory) * self.multiplier(process.name)
                for memory, process in zip(memories, processes)
            ]
            weight_sum = sum(weights)
            if weight_sum > 1.0:
                weights = [weight / weight_sum for weight in weights]
            budget = config.distributable_fraction * aggregate
            cap = config.max_process_share * aggregate
            usages = [max(min(weight * budget, cap), baseline) for weight in weights]

        total_usage = sum(usages)
        if total_usage > aggregate:
            scale = aggregate / total_usage
            usages = _trim_excess([usage * scale for usage in usages], aggregate)
        return [process.with_usage(usage) for process, usage in zip(processes, usages)]
