"""Workerのヘルス判定

最後のハートビートからの経過秒数でヘルスを分類する。
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import WorkerHealth


@dataclass(frozen=True)
class HealthThresholds:
    """ヘルス判定の閾値（秒）"""

    healthy: float = 30.0
    unhealthy: float = 60.0

    def __post_init__(self) -> None:
        if self.unhealthy < self.healthy:
            raise ValueError("unhealthy threshold must be >= healthy threshold")


def classify_health(age: float, thresholds: HealthThresholds) -> WorkerHealth:
    """経過秒数からヘルスを分類

    経過時間に対して単調: healthy → degraded → unhealthy の順にしか進まない。
    """
    if age <= thresholds.healthy:
        return WorkerHealth.HEALTHY
    if age <= thresholds.unhealthy:
        return WorkerHealth.DEGRADED
    return WorkerHealth.UNHEALTHY
