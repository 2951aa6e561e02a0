"""FleetForge 例外定義

Spawn前提条件の違反・プロセス起動失敗・ストレージ初期化失敗を表す。
Admission拒否そのものは SpawnDecision として値で返し、例外にはしない。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..admission.controller import SpawnDecision


class FleetForgeError(Exception):
    """FleetForge 基底例外"""

    pass


class SpawnRejectedError(FleetForgeError):
    """Spawnの前提条件を満たさない"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class CapacityExceededError(SpawnRejectedError):
    """同時稼働Worker上限に到達"""

    pass


class DuplicateHandleError(SpawnRejectedError):
    """同じハンドルのWorkerが既に存在する"""

    pass


class AdmissionDeniedError(SpawnRejectedError):
    """Admission Controllerが拒否した"""

    def __init__(self, decision: SpawnDecision):
        super().__init__(decision.reason or "Spawn not allowed")
        self.decision = decision


class WorkerStartError(FleetForgeError):
    """Workerプロセスの起動に失敗"""

    pass


class StorageError(FleetForgeError):
    """永続化層のエラー"""

    pass


class StorageInitError(StorageError):
    """永続化層の初期化に失敗（起動を中止する）"""

    pass
