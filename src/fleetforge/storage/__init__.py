"""FleetForge Storage モジュール

Worker と Spawn Queue の JSONL 永続化:
- WorkerStore: Workerレコード（クラッシュ復旧の元データ）
- SpawnQueueStore: 依存関係付きSpawn要求キュー
"""

from .jsonl import JsonlTable
from .models import (
    SpawnPayload,
    SpawnPriority,
    SpawnQueueItem,
    SpawnQueueStats,
    SpawnQueueStatus,
    WorkerRecord,
    WorkerStatus,
)
from .spawn_queue import SpawnQueueStore
from .worker_store import WorkerStore

__all__ = [
    "JsonlTable",
    # Models
    "WorkerRecord",
    "WorkerStatus",
    "SpawnPayload",
    "SpawnPriority",
    "SpawnQueueItem",
    "SpawnQueueStats",
    "SpawnQueueStatus",
    # Stores
    "WorkerStore",
    "SpawnQueueStore",
]
