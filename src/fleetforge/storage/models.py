"""永続化レコードのデータモデル

Worker と SpawnQueue の永続化表現。frozenモデルで、
更新は model_copy(update=...) で新しいレコードを作る。
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID


def utc_now() -> datetime:
    """現在時刻（UTC）"""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """ULIDベースのID生成"""
    return str(ULID())


# =============================================================================
# Worker
# =============================================================================


class WorkerStatus(StrEnum):
    """永続化されたWorkerの状態"""

    PENDING = "pending"
    READY = "ready"
    WORKING = "working"
    DISMISSED = "dismissed"
    ERROR = "error"


# 終端状態（復旧対象外）
TERMINAL_WORKER_STATUSES = frozenset({WorkerStatus.DISMISSED, WorkerStatus.ERROR})


class WorkerRecord(BaseModel):
    """Workerの永続化レコード"""

    model_config = ConfigDict(frozen=True)

    id: str
    handle: str
    status: WorkerStatus = WorkerStatus.PENDING
    pid: int | None = None
    session_id: str | None = None
    initial_prompt: str | None = None
    last_heartbeat: datetime = Field(default_factory=utc_now)
    restart_count: int = Field(default=0, ge=0)
    role: str = "worker"
    team_name: str = "default"
    working_dir: str | None = None
    worktree_path: str | None = None
    worktree_branch: str | None = None
    swarm_id: str | None = None
    depth_level: int = Field(default=1, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    dismissed_at: datetime | None = None

    def is_terminal(self) -> bool:
        """終端状態か"""
        return self.status in TERMINAL_WORKER_STATUSES


# =============================================================================
# Spawn Queue
# =============================================================================


class SpawnPriority(StrEnum):
    """Spawn要求の優先度"""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# 優先度の並び順（小さいほど先に処理）
PRIORITY_ORDER = {
    SpawnPriority.CRITICAL: 0,
    SpawnPriority.HIGH: 1,
    SpawnPriority.NORMAL: 2,
    SpawnPriority.LOW: 3,
}


class SpawnQueueStatus(StrEnum):
    """Spawn要求の状態"""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SPAWNED = "spawned"


# まだ処理中とみなす状態
OPEN_QUEUE_STATUSES = frozenset({SpawnQueueStatus.PENDING, SpawnQueueStatus.APPROVED})


class SpawnPayload(BaseModel):
    """Spawn要求のペイロード（中身は不透明）"""

    model_config = ConfigDict(frozen=True)

    task: str
    context: dict[str, Any] = Field(default_factory=dict)
    checkpoint: dict[str, Any] | None = None


class SpawnQueueItem(BaseModel):
    """Spawn要求の永続化レコード"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    requester_handle: str
    target_role: str
    depth_level: int = Field(default=0, ge=0)
    swarm_id: str | None = None
    priority: SpawnPriority = SpawnPriority.NORMAL
    status: SpawnQueueStatus = SpawnQueueStatus.PENDING
    payload: SpawnPayload
    depends_on: list[str] = Field(default_factory=list)
    blocked_by_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    processed_at: datetime | None = None
    spawned_worker_id: str | None = None

    def is_ready(self) -> bool:
        """依存が解消済みで処理可能か"""
        return self.status == SpawnQueueStatus.PENDING and self.blocked_by_count == 0

    def sort_key(self) -> tuple[int, datetime]:
        """優先度 → 登録順"""
        return (PRIORITY_ORDER[self.priority], self.created_at)


class SpawnQueueStats(BaseModel):
    """SpawnQueueの統計"""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_priority: dict[str, int] = Field(default_factory=dict)
    ready: int = 0
    blocked: int = 0
