"""Spawn Queue Store: 依存関係付きSpawn要求キュー

Spawn要求をDAGとして管理する。各要求は depends_on に列挙した要求が
spawned になるまでブロックされ、blocked_by_count が未解決の依存数を表す。
blocked_by_count == 0 かつ pending の要求が ready（Kahnのアルゴリズムの入次数0）。

依存される側 → 依存する側 の関係は depends_on を走査して導出し、
グラフの辺としては保存しない。
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from pathlib import Path
from typing import Any

from .jsonl import JsonlTable
from .models import (
    OPEN_QUEUE_STATUSES,
    SpawnPayload,
    SpawnPriority,
    SpawnQueueItem,
    SpawnQueueStats,
    SpawnQueueStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


class SpawnQueueStore:
    """Spawn要求の永続化キュー

    Vault/spawn_queue/queue.jsonl に保存する。
    """

    def __init__(self, base_path: Path | str) -> None:
        """初期化

        Args:
            base_path: Vaultのベースパス。
                spawn_queue/ ディレクトリが作成される。

        Raises:
            StorageInitError: 初期化に失敗した場合
        """
        self.base_path = Path(base_path) / "spawn_queue"
        self._table: JsonlTable[SpawnQueueItem] = JsonlTable(
            self.base_path / "queue.jsonl", SpawnQueueItem, key=lambda i: i.id
        )

    # =========================================================================
    # 登録
    # =========================================================================

    def enqueue(
        self,
        requester_handle: str,
        target_role: str,
        depth_level: int,
        task: str,
        *,
        priority: SpawnPriority | str = SpawnPriority.NORMAL,
        depends_on: list[str] | None = None,
        swarm_id: str | None = None,
        context: dict[str, Any] | None = None,
        checkpoint: dict[str, Any] | None = None,
    ) -> SpawnQueueItem:
        """Spawn要求を登録

        存在しない依存IDは解決済みとして扱う。

        Returns:
            登録された要求
        """
        deps = list(dict.fromkeys(depends_on or []))
        item = SpawnQueueItem(
            requester_handle=requester_handle,
            target_role=str(target_role),
            depth_level=depth_level,
            swarm_id=swarm_id,
            priority=SpawnPriority(priority),
            payload=SpawnPayload(task=task, context=context or {}, checkpoint=checkpoint),
            depends_on=deps,
            blocked_by_count=self._count_unresolved(deps),
        )
        self._table.put(item)
        logger.debug(
            f"Spawn要求登録: {item.id} ({item.target_role}, blocked_by={item.blocked_by_count})"
        )
        return item

    def _count_unresolved(self, depends_on: list[str]) -> int:
        """未解決（spawned以外）の依存数を数える"""
        count = 0
        for dep_id in depends_on:
            dep = self._table.get(dep_id)
            if dep is None:
                logger.warning(f"存在しない依存IDを無視: {dep_id}")
                continue
            if dep.status != SpawnQueueStatus.SPAWNED:
                count += 1
        return count

    # =========================================================================
    # 状態遷移
    # =========================================================================

    def approve(self, item_id: str) -> bool:
        """pending → approved"""
        item = self._table.get(item_id)
        if item is None or item.status != SpawnQueueStatus.PENDING:
            return False
        self._table.put(
            item.model_copy(update={"status": SpawnQueueStatus.APPROVED, "processed_at": utc_now()})
        )
        return True

    def reject(self, item_id: str) -> bool:
        """pending/approved → rejected

        依存している要求のブロックは解除しない。
        """
        item = self._table.get(item_id)
        if item is None or item.status not in OPEN_QUEUE_STATUSES:
            return False
        self._table.put(
            item.model_copy(update={"status": SpawnQueueStatus.REJECTED, "processed_at": utc_now()})
        )
        return True

    def mark_spawned(self, item_id: str, worker_id: str) -> bool:
        """pending/approved → spawned

        依存している要求の blocked_by_count を1ずつ減らす。
        未解決の依存が残っている要求は spawned にしない。
        """
        item = self._table.get(item_id)
        if item is None or item.status not in OPEN_QUEUE_STATUSES:
            return False
        if item.blocked_by_count > 0:
            logger.warning(f"未解決の依存があるためspawnedにしない: {item_id}")
            return False

        spawned = item.model_copy(
            update={
                "status": SpawnQueueStatus.SPAWNED,
                "spawned_worker_id": worker_id,
                "processed_at": utc_now(),
            }
        )
        updates = [spawned]
        for dependent in self.get_dependents(item_id):
            updates.append(
                dependent.model_copy(
                    update={"blocked_by_count": max(0, dependent.blocked_by_count - 1)}
                )
            )
        self._table.put_many(updates)
        return True

    def cancel_by_requester(self, requester_handle: str) -> int:
        """要求元の pending 要求をすべて rejected にする"""
        now = utc_now()
        updates = [
            item.model_copy(update={"status": SpawnQueueStatus.REJECTED, "processed_at": now})
            for item in self._table
            if item.requester_handle == requester_handle
            and item.status == SpawnQueueStatus.PENDING
        ]
        self._table.put_many(updates)
        return len(updates)

    def cleanup(self, max_age: timedelta) -> int:
        """処理済み（spawned/rejected）の古い要求を削除"""
        cutoff = utc_now() - max_age
        stale = [
            item.id
            for item in self._table
            if item.status not in OPEN_QUEUE_STATUSES
            and item.processed_at is not None
            and item.processed_at < cutoff
        ]
        for item_id in stale:
            self._table.delete(item_id)
        return len(stale)

    # =========================================================================
    # 読み取り
    # =========================================================================

    def get(self, item_id: str) -> SpawnQueueItem | None:
        """要求を取得"""
        return self._table.get(item_id)

    def get_ready(self, limit: int = 10) -> list[SpawnQueueItem]:
        """ready な要求を優先度 → 登録順で取得"""
        ready = [item for item in self._table if item.is_ready()]
        ready.sort(key=lambda i: i.sort_key())
        return ready[:limit]

    def get_dependents(self, item_id: str) -> list[SpawnQueueItem]:
        """item_id に依存している pending の要求"""
        return [
            item
            for item in self._table
            if item.status == SpawnQueueStatus.PENDING and item_id in item.depends_on
        ]

    def get_by_requester(self, requester_handle: str, limit: int = 50) -> list[SpawnQueueItem]:
        """要求元ごとの要求（新しい順）"""
        items = [i for i in self._table if i.requester_handle == requester_handle]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return items[:limit]

    def get_pending(self) -> list[SpawnQueueItem]:
        """pending の要求（登録順）"""
        items = [i for i in self._table if i.status == SpawnQueueStatus.PENDING]
        items.sort(key=lambda i: i.created_at)
        return items

    def get_stats(self) -> SpawnQueueStats:
        """キュー統計"""
        items = self._table.values()
        by_status = Counter(str(i.status) for i in items)
        by_priority = Counter(str(i.priority) for i in items)
        return SpawnQueueStats(
            total=len(items),
            by_status={str(s): by_status.get(str(s), 0) for s in SpawnQueueStatus},
            by_priority={str(p): by_priority.get(str(p), 0) for p in SpawnPriority},
            ready=sum(1 for i in items if i.is_ready()),
            blocked=sum(
                1 for i in items if i.status == SpawnQueueStatus.PENDING and i.blocked_by_count > 0
            ),
        )
