"""Spawn Admission Controller

Worker の生成を階層の深さと全体の同時稼働数で制限する。

- can_spawn: 現在のカウンターとロール定義だけで決まる判定
- register_spawn / unregister_spawn: pid をキーとするライブWorkerカウンター
- queue_spawn / process_queue: 依存関係付きキューからの生成

プロセスは所有しない。生成そのものは WorkerSupervisor に委譲する。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from ..core.config import AdmissionConfig
from ..core.errors import SpawnRejectedError, WorkerStartError
from ..core.event_bus import FleetEventBus, FleetEventType
from ..roles import AgentRole, can_role_spawn, get_max_depth_for_role
from ..storage.models import SpawnPriority, SpawnQueueItem
from ..supervisor.models import SpawnWorkerRequest

if TYPE_CHECKING:
    from ..storage.spawn_queue import SpawnQueueStore
    from ..supervisor.manager import WorkerSupervisor
    from ..supervisor.models import Worker

logger = logging.getLogger(__name__)


class DenialCode(StrEnum):
    """拒否理由の種別"""

    HARD_LIMIT = "hard_limit"  # 同時稼働数のハードリミット
    MAX_DEPTH = "max_depth"  # 全体の最大深さ
    ROLE_DEPTH = "role_depth"  # ロールごとの最大深さ
    ROLE_CANNOT_SPAWN = "role_cannot_spawn"  # 要求元ロールにSpawn権限がない


@dataclass(frozen=True)
class SpawnDecision:
    """can_spawn の判定結果"""

    allowed: bool
    reason: str | None = None
    warning: str | None = None
    code: DenialCode | None = None

    @classmethod
    def deny(cls, code: DenialCode, reason: str) -> SpawnDecision:
        return cls(allowed=False, reason=reason, code=code)


class AgentCounter:
    """ライブWorkerのカウンター

    pid をキーにするため、同じ pid の二重解除や未知の pid の解除は
    何もしない。値が負になることはない。
    """

    def __init__(self) -> None:
        self._by_pid: dict[int, tuple[str, str]] = {}

    @property
    def count(self) -> int:
        return len(self._by_pid)

    def register(self, pid: int, handle: str, worker_id: str) -> None:
        self._by_pid[pid] = (handle, worker_id)

    def unregister(self, pid: int) -> bool:
        return self._by_pid.pop(pid, None) is not None

    def worker_id_for(self, handle: str) -> str | None:
        for registered_handle, worker_id in self._by_pid.values():
            if registered_handle == handle:
                return worker_id
        return None

    def clear(self) -> None:
        self._by_pid.clear()


class SpawnController:
    """Spawn Admission Controller"""

    def __init__(
        self,
        config: AdmissionConfig | None = None,
        *,
        event_bus: FleetEventBus | None = None,
    ) -> None:
        self._config = config or AdmissionConfig()
        self._bus = event_bus or FleetEventBus.get_instance()
        self._counter = AgentCounter()
        self._queue: SpawnQueueStore | None = None
        self._supervisor: WorkerSupervisor | None = None
        self._process_task: asyncio.Task | None = None
        self._processing = False

    @property
    def config(self) -> AdmissionConfig:
        return self._config

    def initialize(
        self,
        spawn_queue: SpawnQueueStore | None = None,
        supervisor: WorkerSupervisor | None = None,
    ) -> None:
        """キューとSupervisorを接続し、カウンターを稼働中のWorkerに合わせる"""
        self._queue = spawn_queue
        self._supervisor = supervisor
        if supervisor is not None:
            self.sync_with_workers(supervisor.get_workers())
        if self._config.auto_process and spawn_queue is not None and supervisor is not None:
            self.start_processing()

    def sync_with_workers(self, workers: list[Worker]) -> None:
        """カウンターを稼働中のWorkerで作り直す"""
        self._counter.clear()
        for worker in workers:
            if worker.pid is not None and not worker.is_terminal():
                self._counter.register(worker.pid, worker.handle, worker.id)
        logger.info(f"Agentカウンター同期: {self._counter.count}")

    # =========================================================================
    # 判定
    # =========================================================================

    def can_spawn(
        self,
        requester_role: AgentRole | str,
        current_depth: int,
        target_role: AgentRole | str,
    ) -> SpawnDecision:
        """Spawnできるか判定

        判定は固定の順序で行い、最初に該当した拒否理由を返す。

        Args:
            requester_role: 要求元のロール
            current_depth: 要求元の深さ（生成されるWorkerは +1）
            target_role: 生成するWorkerのロール
        """
        current = self._counter.count
        hard_limit = self._config.hard_limit
        if current >= hard_limit:
            self._bus.emit(FleetEventType.LIMIT_HARD, current=current, limit=hard_limit)
            return SpawnDecision.deny(
                DenialCode.HARD_LIMIT, f"Hard agent limit reached: {current}/{hard_limit}"
            )

        max_depth = self._config.max_depth
        if current_depth >= max_depth:
            return SpawnDecision.deny(
                DenialCode.MAX_DEPTH,
                f"Maximum depth exceeded: depth {current_depth} >= max {max_depth}",
            )

        # ロール判定: Spawn権限 → 要求元の深さ → 生成先の深さ
        if not can_role_spawn(requester_role):
            return SpawnDecision.deny(
                DenialCode.ROLE_CANNOT_SPAWN, f"Role '{requester_role}' cannot spawn agents"
            )

        requester_max = get_max_depth_for_role(requester_role)
        if current_depth >= requester_max:
            return SpawnDecision.deny(
                DenialCode.ROLE_DEPTH,
                f"Role '{requester_role}' cannot spawn at depth {current_depth} "
                f"(max depth {requester_max})",
            )

        target_max = get_max_depth_for_role(target_role)
        if current_depth + 1 > target_max:
            return SpawnDecision.deny(
                DenialCode.ROLE_DEPTH,
                f"Role '{target_role}' cannot exist at depth {current_depth + 1} "
                f"(max depth {target_max})",
            )

        soft_limit = self._config.soft_limit
        if current >= soft_limit:
            self._bus.emit(FleetEventType.LIMIT_SOFT, current=current, limit=soft_limit)
            return SpawnDecision(
                allowed=True, warning=f"Soft agent limit reached: {current}/{soft_limit}"
            )

        return SpawnDecision(allowed=True)

    # =========================================================================
    # カウンター
    # =========================================================================

    def register_spawn(self, pid: int, handle: str, worker_id: str) -> None:
        """起動したWorkerを登録"""
        self._counter.register(pid, handle, worker_id)
        logger.debug(f"Agent登録: {handle} (pid={pid}, count={self._counter.count})")

    def unregister_spawn(self, pid: int, handle: str) -> None:
        """停止したWorkerを解除（未知のpidは無視）"""
        if self._counter.unregister(pid):
            logger.debug(f"Agent解除: {handle} (pid={pid}, count={self._counter.count})")

    def get_current_count(self) -> int:
        return self._counter.count

    def get_worker_id(self, handle: str) -> str | None:
        return self._counter.worker_id_for(handle)

    def get_limits(self) -> dict[str, int]:
        current = self._counter.count
        return {
            "current": current,
            "soft": self._config.soft_limit,
            "hard": self._config.hard_limit,
            "remaining": max(0, self._config.hard_limit - current),
        }

    # =========================================================================
    # キュー
    # =========================================================================

    def queue_spawn(
        self,
        requester_handle: str,
        target_role: AgentRole | str,
        depth_level: int,
        task: str,
        *,
        priority: SpawnPriority | str = SpawnPriority.NORMAL,
        depends_on: list[str] | None = None,
        swarm_id: str | None = None,
        context: dict[str, Any] | None = None,
        requester_role: AgentRole | str | None = None,
    ) -> str | None:
        """Spawn要求をキューに登録

        Returns:
            要求ID。キュー未接続、または深さがロールの上限を超える場合は None
        """
        if self._queue is None:
            logger.warning(f"Spawn Queue未接続のため登録できません: {requester_handle}")
            return None

        target_max = get_max_depth_for_role(target_role)
        if depth_level > target_max:
            logger.warning(
                f"Spawn要求の深さがロール上限を超過: {target_role} depth={depth_level} "
                f"(max {target_max})"
            )
            return None

        payload_context = dict(context or {})
        if requester_role is not None:
            payload_context["requester_role"] = str(requester_role)

        item = self._queue.enqueue(
            requester_handle,
            str(target_role),
            depth_level,
            task,
            priority=priority,
            depends_on=depends_on,
            swarm_id=swarm_id,
            context=payload_context,
        )
        self._bus.emit(
            FleetEventType.SPAWN_QUEUED,
            item_id=item.id,
            requester_handle=requester_handle,
            target_role=item.target_role,
            priority=str(item.priority),
            blocked_by_count=item.blocked_by_count,
        )
        return item.id

    async def process_queue(self, batch_limit: int | None = None) -> int:
        """ready な要求を生成する

        Returns:
            このパスで生成できた件数
        """
        if self._queue is None or self._supervisor is None or self._processing:
            return 0

        remaining = min(
            self._config.hard_limit - self._counter.count,
            self._supervisor.get_available_capacity(),
        )
        if remaining <= 0:
            return 0

        limit = min(batch_limit or self._config.batch_limit, remaining)
        self._processing = True
        try:
            spawned = 0
            for item in self._queue.get_ready(limit):
                if await self._process_item(item):
                    spawned += 1
        finally:
            self._processing = False

        if spawned:
            logger.info(f"Spawn Queue処理: {spawned}件生成")
        return spawned

    async def _process_item(self, item: SpawnQueueItem) -> bool:
        assert self._queue is not None and self._supervisor is not None

        try:
            target_role = AgentRole(item.target_role)
        except ValueError:
            self._reject(item, f"Unknown role '{item.target_role}'")
            return False

        requester_role = self._resolve_requester_role(item)
        decision = self.can_spawn(requester_role, item.depth_level, target_role)
        if not decision.allowed:
            self._reject(item, decision.reason or "Spawn not allowed")
            return False

        self._queue.approve(item.id)
        request = SpawnWorkerRequest(
            handle=f"{target_role}-{item.id[-8:]}",
            role=target_role,
            depth_level=item.depth_level + 1,
            swarm_id=item.swarm_id,
            initial_prompt=item.payload.task,
            requester_role=requester_role,
            skip_admission=True,
        )
        try:
            response = await self._supervisor.spawn_worker(request)
        except (SpawnRejectedError, WorkerStartError) as e:
            self._reject(item, str(e))
            return False

        self._queue.mark_spawned(item.id, response.id)
        self._bus.emit(
            FleetEventType.SPAWN_COMPLETED,
            item_id=item.id,
            worker_id=response.id,
            handle=response.handle,
            target_role=str(target_role),
        )
        return True

    def _resolve_requester_role(self, item: SpawnQueueItem) -> AgentRole:
        """要求元ロール: payload の指定 → 稼働中Workerのロール → lead"""
        role = item.payload.context.get("requester_role")
        if role:
            try:
                return AgentRole(role)
            except ValueError:
                logger.warning(f"未知の要求元ロールを無視: {role}")
        if self._supervisor is not None:
            worker = self._supervisor.get_worker_by_handle(item.requester_handle)
            if worker is not None:
                return worker.role
        return AgentRole.LEAD

    def _reject(self, item: SpawnQueueItem, reason: str) -> None:
        assert self._queue is not None
        self._queue.reject(item.id)
        logger.warning(f"Spawn要求を却下: {item.id} ({item.target_role}): {reason}")
        self._bus.emit(
            FleetEventType.SPAWN_REJECTED,
            item_id=item.id,
            requester_handle=item.requester_handle,
            target_role=item.target_role,
            reason=reason,
        )

    # =========================================================================
    # 自動処理
    # =========================================================================

    @property
    def is_processing(self) -> bool:
        return self._process_task is not None and not self._process_task.done()

    def start_processing(self) -> None:
        """一定間隔でキューを処理（多重起動しない）"""
        if self.is_processing:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("イベントループ外のためキュー自動処理を開始できません")
            return
        self._process_task = loop.create_task(self._process_loop(), name="spawn-queue-processor")

    def stop_processing(self) -> None:
        if self._process_task is not None:
            self._process_task.cancel()
            self._process_task = None

    async def _process_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.process_interval)
            try:
                await self.process_queue()
            except Exception:
                logger.exception("Spawn Queue処理エラー")

    def get_queue_stats(self) -> dict[str, Any]:
        return {
            "queue": self._queue.get_stats() if self._queue is not None else None,
            "limits": self.get_limits(),
        }

    def destroy(self) -> None:
        """自動処理を止め、接続を外す"""
        self.stop_processing()
        self._counter.clear()
        self._queue = None
        self._supervisor = None
