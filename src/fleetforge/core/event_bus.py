"""Fleet イベントバス

Supervisor と Admission Controller が発行するライフサイクルイベントを
購読者に配信する。Wave Orchestrator や HTTP層はここを購読する。

同期ハンドラーはその場で呼び出し、コルーチンハンドラーはタスクとして
スケジュールするため、発行側の処理をブロックしない。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from ulid import ULID

logger = logging.getLogger(__name__)


# =============================================================================
# 列挙型
# =============================================================================


class FleetEventType(StrEnum):
    """イベントの種別"""

    # Worker Supervisor
    WORKER_READY = "worker.ready"
    WORKER_OUTPUT = "worker.output"
    WORKER_RESULT = "worker.result"
    WORKER_ERROR = "worker.error"
    WORKER_EXIT = "worker.exit"
    WORKER_UNHEALTHY = "worker.unhealthy"
    WORKER_RESTART = "worker.restart"

    # Spawn Admission Controller
    SPAWN_QUEUED = "spawn.queued"
    SPAWN_COMPLETED = "spawn.completed"
    SPAWN_REJECTED = "spawn.rejected"
    LIMIT_SOFT = "limit.soft"
    LIMIT_HARD = "limit.hard"


# =============================================================================
# データクラス
# =============================================================================


@dataclass
class FleetEvent:
    """バス上を流れる1つのイベント"""

    event_type: FleetEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(ULID()))

    def to_dict(self) -> dict[str, Any]:
        """配信用の辞書に変換"""
        return {
            "event_id": self.event_id,
            "event_type": str(self.event_type),
            "data": self.data,
            "timestamp": self.timestamp,
        }


# =============================================================================
# FleetEventBus
# =============================================================================

# サブスクライバーの型（同期・非同期どちらも可）
FleetEventHandler = Callable[[FleetEvent], Awaitable[None] | None]

# 最近のイベント保持上限
MAX_RECENT_EVENTS = 200


@dataclass
class _Subscription:
    handler: FleetEventHandler
    event_types: frozenset[FleetEventType] | None


class FleetEventBus:
    """型付きPub/Subバス

    発行ごとに各購読者へ最大1回配信する。
    購読者のエラーは他の購読者や発行側に影響しない。
    """

    _instance: FleetEventBus | None = None

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._recent_events: deque[FleetEvent] = deque(maxlen=MAX_RECENT_EVENTS)
        self._pending: set[asyncio.Task] = set()

    @classmethod
    def get_instance(cls) -> FleetEventBus:
        """シングルトンインスタンスを取得"""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """シングルトンをリセット（テスト用）"""
        cls._instance = None

    def subscribe(
        self,
        handler: FleetEventHandler,
        event_types: Iterable[FleetEventType] | None = None,
    ) -> None:
        """イベントハンドラーを登録

        Args:
            handler: 呼び出されるハンドラー
            event_types: 購読するイベント種別。Noneなら全種別
        """
        types = frozenset(event_types) if event_types is not None else None
        self._subscriptions.append(_Subscription(handler=handler, event_types=types))

    def unsubscribe(self, handler: FleetEventHandler) -> None:
        """イベントハンドラーを解除"""
        self._subscriptions = [s for s in self._subscriptions if s.handler != handler]

    def emit(self, event_type: FleetEventType, **data: Any) -> FleetEvent:
        """イベントを発行

        Returns:
            発行したイベント
        """
        event = FleetEvent(event_type=event_type, data=data)
        self._recent_events.append(event)

        for sub in list(self._subscriptions):
            if sub.event_types is not None and event_type not in sub.event_types:
                continue
            self._dispatch(sub.handler, event)

        return event

    def _dispatch(self, handler: FleetEventHandler, event: FleetEvent) -> None:
        name = getattr(handler, "__name__", repr(handler))
        try:
            result = handler(event)
        except Exception:
            logger.exception(f"イベントハンドラーエラー: {name}")
            return

        if not inspect.isawaitable(result):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"イベントループ外のため非同期ハンドラーを破棄: {name}")
            if inspect.iscoroutine(result):
                result.close()
            return

        task = loop.create_task(self._run_async(name, result))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _run_async(name: str, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception(f"イベントハンドラーエラー: {name}")

    async def drain(self) -> None:
        """スケジュール済みの非同期ハンドラーの完了を待つ"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_recent_events(
        self,
        limit: int = MAX_RECENT_EVENTS,
        event_type: FleetEventType | None = None,
    ) -> list[FleetEvent]:
        """最近のイベント履歴を取得"""
        events = list(self._recent_events)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]
