"""Fleet: Supervisor と Admission Controller の組み立て

設定からストア・Supervisor・Controller・イベントバスを作り、
相互参照を接続してクラッシュ復旧を行ってから、ヘルスチェックと
キュー自動処理を開始する。shutdown() は逆順に停止する。
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .admission.controller import SpawnController
from .core.config import FleetForgeSettings, get_settings
from .core.event_bus import FleetEventBus
from .storage.spawn_queue import SpawnQueueStore
from .storage.worker_store import WorkerStore
from .supervisor.briefing import BriefingSources, WorkspaceProvider
from .supervisor.manager import WorkerSupervisor

logger = logging.getLogger(__name__)


class Fleet:
    """FleetForge のコンポジションルート"""

    def __init__(
        self,
        settings: FleetForgeSettings | None = None,
        *,
        event_bus: FleetEventBus | None = None,
        workspace_provider: WorkspaceProvider | None = None,
        briefing_sources: BriefingSources | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.event_bus = event_bus or FleetEventBus.get_instance()
        self._workspace_provider = workspace_provider
        self._briefing_sources = briefing_sources
        self._clock = clock
        self.worker_store: WorkerStore | None = None
        self.spawn_queue: SpawnQueueStore | None = None
        self.supervisor: WorkerSupervisor | None = None
        self.controller: SpawnController | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> dict[str, int]:
        """組み立てて起動

        Returns:
            クラッシュ復旧の結果

        Raises:
            StorageInitError: 永続化層を初期化できない場合
        """
        if self._started:
            return {}

        logging.getLogger("fleetforge").setLevel(self.settings.logging.level)

        vault = self.settings.get_vault_path()
        self.worker_store = WorkerStore(vault)
        self.spawn_queue = SpawnQueueStore(vault)

        self.controller = SpawnController(self.settings.admission, event_bus=self.event_bus)
        self.supervisor = WorkerSupervisor(
            self.settings.supervisor,
            worker_store=self.worker_store,
            workspace_provider=self._workspace_provider,
            briefing_sources=self._briefing_sources,
            event_bus=self.event_bus,
            clock=self._clock,
        )
        self.supervisor.set_spawn_controller(self.controller)

        recovery = await self.supervisor.initialize()
        self.controller.initialize(self.spawn_queue, self.supervisor)
        self.supervisor.start_health_check()

        self._started = True
        logger.info(f"Fleet起動: vault={vault}, workers={self.supervisor.get_worker_count()}")
        return recovery

    async def shutdown(self) -> None:
        """キュー処理とヘルスチェックを止め、全Workerを停止"""
        if not self._started:
            return
        assert self.controller is not None and self.supervisor is not None
        self.controller.stop_processing()
        await self.supervisor.shutdown()
        self.controller.destroy()
        await self.event_bus.drain()
        self._started = False
        logger.info("Fleet停止")
