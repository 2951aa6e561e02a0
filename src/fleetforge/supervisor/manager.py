"""Worker Process Supervisor

エージェントセッションを実行する子プロセスを起動・監視・停止する。

- 起動: 前提条件（容量・ハンドル重複・Admission）を確認してからプロセスを起動
- 監視: stdout の NDJSON イベントで状態遷移し、ハートビートを更新
- ヘルス: ハートビートの経過時間で判定し、unhealthy への遷移時に自動再起動
- 停止: SIGTERM → force_kill_timeout 経過で SIGKILL
- 復旧: 起動時に非終端の永続レコードからセッションを再開
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any

from ..core.config import SupervisorConfig
from ..core.errors import (
    AdmissionDeniedError,
    CapacityExceededError,
    DuplicateHandleError,
    FleetForgeError,
    SpawnRejectedError,
    StorageError,
    WorkerStartError,
)
from ..core.event_bus import FleetEventBus, FleetEventType
from ..roles import AgentRole
from ..storage.models import WorkerRecord, WorkerStatus, generate_id
from ..storage.worker_store import WorkerStore
from .briefing import (
    CONTINUATION_PROMPT,
    BriefingSources,
    Workspace,
    WorkspaceProvider,
    build_briefing,
    build_command,
    build_environment,
)
from .health import HealthThresholds, classify_health
from .models import (
    OutputBuffer,
    SpawnWorkerRequest,
    SpawnWorkerResponse,
    Worker,
    WorkerHealth,
    WorkerState,
)
from .protocol import EventKind, LineFramer, parse_event

if TYPE_CHECKING:
    from ..admission.controller import SpawnController

logger = logging.getLogger(__name__)

# stdout/stderr の読み取り単位
STREAM_CHUNK_SIZE = 4096

# stderr をログに出す最大文字数
STDERR_LOG_LIMIT = 200

# 再起動統計の集計窓（秒）
RESTART_STATS_WINDOW = 3600.0


def is_process_alive(pid: int) -> bool:
    """シグナル0でプロセスの生存を確認"""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _role_from_record(role: str) -> AgentRole:
    try:
        return AgentRole(role)
    except ValueError:
        logger.warning(f"未知のロールをworkerとして扱う: {role}")
        return AgentRole.WORKER


class WorkerSupervisor:
    """Workerプロセスのスーパーバイザー

    ライブWorkerマップの唯一の所有者。共有状態の変更はすべて
    イベントループ上で await を挟まずに行うため、ロックは使わない。
    """

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        *,
        worker_store: WorkerStore | None = None,
        spawn_controller: SpawnController | None = None,
        workspace_provider: WorkspaceProvider | None = None,
        briefing_sources: BriefingSources | None = None,
        event_bus: FleetEventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or SupervisorConfig()
        self._store = worker_store
        self._controller = spawn_controller
        self._workspaces = workspace_provider
        self._briefing_sources = briefing_sources
        self._bus = event_bus or FleetEventBus.get_instance()
        self._clock = clock
        self._thresholds = HealthThresholds(
            healthy=self._config.healthy_threshold,
            unhealthy=self._config.unhealthy_threshold,
        )
        self._workers: dict[str, Worker] = {}
        self._restarting: set[str] = set()
        self._restart_history: list[float] = []
        self._health_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._initialized = False

    @property
    def config(self) -> SupervisorConfig:
        return self._config

    def set_spawn_controller(self, controller: SpawnController | None) -> None:
        """Admission Controllerを後から接続"""
        self._controller = controller

    def get_spawn_controller(self) -> SpawnController | None:
        return self._controller

    # =========================================================================
    # 起動
    # =========================================================================

    async def spawn_worker(self, request: SpawnWorkerRequest) -> SpawnWorkerResponse:
        """Workerを起動

        Raises:
            CapacityExceededError: 同時稼働上限に到達
            DuplicateHandleError: 同じハンドルのWorkerが存在
            AdmissionDeniedError: Admission Controllerが拒否
            WorkerStartError: プロセスの起動に失敗
        """
        stale = self._check_preconditions(request)
        if stale is not None and self._store is not None:
            self._persist(self._store.delete_by_handle, stale.handle)

        restoring = request.worker_id is not None
        worker_id = request.worker_id or generate_id()
        team_name = request.team_name or self._config.default_team
        working_dir, workspace = self._resolve_working_dir(worker_id, request.working_dir)

        argv = build_command(self._config.agent_command, request.session_id)
        env = build_environment(
            worker_id=worker_id,
            handle=request.handle,
            team_name=team_name,
            role=request.role,
            server_url=self._config.server_url,
            session_id=request.session_id,
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=working_dir,
                env=env,
            )
        except OSError as e:
            logger.error(f"Worker起動失敗: {request.handle}: {e}")
            if workspace is not None:
                self._remove_workspace(worker_id)
            self._bus.emit(
                FleetEventType.WORKER_ERROR,
                worker_id=worker_id,
                handle=request.handle,
                error=str(e),
            )
            raise WorkerStartError(f"Failed to start worker '{request.handle}': {e}") from e

        now = self._clock()
        worker = Worker(
            id=worker_id,
            handle=request.handle,
            team_name=team_name,
            role=request.role,
            working_dir=working_dir,
            process=process,
            pid=process.pid,
            session_id=request.session_id,
            last_heartbeat=now,
            last_persisted_heartbeat=now,
            restart_count=request.restart_count,
            recent_output=OutputBuffer(self._config.max_output_lines),
            swarm_id=request.swarm_id,
            depth_level=request.depth_level,
            worktree_path=workspace.path if workspace else None,
            worktree_branch=workspace.branch if workspace else None,
        )
        self._workers[worker_id] = worker
        self._persist_spawn(worker, request, restoring)
        if self._controller is not None and worker.pid is not None:
            self._controller.register_spawn(worker.pid, worker.handle, worker.id)

        worker.reader_task = asyncio.create_task(
            self._read_worker(worker), name=f"worker-reader-{worker.handle}"
        )
        # 子プロセスがstdinを読まなくても起動は待たせない
        worker.briefing_task = asyncio.create_task(
            self._write_briefing(worker, request.initial_prompt),
            name=f"worker-briefing-{worker.handle}",
        )

        action = "復旧" if restoring else "起動"
        logger.info(
            f"Worker{action}: {worker.handle} (id={worker.id}, pid={worker.pid}, "
            f"role={worker.role}, depth={worker.depth_level})"
        )
        return SpawnWorkerResponse(
            id=worker.id,
            handle=worker.handle,
            pid=worker.pid,
            state=worker.state,
            role=worker.role,
            restart_count=worker.restart_count,
        )

    def _check_preconditions(self, request: SpawnWorkerRequest) -> WorkerRecord | None:
        """前提条件を順に確認

        Returns:
            ハンドル再利用のために削除する終端レコード
        """
        if len(self._workers) >= self._config.max_workers:
            raise CapacityExceededError(f"Maximum workers ({self._config.max_workers}) reached")

        if self.get_worker_by_handle(request.handle) is not None:
            raise DuplicateHandleError(f"Worker with handle '{request.handle}' already exists")

        stale: WorkerRecord | None = None
        if self._store is not None:
            record = self._store.get_by_handle(request.handle)
            if record is not None and record.id != request.worker_id:
                if not record.is_terminal():
                    raise DuplicateHandleError(
                        f"Worker with handle '{request.handle}' already exists ({record.status})"
                    )
                stale = record

        if self._controller is not None and not request.skip_admission:
            decision = self._controller.can_spawn(
                request.requester_role, request.depth_level - 1, request.role
            )
            if not decision.allowed:
                logger.warning(f"Spawn拒否: {request.handle}: {decision.reason}")
                raise AdmissionDeniedError(decision)
            if decision.warning:
                logger.warning(f"Spawn警告: {request.handle}: {decision.warning}")

        return stale

    def _resolve_working_dir(
        self, worker_id: str, requested: str | None
    ) -> tuple[str, Workspace | None]:
        if requested:
            return requested, None
        if self._config.use_workspaces and self._workspaces is not None:
            try:
                workspace = self._workspaces.create(worker_id)
                return workspace.path, workspace
            except Exception:
                logger.exception(f"隔離チェックアウトの作成に失敗、既定ディレクトリを使用: {worker_id}")
        return self._config.default_working_dir or os.getcwd(), None

    async def _write_briefing(self, worker: Worker, task: str | None) -> None:
        """ブリーフィングをstdinへ書き込む

        briefing_timeout 以内に子プロセスが読み切らなければ、未送信分を
        捨ててstdinを閉じる。
        """
        process = worker.process
        if process is None or process.stdin is None:
            return

        if self._config.inject_briefing:
            text = build_briefing(
                handle=worker.handle,
                role=worker.role,
                task=task,
                sources=self._briefing_sources,
            )
        else:
            text = task or ""

        try:
            if text:
                process.stdin.write(text.encode("utf-8") + b"\n")
                await asyncio.wait_for(process.stdin.drain(), self._config.briefing_timeout)
            if self._config.close_stdin_after_briefing:
                process.stdin.close()
        except TimeoutError:
            logger.warning(
                f"ブリーフィングの書き込みがタイムアウト、stdinを閉じる: {worker.handle} "
                f"({self._config.briefing_timeout}s)"
            )
            process.stdin.transport.abort()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"ブリーフィングの書き込みに失敗: {worker.handle}: {e}")

    def _cancel_briefing(self, worker: Worker) -> None:
        if worker.briefing_task is not None and not worker.briefing_task.done():
            worker.briefing_task.cancel()

    async def _wait_for_briefing(self, worker: Worker) -> None:
        """ブリーフィングの送信完了を待つ（上限は briefing_timeout）"""
        task = worker.briefing_task
        if task is None or task.done():
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def _persist_spawn(self, worker: Worker, request: SpawnWorkerRequest, restoring: bool) -> None:
        if self._store is None:
            return
        if restoring and self._store.get(worker.id) is not None:
            self._persist(self._store.update_pid, worker.id, worker.pid, worker.session_id)
            self._persist(self._store.update_status, worker.id, WorkerStatus.PENDING)
            return
        record = WorkerRecord(
            id=worker.id,
            handle=worker.handle,
            status=WorkerStatus.PENDING,
            pid=worker.pid,
            session_id=worker.session_id,
            initial_prompt=request.initial_prompt,
            restart_count=worker.restart_count,
            role=str(worker.role),
            team_name=worker.team_name,
            working_dir=worker.working_dir,
            worktree_path=worker.worktree_path,
            worktree_branch=worker.worktree_branch,
            swarm_id=worker.swarm_id,
            depth_level=worker.depth_level,
        )
        self._persist(self._store.insert, record)

    def _persist(self, operation: Callable[..., Any], *args: Any) -> None:
        """永続化の失敗はログに残し、プロセス管理は続ける"""
        try:
            operation(*args)
        except (StorageError, ValueError):
            logger.exception(f"Workerレコードの永続化に失敗: {getattr(operation, '__name__', operation)}")

    # =========================================================================
    # 出力処理
    # =========================================================================

    async def _read_worker(self, worker: Worker) -> None:
        """stdout/stderrを並行に読み、終了を処理する"""
        process = worker.process
        assert process is not None
        await asyncio.gather(
            self._pump(worker, process.stdout, self._handle_stdout_line),
            self._pump(worker, process.stderr, self._handle_stderr_line),
        )
        exit_code = await process.wait()
        self._handle_exit(worker, exit_code)

    async def _pump(
        self,
        worker: Worker,
        stream: asyncio.StreamReader | None,
        handler: Callable[[Worker, str], None],
    ) -> None:
        if stream is None:
            return
        framer = LineFramer()
        while True:
            chunk = await stream.read(STREAM_CHUNK_SIZE)
            if not chunk:
                break
            for line in framer.feed(chunk):
                self._dispatch_line(worker, line, handler)
        for line in framer.flush():
            self._dispatch_line(worker, line, handler)

    def _dispatch_line(
        self, worker: Worker, line: str, handler: Callable[[Worker, str], None]
    ) -> None:
        try:
            handler(worker, line)
        except Exception:
            logger.exception(f"出力処理エラー: {worker.handle}")

    def _handle_stdout_line(self, worker: Worker, line: str) -> None:
        event = parse_event(line)
        self._touch(worker)

        if event.kind == EventKind.SYSTEM_INIT and event.session_id:
            self._transition(worker, WorkerState.READY)
            worker.session_id = event.session_id
            if self._store is not None:
                self._persist(self._store.update_pid, worker.id, worker.pid, worker.session_id)
                self._persist(self._store.update_status, worker.id, WorkerStatus.READY)
            logger.info(f"Worker準備完了: {worker.handle} (session={worker.session_id})")
            self._bus.emit(
                FleetEventType.WORKER_READY,
                worker_id=worker.id,
                handle=worker.handle,
                session_id=worker.session_id,
            )

        elif event.kind == EventKind.ASSISTANT:
            if event.text:
                previous = worker.state
                self._transition(worker, WorkerState.WORKING)
                worker.recent_output.append(event.text)
                if previous != WorkerState.WORKING and worker.state == WorkerState.WORKING:
                    self._persist_status(worker, WorkerStatus.WORKING)
            for name in event.tool_names:
                worker.recent_output.append(f"[tool] {name}")

        elif event.kind == EventKind.RESULT:
            self._transition(worker, WorkerState.READY)
            worker.recent_output.append(f"[result] {event.result or ''}".rstrip())
            self._persist_status(worker, WorkerStatus.READY)
            self._bus.emit(
                FleetEventType.WORKER_RESULT,
                worker_id=worker.id,
                handle=worker.handle,
                result=event.result,
                duration_ms=event.duration_ms,
            )

        elif event.kind == EventKind.TEXT:
            worker.recent_output.append(line)

        self._bus.emit(
            FleetEventType.WORKER_OUTPUT,
            worker_id=worker.id,
            handle=worker.handle,
            event=event.to_dict(),
        )

    def _handle_stderr_line(self, worker: Worker, line: str) -> None:
        if any(pattern in line for pattern in self._config.benign_stderr_patterns):
            return
        logger.info(f"[{worker.handle}] stderr: {line[:STDERR_LOG_LIMIT]}")
        worker.recent_output.append(f"[stderr] {line}")
        self._bus.emit(
            FleetEventType.WORKER_ERROR,
            worker_id=worker.id,
            handle=worker.handle,
            error=line,
        )

    def _transition(self, worker: Worker, state: WorkerState) -> None:
        """停止処理中・停止済みのWorkerは遷移させない"""
        if worker.state in (WorkerState.STOPPING, WorkerState.STOPPED, WorkerState.ERROR):
            return
        worker.state = state

    def _touch(self, worker: Worker) -> None:
        """ハートビート更新（永続化は間引く）"""
        now = self._clock()
        worker.last_heartbeat = now
        worker.health = WorkerHealth.HEALTHY
        if (
            self._store is not None
            and now - worker.last_persisted_heartbeat >= self._config.heartbeat_persist_interval
        ):
            worker.last_persisted_heartbeat = now
            self._persist(self._store.update_heartbeat, worker.id)

    def _persist_status(self, worker: Worker, status: WorkerStatus) -> None:
        if self._store is not None and worker.state not in (
            WorkerState.STOPPING,
            WorkerState.STOPPED,
        ):
            self._persist(self._store.update_status, worker.id, status)

    def _handle_exit(self, worker: Worker, exit_code: int) -> None:
        """プロセス終了の処理"""
        was_stopping = worker.state == WorkerState.STOPPING
        clean = was_stopping or exit_code == 0
        worker.exit_code = exit_code
        worker.state = WorkerState.STOPPED if clean else WorkerState.ERROR
        self._cancel_briefing(worker)

        if self._store is not None:
            if clean:
                self._persist(self._store.dismiss, worker.id)
            else:
                self._persist(self._store.update_status, worker.id, WorkerStatus.ERROR)

        if self._controller is not None and worker.pid is not None:
            self._controller.unregister_spawn(worker.pid, worker.handle)

        if clean and worker.worktree_path is not None:
            self._remove_workspace(worker.id)

        if clean:
            logger.info(f"Worker終了: {worker.handle} (exit={exit_code})")
        else:
            logger.error(f"Worker異常終了: {worker.handle} (exit={exit_code})")

        self._bus.emit(
            FleetEventType.WORKER_EXIT,
            worker_id=worker.id,
            handle=worker.handle,
            exit_code=exit_code,
            status=str(WorkerStatus.DISMISSED if clean else WorkerStatus.ERROR),
        )
        if self._workers.get(worker.id) is worker:
            del self._workers[worker.id]
        worker.exited.set()

    def _remove_workspace(self, worker_id: str) -> None:
        if self._workspaces is None:
            return
        try:
            self._workspaces.remove(worker_id)
        except Exception:
            logger.exception(f"隔離チェックアウトの削除に失敗: {worker_id}")

    # =========================================================================
    # 停止
    # =========================================================================

    async def dismiss_worker(self, worker_id: str) -> bool:
        """Workerを停止

        SIGTERM を送り、force_kill_timeout 以内に終了しなければ SIGKILL を送る。
        停止中のWorkerに対しては同じ終了を待つ。

        Returns:
            対象のWorkerが存在したか
        """
        worker = self._workers.get(worker_id)
        if worker is None or worker.is_terminal():
            return False

        if worker.state == WorkerState.STOPPING:
            await self._wait_for_exit(worker)
            return True

        worker.state = WorkerState.STOPPING
        if self._controller is not None and worker.pid is not None:
            self._controller.unregister_spawn(worker.pid, worker.handle)
        if self._store is not None:
            self._persist(self._store.dismiss, worker.id)

        self._close_stdin(worker)
        self._send_signal(worker, signal.SIGTERM)

        if not await self._wait_for_exit(worker):
            logger.warning(f"Workerが終了しないため強制終了: {worker.handle}")
            self._send_signal(worker, signal.SIGKILL)
        return True

    async def dismiss_worker_by_handle(self, handle: str) -> bool:
        """ハンドルでWorkerを停止"""
        worker = self.get_worker_by_handle(handle)
        if worker is None:
            return False
        return await self.dismiss_worker(worker.id)

    async def dismiss_all(self) -> int:
        """全Workerを停止

        Returns:
            停止したWorker数
        """
        results = await asyncio.gather(
            *(self.dismiss_worker(worker_id) for worker_id in list(self._workers))
        )
        return sum(1 for r in results if r)

    async def _wait_for_exit(self, worker: Worker) -> bool:
        try:
            await asyncio.wait_for(worker.exited.wait(), self._config.force_kill_timeout)
        except TimeoutError:
            return False
        return True

    def _close_stdin(self, worker: Worker) -> None:
        """stdinを閉じる（未送信のデータは捨てる）"""
        self._cancel_briefing(worker)
        if worker.stdin_open():
            assert worker.process is not None and worker.process.stdin is not None
            worker.process.stdin.transport.abort()

    def _send_signal(self, worker: Worker, sig: signal.Signals) -> None:
        if worker.process is None or worker.process.returncode is not None:
            return
        try:
            worker.process.send_signal(sig)
        except ProcessLookupError:
            pass

    # =========================================================================
    # 再起動
    # =========================================================================

    async def restart_worker(self, worker_id: str) -> SpawnWorkerResponse | None:
        """Workerを再起動

        ハンドル・チーム・ロール・セッションを引き継ぎ、新しいIDで起動し直す。

        Returns:
            新しいWorkerの起動結果。再起動しなかった場合は None
        """
        worker = self._workers.get(worker_id)
        if worker is None or worker_id in self._restarting:
            return None
        if worker.restart_count >= self._config.max_restart_attempts:
            logger.warning(
                f"再起動上限に到達: {worker.handle} ({worker.restart_count}/"
                f"{self._config.max_restart_attempts})"
            )
            return None

        self._restarting.add(worker_id)
        try:
            request = SpawnWorkerRequest(
                handle=worker.handle,
                team_name=worker.team_name,
                role=worker.role,
                working_dir=None if worker.worktree_path else worker.working_dir,
                initial_prompt=CONTINUATION_PROMPT if worker.session_id else None,
                session_id=worker.session_id,
                swarm_id=worker.swarm_id,
                depth_level=worker.depth_level,
                restart_count=worker.restart_count + 1,
                skip_admission=True,
            )

            await self.dismiss_worker(worker_id)
            if not worker.exited.is_set():
                await self._wait_for_exit(worker)
            self._restart_history.append(self._clock())

            try:
                response = await self.spawn_worker(request)
            except (SpawnRejectedError, WorkerStartError) as e:
                logger.error(f"Worker再起動失敗: {worker.handle}: {e}")
                return None

            logger.info(
                f"Worker再起動: {worker.handle} ({worker_id} -> {response.id}, "
                f"restart_count={response.restart_count})"
            )
            self._bus.emit(
                FleetEventType.WORKER_RESTART,
                old_worker_id=worker_id,
                worker_id=response.id,
                handle=response.handle,
                restart_count=response.restart_count,
            )
            return response
        finally:
            self._restarting.discard(worker_id)

    def get_restart_stats(self) -> dict[str, int]:
        """再起動統計"""
        cutoff = self._clock() - RESTART_STATS_WINDOW
        return {
            "total": len(self._restart_history),
            "last_hour": sum(1 for t in self._restart_history if t >= cutoff),
        }

    # =========================================================================
    # ヘルスチェック
    # =========================================================================

    def check_worker_health(self) -> None:
        """全Workerのヘルスを判定

        unhealthy への遷移時のみ通知し、必要なら再起動をスケジュールする。
        """
        now = self._clock()
        for worker in list(self._workers.values()):
            if worker.is_terminal() or worker.state == WorkerState.STOPPING:
                continue
            age = now - worker.last_heartbeat
            previous = worker.health
            worker.health = classify_health(age, self._thresholds)
            if worker.health == WorkerHealth.UNHEALTHY and previous != WorkerHealth.UNHEALTHY:
                self._on_unhealthy(worker, age)

    def _on_unhealthy(self, worker: Worker, age: float) -> None:
        reason = f"No activity for {age:.0f}s"
        logger.warning(f"Worker unhealthy: {worker.handle}: {reason}")
        self._bus.emit(
            FleetEventType.WORKER_UNHEALTHY,
            worker_id=worker.id,
            handle=worker.handle,
            reason=reason,
        )
        if (
            self._config.auto_restart
            and worker.restart_count < self._config.max_restart_attempts
        ):
            self._run_in_background(lambda: self.restart_worker(worker.id))

    def _run_in_background(self, factory: Callable[[], Coroutine[Any, Any, Any]]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("イベントループ外のためバックグラウンド処理を実行できません")
            return
        task = loop.create_task(factory())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        """スケジュール済みの再起動の完了を待つ"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def start_health_check(self) -> None:
        """定期ヘルスチェックを開始（多重起動しない）"""
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(self._health_loop(), name="worker-health-check")

    def stop_health_check(self) -> None:
        """定期ヘルスチェックを停止"""
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.health_check_interval)
            try:
                self.check_worker_health()
            except Exception:
                logger.exception("ヘルスチェックエラー")

    # =========================================================================
    # クラッシュ復旧
    # =========================================================================

    async def initialize(self) -> dict[str, int]:
        """永続レコードからWorkerを復旧（1回のみ）

        Returns:
            {"alive", "restored", "failed"} の件数
        """
        stats = {"alive": 0, "restored": 0, "failed": 0}
        if self._initialized:
            return stats
        self._initialized = True
        if self._store is None:
            return stats

        for record in self._store.get_active():
            if record.id in self._workers:
                continue
            if record.pid is not None and is_process_alive(record.pid):
                logger.info(f"プロセス生存中のため復旧しない: {record.handle} (pid={record.pid})")
                stats["alive"] += 1
                continue
            if not record.session_id:
                logger.warning(f"セッションがないため復旧不可: {record.handle}")
                self._persist(self._store.update_status, record.id, WorkerStatus.ERROR)
                stats["failed"] += 1
                continue

            try:
                await asyncio.wait_for(
                    self.spawn_worker(self._restore_request(record)),
                    self._config.startup_timeout,
                )
            except (FleetForgeError, TimeoutError) as e:
                logger.error(f"Worker復旧失敗: {record.handle}: {e}")
                self._persist(self._store.update_status, record.id, WorkerStatus.ERROR)
                stats["failed"] += 1
                continue
            stats["restored"] += 1

        if stats["restored"] or stats["failed"]:
            logger.info(
                f"Worker復旧完了: restored={stats['restored']}, failed={stats['failed']}, "
                f"alive={stats['alive']}"
            )
        return stats

    def _restore_request(self, record: WorkerRecord) -> SpawnWorkerRequest:
        return SpawnWorkerRequest(
            worker_id=record.id,
            handle=record.handle,
            team_name=record.team_name,
            role=_role_from_record(record.role),
            working_dir=record.working_dir,
            initial_prompt=CONTINUATION_PROMPT,
            session_id=record.session_id,
            swarm_id=record.swarm_id,
            depth_level=max(1, record.depth_level),
            restart_count=record.restart_count,
            skip_admission=True,
        )

    # =========================================================================
    # メッセージ送信
    # =========================================================================

    async def send_to_worker(self, worker_id: str, message: str) -> bool:
        """stdinへ1行送る（stdinが開いている場合のみ）"""
        worker = self._workers.get(worker_id)
        if worker is not None:
            await self._wait_for_briefing(worker)
        if worker is None or worker.is_terminal() or not worker.stdin_open():
            return False
        assert worker.process is not None and worker.process.stdin is not None
        try:
            worker.process.stdin.write(message.encode("utf-8") + b"\n")
            await worker.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Workerへの送信に失敗: {worker.handle}: {e}")
            return False
        self._transition(worker, WorkerState.WORKING)
        worker.recent_output.append(f"[user] {message}")
        return True

    async def send_to_worker_by_handle(self, handle: str, message: str) -> bool:
        worker = self.get_worker_by_handle(handle)
        if worker is None:
            return False
        return await self.send_to_worker(worker.id, message)

    async def deliver_task(
        self,
        worker_id: str,
        task_id: str,
        title: str,
        description: str | None = None,
    ) -> bool:
        """タスクをWorkerに渡す"""
        message = f"## Task {task_id}: {title}"
        if description:
            message += f"\n\n{description}"
        delivered = await self.send_to_worker(worker_id, message)
        if delivered:
            self._workers[worker_id].current_task_id = task_id
        return delivered

    # =========================================================================
    # 参照
    # =========================================================================

    def get_worker(self, worker_id: str) -> Worker | None:
        return self._workers.get(worker_id)

    def get_worker_by_handle(self, handle: str) -> Worker | None:
        for worker in self._workers.values():
            if worker.handle == handle:
                return worker
        return None

    def get_workers(self) -> list[Worker]:
        return list(self._workers.values())

    def get_worker_count(self) -> int:
        return len(self._workers)

    def get_available_capacity(self) -> int:
        """あと何体起動できるか"""
        return max(0, self._config.max_workers - len(self._workers))

    def get_worker_output(self, worker_id: str, limit: int | None = None) -> list[str] | None:
        """最近の出力（Workerが存在しない場合は None）"""
        worker = self._workers.get(worker_id)
        if worker is None:
            return None
        return worker.recent_output.tail(limit)

    def get_health_stats(self) -> dict[str, int]:
        """ヘルス別のWorker数"""
        workers = list(self._workers.values())
        return {
            "total": len(workers),
            "healthy": sum(1 for w in workers if w.health == WorkerHealth.HEALTHY),
            "degraded": sum(1 for w in workers if w.health == WorkerHealth.DEGRADED),
            "unhealthy": sum(1 for w in workers if w.health == WorkerHealth.UNHEALTHY),
        }

    def get_persisted_workers(self) -> list[WorkerRecord]:
        if self._store is None:
            return []
        return self._store.get_all()

    # =========================================================================
    # 終了
    # =========================================================================

    async def shutdown(self) -> None:
        """ヘルスチェックを止め、全Workerを停止"""
        self.stop_health_check()
        await self.wait_background()
        await self.dismiss_all()
