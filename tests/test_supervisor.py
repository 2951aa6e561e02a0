"""Worker Process Supervisor のテスト

NDJSON を話す偽エージェント（sys.executable で起動するスクリプト）を
実際の子プロセスとして使う。
"""

from __future__ import annotations

import asyncio
import json
import os
import time

import pytest
import pytest_asyncio

from fleetforge.admission import SpawnController
from fleetforge.core.config import AdmissionConfig
from fleetforge.core.errors import (
    AdmissionDeniedError,
    CapacityExceededError,
    DuplicateHandleError,
    WorkerStartError,
)
from fleetforge.core.event_bus import FleetEventType
from fleetforge.roles import AgentRole
from fleetforge.storage import WorkerRecord, WorkerStatus, WorkerStore
from fleetforge.supervisor import (
    BriefingSources,
    SpawnWorkerRequest,
    WorkerHealth,
    WorkerState,
    WorkerSupervisor,
)
from fleetforge.supervisor.briefing import CONTINUATION_PROMPT

pytestmark = [pytest.mark.asyncio, pytest.mark.slow]


@pytest_asyncio.fixture
async def cleanup():
    """テスト終了時にSupervisorの全Workerを停止する"""
    supervisors: list[WorkerSupervisor] = []
    yield supervisors.append
    for supervisor in supervisors:
        await supervisor.shutdown()


def _exited(recorder, worker_id: str):
    return lambda: bool(recorder.for_worker(FleetEventType.WORKER_EXIT, worker_id))


# =============================================================================
# 起動とイベントプロトコル
# =============================================================================


class TestSpawnAndProtocol:
    """起動から終了までの流れ"""

    async def test_full_lifecycle(
        self, agent_config, temp_vault, event_bus, recorder, wait_for, cleanup
    ):
        """init → assistant → result → 正常終了"""
        # Arrange
        store = WorkerStore(temp_vault)
        controller = SpawnController(AdmissionConfig(auto_process=False), event_bus=event_bus)
        supervisor = WorkerSupervisor(
            agent_config("quick"),
            worker_store=store,
            spawn_controller=controller,
            event_bus=event_bus,
        )
        cleanup(supervisor)

        # Act
        response = await supervisor.spawn_worker(
            SpawnWorkerRequest(handle="alpha", role=AgentRole.SCOUT, initial_prompt="explore")
        )
        worker = supervisor.get_worker(response.id)
        assert controller.get_current_count() == 1
        await wait_for(_exited(recorder, response.id))

        # Assert: 通知
        ready = recorder.for_worker(FleetEventType.WORKER_READY, response.id)
        assert ready[0].data["session_id"] == f"session-{response.id}"
        result = recorder.for_worker(FleetEventType.WORKER_RESULT, response.id)
        assert result[0].data["result"] == "done"
        assert result[0].data["duration_ms"] == 12
        exit_event = recorder.for_worker(FleetEventType.WORKER_EXIT, response.id)[0]
        assert exit_event.data["exit_code"] == 0
        assert exit_event.data["status"] == "dismissed"
        assert recorder.for_worker(FleetEventType.WORKER_OUTPUT, response.id)

        # Assert: 出力バッファ
        assert worker.recent_output.tail() == [
            "working on it",
            "[tool] Read",
            "plain text line",
            "[result] done",
        ]

        # Assert: 状態と後始末
        assert worker.state == WorkerState.STOPPED
        assert worker.session_id == f"session-{response.id}"
        assert supervisor.get_worker(response.id) is None
        assert controller.get_current_count() == 0
        record = store.get(response.id)
        assert record.status == WorkerStatus.DISMISSED
        assert record.session_id == f"session-{response.id}"
        assert record.role == "scout"
        assert record.initial_prompt == "explore"

    async def test_crash_marks_error(self, agent_config, temp_vault, recorder, event_bus, wait_for):
        """0以外の終了コードはerrorとして永続化される"""
        # Arrange
        store = WorkerStore(temp_vault)
        supervisor = WorkerSupervisor(
            agent_config("crash"), worker_store=store, event_bus=event_bus
        )

        # Act
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="crashy"))
        worker = supervisor.get_worker(response.id)
        await wait_for(_exited(recorder, response.id))

        # Assert
        exit_event = recorder.for_worker(FleetEventType.WORKER_EXIT, response.id)[0]
        assert exit_event.data["exit_code"] == 3
        assert exit_event.data["status"] == "error"
        assert worker.state == WorkerState.ERROR
        assert store.get(response.id).status == WorkerStatus.ERROR

    async def test_stderr_filtering(self, agent_config, recorder, event_bus, wait_for):
        """既知の無害なstderrは捨て、それ以外はerror通知する"""
        # Arrange
        supervisor = WorkerSupervisor(agent_config("stderr"), event_bus=event_bus)

        # Act
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="noisy"))
        worker = supervisor.get_worker(response.id)
        await wait_for(_exited(recorder, response.id))

        # Assert
        errors = [e.data["error"] for e in recorder.for_worker(FleetEventType.WORKER_ERROR, response.id)]
        assert errors == ["real problem"]
        assert "[stderr] real problem" in worker.recent_output.tail()
        assert not any("deprecated" in line for line in worker.recent_output.tail())

    async def test_briefing_and_environment(self, agent_config, recorder, event_bus, wait_for):
        """ブリーフィングがstdinに、識別情報が環境変数に渡る"""

        # Arrange
        class Mail:
            def pending_digest(self, handle: str) -> str | None:
                return f"2 unread messages for {handle}"

        class Memory:
            def recall(self, handle: str, limit: int) -> list[str]:
                return ["prefers small commits"]

        supervisor = WorkerSupervisor(
            agent_config("briefing", server_url="http://fleet.test:9000", default_team="blue"),
            briefing_sources=BriefingSources(mail=Mail(), memory=Memory()),
            event_bus=event_bus,
        )

        # Act
        response = await supervisor.spawn_worker(
            SpawnWorkerRequest(handle="briefed", role=AgentRole.KRAKEN, initial_prompt="Fix bug #1")
        )
        worker = supervisor.get_worker(response.id)
        await wait_for(_exited(recorder, response.id))

        # Assert: ブリーフィング
        briefing, env_line, _ = worker.recent_output.tail()
        assert briefing.index("## Pending Communications") < briefing.index("Kraken")
        assert briefing.index("Kraken") < briefing.index("## Memory")
        assert briefing.index("## Memory") < briefing.index("## Task")
        assert "2 unread messages for briefed" in briefing
        assert briefing.endswith("## Task\nFix bug #1")

        # Assert: 環境変数
        env = json.loads(env_line.removeprefix("ENV "))
        assert env["CLAUDE_CODE_TEAM_NAME"] == "blue"
        assert env["CLAUDE_CODE_AGENT_TYPE"] == "kraken"
        assert env["CLAUDE_CODE_AGENT_NAME"] == "briefed"
        assert env["CLAUDE_FLEET_URL"] == "http://fleet.test:9000"
        assert env["CLAUDE_FLEET_WORKER_ID"] == response.id
        assert env["FORCE_COLOR"] == "0"
        assert "CLAUDE_FLEET_SESSION_ID" not in env


    async def test_init_without_session_is_not_ready(
        self, agent_config, temp_vault, event_bus, recorder, wait_for, cleanup
    ):
        """セッションIDのないinitではreadyにならない"""
        # Arrange
        store = WorkerStore(temp_vault)
        supervisor = WorkerSupervisor(
            agent_config("anonymous"), worker_store=store, event_bus=event_bus
        )
        cleanup(supervisor)

        # Act
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="nameless"))
        worker = supervisor.get_worker(response.id)
        await wait_for(
            lambda: any(
                e.data["event"]["kind"] == "system_init"
                for e in recorder.for_worker(FleetEventType.WORKER_OUTPUT, response.id)
            )
        )

        # Assert
        assert worker.state == WorkerState.STARTING
        assert worker.session_id is None
        assert recorder.for_worker(FleetEventType.WORKER_READY, response.id) == []
        assert store.get(response.id).status == WorkerStatus.PENDING


# =============================================================================
# ブリーフィング送信
# =============================================================================


class TestBriefingDelivery:
    """stdinを読まない子プロセスへのブリーフィング"""

    async def test_spawn_returns_before_child_reads_stdin(
        self, agent_config, event_bus, wait_for, caplog
    ):
        """パイプに収まらないブリーフィングでも起動は待たず、上限後にstdinを閉じる"""
        # Arrange
        supervisor = WorkerSupervisor(
            agent_config("deaf", briefing_timeout=0.5), event_bus=event_bus
        )

        # Act
        response = await asyncio.wait_for(
            supervisor.spawn_worker(
                SpawnWorkerRequest(handle="deaf", initial_prompt="x" * 1_000_000)
            ),
            5,
        )
        worker = supervisor.get_worker(response.id)
        await wait_for(lambda: worker.state == WorkerState.READY)
        await wait_for(lambda: worker.briefing_task.done())

        # Assert
        assert not worker.stdin_open()
        assert "ブリーフィングの書き込みがタイムアウト" in caplog.text
        assert await supervisor.send_to_worker(response.id, "hello") is False
        assert await supervisor.dismiss_worker(response.id) is True

    async def test_dismiss_cancels_pending_briefing(self, agent_config, event_bus, wait_for):
        """送信中のブリーフィングは停止時に打ち切られる"""
        # Arrange
        supervisor = WorkerSupervisor(agent_config("deaf"), event_bus=event_bus)
        response = await supervisor.spawn_worker(
            SpawnWorkerRequest(handle="deaf-stop", initial_prompt="x" * 1_000_000)
        )
        worker = supervisor.get_worker(response.id)
        await wait_for(lambda: worker.state == WorkerState.READY)
        assert not worker.briefing_task.done()

        # Act
        dismissed = await asyncio.wait_for(supervisor.dismiss_worker(response.id), 5)

        # Assert
        assert dismissed is True
        assert worker.exited.is_set()
        assert worker.briefing_task.done()


# =============================================================================
# 前提条件
# =============================================================================


class TestPreconditions:
    """起動前の確認"""

    async def test_capacity_exceeded(self, agent_config, event_bus, cleanup):
        """同時稼働上限を超えると拒否"""
        # Arrange
        supervisor = WorkerSupervisor(agent_config("linger", max_workers=1), event_bus=event_bus)
        cleanup(supervisor)
        await supervisor.spawn_worker(SpawnWorkerRequest(handle="first"))

        # Act & Assert
        with pytest.raises(CapacityExceededError):
            await supervisor.spawn_worker(SpawnWorkerRequest(handle="second"))
        assert supervisor.get_worker_count() == 1
        assert supervisor.get_available_capacity() == 0

    async def test_duplicate_live_handle(self, agent_config, event_bus, cleanup):
        """稼働中のハンドルと重複すると拒否"""
        # Arrange
        supervisor = WorkerSupervisor(agent_config("linger"), event_bus=event_bus)
        cleanup(supervisor)
        await supervisor.spawn_worker(SpawnWorkerRequest(handle="same"))

        # Act & Assert
        with pytest.raises(DuplicateHandleError):
            await supervisor.spawn_worker(SpawnWorkerRequest(handle="same"))
        assert supervisor.get_worker_count() == 1

    async def test_duplicate_persisted_handle(self, agent_config, temp_vault, event_bus):
        """非終端の永続レコードと重複すると拒否"""
        # Arrange
        store = WorkerStore(temp_vault)
        store.insert(WorkerRecord(id="old", handle="taken", status=WorkerStatus.READY))
        supervisor = WorkerSupervisor(agent_config(), worker_store=store, event_bus=event_bus)

        # Act & Assert
        with pytest.raises(DuplicateHandleError):
            await supervisor.spawn_worker(SpawnWorkerRequest(handle="taken"))
        assert supervisor.get_worker_count() == 0

    async def test_terminal_record_handle_is_reused(
        self, agent_config, temp_vault, event_bus, recorder, wait_for
    ):
        """終端状態のレコードのハンドルは再利用できる"""
        # Arrange
        store = WorkerStore(temp_vault)
        store.insert(WorkerRecord(id="old", handle="reuse", status=WorkerStatus.DISMISSED))
        supervisor = WorkerSupervisor(agent_config(), worker_store=store, event_bus=event_bus)

        # Act
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="reuse"))
        await wait_for(_exited(recorder, response.id))

        # Assert
        assert store.get("old") is None
        assert store.get_by_handle("reuse").id == response.id

    async def test_admission_denied(self, agent_config, temp_vault, event_bus):
        """Admission拒否は副作用なしで例外になる"""
        # Arrange
        store = WorkerStore(temp_vault)
        store.insert(WorkerRecord(id="old", handle="denied", status=WorkerStatus.DISMISSED))
        controller = SpawnController(AdmissionConfig(auto_process=False), event_bus=event_bus)
        supervisor = WorkerSupervisor(
            agent_config(), worker_store=store, spawn_controller=controller, event_bus=event_bus
        )

        # Act
        with pytest.raises(AdmissionDeniedError) as exc_info:
            await supervisor.spawn_worker(
                SpawnWorkerRequest(handle="denied", requester_role=AgentRole.WORKER)
            )

        # Assert
        assert exc_info.value.reason == "Role 'worker' cannot spawn agents"
        assert supervisor.get_worker_count() == 0
        assert controller.get_current_count() == 0
        assert store.get("old") is not None

    async def test_admission_uses_parent_depth(self, agent_config, event_bus):
        """depth_level - 1 を要求元の深さとして判定する"""
        # Arrange: lead の最大深さは1なので、深さ2のWorkerはleadから生成できない
        controller = SpawnController(AdmissionConfig(auto_process=False), event_bus=event_bus)
        supervisor = WorkerSupervisor(
            agent_config(), spawn_controller=controller, event_bus=event_bus
        )

        # Act & Assert
        with pytest.raises(AdmissionDeniedError):
            await supervisor.spawn_worker(SpawnWorkerRequest(handle="deep", depth_level=2))

    async def test_start_failure(self, agent_config, temp_vault, recorder, event_bus):
        """実行ファイルがなければWorkerStartErrorで、マップは変わらない"""
        # Arrange
        store = WorkerStore(temp_vault)
        supervisor = WorkerSupervisor(
            agent_config(agent_command=["/nonexistent/fleetforge-agent"]),
            worker_store=store,
            event_bus=event_bus,
        )

        # Act & Assert
        with pytest.raises(WorkerStartError):
            await supervisor.spawn_worker(SpawnWorkerRequest(handle="broken"))
        assert supervisor.get_worker_count() == 0
        assert store.get_all() == []
        assert recorder.of_type(FleetEventType.WORKER_ERROR)[0].data["handle"] == "broken"


# =============================================================================
# 停止
# =============================================================================


class TestDismiss:
    """停止のテスト"""

    async def test_dismiss_waits_for_exit(self, agent_config, temp_vault, event_bus, wait_for):
        """SIGTERMで停止し、終了を確認してから戻る"""
        # Arrange
        store = WorkerStore(temp_vault)
        controller = SpawnController(AdmissionConfig(auto_process=False), event_bus=event_bus)
        supervisor = WorkerSupervisor(
            agent_config("linger"),
            worker_store=store,
            spawn_controller=controller,
            event_bus=event_bus,
        )
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="lingering"))
        worker = supervisor.get_worker(response.id)
        await wait_for(lambda: worker.state == WorkerState.READY)

        # Act
        dismissed = await supervisor.dismiss_worker(response.id)

        # Assert
        assert dismissed is True
        assert worker.exited.is_set()
        assert worker.state == WorkerState.STOPPED
        assert supervisor.get_worker(response.id) is None
        assert controller.get_current_count() == 0
        assert store.get(response.id).status == WorkerStatus.DISMISSED

    async def test_dismiss_unknown_is_noop(self, agent_config, event_bus):
        """存在しないWorkerの停止は何もしない"""
        supervisor = WorkerSupervisor(agent_config(), event_bus=event_bus)
        assert await supervisor.dismiss_worker("missing") is False
        assert await supervisor.dismiss_worker_by_handle("missing") is False

    async def test_concurrent_dismiss(self, agent_config, event_bus, wait_for):
        """同時に停止しても同じ終了を待つ"""
        # Arrange
        supervisor = WorkerSupervisor(agent_config("linger"), event_bus=event_bus)
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="twice"))
        worker = supervisor.get_worker(response.id)
        await wait_for(lambda: worker.state == WorkerState.READY)

        # Act
        results = await asyncio.gather(
            supervisor.dismiss_worker(response.id),
            supervisor.dismiss_worker(response.id),
        )

        # Assert
        assert results == [True, True]
        assert worker.exited.is_set()
        assert await supervisor.dismiss_worker(response.id) is False

    async def test_force_kill(self, agent_config, recorder, event_bus, wait_for):
        """SIGTERMを無視するWorkerはforce_kill_timeout後にSIGKILL"""
        # Arrange
        supervisor = WorkerSupervisor(
            agent_config("ignore_term", force_kill_timeout=0.5), event_bus=event_bus
        )
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="stubborn"))
        worker = supervisor.get_worker(response.id)
        await wait_for(lambda: worker.state == WorkerState.READY)

        # Act
        started = time.monotonic()
        await supervisor.dismiss_worker(response.id)
        elapsed = time.monotonic() - started
        await wait_for(_exited(recorder, response.id))

        # Assert
        assert elapsed >= 0.4
        exit_event = recorder.for_worker(FleetEventType.WORKER_EXIT, response.id)[0]
        assert exit_event.data["status"] == "dismissed"
        assert worker.exit_code != 0

    async def test_dismiss_all(self, agent_config, event_bus):
        """全Workerを停止する"""
        # Arrange
        supervisor = WorkerSupervisor(agent_config("linger"), event_bus=event_bus)
        await supervisor.spawn_worker(SpawnWorkerRequest(handle="a"))
        await supervisor.spawn_worker(SpawnWorkerRequest(handle="b"))

        # Act
        count = await supervisor.dismiss_all()

        # Assert
        assert count == 2
        assert supervisor.get_worker_count() == 0


# =============================================================================
# メッセージ送信
# =============================================================================


class TestMessaging:
    """stdinへの送信"""

    async def test_deliver_task(self, agent_config, event_bus, wait_for, cleanup):
        """タスクを送るとWorkerが処理する"""
        # Arrange
        supervisor = WorkerSupervisor(
            agent_config("echo", inject_briefing=False, close_stdin_after_briefing=False),
            event_bus=event_bus,
        )
        cleanup(supervisor)
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="echoer"))
        worker = supervisor.get_worker(response.id)
        await wait_for(lambda: worker.state == WorkerState.READY)

        # Act
        delivered = await supervisor.deliver_task(response.id, "t-1", "Add tests", "Cover the parser")

        # Assert
        assert delivered is True
        assert worker.current_task_id == "t-1"
        assert "[user] ## Task t-1: Add tests\n\nCover the parser" in worker.recent_output.tail()
        await wait_for(lambda: "echo: Cover the parser" in worker.recent_output.tail())
        await wait_for(lambda: worker.state == WorkerState.READY)

    async def test_send_by_handle(self, agent_config, event_bus, wait_for, cleanup):
        """ハンドル指定で送信できる"""
        supervisor = WorkerSupervisor(
            agent_config("echo", inject_briefing=False, close_stdin_after_briefing=False),
            event_bus=event_bus,
        )
        cleanup(supervisor)
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="echo2"))
        worker = supervisor.get_worker(response.id)

        assert await supervisor.send_to_worker_by_handle("echo2", "hello") is True
        await wait_for(lambda: "echo: hello" in worker.recent_output.tail())
        assert await supervisor.send_to_worker_by_handle("nobody", "hello") is False

    async def test_send_after_stdin_closed(self, agent_config, event_bus, cleanup):
        """stdinを閉じたWorkerには送れない"""
        supervisor = WorkerSupervisor(agent_config("linger"), event_bus=event_bus)
        cleanup(supervisor)
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="closed"))

        assert await supervisor.send_to_worker(response.id, "hello") is False


# =============================================================================
# ヘルスチェックと再起動
# =============================================================================


class TestHealthAndRestart:
    """ヘルス判定と自動再起動"""

    async def test_health_transitions(
        self, agent_config, event_bus, recorder, fake_clock, wait_for, cleanup
    ):
        """経過時間でdegraded → unhealthy、通知は遷移時のみ"""
        # Arrange
        supervisor = WorkerSupervisor(
            agent_config("silent"), event_bus=event_bus, clock=fake_clock
        )
        cleanup(supervisor)
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="quiet"))
        worker = supervisor.get_worker(response.id)
        await wait_for(lambda: worker.state == WorkerState.READY)

        # Act & Assert
        fake_clock.advance(31)
        supervisor.check_worker_health()
        assert worker.health == WorkerHealth.DEGRADED

        fake_clock.advance(30)
        supervisor.check_worker_health()
        supervisor.check_worker_health()
        assert worker.health == WorkerHealth.UNHEALTHY
        unhealthy = recorder.for_worker(FleetEventType.WORKER_UNHEALTHY, response.id)
        assert len(unhealthy) == 1
        assert "No activity" in unhealthy[0].data["reason"]
        assert supervisor.get_health_stats() == {
            "total": 1,
            "healthy": 0,
            "degraded": 0,
            "unhealthy": 1,
        }
        assert supervisor.get_restart_stats() == {"total": 0, "last_hour": 0}

    async def test_activity_restores_health(self, agent_config, event_bus, fake_clock, wait_for, cleanup):
        """イベントを受信するとhealthyに戻る"""
        # Arrange
        supervisor = WorkerSupervisor(
            agent_config("echo", inject_briefing=False, close_stdin_after_briefing=False),
            event_bus=event_bus,
            clock=fake_clock,
        )
        cleanup(supervisor)
        response = await supervisor.spawn_worker(SpawnWorkerRequest(handle="revive"))
        worker = supervisor.get_worker(response.id)
        await wait_for(lambda: worker.state == WorkerState.READY)
        fake_clock.advance(45)
        supervisor.check_worker_health()
        assert worker.health == WorkerHealth.DEGRADED

        # Act
        await supervisor.send_to_worker(response.id, "ping")
        await wait_for(lambda: "echo: ping" in worker.recent_output.tail())

        # Assert
        assert worker.health == WorkerHealth.HEALTHY
        assert worker.last_heartbeat == fake_clock.now

    async def test_auto_restart_is_bounded(
        self, agent_config, temp_vault, event_bus, recorder, fake_clock, wait_for, cleanup
    ):
        """unhealthyで再起動し、上限に達したら再起動しない"""
        # Arrange
        store = WorkerStore(temp_vault)
        supervisor = WorkerSupervisor(
            agent_config("silent", auto_restart=True, max_restart_attempts=1),
            worker_store=store,
            event_bus=event_bus,
            clock=fake_clock,
        )
        cleanup(supervisor)
        first = await supervisor.spawn_worker(SpawnWorkerRequest(handle="flaky"))
        old = supervisor.get_worker(first.id)
        await wait_for(lambda: old.state == WorkerState.READY)
        old_session = old.session_id

        # Act: 1回目は再起動される
        fake_clock.advance(61)
        supervisor.check_worker_health()
        await supervisor.wait_background()

        # Assert
        restarted = supervisor.get_worker_by_handle("flaky")
        assert restarted is not None
        assert restarted.id != first.id
        assert restarted.restart_count == 1
        assert restarted.session_id == old_session
        restart_events = recorder.of_type(FleetEventType.WORKER_RESTART)
        assert restart_events[0].data["old_worker_id"] == first.id
        assert restart_events[0].data["worker_id"] == restarted.id
        assert supervisor.get_restart_stats() == {"total": 1, "last_hour": 1}
        assert store.get(first.id) is None
        assert store.get(restarted.id).restart_count == 1

        # Act: 2回目は上限のため再起動されない
        await wait_for(lambda: restarted.state == WorkerState.READY)
        fake_clock.advance(61)
        supervisor.check_worker_health()
        await supervisor.wait_background()

        # Assert
        assert supervisor.get_worker_by_handle("flaky") is restarted
        assert len(recorder.of_type(FleetEventType.WORKER_RESTART)) == 1
        assert await supervisor.restart_worker(restarted.id) is None

    async def test_restart_unknown_worker(self, agent_config, event_bus):
        """存在しないWorkerの再起動はNone"""
        supervisor = WorkerSupervisor(agent_config(), event_bus=event_bus)
        assert await supervisor.restart_worker("missing") is None

    async def test_health_loop_start_stop(self, agent_config, event_bus):
        """ヘルスチェックループの開始・停止は多重に呼べる"""
        supervisor = WorkerSupervisor(agent_config(health_check_interval=0.05), event_bus=event_bus)

        supervisor.start_health_check()
        task = supervisor._health_task
        supervisor.start_health_check()
        assert supervisor._health_task is task
        await asyncio.sleep(0.12)

        supervisor.stop_health_check()
        supervisor.stop_health_check()
        assert supervisor._health_task is None


# =============================================================================
# クラッシュ復旧
# =============================================================================


class TestCrashRecovery:
    """initialize による復旧"""

    async def test_initialize_restores_sessions(
        self, agent_config, temp_vault, tmp_path, event_bus, recorder, wait_for, cleanup
    ):
        """セッションのあるレコードは同じIDで再開し、ないものはerrorにする"""
        # Arrange
        store = WorkerStore(temp_vault)
        store.insert(
            WorkerRecord(
                id="restorable",
                handle="phoenix",
                status=WorkerStatus.WORKING,
                session_id="session-keep",
                role="oracle",
                working_dir=str(tmp_path),
                restart_count=1,
            )
        )
        store.insert(WorkerRecord(id="no-session", handle="lost", status=WorkerStatus.READY))
        store.insert(
            WorkerRecord(id="alive", handle="survivor", status=WorkerStatus.READY, pid=os.getpid())
        )
        store.insert(WorkerRecord(id="done", handle="finished", status=WorkerStatus.DISMISSED))
        supervisor = WorkerSupervisor(agent_config("linger"), worker_store=store, event_bus=event_bus)
        cleanup(supervisor)

        # Act
        stats = await supervisor.initialize()

        # Assert
        assert stats == {"alive": 1, "restored": 1, "failed": 1}
        worker = supervisor.get_worker("restorable")
        assert worker is not None
        assert worker.role == AgentRole.ORACLE
        assert worker.restart_count == 1
        await wait_for(lambda: worker.state == WorkerState.READY)
        assert worker.session_id == "session-keep"
        assert store.get("restorable").pid == worker.pid
        assert store.get("no-session").status == WorkerStatus.ERROR
        assert store.get("alive").status == WorkerStatus.READY
        assert supervisor.get_worker("alive") is None
        assert supervisor.get_worker("done") is None

    async def test_initialize_runs_once(self, agent_config, temp_vault, event_bus):
        """2回目のinitializeは何もしない"""
        store = WorkerStore(temp_vault)
        store.insert(WorkerRecord(id="x", handle="x", status=WorkerStatus.READY))
        supervisor = WorkerSupervisor(agent_config(), worker_store=store, event_bus=event_bus)

        first = await supervisor.initialize()
        second = await supervisor.initialize()

        assert first["failed"] == 1
        assert second == {"alive": 0, "restored": 0, "failed": 0}

    async def test_restore_failure_marks_error(self, agent_config, temp_vault, event_bus):
        """復旧に失敗したレコードはerrorになる"""
        # Arrange
        store = WorkerStore(temp_vault)
        store.insert(
            WorkerRecord(id="r1", handle="doomed", status=WorkerStatus.READY, session_id="s")
        )
        supervisor = WorkerSupervisor(
            agent_config(agent_command=["/nonexistent/fleetforge-agent"]),
            worker_store=store,
            event_bus=event_bus,
        )

        # Act
        stats = await supervisor.initialize()

        # Assert
        assert stats["failed"] == 1
        assert store.get("r1").status == WorkerStatus.ERROR

    async def test_continuation_prompt_is_sent(
        self, agent_config, temp_vault, tmp_path, event_bus, recorder, wait_for
    ):
        """復旧時は継続プロンプトとセッション再開フラグを渡す"""
        # Arrange
        store = WorkerStore(temp_vault)
        store.insert(
            WorkerRecord(
                id="resume-me",
                handle="resumer",
                status=WorkerStatus.READY,
                session_id="session-old",
                working_dir=str(tmp_path),
            )
        )
        supervisor = WorkerSupervisor(agent_config("briefing"), worker_store=store, event_bus=event_bus)

        # Act
        await supervisor.initialize()
        worker = supervisor.get_worker("resume-me")
        await wait_for(_exited(recorder, "resume-me"))

        # Assert
        briefing, env_line, _ = worker.recent_output.tail()
        assert briefing.endswith(CONTINUATION_PROMPT)
        assert json.loads(env_line.removeprefix("ENV "))["CLAUDE_FLEET_SESSION_ID"] == "session-old"
        assert worker.session_id == "session-old"
