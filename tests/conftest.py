"""FleetForge テスト設定"""

import asyncio
import shutil
import sys
import tempfile
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from fleetforge.core.config import SupervisorConfig
from fleetforge.core.event_bus import FleetEvent, FleetEventBus, FleetEventType

# 子プロセスを使うテストの待ち時間上限（秒）
WAIT_TIMEOUT = 10.0

FAKE_AGENT_SOURCE = textwrap.dedent(
    '''
    """NDJSON を話す偽エージェント

    使い方: fake_agent.py <mode> [--resume <session>]
    """
    import json
    import os
    import signal
    import sys
    import time


    def emit(obj):
        sys.stdout.write(json.dumps(obj) + "\\n")
        sys.stdout.flush()


    def assistant(text, tools=()):
        content = [{"type": "text", "text": text}]
        content += [{"type": "tool_use", "name": name} for name in tools]
        emit({"type": "assistant", "message": {"content": content}})


    def main():
        args = sys.argv[1:]
        mode = args[0] if args else "quick"
        session = "session-" + os.environ.get("CLAUDE_FLEET_WORKER_ID", "unknown")
        if "--resume" in args:
            session = args[args.index("--resume") + 1]

        if mode == "ignore_term":
            signal.signal(signal.SIGTERM, signal.SIG_IGN)

        if mode == "echo":
            emit({"type": "system", "subtype": "init", "session_id": session})
            for line in sys.stdin:
                line = line.strip()
                if line:
                    assistant("echo: " + line)
                    emit({"type": "result", "result": "echoed"})
            return 0

        if mode == "deaf":
            # stdinを読まない
            emit({"type": "system", "subtype": "init", "session_id": session})
            time.sleep(60)
            return 0

        briefing = sys.stdin.read()

        if mode == "anonymous":
            emit({"type": "system", "subtype": "init"})
            time.sleep(60)
            return 0

        emit({"type": "system", "subtype": "init", "session_id": session})

        if mode == "briefing":
            assistant(briefing.strip())
            env = {k: v for k, v in os.environ.items() if k.startswith(("CLAUDE_", "FORCE_"))}
            assistant("ENV " + json.dumps(env, sort_keys=True))
            emit({"type": "result", "result": "done", "duration_ms": 5})
            return 0

        if mode == "silent":
            time.sleep(60)
            return 0

        if mode == "stderr":
            sys.stderr.write("DeprecationWarning: this API is deprecated\\n")
            sys.stderr.write("real problem\\n")
            sys.stderr.flush()

        assistant("working on it", tools=["Read"])
        print("plain text line", flush=True)
        emit({"type": "result", "result": "done", "duration_ms": 12})

        if mode == "crash":
            return 3
        if mode in ("linger", "ignore_term"):
            time.sleep(60)
        return 0


    sys.exit(main())
    '''
)


class FakeClock:
    """手動で進める単調時計"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EventRecorder:
    """イベントバスの発行を記録する"""

    def __init__(self, bus: FleetEventBus):
        self.events: list[FleetEvent] = []
        bus.subscribe(self.events.append)

    def of_type(self, event_type: FleetEventType) -> list[FleetEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def for_worker(self, event_type: FleetEventType, worker_id: str) -> list[FleetEvent]:
        return [e for e in self.of_type(event_type) if e.data.get("worker_id") == worker_id]


async def wait_until(predicate: Callable[[], bool], timeout: float = WAIT_TIMEOUT) -> None:
    """条件が成立するまで待つ"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


@pytest.fixture
def temp_vault():
    """テスト用の一時Vaultディレクトリ"""
    vault_path = Path(tempfile.mkdtemp())
    yield vault_path
    shutil.rmtree(vault_path, ignore_errors=True)


@pytest.fixture
def event_bus():
    """テストごとに独立したイベントバス"""
    return FleetEventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_agent(tmp_path) -> Path:
    """偽エージェントのスクリプト"""
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT_SOURCE, encoding="utf-8")
    return script


@pytest.fixture
def agent_config(fake_agent, tmp_path) -> Callable[..., SupervisorConfig]:
    """偽エージェントを起動する SupervisorConfig を作る"""

    def factory(mode: str = "quick", **overrides) -> SupervisorConfig:
        values = {
            "agent_command": [sys.executable, str(fake_agent), mode],
            "default_working_dir": str(tmp_path),
            "force_kill_timeout": 2.0,
            "auto_restart": False,
        }
        values.update(overrides)
        return SupervisorConfig(**values)

    return factory


@pytest.fixture(autouse=True)
def reset_event_bus_singleton():
    """シングルトンのイベントバスをテストごとにリセット"""
    FleetEventBus.reset()
    yield
    FleetEventBus.reset()


@pytest.fixture
def wait_for():
    """条件待ちヘルパー"""
    return wait_until
