"""Worker Supervisor のデータモデル"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from ..roles import AgentRole
from ..storage.models import utc_now


class WorkerState(StrEnum):
    """Workerプロセスの状態"""

    STARTING = "starting"  # 起動中（init待ち）
    READY = "ready"  # 入力待ち
    WORKING = "working"  # 作業中
    STOPPING = "stopping"  # 停止中
    STOPPED = "stopped"  # 停止
    ERROR = "error"  # 異常


class WorkerHealth(StrEnum):
    """Workerのヘルス（状態とは独立）"""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# 終端状態（ヘルスチェック対象外）
TERMINAL_WORKER_STATES = frozenset({WorkerState.STOPPED, WorkerState.ERROR})


class OutputBuffer:
    """固定容量のリングバッファ（古い行から捨てる）"""

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._lines: deque[str] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._lines.maxlen or 0

    def append(self, line: str) -> None:
        self._lines.append(line)

    def extend(self, lines: list[str]) -> None:
        self._lines.extend(lines)

    def tail(self, limit: int | None = None) -> list[str]:
        """末尾 limit 行（None なら全行）"""
        lines = list(self._lines)
        if limit is None:
            return lines
        return lines[-limit:] if limit > 0 else []

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._lines))


@dataclass
class Worker:
    """稼働中のWorker

    Supervisorのライブマップが唯一の所有者。
    """

    id: str
    handle: str
    team_name: str
    role: AgentRole
    working_dir: str
    process: asyncio.subprocess.Process | None = None
    pid: int | None = None
    session_id: str | None = None
    state: WorkerState = WorkerState.STARTING
    health: WorkerHealth = WorkerHealth.HEALTHY
    last_heartbeat: float = 0.0
    last_persisted_heartbeat: float = 0.0
    restart_count: int = 0
    recent_output: OutputBuffer = field(default_factory=OutputBuffer)
    swarm_id: str | None = None
    depth_level: int = 1
    spawned_at: datetime = field(default_factory=utc_now)
    current_task_id: str | None = None
    worktree_path: str | None = None
    worktree_branch: str | None = None
    exit_code: int | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    reader_task: asyncio.Task | None = field(default=None, repr=False)
    briefing_task: asyncio.Task | None = field(default=None, repr=False)

    def is_terminal(self) -> bool:
        """停止済みか"""
        return self.state in TERMINAL_WORKER_STATES

    def stdin_open(self) -> bool:
        """stdinへ書き込めるか"""
        if self.process is None or self.process.stdin is None:
            return False
        return not self.process.stdin.is_closing()

    def to_dict(self) -> dict[str, Any]:
        """API/通知用の辞書"""
        return {
            "id": self.id,
            "handle": self.handle,
            "team_name": self.team_name,
            "role": str(self.role),
            "pid": self.pid,
            "session_id": self.session_id,
            "state": str(self.state),
            "health": str(self.health),
            "restart_count": self.restart_count,
            "swarm_id": self.swarm_id,
            "depth_level": self.depth_level,
            "working_dir": self.working_dir,
            "worktree_path": self.worktree_path,
            "spawned_at": self.spawned_at.isoformat(),
            "current_task_id": self.current_task_id,
        }


class SpawnWorkerRequest(BaseModel):
    """Worker起動要求"""

    handle: str = Field(..., min_length=1, max_length=100)
    team_name: str | None = Field(default=None, description="省略時は設定の default_team")
    role: AgentRole = Field(default=AgentRole.WORKER)
    working_dir: str | None = None
    initial_prompt: str | None = None
    session_id: str | None = Field(default=None, description="再開するセッション")
    swarm_id: str | None = None
    depth_level: int = Field(default=1, ge=1)
    requester_role: AgentRole = Field(
        default=AgentRole.LEAD, description="Admission判定に使う要求元ロール"
    )
    skip_admission: bool = Field(default=False, description="判定済みの場合に再判定しない")
    restart_count: int = Field(default=0, ge=0)
    worker_id: str | None = Field(default=None, description="復旧時に同じIDを使う")


class SpawnWorkerResponse(BaseModel):
    """Worker起動結果"""

    id: str
    handle: str
    pid: int | None = None
    state: WorkerState
    role: AgentRole
    restart_count: int = 0
