"""Worker起動パラメータの組み立て

コマンドライン引数・環境変数・stdinに渡すブリーフィングを作る。
外部の協調者（隔離チェックアウト・メール・記憶）はポートとして受け取る。
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ..roles import AgentRole, get_briefing_for_role

logger = logging.getLogger(__name__)

# 復旧時に渡す継続プロンプト
CONTINUATION_PROMPT = "Continue from where you left off. The server was restarted."

# ブリーフィングに含める記憶の件数
MEMORY_RECALL_LIMIT = 5


# =============================================================================
# ポート
# =============================================================================


@dataclass(frozen=True)
class Workspace:
    """隔離チェックアウト"""

    path: str
    branch: str | None = None


@runtime_checkable
class WorkspaceProvider(Protocol):
    """Workerごとの作業ディレクトリを用意する"""

    def create(self, worker_id: str) -> Workspace: ...

    def remove(self, worker_id: str) -> None: ...


@runtime_checkable
class MailDigestSource(Protocol):
    """Worker宛ての未読メッセージの要約"""

    def pending_digest(self, handle: str) -> str | None: ...


@runtime_checkable
class MemorySource(Protocol):
    """Workerの過去の記憶"""

    def recall(self, handle: str, limit: int) -> list[str]: ...


@dataclass
class BriefingSources:
    """ブリーフィングの情報源（どれも省略可）"""

    mail: MailDigestSource | None = None
    memory: MemorySource | None = None


# =============================================================================
# 組み立て
# =============================================================================


def build_command(agent_command: list[str], session_id: str | None = None) -> list[str]:
    """起動コマンドを作る（再開時は --resume を付ける）"""
    argv = list(agent_command)
    if session_id:
        argv.extend(["--resume", session_id])
    return argv


def build_environment(
    *,
    worker_id: str,
    handle: str,
    team_name: str,
    role: AgentRole | str,
    server_url: str,
    session_id: str | None = None,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """子プロセスの環境変数を作る"""
    env = dict(os.environ if base is None else base)
    env.update(
        {
            "CLAUDE_CODE_TEAM_NAME": team_name,
            "CLAUDE_CODE_AGENT_TYPE": str(role),
            "CLAUDE_CODE_AGENT_NAME": handle,
            "CLAUDE_FLEET_URL": server_url,
            "CLAUDE_FLEET_WORKER_ID": worker_id,
            "FORCE_COLOR": "0",
        }
    )
    if session_id:
        env["CLAUDE_FLEET_SESSION_ID"] = session_id
    else:
        env.pop("CLAUDE_FLEET_SESSION_ID", None)
    return env


def build_briefing(
    *,
    handle: str,
    role: AgentRole | str,
    task: str | None,
    sources: BriefingSources | None = None,
) -> str:
    """stdinに渡すブリーフィングを作る

    並び順: 未読メッセージ → ロールのブリーフィング → 記憶 → タスク。
    情報源の失敗はブリーフィングを欠落させるだけで、起動は止めない。
    """
    sections: list[str] = []
    sources = sources or BriefingSources()

    if sources.mail is not None:
        try:
            digest = sources.mail.pending_digest(handle)
        except Exception:
            logger.exception(f"未読メッセージの取得に失敗: {handle}")
            digest = None
        if digest:
            sections.append(f"## Pending Communications\n{digest}")

    sections.append(get_briefing_for_role(role))

    if sources.memory is not None:
        try:
            memories = sources.memory.recall(handle, MEMORY_RECALL_LIMIT)
        except Exception:
            logger.exception(f"記憶の取得に失敗: {handle}")
            memories = []
        if memories:
            sections.append("## Memory\n" + "\n".join(f"- {m}" for m in memories))

    if task:
        sections.append(f"## Task\n{task}")

    return "\n\n".join(sections)
