"""FleetForge Worker Supervisor モジュール

エージェントセッションを実行する子プロセスのライフサイクル管理:
- WorkerSupervisor: 起動・停止・ヘルスチェック・再起動・クラッシュ復旧
- protocol: 子プロセスの NDJSON イベントのパース
- briefing: 起動コマンド・環境変数・ブリーフィングの組み立て
"""

from .briefing import (
    BriefingSources,
    MailDigestSource,
    MemorySource,
    Workspace,
    WorkspaceProvider,
)
from .health import HealthThresholds, classify_health
from .manager import WorkerSupervisor, is_process_alive
from .models import (
    OutputBuffer,
    SpawnWorkerRequest,
    SpawnWorkerResponse,
    Worker,
    WorkerHealth,
    WorkerState,
)
from .protocol import AgentEvent, EventKind, LineFramer, parse_event

__all__ = [
    "WorkerSupervisor",
    "is_process_alive",
    # Models
    "Worker",
    "WorkerState",
    "WorkerHealth",
    "OutputBuffer",
    "SpawnWorkerRequest",
    "SpawnWorkerResponse",
    # Health
    "HealthThresholds",
    "classify_health",
    # Protocol
    "AgentEvent",
    "EventKind",
    "LineFramer",
    "parse_event",
    # Ports
    "BriefingSources",
    "MailDigestSource",
    "MemorySource",
    "Workspace",
    "WorkspaceProvider",
]
