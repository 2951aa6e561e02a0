"""エージェントロール定義

Worker の役割ごとに、起動時ブリーフィング・階層の最大深さ・
他エージェントをSpawnできるかどうかを定義する。
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class AgentRole(StrEnum):
    """エージェントの役割"""

    LEAD = "lead"
    WORKER = "worker"
    SCOUT = "scout"
    KRAKEN = "kraken"
    ORACLE = "oracle"
    CRITIC = "critic"
    ARCHITECT = "architect"


class RoleConfig(BaseModel):
    """ロール設定"""

    model_config = ConfigDict(frozen=True)

    name: AgentRole = Field(..., description="ロール名")
    description: str = Field(..., description="ロールの説明")
    briefing: str = Field(..., description="起動時にstdinへ渡すブリーフィング")
    allowed_tools: tuple[str, ...] = Field(default=())
    max_depth: int = Field(default=2, ge=0, description="このロールが存在できる最大深さ")
    can_spawn: bool = Field(default=False, description="他エージェントをSpawnできるか")
    default_priority: str = Field(default="normal")


LEAD_ROLE = RoleConfig(
    name=AgentRole.LEAD,
    description="Team lead that orchestrates workers and assigns tasks",
    briefing=(
        "You are a **Team Lead** agent responsible for coordinating a fleet of worker agents.\n\n"
        "## Responsibilities\n"
        "1. Break complex tasks into smaller, assignable work items\n"
        "2. Spawn and assign workers to specific tasks\n"
        "3. Track worker status and handle blockers\n"
        "4. Review completed work before marking tasks done\n\n"
        "## Spawn Guidelines\n"
        "- Spawn 'scout' agents for exploration, 'kraken' for TDD implementation,\n"
        "  'oracle' for research, 'critic' for review, 'worker' for simple tasks\n"
        "- Wait for scouts to report before spawning implementers\n"
        "- Dismiss idle workers to conserve resources"
    ),
    allowed_tools=("Read", "Write", "Edit", "Bash", "Grep", "Glob", "Task", "WebFetch"),
    max_depth=1,
    can_spawn=True,
    default_priority="high",
)

WORKER_ROLE = RoleConfig(
    name=AgentRole.WORKER,
    description="General-purpose implementation agent",
    briefing=(
        "You are a **Worker** agent assigned to complete specific tasks.\n\n"
        "## Responsibilities\n"
        "1. Complete your assigned work item thoroughly\n"
        "2. Post regular status updates and report blockers immediately\n"
        "3. Make atomic commits with clear messages\n"
        "4. Verify your changes work before marking complete"
    ),
    allowed_tools=("Read", "Write", "Edit", "Bash", "Grep", "Glob"),
    max_depth=2,
)

SCOUT_ROLE = RoleConfig(
    name=AgentRole.SCOUT,
    description="Exploration and discovery agent for codebase analysis",
    briefing=(
        "You are a **Scout** agent specialized in exploration and discovery.\n\n"
        "Map the project structure, identify patterns and dependencies, assess risks,\n"
        "and report an overview, key files, patterns, risks and recommendations.\n"
        "Do not modify files."
    ),
    allowed_tools=("Read", "Grep", "Glob"),
    max_depth=3,
)

KRAKEN_ROLE = RoleConfig(
    name=AgentRole.KRAKEN,
    description="TDD implementation agent with strict test-first workflow",
    briefing=(
        "You are a **Kraken** agent specialized in Test-Driven Development.\n\n"
        "Follow RED → GREEN → REFACTOR strictly: write failing tests first, implement\n"
        "the minimum to pass, then improve while keeping tests green.\n"
        "Checkpoint after each phase."
    ),
    allowed_tools=("Read", "Write", "Edit", "Bash", "Grep", "Glob"),
    max_depth=2,
)

ORACLE_ROLE = RoleConfig(
    name=AgentRole.ORACLE,
    description="Research and information gathering agent",
    briefing=(
        "You are an **Oracle** agent specialized in research and investigation.\n\n"
        "Answer the question asked, compare options with pros and cons,\n"
        "and give a recommendation with sources."
    ),
    allowed_tools=("Read", "Grep", "Glob", "WebFetch", "WebSearch"),
    max_depth=3,
)

CRITIC_ROLE = RoleConfig(
    name=AgentRole.CRITIC,
    description="Code review and quality analysis agent",
    briefing=(
        "You are a **Critic** agent specialized in code review and quality analysis.\n\n"
        "Review for correctness, security, performance and maintainability.\n"
        "Report findings by severity with concrete suggestions."
    ),
    allowed_tools=("Read", "Grep", "Glob"),
    max_depth=3,
)

ARCHITECT_ROLE = RoleConfig(
    name=AgentRole.ARCHITECT,
    description="System design and architecture planning agent",
    briefing=(
        "You are an **Architect** agent specialized in system design and planning.\n\n"
        "Describe components, interfaces and data flow, record design decisions\n"
        "with rationale and alternatives, and outline an implementation plan."
    ),
    allowed_tools=("Read", "Grep", "Glob"),
    max_depth=2,
    default_priority="high",
)

# ロール辞書
ROLE_CONFIGS: dict[AgentRole, RoleConfig] = {
    AgentRole.LEAD: LEAD_ROLE,
    AgentRole.WORKER: WORKER_ROLE,
    AgentRole.SCOUT: SCOUT_ROLE,
    AgentRole.KRAKEN: KRAKEN_ROLE,
    AgentRole.ORACLE: ORACLE_ROLE,
    AgentRole.CRITIC: CRITIC_ROLE,
    AgentRole.ARCHITECT: ARCHITECT_ROLE,
}

# 未知ロールの既定深さ
DEFAULT_MAX_DEPTH = 2


def get_role_config(role: AgentRole | str) -> RoleConfig:
    """ロール設定を取得（未知ロールはworker扱い）"""
    try:
        return ROLE_CONFIGS[AgentRole(role)]
    except ValueError:
        return WORKER_ROLE


def get_briefing_for_role(role: AgentRole | str) -> str:
    """ロールのブリーフィングを取得"""
    return get_role_config(role).briefing


def can_role_spawn(role: AgentRole | str) -> bool:
    """ロールが他エージェントをSpawnできるか"""
    try:
        return ROLE_CONFIGS[AgentRole(role)].can_spawn
    except ValueError:
        return False


def get_max_depth_for_role(role: AgentRole | str) -> int:
    """ロールの最大深さを取得"""
    try:
        return ROLE_CONFIGS[AgentRole(role)].max_depth
    except ValueError:
        return DEFAULT_MAX_DEPTH


def get_available_roles() -> list[AgentRole]:
    """利用可能なロール一覧"""
    return list(ROLE_CONFIGS.keys())


def get_role_summary() -> str:
    """全ロールの概要（ヘルプ表示用）"""
    return "\n".join(f"- **{r.name}**: {r.description}" for r in ROLE_CONFIGS.values())
