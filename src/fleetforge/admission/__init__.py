"""FleetForge Admission モジュール

Worker 生成の流量制御:
- SpawnController: 深さ・同時稼働数の判定と Spawn Queue の処理
"""

from .controller import AgentCounter, DenialCode, SpawnController, SpawnDecision

__all__ = [
    "AgentCounter",
    "DenialCode",
    "SpawnController",
    "SpawnDecision",
]
