"""FleetForge Core モジュール

- Config: 設定管理
- Errors: 例外定義
- EventBus: ライフサイクルイベントの配信
"""

from .config import (
    AdmissionConfig,
    FleetForgeSettings,
    SupervisorConfig,
    get_settings,
    reload_settings,
)
from .errors import (
    AdmissionDeniedError,
    CapacityExceededError,
    DuplicateHandleError,
    FleetForgeError,
    SpawnRejectedError,
    StorageError,
    StorageInitError,
    WorkerStartError,
)
from .event_bus import FleetEvent, FleetEventBus, FleetEventType

__all__ = [
    # Config
    "get_settings",
    "reload_settings",
    "FleetForgeSettings",
    "SupervisorConfig",
    "AdmissionConfig",
    # Errors
    "FleetForgeError",
    "SpawnRejectedError",
    "CapacityExceededError",
    "DuplicateHandleError",
    "AdmissionDeniedError",
    "WorkerStartError",
    "StorageError",
    "StorageInitError",
    # EventBus
    "FleetEvent",
    "FleetEventBus",
    "FleetEventType",
]
