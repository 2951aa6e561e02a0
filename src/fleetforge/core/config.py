"""FleetForge 設定管理モジュール

Pydantic Settingsを使用した型安全な設定管理。
fleetforge.config.yaml と環境変数から設定を読み込む。
"""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AGENT_COMMAND = [
    "claude",
    "--print",
    "--verbose",
    "--output-format",
    "stream-json",
    "--dangerously-skip-permissions",
]


class StorageConfig(BaseModel):
    """永続化設定"""

    vault_path: str = Field(default="./Vault", description="Worker/SpawnQueueの保存先")


class SupervisorConfig(BaseModel):
    """Worker Supervisor設定"""

    max_workers: int = Field(default=5, ge=1, le=1000, description="同時稼働Worker上限")
    default_team: str = Field(default="default")
    server_url: str = Field(
        default="http://localhost:3847", description="Workerに渡すコールバックURL"
    )
    auto_restart: bool = Field(default=True)
    health_check_interval: float = Field(default=15.0, gt=0, description="ヘルスチェック間隔秒")
    healthy_threshold: float = Field(default=30.0, gt=0, description="これを超えるとdegraded")
    unhealthy_threshold: float = Field(default=60.0, gt=0, description="これを超えるとunhealthy")
    max_restart_attempts: int = Field(default=3, ge=0, le=20)
    force_kill_timeout: float = Field(default=5.0, gt=0, description="SIGTERM後SIGKILLまでの秒数")
    startup_timeout: float = Field(default=30.0, gt=0, description="復旧時の1Workerあたり上限秒")
    heartbeat_persist_interval: float = Field(default=10.0, ge=0)
    max_output_lines: int = Field(default=100, ge=1, le=10000)
    agent_command: list[str] = Field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))
    benign_stderr_patterns: list[str] = Field(
        default_factory=lambda: ["deprecated", "ExperimentalWarning"],
        description="無視するstderr出力のパターン（部分一致）",
    )
    inject_briefing: bool = Field(default=True, description="起動時にstdinへブリーフィングを送る")
    close_stdin_after_briefing: bool = Field(default=True)
    briefing_timeout: float = Field(
        default=30.0, gt=0, description="ブリーフィング書き込みの上限秒（超えたらstdinを閉じる）"
    )
    use_workspaces: bool = Field(default=False, description="隔離チェックアウトを使用するか")
    default_working_dir: str | None = Field(default=None)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "SupervisorConfig":
        if self.unhealthy_threshold < self.healthy_threshold:
            raise ValueError("unhealthy_threshold must be >= healthy_threshold")
        if not self.agent_command:
            raise ValueError("agent_command must not be empty")
        return self


class AdmissionConfig(BaseModel):
    """Spawn Admission Controller設定"""

    soft_limit: int = Field(default=50, ge=1, description="警告を出すWorker数")
    hard_limit: int = Field(default=100, ge=1, description="Spawnを拒否するWorker数")
    max_depth: int = Field(default=3, ge=1, le=10, description="階層の最大深さ")
    auto_process: bool = Field(default=True, description="キューを定期的に処理するか")
    process_interval: float = Field(default=5.0, gt=0, description="キュー処理間隔秒")
    batch_limit: int = Field(default=10, ge=1, description="1回の処理で取り出す最大件数")


class LoggingConfig(BaseModel):
    """ロギング設定"""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


class FleetForgeSettings(BaseSettings):
    """FleetForge全体設定

    設定の優先順位:
    1. 環境変数
    2. fleetforge.config.yaml
    3. デフォルト値
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETFORGE_",
        env_nested_delimiter="__",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, config_path: Path | str | None = None) -> "FleetForgeSettings":
        """YAMLファイルから設定を読み込む

        Args:
            config_path: 設定ファイルパス。Noneの場合はデフォルトパスを探索

        Returns:
            FleetForgeSettings インスタンス
        """
        if config_path is None:
            search_paths = [
                Path.cwd() / "fleetforge.config.yaml",
                Path.cwd() / "fleetforge.config.yml",
                Path.home() / ".fleetforge" / "config.yaml",
            ]
            for path in search_paths:
                if path.exists():
                    config_path = path
                    break

        if config_path and Path(config_path).exists():
            with open(config_path, encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f) or {}
            return cls.model_validate(yaml_config)

        return cls()

    def get_vault_path(self) -> Path:
        """Vaultパスを絶対パスで取得"""
        vault = Path(self.storage.vault_path)
        if not vault.is_absolute():
            vault = Path.cwd() / vault
        return vault.resolve()


# グローバル設定インスタンス（遅延初期化）
_settings: FleetForgeSettings | None = None


def get_settings() -> FleetForgeSettings:
    """設定シングルトンを取得"""
    global _settings
    if _settings is None:
        _settings = FleetForgeSettings.from_yaml()
    return _settings


def reload_settings(config_path: Path | str | None = None) -> FleetForgeSettings:
    """設定を再読み込み"""
    global _settings
    _settings = FleetForgeSettings.from_yaml(config_path)
    return _settings
