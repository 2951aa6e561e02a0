"""Worker Store: JSONL永続化

Workerの識別情報・状態・セッション・ハートビート・再起動回数を保存する。
Supervisor のクラッシュ復旧はここから非終端のレコードを読み出して行う。
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from .jsonl import JsonlTable
from .models import WorkerRecord, WorkerStatus, utc_now

logger = logging.getLogger(__name__)


class WorkerStore:
    """Workerレコードの永続化ストレージ

    Vault/workers/workers.jsonl に保存する。
    ハンドルは全レコードで一意。
    """

    def __init__(self, base_path: Path | str) -> None:
        """初期化

        Args:
            base_path: Vaultのベースパス。
                workers/ ディレクトリが作成される。

        Raises:
            StorageInitError: 初期化に失敗した場合
        """
        self.base_path = Path(base_path) / "workers"
        self._table: JsonlTable[WorkerRecord] = JsonlTable(
            self.base_path / "workers.jsonl", WorkerRecord, key=lambda r: r.id
        )

    # =========================================================================
    # 書き込み
    # =========================================================================

    def insert(self, record: WorkerRecord) -> None:
        """Workerを登録

        Raises:
            ValueError: 同じIDまたはハンドルが既に存在する場合
        """
        if record.id in self._table:
            raise ValueError(f"Worker id already exists: {record.id}")
        if self.get_by_handle(record.handle) is not None:
            raise ValueError(f"Worker handle already exists: {record.handle}")
        self._table.put(record)

    def update_status(self, worker_id: str, status: WorkerStatus) -> bool:
        """状態を更新"""
        return self._update(worker_id, status=status)

    def update_heartbeat(self, worker_id: str, timestamp: datetime | None = None) -> bool:
        """ハートビートを更新"""
        return self._update(worker_id, last_heartbeat=timestamp or utc_now())

    def update_pid(self, worker_id: str, pid: int | None, session_id: str | None) -> bool:
        """PIDとセッションを更新"""
        return self._update(worker_id, pid=pid, session_id=session_id)

    def dismiss(self, worker_id: str) -> bool:
        """dismissed状態にする"""
        return self._update(worker_id, status=WorkerStatus.DISMISSED, dismissed_at=utc_now())

    def delete_by_handle(self, handle: str) -> bool:
        """ハンドル再利用のためにレコードを削除"""
        record = self.get_by_handle(handle)
        if record is None:
            return False
        logger.info(f"Workerレコード削除（ハンドル再利用）: {handle} ({record.status})")
        return self._table.delete(record.id)

    def _update(self, worker_id: str, **changes: object) -> bool:
        record = self._table.get(worker_id)
        if record is None:
            return False
        self._table.put(record.model_copy(update=changes))
        return True

    # =========================================================================
    # 読み取り
    # =========================================================================

    def get(self, worker_id: str) -> WorkerRecord | None:
        """Workerを取得"""
        return self._table.get(worker_id)

    def get_by_handle(self, handle: str) -> WorkerRecord | None:
        """ハンドルでWorkerを取得"""
        for record in self._table:
            if record.handle == handle:
                return record
        return None

    def get_all(self) -> list[WorkerRecord]:
        """全Worker（新しい順）"""
        return sorted(self._table.values(), key=lambda r: r.created_at, reverse=True)

    def get_active(self) -> list[WorkerRecord]:
        """非終端のWorker（新しい順）"""
        return [r for r in self.get_all() if not r.is_terminal()]
