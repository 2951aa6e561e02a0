"""JSONLテーブル

IDをキーとするレコード集合を JSONL ファイルに保存する。
起動時にファイルをリプレイしてメモリキャッシュを復元し、
同じIDが複数行ある場合は後の行が勝つ。
書き込みは portalocker のファイルロックで保護する。
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Generic, TypeVar

import portalocker
from pydantic import BaseModel

from ..core.errors import StorageError, StorageInitError

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

LOCK_TIMEOUT = 10


class JsonlTable(Generic[RecordT]):
    """JSONLで永続化されるレコードテーブル

    Attributes:
        path: JSONLファイルのパス
    """

    def __init__(
        self,
        path: Path,
        model: type[RecordT],
        key: Callable[[RecordT], str],
    ) -> None:
        """
        Args:
            path: JSONLファイルのパス
            model: レコードのモデルクラス
            key: レコードからIDを取り出す関数

        Raises:
            StorageInitError: ディレクトリ作成や読み込みに失敗した場合
        """
        self.path = Path(path)
        self._model = model
        self._key = key
        self._records: dict[str, RecordT] = {}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
            self._replay()
        except OSError as e:
            raise StorageInitError(f"Failed to initialize store at {self.path}: {e}") from e

    # =========================================================================
    # 読み取り
    # =========================================================================

    def get(self, record_id: str) -> RecordT | None:
        """レコードを取得"""
        return self._records.get(record_id)

    def values(self) -> list[RecordT]:
        """全レコード（登録順）"""
        return list(self._records.values())

    def __iter__(self) -> Iterator[RecordT]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    # =========================================================================
    # 書き込み
    # =========================================================================

    def put(self, record: RecordT) -> None:
        """レコードを追加または置換（追記）"""
        self._records[self._key(record)] = record
        self._append(record)

    def put_many(self, records: list[RecordT]) -> None:
        """複数レコードをまとめて置換（1回の書き込み）"""
        if not records:
            return
        for record in records:
            self._records[self._key(record)] = record
        self._append(*records)

    def delete(self, record_id: str) -> bool:
        """レコードを削除（ファイル全体を書き換え）"""
        if record_id not in self._records:
            return False
        del self._records[record_id]
        self.compact()
        return True

    def compact(self) -> None:
        """現在のキャッシュ内容でファイルを書き換え"""
        lines = [self._dump(r) for r in self._records.values()]
        try:
            with portalocker.Lock(self.path, mode="w", encoding="utf-8", timeout=LOCK_TIMEOUT) as f:
                for line in lines:
                    f.write(line + "\n")
        except (OSError, portalocker.LockException) as e:
            raise StorageError(f"Failed to rewrite {self.path}: {e}") from e

    # =========================================================================
    # 永続化
    # =========================================================================

    @staticmethod
    def _dump(record: BaseModel) -> str:
        data = record.model_dump(mode="json")
        return json.dumps(data, ensure_ascii=False, sort_keys=True)

    def _append(self, *records: RecordT) -> None:
        """JSONLファイルにレコードを追記"""
        payload = "".join(self._dump(r) + "\n" for r in records)
        try:
            with portalocker.Lock(self.path, mode="a", encoding="utf-8", timeout=LOCK_TIMEOUT) as f:
                f.write(payload)
        except (OSError, portalocker.LockException) as e:
            raise StorageError(f"Failed to append to {self.path}: {e}") from e

    def _replay(self) -> None:
        """JSONLファイルからメモリキャッシュを復元"""
        with portalocker.Lock(self.path, mode="r", encoding="utf-8", timeout=LOCK_TIMEOUT) as f:
            for line_num, line in enumerate(f, 1):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    record = self._model.model_validate_json(stripped)
                except ValueError as e:
                    logger.warning(f"レコード読み込みエラー: {self.path}:{line_num}: {e}")
                    continue
                self._records[self._key(record)] = record
