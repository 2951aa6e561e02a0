"""エージェントプロセスのイベントプロトコル

子プロセスは stdout に改行区切りのJSON（NDJSON）を出力する。
期待する形に合わない行はプレーンテキストとして扱い、エラーにはしない。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class EventKind(StrEnum):
    """子プロセスのイベント種別"""

    SYSTEM_INIT = "system_init"  # セッション開始
    ASSISTANT = "assistant"  # テキスト/ツール呼び出し
    RESULT = "result"  # ターン完了
    OTHER = "other"  # 未知のJSONイベント（ハートビートのみ）
    TEXT = "text"  # JSONでない行


@dataclass
class AgentEvent:
    """パース済みのイベント"""

    kind: EventKind
    raw: str
    session_id: str | None = None
    text: str | None = None
    tool_names: list[str] = field(default_factory=list)
    result: str | None = None
    duration_ms: float | None = None
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """通知用の辞書に変換"""
        result: dict[str, Any] = {"kind": str(self.kind)}
        if self.session_id is not None:
            result["session_id"] = self.session_id
        if self.text is not None:
            result["text"] = self.text
        if self.tool_names:
            result["tool_names"] = list(self.tool_names)
        if self.result is not None:
            result["result"] = self.result
        if self.duration_ms is not None:
            result["duration_ms"] = self.duration_ms
        if self.kind == EventKind.TEXT:
            result["text"] = self.raw
        return result


def parse_event(line: str) -> AgentEvent:
    """1行をイベントにパース

    Args:
        line: 改行を除いた1行

    Returns:
        パース結果。失敗時は TEXT イベント
    """
    try:
        data = json.loads(line)
    except ValueError:
        return AgentEvent(kind=EventKind.TEXT, raw=line)
    if not isinstance(data, dict):
        return AgentEvent(kind=EventKind.TEXT, raw=line)

    event_type = data.get("type")

    if event_type == "system" and data.get("subtype") == "init":
        session_id = data.get("session_id")
        return AgentEvent(
            kind=EventKind.SYSTEM_INIT,
            raw=line,
            session_id=session_id if isinstance(session_id, str) else None,
            data=data,
        )

    if event_type == "assistant":
        return _parse_assistant(line, data)

    if event_type == "result":
        result = data.get("result")
        duration = data.get("duration_ms")
        return AgentEvent(
            kind=EventKind.RESULT,
            raw=line,
            result=result if isinstance(result, str) else None,
            duration_ms=duration if isinstance(duration, int | float) else None,
            data=data,
        )

    return AgentEvent(kind=EventKind.OTHER, raw=line, data=data)


def _parse_assistant(line: str, data: dict[str, Any]) -> AgentEvent:
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    texts: list[str] = []
    tools: list[str] = []
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                texts.append(block["text"])
            elif block.get("type") == "tool_use":
                tools.append(str(block.get("name", "unknown")))
    return AgentEvent(
        kind=EventKind.ASSISTANT,
        raw=line,
        text="".join(texts) if texts else None,
        tool_names=tools,
        data=data,
    )


# 改行のない行をバッファする上限（バイト）
MAX_LINE_BYTES = 1024 * 1024


class LineFramer:
    """バイト列を行単位に分割する

    改行が届くまで末尾の不完全な行をバッファする。バッファが
    max_line_bytes を超えた場合は、そこまでを1行として切り出す。
    行末の CR だけを取り除き、行頭のインデントは保持する。
    """

    def __init__(self, encoding: str = "utf-8", max_line_bytes: int = MAX_LINE_BYTES) -> None:
        if max_line_bytes <= 0:
            raise ValueError("max_line_bytes must be positive")
        self._encoding = encoding
        self._max_line_bytes = max_line_bytes
        self._buffer = b""

    def feed(self, chunk: bytes) -> list[str]:
        """チャンクを追加し、完成した行を返す（空行は除く）"""
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(b"\n")
        while len(self._buffer) > self._max_line_bytes:
            complete.append(self._buffer[: self._max_line_bytes])
            self._buffer = self._buffer[self._max_line_bytes :]
        return [line for line in (self._decode(c) for c in complete) if line.strip()]

    def flush(self) -> list[str]:
        """残りのバッファを最後の行として返す"""
        rest, self._buffer = self._buffer, b""
        line = self._decode(rest)
        return [line] if line.strip() else []

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self._encoding, errors="replace").rstrip("\r")
