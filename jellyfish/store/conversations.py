"""Per-conversation state persisted as one JSON file per conversation.

File layout (``<sessions_dir>/<conversation_id>.json``)::

    {"continuation_handle": "...", "history": [{"role", "content", "timestamp"}, ...]}

Older files are accepted too: a bare list of messages, or the
``sdkSessionId`` / ``messages`` keys.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from loguru import logger

from jellyfish.store.files import now_iso, read_json, write_json_atomic

Role = Literal["system", "user", "assistant"]
_ROLES = ("system", "user", "assistant")
_SAFE_ID = re.compile(r"[^A-Za-z0-9_-]")


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Any) -> Message | None:
        if not isinstance(data, dict):
            return None
        role = data.get("role")
        content = data.get("content")
        timestamp = data.get("timestamp")
        if role not in _ROLES or not isinstance(content, str) or not isinstance(timestamp, str):
            return None
        return cls(role=role, content=content, timestamp=timestamp)


@dataclass
class ConversationState:
    continuation_handle: str | None = None
    history: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"history": [m.to_dict() for m in self.history]}
        if self.continuation_handle:
            data["continuation_handle"] = self.continuation_handle
        return data

    @classmethod
    def from_json(cls, parsed: Any) -> ConversationState:
        if isinstance(parsed, list):
            return cls(history=_parse_messages(parsed))
        if not isinstance(parsed, dict):
            return cls()
        handle = parsed.get("continuation_handle", parsed.get("sdkSessionId"))
        raw_history = parsed.get("history", parsed.get("messages"))
        return cls(
            continuation_handle=handle if isinstance(handle, str) and handle else None,
            history=_parse_messages(raw_history) if isinstance(raw_history, list) else [],
        )


def _parse_messages(items: list[Any]) -> list[Message]:
    messages = []
    for item in items:
        msg = Message.from_dict(item)
        if msg is not None:
            messages.append(msg)
    return messages


class ConversationStore:
    """Load/save/clear conversation state. No behavior beyond persistence."""

    def __init__(self, sessions_dir: str | Path):
        self._dir = Path(sessions_dir)

    def path_for(self, conversation_id: str) -> Path:
        safe = _SAFE_ID.sub("_", str(conversation_id)) or "_"
        return self._dir / f"{safe}.json"

    def load(self, conversation_id: str) -> ConversationState:
        path = self.path_for(conversation_id)
        try:
            parsed = read_json(path)
        except json.JSONDecodeError:
            logger.warning("Conversation file {} is not valid JSON; starting fresh", path)
            return ConversationState()
        if parsed is None:
            return ConversationState()
        return ConversationState.from_json(parsed)

    def save(self, conversation_id: str, state: ConversationState) -> None:
        write_json_atomic(self.path_for(conversation_id), state.to_dict())

    def clear(self, conversation_id: str) -> None:
        self.path_for(conversation_id).unlink(missing_ok=True)
