"""Base agent engine interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable

from jellyfish.errors import EngineCrashed

if TYPE_CHECKING:
    from jellyfish.agent.attempts import AttemptConfig
    from jellyfish.permissions import PermissionDecision


# (tool_name, tool_input, tool_use_id) -> decision
PermissionGate = Callable[[str, dict[str, Any], str], Awaitable["PermissionDecision"]]


class EngineEventType(str, Enum):
    SESSION = "session"
    TEXT_DELTA = "text_delta"
    RESULT = "result"
    OTHER = "other"


@dataclass(frozen=True)
class EngineEvent:
    """A single event from a streaming engine run.

    ``session_id`` is set for SESSION events (and may be set on RESULT),
    ``text`` for TEXT_DELTA and RESULT events.
    """
    type: EngineEventType
    text: str = ""
    session_id: str | None = None
    is_error: bool = False

    @classmethod
    def session(cls, session_id: str) -> EngineEvent:
        return cls(type=EngineEventType.SESSION, session_id=session_id)

    @classmethod
    def delta(cls, text: str) -> EngineEvent:
        return cls(type=EngineEventType.TEXT_DELTA, text=text)

    @classmethod
    def result(cls, text: str, *, session_id: str | None = None, is_error: bool = False) -> EngineEvent:
        return cls(type=EngineEventType.RESULT, text=text, session_id=session_id, is_error=is_error)

    @classmethod
    def other(cls) -> EngineEvent:
        return cls(type=EngineEventType.OTHER)


@dataclass
class EngineRequest:
    """Everything an engine needs for one attempt."""
    prompt: str
    system_prompt: str
    attempt: AttemptConfig
    continuation_handle: str | None = None
    permission_gate: PermissionGate | None = None


class AgentEngine(ABC):
    """
    Abstract base class for agent engines.

    Implementations run the external agent for one attempt and yield its
    events in arrival order. An abnormal exit of the backing process must
    surface as ``EngineCrashed``; any other exception is treated as fatal
    by the caller.
    """

    @abstractmethod
    def stream(self, request: EngineRequest) -> AsyncIterator[EngineEvent]:
        """Run one attempt and yield engine events."""


def is_engine_crash(error: BaseException) -> bool:
    """True when ``error`` means the engine process died (retryable)."""
    return isinstance(error, EngineCrashed)
