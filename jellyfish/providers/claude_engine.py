"""Agent engine backed by the Claude Agent SDK."""

from __future__ import annotations

import re
import uuid
from pathlib import Path
from typing import Any, AsyncIterator

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ProcessError,
    ResultMessage,
    SystemMessage,
    TextBlock,
    query,
)
from claude_agent_sdk.types import (
    PermissionResultAllow,
    PermissionResultDeny,
    StreamEvent,
    ToolPermissionContext,
)
from loguru import logger

from jellyfish.agent.tools.memory import SERVER_NAME, create_memory_server, namespaced_tool_names
from jellyfish.errors import EngineCrashed
from jellyfish.providers.base import AgentEngine, EngineEvent, EngineEventType, EngineRequest, PermissionGate

BUILTIN_TOOLS = ("Read", "Write", "Edit", "Bash", "Glob", "Grep", "WebFetch")
ASSISTANT_TEXT_SEPARATOR = "\n\n"

# Older SDK releases re-raise reader failures as a bare Exception carrying this text.
_FLATTENED_PROCESS_ERROR = re.compile(r"Command failed with exit code (-?\d+)")


def translate_message(message: Any, *, stream_partial: bool) -> EngineEvent:
    """Map one SDK message onto an engine event."""
    if isinstance(message, SystemMessage):
        session_id = (message.data or {}).get("session_id")
        if message.subtype == "init" and isinstance(session_id, str) and session_id:
            return EngineEvent.session(session_id)
        return EngineEvent.other()

    if isinstance(message, StreamEvent):
        event = message.event or {}
        delta = event.get("delta") or {}
        if event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
            return EngineEvent.delta(str(delta.get("text") or ""))
        return EngineEvent.other()

    if isinstance(message, AssistantMessage):
        # With partial streaming on, the same text already arrived as deltas.
        if stream_partial:
            return EngineEvent.other()
        text = "".join(block.text for block in message.content if isinstance(block, TextBlock))
        return EngineEvent.delta(text) if text else EngineEvent.other()

    if isinstance(message, ResultMessage):
        return EngineEvent.result(
            message.result or "",
            session_id=message.session_id,
            is_error=bool(message.is_error),
        )

    return EngineEvent.other()


def crash_from(error: Exception) -> EngineCrashed | None:
    """Engine crash carried by ``error``, if the backing process died."""
    if isinstance(error, ProcessError):
        return EngineCrashed(str(error), exit_code=error.exit_code, stderr=error.stderr)
    match = _FLATTENED_PROCESS_ERROR.search(str(error))
    if match:
        return EngineCrashed(str(error), exit_code=int(match.group(1)))
    return None


def _permission_callback(gate: PermissionGate):
    async def can_use_tool(
        tool_name: str,
        tool_input: dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResultAllow | PermissionResultDeny:
        tool_use_id = getattr(context, "tool_use_id", None) or uuid.uuid4().hex
        decision = await gate(tool_name, tool_input, tool_use_id)
        if decision.allow:
            return PermissionResultAllow()
        return PermissionResultDeny(message=decision.reason or "Permission denied")

    return can_use_tool


async def _single_prompt(prompt: str) -> AsyncIterator[dict[str, Any]]:
    yield {"type": "user", "message": {"role": "user", "content": prompt}}


class ClaudeEngine(AgentEngine):
    def __init__(self, *, model: str, memory_dir: str | Path, cwd: str | Path | None = None):
        self.model = model
        self.memory_dir = Path(memory_dir)
        self.cwd = str(cwd) if cwd else None

    def build_options(self, request: EngineRequest) -> ClaudeAgentOptions:
        attempt = request.attempt
        allowed_tools: list[str] = []
        mcp_servers: dict[str, Any] = {}
        if attempt.builtin_tools:
            allowed_tools.extend(BUILTIN_TOOLS)
        if attempt.aux_tools:
            mcp_servers[SERVER_NAME] = create_memory_server(self.memory_dir)
            allowed_tools.extend(namespaced_tool_names())

        kwargs: dict[str, Any] = {
            "system_prompt": request.system_prompt,
            "allowed_tools": allowed_tools,
            "mcp_servers": mcp_servers,
            "permission_mode": attempt.permission_mode,
            "include_partial_messages": attempt.stream_partial,
        }
        if not attempt.builtin_tools:
            kwargs["disallowed_tools"] = list(BUILTIN_TOOLS)
        if attempt.explicit_model:
            kwargs["model"] = self.model
        if self.cwd:
            kwargs["cwd"] = self.cwd
        if request.continuation_handle:
            kwargs["resume"] = request.continuation_handle
        if attempt.consult_permissions and request.permission_gate is not None:
            kwargs["can_use_tool"] = _permission_callback(request.permission_gate)
        return ClaudeAgentOptions(**kwargs)

    async def stream(self, request: EngineRequest) -> AsyncIterator[EngineEvent]:
        options = self.build_options(request)
        # can_use_tool needs the streaming input mode
        prompt: Any = _single_prompt(request.prompt) if options.can_use_tool else request.prompt
        logger.debug(
            "Claude attempt {}: model={} tools={} resume={}",
            request.attempt.name,
            options.model or "<default>",
            len(options.allowed_tools),
            bool(options.resume),
        )
        stream_partial = request.attempt.stream_partial
        assistant_texts = 0
        try:
            async for message in query(prompt=prompt, options=options):
                event = translate_message(message, stream_partial=stream_partial)
                if not stream_partial and event.type is EngineEventType.TEXT_DELTA:
                    # one delta per assistant message; keep the steps apart
                    if assistant_texts:
                        event = EngineEvent.delta(ASSISTANT_TEXT_SEPARATOR + event.text)
                    assistant_texts += 1
                yield event
        except Exception as e:
            crash = crash_from(e)
            if crash is None:
                raise
            raise crash from e
