"""Tool permission broker.

Sensitive tool calls wait on a human decision delivered through the front
end. Each pending request owns a future and an expiry timer; resolving and
expiring both go through ``_claim`` so a request settles exactly once.

Read-only tools and the bot's own memory tools are allowed without a prompt.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger

AUTO_ALLOW_TOOLS = frozenset({"Read", "Glob", "Grep", "WebFetch"})
INTERNAL_TOOL_PREFIX = "mcp__jellyfish-memory__"
CORRELATION_PREFIX = "perm:"
SUMMARY_LIMIT = 300


@dataclass(frozen=True)
class PermissionDecision:
    allow: bool
    reason: str | None = None

    @classmethod
    def allowed(cls) -> PermissionDecision:
        return cls(allow=True)

    @classmethod
    def denied(cls, reason: str) -> PermissionDecision:
        return cls(allow=False, reason=reason)


TIMED_OUT = PermissionDecision.denied("Permission request timed out")
USER_DENIED = PermissionDecision.denied("User denied permission")


class PermissionPrompter(Protocol):
    """Front-end side of the handshake."""

    async def send_prompt(self, conversation_id: str, correlation_id: str, text: str) -> Any:
        """Show the prompt; the return value is handed back on expiry."""

    async def mark_expired(self, conversation_id: str, prompt_ref: Any, text: str) -> None:
        """Update a prompt whose request timed out."""


@dataclass
class PendingPermissionRequest:
    correlation_id: str
    conversation_id: str
    tool_name: str
    input_summary: str
    prompt_text: str
    future: asyncio.Future[PermissionDecision]
    timer: asyncio.TimerHandle | None = None
    prompt_ref: Any = None


def should_auto_allow(tool_name: str) -> bool:
    return tool_name in AUTO_ALLOW_TOOLS or tool_name.startswith(INTERNAL_TOOL_PREFIX)


def summarize_input(tool_name: str, tool_input: dict[str, Any]) -> str:
    command = tool_input.get("command")
    if tool_name == "Bash" and isinstance(command, str):
        return command[:SUMMARY_LIMIT]
    file_path = tool_input.get("file_path")
    if tool_name in ("Write", "Edit") and isinstance(file_path, str):
        return file_path
    skill = tool_input.get("skill")
    if tool_name == "Skill" and isinstance(skill, str):
        args = tool_input.get("args")
        return f"/{skill} {args}" if isinstance(args, str) else f"/{skill}"
    rendered = json.dumps(tool_input, ensure_ascii=False, default=str)
    if len(rendered) > SUMMARY_LIMIT:
        return rendered[: SUMMARY_LIMIT - 3] + "..."
    return rendered


def prompt_text(tool_name: str, summary: str) -> str:
    return f"🔐 Permission Request\nTool: {tool_name}\n{summary}"


class PermissionBroker:
    def __init__(self, prompter: PermissionPrompter, *, timeout_s: float = 120.0):
        self._prompter = prompter
        self._timeout_s = timeout_s
        self._pending: dict[str, PendingPermissionRequest] = {}
        self._notify_tasks: set[asyncio.Task[None]] = set()

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    async def request(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        conversation_id: str,
        tool_use_id: str | None = None,
    ) -> PermissionDecision:
        """Decide whether a tool call may run, prompting the user if needed."""
        if should_auto_allow(tool_name):
            return PermissionDecision.allowed()

        correlation_id = f"{CORRELATION_PREFIX}{tool_use_id or uuid.uuid4().hex}"
        if correlation_id in self._pending:
            # The engine re-asked for a call that is still waiting.
            return await asyncio.shield(self._pending[correlation_id].future)

        loop = asyncio.get_running_loop()
        summary = summarize_input(tool_name, tool_input)
        entry = PendingPermissionRequest(
            correlation_id=correlation_id,
            conversation_id=conversation_id,
            tool_name=tool_name,
            input_summary=summary,
            prompt_text=prompt_text(tool_name, summary),
            future=loop.create_future(),
        )
        self._pending[correlation_id] = entry

        try:
            entry.prompt_ref = await self._prompter.send_prompt(conversation_id, correlation_id, entry.prompt_text)
        except Exception as e:
            logger.exception("Could not deliver permission prompt for {}", tool_name)
            self._settle(correlation_id, PermissionDecision.denied(f"Could not ask for permission: {e}"))
            return await entry.future

        if not entry.future.done():
            entry.timer = loop.call_later(self._timeout_s, self._expire, correlation_id)
        logger.info("Permission requested: {} ({}) in {}", tool_name, correlation_id, conversation_id)
        try:
            return await entry.future
        finally:
            # no-op once settled; drops the entry if the waiting turn was cancelled
            self._claim(correlation_id)

    def resolve(self, correlation_id: str, decision: PermissionDecision) -> bool:
        """Deliver the user's decision. False if unknown, expired, or already resolved."""
        handled = self._settle(correlation_id, decision)
        if handled:
            logger.info("Permission {} -> {}", correlation_id, "allow" if decision.allow else "deny")
        return handled

    def _claim(self, correlation_id: str) -> PendingPermissionRequest | None:
        entry = self._pending.pop(correlation_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def _settle(self, correlation_id: str, decision: PermissionDecision) -> bool:
        entry = self._claim(correlation_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(decision)
        return True

    def _expire(self, correlation_id: str) -> None:
        entry = self._pending.get(correlation_id)
        if entry is None or not self._settle(correlation_id, TIMED_OUT):
            return
        logger.info("Permission {} timed out", correlation_id)
        task = asyncio.ensure_future(self._notify_expired(entry))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _notify_expired(self, entry: PendingPermissionRequest) -> None:
        try:
            await self._prompter.mark_expired(
                entry.conversation_id,
                entry.prompt_ref,
                f"{entry.prompt_text}\n\n⏰ Timed out — denied",
            )
        except Exception:
            logger.exception("Could not update expired permission prompt {}", entry.correlation_id)

    def cancel_all(self, reason: str = "Shutting down") -> None:
        for correlation_id in list(self._pending):
            self._settle(correlation_id, PermissionDecision.denied(reason))
