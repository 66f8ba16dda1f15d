"""Agent invoker: one user turn in, one final answer out.

The turn walks the attempt ladder until an attempt produces non-empty text:

1. Load conversation state, append the user's message.
2. Run each attempt against the engine, streaming text deltas to the caller.
3. A crashed engine process moves on to the next attempt; any other
   exception aborts the turn.
4. Empty output is a soft failure and also moves on.
5. The first non-empty answer is saved with the latest session handle.

Failed turns still persist the user's message so context is never lost.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Sequence

from loguru import logger

from jellyfish.agent.attempts import ATTEMPT_LADDER, AttemptConfig
from jellyfish.agent.context import build_system_prompt
from jellyfish.errors import ServiceUnavailableError
from jellyfish.permissions import PermissionBroker, PermissionDecision
from jellyfish.providers.base import (
    AgentEngine,
    EngineEventType,
    EngineRequest,
    PermissionGate,
    is_engine_crash,
)
from jellyfish.store.conversations import ConversationState, ConversationStore, Message

OnPartial = Callable[[str], Awaitable[None] | None]

FALLBACK_TEXT = "I could not generate a response."


@dataclass
class AttemptOutcome:
    text: str
    session_id: str | None = None
    is_error: bool = False


def next_handle(prior: str | None, captured: str | None, crashed: bool) -> str | None:
    """Continuation handle to store after a turn."""
    if captured:
        return captured
    return None if crashed else prior


class AgentInvoker:
    def __init__(
        self,
        *,
        engine: AgentEngine,
        conversations: ConversationStore,
        permissions: PermissionBroker | None = None,
        ladder: Sequence[AttemptConfig] = ATTEMPT_LADDER,
        system_prompt: Callable[[datetime | None], str] = build_system_prompt,
    ):
        if not ladder:
            raise ValueError("attempt ladder must not be empty")
        self._engine = engine
        self._conversations = conversations
        self._permissions = permissions
        self._ladder = tuple(ladder)
        self._system_prompt = system_prompt

    def _permission_gate(self, conversation_id: str) -> PermissionGate | None:
        broker = self._permissions
        if broker is None:
            return None

        async def gate(tool_name: str, tool_input: dict[str, Any], tool_use_id: str) -> PermissionDecision:
            return await broker.request(tool_name, tool_input, conversation_id, tool_use_id)

        return gate

    async def invoke(self, conversation_id: str, turn_text: str, on_partial: OnPartial | None = None) -> str:
        """Run one turn. Raises only if the turn cannot be answered at all."""
        state = self._conversations.load(conversation_id)
        history = [*state.history, Message(role="user", content=turn_text)]
        system_prompt = self._system_prompt(None)
        gate = self._permission_gate(conversation_id)

        captured: str | None = None
        crashed = False
        soft_failed = False
        shown = ""

        async def forward(partial: str) -> None:
            # a later attempt only shows text once it extends what the user already saw
            nonlocal shown
            if len(partial) <= len(shown) or not partial.startswith(shown):
                return
            shown = partial
            await _deliver(on_partial, partial)

        logger.info("Turn started in {}: {}", conversation_id, turn_text[:50])
        for index, attempt in enumerate(self._ladder):
            request = EngineRequest(
                prompt=turn_text,
                system_prompt=system_prompt,
                attempt=attempt,
                continuation_handle=state.continuation_handle if index == 0 and attempt.resume else None,
                permission_gate=gate if attempt.consult_permissions else None,
            )
            try:
                outcome = await self._run_attempt(request, forward)
            except Exception as e:
                if is_engine_crash(e):
                    crashed = True
                    logger.warning("Attempt {} ({}) crashed: {}", index + 1, attempt.name, e)
                    continue
                logger.error("Attempt {} ({}) failed: {}", index + 1, attempt.name, e)
                self._save_failed_turn(conversation_id, state, history, captured, crashed)
                raise

            if outcome.session_id:
                captured = outcome.session_id
            if outcome.is_error or not outcome.text.strip():
                soft_failed = True
                logger.warning("Attempt {} ({}) produced no answer", index + 1, attempt.name)
                continue

            self._conversations.save(
                conversation_id,
                ConversationState(
                    continuation_handle=next_handle(state.continuation_handle, captured, crashed),
                    history=[*history, Message(role="assistant", content=outcome.text)],
                ),
            )
            logger.info("Turn finished in {} on attempt {} ({})", conversation_id, index + 1, attempt.name)
            return outcome.text

        self._save_failed_turn(conversation_id, state, history, captured, crashed)
        if not soft_failed:
            logger.error("Every attempt crashed in {}", conversation_id)
            raise ServiceUnavailableError()
        return FALLBACK_TEXT

    async def _run_attempt(
        self, request: EngineRequest, on_partial: Callable[[str], Awaitable[None]]
    ) -> AttemptOutcome:
        parts: list[str] = []
        outcome = AttemptOutcome(text="")

        async with aclosing(self._engine.stream(request)) as events:
            async for event in events:
                if event.type is EngineEventType.SESSION:
                    outcome.session_id = event.session_id
                elif event.type is EngineEventType.TEXT_DELTA:
                    if not event.text:
                        continue
                    parts.append(event.text)
                    await on_partial("".join(parts))
                elif event.type is EngineEventType.RESULT:
                    if event.session_id:
                        outcome.session_id = event.session_id
                    outcome.is_error = event.is_error
                    outcome.text = event.text or "".join(parts)
                    return outcome

        outcome.text = "".join(parts)
        return outcome

    def _save_failed_turn(
        self,
        conversation_id: str,
        state: ConversationState,
        history: list[Message],
        captured: str | None,
        crashed: bool,
    ) -> None:
        self._conversations.save(
            conversation_id,
            ConversationState(
                continuation_handle=next_handle(state.continuation_handle, captured, crashed),
                history=history,
            ),
        )


async def _deliver(on_partial: OnPartial | None, text: str) -> None:
    if on_partial is None:
        return
    res = on_partial(text)
    if asyncio.iscoroutine(res):
        await res
