import pytest
from claude_agent_sdk import AssistantMessage, ProcessError, ResultMessage, SystemMessage, TextBlock
from claude_agent_sdk.types import StreamEvent

from jellyfish.agent.attempts import ATTEMPT_LADDER
from jellyfish.errors import EngineCrashed
from jellyfish.permissions import PermissionDecision
from jellyfish.providers import claude_engine
from jellyfish.providers.base import EngineEventType, EngineRequest
from jellyfish.providers.claude_engine import BUILTIN_TOOLS, ClaudeEngine, crash_from, translate_message

FULL, NO_STREAMING, NO_AUX, DEFAULT_MODEL, MINIMAL = ATTEMPT_LADDER


def test_init_message_announces_session() -> None:
    event = translate_message(
        SystemMessage(subtype="init", data={"session_id": "abc"}), stream_partial=True
    )

    assert event.type is EngineEventType.SESSION
    assert event.session_id == "abc"


def test_text_delta_stream_event() -> None:
    message = StreamEvent(
        uuid="u1",
        session_id="abc",
        event={"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
    )

    event = translate_message(message, stream_partial=True)

    assert event.type is EngineEventType.TEXT_DELTA
    assert event.text == "Hi"


def test_assistant_text_only_counts_without_partials() -> None:
    message = AssistantMessage(content=[TextBlock(text="whole answer")], model="sonnet")

    assert translate_message(message, stream_partial=True).type is EngineEventType.OTHER
    event = translate_message(message, stream_partial=False)
    assert event.type is EngineEventType.TEXT_DELTA
    assert event.text == "whole answer"


def test_result_message() -> None:
    message = ResultMessage(
        subtype="success",
        duration_ms=10,
        duration_api_ms=8,
        is_error=False,
        num_turns=1,
        session_id="abc",
        result="done",
    )

    event = translate_message(message, stream_partial=False)

    assert event.type is EngineEventType.RESULT
    assert event.text == "done"
    assert event.session_id == "abc"
    assert not event.is_error


def test_full_attempt_options(tmp_path) -> None:
    engine = ClaudeEngine(model="opus", memory_dir=tmp_path)

    async def gate(tool_name, tool_input, tool_use_id):
        return PermissionDecision.allowed()

    options = engine.build_options(
        EngineRequest(
            prompt="hi",
            system_prompt="sys",
            attempt=FULL,
            continuation_handle="sess",
            permission_gate=gate,
        )
    )

    assert options.model == "opus"
    assert options.resume == "sess"
    assert options.include_partial_messages is True
    assert options.permission_mode == "acceptEdits"
    assert set(BUILTIN_TOOLS) <= set(options.allowed_tools)
    assert "mcp__jellyfish-memory__memory_read" in options.allowed_tools
    assert "jellyfish-memory" in options.mcp_servers
    assert options.can_use_tool is not None


def test_minimal_attempt_options(tmp_path) -> None:
    engine = ClaudeEngine(model="opus", memory_dir=tmp_path)

    options = engine.build_options(EngineRequest(prompt="hi", system_prompt="sys", attempt=MINIMAL))

    assert options.model is None
    assert options.resume is None
    assert options.allowed_tools == []
    assert options.mcp_servers == {}
    assert set(options.disallowed_tools) == set(BUILTIN_TOOLS)
    assert options.can_use_tool is None


def test_default_model_attempt_drops_model_and_aux_tools(tmp_path) -> None:
    engine = ClaudeEngine(model="opus", memory_dir=tmp_path)

    options = engine.build_options(EngineRequest(prompt="hi", system_prompt="sys", attempt=DEFAULT_MODEL))

    assert options.model is None
    assert options.permission_mode == "default"
    assert options.mcp_servers == {}
    assert set(options.allowed_tools) == set(BUILTIN_TOOLS)


def fake_query(*items):
    async def query(*, prompt, options):
        for item in items:
            if isinstance(item, BaseException):
                raise item
            yield item

    return query


async def collect(engine, attempt):
    request = EngineRequest(prompt="hi", system_prompt="sys", attempt=attempt)
    return [event async for event in engine.stream(request)]


def test_crash_from_typed_and_flattened_errors() -> None:
    typed = crash_from(ProcessError("Command failed with exit code 1", exit_code=1, stderr="oops"))
    assert typed.exit_code == 1
    assert typed.stderr == "oops"

    flattened = crash_from(Exception("Command failed with exit code 137 (exit code: 137)"))
    assert isinstance(flattened, EngineCrashed)
    assert flattened.exit_code == 137

    assert crash_from(ValueError("bad option")) is None


async def test_flattened_process_failure_is_a_crash(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(
        claude_engine,
        "query",
        fake_query(SystemMessage(subtype="init", data={"session_id": "s"}), Exception("Command failed with exit code 1")),
    )

    with pytest.raises(EngineCrashed):
        await collect(ClaudeEngine(model="opus", memory_dir=tmp_path), MINIMAL)


async def test_other_failures_stay_fatal(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(claude_engine, "query", fake_query(RuntimeError("invalid api key")))

    with pytest.raises(RuntimeError, match="invalid api key"):
        await collect(ClaudeEngine(model="opus", memory_dir=tmp_path), MINIMAL)


async def test_assistant_messages_are_separated_without_partials(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(
        claude_engine,
        "query",
        fake_query(
            AssistantMessage(content=[TextBlock(text="I'll check.")], model="sonnet"),
            AssistantMessage(content=[TextBlock(text="Here is the answer.")], model="sonnet"),
        ),
    )

    events = await collect(ClaudeEngine(model="opus", memory_dir=tmp_path), NO_STREAMING)

    assert "".join(e.text for e in events if e.type is EngineEventType.TEXT_DELTA) == (
        "I'll check.\n\nHere is the answer."
    )
