"""Memory tools exposed to the agent as an in-process MCP server.

Each memory is a markdown file ``<memory_dir>/<name>.md``.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from claude_agent_sdk import create_sdk_mcp_server, tool

SERVER_NAME = "jellyfish-memory"
TOOL_NAMES = ("memory_read", "memory_write")

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}$")


def _text(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


def resolve_memory_path(memory_dir: Path, name: str) -> Path | None:
    """Path for memory ``name``, or None when the name is not a plain file stem."""
    if not isinstance(name, str) or not _SAFE_NAME.match(name) or ".." in name:
        return None
    return memory_dir / f"{name}.md"


def read_memory(memory_dir: Path, name: str) -> str:
    path = resolve_memory_path(memory_dir, name)
    if path is None:
        return f"Error: invalid memory name: {name!r}"
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return "not found"


def write_memory(memory_dir: Path, name: str, content: str) -> str:
    path = resolve_memory_path(memory_dir, name)
    if path is None:
        return f"Error: invalid memory name: {name!r}"
    memory_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return "saved"


def namespaced_tool_names() -> list[str]:
    return [f"mcp__{SERVER_NAME}__{name}" for name in TOOL_NAMES]


def create_memory_server(memory_dir: str | Path):
    root = Path(memory_dir).expanduser()

    @tool(
        "memory_read",
        "Reads a named memory file (markdown). Use it to recall notes saved in earlier conversations.",
        {"name": str},
    )
    async def memory_read(args: dict[str, Any]) -> dict[str, Any]:
        return _text(read_memory(root, args.get("name", "")))

    @tool(
        "memory_write",
        "Writes content to a named memory file (markdown), replacing what was there.",
        {"name": str, "content": str},
    )
    async def memory_write(args: dict[str, Any]) -> dict[str, Any]:
        return _text(write_memory(root, args.get("name", ""), str(args.get("content", ""))))

    return create_sdk_mcp_server(name=SERVER_NAME, version="1.0.0", tools=[memory_read, memory_write])
