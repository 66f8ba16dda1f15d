"""Prompt context for agent turns."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

PERSONA = (
    "You are Jellyfish, a helpful personal AI assistant for Telegram.",
    "Be concise, useful, and proactive.",
)


def build_system_prompt(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    local = now.astimezone()
    return "\n".join(
        [
            *PERSONA,
            f"Current date/time: {now.isoformat()} ({local.strftime('%A %d %B %Y %H:%M %Z')})",
        ]
    )


def attachment_turn_text(path: str | Path, caption: str | None, *, kind: str = "file") -> str:
    """Turn text for a photo/document the front end already saved locally."""
    note = f"[The user sent a {kind}, saved at {Path(path).as_posix()}]"
    caption = (caption or "").strip()
    if caption:
        return f"{caption}\n\n{note}"
    return note
