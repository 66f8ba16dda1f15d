"""
Text helpers for the Telegram front end.

Telegram hard-limits message text to 4096 characters; long answers are
split on line boundaries where possible.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from jellyfish.store.jobs import AgentKind

TELEGRAM_MAX_TEXT_LEN = 4096

_WORKDIR_RE = re.compile(r"(?:^|\s)--workdir\s+(\"[^\"]+\"|'[^']+'|\S+)")


def split_text(text: str, *, max_len: int = TELEGRAM_MAX_TEXT_LEN) -> list[str]:
    """Split text into chunks of at most max_len, preferring newline boundaries."""
    if max_len <= 0:
        raise ValueError("max_len must be > 0")
    if len(text) <= max_len:
        return [text]

    chunks: list[str] = []
    buf = ""
    for line in text.splitlines(keepends=True):
        if len(line) > max_len:
            if buf:
                chunks.append(buf)
                buf = ""
            for i in range(0, len(line), max_len):
                chunks.append(line[i:i + max_len])
            continue
        if buf and len(buf) + len(line) > max_len:
            chunks.append(buf)
            buf = ""
        buf += line
    if buf:
        chunks.append(buf)
    return chunks


def relative_time(iso: str, *, now: datetime | None = None) -> str:
    try:
        then = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError:
        return iso
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    seconds = round((now - then).total_seconds())

    for unit, size, limit in (("second", 1, 60), ("minute", 60, 60), ("hour", 3600, 24)):
        value = round(seconds / size)
        if abs(value) < limit:
            break
    else:
        unit, value = "day", round(seconds / 86400)

    if value == 0:
        return "now"
    plural = "" if abs(value) == 1 else "s"
    if value > 0:
        return f"{value} {unit}{plural} ago"
    return f"in {-value} {unit}{plural}"


@dataclass(frozen=True)
class RunArgs:
    agent: AgentKind
    task: str
    workdir: str


def parse_run_args(text: str, *, default_workdir: str | None = None) -> RunArgs | None:
    """Parse ``<agent> [--workdir PATH] <task>``; the last --workdir wins."""
    trimmed = text.strip()
    if not trimmed:
        return None
    agent_token, _, rest = trimmed.partition(" ")
    try:
        agent = AgentKind(agent_token)
    except ValueError:
        return None

    workdir = default_workdir or str(Path.home())
    task = rest.strip()
    matches = list(_WORKDIR_RE.finditer(task))
    if matches:
        captured = matches[-1].group(1).strip("'\"").strip()
        if captured:
            workdir = captured
        task = _WORKDIR_RE.sub(" ", task)
        task = re.sub(r"\s+", " ", task).strip()

    if not task:
        return None
    return RunArgs(agent=agent, task=task, workdir=str(Path(workdir).expanduser()))
