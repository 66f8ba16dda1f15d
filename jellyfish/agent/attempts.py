"""Attempt ladder for agent invocations.

Each rung is an immutable configuration. The invoker walks the ladder in
order and stops at the first rung that yields a non-empty answer. Later
rungs strip optional capabilities until only a bare prompt remains.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions"]


@dataclass(frozen=True)
class AttemptConfig:
    name: str
    stream_partial: bool
    aux_tools: bool
    builtin_tools: bool
    explicit_model: bool
    permission_mode: PermissionMode
    consult_permissions: bool
    resume: bool

    @property
    def exposes_tools(self) -> bool:
        return self.aux_tools or self.builtin_tools


ATTEMPT_LADDER: tuple[AttemptConfig, ...] = (
    AttemptConfig(
        name="full",
        stream_partial=True,
        aux_tools=True,
        builtin_tools=True,
        explicit_model=True,
        permission_mode="acceptEdits",
        consult_permissions=True,
        resume=True,
    ),
    AttemptConfig(
        name="no-streaming",
        stream_partial=False,
        aux_tools=True,
        builtin_tools=True,
        explicit_model=True,
        permission_mode="acceptEdits",
        consult_permissions=True,
        resume=False,
    ),
    AttemptConfig(
        name="no-aux-tools",
        stream_partial=False,
        aux_tools=False,
        builtin_tools=True,
        explicit_model=True,
        permission_mode="acceptEdits",
        consult_permissions=True,
        resume=False,
    ),
    AttemptConfig(
        name="default-model",
        stream_partial=False,
        aux_tools=False,
        builtin_tools=True,
        explicit_model=False,
        permission_mode="default",
        consult_permissions=True,
        resume=False,
    ),
    AttemptConfig(
        name="minimal",
        stream_partial=False,
        aux_tools=False,
        builtin_tools=False,
        explicit_model=False,
        permission_mode="default",
        consult_permissions=False,
        resume=False,
    ),
)
