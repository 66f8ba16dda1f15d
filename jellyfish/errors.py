"""Exception types shared across jellyfish."""

from __future__ import annotations


class JellyfishError(Exception):
    """Base class for jellyfish errors."""


class EngineCrashed(JellyfishError):
    """The process backing the agent engine exited abnormally."""

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str | None = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ServiceUnavailableError(JellyfishError):
    """Every attempt against the agent engine crashed."""

    def __init__(self, message: str = "The agent service is unavailable right now. Please retry later."):
        super().__init__(message)
