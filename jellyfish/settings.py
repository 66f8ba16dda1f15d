"""Runtime settings for jellyfish.

Everything is read from environment variables (prefix ``JELLYFISH_``) or a
local ``.env`` file. Paths are resolved lazily so tests can point
``data_dir`` at a temporary directory.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class JellyfishSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="JELLYFISH_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Telegram
    telegram_token: str = ""
    allowed_chat_ids: str = ""  # comma-separated
    poll_timeout_s: int = Field(default=30, ge=1)
    stream_edit_interval_s: float = Field(default=0.7, ge=0)
    typing_interval_s: float = Field(default=4.0, gt=0)

    # Agent engine
    model: str = "sonnet"

    # Data
    data_dir: str = "~/.jellyfish"

    # Jobs
    job_output_limit: int = Field(default=3000, ge=1)
    job_list_limit: int = Field(default=10, ge=1)

    # Permissions
    permission_timeout_s: float = Field(default=120.0, gt=0)

    # Logging
    log_level: str = "INFO"
    log_file: str = ""

    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir).expanduser()

    def sessions_dir(self) -> Path:
        return self.resolved_data_dir() / "sessions"

    def jobs_file(self) -> Path:
        return self.resolved_data_dir() / "jobs.json"

    def memory_dir(self) -> Path:
        return self.resolved_data_dir() / "memory"

    def uploads_dir(self) -> Path:
        return self.resolved_data_dir() / "uploads"

    def allowed_chats(self) -> set[str]:
        return {part.strip() for part in self.allowed_chat_ids.split(",") if part.strip()}

    def validate_for_bot(self) -> list[str]:
        """Return human-readable problems that prevent the bot from starting."""
        problems: list[str] = []
        if not self.telegram_token:
            problems.append("JELLYFISH_TELEGRAM_TOKEN is not set")
        if not self.allowed_chats():
            problems.append("JELLYFISH_ALLOWED_CHAT_IDS is empty")
        return problems
