"""Entry point: ``python -m jellyfish`` (or the ``jellyfish`` script)."""

from __future__ import annotations

import asyncio
import signal
import sys

from loguru import logger

from jellyfish.agent.loop import AgentInvoker
from jellyfish.jobs.supervisor import JobSupervisor
from jellyfish.permissions import PermissionBroker
from jellyfish.providers.claude_engine import ClaudeEngine
from jellyfish.settings import JellyfishSettings
from jellyfish.store.conversations import ConversationStore
from jellyfish.store.jobs import JobStore
from jellyfish.telegram.api import TelegramApi
from jellyfish.telegram.bot import TelegramBot, TelegramPermissionPrompter


def configure_logging(settings: JellyfishSettings) -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())
    if settings.log_file:
        logger.add(
            settings.log_file,
            level=settings.log_level.upper(),
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
        )


def build_bot(settings: JellyfishSettings, api: TelegramApi) -> tuple[TelegramBot, JobSupervisor, PermissionBroker]:
    data_dir = settings.resolved_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    conversations = ConversationStore(settings.sessions_dir())
    supervisor = JobSupervisor(
        JobStore(settings.jobs_file()),
        output_limit=settings.job_output_limit,
        list_limit=settings.job_list_limit,
    )
    broker = PermissionBroker(TelegramPermissionPrompter(api), timeout_s=settings.permission_timeout_s)
    engine = ClaudeEngine(model=settings.model, memory_dir=settings.memory_dir())
    invoker = AgentInvoker(engine=engine, conversations=conversations, permissions=broker)

    bot = TelegramBot(
        api=api,
        invoker=invoker,
        conversations=conversations,
        supervisor=supervisor,
        permissions=broker,
        allowed_chats=settings.allowed_chats(),
        uploads_dir=settings.uploads_dir(),
        poll_timeout_s=settings.poll_timeout_s,
        stream_edit_interval_s=settings.stream_edit_interval_s,
        typing_interval_s=settings.typing_interval_s,
    )
    return bot, supervisor, broker


async def serve(settings: JellyfishSettings) -> None:
    api = TelegramApi(settings.telegram_token, timeout_s=settings.poll_timeout_s + 15)
    bot, supervisor, broker = build_bot(settings, api)
    await supervisor.recover()

    loop = asyncio.get_running_loop()
    polling = asyncio.create_task(bot.run())
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, polling.cancel)
        except NotImplementedError:
            pass

    logger.info("Jellyfish 🪼 started (data dir: {})", settings.resolved_data_dir())
    try:
        await polling
    except asyncio.CancelledError:
        logger.info("Shutting down")
    finally:
        broker.cancel_all()
        await bot.stop()
        await supervisor.shutdown()
        await api.aclose()


def main() -> int:
    settings = JellyfishSettings()
    configure_logging(settings)

    problems = settings.validate_for_bot()
    if problems:
        for problem in problems:
            logger.error("Config: {}", problem)
        return 1

    asyncio.run(serve(settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
