"""
Telegram front end.

Long-polls ``getUpdates`` and dispatches each update as its own task. Turns
for the same chat run one at a time behind a per-chat lock; callback
queries skip that lock since the running turn may be waiting on them.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any

from loguru import logger

from jellyfish.agent.context import attachment_turn_text
from jellyfish.agent.loop import FALLBACK_TEXT, AgentInvoker
from jellyfish.errors import ServiceUnavailableError
from jellyfish.jobs.supervisor import JobSupervisor
from jellyfish.permissions import CORRELATION_PREFIX, USER_DENIED, PermissionBroker, PermissionDecision
from jellyfish.store.conversations import ConversationStore
from jellyfish.store.jobs import Job, JobStatus
from jellyfish.telegram.api import TelegramApi, TelegramApiError, inline_keyboard
from jellyfish.telegram.text import TELEGRAM_MAX_TEXT_LEN, parse_run_args, relative_time, split_text

BOT_COMMANDS = [
    ("new", "Start a fresh conversation"),
    ("status", "Show session info"),
    ("run", "Run a coding agent in the background"),
    ("jobs", "List recent background jobs"),
    ("kill", "Kill a running background job"),
]

ACCESS_DENIED = "Access denied."
THINKING = "Thinking..."
JOB_OUTPUT_TAIL = 2000
RUN_USAGE = "Usage: /run <codex|opencode|claude> [--workdir PATH] <task>"

STATUS_EMOJI = {
    JobStatus.RUNNING: "⏳",
    JobStatus.DONE: "✅",
    JobStatus.FAILED: "❌",
    JobStatus.KILLED: "🛑",
}


class TelegramPermissionPrompter:
    """Shows permission prompts as messages with Allow/Deny buttons."""

    def __init__(self, api: TelegramApi):
        self._api = api

    async def send_prompt(self, conversation_id: str, correlation_id: str, text: str) -> int | None:
        keyboard = inline_keyboard(
            [[("✅ Allow", f"{correlation_id}:allow"), ("❌ Deny", f"{correlation_id}:deny")]]
        )
        sent = await self._api.send_message(conversation_id, text, reply_markup=keyboard)
        return sent.get("message_id")

    async def mark_expired(self, conversation_id: str, prompt_ref: Any, text: str) -> None:
        if prompt_ref is None:
            return
        await self._api.edit_message_text(conversation_id, prompt_ref, text)


def parse_callback_data(data: str) -> tuple[str, bool] | None:
    """Split ``perm:<id>:allow|deny`` into (correlation id, allow)."""
    if not data.startswith(CORRELATION_PREFIX):
        return None
    correlation_id, _, action = data.rpartition(":")
    if not correlation_id or action not in ("allow", "deny"):
        return None
    return correlation_id, action == "allow"


def completion_text(job: Job) -> str:
    label = {
        JobStatus.DONE: "✅ Job finished",
        JobStatus.FAILED: "❌ Job failed",
        JobStatus.KILLED: "🛑 Job killed",
    }.get(job.status, job.status.value)
    output = job.output.strip()
    tail = output[-JOB_OUTPUT_TAIL:] if output else "(no output)"
    return f"{label}: {job.agent.value} {job.short_id}\nTask: {job.task}\n\n{tail}"


def jobs_text(jobs: list[Job]) -> str:
    if not jobs:
        return "No jobs yet."
    lines = []
    for job in jobs:
        emoji = STATUS_EMOJI.get(job.status, "•")
        lines.append(
            f"{emoji} {job.short_id} {job.agent.value} · {job.status.value} · {relative_time(job.started_at)}\n"
            f"   {job.task[:80]}"
        )
    return "\n".join(lines)


class TelegramBot:
    def __init__(
        self,
        *,
        api: TelegramApi,
        invoker: AgentInvoker,
        conversations: ConversationStore,
        supervisor: JobSupervisor,
        permissions: PermissionBroker,
        allowed_chats: set[str],
        uploads_dir: Path,
        poll_timeout_s: int = 30,
        stream_edit_interval_s: float = 0.7,
        typing_interval_s: float = 4.0,
    ):
        self.api = api
        self.invoker = invoker
        self.conversations = conversations
        self.supervisor = supervisor
        self.permissions = permissions
        self.allowed_chats = allowed_chats
        self.uploads_dir = uploads_dir
        self.poll_timeout_s = poll_timeout_s
        self.stream_edit_interval_s = stream_edit_interval_s
        self.typing_interval_s = typing_interval_s

        self._offset: int | None = None
        self._running = False
        self._chat_locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def run(self) -> None:
        try:
            await self.api.set_my_commands(BOT_COMMANDS)
        except Exception as e:
            logger.warning("setMyCommands failed: {}", e)

        self._running = True
        logger.info("Polling for updates (allowed chats: {})", ", ".join(sorted(self.allowed_chats)))
        while self._running:
            try:
                updates = await self.api.get_updates(self._offset, timeout_s=self.poll_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Polling error: {}", e)
                await asyncio.sleep(5)
                continue
            for update in updates:
                self._offset = max(self._offset or 0, int(update.get("update_id", 0)) + 1)
                self.dispatch(update)

    def dispatch(self, update: dict[str, Any]) -> asyncio.Task[None]:
        task = asyncio.create_task(self.handle_update(update))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def handle_update(self, update: dict[str, Any]) -> None:
        try:
            if "callback_query" in update:
                await self._handle_callback(update["callback_query"])
            elif "message" in update:
                await self._handle_message(update["message"])
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Failed to handle update {}", update.get("update_id"))

    def _chat_lock(self, chat_id: str) -> asyncio.Lock:
        lock = self._chat_locks.get(chat_id)
        if lock is None:
            lock = self._chat_locks[chat_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _handle_message(self, message: dict[str, Any]) -> None:
        chat_id = str((message.get("chat") or {}).get("id", ""))
        if not chat_id:
            return
        if chat_id not in self.allowed_chats:
            logger.warning("Rejected message from chat {}", chat_id)
            await self.api.send_message(chat_id, ACCESS_DENIED)
            return

        text = message.get("text")
        if isinstance(text, str) and text.startswith("/"):
            await self._handle_command(chat_id, text)
            return

        async with self._chat_lock(chat_id):
            if isinstance(text, str) and text.strip():
                await self._run_turn(chat_id, text)
                return
            turn_text = await self._attachment_text(message)
            if turn_text:
                await self._run_turn(chat_id, turn_text)

    async def _attachment_text(self, message: dict[str, Any]) -> str | None:
        caption = message.get("caption")
        if message.get("photo"):
            # sizes ascend; the last one is the original
            file_id, kind = message["photo"][-1]["file_id"], "photo"
        elif message.get("document"):
            file_id, kind = message["document"]["file_id"], "file"
        else:
            return None
        path = await self.api.download_file(file_id, self.uploads_dir)
        logger.info("Saved {} to {}", kind, path)
        return attachment_turn_text(path, caption, kind=kind)

    async def _run_turn(self, chat_id: str, text: str) -> None:
        draft = await self.api.send_message(chat_id, THINKING)
        draft_id = draft.get("message_id")
        typing = asyncio.create_task(self._keep_typing(chat_id))

        loop = asyncio.get_running_loop()
        last_edit = 0.0
        last_text = THINKING

        async def on_partial(partial: str) -> None:
            nonlocal last_edit, last_text
            shown = partial[:TELEGRAM_MAX_TEXT_LEN]
            now = loop.time()
            if draft_id is None or shown == last_text or now - last_edit < self.stream_edit_interval_s:
                return
            last_edit, last_text = now, shown
            try:
                await self.api.edit_message_text(chat_id, draft_id, shown)
            except TelegramApiError as e:
                logger.debug("Draft edit failed: {}", e)

        try:
            answer = await self.invoker.invoke(chat_id, text, on_partial)
        except ServiceUnavailableError as e:
            answer = str(e)
        except Exception as e:
            logger.exception("Turn failed in {}", chat_id)
            answer = f"Agent error: {e}"
        finally:
            typing.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await typing

        await self._deliver(chat_id, draft_id, answer or FALLBACK_TEXT)

    async def _deliver(self, chat_id: str, draft_id: int | None, text: str) -> None:
        first, *rest = split_text(text)
        if draft_id is not None:
            await self.api.edit_message_text(chat_id, draft_id, first)
        else:
            await self.api.send_message(chat_id, first)
        for chunk in rest:
            await self.api.send_message(chat_id, chunk)

    async def _keep_typing(self, chat_id: str) -> None:
        while True:
            try:
                await self.api.send_chat_action(chat_id, "typing")
            except TelegramApiError as e:
                logger.debug("sendChatAction failed: {}", e)
            await asyncio.sleep(self.typing_interval_s)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _handle_command(self, chat_id: str, text: str) -> None:
        head, _, args = text.strip().partition(" ")
        command = head[1:].split("@", 1)[0].lower()
        args = args.strip()

        if command == "new":
            self.conversations.clear(chat_id)
            reply = "Session cleared! Fresh start 🪼"
        elif command == "status":
            state = self.conversations.load(chat_id)
            session = "active" if state.continuation_handle else "none"
            reply = f"Session has {len(state.history)} messages.\nAgent session: {session}"
        elif command == "run":
            reply = await self._command_run(chat_id, args)
        elif command == "jobs":
            reply = jobs_text(self.supervisor.list(chat_id))
        elif command == "kill":
            reply = await self._command_kill(chat_id, args)
        elif command == "start":
            reply = "Hi! I'm Jellyfish 🪼 Send me a message to get started."
        else:
            reply = f"Unknown command: /{command}"
        await self.api.send_message(chat_id, reply)

    async def _command_run(self, chat_id: str, args: str) -> str:
        parsed = parse_run_args(args)
        if parsed is None:
            return RUN_USAGE

        async def notify(job: Job) -> None:
            await self.api.send_message(chat_id, completion_text(job))

        try:
            job = await self.supervisor.spawn(parsed.agent, parsed.task, parsed.workdir, chat_id, notify)
        except OSError as e:
            logger.warning("Could not start {} job: {}", parsed.agent.value, e)
            return f"Failed to start {parsed.agent.value}: {e}"
        return f"🚀 Started {job.agent.value} job {job.short_id}\nWorkdir: {job.workdir}"

    async def _command_kill(self, chat_id: str, args: str) -> str:
        prefix = args.split(" ", 1)[0] if args else ""
        if not prefix:
            return "Usage: /kill <job id>"
        job = self.supervisor.find(chat_id, prefix)
        if job is None:
            return f"No job matching {prefix}"
        if job.status.is_terminal:
            return f"Job {job.short_id} is already {job.status.value}."
        await self.supervisor.kill(job.id)
        return f"🛑 Killed job {job.short_id}"

    # ------------------------------------------------------------------
    # Permission callbacks
    # ------------------------------------------------------------------

    async def _handle_callback(self, query: dict[str, Any]) -> None:
        query_id = str(query.get("id", ""))
        message = query.get("message") or {}
        chat_id = str((message.get("chat") or {}).get("id", ""))
        if chat_id not in self.allowed_chats:
            await self.api.answer_callback_query(query_id, ACCESS_DENIED)
            return

        parsed = parse_callback_data(str(query.get("data") or ""))
        if parsed is None:
            await self.api.answer_callback_query(query_id)
            return
        correlation_id, allow = parsed

        decision = PermissionDecision.allowed() if allow else USER_DENIED
        if not self.permissions.resolve(correlation_id, decision):
            await self.api.answer_callback_query(query_id, "Request expired")
            return

        verdict = "✅ Allowed" if allow else "❌ Denied"
        message_id = message.get("message_id")
        if message_id is not None:
            try:
                await self.api.edit_message_text(chat_id, message_id, f"{message.get('text', '')}\n\n{verdict}")
            except TelegramApiError as e:
                logger.warning("Could not update permission prompt: {}", e)
        await self.api.answer_callback_query(query_id, verdict)
