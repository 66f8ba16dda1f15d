"""Background job supervisor.

Spawns one external agent process per job, pumps stdout and stderr into the
job's bounded output, and records exactly one terminal status on exit.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import os
import signal
import uuid
from dataclasses import replace
from typing import Awaitable, Callable

from loguru import logger

from jellyfish.store.files import now_iso
from jellyfish.store.jobs import AgentKind, Job, JobStatus, JobStore

OnComplete = Callable[[Job], Awaitable[None] | None]
CommandBuilder = Callable[[AgentKind, str], list[str]]

_READ_SIZE = 1024


def command_for_agent(agent: AgentKind, task: str) -> list[str]:
    if agent is AgentKind.CODEX:
        return ["codex", "--full-auto", "exec", task]
    if agent is AgentKind.OPENCODE:
        return ["opencode", "run", task]
    if agent is AgentKind.CLAUDE:
        return ["claude", "--permission-mode", "acceptEdits", "--print", task]
    raise ValueError(f"Unknown agent: {agent!r}")


def _orphaned(job: Job) -> Job:
    return replace(job, status=JobStatus.FAILED, completed_at=now_iso())


def _terminal_status(job: Job, exit_code: int) -> Job:
    if job.status.is_terminal:
        # Already killed: keep status and completion time, record the code.
        return replace(job, exit_code=exit_code)
    return replace(
        job,
        status=JobStatus.DONE if exit_code == 0 else JobStatus.FAILED,
        completed_at=now_iso(),
        exit_code=exit_code,
    )


class JobSupervisor:
    def __init__(
        self,
        store: JobStore,
        *,
        output_limit: int = 3000,
        list_limit: int = 10,
        command_builder: CommandBuilder = command_for_agent,
    ):
        self._store = store
        self._output_limit = output_limit
        self._list_limit = list_limit
        self._command_builder = command_builder
        self._tasks: dict[str, asyncio.Task[None]] = {}

    async def spawn(
        self,
        agent: AgentKind,
        task: str,
        workdir: str,
        conversation_id: str,
        on_complete: OnComplete | None = None,
    ) -> Job:
        """Start a job and return its ``running`` record immediately.

        Process creation errors (missing binary, bad workdir) propagate.
        """
        job_id = uuid.uuid4().hex
        command = self._command_builder(agent, task)
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
        )

        job = Job(
            id=job_id,
            agent=agent,
            task=task,
            workdir=workdir,
            conversation_id=conversation_id,
            status=JobStatus.RUNNING,
            started_at=now_iso(),
            pid=process.pid,
        )
        await self._store.append(job)
        logger.info("Job {} started: {} pid={} cwd={}", job.short_id, agent.value, process.pid, workdir)

        supervise = asyncio.create_task(self._supervise(job_id, process, on_complete))
        self._tasks[job_id] = supervise
        supervise.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        return job

    async def _supervise(
        self,
        job_id: str,
        process: asyncio.subprocess.Process,
        on_complete: OnComplete | None,
    ) -> None:
        await asyncio.gather(
            self._pump(job_id, process.stdout, "stdout"),
            self._pump(job_id, process.stderr, "stderr"),
        )
        exit_code = await process.wait()

        try:
            final = await self._store.update(job_id, lambda job: _terminal_status(job, exit_code))
        except Exception:
            logger.exception("Failed to record exit of job {}", job_id[:8])
            return
        if final is None:
            logger.warning("Job {} vanished from the registry before it exited", job_id[:8])
            return
        logger.info("Job {} finished: status={} exit_code={}", final.short_id, final.status.value, exit_code)

        if on_complete is None:
            return
        try:
            res = on_complete(final)
            if inspect.isawaitable(res):
                await res
        except Exception:
            logger.exception("Completion callback failed for job {}", final.short_id)

    async def _pump(self, job_id: str, pipe: asyncio.StreamReader | None, stream_name: str) -> None:
        if pipe is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = await pipe.read(_READ_SIZE)
            except Exception:
                logger.exception("Reading {} of job {} failed", stream_name, job_id[:8])
                return
            text = decoder.decode(chunk, final=not chunk)
            if text:
                await self._record_output(job_id, text, stream_name)
            if not chunk:
                return

    async def _record_output(self, job_id: str, text: str, stream_name: str) -> None:
        # the pipe must keep draining even when a write fails, or the child blocks
        try:
            await self._store.append_output(job_id, text, self._output_limit)
        except Exception:
            logger.exception("Dropped {} chars of {} for job {}", len(text), stream_name, job_id[:8])

    async def kill(self, job_id: str) -> Job | None:
        """Signal a running job. Idempotent for jobs already terminal.

        The record is marked ``killed`` before the signal goes out, so the
        exit handler always finds the kill and keeps that status.
        """
        job = self._store.get(job_id)
        if job is None:
            return None
        if job.status.is_terminal:
            return job

        transitioned = False

        def mark_killed(current: Job) -> Job:
            nonlocal transitioned
            if current.status.is_terminal:
                return current
            transitioned = True
            return replace(current, status=JobStatus.KILLED, completed_at=now_iso())

        killed = await self._store.update(job_id, mark_killed)
        if killed is None or not transitioned:
            return killed

        if killed.pid is not None:
            try:
                os.kill(killed.pid, signal.SIGTERM)
            except ProcessLookupError:
                logger.info("Job {} pid {} already gone", killed.short_id, killed.pid)
        logger.info("Job {} killed", killed.short_id)
        return killed

    def get(self, job_id: str) -> Job | None:
        return self._store.get(job_id)

    def list(self, conversation_id: str) -> list[Job]:
        return self._store.list_for(conversation_id, limit=self._list_limit)

    def find(self, conversation_id: str, id_prefix: str) -> Job | None:
        return self._store.find_by_prefix(conversation_id, id_prefix)

    async def wait(self, job_id: str) -> None:
        """Wait until supervision of ``job_id`` (including its callback) ends."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def recover(self) -> list[Job]:
        """Fail ``running`` records this supervisor is not watching.

        Called at startup for jobs left behind by a previous process.
        """
        orphans = await self._store.update_where(
            lambda job: job.status is JobStatus.RUNNING and job.id not in self._tasks,
            _orphaned,
        )
        for job in orphans:
            logger.warning("Job {} was left running by a previous run; marked failed", job.short_id)
        return orphans

    async def shutdown(self) -> None:
        """Stop supervising; jobs still running are recorded as failed."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.recover()


__all__ = ["JobSupervisor", "command_for_agent"]
