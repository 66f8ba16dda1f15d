"""Background job registry persisted as a single JSON list.

Every mutation is a read-modify-write of the whole file under one
``asyncio.Lock``, so concurrent jobs never overwrite each other's records.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from jellyfish.store.files import read_json, write_json_atomic


class AgentKind(str, Enum):
    CODEX = "codex"
    OPENCODE = "opencode"
    CLAUDE = "claude"


class JobStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


@dataclass(frozen=True)
class Job:
    id: str
    agent: AgentKind
    task: str
    workdir: str
    conversation_id: str
    status: JobStatus
    started_at: str
    output: str = ""
    pid: int | None = None
    completed_at: str | None = None
    exit_code: int | None = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent": self.agent.value,
            "task": self.task,
            "workdir": self.workdir,
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "pid": self.pid,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "exit_code": self.exit_code,
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Job | None:
        """Parse a stored record; ``None`` for anything malformed.

        Accepts the older camelCase keys as well.
        """
        if not isinstance(data, dict):
            return None

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return None

        try:
            agent = AgentKind(data.get("agent"))
            status = JobStatus(data.get("status"))
        except ValueError:
            return None

        job_id = data.get("id")
        task = data.get("task")
        workdir = data.get("workdir")
        conversation_id = pick("conversation_id", "chatId")
        started_at = pick("started_at", "startedAt")
        output = data.get("output")
        if not all(isinstance(v, str) for v in (job_id, task, workdir, conversation_id, started_at, output)):
            return None

        pid = data.get("pid")
        exit_code = pick("exit_code", "exitCode")
        completed_at = pick("completed_at", "completedAt")
        return cls(
            id=job_id,
            agent=agent,
            task=task,
            workdir=workdir,
            conversation_id=conversation_id,
            status=status,
            started_at=started_at,
            output=output,
            pid=pid if isinstance(pid, int) else None,
            completed_at=completed_at if isinstance(completed_at, str) else None,
            exit_code=exit_code if isinstance(exit_code, int) else None,
        )


def append_limited(existing: str, chunk: str, limit: int) -> str:
    """Append ``chunk`` and keep only the last ``limit`` characters."""
    merged = existing + chunk
    if len(merged) <= limit:
        return merged
    return merged[-limit:] if limit > 0 else ""


class JobStore:
    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def load(self) -> list[Job]:
        """Read every valid record; malformed ones are dropped."""
        try:
            parsed = read_json(self._path, default=[])
        except json.JSONDecodeError:
            logger.warning("Job registry {} is not valid JSON; treating it as empty", self._path)
            return []
        if not isinstance(parsed, list):
            return []
        jobs: list[Job] = []
        for item in parsed:
            job = Job.from_dict(item)
            if job is None:
                logger.warning("Dropping malformed job record from {}", self._path)
                continue
            jobs.append(job)
        return jobs

    def _save(self, jobs: list[Job]) -> None:
        write_json_atomic(self._path, [job.to_dict() for job in jobs])

    async def append(self, job: Job) -> None:
        async with self._lock:
            jobs = self.load()
            jobs.append(job)
            self._save(jobs)

    async def update(self, job_id: str, updater: Callable[[Job], Job]) -> Job | None:
        """Atomically apply ``updater`` to one record; ``None`` if absent."""
        async with self._lock:
            jobs = self.load()
            for index, job in enumerate(jobs):
                if job.id == job_id:
                    updated = updater(job)
                    jobs[index] = updated
                    self._save(jobs)
                    return updated
            return None

    async def update_where(self, predicate: Callable[[Job], bool], updater: Callable[[Job], Job]) -> list[Job]:
        """Apply ``updater`` to every matching record in one locked write."""
        async with self._lock:
            jobs = self.load()
            changed: list[Job] = []
            for index, job in enumerate(jobs):
                if predicate(job):
                    jobs[index] = updater(job)
                    changed.append(jobs[index])
            if changed:
                self._save(jobs)
            return changed

    async def append_output(self, job_id: str, chunk: str, limit: int) -> Job | None:
        return await self.update(
            job_id, lambda job: replace(job, output=append_limited(job.output, chunk, limit))
        )

    def get(self, job_id: str) -> Job | None:
        for job in self.load():
            if job.id == job_id:
                return job
        return None

    def list_for(self, conversation_id: str, limit: int = 10) -> list[Job]:
        jobs = [job for job in self.load() if job.conversation_id == conversation_id]
        jobs.sort(key=lambda job: job.started_at, reverse=True)
        return jobs[:limit]

    def find_by_prefix(self, conversation_id: str, prefix: str) -> Job | None:
        for job in self.load():
            if job.conversation_id == conversation_id and job.id.startswith(prefix):
                return job
        return None
