import asyncio
import contextlib
import os
import signal
import sys

import pytest

from jellyfish.jobs.supervisor import JobSupervisor, command_for_agent
from jellyfish.store.jobs import AgentKind, Job, JobStatus, JobStore


def python_command(_agent: AgentKind, task: str) -> list[str]:
    # jobs run the task text as a python snippet
    return [sys.executable, "-c", task]


def make_supervisor(tmp_path, **kwargs) -> JobSupervisor:
    return JobSupervisor(JobStore(tmp_path / "jobs.json"), command_builder=python_command, **kwargs)


def test_command_for_agent() -> None:
    assert command_for_agent(AgentKind.CODEX, "t") == ["codex", "--full-auto", "exec", "t"]
    assert command_for_agent(AgentKind.OPENCODE, "t") == ["opencode", "run", "t"]
    assert command_for_agent(AgentKind.CLAUDE, "t") == [
        "claude",
        "--permission-mode",
        "acceptEdits",
        "--print",
        "t",
    ]


async def test_output_is_truncated_to_tail(tmp_path) -> None:
    supervisor = make_supervisor(tmp_path, output_limit=3000)
    completed = []

    job = await supervisor.spawn(
        AgentKind.CODEX,
        "import sys; sys.stdout.write('A' * 5000); sys.stdout.flush()",
        str(tmp_path),
        "chat",
        completed.append,
    )
    assert job.status is JobStatus.RUNNING
    assert job.pid is not None

    await supervisor.wait(job.id)
    final = supervisor.get(job.id)

    assert final.status is JobStatus.DONE
    assert final.exit_code == 0
    assert final.output == "A" * 3000
    assert final.completed_at is not None
    assert [j.id for j in completed] == [job.id]
    assert completed[0].status is JobStatus.DONE


async def test_stderr_and_nonzero_exit_mark_failed(tmp_path) -> None:
    supervisor = make_supervisor(tmp_path)

    job = await supervisor.spawn(
        AgentKind.CLAUDE,
        "import sys; sys.stderr.write('boom'); sys.exit(3)",
        str(tmp_path),
        "chat",
    )
    await supervisor.wait(job.id)
    final = supervisor.get(job.id)

    assert final.status is JobStatus.FAILED
    assert final.exit_code == 3
    assert "boom" in final.output


async def test_async_completion_callback_is_awaited(tmp_path) -> None:
    supervisor = make_supervisor(tmp_path)
    seen = []

    async def on_complete(job):
        seen.append(job.status)

    job = await supervisor.spawn(AgentKind.CODEX, "print('hi')", str(tmp_path), "chat", on_complete)
    await supervisor.wait(job.id)

    assert seen == [JobStatus.DONE]


async def test_kill_is_sticky_and_idempotent(tmp_path) -> None:
    supervisor = make_supervisor(tmp_path)
    completed = []

    job = await supervisor.spawn(
        AgentKind.CODEX, "import time; time.sleep(30)", str(tmp_path), "chat", completed.append
    )
    killed = await supervisor.kill(job.id)
    assert killed.status is JobStatus.KILLED

    await supervisor.wait(job.id)
    final = supervisor.get(job.id)

    assert final.status is JobStatus.KILLED
    assert final.exit_code is not None and final.exit_code != 0
    assert final.completed_at == killed.completed_at
    assert len(completed) == 1

    again = await supervisor.kill(job.id)
    assert again.status is JobStatus.KILLED
    assert again.exit_code == final.exit_code


async def test_kill_unknown_job_returns_none(tmp_path) -> None:
    supervisor = make_supervisor(tmp_path)

    assert await supervisor.kill("missing") is None


async def test_spawn_error_propagates_and_records_nothing(tmp_path) -> None:
    supervisor = JobSupervisor(
        JobStore(tmp_path / "jobs.json"),
        command_builder=lambda _a, _t: [str(tmp_path / "no-such-binary")],
    )

    with pytest.raises(OSError):
        await supervisor.spawn(AgentKind.CODEX, "x", str(tmp_path), "chat")

    assert supervisor.list("chat") == []


async def test_list_and_find_are_per_conversation(tmp_path) -> None:
    supervisor = make_supervisor(tmp_path, list_limit=2)
    jobs = []
    for chat in ("a", "a", "a", "b"):
        job = await supervisor.spawn(AgentKind.CODEX, "pass", str(tmp_path), chat)
        jobs.append(job)
    for job in jobs:
        await supervisor.wait(job.id)

    listed = supervisor.list("a")
    assert len(listed) == 2
    assert all(job.conversation_id == "a" for job in listed)

    assert supervisor.find("a", jobs[3].short_id) is None
    assert supervisor.find("b", jobs[3].short_id).id == jobs[3].id


class FlakyJobStore(JobStore):
    """Fails the first output write, like a full disk that recovers."""

    def __init__(self, path):
        super().__init__(path)
        self.failures = 0

    async def append_output(self, job_id, chunk, limit):
        if self.failures == 0:
            self.failures += 1
            raise OSError("disk full")
        return await super().append_output(job_id, chunk, limit)


async def test_output_write_failure_keeps_draining(tmp_path) -> None:
    store = FlakyJobStore(tmp_path / "jobs.json")
    supervisor = JobSupervisor(store, command_builder=python_command)
    completed = []

    job = await supervisor.spawn(
        AgentKind.CODEX,
        "import sys; sys.stdout.write('A' * 300000); sys.stdout.flush()",
        str(tmp_path),
        "chat",
        completed.append,
    )
    await asyncio.wait_for(supervisor.wait(job.id), timeout=30)
    final = supervisor.get(job.id)

    assert store.failures == 1
    assert final.status is JobStatus.DONE
    assert final.exit_code == 0
    assert final.output == "A" * 3000
    assert [j.status for j in completed] == [JobStatus.DONE]


async def test_recover_fails_jobs_left_running(tmp_path) -> None:
    store = JobStore(tmp_path / "jobs.json")
    base = dict(
        agent=AgentKind.CODEX,
        task="t",
        workdir="/tmp",
        conversation_id="chat",
        started_at="2026-01-01T00:00:00+00:00",
    )
    await store.append(Job(id="stale", status=JobStatus.RUNNING, pid=999999, **base))
    await store.append(Job(id="finished", status=JobStatus.DONE, exit_code=0, completed_at="x", **base))

    recovered = await JobSupervisor(store).recover()

    assert [job.id for job in recovered] == ["stale"]
    stale = store.get("stale")
    assert stale.status is JobStatus.FAILED
    assert stale.completed_at is not None
    assert store.get("finished").status is JobStatus.DONE
    assert store.get("finished").completed_at == "x"


async def test_shutdown_records_unwatched_jobs_as_failed(tmp_path) -> None:
    supervisor = make_supervisor(tmp_path)
    job = await supervisor.spawn(AgentKind.CODEX, "import time; time.sleep(30)", str(tmp_path), "chat")

    try:
        await supervisor.shutdown()

        final = supervisor.get(job.id)
        assert final.status is JobStatus.FAILED
        assert final.completed_at is not None
        assert (await supervisor.kill(job.id)).status is JobStatus.FAILED
    finally:
        with contextlib.suppress(ProcessLookupError):
            os.kill(job.pid, signal.SIGKILL)
