import asyncio
import json
from dataclasses import replace

from jellyfish.store.jobs import AgentKind, Job, JobStatus, JobStore, append_limited


def _job(job_id: str, *, chat: str = "c1", started_at: str = "2026-01-01T00:00:00+00:00") -> Job:
    return Job(
        id=job_id,
        agent=AgentKind.CODEX,
        task="fix tests",
        workdir="/tmp",
        conversation_id=chat,
        status=JobStatus.RUNNING,
        started_at=started_at,
    )


def test_append_limited_keeps_tail() -> None:
    assert append_limited("abc", "def", 10) == "abcdef"
    assert append_limited("abc", "def", 4) == "cdef"
    assert append_limited("", "x" * 5000, 3000) == "x" * 3000


async def test_concurrent_appends_keep_every_record(tmp_path) -> None:
    store = JobStore(tmp_path / "jobs.json")

    await asyncio.gather(*(store.append(_job(f"job{i:02d}")) for i in range(20)))

    assert sorted(job.id for job in store.load()) == [f"job{i:02d}" for i in range(20)]


async def test_concurrent_updates_do_not_lose_writes(tmp_path) -> None:
    store = JobStore(tmp_path / "jobs.json")
    await store.append(_job("a"))
    await store.append(_job("b"))

    await asyncio.gather(
        *(store.append_output("a", "1", 100) for _ in range(10)),
        *(store.append_output("b", "2", 100) for _ in range(10)),
    )

    assert store.get("a").output == "1" * 10
    assert store.get("b").output == "2" * 10


async def test_update_missing_job_returns_none(tmp_path) -> None:
    store = JobStore(tmp_path / "jobs.json")

    assert await store.update("nope", lambda j: replace(j, status=JobStatus.DONE)) is None


def test_malformed_records_are_dropped(tmp_path) -> None:
    path = tmp_path / "jobs.json"
    good = _job("good").to_dict()
    path.write_text(
        json.dumps([good, {"id": "bad", "agent": "nope"}, "junk", {"id": 1}]),
        encoding="utf-8",
    )

    assert [job.id for job in JobStore(path).load()] == ["good"]


def test_invalid_json_registry_is_empty(tmp_path) -> None:
    path = tmp_path / "jobs.json"
    path.write_text("[{", encoding="utf-8")

    assert JobStore(path).load() == []


def test_legacy_camel_case_records_load(tmp_path) -> None:
    path = tmp_path / "jobs.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": "abcdef1234",
                    "agent": "opencode",
                    "task": "t",
                    "workdir": "/w",
                    "chatId": "99",
                    "status": "done",
                    "pid": 123,
                    "startedAt": "2026-01-01T00:00:00Z",
                    "completedAt": "2026-01-01T00:01:00Z",
                    "exitCode": 0,
                    "output": "ok",
                }
            ]
        ),
        encoding="utf-8",
    )

    (job,) = JobStore(path).load()

    assert job.conversation_id == "99"
    assert job.agent is AgentKind.OPENCODE
    assert job.status is JobStatus.DONE
    assert job.exit_code == 0
    assert job.completed_at == "2026-01-01T00:01:00Z"


async def test_list_for_is_scoped_newest_first_and_limited(tmp_path) -> None:
    store = JobStore(tmp_path / "jobs.json")
    for i in range(12):
        await store.append(_job(f"j{i:02d}", started_at=f"2026-01-01T00:00:{i:02d}+00:00"))
    await store.append(_job("other", chat="c2"))

    listed = store.list_for("c1", limit=10)

    assert len(listed) == 10
    assert listed[0].id == "j11"
    assert listed[-1].id == "j02"
    assert all(job.conversation_id == "c1" for job in listed)


async def test_find_by_prefix_is_scoped_to_conversation(tmp_path) -> None:
    store = JobStore(tmp_path / "jobs.json")
    await store.append(_job("abc123", chat="c1"))
    await store.append(_job("abd456", chat="c2"))

    assert store.find_by_prefix("c1", "abc").id == "abc123"
    assert store.find_by_prefix("c1", "abd") is None


async def test_update_where_touches_only_matching_records(tmp_path) -> None:
    store = JobStore(tmp_path / "jobs.json")
    await store.append(_job("a", chat="c1"))
    await store.append(_job("b", chat="c2"))

    changed = await store.update_where(
        lambda job: job.conversation_id == "c1",
        lambda job: replace(job, status=JobStatus.FAILED),
    )

    assert [job.id for job in changed] == ["a"]
    assert store.get("a").status is JobStatus.FAILED
    assert store.get("b").status is JobStatus.RUNNING
    assert await store.update_where(lambda job: False, lambda job: job) == []
