import asyncio

import pytest

from app.models.domain import GenerationJobState, GenerationKind, JobResult
from app.queue.queue import LocalQueue
from app.storage.repository import JobResultStore


def make_result(job_id: str, success: bool = True) -> JobResult:
    return JobResult(
        job_id=job_id,
        kind=GenerationKind.IMAGE,
        success=success,
        state=GenerationJobState.COMPLETED if success else GenerationJobState.FAILED,
    )


def test_take_is_destructive():
    store = JobResultStore()
    store.put("a", make_result("a"))
    assert store.take_if_present("a").job_id == "a"
    assert store.take_if_present("a") is None


def test_put_overwrites_and_keys_are_independent():
    store = JobResultStore()
    store.put("a", make_result("a", success=False))
    store.put("b", make_result("b"))
    store.put("a", make_result("a"))
    assert store.take_if_present("a").success is True
    assert store.take_if_present("b") is not None


@pytest.mark.asyncio
async def test_local_queue_runs_jobs_and_absorbs_crashes():
    seen = []

    async def processor(job_id: str) -> None:
        await asyncio.sleep(0)
        if job_id == "bad":
            raise RuntimeError("boom")
        seen.append(job_id)

    queue = LocalQueue(processor)
    queue.enqueue("one")
    queue.enqueue("bad")
    queue.enqueue("two")
    assert queue.pending() == 3
    await queue.drain()
    assert sorted(seen) == ["one", "two"]
    assert queue.pending() == 0
