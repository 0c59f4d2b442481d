"""Tests for queue retries, timeouts, clearing, priorities and health."""

import asyncio
import time

import pytest

from hanzi_enrich.errors import MalformedInput, ProviderChainExhausted, StorageFailure
from hanzi_enrich.job_queue import (
    Job,
    QueueCounts,
    QueueManager,
    WorkerStats,
    build_status,
    derive_health,
)
from hanzi_enrich.models import FailureClass, HealthState, JobState, QueueName

CARD = QueueName.CARD_ENRICHMENT


def _manager(handlers, concurrency=1, **kwargs):
    kwargs.setdefault("retry_backoff_s", 0.01)
    return QueueManager(
        handlers,
        concurrency={name.value: concurrency for name in handlers},
        **kwargs,
    )


async def _run_one(manager, payload=None, queue=CARD):
    await manager.start()
    try:
        job = await manager.enqueue(queue, payload or {})
        return await manager.wait(job)
    finally:
        await manager.stop()


def test_job_completes():
    async def handler(job, ctx):
        ctx.report(processed=1, total=1, current_item="累")
        return {"echo": job.payload["value"]}

    job = asyncio.run(_run_one(_manager({CARD: handler}), {"value": 42}))

    assert job.state == JobState.COMPLETED
    assert job.result == {"echo": 42}
    assert job.attempts == 1
    assert job.progress.current_item == "累"


def test_permanent_failure_is_not_retried():
    async def handler(job, ctx):
        raise MalformedInput("empty character")

    job = asyncio.run(_run_one(_manager({CARD: handler})))

    assert job.state == JobState.FAILED
    assert job.attempts == 1
    assert job.failure_class == FailureClass.PERMANENT
    assert "empty character" in job.error


def test_transient_failure_is_retried():
    async def handler(job, ctx):
        if job.attempts < 3:
            raise ProviderChainExhausted("interpret", [])
        return "ok"

    job = asyncio.run(_run_one(_manager({CARD: handler})))

    assert job.state == JobState.COMPLETED
    assert job.attempts == 3
    assert job.error is None


def test_transient_retries_are_capped():
    async def handler(job, ctx):
        raise ProviderChainExhausted("interpret", [])

    job = asyncio.run(_run_one(_manager({CARD: handler}, retry_limit=2)))

    assert job.state == JobState.FAILED
    assert job.attempts == 3
    assert job.failure_class == FailureClass.TRANSIENT


def test_storage_failure_retried_once():
    async def handler(job, ctx):
        raise StorageFailure("db down")

    job = asyncio.run(_run_one(_manager({CARD: handler})))

    assert job.state == JobState.FAILED
    assert job.attempts == 2
    assert job.failure_class == FailureClass.PERMANENT


def test_first_timeout_is_retried():
    async def handler(job, ctx):
        if job.attempts == 1:
            await asyncio.sleep(1)
        return "done"

    job = asyncio.run(_run_one(_manager({CARD: handler}, job_timeouts_s={CARD.value: 0.05})))

    assert job.state == JobState.COMPLETED
    assert job.attempts == 2
    assert job.timeouts == 1


def test_repeated_timeout_fails():
    async def handler(job, ctx):
        await asyncio.sleep(1)

    job = asyncio.run(_run_one(_manager({CARD: handler}, job_timeouts_s={CARD.value: 0.02})))

    assert job.state == JobState.FAILED
    assert job.attempts == 2
    assert "JobTimeout" in job.error


def test_higher_priority_runs_first():
    order = []

    async def run():
        release = asyncio.Event()

        async def handler(job, ctx):
            if job.payload["name"] == "blocker":
                await release.wait()
            order.append(job.payload["name"])

        manager = _manager({CARD: handler})
        await manager.start()
        try:
            blocker = await manager.enqueue(CARD, {"name": "blocker"})
            await asyncio.sleep(0.01)
            await manager.enqueue(CARD, {"name": "bulk"}, priority=10)
            await manager.enqueue(CARD, {"name": "user"}, priority=100)
            release.set()
            await manager.join()
            return await manager.wait(blocker)
        finally:
            await manager.stop()

    asyncio.run(run())

    assert order == ["blocker", "user", "bulk"]


def test_clear_never_touches_active_jobs():
    async def run():
        started, release = asyncio.Event(), asyncio.Event()

        async def handler(job, ctx):
            started.set()
            await release.wait()
            return "finished"

        manager = _manager({CARD: handler})
        await manager.start()
        try:
            active = await manager.enqueue(CARD, {"n": 1})
            await manager.enqueue(CARD, {"n": 2})
            await manager.enqueue(CARD, {"n": 3})
            await started.wait()

            with pytest.raises(ValueError):
                await manager.clear(states=[JobState.ACTIVE])
            cleared = await manager.clear(states=[JobState.WAITING])
            counts = manager.status().queues[CARD.value]

            release.set()
            finished = await manager.wait(active)
            await manager.join()
            return cleared, counts, finished, manager.status().queues[CARD.value]
        finally:
            await manager.stop()

    cleared, counts, finished, final_counts = asyncio.run(run())

    assert cleared == {CARD.value: {"waiting": 2}}
    assert counts.waiting == 0
    assert counts.active == 1
    assert finished.state == JobState.COMPLETED
    assert final_counts.completed == 1


def test_clear_finished_records():
    async def run():
        async def handler(job, ctx):
            if job.payload.get("fail"):
                raise MalformedInput("bad")
            return "ok"

        manager = _manager({CARD: handler})
        await manager.start()
        try:
            await manager.enqueue(CARD, {})
            await manager.enqueue(CARD, {"fail": True})
            await manager.join()
            cleared = await manager.clear(states=[JobState.COMPLETED, JobState.FAILED])
            return cleared, manager.status().queues[CARD.value]
        finally:
            await manager.stop()

    cleared, counts = asyncio.run(run())

    assert cleared[CARD.value] == {"completed": 1, "failed": 1}
    assert counts.total == 0


def test_follow_up_jobs_are_joined():
    processed = []

    async def bulk(job, ctx):
        for character in job.payload["characters"]:
            await ctx.enqueue(CARD, {"character": character}, priority=10)
        return len(job.payload["characters"])

    async def card(job, ctx):
        processed.append(job.payload["character"])

    async def run():
        manager = _manager({QueueName.BULK_IMPORT: bulk, CARD: card})
        await manager.start()
        try:
            await manager.enqueue(QueueName.BULK_IMPORT, {"characters": ["累", "好", "長"]})
            await manager.join()
            return manager.status()
        finally:
            await manager.stop()

    status = asyncio.run(run())

    assert sorted(processed) == sorted(["累", "好", "長"])
    assert status.queues[CARD.value].completed == 3
    assert status.queues[QueueName.BULK_IMPORT.value].completed == 1
    assert status.health == HealthState.HEALTHY


def test_retention_drops_oldest_records():
    async def handler(job, ctx):
        return None

    async def run():
        manager = _manager({CARD: handler})
        manager.queues[CARD].keep_completed = 2
        await manager.start()
        try:
            for n in range(4):
                await manager.enqueue(CARD, {"n": n})
            await manager.join()
            return manager.queues[CARD]
        finally:
            await manager.stop()

    queue = asyncio.run(run())

    assert queue.counts().completed == 2
    assert sorted(job.payload["n"] for job in queue.jobs.values()) == [2, 3]


def test_pending_jobs_recovered_from_store(job_store):
    job_store.save_job(Job(id="left-over", queue=CARD, payload={"character": "累"}, state=JobState.ACTIVE))
    seen = []

    async def handler(job, ctx):
        seen.append(job.id)
        return "ok"

    async def run():
        manager = _manager({CARD: handler}, store=job_store)
        await manager.start()
        try:
            await manager.join()
        finally:
            await manager.stop()

    asyncio.run(run())

    assert seen == ["left-over"]
    assert job_store.counts()[CARD.value].completed == 1
    status = build_status(job_store.counts(), job_store.workers())
    assert status.health == HealthState.ERROR
    assert status.reasons == ["no workers running"]


def _worker(name="card-enrichment-0", age_s=0.0, now=1000.0, running=True):
    return WorkerStats(name=name, queue=CARD, last_heartbeat=now - age_s, running=running)


def test_health_without_workers():
    assert derive_health({}, [], now=1000.0) == (HealthState.ERROR, ["no workers running"])
    assert derive_health({}, [_worker(running=False)], now=1000.0)[0] == HealthState.ERROR


def test_health_with_stale_heartbeats():
    assert derive_health({}, [_worker(age_s=120)], now=1000.0) == (HealthState.ERROR, ["no healthy workers"])

    state, reasons = derive_health({}, [_worker(), _worker("card-enrichment-1", age_s=120)], now=1000.0)
    assert state == HealthState.DEGRADED
    assert reasons == ["stale workers: card-enrichment-1"]


def test_health_backlog_and_failure_rate():
    workers = [_worker()]

    assert derive_health({CARD.value: QueueCounts(waiting=101)}, workers, now=1000.0)[0] == HealthState.DEGRADED
    assert derive_health({CARD.value: QueueCounts(failed=5, completed=10)}, workers, now=1000.0)[0] \
        == HealthState.DEGRADED
    assert derive_health({CARD.value: QueueCounts(failed=1, completed=100)}, workers, now=1000.0) \
        == (HealthState.HEALTHY, [])


def test_status_report_lists_workers():
    report = build_status({CARD.value: QueueCounts(completed=3)}, [_worker(now=time.time())])

    assert report.health == HealthState.HEALTHY
    assert report.workers[0].is_healthy
    assert report.queues[CARD.value].completed == 3
