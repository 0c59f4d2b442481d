"""In-process job queues with bounded worker pools, delayed retries and a status surface."""

import asyncio
import heapq
import itertools
import time
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import structlog
from pydantic import BaseModel, Field

from .config import (
    HEARTBEAT_MAX_AGE_S,
    HIGH_BACKLOG_THRESHOLD,
    HIGH_FAILURE_RATE,
    JOB_TIMEOUT_S,
    KEEP_COMPLETED,
    KEEP_FAILED,
    RETRY_BACKOFF_S,
    TRANSIENT_RETRY_LIMIT,
    WORKER_CONCURRENCY,
)
from .errors import JobTimeout, StorageFailure, classify_failure
from .models import FailureClass, HealthState, JobState, QueueName

log = structlog.get_logger()

CLEARABLE_STATES = {JobState.WAITING, JobState.DELAYED, JobState.FAILED, JobState.COMPLETED}


class JobProgress(BaseModel):
    processed: int = 0
    total: int = 0
    current_item: Optional[str] = None
    stage: Optional[str] = None


class Job(BaseModel):
    id: str
    queue: QueueName
    payload: Dict[str, Any]
    priority: int = 0
    state: JobState = JobState.WAITING
    attempts: int = 0
    timeouts: int = 0
    progress: JobProgress = Field(default_factory=JobProgress)
    result: Optional[Any] = None
    error: Optional[str] = None
    failure_class: Optional[FailureClass] = None
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class WorkerStats(BaseModel):
    name: str
    queue: QueueName
    last_heartbeat: float = Field(default_factory=time.time)
    processed_jobs: int = 0
    failed_jobs: int = 0
    current_job: Optional[str] = None
    running: bool = True

    def beat(self):
        self.last_heartbeat = time.time()

    def is_healthy(self, max_age_s: float = HEARTBEAT_MAX_AGE_S, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.running and (now - self.last_heartbeat) <= max_age_s


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed


class WorkerReport(BaseModel):
    name: str
    queue: QueueName
    last_heartbeat: float
    is_healthy: bool
    processed_jobs: int
    failed_jobs: int
    current_job: Optional[str] = None


class StatusReport(BaseModel):
    health: HealthState
    reasons: List[str] = Field(default_factory=list)
    queues: Dict[str, QueueCounts]
    workers: List[WorkerReport]
    checked_at: float = Field(default_factory=time.time)


class JobContext:
    """Handed to a job handler so it can report progress and enqueue follow-up work."""

    def __init__(self, job: Job, stats: WorkerStats, manager: Optional["QueueManager"]):
        self.job = job
        self.stats = stats
        self.manager = manager

    def report(self, processed: Optional[int] = None, total: Optional[int] = None,
               current_item: Optional[str] = None, stage: Optional[str] = None):
        progress = self.job.progress
        if processed is not None:
            progress.processed = processed
        if total is not None:
            progress.total = total
        if current_item is not None:
            progress.current_item = current_item
        if stage is not None:
            progress.stage = stage
        self.stats.beat()

    async def enqueue(self, queue: QueueName, payload: Dict[str, Any], priority: int = 0) -> Job:
        if self.manager is None:
            raise RuntimeError("Job context has no queue manager")
        return await self.manager.enqueue(queue, payload, priority)


JobHandler = Callable[[Job, JobContext], Awaitable[Any]]


class JobQueue:
    """One queue category with its own bounded pool of workers."""

    def __init__(
        self,
        name: QueueName,
        handler: JobHandler,
        concurrency: int = 1,
        job_timeout_s: float = 300.0,
        retry_limit: int = TRANSIENT_RETRY_LIMIT,
        retry_backoff_s: float = RETRY_BACKOFF_S,
        keep_completed: int = KEEP_COMPLETED,
        keep_failed: int = KEEP_FAILED,
        heartbeat_interval_s: float = HEARTBEAT_MAX_AGE_S / 2,
        manager: Optional["QueueManager"] = None,
        store=None,
    ):
        self.name = name
        self.handler = handler
        self.concurrency = concurrency
        self.job_timeout_s = job_timeout_s
        self.retry_limit = retry_limit
        self.retry_backoff_s = retry_backoff_s
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.heartbeat_interval_s = heartbeat_interval_s
        self.manager = manager
        self.store = store

        self.jobs: Dict[str, Job] = {}
        self._waiting: List[Tuple[int, int, str]] = []
        self._delayed: Dict[str, asyncio.Task] = {}
        self._active: Set[str] = set()
        self._completed: "OrderedDict[str, None]" = OrderedDict()
        self._failed: "OrderedDict[str, None]" = OrderedDict()
        self._done_events: Dict[str, asyncio.Event] = {}
        self._seq = itertools.count()
        self._cond: Optional[asyncio.Condition] = None
        self._closing = False
        self._tasks: List[asyncio.Task] = []
        self.workers: List[WorkerStats] = []

    @property
    def cond(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    async def start(self):
        self._closing = False
        await self._recover()
        for index in range(self.concurrency):
            stats = WorkerStats(name=f"{self.name.value}-{index}", queue=self.name)
            self.workers.append(stats)
            self._persist_worker(stats)
            self._tasks.append(asyncio.create_task(self._worker(stats)))
        log.info("Queue started", queue=self.name.value, workers=self.concurrency,
                 job_timeout_s=self.job_timeout_s)

    async def stop(self):
        async with self.cond:
            self._closing = True
            self.cond.notify_all()
        for task in self._delayed.values():
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for stats in self.workers:
            stats.running = False
            self._persist_worker(stats)
        log.info("Queue stopped", queue=self.name.value)

    async def _recover(self):
        """Requeue jobs a previous process left waiting, delayed or active."""
        if self.store is None:
            return
        try:
            pending = self.store.pending_jobs(self.name)
        except StorageFailure as e:
            log.warning("Could not recover pending jobs", queue=self.name.value, error=str(e))
            return
        async with self.cond:
            for job in pending:
                self.jobs[job.id] = job
                self._done_events[job.id] = asyncio.Event()
                self._push(job)
            self.cond.notify_all()
        if pending:
            log.info("Recovered pending jobs", queue=self.name.value, count=len(pending))

    async def add(self, payload: Dict[str, Any], priority: int = 0) -> Job:
        job = Job(id=uuid.uuid4().hex, queue=self.name, payload=payload, priority=priority)
        self.jobs[job.id] = job
        self._done_events[job.id] = asyncio.Event()
        async with self.cond:
            self._push(job)
            self.cond.notify_all()
        log.info("Job queued", queue=self.name.value, job_id=job.id, priority=priority)
        return job

    def _push(self, job: Job):
        job.state = JobState.WAITING
        heapq.heappush(self._waiting, (-job.priority, next(self._seq), job.id))
        self._persist(job)

    def _persist(self, job: Job):
        if self.store is None:
            return
        try:
            self.store.save_job(job)
        except StorageFailure as e:
            log.warning("Job record not saved", queue=self.name.value, job_id=job.id, error=str(e))

    def _persist_worker(self, stats: WorkerStats):
        if self.store is None:
            return
        try:
            self.store.save_worker(stats)
        except StorageFailure as e:
            log.warning("Worker heartbeat not saved", worker=stats.name, error=str(e))

    async def wait(self, job_id: str) -> Job:
        """Block until the job reaches completed or failed."""
        job = self.jobs[job_id]
        event = self._done_events.get(job_id)
        if event is not None:
            await event.wait()
        return job

    async def join(self):
        """Block until nothing is waiting, active or delayed."""
        async with self.cond:
            await self.cond.wait_for(
                lambda: not self._waiting and not self._active and not self._delayed
            )

    async def _next_job(self, stats: WorkerStats) -> Optional[Job]:
        async with self.cond:
            while True:
                if self._closing:
                    return None
                while self._waiting:
                    _, _, job_id = heapq.heappop(self._waiting)
                    job = self.jobs.get(job_id)
                    if job is not None and job.state == JobState.WAITING:
                        job.state = JobState.ACTIVE
                        self._active.add(job.id)
                        self._persist(job)
                        return job
                try:
                    await asyncio.wait_for(self.cond.wait(), timeout=self.heartbeat_interval_s)
                except asyncio.TimeoutError:
                    pass
                stats.beat()
                self._persist_worker(stats)

    async def _worker(self, stats: WorkerStats):
        while True:
            job = await self._next_job(stats)
            if job is None:
                return
            stats.current_job = job.id
            stats.beat()
            try:
                await self._run_job(job, stats)
            finally:
                stats.current_job = None
                stats.beat()
                self._persist_worker(stats)
                async with self.cond:
                    self._active.discard(job.id)
                    self.cond.notify_all()

    async def _run_job(self, job: Job, stats: WorkerStats):
        job.attempts += 1
        job.started_at = time.time()
        job.error = None
        context = JobContext(job, stats, self.manager)
        t0 = time.perf_counter()
        log.info("Job started", queue=self.name.value, job_id=job.id, attempt=job.attempts,
                 worker=stats.name)
        try:
            job.result = await asyncio.wait_for(self.handler(job, context), timeout=self.job_timeout_s)
        except asyncio.TimeoutError:
            job.timeouts += 1
            self._handle_failure(job, JobTimeout(f"Job exceeded {self.job_timeout_s}s"), stats)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._handle_failure(job, e, stats)
        else:
            elapsed = 1000 * (time.perf_counter() - t0)
            job.state = JobState.COMPLETED
            job.finished_at = time.time()
            stats.processed_jobs += 1
            self._record_terminal(job, self._completed, self.keep_completed)
            log.info("Job completed", queue=self.name.value, job_id=job.id, elapsed_ms=elapsed)

    def _handle_failure(self, job: Job, exc: BaseException, stats: WorkerStats):
        failure_class = classify_failure(exc, job.attempts, job.timeouts)
        job.error = f"{type(exc).__name__}: {exc}"
        job.failure_class = failure_class

        if failure_class == FailureClass.TRANSIENT and job.attempts <= self.retry_limit:
            delay = self.retry_backoff_s * (2 ** (job.attempts - 1))
            job.state = JobState.DELAYED
            self._persist(job)
            self._delayed[job.id] = asyncio.create_task(self._release_later(job, delay))
            log.warning("Job failed, retry scheduled", queue=self.name.value, job_id=job.id,
                        attempt=job.attempts, delay_s=delay, error=job.error)
            return

        job.state = JobState.FAILED
        job.finished_at = time.time()
        stats.failed_jobs += 1
        self._record_terminal(job, self._failed, self.keep_failed)
        log.error("Job failed", queue=self.name.value, job_id=job.id, attempts=job.attempts,
                  failure_class=failure_class.value, error=job.error)

    async def _release_later(self, job: Job, delay: float):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        async with self.cond:
            if self._delayed.pop(job.id, None) is None:
                return
            self._push(job)
            self.cond.notify_all()

    def _record_terminal(self, job: Job, bucket: "OrderedDict[str, None]", keep: int):
        self._persist(job)
        bucket[job.id] = None
        while len(bucket) > keep:
            old_id, _ = bucket.popitem(last=False)
            self._forget(old_id)
        event = self._done_events.get(job.id)
        if event is not None:
            event.set()

    def _forget(self, job_id: str):
        self.jobs.pop(job_id, None)
        event = self._done_events.pop(job_id, None)
        if event is not None:
            event.set()
        if self.store is not None:
            try:
                self.store.delete_jobs([job_id])
            except StorageFailure as e:
                log.warning("Job record not deleted", job_id=job_id, error=str(e))

    def counts(self) -> QueueCounts:
        return QueueCounts(
            waiting=sum(1 for _, _, job_id in self._waiting
                        if job_id in self.jobs and self.jobs[job_id].state == JobState.WAITING),
            active=len(self._active),
            completed=len(self._completed),
            failed=len(self._failed),
            delayed=len(self._delayed),
        )

    async def clear(self, states: Iterable[JobState]) -> Dict[str, int]:
        """Drop queued or finished jobs in ``states``. Active jobs are never touched."""
        states = set(states)
        if JobState.ACTIVE in states:
            raise ValueError("Active jobs cannot be cleared")
        cleared: Dict[str, int] = {}

        if JobState.WAITING in states:
            ids = [job_id for _, _, job_id in self._waiting
                   if job_id in self.jobs and self.jobs[job_id].state == JobState.WAITING]
            self._waiting.clear()
            for job_id in ids:
                self._forget(job_id)
            cleared[JobState.WAITING.value] = len(ids)

        if JobState.DELAYED in states:
            ids = list(self._delayed)
            for job_id in ids:
                self._delayed.pop(job_id).cancel()
                self._forget(job_id)
            cleared[JobState.DELAYED.value] = len(ids)

        for state, bucket in ((JobState.COMPLETED, self._completed), (JobState.FAILED, self._failed)):
            if state in states:
                ids = list(bucket)
                bucket.clear()
                for job_id in ids:
                    self._forget(job_id)
                cleared[state.value] = len(ids)

        async with self.cond:
            self.cond.notify_all()
        log.info("Queue cleared", queue=self.name.value, cleared=cleared)
        return cleared


def derive_health(
    counts: Dict[str, QueueCounts],
    workers: List[WorkerStats],
    now: Optional[float] = None,
    max_heartbeat_age_s: float = HEARTBEAT_MAX_AGE_S,
    backlog_threshold: int = HIGH_BACKLOG_THRESHOLD,
    failure_rate: float = HIGH_FAILURE_RATE,
) -> Tuple[HealthState, List[str]]:
    """healthy, degraded or error, with the reasons behind anything but healthy."""
    now = time.time() if now is None else now
    running = [w for w in workers if w.running]
    healthy = [w for w in running if w.is_healthy(max_heartbeat_age_s, now)]
    if not running:
        return HealthState.ERROR, ["no workers running"]
    if not healthy:
        return HealthState.ERROR, ["no healthy workers"]

    reasons = []
    if len(healthy) < len(running):
        stale = sorted(w.name for w in running if w not in healthy)
        reasons.append(f"stale workers: {', '.join(stale)}")
    for name, queue_counts in counts.items():
        if queue_counts.waiting > backlog_threshold:
            reasons.append(f"{name} backlog {queue_counts.waiting}")
        if queue_counts.failed > 0 and queue_counts.failed > queue_counts.completed * failure_rate:
            reasons.append(f"{name} failure rate {queue_counts.failed}/{queue_counts.completed}")
    return (HealthState.DEGRADED if reasons else HealthState.HEALTHY), reasons


def build_status(counts: Dict[str, QueueCounts], workers: List[WorkerStats],
                 now: Optional[float] = None) -> StatusReport:
    now = time.time() if now is None else now
    health, reasons = derive_health(counts, workers, now=now)
    return StatusReport(
        health=health,
        reasons=reasons,
        queues=counts,
        workers=[
            WorkerReport(
                name=w.name, queue=w.queue, last_heartbeat=w.last_heartbeat,
                is_healthy=w.is_healthy(now=now), processed_jobs=w.processed_jobs,
                failed_jobs=w.failed_jobs, current_job=w.current_job,
            )
            for w in workers
        ],
        checked_at=now,
    )


class QueueManager:
    """Owns one JobQueue per category and exposes status, health and clear operations."""

    def __init__(
        self,
        handlers: Dict[QueueName, JobHandler],
        concurrency: Optional[Dict[str, int]] = None,
        job_timeouts_s: Optional[Dict[str, float]] = None,
        retry_limit: int = TRANSIENT_RETRY_LIMIT,
        retry_backoff_s: float = RETRY_BACKOFF_S,
        min_job_timeout_s: Optional[float] = None,
        store=None,
    ):
        concurrency = concurrency or WORKER_CONCURRENCY
        job_timeouts_s = job_timeouts_s or JOB_TIMEOUT_S
        self.queues: Dict[QueueName, JobQueue] = {}
        for name, handler in handlers.items():
            timeout = job_timeouts_s.get(name.value, 300.0)
            if min_job_timeout_s is not None and timeout < min_job_timeout_s:
                log.warning("Job timeout below worst-case pipeline latency",
                            queue=name.value, timeout_s=timeout, worst_case_s=min_job_timeout_s)
            self.queues[name] = JobQueue(
                name, handler,
                concurrency=concurrency.get(name.value, 1),
                job_timeout_s=timeout,
                retry_limit=retry_limit,
                retry_backoff_s=retry_backoff_s,
                manager=self,
                store=store,
            )

    async def start(self):
        for queue in self.queues.values():
            await queue.start()

    async def stop(self):
        for queue in self.queues.values():
            await queue.stop()

    async def enqueue(self, queue: QueueName, payload: Dict[str, Any], priority: int = 0) -> Job:
        return await self.queues[queue].add(payload, priority)

    async def wait(self, job: Job) -> Job:
        return await self.queues[job.queue].wait(job.id)

    async def join(self):
        """Wait until every queue is drained, including follow-up jobs."""
        while True:
            for queue in self.queues.values():
                await queue.join()
            if all(not q.counts().waiting and not q.counts().active and not q.counts().delayed
                   for q in self.queues.values()):
                return

    def status(self) -> StatusReport:
        counts = {name.value: queue.counts() for name, queue in self.queues.items()}
        workers = [w for queue in self.queues.values() for w in queue.workers]
        return build_status(counts, workers)

    async def clear(self, queues: Optional[Iterable[QueueName]] = None,
                    states: Iterable[JobState] = (JobState.WAITING, JobState.DELAYED)) -> Dict[str, Dict[str, int]]:
        """Clear jobs in ``states`` from the selected queues (all when None)."""
        states = set(states)
        unsupported = states - CLEARABLE_STATES
        if unsupported:
            raise ValueError(f"Cannot clear jobs in states: {sorted(s.value for s in unsupported)}")
        selected = list(queues) if queues else list(self.queues)
        return {name.value: await self.queues[name].clear(states) for name in selected}
