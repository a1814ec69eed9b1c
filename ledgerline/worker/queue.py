"""
Background job queue with a fixed-size asyncio worker pool.

States: queued -> processing -> {completed, failed}. Transitions are checked
against ALLOWED_TRANSITIONS under a per-job lock, so a job never moves back.
Every job reaches a terminal state: handler exceptions and timeouts are
recorded as failed, never allowed to kill a worker.

Cancellation is cooperative. A queued job fails immediately; a processing job
is flagged and stops at its next checkpoint().
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic_core import to_jsonable_python

from ledgerline.config import settings
from ledgerline.errors import (
    InvalidJobTransitionError,
    JobCancelledError,
    NotFoundError,
    QueueFullError,
    StorageError,
)
from ledgerline.models.enums import TERMINAL_JOB_STATES, HeavyOperation, JobState
from ledgerline.observability.metrics import jobs_total, worker_jobs_active, worker_queue_depth
from ledgerline.schemas.jobs import JobStatus, QueueJob, QueueStats

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.PROCESSING, JobState.FAILED}),
    JobState.PROCESSING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}

INTERRUPTED_MESSAGE = "interrupted by restart"


def check_transition(current: JobState, new: JobState) -> None:
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidJobTransitionError(f"cannot move job from {current.value} to {new.value}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Job stores ───────────────────────────────────────────────

class JobStore(ABC):
    """Persistence for job records."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[QueueJob]:
        ...

    @abstractmethod
    async def put(self, job: QueueJob) -> None:
        ...

    @abstractmethod
    async def list_by_state(self, states: set[JobState]) -> list[QueueJob]:
        ...

    @abstractmethod
    async def count_active(self, tenant_id: str) -> int:
        ...

    async def close(self) -> None:
        return None


class InMemoryJobStore(JobStore):
    def __init__(self):
        self._jobs: dict[str, QueueJob] = {}

    async def get(self, job_id: str) -> Optional[QueueJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def put(self, job: QueueJob) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def list_by_state(self, states: set[JobState]) -> list[QueueJob]:
        jobs = [j.model_copy(deep=True) for j in self._jobs.values() if j.state in states]
        return sorted(jobs, key=lambda j: j.created_at)

    async def count_active(self, tenant_id: str) -> int:
        return sum(
            1 for j in self._jobs.values()
            if j.tenant_id == tenant_id and j.state not in TERMINAL_JOB_STATES
        )


class RedisJobStore(JobStore):
    """Job records as JSON under <prefix>:job:<id>, with a per-tenant active set."""

    def __init__(self, url: Optional[str] = None, prefix: Optional[str] = None, client=None):
        if client is None:
            import redis.asyncio as aioredis

            client = aioredis.Redis.from_url(url or settings.REDIS_URL)
        self._redis = client
        self._prefix = prefix or settings.REDIS_KEY_PREFIX

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _active_key(self, tenant_id: str) -> str:
        return f"{self._prefix}:jobs:active:{tenant_id}"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}:jobs:open"

    async def get(self, job_id: str) -> Optional[QueueJob]:
        from redis.exceptions import RedisError

        try:
            raw = await self._redis.get(self._job_key(job_id))
        except RedisError as e:
            raise StorageError(f"job store unavailable: {e}") from e
        return QueueJob.model_validate_json(raw) if raw else None

    async def put(self, job: QueueJob) -> None:
        from redis.exceptions import RedisError

        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.id), job.model_dump_json())
                if job.state in TERMINAL_JOB_STATES:
                    pipe.srem(self._active_key(job.tenant_id), job.id)
                    pipe.srem(self._index_key, job.id)
                else:
                    pipe.sadd(self._active_key(job.tenant_id), job.id)
                    pipe.sadd(self._index_key, job.id)
                await pipe.execute()
        except RedisError as e:
            raise StorageError(f"job store unavailable: {e}") from e

    async def list_by_state(self, states: set[JobState]) -> list[QueueJob]:
        from redis.exceptions import RedisError

        try:
            ids = await self._redis.smembers(self._index_key)
            raws = await self._redis.mget([self._job_key(i.decode() if isinstance(i, bytes) else i) for i in ids]) if ids else []
        except RedisError as e:
            raise StorageError(f"job store unavailable: {e}") from e
        jobs = [QueueJob.model_validate_json(raw) for raw in raws if raw]
        return sorted((j for j in jobs if j.state in states), key=lambda j: j.created_at)

    async def count_active(self, tenant_id: str) -> int:
        from redis.exceptions import RedisError

        try:
            return int(await self._redis.scard(self._active_key(tenant_id)))
        except RedisError as e:
            raise StorageError(f"job store unavailable: {e}") from e

    async def close(self) -> None:
        await self._redis.aclose()


# ── Handler context ──────────────────────────────────────────

class JobContext:
    """Passed to handlers: cooperative cancellation and progress reporting."""

    def __init__(self, queue: "JobQueue", job_id: str):
        self._queue = queue
        self.job_id = job_id

    async def checkpoint(self) -> None:
        """Raise JobCancelledError if cancellation was requested. Call between chunks."""
        job = await self._queue.store.get(self.job_id)
        if job is not None and job.cancel_requested:
            raise JobCancelledError(job.cancel_reason or "cancel requested")

    async def advance(self, done: int, total: int) -> None:
        def mutate(job: QueueJob) -> QueueJob:
            job.chunks_done = done
            job.chunks_total = total
            return job

        await self._queue._update(self.job_id, mutate)


Handler = Callable[[QueueJob, JobContext], Awaitable[Any]]


# ── Queue ────────────────────────────────────────────────────

class JobQueue:
    """
    Bounded worker pool over an asyncio.Queue of job ids.
    Job records live in a JobStore so status survives the worker.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        handlers: Optional[dict[HeavyOperation, Handler]] = None,
        concurrency: Optional[int] = None,
        max_pending_per_tenant: Optional[int] = None,
        job_timeout_seconds: Optional[float] = None,
    ):
        self.store = store or InMemoryJobStore()
        self.handlers: dict[HeavyOperation, Handler] = dict(handlers or {})
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.max_pending_per_tenant = max_pending_per_tenant or settings.MAX_PENDING_JOBS_PER_TENANT
        self.job_timeout_seconds = job_timeout_seconds or settings.JOB_TIMEOUT_SECONDS
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._job_locks: dict[str, asyncio.Lock] = {}
        self._tenant_locks: dict[str, asyncio.Lock] = {}
        self._active = 0

    def register(self, operation: HeavyOperation, handler: Handler) -> None:
        self.handlers[operation] = handler

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        if self._workers:
            return
        await self.recover()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"ledgerline-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info("job_queue_started", workers=self.concurrency)

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("job_queue_stopped")

    async def recover(self) -> None:
        """Re-enqueue persisted queued jobs; fail jobs that were mid-flight."""
        for job in await self.store.list_by_state({JobState.QUEUED, JobState.PROCESSING}):
            if job.state == JobState.PROCESSING:
                await self._finish(job.id, JobState.FAILED, error=INTERRUPTED_MESSAGE)
            else:
                self._queue.put_nowait(job.id)
        worker_queue_depth.set(self._queue.qsize())

    async def join(self) -> None:
        """Wait until every enqueued job has been taken and finished."""
        await self._queue.join()

    # ── State changes ────────────────────────────────────────

    def _lock(self, job_id: str) -> asyncio.Lock:
        return self._job_locks.setdefault(job_id, asyncio.Lock())

    async def _update(self, job_id: str, mutate: Callable[[QueueJob], QueueJob]) -> QueueJob:
        """Read-modify-write of one job under its lock, with transition checking."""
        async with self._lock(job_id):
            current = await self.store.get(job_id)
            if current is None:
                raise NotFoundError(f"job {job_id} not found")
            updated = mutate(current.model_copy(deep=True))
            if updated.state != current.state:
                check_transition(current.state, updated.state)
            await self.store.put(updated)
        if updated.state in TERMINAL_JOB_STATES:
            self._job_locks.pop(job_id, None)
        return updated

    async def _finish(self, job_id: str, state: JobState, result: Any = None, error: Optional[str] = None) -> QueueJob:
        def mutate(job: QueueJob) -> QueueJob:
            job.state = state
            job.result = result
            job.error = error
            job.completed_at = _now()
            return job

        job = await self._update(job_id, mutate)
        jobs_total.labels(operation=job.operation.value, state=state.value).inc()
        log = logger.info if state == JobState.COMPLETED else logger.warning
        log("job_finished", job_id=job_id, tenant_id=job.tenant_id, state=state.value, error=error)
        return job

    # ── Public API ───────────────────────────────────────────

    async def submit(self, tenant_id: str, operation: HeavyOperation, payload: dict[str, Any]) -> QueueJob:
        """Persist a queued job and return it immediately."""
        async with self._tenant_locks.setdefault(tenant_id, asyncio.Lock()):
            if await self.store.count_active(tenant_id) >= self.max_pending_per_tenant:
                raise QueueFullError(tenant_id, self.max_pending_per_tenant)
            job = QueueJob(tenant_id=tenant_id, operation=operation, payload=to_jsonable_python(payload))
            await self.store.put(job)

        self._queue.put_nowait(job.id)
        worker_queue_depth.set(self._queue.qsize())
        logger.info("job_submitted", job_id=job.id, tenant_id=tenant_id, operation=operation.value)
        return job

    async def _get_for_tenant(self, job_id: str, tenant_id: str) -> QueueJob:
        job = await self.store.get(job_id)
        # Another tenant's job is indistinguishable from a missing one
        if job is None or job.tenant_id != tenant_id:
            raise NotFoundError(f"job {job_id} not found")
        return job

    async def status(self, job_id: str, tenant_id: str) -> JobStatus:
        return JobStatus.from_job(await self._get_for_tenant(job_id, tenant_id))

    async def cancel(self, job_id: str, tenant_id: str, reason: str = "cancelled by caller") -> JobStatus:
        before = await self._get_for_tenant(job_id, tenant_id)

        def mutate(job: QueueJob) -> QueueJob:
            if job.state == JobState.QUEUED:
                job.state = JobState.FAILED
                job.error = f"cancelled: {reason}"
                job.completed_at = _now()
                job.cancel_requested = True
                job.cancel_reason = reason
            elif job.state == JobState.PROCESSING:
                job.cancel_requested = True
                job.cancel_reason = reason
            return job

        job = await self._update(job_id, mutate)
        if before.state == JobState.QUEUED and job.state == JobState.FAILED:
            jobs_total.labels(operation=job.operation.value, state=JobState.FAILED.value).inc()
        logger.info("job_cancel_requested", job_id=job_id, tenant_id=tenant_id, state=job.state.value)
        return JobStatus.from_job(job)

    async def wait(self, job_id: str, tenant_id: str, timeout: float = 10.0, interval: float = 0.01) -> JobStatus:
        """Poll until the job is terminal. Raises asyncio.TimeoutError."""
        async def poll() -> JobStatus:
            while True:
                status = await self.status(job_id, tenant_id)
                if status.state in TERMINAL_JOB_STATES:
                    return status
                await asyncio.sleep(interval)

        return await asyncio.wait_for(poll(), timeout=timeout)

    async def stats(self) -> QueueStats:
        return QueueStats(queued=self._queue.qsize(), processing=self._active, workers=len(self._workers))

    # ── Workers ──────────────────────────────────────────────

    async def _worker(self, n: int) -> None:
        while True:
            job_id = await self._queue.get()
            worker_queue_depth.set(self._queue.qsize())
            try:
                await self._run(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Bookkeeping failure (e.g. job store down); the worker keeps going.
                logger.exception("worker_job_error", worker=n, job_id=job_id)
            finally:
                self._queue.task_done()

    async def _run(self, job_id: str) -> None:
        def start(job: QueueJob) -> QueueJob:
            job.state = JobState.PROCESSING
            job.started_at = _now()
            return job

        try:
            job = await self._update(job_id, start)
        except (InvalidJobTransitionError, NotFoundError):
            # Cancelled while queued, or record gone
            return

        handler = self.handlers.get(job.operation)
        if handler is None:
            await self._finish(job_id, JobState.FAILED, error=f"LookupError: no handler for {job.operation.value}")
            return

        self._active += 1
        worker_jobs_active.inc()
        logger.info("job_started", job_id=job_id, tenant_id=job.tenant_id, operation=job.operation.value)
        try:
            result = await asyncio.wait_for(
                handler(job, JobContext(self, job_id)), timeout=self.job_timeout_seconds
            )
            # Unserializable results fail the job
            result = to_jsonable_python(result)
        except JobCancelledError as e:
            await self._finish(job_id, JobState.FAILED, error=str(e))
        except asyncio.TimeoutError:
            await self._finish(
                job_id, JobState.FAILED,
                error=f"TimeoutError: job exceeded {self.job_timeout_seconds:g}s",
            )
        except Exception as e:
            logger.exception("job_handler_failed", job_id=job_id, operation=job.operation.value)
            await self._finish(job_id, JobState.FAILED, error=f"{type(e).__name__}: {e}")
        else:
            await self._finish(job_id, JobState.COMPLETED, result=result)
        finally:
            self._active -= 1
            worker_jobs_active.dec()
