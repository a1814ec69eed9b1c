"""
Tests for the background job queue.

Each scenario runs inside one event loop: the queue is started, exercised
and stopped within a single asyncio.run().
"""

import asyncio

import pytest

from ledgerline.errors import InvalidJobTransitionError, NotFoundError, QueueFullError
from ledgerline.models.enums import HeavyOperation, JobState
from ledgerline.schemas.jobs import QueueJob
from ledgerline.worker.queue import (
    INTERRUPTED_MESSAGE,
    InMemoryJobStore,
    JobQueue,
    check_transition,
)

OP = HeavyOperation.MULTI_PERIOD_ANALYTICS


def run_queue(scenario, handler, **options):
    async def main():
        queue = JobQueue(handlers={OP: handler}, concurrency=2, **options)
        await queue.start()
        try:
            return await scenario(queue)
        finally:
            await queue.stop()

    return asyncio.run(main())


async def echo(job, ctx):
    return {"echo": job.payload}


class TestTransitions:

    @pytest.mark.parametrize("current,new", [
        (JobState.QUEUED, JobState.PROCESSING),
        (JobState.QUEUED, JobState.FAILED),
        (JobState.PROCESSING, JobState.COMPLETED),
        (JobState.PROCESSING, JobState.FAILED),
    ])
    def test_forward(self, current, new):
        check_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (JobState.PROCESSING, JobState.QUEUED),
        (JobState.COMPLETED, JobState.FAILED),
        (JobState.FAILED, JobState.PROCESSING),
        (JobState.QUEUED, JobState.COMPLETED),
    ])
    def test_backward_refused(self, current, new):
        with pytest.raises(InvalidJobTransitionError):
            check_transition(current, new)


class TestExecution:
    """Every job ends completed or failed."""

    def test_completed_with_result(self, tenant_id):
        async def scenario(queue):
            job = await queue.submit(tenant_id, OP, {"periods": ["week"]})
            assert job.state == JobState.QUEUED
            return await queue.wait(job.id, tenant_id)

        status = run_queue(scenario, echo)
        assert status.state == JobState.COMPLETED
        assert status.result == {"echo": {"periods": ["week"]}}
        assert status.started_at is not None and status.completed_at is not None

    def test_handler_error_recorded(self, tenant_id):
        async def broken(job, ctx):
            raise ValueError("bad ledger")

        async def scenario(queue):
            job = await queue.submit(tenant_id, OP, {})
            return await queue.wait(job.id, tenant_id)

        status = run_queue(scenario, broken)
        assert status.state == JobState.FAILED
        assert status.error == "ValueError: bad ledger"

    def test_timeout(self, tenant_id):
        async def slow(job, ctx):
            await asyncio.sleep(5)

        async def scenario(queue):
            job = await queue.submit(tenant_id, OP, {})
            return await queue.wait(job.id, tenant_id)

        status = run_queue(scenario, slow, job_timeout_seconds=0.05)
        assert status.state == JobState.FAILED
        assert status.error.startswith("TimeoutError")

    def test_unserializable_result_fails(self, tenant_id):
        async def opaque(job, ctx):
            return object()

        async def scenario(queue):
            job = await queue.submit(tenant_id, OP, {})
            return await queue.wait(job.id, tenant_id, timeout=2.0)

        status = run_queue(scenario, opaque)
        assert status.state == JobState.FAILED
        assert status.result is None
        assert status.error.startswith("PydanticSerializationError")

    def test_missing_handler(self, tenant_id):
        async def scenario(queue):
            job = await queue.submit(tenant_id, HeavyOperation.RECONCILE, {})
            return await queue.wait(job.id, tenant_id)

        status = run_queue(scenario, echo)
        assert status.state == JobState.FAILED
        assert status.error.startswith("LookupError")

    def test_worker_survives_failures(self, tenant_id):
        async def flaky(job, ctx):
            if job.payload.get("fail"):
                raise RuntimeError("boom")
            return "ok"

        async def scenario(queue):
            jobs = [await queue.submit(tenant_id, OP, {"fail": i % 2 == 0}) for i in range(4)]
            await queue.join()
            return [await queue.status(j.id, tenant_id) for j in jobs]

        states = [s.state for s in run_queue(scenario, flaky)]
        assert states == [JobState.FAILED, JobState.COMPLETED, JobState.FAILED, JobState.COMPLETED]

    def test_progress_reported(self, tenant_id):
        async def chunked(job, ctx):
            for done in range(1, 4):
                await ctx.checkpoint()
                await ctx.advance(done, 3)
            return done

        async def scenario(queue):
            job = await queue.submit(tenant_id, OP, {})
            return await queue.wait(job.id, tenant_id)

        status = run_queue(scenario, chunked)
        assert (status.chunks_done, status.chunks_total) == (3, 3)


class TestCancellation:

    def test_cancel_processing_job(self, tenant_id):
        started = None

        async def long_running(job, ctx):
            started.set()
            while True:
                await ctx.checkpoint()
                await asyncio.sleep(0.01)

        async def scenario(queue):
            nonlocal started
            started = asyncio.Event()
            job = await queue.submit(tenant_id, OP, {})
            await started.wait()
            flagged = await queue.cancel(job.id, tenant_id, reason="user request")
            assert flagged.state == JobState.PROCESSING
            assert flagged.cancel_requested
            return await queue.wait(job.id, tenant_id)

        status = run_queue(scenario, long_running)
        assert status.state == JobState.FAILED
        assert status.error == "cancelled: user request"

    def test_cancel_queued_job(self, tenant_id):
        async def scenario():
            # No workers started: the job stays queued
            queue = JobQueue(handlers={OP: echo})
            job = await queue.submit(tenant_id, OP, {})
            return await queue.cancel(job.id, tenant_id, reason="changed my mind")

        status = asyncio.run(scenario())
        assert status.state == JobState.FAILED
        assert status.error == "cancelled: changed my mind"

    def test_cancelled_queued_job_never_runs(self, tenant_id):
        ran = []

        async def recording(job, ctx):
            ran.append(job.id)

        async def scenario():
            queue = JobQueue(handlers={OP: recording}, concurrency=1)
            job = await queue.submit(tenant_id, OP, {})
            await queue.cancel(job.id, tenant_id)
            await queue.start()
            try:
                await queue.join()
            finally:
                await queue.stop()
            return await queue.status(job.id, tenant_id)

        status = asyncio.run(scenario())
        assert ran == []
        assert status.state == JobState.FAILED

    def test_cancel_terminal_job_unchanged(self, tenant_id):
        async def scenario(queue):
            job = await queue.submit(tenant_id, OP, {})
            done = await queue.wait(job.id, tenant_id)
            return done, await queue.cancel(job.id, tenant_id)

        done, after = run_queue(scenario, echo)
        assert after.state == JobState.COMPLETED
        assert after.result == done.result


class TestTenancy:

    def test_other_tenant_sees_not_found(self, tenant_id):
        async def scenario(queue):
            job = await queue.submit(tenant_id, OP, {})
            await queue.wait(job.id, tenant_id)
            with pytest.raises(NotFoundError):
                await queue.status(job.id, "tenant-b")
            with pytest.raises(NotFoundError):
                await queue.cancel(job.id, "tenant-b")

        run_queue(scenario, echo)

    def test_pending_limit(self, tenant_id):
        async def scenario():
            queue = JobQueue(handlers={OP: echo}, max_pending_per_tenant=2)
            await queue.submit(tenant_id, OP, {})
            await queue.submit(tenant_id, OP, {})
            with pytest.raises(QueueFullError):
                await queue.submit(tenant_id, OP, {})
            # other tenants are unaffected
            await queue.submit("tenant-b", OP, {})

        asyncio.run(scenario())


class TestRecovery:

    def test_queued_jobs_resume_and_processing_jobs_fail(self, tenant_id):
        store = InMemoryJobStore()
        waiting = QueueJob(tenant_id=tenant_id, operation=OP, payload={"n": 1})
        interrupted = QueueJob(tenant_id=tenant_id, operation=OP, state=JobState.PROCESSING)

        async def scenario():
            await store.put(waiting)
            await store.put(interrupted)
            queue = JobQueue(store=store, handlers={OP: echo}, concurrency=1)
            await queue.start()
            try:
                await queue.join()
            finally:
                await queue.stop()
            return await queue.status(waiting.id, tenant_id), await queue.status(interrupted.id, tenant_id)

        resumed, failed = asyncio.run(scenario())
        assert resumed.state == JobState.COMPLETED
        assert failed.state == JobState.FAILED
        assert failed.error == INTERRUPTED_MESSAGE

    def test_stats(self, tenant_id):
        async def scenario():
            queue = JobQueue(handlers={OP: echo}, concurrency=3)
            await queue.submit(tenant_id, OP, {})
            return await queue.stats()

        stats = asyncio.run(scenario())
        assert (stats.queued, stats.processing, stats.workers) == (1, 0, 0)
