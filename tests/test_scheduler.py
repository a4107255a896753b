"""Unit tests for the bounded-concurrency scheduler.

Every scrape goes through GatedExecutor, which parks until the test
resolves it, so admission order, the concurrency ceiling and slot reuse can
be observed step by step.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from rama_api.cache import ResultCache
from rama_api.exceptions import ErrorKind, ExtractionError, NavigationTimeout
from rama_api.jobs import JobState, JobStore
from rama_api.scheduler import Executor, Scheduler, is_cacheable
from rama_api.scraper import not_found_result
from tests.fakes import GatedExecutor, radicado, settle


def _scheduler(
    executor: Executor,
    *,
    max_concurrency: int = 2,
    timeout: float = 5.0,
    cache: Optional[ResultCache] = None,
    store: Optional[JobStore] = None,
) -> Scheduler:
    return Scheduler(
        executor,
        store if store is not None else JobStore(ttl_seconds=600),
        max_concurrency=max_concurrency,
        execution_timeout=timeout,
        cache=cache,
    )


def _states(scheduler: Scheduler, job_ids: list[str]) -> list[JobState]:
    return [scheduler.store.get(jid).state for jid in job_ids]


def test_rejects_zero_ceiling() -> None:
    with pytest.raises(ValueError):
        _scheduler(GatedExecutor(), max_concurrency=0)


def test_is_cacheable() -> None:
    assert is_cacheable({"success": True})
    assert is_cacheable(not_found_result(radicado(1)))
    assert not is_cacheable({"success": False, "estado": "ERROR"})


@pytest.mark.asyncio
class TestAdmission:
    async def test_five_jobs_with_ceiling_two(self) -> None:
        executor = GatedExecutor()
        scheduler = _scheduler(executor, max_concurrency=2)

        ids = [scheduler.submit(radicado(i)) for i in range(5)]

        # admission happens synchronously inside submit()
        assert _states(scheduler, ids) == [JobState.PROCESSING] * 2 + [JobState.QUEUED] * 3
        assert scheduler.active_count == 2
        assert scheduler.queue_depth == 3

        await settle()
        for i in range(5):
            executor.finish(i)
            await settle()

        assert scheduler.queue_depth == 0
        assert scheduler.active_count == 0
        assert _states(scheduler, ids) == [JobState.COMPLETED] * 5
        assert executor.max_running == 2

    async def test_admission_is_fifo(self) -> None:
        executor = GatedExecutor()
        scheduler = _scheduler(executor, max_concurrency=1)
        keys = [radicado(i) for i in range(6)]
        for key in keys:
            scheduler.submit(key)

        await settle()
        for i in range(len(keys)):
            executor.finish(i)
            await settle()

        assert executor.keys == keys

    async def test_ceiling_holds_when_completions_arrive_out_of_order(self) -> None:
        executor = GatedExecutor()
        scheduler = _scheduler(executor, max_concurrency=3)
        ids = [scheduler.submit(radicado(i)) for i in range(10)]
        await settle()

        # always finish the most recently admitted execution first
        while len(executor.calls) < 10 or any(not f.done() for _, f in executor.calls):
            pending = [i for i, (_, f) in enumerate(executor.calls) if not f.done()]
            executor.finish(pending[-1])
            await settle()
            assert scheduler.active_count <= 3

        assert executor.max_running == 3
        assert _states(scheduler, ids) == [JobState.COMPLETED] * 10

    async def test_freed_slots_refill_immediately(self) -> None:
        executor = GatedExecutor()
        scheduler = _scheduler(executor, max_concurrency=2)
        ids = [scheduler.submit(radicado(i)) for i in range(4)]
        await settle()

        executor.finish(0)
        executor.finish(1)
        await settle()

        assert _states(scheduler, ids)[2:] == [JobState.PROCESSING] * 2
        assert scheduler.queue_depth == 0

    async def test_queue_position(self) -> None:
        executor = GatedExecutor()
        scheduler = _scheduler(executor, max_concurrency=1)
        ids = [scheduler.submit(radicado(i)) for i in range(3)]

        assert scheduler.queue_position(ids[0]) is None
        assert scheduler.queue_position(ids[1]) == 1
        assert scheduler.queue_position(ids[2]) == 2
        await scheduler.aclose()


@pytest.mark.asyncio
class TestFailures:
    async def test_executor_error_fails_only_its_job(self) -> None:
        executor = GatedExecutor()
        scheduler = _scheduler(executor, max_concurrency=2)
        ids = [scheduler.submit(radicado(i)) for i in range(3)]
        await settle()

        executor.fail(0, ExtractionError("tbody missing"))
        await settle()
        executor.finish(1)
        executor.finish(2)
        await settle()

        failed = scheduler.store.get(ids[0])
        assert failed.state is JobState.FAILED
        assert failed.error.kind is ErrorKind.EXTRACTION
        assert failed.error.message == "tbody missing"
        assert failed.result is None
        assert _states(scheduler, ids[1:]) == [JobState.COMPLETED] * 2

    async def test_unexpected_exception_is_internal_error(self) -> None:
        executor = GatedExecutor()
        scheduler = _scheduler(executor)
        job_id = scheduler.submit(radicado(1))
        await settle()

        executor.fail(0, KeyError("boom"))
        await settle()

        job = scheduler.store.get(job_id)
        assert job.state is JobState.FAILED
        assert job.error.kind is ErrorKind.INTERNAL
        assert "KeyError" in job.error.message
        assert scheduler.active_count == 0

    async def test_non_dict_result_fails_job(self) -> None:
        async def returns_nothing(request_key: str) -> None:
            return None

        scheduler = _scheduler(returns_nothing)
        job_id = scheduler.submit(radicado(1))
        await settle()

        job = scheduler.store.get(job_id)
        assert job.state is JobState.FAILED
        assert job.error.kind is ErrorKind.INTERNAL
        assert "NoneType" in job.error.message
        assert scheduler.active_count == 0

    async def test_executor_cancelling_itself_fails_job(self) -> None:
        async def cancels(request_key: str) -> dict:
            raise asyncio.CancelledError()

        scheduler = _scheduler(cancels, max_concurrency=1)
        first = scheduler.submit(radicado(1))
        second = scheduler.submit(radicado(2))
        await settle()

        assert _states(scheduler, [first, second]) == [JobState.FAILED] * 2
        assert scheduler.store.get(first).error.kind is ErrorKind.INTERNAL
        assert scheduler.active_count == 0

    async def test_executor_timeout_error_is_not_the_deadline(self) -> None:
        async def socket_timeout(request_key: str) -> dict:
            raise TimeoutError("read timed out")

        scheduler = _scheduler(socket_timeout, timeout=5.0)
        job_id = scheduler.submit(radicado(1))
        await settle()

        job = scheduler.store.get(job_id)
        assert job.state is JobState.FAILED
        assert job.error.kind is ErrorKind.INTERNAL
        assert job.error.message == "TimeoutError: read timed out"

    async def test_timeout_fails_job_and_frees_slot(self) -> None:
        executor = GatedExecutor()
        scheduler = _scheduler(executor, max_concurrency=1, timeout=0.2)
        stuck = scheduler.submit(radicado(1))
        waiting = scheduler.submit(radicado(2))
        await settle()

        await asyncio.sleep(0.25)
        await settle()

        job = scheduler.store.get(stuck)
        assert job.state is JobState.FAILED
        assert job.error.kind is ErrorKind.EXECUTION_TIMEOUT
        # the executor saw the cancellation, so its own cleanup ran
        assert executor.cancelled == [radicado(1)]
        assert scheduler.store.get(waiting).state is JobState.PROCESSING
        assert executor.keys == [radicado(1), radicado(2)]
        await scheduler.aclose()

    async def test_terminal_payload_is_stable(self) -> None:
        executor = GatedExecutor()
        scheduler = _scheduler(executor)
        job_id = scheduler.submit(radicado(1))
        await settle()
        executor.finish(0, {"success": True, "actuaciones": []})
        await settle()

        first = scheduler.store.get(job_id)
        second = scheduler.store.get(job_id)
        assert first == second
        assert first.finished_at is not None and first.started_at is not None


@pytest.mark.asyncio
class TestCacheWrites:
    async def test_success_and_not_found_are_cached(self) -> None:
        executor = GatedExecutor()
        cache = ResultCache(ttl_seconds=60)
        scheduler = _scheduler(executor, cache=cache)
        scheduler.submit(radicado(1))
        scheduler.submit(radicado(2))
        await settle()

        executor.finish(0, {"success": True, "numero_radicacion": radicado(1)})
        executor.finish(1, not_found_result(radicado(2)))
        await settle()

        assert cache.lookup(radicado(1)) == {"success": True, "numero_radicacion": radicado(1)}
        assert cache.lookup(radicado(2))["estado"] == "NO_ENCONTRADO"

    async def test_infrastructure_failures_are_not_cached(self) -> None:
        executor = GatedExecutor()
        cache = ResultCache(ttl_seconds=60)
        scheduler = _scheduler(executor, cache=cache, timeout=0.05)
        scheduler.submit(radicado(1))
        scheduler.submit(radicado(2))
        await settle()

        executor.fail(0, NavigationTimeout("goto timed out"))
        await asyncio.sleep(0.1)
        await settle()

        assert len(cache) == 0


@pytest.mark.asyncio
class TestEviction:
    async def test_evicted_processing_job_keeps_running(self) -> None:
        executor = GatedExecutor()
        store = JobStore(ttl_seconds=10)
        scheduler = _scheduler(executor, store=store, max_concurrency=1)
        running = scheduler.submit(radicado(1))
        queued = scheduler.submit(radicado(2))
        await settle()

        created = store.get(running).created_at
        assert scheduler.sweep(now=created + 11) == 2
        assert store.get(running) is None
        assert scheduler.queue_depth == 0
        assert executor.cancelled == []

        # the orphaned execution finishes quietly and frees its slot
        executor.finish(0)
        await settle()
        assert scheduler.active_count == 0
        assert queued not in store

    async def test_sweep_keeps_young_jobs(self) -> None:
        executor = GatedExecutor()
        store = JobStore(ttl_seconds=10)
        scheduler = _scheduler(executor, store=store)
        job_id = scheduler.submit(radicado(1))

        assert scheduler.sweep(now=store.get(job_id).created_at + 5) == 0
        assert store.get(job_id) is not None
        await scheduler.aclose()


@pytest.mark.asyncio
async def test_aclose_cancels_in_flight_and_refuses_new_work() -> None:
    executor = GatedExecutor()
    scheduler = _scheduler(executor)
    scheduler.submit(radicado(1))
    scheduler.submit(radicado(2))
    scheduler.submit(radicado(3))
    await settle()

    await scheduler.aclose()

    assert sorted(executor.cancelled) == [radicado(1), radicado(2)]
    assert scheduler.active_count == 0
    assert scheduler.queue_depth == 0
    with pytest.raises(RuntimeError):
        scheduler.submit(radicado(4))
