from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple

import structlog

from rama_api import metrics
from rama_api.cache import ResultCache
from rama_api.exceptions import ErrorKind, ExecutionTimeout, ScraperError
from rama_api.jobs import JobError, JobState, JobStore


logger = structlog.get_logger(__name__)

Executor = Callable[[str], Awaitable[Dict[str, Any]]]

NOT_FOUND_STATE = "NO_ENCONTRADO"


def is_cacheable(result: Dict[str, Any]) -> bool:
    """Only a real hit or a stable "no results" answer may be reused."""
    return bool(result.get("success")) or result.get("estado") == NOT_FOUND_STATE


class Scheduler:
    """
    Bounded-concurrency runner for scrape jobs.

    submit() never waits: it records a queued job, appends it to the FIFO and
    admits as many queue heads as the ceiling allows. Every finished execution
    frees its slot and re-drives admission from a finally block, so a failure
    or timeout can never wedge the queue.

    All bookkeeping (queue, active count, job transitions) happens in plain
    synchronous code on the event loop, which serializes it.
    """

    def __init__(
        self,
        executor: Executor,
        store: JobStore,
        *,
        max_concurrency: int,
        execution_timeout: float,
        cache: Optional[ResultCache] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._executor = executor
        self.store = store
        self.cache = cache
        self.max_concurrency = int(max_concurrency)
        self.execution_timeout = float(execution_timeout)
        self._clock = clock

        self._queue: Deque[Tuple[str, str]] = deque()
        self._active = 0
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._closed = False

    # -----------------------------
    # Introspection
    # -----------------------------

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    def queue_position(self, job_id: str) -> Optional[int]:
        """1-based position in the wait queue, or None if not waiting."""
        for pos, (queued_id, _key) in enumerate(self._queue, start=1):
            if queued_id == job_id:
                return pos
        return None

    def stats(self) -> Dict[str, int]:
        return {
            "active": self._active,
            "queued": len(self._queue),
            "max_concurrency": self.max_concurrency,
        }

    # -----------------------------
    # Admission
    # -----------------------------

    def submit(self, request_key: str) -> str:
        if self._closed:
            raise RuntimeError("scheduler is closed")
        job = self.store.create(request_key)
        self._queue.append((job.job_id, request_key))
        metrics.jobs_submitted_total.inc()
        logger.info("job_queued", job_id=job.job_id, radicado=request_key, queue_depth=len(self._queue))
        self._drive()
        return job.job_id

    def _drive(self) -> None:
        while self._active < self.max_concurrency and self._queue:
            job_id, request_key = self._queue.popleft()
            started = self.store.update(job_id, state=JobState.PROCESSING, started_at=self._clock())
            if started is None:
                logger.info("job_skipped_evicted", job_id=job_id)
                continue
            self._active += 1
            task = asyncio.create_task(self._run(job_id, request_key), name=f"job-{job_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            logger.info("job_started", job_id=job_id, radicado=request_key, active=self._active)
        self._publish_gauges()

    async def _run(self, job_id: str, request_key: str) -> None:
        log = logger.bind(job_id=job_id, radicado=request_key)
        start = time.monotonic()
        try:
            try:
                result = await asyncio.wait_for(self._call(request_key), timeout=self.execution_timeout)
            except asyncio.TimeoutError:
                self._fail(
                    job_id,
                    ExecutionTimeout(f"La consulta excedió {self.execution_timeout:g} segundos"),
                )
            except asyncio.CancelledError:
                if self._closed:
                    raise
                self._fail(job_id, ScraperError("La ejecución fue cancelada"))
            except ScraperError as exc:
                self._fail(job_id, exc)
            except Exception as exc:
                log.exception("job_crashed")
                self._fail(job_id, ScraperError(f"{type(exc).__name__}: {exc}"))
            else:
                if isinstance(result, dict):
                    self._complete(job_id, request_key, result)
                else:
                    log.error("job_bad_result", result_type=type(result).__name__)
                    self._fail(
                        job_id,
                        ScraperError(f"Resultado inválido del ejecutor: {type(result).__name__}"),
                    )
        finally:
            self._active -= 1
            metrics.execution_latency_seconds.observe(time.monotonic() - start)
            if not self._closed:
                self._drive()
            self._publish_gauges()

    async def _call(self, request_key: str) -> Any:
        # only the wait_for deadline may surface as TimeoutError
        try:
            return await self._executor(request_key)
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise ScraperError(f"{type(exc).__name__}: {exc}") from exc

    def _complete(self, job_id: str, request_key: str, result: Dict[str, Any]) -> None:
        if self.cache is not None and is_cacheable(result):
            self.cache.store(request_key, result)
        done = self.store.update(
            job_id, state=JobState.COMPLETED, result=result, finished_at=self._clock()
        )
        metrics.jobs_finished_total.labels(outcome="completed").inc()
        if done is None:
            logger.info("job_finished_after_eviction", job_id=job_id, outcome="completed")
        else:
            logger.info("job_completed", job_id=job_id, success=result.get("success"))

    def _fail(self, job_id: str, exc: ScraperError) -> None:
        error = JobError(kind=exc.kind, message=exc.message)
        done = self.store.update(job_id, state=JobState.FAILED, error=error, finished_at=self._clock())
        metrics.jobs_finished_total.labels(outcome=exc.kind.value).inc()
        if done is None:
            logger.info("job_finished_after_eviction", job_id=job_id, outcome=exc.kind.value)
        elif exc.kind is ErrorKind.INTERNAL:
            logger.error("job_failed", job_id=job_id, kind=exc.kind.value, error=exc.message)
        else:
            logger.warning("job_failed", job_id=job_id, kind=exc.kind.value, error=exc.message)

    def _publish_gauges(self) -> None:
        metrics.active_executions.set(self._active)
        metrics.queued_jobs.set(len(self._queue))

    # -----------------------------
    # Garbage collection
    # -----------------------------

    def sweep(self, now: Optional[float] = None) -> int:
        """Evict expired jobs (and their queue entries) and expired cache entries."""
        evicted = self.store.sweep(now)
        if evicted:
            self._queue = deque(e for e in self._queue if e[0] in self.store)
            metrics.jobs_evicted_total.inc(evicted)
            logger.info("jobs_evicted", count=evicted, remaining=len(self.store))
        if self.cache is not None:
            self.cache.sweep(now)
        self._publish_gauges()
        return evicted

    async def run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    # -----------------------------
    # Shutdown
    # -----------------------------

    async def aclose(self) -> None:
        self._closed = True
        self._queue.clear()
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._publish_gauges()
