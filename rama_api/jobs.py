from __future__ import annotations

import copy
import dataclasses
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from rama_api.exceptions import ErrorKind


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


_ALLOWED_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.QUEUED: frozenset({JobState.PROCESSING}),
    JobState.PROCESSING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


class InvalidTransition(ValueError):
    pass


@dataclass(frozen=True)
class JobError:
    kind: ErrorKind
    message: str


@dataclass
class Job:
    job_id: str
    request_key: str
    created_at: float
    state: JobState = JobState.QUEUED
    result: Optional[Dict[str, Any]] = None
    error: Optional[JobError] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


_UPDATABLE_FIELDS = frozenset({"state", "result", "error", "started_at", "finished_at"})


class JobStore:
    """
    In-memory job table keyed by job id.

    All methods are synchronous: they run on the event loop thread and never
    yield, so a reader can't observe a half-applied update or a record that
    is being deleted. get() hands out copies, never the live record.
    """

    def __init__(self, *, ttl_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._jobs: Dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def create(self, request_key: str) -> Job:
        job_id = uuid.uuid4().hex
        rec = Job(job_id=job_id, request_key=request_key, created_at=self._clock())
        self._jobs[job_id] = rec
        return _snapshot(rec)

    def get(self, job_id: str) -> Optional[Job]:
        rec = self._jobs.get(job_id)
        if rec is None:
            return None
        return _snapshot(rec)

    def update(self, job_id: str, **fields: Any) -> Optional[Job]:
        """
        Merge ``fields`` into the record. Returns the new snapshot, or None if
        the job is gone (evicted jobs silently absorb late updates).
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"cannot update job fields: {sorted(unknown)}")

        rec = self._jobs.get(job_id)
        if rec is None:
            return None

        new_state = fields.get("state", rec.state)
        if new_state != rec.state and new_state not in _ALLOWED_TRANSITIONS[rec.state]:
            raise InvalidTransition(f"{rec.state.value} -> {JobState(new_state).value}")
        if rec.state.terminal:
            raise InvalidTransition(f"job {job_id} is already {rec.state.value}")

        merged = dataclasses.replace(rec, **fields)
        if "result" in fields and merged.result is not None:
            merged.result = copy.deepcopy(merged.result)
        _check_outcome(merged)

        self._jobs[job_id] = merged
        return _snapshot(merged)

    def count_by_state(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in JobState}
        for rec in self._jobs.values():
            counts[rec.state.value] += 1
        return counts

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop every job older than the TTL, whatever its state."""
        cutoff = (self._clock() if now is None else now) - self.ttl_seconds
        expired = [jid for jid, rec in self._jobs.items() if rec.created_at < cutoff]
        for jid in expired:
            del self._jobs[jid]
        return len(expired)


def _snapshot(rec: Job) -> Job:
    # result is nested; snapshots never share it with the table
    return dataclasses.replace(rec, result=copy.deepcopy(rec.result))


def _check_outcome(rec: Job) -> None:
    if rec.state == JobState.COMPLETED:
        ok = rec.result is not None and rec.error is None
    elif rec.state == JobState.FAILED:
        ok = rec.error is not None and rec.result is None
    else:
        ok = rec.result is None and rec.error is None
    if not ok:
        raise InvalidTransition(f"job {rec.job_id}: result/error do not match state {rec.state.value}")
