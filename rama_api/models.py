from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Wire(BaseModel):
    # job ids travel as "jobId" on the wire
    model_config = ConfigDict(populate_by_name=True)


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


class JobSubmitResponse(_Wire):
    success: bool = True
    job_id: str = Field(alias="jobId")
    numero_radicacion: str
    status: Literal["queued", "processing"] = "queued"
    message: str = "Búsqueda iniciada. Use /resultado/:jobId para consultar el resultado."
    poll_url: str


class JobPendingResponse(_Wire):
    success: bool = True
    job_id: str = Field(alias="jobId")
    status: Literal["queued", "processing"]
    numero_radicacion: str
    message: str
    queue_position: Optional[int] = Field(
        default=None,
        description="1-based position while waiting for a free slot; absent once processing.",
    )


class JobFailedResponse(_Wire):
    success: bool = False
    job_id: str = Field(alias="jobId")
    status: Literal["failed"] = "failed"
    error: str
    error_kind: str


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "Rama Judicial Scraper"
    active_jobs: int
    queued_jobs: int
    tracked_jobs: int
    max_concurrency: int
    cached_results: int
    browser: str
    jobs_by_state: Dict[str, int] = Field(default_factory=dict)


def merge_result(base: Dict[str, Any], result: Dict[str, Any]) -> Dict[str, Any]:
    """Job metadata first, then the scrape payload, like the legacy responses."""
    body = dict(base)
    body.update(result)
    return body
