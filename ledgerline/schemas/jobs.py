"""
Pydantic schemas for queued jobs.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ledgerline.models.enums import HeavyOperation, JobState
from ledgerline.schemas.transactions import new_id


class QueueJob(BaseModel):
    """Persisted job record. State only moves forward."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    operation: HeavyOperation
    payload: dict[str, Any] = {}
    state: JobState = JobState.QUEUED
    result: Optional[Any] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None
    chunks_done: int = 0
    chunks_total: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobStatus(BaseModel):
    """Job status as returned to callers. Payload is not echoed back."""
    job_id: str
    tenant_id: str
    operation: HeavyOperation
    state: JobState
    result: Optional[Any] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    chunks_done: int = 0
    chunks_total: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: QueueJob) -> "JobStatus":
        return cls(
            job_id=job.id,
            tenant_id=job.tenant_id,
            operation=job.operation,
            state=job.state,
            result=job.result,
            error=job.error,
            cancel_requested=job.cancel_requested,
            chunks_done=job.chunks_done,
            chunks_total=job.chunks_total,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class QueueStats(BaseModel):
    queued: int
    processing: int
    workers: int
