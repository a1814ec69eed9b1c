"""
/api/v1/jobs endpoints.
Job status and cancellation, scoped to the calling tenant.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from ledgerline.dependencies import get_dispatcher
from ledgerline.dispatcher import ToolDispatcher
from ledgerline.errors import NotFoundError
from ledgerline.schemas.jobs import JobStatus

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


@router.get("/{job_id}", response_model=JobStatus)
async def get_job_status(
    job_id: str,
    tenant_id: str = Query(..., min_length=1),
    dispatcher: ToolDispatcher = Depends(get_dispatcher),
):
    """Get the status of a background job."""
    try:
        return await dispatcher.queue.status(job_id, tenant_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/{job_id}/cancel", response_model=JobStatus)
async def cancel_job(
    job_id: str,
    tenant_id: str = Query(..., min_length=1),
    reason: str = Query("cancelled by caller"),
    dispatcher: ToolDispatcher = Depends(get_dispatcher),
):
    """
    Request cancellation. Queued jobs fail at once; processing jobs stop
    at their next checkpoint; finished jobs are returned unchanged.
    """
    try:
        return await dispatcher.queue.cancel(job_id, tenant_id, reason)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
