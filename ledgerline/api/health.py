"""
Health check endpoint.
/health always returns 200; storage connectivity is reported, not enforced.
"""

from fastapi import APIRouter, Depends

from ledgerline.config import settings
from ledgerline.dependencies import get_dispatcher
from ledgerline.dispatcher import ToolDispatcher

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(dispatcher: ToolDispatcher = Depends(get_dispatcher)):
    """
    Verifies the API is running and probes storage.
    Returns 200 even when storage is down so liveness probes pass.
    """
    storage_ok = False
    storage_error = None
    try:
        storage_ok = await dispatcher.storage.health_check()
    except Exception as e:
        storage_error = str(e)[:200]

    stats = await dispatcher.queue.stats()
    response = {
        "status": "healthy" if storage_ok else "degraded",
        "version": settings.APP_VERSION,
        "pipeline_version": settings.PIPELINE_VERSION,
        "storage": "connected" if storage_ok else "unreachable",
        "queue": stats.model_dump(),
    }
    if storage_error:
        response["storage_error"] = storage_error
    return response
