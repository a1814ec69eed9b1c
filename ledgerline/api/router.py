"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from ledgerline.api.health import router as health_router
from ledgerline.api.jobs import router as jobs_router
from ledgerline.api.tools import router as tools_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(tools_router)
api_router.include_router(jobs_router)
