"""
Dependency wiring.
Builds storage, quota, capability engines, the job queue and the dispatcher
from settings, and exposes them as lazily created singletons.
"""

from typing import Optional

import structlog

from ledgerline.config import settings
from ledgerline.dispatcher import ToolDispatcher
from ledgerline.engines.base import AiCapability, OcrCapability
from ledgerline.pipeline.anomaly_detector import AnomalyService
from ledgerline.pipeline.categorizer import Categorizer
from ledgerline.pipeline.extractor import Extractor
from ledgerline.pipeline.normalizer import Normalizer
from ledgerline.pipeline.orchestrator import IngestionPipeline
from ledgerline.pipeline.reconciliation import ReconciliationService
from ledgerline.quota.manager import InMemoryQuotaStore, QuotaManager, RedisQuotaStore
from ledgerline.storage.base import Storage
from ledgerline.storage.memory import InMemoryStorage
from ledgerline.worker.jobs import build_handlers
from ledgerline.worker.queue import InMemoryJobStore, JobQueue, JobStore, RedisJobStore

logger = structlog.get_logger(__name__)


# ── Singleton instances ──────────────────────────────────────
_storage: Optional[Storage] = None
_quota: Optional[QuotaManager] = None
_dispatcher: Optional[ToolDispatcher] = None


def get_storage() -> Storage:
    """Get or create the storage singleton."""
    global _storage
    if _storage is None:
        if settings.STORAGE_BACKEND == "sql":
            from ledgerline.storage.sql_store import SqlStorage

            _storage = SqlStorage()
        else:
            _storage = InMemoryStorage()
        logger.info("storage_selected", backend=settings.STORAGE_BACKEND)
    return _storage


def get_quota_manager() -> QuotaManager:
    """Get or create the quota manager singleton."""
    global _quota
    if _quota is None:
        store = RedisQuotaStore() if settings.QUOTA_BACKEND == "redis" else InMemoryQuotaStore()
        _quota = QuotaManager(store)
    return _quota


def get_ai_engine() -> Optional[AiCapability]:
    if not settings.ENABLE_AI:
        return None
    if not settings.ANTHROPIC_API_KEY:
        logger.warning("ai_disabled", reason="ANTHROPIC_API_KEY not set")
        return None
    from ledgerline.engines.claude_engine import ClaudeStatementEngine

    return ClaudeStatementEngine(api_key=settings.ANTHROPIC_API_KEY, model=settings.AI_MODEL)


def get_ocr_engine() -> Optional[OcrCapability]:
    if not settings.ENABLE_OCR:
        return None
    from ledgerline.engines.tesseract_engine import TesseractOcrEngine

    return TesseractOcrEngine(lang=settings.TESSERACT_LANG)


def get_job_store() -> JobStore:
    if settings.JOB_STORE_BACKEND == "redis":
        return RedisJobStore()
    return InMemoryJobStore()


def build_dispatcher(
    storage: Storage,
    quota: QuotaManager,
    ai: Optional[AiCapability] = None,
    ocr: Optional[OcrCapability] = None,
    job_store: Optional[JobStore] = None,
    **queue_options,
) -> ToolDispatcher:
    """Assemble the services around one storage and quota manager."""
    categorizer = Categorizer(storage)
    pipeline = IngestionPipeline(
        storage,
        Extractor(ai=ai, quota=quota),
        normalizer=Normalizer(),
        categorizer=categorizer,
        ocr=ocr,
        quota=quota,
    )
    anomalies = AnomalyService(storage)
    reconciliation = ReconciliationService(storage)
    queue = JobQueue(
        store=job_store or InMemoryJobStore(),
        handlers=build_handlers(storage, pipeline, anomalies, reconciliation),
        **queue_options,
    )
    return ToolDispatcher(
        storage=storage,
        pipeline=pipeline,
        categorizer=categorizer,
        anomalies=anomalies,
        reconciliation=reconciliation,
        queue=queue,
        quota=quota,
    )


def get_dispatcher() -> ToolDispatcher:
    """Get or create the dispatcher singleton (and with it the job queue)."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(
            get_storage(),
            get_quota_manager(),
            ai=get_ai_engine(),
            ocr=get_ocr_engine(),
            job_store=get_job_store(),
        )
    return _dispatcher


async def close_dependencies() -> None:
    """Release singletons. Called on application shutdown."""
    global _storage, _quota, _dispatcher
    if _dispatcher is not None:
        await _dispatcher.queue.stop()
        await _dispatcher.queue.store.close()
    if _quota is not None:
        await _quota.close()
    if _storage is not None:
        await _storage.close()
    _storage = _quota = _dispatcher = None
