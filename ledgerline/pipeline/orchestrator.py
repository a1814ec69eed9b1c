"""
Ingestion pipeline: coordinates the stages of one extract call.

Stages: OCR → EXTRACT → NORMALIZE → CATEGORIZE → REVIEW → PERSIST

Rejected and skipped lines are reported, never raised. Only a missing input
(no text, no usable OCR) or a storage failure fails the whole call.
"""

import asyncio
import time
from contextlib import contextmanager
from decimal import Decimal
from typing import Awaitable, Callable, Optional

import structlog

from ledgerline.config import settings
from ledgerline.engines.base import CapabilityError, OcrCapability
from ledgerline.errors import CapabilityUnavailableError
from ledgerline.models.enums import ReviewStatus
from ledgerline.observability.metrics import (
    capability_calls_total,
    pipeline_stage_duration_seconds,
)
from ledgerline.pipeline.amount_parser import quantize
from ledgerline.pipeline.categorizer import Categorizer
from ledgerline.pipeline.extractor import Extractor
from ledgerline.pipeline.normalizer import Normalizer
from ledgerline.quota.manager import QuotaManager
from ledgerline.schemas.transactions import IngestionResult, TransactionDraft
from ledgerline.storage.base import Storage

logger = structlog.get_logger(__name__)

Checkpoint = Callable[[], Awaitable[None]]


@contextmanager
def _stage(name: str):
    started = time.perf_counter()
    try:
        yield
    finally:
        pipeline_stage_duration_seconds.labels(stage=name).observe(time.perf_counter() - started)


def _totals(drafts: list[TransactionDraft]) -> tuple[Decimal, Decimal]:
    inflow = sum((d.amount for d in drafts if d.is_inflow), Decimal("0"))
    outflow = sum((d.amount for d in drafts if not d.is_inflow), Decimal("0"))
    return quantize(inflow), quantize(outflow)


class IngestionPipeline:
    """
    Runs one statement (text and/or screenshot) through every stage
    and persists the accepted drafts in a single save.
    """

    def __init__(
        self,
        storage: Storage,
        extractor: Extractor,
        normalizer: Optional[Normalizer] = None,
        categorizer: Optional[Categorizer] = None,
        ocr: Optional[OcrCapability] = None,
        quota: Optional[QuotaManager] = None,
        review_threshold: Optional[float] = None,
        chunk_size: Optional[int] = None,
        chunk_yield_seconds: Optional[float] = None,
        ocr_timeout_seconds: Optional[float] = None,
    ):
        self.storage = storage
        self.extractor = extractor
        self.normalizer = normalizer or Normalizer()
        self.categorizer = categorizer or Categorizer(storage)
        self.ocr = ocr
        self.quota = quota
        self.review_threshold = (
            review_threshold if review_threshold is not None else settings.REVIEW_CONFIDENCE_THRESHOLD
        )
        self.chunk_size = chunk_size or settings.CHUNK_SIZE
        self.chunk_yield_seconds = (
            chunk_yield_seconds if chunk_yield_seconds is not None else settings.CHUNK_YIELD_SECONDS
        )
        self.ocr_timeout_seconds = ocr_timeout_seconds or settings.OCR_CALL_TIMEOUT_SECONDS

    async def _ocr_text(self, tenant_id: str, image: bytes) -> str:
        """OCR a screenshot. Raises CapabilityUnavailableError or QuotaExceededError."""
        if self.ocr is None:
            raise CapabilityUnavailableError("ocr", "OCR is not enabled")
        if self.quota is not None:
            await self.quota.require(tenant_id, self.ocr.capability)

        try:
            text = await asyncio.wait_for(self.ocr.image_to_text(image), timeout=self.ocr_timeout_seconds)
        except asyncio.TimeoutError as e:
            capability_calls_total.labels(capability="ocr", outcome="timeout").inc()
            raise CapabilityUnavailableError(
                "ocr", f"OCR exceeded {self.ocr_timeout_seconds:g}s"
            ) from e
        except CapabilityError as e:
            capability_calls_total.labels(capability="ocr", outcome="failed").inc()
            raise CapabilityUnavailableError("ocr", e.message) from e

        capability_calls_total.labels(capability="ocr", outcome="used").inc()
        return text

    async def _resolve_text(self, tenant_id: str, text: Optional[str], image: Optional[bytes]) -> str:
        text = text or ""
        if image is None:
            if not text.strip():
                raise CapabilityUnavailableError("ocr", "no statement text and no image to OCR")
            return text

        try:
            ocr_text = await self._ocr_text(tenant_id, image)
        except CapabilityUnavailableError:
            if text.strip():
                # Caller also sent text; carry on with that alone
                logger.warning("ocr_skipped", tenant_id=tenant_id, reason="capability_unavailable")
                return text
            raise
        return "\n".join(part for part in (text, ocr_text) if part.strip())

    async def ingest(
        self,
        tenant_id: str,
        text: Optional[str] = None,
        image: Optional[bytes] = None,
        learn: bool = True,
        checkpoint: Optional[Checkpoint] = None,
    ) -> IngestionResult:
        """
        Main entry point. `checkpoint` is awaited between normalization chunks
        when running as a background job, so cancellation is honoured.
        """
        logger.info("ingestion_started", tenant_id=tenant_id, has_image=image is not None)

        with _stage("ocr"):
            statement = await self._resolve_text(tenant_id, text, image)

        with _stage("extract"):
            extraction = await self.extractor.extract(statement, tenant_id)

        with _stage("normalize"):
            normalized = await self.normalizer.normalize_chunked(
                extraction.drafts,
                chunk_size=self.chunk_size,
                yield_seconds=self.chunk_yield_seconds,
                checkpoint=checkpoint,
            )

        if checkpoint is not None:
            await checkpoint()

        with _stage("categorize"):
            categorized = await self.categorizer.categorize(tenant_id, normalized.accepted, learn=learn)

        accepted = [
            d.model_copy(update={"review_status": ReviewStatus.NEEDS_REVIEW})
            if d.confidence < self.review_threshold and d.review_status == ReviewStatus.UNREVIEWED
            else d
            for d in categorized.drafts
        ]

        with _stage("persist"):
            if accepted:
                await self.storage.save(tenant_id, accepted)

        inflow, outflow = _totals(accepted)
        result = IngestionResult(
            accepted=accepted,
            rejected=normalized.rejected,
            skipped=extraction.skipped,
            ai_status=extraction.ai_status,
            ai_detail=extraction.ai_detail,
            quota_reset_at=extraction.quota_reset_at,
            mean_confidence=(
                round(sum(d.confidence for d in accepted) / len(accepted), 4) if accepted else 0.0
            ),
            needs_review=sum(1 for d in accepted if d.review_status == ReviewStatus.NEEDS_REVIEW),
            total_inflow=inflow,
            total_outflow=outflow,
        )

        logger.info(
            "ingestion_complete",
            tenant_id=tenant_id,
            accepted=len(result.accepted),
            rejected=len(result.rejected),
            skipped=len(result.skipped),
            needs_review=result.needs_review,
            ai_status=result.ai_status.value,
        )
        return result
