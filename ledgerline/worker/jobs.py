"""
Handlers for heavy operations run by the JobQueue.
Each validates its payload, works in CHUNK_SIZE chunks and calls
ctx.checkpoint() between them so cancellation is honoured.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from ledgerline.config import settings
from ledgerline.models.enums import HeavyOperation, RecordKind
from ledgerline.pipeline.anomaly_detector import AnomalyService
from ledgerline.pipeline.insights import PERIOD_DAYS, period_insights
from ledgerline.pipeline.orchestrator import IngestionPipeline
from ledgerline.pipeline.reconciliation import ReconciliationService
from ledgerline.schemas.contracts import (
    HEAVY_PAYLOADS,
    DetectAnomaliesParams,
    ExtractParams,
    InlineTransaction,
    MultiPeriodAnalyticsParams,
    ReconcileParams,
)
from ledgerline.schemas.jobs import QueueJob
from ledgerline.schemas.transactions import TransactionDraft
from ledgerline.storage.base import RecordQuery, Storage
from ledgerline.worker.queue import Handler, JobContext

logger = structlog.get_logger(__name__)


def parse_payload(job: QueueJob):
    """Validate a job payload against its operation's params model."""
    return HEAVY_PAYLOADS[job.operation].model_validate(job.payload)


async def drafts_in_chunks(
    ctx: JobContext,
    tenant_id: str,
    inline: list[InlineTransaction],
    chunk_size: Optional[int] = None,
    yield_seconds: Optional[float] = None,
) -> list[TransactionDraft]:
    """Convert caller-supplied transactions chunk by chunk, reporting progress."""
    chunk_size = max(chunk_size or settings.CHUNK_SIZE, 1)
    yield_seconds = settings.CHUNK_YIELD_SECONDS if yield_seconds is None else yield_seconds
    drafts: list[TransactionDraft] = []
    total = len(inline)
    for start in range(0, total, chunk_size):
        await ctx.checkpoint()
        drafts.extend(t.to_draft(tenant_id) for t in inline[start:start + chunk_size])
        await ctx.advance(min(start + chunk_size, total), total)
        await asyncio.sleep(yield_seconds)
    return drafts


def build_handlers(
    storage: Storage,
    pipeline: IngestionPipeline,
    anomalies: AnomalyService,
    reconciliation: ReconciliationService,
) -> dict[HeavyOperation, Handler]:
    """Wire the heavy operations to the services that implement them."""

    async def bulk_extract(job: QueueJob, ctx: JobContext) -> Any:
        params: ExtractParams = parse_payload(job)
        await ctx.advance(0, 1)
        result = await pipeline.ingest(
            job.tenant_id,
            text=params.text,
            image=params.image_bytes(),
            learn=params.learn,
            checkpoint=ctx.checkpoint,
        )
        await ctx.advance(1, 1)
        return result

    async def multi_period_analytics(job: QueueJob, ctx: JobContext) -> Any:
        params: MultiPeriodAnalyticsParams = parse_payload(job)
        as_of = params.as_of or datetime.now()
        longest = max(PERIOD_DAYS[p] for p in params.periods)
        await ctx.checkpoint()
        drafts = await storage.query(job.tenant_id, RecordQuery(
            kind=RecordKind.TRANSACTION,
            start=as_of - timedelta(days=longest),
            end=as_of + timedelta(microseconds=1),
        ))

        results = []
        for done, period in enumerate(params.periods, start=1):
            await ctx.checkpoint()
            results.append(period_insights(drafts, period, as_of))
            await ctx.advance(done, len(params.periods))
            await asyncio.sleep(settings.CHUNK_YIELD_SECONDS)
        logger.info("analytics_complete", tenant_id=job.tenant_id, periods=len(results), transactions=len(drafts))
        return {"as_of": as_of, "periods": results}

    async def detect_anomalies(job: QueueJob, ctx: JobContext) -> Any:
        params: DetectAnomaliesParams = parse_payload(job)
        transactions = None
        if params.transactions is not None:
            transactions = await drafts_in_chunks(ctx, job.tenant_id, params.transactions)
        await ctx.checkpoint()
        return await anomalies.run(
            job.tenant_id,
            transactions=transactions,
            as_of=params.as_of,
            sensitivity=params.sensitivity,
            profile=params.profile,
        )

    async def reconcile(job: QueueJob, ctx: JobContext) -> Any:
        params: ReconcileParams = parse_payload(job)
        transactions = None
        if params.transactions is not None:
            transactions = await drafts_in_chunks(ctx, job.tenant_id, params.transactions)
        await ctx.checkpoint()
        return await reconciliation.run(
            job.tenant_id,
            params.ledger_entries,
            params.period_start,
            params.period_end,
            transactions=transactions,
        )

    return {
        HeavyOperation.BULK_EXTRACT: bulk_extract,
        HeavyOperation.MULTI_PERIOD_ANALYTICS: multi_period_analytics,
        HeavyOperation.DETECT_ANOMALIES: detect_anomalies,
        HeavyOperation.RECONCILE: reconcile,
    }
