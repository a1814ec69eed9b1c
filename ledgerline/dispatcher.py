"""
Tool dispatcher: the single entry point for every operation.

A ToolInvocation goes in, a ToolResult comes out. The dispatch table is closed:
each Operation maps to a params model and a handler. Errors from the taxonomy
become failure results with their kind and retriability; anything else is
logged with its traceback and reported as internal_error.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python

from ledgerline.config import settings
from ledgerline.errors import (
    LedgerlineError,
    NotFoundError,
    OperationTimeoutError,
    RequestValidationError,
)
from ledgerline.models.enums import ErrorKind, HeavyOperation, Operation, RecordKind
from ledgerline.observability.metrics import tool_invocation_duration_seconds, tool_invocations_total
from ledgerline.pipeline.anomaly_detector import AnomalyService
from ledgerline.pipeline.categorizer import Categorizer
from ledgerline.pipeline.orchestrator import IngestionPipeline
from ledgerline.pipeline.reconciliation import ReconciliationService
from ledgerline.quota.manager import QuotaManager
from ledgerline.schemas.contracts import (
    HEAVY_PAYLOADS,
    CancelJobParams,
    CategorizeParams,
    ConfirmCategoryParams,
    DetectAnomaliesParams,
    ExtractParams,
    JobStatusParams,
    ReconcileParams,
    SubmitHeavyJobParams,
    ToolInvocation,
    ToolResult,
)
from ledgerline.storage.base import RecordQuery, Storage
from ledgerline.worker.queue import JobQueue

logger = structlog.get_logger(__name__)

REQUESTS_CAPABILITY = "requests"
OPERATION_NAMES = frozenset(op.value for op in Operation)

# Handler output: data, or (data, confidence)
HandlerResult = Union[Any, tuple[Any, Optional[float]]]


def validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def queued_result(job) -> dict:
    return {"queued": True, "job_id": job.id, "state": job.state.value}


class ToolDispatcher:
    """Validates, rate-limits, routes and times every tool invocation."""

    def __init__(
        self,
        storage: Storage,
        pipeline: IngestionPipeline,
        categorizer: Categorizer,
        anomalies: AnomalyService,
        reconciliation: ReconciliationService,
        queue: JobQueue,
        quota: QuotaManager,
        sync_timeout_seconds: Optional[float] = None,
        heavy_line_threshold: Optional[int] = None,
        heavy_record_threshold: Optional[int] = None,
    ):
        self.storage = storage
        self.pipeline = pipeline
        self.categorizer = categorizer
        self.anomalies = anomalies
        self.reconciliation = reconciliation
        self.queue = queue
        self.quota = quota
        self.sync_timeout_seconds = sync_timeout_seconds or settings.SYNC_CALL_TIMEOUT_SECONDS
        self.heavy_line_threshold = heavy_line_threshold or settings.HEAVY_LINE_THRESHOLD
        self.heavy_record_threshold = heavy_record_threshold or settings.HEAVY_RECORD_THRESHOLD

        self.table: dict[Operation, tuple[type[BaseModel], Callable[[str, Any], Awaitable[HandlerResult]]]] = {
            Operation.EXTRACT: (ExtractParams, self._extract),
            Operation.CATEGORIZE: (CategorizeParams, self._categorize),
            Operation.CONFIRM_CATEGORY: (ConfirmCategoryParams, self._confirm_category),
            Operation.DETECT_ANOMALIES: (DetectAnomaliesParams, self._detect_anomalies),
            Operation.RECONCILE: (ReconcileParams, self._reconcile),
            Operation.SUBMIT_HEAVY_JOB: (SubmitHeavyJobParams, self._submit_heavy_job),
            Operation.JOB_STATUS: (JobStatusParams, self._job_status),
            Operation.CANCEL_JOB: (CancelJobParams, self._cancel_job),
        }

    # ── Entry point ──────────────────────────────────────────

    async def invoke(self, invocation: Union[ToolInvocation, dict]) -> ToolResult:
        started = time.perf_counter()
        label = "unknown"
        try:
            if not isinstance(invocation, ToolInvocation):
                try:
                    invocation = ToolInvocation.model_validate(invocation)
                except ValidationError as e:
                    raise RequestValidationError(validation_message(e)) from e
            if invocation.operation in OPERATION_NAMES:
                label = invocation.operation

            with structlog.contextvars.bound_contextvars(
                tenant_id=invocation.tenant_id, operation=invocation.operation
            ):
                result = await self._dispatch(invocation)
        except LedgerlineError as e:
            result = ToolResult.fail(e.kind, e.message, e.retriable, e.details())
        except Exception as e:
            logger.exception("tool_invocation_failed", operation=label)
            result = ToolResult.fail(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}", retriable=False)

        outcome = "success" if result.success else result.error_kind.value
        tool_invocations_total.labels(operation=label, outcome=outcome).inc()
        tool_invocation_duration_seconds.labels(operation=label).observe(time.perf_counter() - started)
        if not result.success:
            logger.info("tool_invocation_rejected", operation=label, error_kind=outcome, message=result.message)
        return result

    async def _dispatch(self, invocation: ToolInvocation) -> ToolResult:
        await self.quota.require(invocation.tenant_id, REQUESTS_CAPABILITY)

        try:
            operation = Operation(invocation.operation)
        except ValueError as e:
            raise RequestValidationError(f"unknown operation '{invocation.operation}'") from e

        params_model, handler = self.table[operation]
        try:
            params = params_model.model_validate(invocation.parameters)
        except ValidationError as e:
            raise RequestValidationError(validation_message(e)) from e

        try:
            output = await asyncio.wait_for(
                handler(invocation.tenant_id, params), timeout=self.sync_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(operation.value, self.sync_timeout_seconds) from e

        data, confidence = output if isinstance(output, tuple) else (output, None)
        return ToolResult.ok(to_jsonable_python(data), confidence=confidence)

    async def _enqueue(self, tenant_id: str, operation: HeavyOperation, params: BaseModel) -> dict:
        job = await self.queue.submit(tenant_id, operation, params.model_dump(mode="json"))
        logger.info("routed_to_queue", job_id=job.id, heavy_operation=operation.value)
        return queued_result(job)

    # ── Handlers ─────────────────────────────────────────────

    async def _extract(self, tenant_id: str, params: ExtractParams) -> HandlerResult:
        if params.line_count() > self.heavy_line_threshold:
            return await self._enqueue(tenant_id, HeavyOperation.BULK_EXTRACT, params)
        result = await self.pipeline.ingest(
            tenant_id, text=params.text, image=params.image_bytes(), learn=params.learn
        )
        return result, result.mean_confidence

    async def _categorize(self, tenant_id: str, params: CategorizeParams) -> HandlerResult:
        stored = []
        if params.transaction_ids:
            stored = await self.storage.query(tenant_id, RecordQuery(
                kind=RecordKind.TRANSACTION, ids=params.transaction_ids
            ))
            missing = set(params.transaction_ids) - {d.id for d in stored}
            if missing:
                raise NotFoundError(f"transactions not found: {', '.join(sorted(missing))}")
        inline = [t.to_draft(tenant_id) for t in params.transactions or []]

        result = await self.categorizer.categorize(tenant_id, [*stored, *inline], learn=params.learn)
        stored_ids = {d.id for d in stored}
        updated = [d for d in result.drafts if d.id in stored_ids]
        if updated:
            await self.storage.save(tenant_id, updated)

        confidence = None
        if result.assignments:
            confidence = round(sum(a.confidence for a in result.assignments) / len(result.assignments), 4)
        return {"assignments": result.assignments, "patterns_updated": result.patterns_updated}, confidence

    async def _confirm_category(self, tenant_id: str, params: ConfirmCategoryParams) -> HandlerResult:
        return await self.categorizer.confirm(tenant_id, params.transaction_id, params.category)

    async def _detect_anomalies(self, tenant_id: str, params: DetectAnomaliesParams) -> HandlerResult:
        if params.record_count() > self.heavy_record_threshold:
            return await self._enqueue(tenant_id, HeavyOperation.DETECT_ANOMALIES, params)
        transactions = None
        if params.transactions is not None:
            transactions = [t.to_draft(tenant_id) for t in params.transactions]
        return await self.anomalies.run(
            tenant_id,
            transactions=transactions,
            as_of=params.as_of,
            sensitivity=params.sensitivity,
            profile=params.profile,
        )

    async def _reconcile(self, tenant_id: str, params: ReconcileParams) -> HandlerResult:
        if params.record_count() > self.heavy_record_threshold:
            return await self._enqueue(tenant_id, HeavyOperation.RECONCILE, params)
        transactions = None
        if params.transactions is not None:
            transactions = [t.to_draft(tenant_id) for t in params.transactions]
        result = await self.reconciliation.run(
            tenant_id, params.ledger_entries, params.period_start, params.period_end,
            transactions=transactions,
        )
        return result, result.summary.match_rate

    async def _submit_heavy_job(self, tenant_id: str, params: SubmitHeavyJobParams) -> HandlerResult:
        try:
            payload = HEAVY_PAYLOADS[params.operation].model_validate(params.payload)
        except ValidationError as e:
            raise RequestValidationError(validation_message(e)) from e
        return await self._enqueue(tenant_id, params.operation, payload)

    async def _job_status(self, tenant_id: str, params: JobStatusParams) -> HandlerResult:
        return await self.queue.status(params.job_id, tenant_id)

    async def _cancel_job(self, tenant_id: str, params: CancelJobParams) -> HandlerResult:
        return await self.queue.cancel(params.job_id, tenant_id, params.reason)
