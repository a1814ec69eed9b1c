"""
SQLAlchemy-backed storage.

Each save() runs in one database transaction and upserts by primary key,
so a failed call leaves nothing behind and a retried call is idempotent.
"""

from datetime import timezone
from typing import Optional, Sequence

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgerline.errors import StorageError
from ledgerline.models.database import get_session_factory
from ledgerline.models.enums import AlertKind, AlertStatus, RecordKind
from ledgerline.models.tables import AnomalyAlertRow, CategoryPatternRow, TransactionRow
from ledgerline.schemas.alerts import AnomalyAlert
from ledgerline.schemas.transactions import CategoryPattern, TransactionDraft
from ledgerline.storage.base import Record, RecordQuery, Storage, check_tenant

logger = structlog.get_logger(__name__)


def _utc(value):
    """SQLite drops tzinfo; treat stored values as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Row <-> record conversion ────────────────────────────────

def _to_row(record: Record):
    if isinstance(record, TransactionDraft):
        return TransactionRow(
            id=record.id,
            tenant_id=record.tenant_id,
            reference=record.reference,
            timestamp=record.timestamp,
            amount=record.amount,
            direction=record.direction.value if record.direction else None,
            counterparty_name=record.counterparty_name,
            counterparty_phone=record.counterparty_phone,
            account_number=record.account_number,
            transaction_cost=record.transaction_cost,
            balance_after=record.balance_after,
            raw_text=record.raw_text,
            confidence=record.confidence,
            extraction_method=record.extraction_method.value,
            category=record.category,
            category_confidence=record.category_confidence,
            review_status=record.review_status.value,
        )
    if isinstance(record, AnomalyAlert):
        return AnomalyAlertRow(
            id=record.id,
            tenant_id=record.tenant_id,
            primary_transaction_id=record.primary_transaction_id,
            transaction_ids=list(record.transaction_ids),
            kind=record.kind.value,
            matched_kinds=[k.value for k in record.matched_kinds],
            risk_score=record.risk_score,
            recommendation=record.recommendation,
            status=record.status.value,
            created_at=record.created_at,
        )
    return CategoryPatternRow(
        id=record.id,
        tenant_id=record.tenant_id,
        keyword=record.keyword,
        category=record.category,
        weight=record.weight,
        hit_count=record.hit_count,
        last_reinforced_at=record.last_reinforced_at,
    )


def _from_row(row) -> Record:
    if isinstance(row, TransactionRow):
        return TransactionDraft.model_validate(row)
    if isinstance(row, AnomalyAlertRow):
        return AnomalyAlert(
            id=row.id,
            tenant_id=row.tenant_id,
            transaction_ids=list(row.transaction_ids),
            kind=AlertKind(row.kind),
            matched_kinds=[AlertKind(k) for k in row.matched_kinds],
            risk_score=row.risk_score,
            recommendation=row.recommendation,
            status=AlertStatus(row.status),
            created_at=_utc(row.created_at),
        )
    return CategoryPattern(
        tenant_id=row.tenant_id,
        keyword=row.keyword,
        category=row.category,
        weight=row.weight,
        hit_count=row.hit_count,
        last_reinforced_at=_utc(row.last_reinforced_at),
    )


class SqlStorage(Storage):
    """Storage over the async ORM tables."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or get_session_factory()

    async def save(self, tenant_id: str, records: Sequence[Record]) -> None:
        check_tenant(tenant_id, records)
        if not records:
            return
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for record in records:
                        await session.merge(_to_row(record))
        except SQLAlchemyError as e:
            logger.error("storage_save_failed", tenant_id=tenant_id, records=len(records), error=str(e)[:200])
            raise StorageError(f"save failed: {type(e).__name__}") from e

    def _statement(self, tenant_id: str, query: RecordQuery):
        if query.kind == RecordKind.TRANSACTION:
            stmt = select(TransactionRow).where(TransactionRow.tenant_id == tenant_id)
            if query.start is not None:
                stmt = stmt.where(TransactionRow.timestamp >= query.start)
            if query.end is not None:
                stmt = stmt.where(TransactionRow.timestamp < query.end)
            if query.direction is not None:
                stmt = stmt.where(TransactionRow.direction == query.direction.value)
            if query.ids is not None:
                stmt = stmt.where(TransactionRow.id.in_(query.ids))
            return stmt.order_by(TransactionRow.timestamp, TransactionRow.id)

        if query.kind == RecordKind.ALERT:
            stmt = select(AnomalyAlertRow).where(AnomalyAlertRow.tenant_id == tenant_id)
            if query.status is not None:
                stmt = stmt.where(AnomalyAlertRow.status == query.status.value)
            if query.transaction_ids is not None:
                stmt = stmt.where(AnomalyAlertRow.primary_transaction_id.in_(query.transaction_ids))
            if query.ids is not None:
                stmt = stmt.where(AnomalyAlertRow.id.in_(query.ids))
            if query.start is not None:
                stmt = stmt.where(AnomalyAlertRow.created_at >= query.start)
            if query.end is not None:
                stmt = stmt.where(AnomalyAlertRow.created_at < query.end)
            return stmt.order_by(AnomalyAlertRow.created_at, AnomalyAlertRow.id)

        stmt = select(CategoryPatternRow).where(CategoryPatternRow.tenant_id == tenant_id)
        if query.ids is not None:
            stmt = stmt.where(CategoryPatternRow.id.in_(query.ids))
        return stmt.order_by(CategoryPatternRow.keyword, CategoryPatternRow.category)

    async def query(self, tenant_id: str, query: RecordQuery) -> list[Record]:
        stmt = self._statement(tenant_id, query)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            logger.error("storage_query_failed", tenant_id=tenant_id, kind=query.kind.value, error=str(e)[:200])
            raise StorageError(f"query failed: {type(e).__name__}") from e
        return [_from_row(row) for row in rows]

    async def health_check(self) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except SQLAlchemyError:
            return False
