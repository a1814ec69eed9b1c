"""
Tests for the SQLAlchemy storage backend against in-memory SQLite.

Each test runs one scenario inside a single event loop, from engine
creation to dispose.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.pool import StaticPool

from ledgerline.errors import RequestValidationError
from ledgerline.models.database import build_engine, init_db
from ledgerline.models.enums import AlertKind, AlertStatus, RecordKind, TxDirection
from ledgerline.schemas.alerts import AnomalyAlert
from ledgerline.schemas.transactions import CategoryPattern
from ledgerline.storage.base import RecordQuery
from ledgerline.storage.sql_store import SqlStorage


def run_with_storage(scenario):
    async def main():
        engine = build_engine(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        try:
            await init_db(engine)
            return await scenario(SqlStorage(async_sessionmaker(engine, expire_on_commit=False)))
        finally:
            await engine.dispose()

    return asyncio.run(main())


def query(**filters):
    return RecordQuery(**filters)


class TestTransactions:

    def test_round_trip(self, tenant_id, make_draft):
        draft = make_draft(
            amount="1200.00",
            counterparty_phone="+254722000111",
            reference="QAB1CD2EF4",
            transaction_cost=Decimal("13.00"),
        )

        async def scenario(storage):
            await storage.save(tenant_id, [draft])
            return await storage.query(tenant_id, query(kind=RecordKind.TRANSACTION))

        [loaded] = run_with_storage(scenario)
        assert loaded.id == draft.id
        assert loaded.amount == Decimal("1200.00")
        assert loaded.direction == TxDirection.SENT
        assert loaded.transaction_cost == Decimal("13.00")
        assert loaded.timestamp == draft.timestamp

    def test_upsert_by_id(self, tenant_id, make_draft):
        draft = make_draft()

        async def scenario(storage):
            await storage.save(tenant_id, [draft])
            await storage.save(tenant_id, [draft.model_copy(update={"category": "rent"})])
            return await storage.query(tenant_id, query(kind=RecordKind.TRANSACTION))

        [loaded] = run_with_storage(scenario)
        assert loaded.category == "rent"

    def test_filters(self, tenant_id, make_draft):
        early = make_draft(timestamp=datetime(2025, 1, 1, 9, 0))
        late = make_draft(timestamp=datetime(2025, 1, 20, 9, 0), direction=TxDirection.RECEIVED)

        async def scenario(storage):
            await storage.save(tenant_id, [late, early])
            kind = RecordKind.TRANSACTION
            return [
                await storage.query(tenant_id, query(kind=kind, start=datetime(2025, 1, 10), end=datetime(2025, 1, 31))),
                await storage.query(tenant_id, query(kind=kind, direction=TxDirection.RECEIVED)),
                await storage.query(tenant_id, query(kind=kind, ids=[early.id])),
                await storage.query(tenant_id, query(kind=kind)),
            ]

        window, received, by_id, ordered = run_with_storage(scenario)
        assert [d.id for d in window] == [late.id]
        assert [d.id for d in received] == [late.id]
        assert [d.id for d in by_id] == [early.id]
        assert [d.id for d in ordered] == [early.id, late.id]

    def test_tenant_isolation(self, tenant_id, make_draft):
        async def scenario(storage):
            await storage.save(tenant_id, [make_draft()])
            return await storage.query("tenant-b", query(kind=RecordKind.TRANSACTION))

        assert run_with_storage(scenario) == []

    def test_foreign_record_refused(self, make_draft):
        async def scenario(storage):
            await storage.save("tenant-b", [make_draft()])

        with pytest.raises(RequestValidationError):
            run_with_storage(scenario)


class TestAlertsAndPatterns:

    def test_alert_round_trip(self, tenant_id):
        alert = AnomalyAlert(
            tenant_id=tenant_id,
            transaction_ids=["tx-1", "tx-2"],
            kind=AlertKind.DUPLICATE,
            matched_kinds=[AlertKind.DUPLICATE],
            risk_score=30,
            recommendation="check",
        )

        async def scenario(storage):
            await storage.save(tenant_id, [alert])
            flagged = await storage.query(tenant_id, query(
                kind=RecordKind.ALERT, status=AlertStatus.OPEN, transaction_ids=["tx-1"],
            ))
            related = await storage.query(tenant_id, query(kind=RecordKind.ALERT, transaction_ids=["tx-2"]))
            return flagged, related

        [loaded], related = run_with_storage(scenario)
        assert loaded.transaction_ids == ["tx-1", "tx-2"]
        assert loaded.kind == AlertKind.DUPLICATE
        assert loaded.created_at.tzinfo is not None
        # related ids do not count as the flagged transaction
        assert related == []

    def test_pattern_round_trip(self, tenant_id):
        pattern = CategoryPattern(
            tenant_id=tenant_id,
            keyword="mama okoth",
            category="inventory",
            weight=2.0,
            hit_count=2,
            last_reinforced_at=datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc),
        )

        async def scenario(storage):
            await storage.save(tenant_id, [pattern])
            return await storage.query(tenant_id, query(kind=RecordKind.PATTERN))

        [loaded] = run_with_storage(scenario)
        assert loaded == pattern

    def test_health_check(self):
        async def scenario(storage):
            return await storage.health_check()

        assert run_with_storage(scenario) is True
