"""
Tests for the heavy operation handlers, run through a real queue.
"""

import asyncio
from datetime import datetime

from ledgerline.dependencies import build_dispatcher
from ledgerline.models.enums import HeavyOperation, JobState, RecordKind, TxDirection
from ledgerline.storage.base import RecordQuery


def run_job(storage, quota, tenant_id, operation, payload):
    dispatcher = build_dispatcher(storage, quota, concurrency=1)
    queue = dispatcher.queue

    async def main():
        await queue.start()
        try:
            job = await queue.submit(tenant_id, operation, payload)
            return await queue.wait(job.id, tenant_id)
        finally:
            await queue.stop()

    return asyncio.run(main())


def inline(amount, hour, name="JOHN DOE", direction="sent"):
    return {
        "timestamp": datetime(2025, 1, 15, hour, 0).isoformat(),
        "amount": amount,
        "direction": direction,
        "counterparty_name": name,
    }


class TestBulkExtract:

    def test_statement_ingested(self, storage, unlimited_quota, tenant_id, statement_text):
        status = run_job(storage, unlimited_quota, tenant_id, HeavyOperation.BULK_EXTRACT, {
            "text": statement_text, "learn": False,
        })
        assert status.state == JobState.COMPLETED
        assert len(status.result["accepted"]) == 4
        assert (status.chunks_done, status.chunks_total) == (1, 1)
        stored = asyncio.run(storage.query(tenant_id, RecordQuery(kind=RecordKind.TRANSACTION)))
        assert len(stored) == 4

    def test_invalid_payload_fails_job(self, storage, unlimited_quota, tenant_id):
        status = run_job(storage, unlimited_quota, tenant_id, HeavyOperation.BULK_EXTRACT, {"text": " "})
        assert status.state == JobState.FAILED
        assert status.error.startswith("ValidationError")


class TestAnalytics:

    def test_periods_from_storage(self, storage, unlimited_quota, tenant_id, make_draft):
        drafts = [
            make_draft(amount="1000.00", direction=TxDirection.RECEIVED, timestamp=datetime(2025, 1, 29, 10, 0)),
            make_draft(amount="500.00", direction=TxDirection.RECEIVED, timestamp=datetime(2025, 1, 30, 10, 0)),
            make_draft(amount="700.00", direction=TxDirection.RECEIVED, timestamp=datetime(2025, 1, 10, 10, 0)),
        ]
        asyncio.run(storage.save(tenant_id, drafts))

        status = run_job(storage, unlimited_quota, tenant_id, HeavyOperation.MULTI_PERIOD_ANALYTICS, {
            "periods": ["week", "month"], "as_of": "2025-01-31T23:00:00",
        })
        assert status.state == JobState.COMPLETED
        week, month = status.result["periods"]
        assert week["revenue"]["total"] == "1500.00"
        assert month["revenue"]["total"] == "2200.00"
        assert (status.chunks_done, status.chunks_total) == (2, 2)

    def test_utc_as_of_uses_statement_time(self, storage, unlimited_quota, tenant_id, make_draft):
        asyncio.run(storage.save(tenant_id, [
            make_draft(amount="1000.00", direction=TxDirection.RECEIVED, timestamp=datetime(2025, 1, 29, 10, 0)),
        ]))
        # 20:00 UTC is 23:00 in Nairobi
        status = run_job(storage, unlimited_quota, tenant_id, HeavyOperation.MULTI_PERIOD_ANALYTICS, {
            "periods": ["week"], "as_of": "2025-01-31T20:00:00Z",
        })
        assert status.state == JobState.COMPLETED
        assert status.result["as_of"] == "2025-01-31T23:00:00"
        assert status.result["periods"][0]["revenue"]["total"] == "1000.00"


class TestAnomaliesAndReconcile:

    def test_inline_anomalies(self, storage, unlimited_quota, tenant_id):
        status = run_job(storage, unlimited_quota, tenant_id, HeavyOperation.DETECT_ANOMALIES, {
            "transactions": [inline("100.00", 10), inline("1.00", 11, name="ALICE W"), inline("250.00", 12)],
        })
        assert status.state == JobState.COMPLETED
        assert status.result["transactions_scanned"] == 3
        assert [a["kind"] for a in status.result["alerts"]] == ["known_fraud_pattern"]
        assert (status.chunks_done, status.chunks_total) == (3, 3)

    def test_inline_reconcile(self, storage, unlimited_quota, tenant_id):
        status = run_job(storage, unlimited_quota, tenant_id, HeavyOperation.RECONCILE, {
            "period_start": "2025-01-01",
            "period_end": "2025-01-31",
            "ledger_entries": [{"id": "e1", "date": "2025-01-15", "amount": "-100.00", "description": "John Doe"}],
            "transactions": [inline("100.00", 10)],
        })
        assert status.state == JobState.COMPLETED
        assert status.result["summary"]["matched"] == 1
        assert status.result["summary"]["match_rate"] == 1.0
