"""
In-memory storage. Default backend for development and tests.
"""

from typing import Sequence

from ledgerline.errors import StorageError
from ledgerline.models.enums import RecordKind
from ledgerline.storage.base import Record, RecordQuery, Storage, check_tenant, record_kind


class InMemoryStorage(Storage):
    """Dict-backed storage: kind -> tenant -> id -> record."""

    def __init__(self):
        self._data: dict[RecordKind, dict[str, dict[str, Record]]] = {kind: {} for kind in RecordKind}
        self.fail_writes = False
        self.save_calls = 0

    async def save(self, tenant_id: str, records: Sequence[Record]) -> None:
        check_tenant(tenant_id, records)
        if self.fail_writes:
            raise StorageError("storage unavailable")
        self.save_calls += 1
        for record in records:
            bucket = self._data[record_kind(record)].setdefault(tenant_id, {})
            bucket[record.id] = record.model_copy(deep=True)

    async def query(self, tenant_id: str, query: RecordQuery) -> list[Record]:
        records = list(self._data[query.kind].get(tenant_id, {}).values())
        ids = set(query.ids) if query.ids is not None else None

        def keep(record) -> bool:
            if ids is not None and record.id not in ids:
                return False
            if query.kind == RecordKind.TRANSACTION:
                ts = record.timestamp
                if query.start is not None and (ts is None or ts < query.start):
                    return False
                if query.end is not None and (ts is None or ts >= query.end):
                    return False
                if query.direction is not None and record.direction != query.direction:
                    return False
            elif query.kind == RecordKind.ALERT:
                if query.status is not None and record.status != query.status:
                    return False
                if query.transaction_ids is not None and record.primary_transaction_id not in query.transaction_ids:
                    return False
                if query.start is not None and record.created_at < query.start:
                    return False
                if query.end is not None and record.created_at >= query.end:
                    return False
            return True

        matched = [r.model_copy(deep=True) for r in records if keep(r)]
        if query.kind == RecordKind.TRANSACTION:
            matched.sort(key=lambda r: (r.timestamp is None, r.timestamp or 0, r.id))
        elif query.kind == RecordKind.ALERT:
            matched.sort(key=lambda r: (r.created_at, r.id))
        else:
            matched.sort(key=lambda r: (r.keyword, r.category))

        if query.limit is not None:
            matched = matched[: query.limit]
        return matched
