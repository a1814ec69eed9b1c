"""
Storage contract consumed by the core.

save(tenant, records): upsert by id, all-or-nothing per call, StorageError on failure.
query(tenant, RecordQuery): filtered read; never returns another tenant's records.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence, Union

from pydantic import BaseModel

from ledgerline.errors import RequestValidationError
from ledgerline.models.enums import AlertStatus, RecordKind, TxDirection
from ledgerline.schemas.alerts import AnomalyAlert
from ledgerline.schemas.transactions import CategoryPattern, TransactionDraft

Record = Union[TransactionDraft, AnomalyAlert, CategoryPattern]


class RecordQuery(BaseModel):
    kind: RecordKind
    # Transactions: timestamp in [start, end). Alerts: created_at in [start, end).
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    direction: Optional[TxDirection] = None
    ids: Optional[list[str]] = None
    status: Optional[AlertStatus] = None
    # Alerts whose primary transaction is one of these
    transaction_ids: Optional[list[str]] = None
    limit: Optional[int] = None


def record_kind(record: Record) -> RecordKind:
    if isinstance(record, TransactionDraft):
        return RecordKind.TRANSACTION
    if isinstance(record, AnomalyAlert):
        return RecordKind.ALERT
    if isinstance(record, CategoryPattern):
        return RecordKind.PATTERN
    raise RequestValidationError(f"unsupported record type {type(record).__name__}")


def check_tenant(tenant_id: str, records: Sequence[Record]) -> None:
    """Every record in a save call must belong to the calling tenant."""
    for record in records:
        record_kind(record)
        if record.tenant_id != tenant_id:
            raise RequestValidationError(
                f"record {record.id} belongs to another tenant"
            )


class Storage(ABC):
    @abstractmethod
    async def save(self, tenant_id: str, records: Sequence[Record]) -> None:
        ...

    @abstractmethod
    async def query(self, tenant_id: str, query: RecordQuery) -> list[Record]:
        ...

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
