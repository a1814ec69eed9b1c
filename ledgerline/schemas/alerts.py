"""
Anomaly detection schemas.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ledgerline.models.enums import AlertKind, AlertStatus, Sensitivity
from ledgerline.schemas.transactions import new_id


class TenantProfile(BaseModel):
    """Per-tenant tuning for anomaly rules. Missing fields fall back to settings."""
    business_hours_start: Optional[int] = Field(default=None, ge=0, le=23)
    business_hours_end: Optional[int] = Field(default=None, ge=1, le=24)
    typical_transaction_size: Optional[Decimal] = None


class AnomalyAlert(BaseModel):
    """
    An alert is immutable apart from status.
    transaction_ids[0] is the flagged transaction; further ids are related ones.
    """
    id: str = Field(default_factory=new_id)
    tenant_id: str
    transaction_ids: list[str]
    kind: AlertKind
    matched_kinds: list[AlertKind]
    risk_score: int = Field(ge=0, le=100)
    recommendation: str
    status: AlertStatus = AlertStatus.OPEN
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def primary_transaction_id(self) -> str:
        return self.transaction_ids[0]


class AnomalyReport(BaseModel):
    tenant_id: str
    alerts: list[AnomalyAlert] = []
    transactions_scanned: int = 0
    overall_risk: Sensitivity = Sensitivity.LOW
    resolved_alert_ids: list[str] = []
