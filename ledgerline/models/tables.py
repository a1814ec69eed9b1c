"""
SQLAlchemy ORM models.
Portable column types so the same tables run on PostgreSQL and SQLite.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.models.database import Base

JsonType = JSON().with_variant(JSONB(), "postgresql")


# ────────────────────────────────────────────────────────────
# TRANSACTIONS
# ────────────────────────────────────────────────────────────
class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    # Statement-local time, stored without zone
    timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    direction: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    counterparty_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    counterparty_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    account_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    transaction_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    balance_after: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    raw_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    extraction_method: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    category_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    review_status: Mapped[str] = mapped_column(String(16), nullable=False, default="unreviewed")

    __table_args__ = (
        Index("ix_transactions_tenant_timestamp", "tenant_id", "timestamp"),
    )


# ────────────────────────────────────────────────────────────
# CATEGORY PATTERNS (online-learning table)
# ────────────────────────────────────────────────────────────
class CategoryPatternRow(Base):
    __tablename__ = "category_patterns"

    # "<tenant>:<keyword>:<category>"
    id: Mapped[str] = mapped_column(String(400), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    keyword: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reinforced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ────────────────────────────────────────────────────────────
# ANOMALY ALERTS
# ────────────────────────────────────────────────────────────
class AnomalyAlertRow(Base):
    __tablename__ = "anomaly_alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    primary_transaction_id: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_ids: Mapped[list] = mapped_column(JsonType, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    matched_kinds: Mapped[list] = mapped_column(JsonType, nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    recommendation: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_anomaly_alerts_tenant_primary", "tenant_id", "primary_transaction_id"),
    )
