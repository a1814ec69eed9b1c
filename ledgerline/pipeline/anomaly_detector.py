"""
Anomaly detection over a tenant's transaction window.

Rules (each independent, each with a configurable weight):
- amount_outlier: leave-one-out mean + k*spread, or above the tenant's typical-size ceiling
- duplicate: earlier draft with equal amount and counterparty within a short window
- velocity: more than M drafts with one counterparty inside a trailing window
- off_hours: outside the tenant's business hours
- known_fraud_pattern: suspicious signature in counterparty/reference, or penny test

risk = sum of matched rule weights clamped to [0, 100]. The dominant (highest
weight) rule names the alert and picks the recommendation. detect() is pure;
AnomalyService handles loading, superseding and saving.
"""

import re
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Optional

import numpy as np
import structlog
from pydantic import BaseModel

from ledgerline.config import settings
from ledgerline.models.enums import AlertKind, AlertStatus, RecordKind, Sensitivity
from ledgerline.observability.metrics import anomaly_alerts_total
from ledgerline.pipeline.categorizer import normalize_phrase
from ledgerline.schemas.alerts import AnomalyAlert, AnomalyReport, TenantProfile
from ledgerline.schemas.transactions import TransactionDraft
from ledgerline.storage.base import RecordQuery, Storage

logger = structlog.get_logger(__name__)

SENSITIVITY_SCALE = {
    Sensitivity.LOW: 1.5,
    Sensitivity.MEDIUM: 1.0,
    Sensitivity.HIGH: 0.75,
}

RECOMMENDATIONS = {
    AlertKind.KNOWN_FRAUD_PATTERN: "Potential fraud detected. Do not send further payments to this party and contact M-PESA customer care.",
    AlertKind.AMOUNT_OUTLIER: "Unusually large transaction. Verify it was authorized.",
    AlertKind.VELOCITY: "Many transactions with one party in a short time. Check for unauthorized access to the account.",
    AlertKind.DUPLICATE: "Possible duplicate payment. Confirm with the recipient before paying again.",
    AlertKind.OFF_HOURS: "Transaction outside normal business hours. Confirm it was expected.",
}

HIGH_RISK_SCORE = 70


class AnomalyConfig(BaseModel):
    window_days: int = 7
    stddev_multiplier: float = 3.0
    min_history: int = 5
    min_relative_spread: float = 0.1
    ceiling_multiplier: float = 10.0
    duplicate_window_seconds: int = 300
    velocity_window_seconds: int = 3600
    velocity_max_transactions: int = 5
    business_hours_start: int = 7
    business_hours_end: int = 21
    fraud_signatures: list[str] = ["test", "unknown", "fraud", "scam", "fake"]
    penny_test_amount: Decimal = Decimal("1.00")
    rule_weights: dict[AlertKind, int] = {
        AlertKind.KNOWN_FRAUD_PATTERN: 60,
        AlertKind.AMOUNT_OUTLIER: 40,
        AlertKind.VELOCITY: 35,
        AlertKind.DUPLICATE: 30,
        AlertKind.OFF_HOURS: 15,
    }

    @classmethod
    def from_settings(cls) -> "AnomalyConfig":
        return cls(
            window_days=settings.ANOMALY_WINDOW_DAYS,
            stddev_multiplier=settings.OUTLIER_STDDEV_MULTIPLIER,
            min_history=settings.OUTLIER_MIN_HISTORY,
            min_relative_spread=settings.OUTLIER_MIN_RELATIVE_SPREAD,
            ceiling_multiplier=settings.OUTLIER_CEILING_MULTIPLIER,
            duplicate_window_seconds=settings.DUPLICATE_WINDOW_SECONDS,
            velocity_window_seconds=settings.VELOCITY_WINDOW_SECONDS,
            velocity_max_transactions=settings.VELOCITY_MAX_TRANSACTIONS,
            business_hours_start=settings.BUSINESS_HOURS_START,
            business_hours_end=settings.BUSINESS_HOURS_END,
            fraud_signatures=settings.FRAUD_SIGNATURES,
            penny_test_amount=Decimal(settings.PENNY_TEST_AMOUNT),
            rule_weights={AlertKind(k): v for k, v in settings.ANOMALY_RULE_WEIGHTS.items()},
        )


def _party_keys(draft: TransactionDraft) -> set[str]:
    keys = set()
    name = normalize_phrase(draft.counterparty_name)
    if name:
        keys.add(f"name:{name}")
    if draft.counterparty_phone:
        keys.add(f"phone:{re.sub(r'[^0-9]', '', draft.counterparty_phone)[-9:]}")
    return keys


def _same_party(a: set[str], b: set[str]) -> bool:
    return bool(a & b)


def _same_payee(a: TransactionDraft, b: TransactionDraft, a_keys: set[str], b_keys: set[str]) -> bool:
    """Party match for duplicates. Drafts with no party on both sides (airtime) match on direction."""
    if not a_keys and not b_keys:
        return a.direction == b.direction
    return _same_party(a_keys, b_keys)


# ── Rules ────────────────────────────────────────────────────

def _outliers(
    drafts: list[TransactionDraft],
    config: AnomalyConfig,
    sensitivity: Sensitivity,
    profile: Optional[TenantProfile],
) -> set[int]:
    flagged: set[int] = set()
    amounts = np.array([float(d.amount) for d in drafts], dtype=float)
    n = len(amounts)
    k = config.stddev_multiplier * SENSITIVITY_SCALE[sensitivity]

    if n - 1 >= config.min_history:
        # Leave-one-out mean and population stddev for every draft at once
        total, total_sq, m = amounts.sum(), (amounts ** 2).sum(), n - 1
        mean = (total - amounts) / m
        var = np.maximum((total_sq - amounts ** 2) / m - mean ** 2, 0.0)
        spread = np.maximum(np.sqrt(var), mean * config.min_relative_spread)
        flagged.update(int(i) for i in np.nonzero(amounts > mean + k * spread)[0])

    if profile is not None and profile.typical_transaction_size:
        ceiling = profile.typical_transaction_size * Decimal(str(config.ceiling_multiplier))
        flagged.update(i for i, d in enumerate(drafts) if d.amount > ceiling)
    return flagged


def _duplicates(drafts: list[TransactionDraft], order: list[int], config: AnomalyConfig) -> dict[int, int]:
    """later index -> earlier index it duplicates"""
    window = timedelta(seconds=config.duplicate_window_seconds)
    keys = [_party_keys(d) for d in drafts]
    found: dict[int, int] = {}
    for pos, j in enumerate(order):
        for i in reversed(order[:pos]):
            gap = drafts[j].timestamp - drafts[i].timestamp
            if gap > window:
                break
            if drafts[i].amount == drafts[j].amount and _same_payee(drafts[i], drafts[j], keys[i], keys[j]):
                found[j] = i
                break
    return found


def _velocity(drafts: list[TransactionDraft], order: list[int], config: AnomalyConfig) -> dict[int, list[int]]:
    """index -> other indices with the same party inside the trailing window"""
    window = timedelta(seconds=config.velocity_window_seconds)
    keys = [_party_keys(d) for d in drafts]
    found: dict[int, list[int]] = {}
    for pos, j in enumerate(order):
        related = []
        for i in reversed(order[:pos]):
            if drafts[j].timestamp - drafts[i].timestamp > window:
                break
            if _same_party(keys[i], keys[j]):
                related.append(i)
        if len(related) + 1 > config.velocity_max_transactions:
            found[j] = related
    return found


def _off_hours(draft: TransactionDraft, start: int, end: int) -> bool:
    moment = draft.timestamp.time()
    # Date-only statements carry midnight; there is no time of day to judge.
    if moment == time(0, 0):
        return False
    return not (start <= moment.hour < end)


def _known_fraud(draft: TransactionDraft, config: AnomalyConfig) -> bool:
    if draft.amount == config.penny_test_amount:
        return True
    words = set(normalize_phrase(f"{draft.counterparty_name or ''} {draft.reference or ''}").split())
    return any(signature.lower() in words for signature in config.fraud_signatures)


# ── Detection ────────────────────────────────────────────────

def detect(
    tenant_id: str,
    drafts: list[TransactionDraft],
    config: Optional[AnomalyConfig] = None,
    profile: Optional[TenantProfile] = None,
    sensitivity: Sensitivity = Sensitivity.MEDIUM,
) -> list[AnomalyAlert]:
    """Score drafts and return alerts sorted by risk, highest first. Never mutates drafts."""
    config = config or AnomalyConfig.from_settings()
    drafts = [d for d in drafts if d.amount is not None and d.timestamp is not None]
    if not drafts:
        return []

    order = sorted(range(len(drafts)), key=lambda i: drafts[i].timestamp)
    hours_start = profile.business_hours_start if profile and profile.business_hours_start is not None \
        else config.business_hours_start
    hours_end = profile.business_hours_end if profile and profile.business_hours_end is not None \
        else config.business_hours_end

    outliers = _outliers(drafts, config, sensitivity, profile)
    duplicates = _duplicates(drafts, order, config)
    velocity = _velocity(drafts, order, config)

    alerts = []
    for index in order:
        draft = drafts[index]
        matched: list[AlertKind] = []
        related: list[int] = []

        if _known_fraud(draft, config):
            matched.append(AlertKind.KNOWN_FRAUD_PATTERN)
        if index in outliers:
            matched.append(AlertKind.AMOUNT_OUTLIER)
        if index in velocity:
            matched.append(AlertKind.VELOCITY)
            related.extend(velocity[index])
        if index in duplicates:
            matched.append(AlertKind.DUPLICATE)
            related.insert(0, duplicates[index])
        if _off_hours(draft, hours_start, hours_end):
            matched.append(AlertKind.OFF_HOURS)

        if not matched:
            continue

        dominant = max(matched, key=lambda kind: config.rule_weights.get(kind, 0))
        risk = sum(config.rule_weights.get(kind, 0) for kind in matched)
        transaction_ids = [draft.id]
        for i in related:
            if drafts[i].id not in transaction_ids:
                transaction_ids.append(drafts[i].id)

        alerts.append(AnomalyAlert(
            tenant_id=tenant_id,
            transaction_ids=transaction_ids,
            kind=dominant,
            matched_kinds=sorted(matched, key=lambda kind: -config.rule_weights.get(kind, 0)),
            risk_score=max(0, min(100, risk)),
            recommendation=RECOMMENDATIONS[dominant],
        ))

    alerts.sort(key=lambda a: a.risk_score, reverse=True)
    return alerts


def overall_risk(alerts: list[AnomalyAlert]) -> Sensitivity:
    high = sum(1 for a in alerts if a.risk_score >= HIGH_RISK_SCORE)
    if alerts and high > len(alerts) / 2:
        return Sensitivity.HIGH
    if high:
        return Sensitivity.MEDIUM
    return Sensitivity.LOW


class AnomalyService:
    """Loads the tenant window, supersedes old alerts, saves new ones. Never writes transactions."""

    def __init__(self, storage: Storage, config: Optional[AnomalyConfig] = None):
        self.storage = storage
        self.config = config or AnomalyConfig.from_settings()

    async def load_window(self, tenant_id: str, as_of: datetime) -> list[TransactionDraft]:
        return await self.storage.query(tenant_id, RecordQuery(
            kind=RecordKind.TRANSACTION,
            start=as_of - timedelta(days=self.config.window_days),
            end=as_of + timedelta(microseconds=1),
        ))

    async def run(
        self,
        tenant_id: str,
        transactions: Optional[list[TransactionDraft]] = None,
        as_of: Optional[datetime] = None,
        sensitivity: Sensitivity = Sensitivity.MEDIUM,
        profile: Optional[TenantProfile] = None,
    ) -> AnomalyReport:
        if transactions is None:
            transactions = await self.load_window(tenant_id, as_of or datetime.now())

        alerts = detect(tenant_id, transactions, self.config, profile, sensitivity)

        scanned_ids = [t.id for t in transactions]
        superseded = []
        if scanned_ids:
            superseded = await self.storage.query(tenant_id, RecordQuery(
                kind=RecordKind.ALERT,
                status=AlertStatus.OPEN,
                transaction_ids=scanned_ids,
            ))
        resolved = [a.model_copy(update={"status": AlertStatus.RESOLVED}) for a in superseded]

        if resolved or alerts:
            await self.storage.save(tenant_id, [*resolved, *alerts])

        for alert in alerts:
            anomaly_alerts_total.labels(kind=alert.kind.value).inc()

        report = AnomalyReport(
            tenant_id=tenant_id,
            alerts=alerts,
            transactions_scanned=len(transactions),
            overall_risk=overall_risk(alerts),
            resolved_alert_ids=[a.id for a in resolved],
        )
        logger.info(
            "anomaly_detection_complete",
            tenant_id=tenant_id,
            scanned=report.transactions_scanned,
            alerts=len(alerts),
            resolved=len(resolved),
            overall_risk=report.overall_risk.value,
        )
        return report
