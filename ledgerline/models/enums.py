"""
Python enums shared by the pipeline, storage and wire formats.
Values are the persisted/wire representation and must stay stable.
"""

from enum import Enum


class TxDirection(str, Enum):
    RECEIVED = "received"
    SENT = "sent"
    PAYBILL = "paybill"
    BUY_GOODS = "buy_goods"
    WITHDRAWAL = "withdrawal"
    DEPOSIT = "deposit"
    AIRTIME = "airtime"
    FULIZA = "fuliza"


INFLOW_DIRECTIONS = frozenset({TxDirection.RECEIVED, TxDirection.DEPOSIT, TxDirection.FULIZA})


def is_inflow(direction: TxDirection) -> bool:
    return direction in INFLOW_DIRECTIONS


class ExtractionMethod(str, Enum):
    AI = "ai"
    RULE_BASED = "rule_based"
    HYBRID = "hybrid"


class ReviewStatus(str, Enum):
    UNREVIEWED = "unreviewed"
    NEEDS_REVIEW = "needs_review"
    CONFIRMED = "confirmed"
    CORRECTED = "corrected"


class AiStatus(str, Enum):
    """Outcome of the optional AI pass for one extraction."""
    USED = "used"
    DISABLED = "disabled"
    QUOTA_EXHAUSTED = "quota_exhausted"
    FAILED = "failed"
    TIMEOUT = "timeout"


class AlertKind(str, Enum):
    AMOUNT_OUTLIER = "amount_outlier"
    DUPLICATE = "duplicate"
    VELOCITY = "velocity"
    OFF_HOURS = "off_hours"
    KNOWN_FRAUD_PATTERN = "known_fraud_pattern"


class AlertStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class Sensitivity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class QuotaGranularity(str, Enum):
    MINUTE = "minute"
    DAY = "day"
    MONTH = "month"


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class HeavyOperation(str, Enum):
    BULK_EXTRACT = "bulk-extract"
    MULTI_PERIOD_ANALYTICS = "multi-period-analytics"
    DETECT_ANOMALIES = "detect-anomalies"
    RECONCILE = "reconcile"


class Operation(str, Enum):
    """Closed set of tool operations accepted by the dispatcher."""
    EXTRACT = "extract"
    CATEGORIZE = "categorize"
    CONFIRM_CATEGORY = "confirm-category"
    DETECT_ANOMALIES = "detect-anomalies"
    RECONCILE = "reconcile"
    SUBMIT_HEAVY_JOB = "submit-heavy-job"
    JOB_STATUS = "job-status"
    CANCEL_JOB = "cancel-job"


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    INTERNAL = "internal_error"


class RecordKind(str, Enum):
    TRANSACTION = "transaction"
    ALERT = "alert"
    PATTERN = "pattern"


class InsightPeriod(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
