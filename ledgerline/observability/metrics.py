"""
Prometheus metrics for the mobile-money bookkeeping core.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Extraction ───────────────────────────────────────────────
drafts_extracted_total = Counter(
    "drafts_extracted_total",
    "Total transaction drafts produced by extraction",
    ["method"],
)

lines_skipped_total = Counter(
    "lines_skipped_total",
    "Statement lines that could not be turned into a draft",
    ["reason"],
)

drafts_rejected_total = Counter(
    "drafts_rejected_total",
    "Drafts rejected by validation",
    ["field"],
)

extraction_confidence = Histogram(
    "extraction_confidence",
    "Distribution of draft confidence scores",
    ["method"],
    buckets=[0.1, 0.25, 0.5, 0.6, 0.7, 0.75, 0.8, 0.9, 0.95, 1.0],
)

pipeline_stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Time per ingestion stage",
    ["stage"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30],
)

# ── External Capabilities ────────────────────────────────────
capability_calls_total = Counter(
    "capability_calls_total",
    "Calls to optional capabilities (AI, OCR)",
    ["capability", "outcome"],
)

capability_latency_seconds = Histogram(
    "capability_latency_seconds",
    "Latency of optional capability calls",
    ["capability"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

# ── Quotas ───────────────────────────────────────────────────
quota_denials_total = Counter(
    "quota_denials_total",
    "Quota check-and-increment calls that were denied",
    ["capability", "granularity"],
)

# ── Categorization / Anomalies / Reconciliation ──────────────
categorizations_total = Counter(
    "categorizations_total",
    "Drafts categorized",
    ["outcome"],
)

anomaly_alerts_total = Counter(
    "anomaly_alerts_total",
    "Anomaly alerts raised",
    ["kind"],
)

reconciliation_match_rate = Histogram(
    "reconciliation_match_rate",
    "Share of ledger entries matched per reconciliation run",
    buckets=[0.1, 0.25, 0.5, 0.75, 0.9, 0.95, 1.0],
)

# ── Tool Dispatch ────────────────────────────────────────────
tool_invocations_total = Counter(
    "tool_invocations_total",
    "Tool invocations by operation and outcome",
    ["operation", "outcome"],
)

tool_invocation_duration_seconds = Histogram(
    "tool_invocation_duration_seconds",
    "Synchronous tool invocation latency",
    ["operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10, 25],
)

# ── Worker ───────────────────────────────────────────────────
jobs_total = Counter(
    "jobs_total",
    "Jobs reaching a terminal state",
    ["operation", "state"],
)

worker_jobs_active = Gauge(
    "worker_jobs_active",
    "Number of currently active worker jobs",
)

worker_queue_depth = Gauge(
    "worker_queue_depth",
    "Number of jobs waiting in queue",
)
