"""Application metrics using the Prometheus client library.

All metrics live here so there is one inventory of what the service
measures.  Modules import the metric they own and increment it at the
point of action.  Counters use deltas in tests because the default
registry is process-global.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

RATE_LIMIT_HITS = Counter(
    "rate_limit_hits_total",
    "Requests rejected by rate limiting (429s)",
    ["route"],
)

RATE_LIMIT_FALLBACKS = Counter(
    "rate_limit_fallback_total",
    "Limiter checks answered by the in-process fallback because Redis failed",
)

# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

PROGRESS_BATCHES = Counter(
    "progress_batches_total",
    "Bulk progress batches by outcome",
    ["outcome"],  # committed|failed|malformed
)

PROGRESS_EVENTS = Counter(
    "progress_events_total",
    "Progress events seen by the ingestion service",
    ["type", "result"],  # result: applied|skipped
)

BATCH_SIZE = Histogram(
    "progress_batch_size",
    "Number of events per bulk batch",
    buckets=[1, 2, 5, 10, 25, 50, 100, 200],
)

MILESTONE_NOTIFICATIONS = Counter(
    "milestone_notifications_total",
    "Notifications emitted after deduplication",
    ["kind"],  # milestone|streak
)

# ---------------------------------------------------------------------------
# Supporting infrastructure
# ---------------------------------------------------------------------------

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache operations by result",
    ["operation"],  # hit|miss|invalidate|error
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],
)
