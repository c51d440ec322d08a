from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# Fetch requests
# ---------------------------------------------------------------------------
fetch_requests_total = Counter(
    "fetch_requests_total",
    "Total fetch requests by route and terminal outcome",
    ["route", "status"],
)
fetch_duration_seconds = Histogram(
    "fetch_duration_seconds",
    "Wall time of a submitted fetch, including queueing in persistent mode",
    ["route"],
    buckets=[0.5, 1, 2, 5, 10, 20, 30, 45, 60],
)
fetch_attempts_total = Counter(
    "fetch_attempts_total",
    "Individual fetch attempts by outcome",
    ["outcome"],
)

# ---------------------------------------------------------------------------
# Session pool
# ---------------------------------------------------------------------------
active_navigation_sessions = Gauge(
    "active_navigation_sessions",
    "Number of navigation sessions currently checked out",
)
session_pool_teardowns_total = Counter(
    "session_pool_teardowns_total",
    "Session pool teardowns by reason",
    ["reason"],
)

# ---------------------------------------------------------------------------
# Challenge loop
# ---------------------------------------------------------------------------
challenge_timeouts_total = Counter(
    "challenge_timeouts_total",
    "Challenge indicator polls that hit their time budget",
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
