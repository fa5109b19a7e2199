"""Prometheus counters for the notification pipeline (served at /metrics)."""

from prometheus_client import Counter

LEADERBOARD_REQUESTS = Counter(
    "record_alerts_leaderboard_requests_total",
    "External API requests issued by the leaderboard client",
    ["endpoint", "outcome"],
)
LEADERBOARD_CACHE = Counter(
    "record_alerts_leaderboard_cache_total",
    "Leaderboard cache lookups",
    ["result"],
)
TOKEN_REFRESHES = Counter(
    "record_alerts_token_refreshes_total",
    "Access token refreshes and logins per auth domain",
    ["provider", "kind"],
)
PHASE_RESULTS = Counter(
    "record_alerts_phase_results_total",
    "Phase job outcomes",
    ["phase", "status"],
)
EMAILS = Counter(
    "record_alerts_emails_total",
    "Composed email outcomes",
    ["status"],
)
JOBS_ENQUEUED = Counter(
    "record_alerts_jobs_enqueued_total",
    "Phase jobs enqueued by the daily cycle",
    ["phase", "result"],
)
