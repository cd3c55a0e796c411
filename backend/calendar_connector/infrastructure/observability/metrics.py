from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "total_requests",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY_SECONDS = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path"),
)
DB_QUERY_DURATION_SECONDS = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    labelnames=("operation",),
)
REDIS_LATENCY_SECONDS = Histogram(
    "redis_latency_seconds",
    "Redis command latency in seconds",
    labelnames=("operation",),
)
PROVIDER_CALLS_TOTAL = Counter(
    "oauth_provider_calls_total",
    "Calls made to the calendar provider",
    labelnames=("operation", "outcome"),
)
OAUTH_CALLBACKS_TOTAL = Counter(
    "oauth_callbacks_total",
    "OAuth callbacks processed",
    labelnames=("result",),
)
TOKEN_REFRESHES_TOTAL = Counter(
    "oauth_token_refreshes_total",
    "Access token refresh attempts",
    labelnames=("result",),
)
AUDIT_WRITE_FAILURES_TOTAL = Counter(
    "audit_write_failures_total",
    "Audit events that could not be persisted",
)

BACKGROUND_COUNTER_KEYS = {
    "integration_checks_total": "metrics:integration_checks_total",
}
INTEGRATION_CHECKS_TOTAL = Counter(
    "integration_checks_total",
    "Scheduled integration connection checks executed by workers",
)
_last_background_counter_values: dict[str, float] = {
    metric_name: 0.0 for metric_name in BACKGROUND_COUNTER_KEYS
}


def record_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(duration_seconds)


def observe_db_query(duration_seconds: float, operation: str = "sql") -> None:
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_redis_latency(duration_seconds: float, operation: str) -> None:
    REDIS_LATENCY_SECONDS.labels(operation=operation).observe(duration_seconds)


def record_provider_call(operation: str, outcome: str) -> None:
    PROVIDER_CALLS_TOTAL.labels(operation=operation, outcome=outcome).inc()


def record_oauth_callback(result: str) -> None:
    OAUTH_CALLBACKS_TOTAL.labels(result=result).inc()


def record_token_refresh(result: str) -> None:
    TOKEN_REFRESHES_TOTAL.labels(result=result).inc()


def increment_background_counter(metric_name: str, amount: int = 1) -> None:
    redis_key = BACKGROUND_COUNTER_KEYS.get(metric_name)
    if redis_key is None:
        return
    try:
        from calendar_connector.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_incr"):
            redis_client.incrby(redis_key, amount)
    except Exception:
        # Worker flow keeps going when the Redis metrics write fails.
        return


def _sync_background_counters_from_redis() -> None:
    try:
        from calendar_connector.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_sync"):
            raw_values = redis_client.mget(list(BACKGROUND_COUNTER_KEYS.values()))
    except Exception:
        return

    mapping = {"integration_checks_total": INTEGRATION_CHECKS_TOTAL}
    for idx, metric_name in enumerate(BACKGROUND_COUNTER_KEYS):
        raw_value = raw_values[idx] if raw_values else None
        current_value = float(raw_value or 0.0)
        delta = current_value - _last_background_counter_values.get(metric_name, 0.0)
        if delta > 0:
            mapping[metric_name].inc(delta)
        _last_background_counter_values[metric_name] = current_value


@contextmanager
def measure_redis(operation: str):
    started_at = perf_counter()
    try:
        yield
    finally:
        observe_redis_latency(perf_counter() - started_at, operation=operation)


def metrics_response() -> Response:
    _sync_background_counters_from_redis()
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
