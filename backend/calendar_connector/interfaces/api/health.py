from time import perf_counter

from fastapi import APIRouter, Response, status
from redis.exceptions import RedisError
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from calendar_connector.core.config import settings
from calendar_connector.domain.models.integration import Integration
from calendar_connector.infrastructure.cache.redis_client import get_redis_client
from calendar_connector.infrastructure.db.session import SessionLocal
from calendar_connector.infrastructure.observability.metrics import measure_redis, metrics_response

router = APIRouter()


def _probe_database() -> tuple[str, float | None, dict[str, int]]:
    try:
        started_at = perf_counter()
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            latency_ms = round((perf_counter() - started_at) * 1000, 2)
            rows = db.execute(select(Integration.status, func.count()).group_by(Integration.status)).all()
    except SQLAlchemyError:
        return "down", None, {}
    return "up", latency_ms, {str(row[0]): int(row[1]) for row in rows}


def _probe_redis() -> tuple[str, float | None, bool, str | None]:
    try:
        redis_client = get_redis_client()
        started_at = perf_counter()
        with measure_redis("health_ping"):
            redis_client.ping()
        latency_ms = round((perf_counter() - started_at) * 1000, 2)

        with measure_redis("health_worker_heartbeat_check"):
            worker_alive = bool(redis_client.exists(settings.worker_heartbeat_key))
            last_check_at = redis_client.get(settings.integration_health_check_last_run_key)
    except RedisError:
        return "down", None, False, None
    return "up", latency_ms, worker_alive, last_check_at


@router.get("/health", status_code=status.HTTP_200_OK)
def health_check() -> dict:
    db_status, db_latency_ms, integrations_by_status = _probe_database()
    redis_status, redis_latency_ms, worker_alive, last_check_at = _probe_redis()

    overall = "ok" if db_status == "up" and redis_status == "up" and worker_alive else "degraded"

    return {
        "status": overall,
        "services": {
            "api": "up",
            "database": db_status,
            "redis": redis_status,
            "worker_alive": worker_alive,
            "db_latency_ms": db_latency_ms,
            "redis_latency_ms": redis_latency_ms,
        },
        "integrations": {
            "by_status": integrations_by_status,
            "last_health_check_at": last_check_at,
        },
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(response: Response) -> dict:
    payload = health_check()
    services = payload["services"]
    if services["database"] != "up" or services["redis"] != "up" or services["worker_alive"] is not True:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "services": services}
    return {"status": "ready", "services": services}


@router.get("/metrics", include_in_schema=False)
def metrics():
    return metrics_response()
