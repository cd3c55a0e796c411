import logging
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select

from calendar_connector.application.errors import IntegrationNotConnectedError
from calendar_connector.application.services.integration_services import (
    GoogleCalendarServices,
    build_google_calendar_services,
)
from calendar_connector.core.config import settings
from calendar_connector.core.credential_cipher import CredentialCipher
from calendar_connector.domain.models.integration import Integration, IntegrationStatus
from calendar_connector.integrations.google_calendar import PROVIDER_NAME, GoogleCalendarClient
from calendar_connector.integrations.oauth_state import StateTokenCodec
from calendar_connector.infrastructure.cache.redis_client import get_redis_client
from calendar_connector.infrastructure.db.session import SessionLocal
from calendar_connector.infrastructure.observability.metrics import (
    INTEGRATION_CHECKS_TOTAL,
    increment_background_counter,
    measure_redis,
)
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)

INTEGRATION_CHECK_BATCH_SIZE = 500
CHECKED_STATUSES = (IntegrationStatus.CONNECTED.value, IntegrationStatus.ERROR.value)


def _services(db) -> GoogleCalendarServices:
    return build_google_calendar_services(
        db,
        cipher=CredentialCipher(settings.cipher_master_secret),
        codec=StateTokenCodec(settings.state_signing_secret, ttl_seconds=settings.oauth_state_ttl_seconds),
        provider=GoogleCalendarClient(timeout=settings.google_provider_timeout_seconds),
    )


def run_integration_check(services: GoogleCalendarServices, tenant_id: UUID) -> dict:
    try:
        outcome = services.flow.test_connection(tenant_id=tenant_id)
    except IntegrationNotConnectedError:
        return {"tenant_id": str(tenant_id), "status": "skipped"}

    INTEGRATION_CHECKS_TOTAL.inc()
    increment_background_counter("integration_checks_total")
    if not outcome.success:
        logger.warning(
            "integration_health_check_failed tenant_id=%s error=%s http_status=%s",
            tenant_id,
            outcome.error,
            outcome.http_status,
        )
    return {
        "tenant_id": str(tenant_id),
        "status": "ok" if outcome.success else "failed",
        "error": outcome.error,
    }


@celery_app.task(name="workers.tasks.worker_heartbeat")
def worker_heartbeat() -> dict:
    redis_client = get_redis_client()
    now = datetime.now(UTC).isoformat()
    with measure_redis("worker_heartbeat_set"):
        redis_client.set(
            settings.worker_heartbeat_key,
            now,
            ex=max(15, settings.worker_heartbeat_ttl_seconds),
        )
    return {"heartbeat_at": now}


@celery_app.task(name="workers.tasks.check_integration")
def check_integration(tenant_id: str) -> dict:
    with SessionLocal() as db:
        return run_integration_check(_services(db), UUID(tenant_id))


@celery_app.task(name="workers.tasks.check_connected_integrations")
def check_connected_integrations() -> dict:
    with SessionLocal() as db:
        tenant_ids = db.execute(
            select(Integration.tenant_id)
            .where(
                Integration.provider == PROVIDER_NAME,
                Integration.status.in_(CHECKED_STATUSES),
            )
            .order_by(Integration.updated_at.asc())
            .limit(INTEGRATION_CHECK_BATCH_SIZE)
        ).scalars().all()

    for tenant_id in tenant_ids:
        check_integration.delay(str(tenant_id))

    now = datetime.now(UTC).isoformat()
    try:
        with measure_redis("integration_health_check_mark"):
            get_redis_client().set(settings.integration_health_check_last_run_key, now)
    except Exception:
        logger.exception("integration_health_check_mark_failed")

    logger.info("integration_health_check_enqueued count=%s", len(tenant_ids))
    return {"enqueued": len(tenant_ids), "checked_at": now}
