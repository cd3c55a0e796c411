from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse
from uuid import uuid4

from sqlalchemy import select

from calendar_connector.domain.models.integration import IntegrationStatus
from calendar_connector.domain.models.integration_audit_event import IntegrationAuditEvent
from workers.tasks import run_integration_check


def _connect(services, tenant_id, user_id) -> None:
    auth_url = services.flow.connect(tenant_id=tenant_id, user_id=user_id)
    state = parse_qs(urlparse(auth_url).query)["state"][0]
    outcome = services.flow.callback(code="auth-code", state=state)
    assert outcome.success is True


def test_health_check_runs_as_system_actor(services, configured_tenant, user_id, db_session):
    _connect(services, configured_tenant, user_id)

    result = run_integration_check(services, configured_tenant)

    assert result == {"tenant_id": str(configured_tenant), "status": "ok", "error": None}
    event = db_session.execute(
        select(IntegrationAuditEvent).where(IntegrationAuditEvent.action == "test_success")
    ).scalar_one()
    assert event.actor_type == "system"
    assert event.actor_id is None


def test_health_check_flags_expired_integration(services, configured_tenant, user_id, fake_google):
    _connect(services, configured_tenant, user_id)
    fake_google.calendar_status = 401

    result = run_integration_check(services, configured_tenant)

    assert result["status"] == "failed"
    assert services.store.get_integration(configured_tenant).status == IntegrationStatus.EXPIRED.value


def test_health_check_skips_disconnected_tenant(services):
    tenant_id = uuid4()

    assert run_integration_check(services, tenant_id) == {"tenant_id": str(tenant_id), "status": "skipped"}


def test_health_check_keeps_tenant_checkable_during_refresh_outage(
    services, configured_tenant, user_id, fake_google, db_session
):
    _connect(services, configured_tenant, user_id)
    integration = services.store.get_integration(configured_tenant)
    services.store.latest_credential(integration.id).expires_at = datetime.now(UTC) - timedelta(minutes=5)
    db_session.commit()
    fake_google.timeouts.add("refresh")

    result = run_integration_check(services, configured_tenant)

    assert result["status"] == "failed"
    assert result["error"] == "provider_unavailable"
    assert services.store.get_integration(configured_tenant).status == IntegrationStatus.CONNECTED.value

    fake_google.timeouts.clear()
    assert run_integration_check(services, configured_tenant)["status"] == "ok"
