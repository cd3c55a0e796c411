from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from calendar_connector.application.errors import MissingCredentialsError
from calendar_connector.application.services.credential_store import CredentialStore
from calendar_connector.application.services.token_refresher import as_utc
from calendar_connector.core.credential_cipher import is_encrypted
from calendar_connector.domain.models.integration import IntegrationStatus
from calendar_connector.domain.models.integration_audit_event import ActorType, IntegrationAuditEvent
from calendar_connector.integrations.google_calendar import OAuthClientCredentials


def _store_credential(services, tenant_id, *, expires_in_seconds: int, access_token=None, refresh_token="1//stored-refresh"):
    store = services.store
    integration = store.ensure_integration(tenant_id)
    integration.status = IntegrationStatus.CONNECTED.value
    store.replace_credential(
        integration,
        access_token_encrypted=access_token or store.cipher.encrypt("ya29.cached-token"),
        refresh_token_encrypted=store.cipher.encrypt(refresh_token) if refresh_token else None,
        expires_at=datetime.now(UTC) + timedelta(seconds=expires_in_seconds),
        token_type="Bearer",
    )
    store.db.commit()
    return integration


def test_cached_token_is_returned_without_provider_call(services, configured_tenant, fake_google):
    _store_credential(services, configured_tenant, expires_in_seconds=120)

    token = services.refresher.get_valid_access_token(configured_tenant)

    assert token == "ya29.cached-token"
    assert fake_google.requests == []


def test_token_near_expiry_is_refreshed_once(services, configured_tenant, fake_google):
    integration = _store_credential(services, configured_tenant, expires_in_seconds=30)

    token = services.refresher.get_valid_access_token(configured_tenant)

    assert token == "ya29.refreshed-token"
    refresh_calls = fake_google.calls("refresh")
    assert len(refresh_calls) == 1
    form = fake_google.form(refresh_calls[0])
    assert form["refresh_token"] == "1//stored-refresh"
    assert form["client_id"] == "tenant-client.apps.googleusercontent.com"
    assert form["client_secret"] == "tenant-client-secret"

    assert services.store.count_credentials(integration.id) == 1
    credential = services.store.latest_credential(integration.id)
    assert services.store.cipher.decrypt(credential.access_token_encrypted) == "ya29.refreshed-token"
    assert services.store.cipher.decrypt(credential.refresh_token_encrypted) == "1//stored-refresh"
    assert credential.rotated_at is not None
    assert as_utc(credential.expires_at) > datetime.now(UTC) + timedelta(minutes=50)

    events = services.store.db.execute(
        select(IntegrationAuditEvent).where(IntegrationAuditEvent.action == "token_refreshed")
    ).scalars().all()
    assert len(events) == 1
    assert events[0].actor_type == ActorType.SYSTEM.value


def test_expired_token_is_refreshed(services, configured_tenant, fake_google):
    _store_credential(services, configured_tenant, expires_in_seconds=-600)

    assert services.refresher.get_valid_access_token(configured_tenant) == "ya29.refreshed-token"
    assert len(fake_google.calls("refresh")) == 1


def test_rotated_refresh_token_is_stored(services, configured_tenant, fake_google):
    integration = _store_credential(services, configured_tenant, expires_in_seconds=10)
    fake_google.refresh_payload = {"access_token": "ya29.new", "refresh_token": "1//rotated", "expires_in": 3600}

    assert services.refresher.get_valid_access_token(configured_tenant) == "ya29.new"

    credential = services.store.latest_credential(integration.id)
    assert services.store.cipher.decrypt(credential.refresh_token_encrypted) == "1//rotated"


def test_refresh_failure_returns_none_and_leaves_credential(services, configured_tenant, fake_google):
    integration = _store_credential(services, configured_tenant, expires_in_seconds=10)
    before = services.store.latest_credential(integration.id).access_token_encrypted
    fake_google.refresh_status = 400
    fake_google.refresh_payload = {"error": "invalid_grant", "error_description": "Token has been revoked"}

    assert services.refresher.get_valid_access_token(configured_tenant) is None

    credential = services.store.latest_credential(integration.id)
    assert credential.access_token_encrypted == before
    assert credential.rotated_at is None


def test_refresh_timeout_returns_none(services, configured_tenant, fake_google):
    _store_credential(services, configured_tenant, expires_in_seconds=10)
    fake_google.timeouts.add("refresh")

    assert services.refresher.get_valid_access_token(configured_tenant) is None


def test_missing_refresh_token_returns_none(services, configured_tenant, fake_google):
    _store_credential(services, configured_tenant, expires_in_seconds=10, refresh_token=None)

    assert services.refresher.get_valid_access_token(configured_tenant) is None
    assert fake_google.requests == []


def test_undecryptable_access_token_returns_none(services, configured_tenant, fake_google):
    _store_credential(services, configured_tenant, expires_in_seconds=600, access_token="enc:AAAA")

    assert services.refresher.get_valid_access_token(configured_tenant) is None


def test_no_integration_returns_none(services, tenant_id):
    assert services.refresher.get_valid_access_token(tenant_id) is None


def test_legacy_access_token_is_migrated_on_read(services, configured_tenant, fake_google):
    integration = _store_credential(
        services,
        configured_tenant,
        expires_in_seconds=600,
        access_token="ya29.legacy-plaintext",
    )

    assert services.refresher.get_valid_access_token(configured_tenant) == "ya29.legacy-plaintext"

    credential = services.store.latest_credential(integration.id)
    assert is_encrypted(credential.access_token_encrypted)
    assert services.store.cipher.decrypt(credential.access_token_encrypted) == "ya29.legacy-plaintext"
    assert services.refresher.get_valid_access_token(configured_tenant) == "ya29.legacy-plaintext"


def test_default_client_is_used_only_without_tenant_configuration(db_session, cipher, tenant_id):
    default_client = OAuthClientCredentials(client_id="default-id", client_secret="default-secret")
    store = CredentialStore(db_session, cipher, default_client=default_client)

    assert store.resolve_oauth_client(tenant_id) == default_client

    integration = store.ensure_integration(tenant_id)
    integration.oauth_client_id = "tenant-only-id"
    db_session.commit()

    with pytest.raises(MissingCredentialsError):
        store.resolve_oauth_client(tenant_id)


def test_legacy_client_secret_is_migrated(db_session, cipher, tenant_id):
    store = CredentialStore(db_session, cipher)
    integration = store.ensure_integration(tenant_id)
    integration.oauth_client_id = "tenant-id"
    integration.oauth_client_secret_encrypted = "legacy-secret"
    db_session.commit()

    client = store.resolve_oauth_client(tenant_id)

    assert client.client_secret == "legacy-secret"
    assert is_encrypted(store.get_integration(tenant_id).oauth_client_secret_encrypted)


def test_refresh_timeout_is_reported_as_retryable(services, configured_tenant, fake_google):
    _store_credential(services, configured_tenant, expires_in_seconds=10)
    fake_google.timeouts.add("refresh")

    result = services.refresher.resolve_access_token(configured_tenant)

    assert result.token is None
    assert result.error_code == "provider_unavailable"
    assert result.retryable is True


def test_revoked_refresh_token_is_not_retryable(services, configured_tenant, fake_google):
    _store_credential(services, configured_tenant, expires_in_seconds=10)
    fake_google.refresh_status = 400
    fake_google.refresh_payload = {"error": "invalid_grant", "error_description": "Token has been revoked"}

    result = services.refresher.resolve_access_token(configured_tenant)

    assert result.token is None
    assert result.error_code == "invalid_grant"
    assert result.retryable is False


def test_undecryptable_client_secret_blocks_refresh(services, configured_tenant, fake_google):
    integration = _store_credential(services, configured_tenant, expires_in_seconds=10)
    integration.oauth_client_secret_encrypted = "enc:" + "A" * 40
    services.store.db.commit()

    result = services.refresher.resolve_access_token(configured_tenant)

    assert result.error_code == "missing_credentials"
    assert result.retryable is False
    assert fake_google.calls("refresh") == []
