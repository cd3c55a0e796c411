from datetime import UTC, datetime, timedelta

from calendar_connector.core.credential_cipher import is_encrypted
from calendar_connector.domain.models.integration import Integration
from calendar_connector.domain.models.integration_credential import IntegrationCredential
from scripts.migrate_legacy_secrets import migrate_legacy_secrets


def _seed_legacy_rows(db_session, cipher, tenant_id):
    integration = Integration(
        tenant_id=tenant_id,
        provider="google_calendar",
        status="connected",
        oauth_client_id="legacy-client",
        oauth_client_secret_encrypted="legacy-client-secret",
    )
    db_session.add(integration)
    db_session.flush()
    db_session.add(
        IntegrationCredential(
            tenant_id=tenant_id,
            integration_id=integration.id,
            access_token_encrypted=cipher.encrypt("ya29.already-encrypted"),
            refresh_token_encrypted="1//legacy-refresh",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )
    )
    db_session.commit()
    return integration


def test_audit_mode_reports_without_writing(db_session, cipher, tenant_id):
    integration = _seed_legacy_rows(db_session, cipher, tenant_id)

    report = migrate_legacy_secrets(db_session, cipher, apply=False)

    assert report.legacy["integrations.oauth_client_secret_encrypted"] == 1
    assert report.legacy["integration_credentials.refresh_token_encrypted"] == 1
    assert report.encrypted["integration_credentials.access_token_encrypted"] == 1
    db_session.refresh(integration)
    assert integration.oauth_client_secret_encrypted == "legacy-client-secret"


def test_apply_mode_encrypts_legacy_values(db_session, cipher, tenant_id):
    integration = _seed_legacy_rows(db_session, cipher, tenant_id)

    migrate_legacy_secrets(db_session, cipher, apply=True)

    db_session.refresh(integration)
    assert is_encrypted(integration.oauth_client_secret_encrypted)
    assert cipher.decrypt(integration.oauth_client_secret_encrypted) == "legacy-client-secret"

    second_pass = migrate_legacy_secrets(db_session, cipher, apply=False)
    assert sum(second_pass.legacy.values()) == 0
    assert sum(second_pass.encrypted.values()) == 3
