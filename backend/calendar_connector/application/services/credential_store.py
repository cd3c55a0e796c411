import logging
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from calendar_connector.application.errors import MissingCredentialsError
from calendar_connector.core.credential_cipher import CredentialCipher, DecryptionError, PersistMigration
from calendar_connector.domain.models.integration import Integration, IntegrationStatus
from calendar_connector.domain.models.integration_credential import IntegrationCredential
from calendar_connector.integrations.google_calendar import PROVIDER_NAME, OAuthClientCredentials

logger = logging.getLogger(__name__)


class CredentialStore:
    """Persistence for a tenant's Integration row, its OAuth client and its token record.

    The store never commits on behalf of its callers, except when persisting a legacy
    secret migration discovered during a read.
    """

    def __init__(
        self,
        db: Session,
        cipher: CredentialCipher,
        *,
        provider: str = PROVIDER_NAME,
        default_client: OAuthClientCredentials | None = None,
    ) -> None:
        self.db = db
        self.cipher = cipher
        self.provider = provider
        self.default_client = default_client

    def get_integration(self, tenant_id: UUID) -> Integration | None:
        return self.db.execute(
            select(Integration).where(
                Integration.tenant_id == tenant_id,
                Integration.provider == self.provider,
            )
        ).scalar_one_or_none()

    def ensure_integration(self, tenant_id: UUID) -> Integration:
        integration = self.get_integration(tenant_id)
        if integration is None:
            integration = Integration(
                tenant_id=tenant_id,
                provider=self.provider,
                status=IntegrationStatus.DISCONNECTED.value,
            )
            self.db.add(integration)
            self.db.flush()
        return integration

    def save_oauth_client(self, integration: Integration, *, client_id: str, client_secret: str | None) -> None:
        integration.oauth_client_id = client_id
        if client_secret:
            integration.oauth_client_secret_encrypted = self.cipher.encrypt(client_secret)
        self.db.add(integration)

    def resolve_oauth_client(self, tenant_id: UUID) -> OAuthClientCredentials:
        """Returns the tenant's OAuth client, or the process-wide default when the tenant
        has configured nothing at all. A partial tenant configuration never falls back, and a
        stored secret that no longer decrypts is reported the same way so the tenant re-saves it."""
        integration = self.get_integration(tenant_id)
        client_id = integration.oauth_client_id if integration else None
        encrypted_secret = integration.oauth_client_secret_encrypted if integration else None

        if client_id and encrypted_secret:
            try:
                client_secret = self.cipher.decrypt(
                    encrypted_secret,
                    PersistMigration(
                        self.persist_field(integration, "oauth_client_secret_encrypted"),
                        label="oauth_client_secret",
                    ),
                )
            except DecryptionError as exc:
                logger.error("oauth_client_secret_decrypt_failed tenant_id=%s integration_id=%s", tenant_id, integration.id)
                raise MissingCredentialsError(
                    "Stored OAuth client secret could not be read; save the client configuration again"
                ) from exc
            return OAuthClientCredentials(client_id=client_id, client_secret=client_secret)

        if not client_id and not encrypted_secret and self.default_client is not None:
            return self.default_client

        raise MissingCredentialsError("Configure the OAuth client ID and client secret before connecting")

    def persist_field(self, row: Integration | IntegrationCredential, field: str) -> Callable[[str], None]:
        def _write(value: str) -> None:
            setattr(row, field, value)
            self.db.add(row)
            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        return _write

    def latest_credential(self, integration_id: UUID) -> IntegrationCredential | None:
        return self.db.execute(
            select(IntegrationCredential)
            .where(IntegrationCredential.integration_id == integration_id)
            .order_by(IntegrationCredential.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def count_credentials(self, integration_id: UUID) -> int:
        return self.db.execute(
            select(func.count())
            .select_from(IntegrationCredential)
            .where(IntegrationCredential.integration_id == integration_id)
        ).scalar_one()

    def replace_credential(
        self,
        integration: Integration,
        *,
        access_token_encrypted: str,
        refresh_token_encrypted: str | None,
        expires_at: datetime | None,
        token_type: str,
    ) -> IntegrationCredential:
        self.delete_credentials(integration.id)
        credential = IntegrationCredential(
            tenant_id=integration.tenant_id,
            integration_id=integration.id,
            access_token_encrypted=access_token_encrypted,
            refresh_token_encrypted=refresh_token_encrypted,
            expires_at=expires_at,
            token_type=token_type,
        )
        self.db.add(credential)
        return credential

    def delete_credentials(self, integration_id: UUID) -> int:
        result = self.db.execute(
            delete(IntegrationCredential).where(IntegrationCredential.integration_id == integration_id)
        )
        return result.rowcount or 0
