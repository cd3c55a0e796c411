import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from calendar_connector.application.errors import MissingCredentialsError
from calendar_connector.application.services.audit_service import AuditLog
from calendar_connector.application.services.credential_store import CredentialStore
from calendar_connector.application.services.provider_error_mapper import map_provider_error
from calendar_connector.core.credential_cipher import DecryptionError, PersistMigration
from calendar_connector.domain.models.integration_audit_event import AuditAction, AuditResult
from calendar_connector.domain.models.integration_credential import IntegrationCredential
from calendar_connector.integrations.google_calendar import GoogleCalendarClient, ProviderError
from calendar_connector.infrastructure.observability.metrics import record_token_refresh

logger = logging.getLogger(__name__)

DEFAULT_SKEW_SECONDS = 60
DEFAULT_EXPIRES_IN_SECONDS = 3600


def as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


@dataclass(frozen=True)
class AccessTokenResult:
    """Outcome of an access-token lookup. A missing token with ``retryable`` set means the
    provider could not be reached and the stored credential is still usable."""

    token: str | None = None
    error_code: str | None = None
    retryable: bool = False


class TokenRefresher:
    def __init__(
        self,
        store: CredentialStore,
        provider: GoogleCalendarClient,
        audit: AuditLog,
        *,
        skew_seconds: int = DEFAULT_SKEW_SECONDS,
    ) -> None:
        self.store = store
        self.provider = provider
        self.audit = audit
        self.skew_seconds = skew_seconds

    def get_valid_access_token(self, tenant_id: UUID) -> str | None:
        """Returns a usable access token for the tenant, refreshing it when it is within the
        skew window of its expiry. ``None`` means no token could be obtained right now."""
        return self.resolve_access_token(tenant_id).token

    def resolve_access_token(self, tenant_id: UUID) -> AccessTokenResult:
        integration = self.store.get_integration(tenant_id)
        if integration is None:
            return AccessTokenResult(error_code="integration_not_found")
        credential = self.store.latest_credential(integration.id)
        if credential is None:
            return AccessTokenResult(error_code="no_credential")

        now = datetime.now(UTC)
        expires_at = as_utc(credential.expires_at)
        if expires_at is not None and expires_at > now + timedelta(seconds=self.skew_seconds):
            try:
                return AccessTokenResult(
                    token=self.store.cipher.decrypt(
                        credential.access_token_encrypted,
                        PersistMigration(
                            self.store.persist_field(credential, "access_token_encrypted"),
                            label="access_token",
                        ),
                    )
                )
            except DecryptionError:
                logger.error("access_token_decrypt_failed tenant_id=%s integration_id=%s", tenant_id, integration.id)
                return AccessTokenResult(error_code="decrypt_failed")

        return self._refresh(tenant_id, credential)

    def _refresh(self, tenant_id: UUID, credential: IntegrationCredential) -> AccessTokenResult:
        if not credential.refresh_token_encrypted:
            record_token_refresh("no_refresh_token")
            return AccessTokenResult(error_code="no_refresh_token")
        try:
            refresh_token = self.store.cipher.decrypt(
                credential.refresh_token_encrypted,
                PersistMigration(
                    self.store.persist_field(credential, "refresh_token_encrypted"),
                    label="refresh_token",
                ),
            )
        except DecryptionError:
            logger.error("refresh_token_decrypt_failed tenant_id=%s integration_id=%s", tenant_id, credential.integration_id)
            record_token_refresh("decrypt_failed")
            return AccessTokenResult(error_code="decrypt_failed")

        try:
            client = self.store.resolve_oauth_client(tenant_id)
        except MissingCredentialsError:
            logger.warning("token_refresh_missing_client tenant_id=%s", tenant_id)
            record_token_refresh("missing_client")
            return AccessTokenResult(error_code="missing_credentials")

        try:
            token_payload = self.provider.refresh_access_token(refresh_token=refresh_token, credentials=client)
        except ProviderError as exc:
            normalized = map_provider_error(exc)
            logger.warning(
                "token_refresh_failed tenant_id=%s error_code=%s category=%s retryable=%s",
                tenant_id,
                exc.error_code,
                normalized.category,
                normalized.retryable,
            )
            record_token_refresh("provider_error")
            return AccessTokenResult(error_code=exc.error_code, retryable=normalized.retryable)

        access_token = token_payload.get("access_token") if isinstance(token_payload, dict) else None
        if not access_token:
            logger.warning("token_refresh_missing_access_token tenant_id=%s", tenant_id)
            record_token_refresh("invalid_response")
            return AccessTokenResult(error_code="invalid_response")

        now = datetime.now(UTC)
        expires_in = int(token_payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        credential.access_token_encrypted = self.store.cipher.encrypt(access_token)
        rotated_refresh_token = token_payload.get("refresh_token")
        if rotated_refresh_token and rotated_refresh_token != refresh_token:
            credential.refresh_token_encrypted = self.store.cipher.encrypt(rotated_refresh_token)
        credential.expires_at = now + timedelta(seconds=expires_in)
        credential.rotated_at = now
        self.store.db.add(credential)
        try:
            self.store.db.commit()
        except SQLAlchemyError:
            self.store.db.rollback()
            logger.exception("token_refresh_persist_failed tenant_id=%s", tenant_id)
            record_token_refresh("persist_failed")
            return AccessTokenResult(token=access_token)

        record_token_refresh("success")
        self.audit.record(
            tenant_id=tenant_id,
            integration_id=credential.integration_id,
            action=AuditAction.TOKEN_REFRESHED,
            result=AuditResult.SUCCESS,
            metadata={"expires_in": expires_in},
        )
        return AccessTokenResult(token=access_token)
