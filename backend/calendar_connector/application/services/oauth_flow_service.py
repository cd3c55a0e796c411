"""
OAuth2 authorization-code flow for the tenant's calendar integration.

Per tenant the integration moves ``disconnected -> awaiting_callback -> connected``, with
``expired`` and ``error`` reachable from ``connected``. ``awaiting_callback`` is never stored:
between ``connect`` and ``callback`` the only continuity is the signed state token, so every
operation here is an independent unit of work against the database.

Database writes happen only after the provider call they depend on has succeeded. The one
exception is the diagnostic error status written after a failed token exchange, which is
committed on its own and may fail without affecting the outcome returned to the caller.
"""
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from calendar_connector.application.errors import (
    IntegrationNotConnectedError,
    IntegrationNotFoundError,
    InvalidConfigError,
    MissingCredentialsError,
)
from calendar_connector.application.services.audit_service import AuditLog
from calendar_connector.application.services.credential_store import CredentialStore
from calendar_connector.application.services.integration_status_service import SECRET_PLACEHOLDER
from calendar_connector.application.services.provider_error_mapper import map_provider_error
from calendar_connector.application.services.token_refresher import DEFAULT_EXPIRES_IN_SECONDS, TokenRefresher
from calendar_connector.core.credential_cipher import NO_MIGRATION, DecryptionError, is_encrypted
from calendar_connector.domain.models.integration import Integration, IntegrationStatus
from calendar_connector.domain.models.integration_audit_event import AuditAction, AuditResult
from calendar_connector.domain.models.integration_credential import IntegrationCredential
from calendar_connector.integrations.google_calendar import (
    GOOGLE_CALENDAR_SCOPES,
    GoogleCalendarClient,
    ProviderError,
    ProviderHTTPError,
)
from calendar_connector.integrations.oauth_state import StateTokenCodec
from calendar_connector.infrastructure.observability.metrics import record_oauth_callback

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "consent select_account"
ERROR_CODE_MAX_LENGTH = 64
ERROR_MESSAGE_MAX_LENGTH = 500


@dataclass(frozen=True)
class CallbackOutcome:
    success: bool
    error: str | None = None
    retryable: bool = False
    tenant_id: UUID | None = None
    origin: str | None = None
    account_email: str | None = None


@dataclass(frozen=True)
class ConnectionTestOutcome:
    success: bool
    calendars: list[dict] = field(default_factory=list)
    error: str | None = None
    http_status: int | None = None
    retryable: bool = False


def _clear_error_fields(integration: Integration) -> None:
    integration.last_error_code = None
    integration.last_error_message = None


class OAuthFlowController:
    def __init__(
        self,
        store: CredentialStore,
        codec: StateTokenCodec,
        provider: GoogleCalendarClient,
        audit: AuditLog,
        refresher: TokenRefresher,
        *,
        server_redirect_uri: str,
        proxy_callback_path: str,
        allowed_origins: list[str] | tuple[str, ...] = (),
        prompt: str = DEFAULT_PROMPT,
    ) -> None:
        self.store = store
        self.codec = codec
        self.provider = provider
        self.audit = audit
        self.refresher = refresher
        self.server_redirect_uri = server_redirect_uri
        self.proxy_callback_path = "/" + proxy_callback_path.lstrip("/")
        self.allowed_origins = {origin.rstrip("/") for origin in allowed_origins}
        self.prompt = prompt

    @property
    def db(self):
        return self.store.db

    def _allowed_origin(self, origin: str | None) -> str | None:
        if not origin:
            return None
        normalized = origin.strip().rstrip("/")
        if normalized in self.allowed_origins:
            return normalized
        logger.info("oauth_connect_origin_ignored origin=%s", normalized)
        return None

    def redirect_uri_for(self, origin: str | None) -> str:
        if origin:
            return f"{origin}{self.proxy_callback_path}"
        return self.server_redirect_uri

    def connect(
        self,
        *,
        tenant_id: UUID,
        user_id: UUID,
        frontend_origin: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        client = self.store.resolve_oauth_client(tenant_id)
        origin = self._allowed_origin(frontend_origin)

        integration = self.store.ensure_integration(tenant_id)
        integration_id = integration.id
        self.db.commit()

        state = self.codec.sign({"tenantId": str(tenant_id), "userId": str(user_id), "origin": origin})
        auth_url = self.provider.build_authorization_url(
            client_id=client.client_id,
            redirect_uri=self.redirect_uri_for(origin),
            state=state,
            scopes=GOOGLE_CALENDAR_SCOPES,
            prompt=self.prompt,
        )
        self.audit.record(
            tenant_id=tenant_id,
            integration_id=integration_id,
            actor_id=user_id,
            action=AuditAction.CONNECT_STARTED,
            result=AuditResult.SUCCESS,
            ip=ip,
            user_agent=user_agent,
            metadata={"scopes": list(GOOGLE_CALENDAR_SCOPES), "transport": "proxy" if origin else "redirect"},
        )
        logger.info("oauth_connect_started tenant_id=%s transport=%s", tenant_id, "proxy" if origin else "redirect")
        return auth_url

    def callback(
        self,
        *,
        code: str | None,
        state: str | None,
        redirect_uri: str | None = None,
        provider_error: str | None = None,
    ) -> CallbackOutcome:
        payload = self.codec.verify(state) if state else None
        if payload is None:
            record_oauth_callback("invalid_state")
            return CallbackOutcome(success=False, error="invalid_state")
        try:
            tenant_id = UUID(str(payload["tenantId"]))
            user_id = UUID(str(payload["userId"])) if payload.get("userId") else None
        except (KeyError, ValueError):
            record_oauth_callback("invalid_state")
            return CallbackOutcome(success=False, error="invalid_state")

        origin = payload.get("origin") if isinstance(payload.get("origin"), str) else None
        expected_redirect_uri = self.redirect_uri_for(origin)
        if redirect_uri is not None and redirect_uri.rstrip("/") != expected_redirect_uri.rstrip("/"):
            logger.warning("oauth_callback_redirect_uri_mismatch tenant_id=%s", tenant_id)
            record_oauth_callback("invalid_state")
            return CallbackOutcome(success=False, error="invalid_state")

        integration = self.store.get_integration(tenant_id)
        integration_id = integration.id if integration else None

        if provider_error or not code:
            reason = (provider_error or "missing_code")[:ERROR_CODE_MAX_LENGTH]
            self.audit.record(
                tenant_id=tenant_id,
                integration_id=integration_id,
                actor_id=user_id,
                action=AuditAction.CALLBACK_RECEIVED,
                result=AuditResult.FAIL,
                metadata={"error": reason},
            )
            record_oauth_callback("denied" if provider_error else "missing_code")
            return CallbackOutcome(
                success=False,
                error="access_denied" if provider_error else "missing_code",
                tenant_id=tenant_id,
                origin=origin,
            )

        try:
            client = self.store.resolve_oauth_client(tenant_id)
        except MissingCredentialsError:
            self.audit.record(
                tenant_id=tenant_id,
                integration_id=integration_id,
                actor_id=user_id,
                action=AuditAction.CALLBACK_RECEIVED,
                result=AuditResult.FAIL,
                metadata={"error": "missing_credentials"},
            )
            record_oauth_callback("missing_credentials")
            return CallbackOutcome(success=False, error="missing_credentials", tenant_id=tenant_id, origin=origin)

        try:
            token_payload = self.provider.exchange_code(
                code=code,
                redirect_uri=expected_redirect_uri,
                credentials=client,
            )
            if not isinstance(token_payload, dict) or not token_payload.get("access_token"):
                raise ProviderHTTPError(200, "missing_access_token", "Token response did not include an access token")
        except ProviderError as exc:
            normalized = map_provider_error(exc)
            self._record_exchange_failure(tenant_id, user_id, exc)
            record_oauth_callback("exchange_failed")
            return CallbackOutcome(
                success=False,
                error="provider_unavailable" if normalized.category == "unavailable" else "token_exchange_failed",
                retryable=normalized.retryable,
                tenant_id=tenant_id,
                origin=origin,
            )

        access_token = token_payload["access_token"]
        email_result = self.provider.fetch_account_email(access_token)
        account_email = email_result.value if email_result.ok else None

        now = datetime.now(UTC)
        expires_in = int(token_payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        granted_scopes = str(token_payload.get("scope") or "").split()

        try:
            integration = self.store.ensure_integration(tenant_id)
            previous = self.store.latest_credential(integration.id)
            refresh_token = token_payload.get("refresh_token")
            refresh_token_encrypted = (
                self.store.cipher.encrypt(refresh_token)
                if refresh_token
                else self._carried_refresh_token(integration, previous, account_email)
            )
            self.store.replace_credential(
                integration,
                access_token_encrypted=self.store.cipher.encrypt(access_token),
                refresh_token_encrypted=refresh_token_encrypted,
                expires_at=now + timedelta(seconds=expires_in),
                token_type=str(token_payload.get("token_type") or "Bearer"),
            )
            integration.status = IntegrationStatus.CONNECTED.value
            integration.connected_account_email = account_email
            integration.scopes = granted_scopes or list(GOOGLE_CALENDAR_SCOPES)
            _clear_error_fields(integration)
            self.db.add(integration)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("oauth_callback_persist_failed tenant_id=%s", tenant_id)
            record_oauth_callback("persist_failed")
            return CallbackOutcome(success=False, error="internal_error", retryable=True, tenant_id=tenant_id, origin=origin)

        self.audit.record(
            tenant_id=tenant_id,
            integration_id=integration.id,
            actor_id=user_id,
            action=AuditAction.CONNECT_COMPLETED,
            result=AuditResult.SUCCESS,
            metadata={
                "email": account_email,
                "scopes": integration.scopes,
                "has_refresh_token": refresh_token_encrypted is not None,
            },
        )
        record_oauth_callback("success")
        logger.info("oauth_connect_completed tenant_id=%s integration_id=%s", tenant_id, integration.id)
        return CallbackOutcome(success=True, tenant_id=tenant_id, origin=origin, account_email=account_email)

    def _carried_refresh_token(
        self,
        integration: Integration,
        previous: IntegrationCredential | None,
        account_email: str | None,
    ) -> str | None:
        # Google omits the refresh token on some re-consents; keep the old one for the same account only.
        if previous is None or not previous.refresh_token_encrypted:
            return None
        if not account_email or not integration.connected_account_email:
            return None
        if account_email.lower() != integration.connected_account_email.lower():
            return None
        if is_encrypted(previous.refresh_token_encrypted):
            return previous.refresh_token_encrypted
        return self.store.cipher.encrypt(previous.refresh_token_encrypted)

    def _record_exchange_failure(self, tenant_id: UUID, user_id: UUID | None, exc: ProviderError) -> None:
        error_code = (exc.error_code or "token_exchange_failed")[:ERROR_CODE_MAX_LENGTH]
        message = (getattr(exc, "message", None) or str(exc) or "Token exchange failed")[:ERROR_MESSAGE_MAX_LENGTH]
        logger.warning("oauth_token_exchange_failed tenant_id=%s error_code=%s", tenant_id, error_code)

        integration_id = None
        try:
            integration = self.store.ensure_integration(tenant_id)
            integration_id = integration.id
            integration.status = IntegrationStatus.ERROR.value
            integration.last_error_code = error_code
            integration.last_error_message = message
            self.db.add(integration)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("oauth_error_status_write_failed tenant_id=%s", tenant_id)

        metadata = {"error": error_code, "retryable": exc.retryable}
        if isinstance(exc, ProviderHTTPError):
            metadata["http_status"] = exc.status_code
        self.audit.record(
            tenant_id=tenant_id,
            integration_id=integration_id,
            actor_id=user_id,
            action=AuditAction.CALLBACK_RECEIVED,
            result=AuditResult.FAIL,
            metadata=metadata,
        )

    def disconnect(
        self,
        *,
        tenant_id: UUID,
        user_id: UUID | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        integration = self.store.get_integration(tenant_id)
        if integration is None:
            return False

        revoked: bool | None = None
        credential = self.store.latest_credential(integration.id)
        if credential is not None:
            try:
                access_token = self.store.cipher.decrypt(credential.access_token_encrypted, NO_MIGRATION)
            except DecryptionError:
                access_token = None
            if access_token:
                revoked = self.provider.revoke_token(access_token).ok

        removed = self.store.delete_credentials(integration.id)
        integration.status = IntegrationStatus.DISCONNECTED.value
        integration.connected_account_email = None
        integration.default_calendar_id = None
        integration.default_calendar_name = None
        integration.scopes = None
        _clear_error_fields(integration)
        self.db.add(integration)
        self.db.commit()

        self.audit.record(
            tenant_id=tenant_id,
            integration_id=integration.id,
            actor_id=user_id,
            action=AuditAction.DISCONNECT,
            result=AuditResult.SUCCESS,
            ip=ip,
            user_agent=user_agent,
            metadata={"revoked": revoked, "credentials_removed": removed},
        )
        logger.info("oauth_disconnected tenant_id=%s revoked=%s", tenant_id, revoked)
        return True

    def test_connection(
        self,
        *,
        tenant_id: UUID,
        user_id: UUID | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> ConnectionTestOutcome:
        integration = self.store.get_integration(tenant_id)
        if integration is None or integration.status == IntegrationStatus.DISCONNECTED.value:
            raise IntegrationNotConnectedError("Integration is not connected")
        integration_id = integration.id

        def _audit(action: AuditAction, result: AuditResult, metadata: dict) -> None:
            self.audit.record(
                tenant_id=tenant_id,
                integration_id=integration_id,
                actor_id=user_id,
                action=action,
                result=result,
                ip=ip,
                user_agent=user_agent,
                metadata=metadata,
            )

        token_result = self.refresher.resolve_access_token(tenant_id)
        access_token = token_result.token
        now = datetime.now(UTC)
        integration.last_test_at = now

        if access_token is None and token_result.retryable:
            error_code = (token_result.error_code or "provider_unavailable")[:ERROR_CODE_MAX_LENGTH]
            integration.last_test_status = "fail"
            integration.last_error_code = error_code
            integration.last_error_message = "Token refresh failed temporarily; the stored credential was kept"
            self.db.add(integration)
            self.db.commit()
            _audit(
                AuditAction.TEST_FAIL,
                AuditResult.FAIL,
                {"reason": error_code, "stage": "token_refresh", "http_status": None},
            )
            return ConnectionTestOutcome(success=False, error=error_code, retryable=True)

        if access_token is None:
            integration.status = IntegrationStatus.EXPIRED.value
            integration.last_test_status = "fail"
            integration.last_error_code = "token_expired"
            integration.last_error_message = "No valid access token available; reconnect the integration"
            self.db.add(integration)
            self.db.commit()
            _audit(AuditAction.TEST_FAIL, AuditResult.FAIL, {"reason": "token_expired", "http_status": None})
            return ConnectionTestOutcome(success=False, error="token_expired")

        try:
            calendars = self.provider.list_calendars(access_token)
        except ProviderHTTPError as exc:
            integration.status = (
                IntegrationStatus.EXPIRED.value if exc.status_code == 401 else IntegrationStatus.ERROR.value
            )
            integration.last_test_status = "fail"
            integration.last_error_code = f"http_{exc.status_code}"
            integration.last_error_message = (exc.message or str(exc))[:ERROR_MESSAGE_MAX_LENGTH]
            self.db.add(integration)
            self.db.commit()
            normalized = map_provider_error(exc)
            _audit(
                AuditAction.TEST_FAIL,
                AuditResult.FAIL,
                {"http_status": exc.status_code, "category": normalized.category},
            )
            return ConnectionTestOutcome(
                success=False,
                error="calendar_list_failed",
                http_status=exc.status_code,
                retryable=normalized.retryable,
            )
        except ProviderError as exc:
            integration.last_test_status = "fail"
            integration.last_error_code = exc.error_code[:ERROR_CODE_MAX_LENGTH]
            integration.last_error_message = str(exc)[:ERROR_MESSAGE_MAX_LENGTH]
            self.db.add(integration)
            self.db.commit()
            _audit(AuditAction.TEST_FAIL, AuditResult.FAIL, {"reason": exc.error_code, "http_status": None})
            return ConnectionTestOutcome(success=False, error=exc.error_code, retryable=exc.retryable)

        integration.status = IntegrationStatus.CONNECTED.value
        integration.last_test_status = "success"
        _clear_error_fields(integration)
        self.db.add(integration)
        self.db.commit()
        _audit(
            AuditAction.TEST_SUCCESS,
            AuditResult.SUCCESS,
            {"http_status": 200, "calendars_count": len(calendars)},
        )
        return ConnectionTestOutcome(success=True, calendars=calendars, http_status=200)

    def select_calendar(self, *, tenant_id: UUID, calendar_id: str, calendar_name: str | None = None) -> None:
        calendar_id = (calendar_id or "").strip()
        if not calendar_id:
            raise InvalidConfigError("calendar_id is required")
        integration = self.store.get_integration(tenant_id)
        if integration is None:
            raise IntegrationNotFoundError("Integration not found")

        integration.default_calendar_id = calendar_id
        integration.default_calendar_name = (calendar_name or "").strip() or None
        self.db.add(integration)
        self.db.commit()

    def save_config(
        self,
        *,
        tenant_id: UUID,
        user_id: UUID,
        client_id: str,
        client_secret: str | None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        client_id = (client_id or "").strip()
        if not client_id:
            raise InvalidConfigError("client_id is required")
        client_secret = (client_secret or "").strip()
        if client_secret == SECRET_PLACEHOLDER:
            client_secret = ""

        integration = self.store.get_integration(tenant_id)
        if not client_secret and not (integration and integration.oauth_client_secret_encrypted):
            raise InvalidConfigError("client_secret is required")

        integration = self.store.ensure_integration(tenant_id)
        self.store.save_oauth_client(integration, client_id=client_id, client_secret=client_secret or None)
        self.db.commit()

        self.audit.record(
            tenant_id=tenant_id,
            integration_id=integration.id,
            actor_id=user_id,
            action=AuditAction.CONFIG_SAVED,
            result=AuditResult.SUCCESS,
            ip=ip,
            user_agent=user_agent,
            metadata={"client_id_set": True, "client_secret_set": bool(client_secret)},
        )
