from dataclasses import dataclass

from sqlalchemy.orm import Session

from calendar_connector.application.services.audit_service import AuditLog
from calendar_connector.application.services.credential_store import CredentialStore
from calendar_connector.application.services.integration_status_service import IntegrationStatusService
from calendar_connector.application.services.oauth_flow_service import OAuthFlowController
from calendar_connector.application.services.token_refresher import TokenRefresher
from calendar_connector.core.config import Settings, settings as default_settings
from calendar_connector.core.credential_cipher import CredentialCipher
from calendar_connector.integrations.google_calendar import GoogleCalendarClient, OAuthClientCredentials
from calendar_connector.integrations.oauth_state import StateTokenCodec


@dataclass(frozen=True)
class GoogleCalendarServices:
    store: CredentialStore
    audit: AuditLog
    refresher: TokenRefresher
    flow: OAuthFlowController
    status: IntegrationStatusService


def default_oauth_client(config: Settings) -> OAuthClientCredentials | None:
    if config.google_client_id and config.google_client_secret:
        return OAuthClientCredentials(client_id=config.google_client_id, client_secret=config.google_client_secret)
    return None


def build_google_calendar_services(
    db: Session,
    *,
    cipher: CredentialCipher,
    codec: StateTokenCodec,
    provider: GoogleCalendarClient,
    config: Settings = default_settings,
) -> GoogleCalendarServices:
    store = CredentialStore(db, cipher, provider=provider.provider, default_client=default_oauth_client(config))
    audit = AuditLog(db)
    refresher = TokenRefresher(store, provider, audit, skew_seconds=config.token_refresh_skew_seconds)
    flow = OAuthFlowController(
        store,
        codec,
        provider,
        audit,
        refresher,
        server_redirect_uri=config.google_calendar_redirect_uri,
        proxy_callback_path=config.google_calendar_proxy_callback_path,
        allowed_origins=config.cors_allowed_origins,
    )
    status = IntegrationStatusService(store, audit, audit_page_size=config.audit_log_page_size)
    return GoogleCalendarServices(store=store, audit=audit, refresher=refresher, flow=flow, status=status)
