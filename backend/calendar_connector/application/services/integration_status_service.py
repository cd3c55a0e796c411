from uuid import UUID

from calendar_connector.application.services.audit_service import AuditLog
from calendar_connector.application.services.credential_store import CredentialStore
from calendar_connector.domain.models.integration import Integration, IntegrationStatus
from calendar_connector.domain.models.integration_audit_event import IntegrationAuditEvent

SECRET_PLACEHOLDER = "••••••••"


def _isoformat(value) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_integration(integration: Integration | None, *, provider: str) -> dict:
    if integration is None:
        return {
            "id": None,
            "provider": provider,
            "status": IntegrationStatus.DISCONNECTED.value,
            "connected_account_email": None,
            "default_calendar_id": None,
            "default_calendar_name": None,
            "scopes": [],
            "last_test_at": None,
            "last_test_status": None,
            "last_error_code": None,
            "last_error_message": None,
            "oauth_client_id": None,
            "has_credentials": False,
            "created_at": None,
            "updated_at": None,
        }
    return {
        "id": str(integration.id),
        "provider": integration.provider,
        "status": integration.status,
        "connected_account_email": integration.connected_account_email,
        "default_calendar_id": integration.default_calendar_id,
        "default_calendar_name": integration.default_calendar_name,
        "scopes": list(integration.scopes or []),
        "last_test_at": _isoformat(integration.last_test_at),
        "last_test_status": integration.last_test_status,
        "last_error_code": integration.last_error_code,
        "last_error_message": integration.last_error_message,
        "oauth_client_id": integration.oauth_client_id,
        "has_credentials": bool(integration.oauth_client_id and integration.oauth_client_secret_encrypted),
        "created_at": _isoformat(integration.created_at),
        "updated_at": _isoformat(integration.updated_at),
    }


def serialize_audit_event(event: IntegrationAuditEvent) -> dict:
    return {
        "id": str(event.id),
        "action": event.action,
        "result": event.result,
        "actor_type": event.actor_type,
        "created_at": _isoformat(event.created_at),
        "metadata_json": event.metadata_json or {},
    }


class IntegrationStatusService:
    """Read-only view of a tenant's integration health. Never performs writes."""

    def __init__(self, store: CredentialStore, audit: AuditLog, *, audit_page_size: int = 50) -> None:
        self.store = store
        self.audit = audit
        self.audit_page_size = audit_page_size

    def status(self, tenant_id: UUID) -> dict:
        return serialize_integration(self.store.get_integration(tenant_id), provider=self.store.provider)

    def config(self, tenant_id: UUID) -> dict:
        integration = self.store.get_integration(tenant_id)
        has_secret = bool(integration and integration.oauth_client_secret_encrypted)
        return {
            "client_id": (integration.oauth_client_id if integration else None) or "",
            "client_secret": SECRET_PLACEHOLDER if has_secret else "",
            "has_client_secret": has_secret,
        }

    def audit_log(self, tenant_id: UUID) -> dict:
        events = self.audit.list_recent(tenant_id, limit=self.audit_page_size)
        return {"events": [serialize_audit_event(event) for event in events]}

    def init(self, tenant_id: UUID) -> dict:
        return {
            "status": self.status(tenant_id),
            "config": self.config(tenant_id),
            "events": self.audit_log(tenant_id)["events"],
        }
