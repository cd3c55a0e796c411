from calendar_connector.domain.models.integration import Integration, IntegrationStatus
from calendar_connector.domain.models.integration_audit_event import (
    ActorType,
    AuditAction,
    AuditResult,
    IntegrationAuditEvent,
)
from calendar_connector.domain.models.integration_credential import IntegrationCredential

__all__ = [
    "ActorType",
    "AuditAction",
    "AuditResult",
    "Integration",
    "IntegrationAuditEvent",
    "IntegrationCredential",
    "IntegrationStatus",
]
