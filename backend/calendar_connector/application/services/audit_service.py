import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calendar_connector.domain.models.integration_audit_event import (
    ActorType,
    AuditAction,
    AuditResult,
    IntegrationAuditEvent,
)
from calendar_connector.infrastructure.observability.metrics import AUDIT_WRITE_FAILURES_TOTAL

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only recorder for integration security events.

    Each event is committed on its own, after the caller has committed the change it
    describes, so an audit-store failure never rolls back or blocks the primary flow.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def record(
        self,
        *,
        tenant_id: UUID,
        action: AuditAction,
        result: AuditResult,
        integration_id: UUID | None = None,
        actor_id: UUID | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        metadata: dict | None = None,
    ) -> IntegrationAuditEvent | None:
        event = IntegrationAuditEvent(
            tenant_id=tenant_id,
            integration_id=integration_id,
            actor_type=(ActorType.USER if actor_id else ActorType.SYSTEM).value,
            actor_id=actor_id,
            action=action.value,
            result=result.value,
            ip=(ip or None) and ip[:64],
            user_agent=(user_agent or None) and user_agent[:512],
            metadata_json=metadata or {},
        )
        try:
            self.db.add(event)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            AUDIT_WRITE_FAILURES_TOTAL.inc()
            logger.exception("audit_event_write_failed tenant_id=%s action=%s", tenant_id, action.value)
            return None
        return event

    def list_recent(self, tenant_id: UUID, *, limit: int = 50) -> list[IntegrationAuditEvent]:
        return list(
            self.db.execute(
                select(IntegrationAuditEvent)
                .where(IntegrationAuditEvent.tenant_id == tenant_id)
                .order_by(IntegrationAuditEvent.created_at.desc())
                .limit(limit)
            )
            .scalars()
            .all()
        )
