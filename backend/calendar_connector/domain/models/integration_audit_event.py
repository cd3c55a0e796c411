import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import JSON, DateTime, ForeignKey, String, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from calendar_connector.infrastructure.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AuditAction(StrEnum):
    CONNECT_STARTED = "connect_started"
    CALLBACK_RECEIVED = "callback_received"
    CONNECT_COMPLETED = "connect_completed"
    TOKEN_REFRESHED = "token_refreshed"
    TEST_SUCCESS = "test_success"
    TEST_FAIL = "test_fail"
    DISCONNECT = "disconnect"
    CONFIG_SAVED = "config_saved"


class AuditResult(StrEnum):
    SUCCESS = "success"
    FAIL = "fail"


class ActorType(StrEnum):
    USER = "user"
    SYSTEM = "system"


class IntegrationAuditEvent(Base):
    __tablename__ = "integration_audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    integration_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("integrations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    actor_type: Mapped[str] = mapped_column(String(16), nullable=False, default=ActorType.SYSTEM.value)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    result: Mapped[str] = mapped_column(String(16), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False, index=True
    )
