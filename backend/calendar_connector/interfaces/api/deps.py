from dataclasses import dataclass
from functools import lru_cache
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from calendar_connector.application.services.integration_services import (
    GoogleCalendarServices,
    build_google_calendar_services,
)
from calendar_connector.core.config import settings
from calendar_connector.core.credential_cipher import CredentialCipher
from calendar_connector.core.security import decode_token
from calendar_connector.integrations.google_calendar import GoogleCalendarClient
from calendar_connector.integrations.oauth_state import StateTokenCodec
from calendar_connector.infrastructure.db.session import get_db


@dataclass(frozen=True)
class TenantContext:
    tenant_id: UUID
    user_id: UUID


def _bearer_token(request: Request) -> str:
    authorization = request.headers.get("Authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token.strip()


def authenticate_tenant_user(request: Request) -> TenantContext:
    try:
        claims = decode_token(_bearer_token(request))
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    if claims.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")

    try:
        user_id = UUID(claims["sub"])
        company_id = UUID(claims["company_id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload") from exc

    header_tenant_id = getattr(request.state, "tenant_id", None)
    if header_tenant_id is not None and header_tenant_id != company_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant mismatch")

    return TenantContext(tenant_id=company_id, user_id=user_id)


@lru_cache
def get_credential_cipher() -> CredentialCipher:
    return CredentialCipher(settings.cipher_master_secret)


@lru_cache
def get_state_codec() -> StateTokenCodec:
    return StateTokenCodec(settings.state_signing_secret, ttl_seconds=settings.oauth_state_ttl_seconds)


def get_google_calendar_client() -> GoogleCalendarClient:
    return GoogleCalendarClient(timeout=settings.google_provider_timeout_seconds)


def get_google_calendar_services(
    db: Session = Depends(get_db),
    cipher: CredentialCipher = Depends(get_credential_cipher),
    codec: StateTokenCodec = Depends(get_state_codec),
    provider: GoogleCalendarClient = Depends(get_google_calendar_client),
) -> GoogleCalendarServices:
    return build_google_calendar_services(db, cipher=cipher, codec=codec, provider=provider)
