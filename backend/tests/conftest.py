import os
from urllib.parse import parse_qs
from uuid import uuid4

os.environ["DATABASE_URL"] = "sqlite://"

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from calendar_connector.application.services.integration_services import build_google_calendar_services
from calendar_connector.core.config import Settings
from calendar_connector.core.credential_cipher import CredentialCipher
from calendar_connector.core.security import create_access_token
from calendar_connector.domain import models  # noqa: F401
from calendar_connector.integrations.google_calendar import GoogleCalendarClient
from calendar_connector.integrations.oauth_state import StateTokenCodec
from calendar_connector.infrastructure.db.base import Base
from calendar_connector.infrastructure.db.session import get_db
from calendar_connector.interfaces.api.deps import (
    get_credential_cipher,
    get_google_calendar_client,
    get_state_codec,
)
from main import app

TEST_FRONTEND_ORIGIN = "http://localhost:3000"


class FakeGoogle:
    """In-process stand-in for the Google OAuth and Calendar endpoints."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.timeouts: set[str] = set()
        self.token_status = 200
        self.token_payload = {
            "access_token": "ya29.access-token",
            "refresh_token": "1//refresh-token",
            "expires_in": 3599,
            "scope": "https://www.googleapis.com/auth/calendar.readonly https://www.googleapis.com/auth/userinfo.email",
            "token_type": "Bearer",
        }
        self.refresh_status = 200
        self.refresh_payload = {"access_token": "ya29.refreshed-token", "expires_in": 3599, "token_type": "Bearer"}
        self.userinfo_status = 200
        self.userinfo_payload = {"email": "owner@solar.test"}
        self.calendar_status = 200
        self.calendars = [
            {"id": "primary@solar.test", "summary": "Agenda", "primary": True},
            {"id": "installs@group.calendar.google.com", "summary": "Installs"},
        ]
        self.revoke_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        operation = self._operation(request)
        if operation in self.timeouts:
            raise httpx.ReadTimeout("timed out", request=request)

        if operation == "token":
            return httpx.Response(self.token_status, json=self.token_payload)
        if operation == "refresh":
            return httpx.Response(self.refresh_status, json=self.refresh_payload)
        if operation == "userinfo":
            return httpx.Response(self.userinfo_status, json=self.userinfo_payload)
        if operation == "calendar_list":
            if self.calendar_status >= 400:
                return httpx.Response(
                    self.calendar_status,
                    json={"error": {"status": "UNAUTHENTICATED", "message": "Invalid Credentials"}},
                )
            return httpx.Response(200, json={"items": self.calendars})
        if operation == "revoke":
            return httpx.Response(self.revoke_status, json={})
        return httpx.Response(404, json={"error": "not_found"})

    @staticmethod
    def _operation(request: httpx.Request) -> str:
        path = request.url.path
        if path == "/token":
            form = parse_qs(request.content.decode("utf-8"))
            return "refresh" if form.get("grant_type") == ["refresh_token"] else "token"
        if path == "/revoke":
            return "revoke"
        if path.endswith("/userinfo"):
            return "userinfo"
        if path.endswith("/calendarList"):
            return "calendar_list"
        return "unknown"

    def calls(self, operation: str) -> list[httpx.Request]:
        return [request for request in self.requests if self._operation(request) == operation]

    def form(self, request: httpx.Request) -> dict:
        return {key: values[0] for key, values in parse_qs(request.content.decode("utf-8")).items()}


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)
    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
def provider(fake_google: FakeGoogle) -> GoogleCalendarClient:
    return GoogleCalendarClient(timeout=2.0, transport=httpx.MockTransport(fake_google.handler))


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher("test-master-secret")


@pytest.fixture
def codec() -> StateTokenCodec:
    return StateTokenCodec("test-state-secret")


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        frontend_origin=TEST_FRONTEND_ORIGIN,
        additional_frontend_origins="https://crm.solar.test",
        google_client_id=None,
        google_client_secret=None,
    )


@pytest.fixture
def services(db_session, cipher, codec, provider, test_settings):
    return build_google_calendar_services(
        db_session,
        cipher=cipher,
        codec=codec,
        provider=provider,
        config=test_settings,
    )


@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def configured_tenant(services, tenant_id, user_id):
    services.flow.save_config(
        tenant_id=tenant_id,
        user_id=user_id,
        client_id="tenant-client.apps.googleusercontent.com",
        client_secret="tenant-client-secret",
    )
    return tenant_id


@pytest.fixture
def client(db_session, cipher, codec, provider):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_credential_cipher] = lambda: cipher
    app.dependency_overrides[get_state_codec] = lambda: codec
    app.dependency_overrides[get_google_calendar_client] = lambda: provider
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(tenant_id, user_id) -> dict:
    token = create_access_token(user_id, tenant_id)
    return {"Authorization": f"Bearer {token}", "X-Tenant-ID": str(tenant_id)}

