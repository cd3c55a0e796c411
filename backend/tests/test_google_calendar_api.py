from urllib.parse import parse_qs, urlparse
from uuid import uuid4

from fastapi.testclient import TestClient
from sqlalchemy import select

from calendar_connector.core.credential_cipher import is_encrypted
from calendar_connector.core.security import create_access_token
from calendar_connector.domain.models.integration import Integration
from calendar_connector.domain.models.integration_audit_event import IntegrationAuditEvent
from calendar_connector.domain.models.integration_credential import IntegrationCredential

ENDPOINT = "/integrations/google-calendar"
PROXY_REDIRECT_URI = "http://localhost:3000/admin/integracoes/google-calendar/callback"


def _save_config(client: TestClient, headers: dict) -> None:
    response = client.post(
        ENDPOINT,
        params={"action": "save-config"},
        headers=headers,
        json={"client_id": "tenant-client.apps.googleusercontent.com", "client_secret": "tenant-client-secret"},
    )
    assert response.status_code == 200
    assert response.json() == {"success": True}


def _connect(client: TestClient, headers: dict, **kwargs) -> str:
    response = client.post(ENDPOINT, params={"action": "connect"}, headers=headers, **kwargs)
    assert response.status_code == 200
    return parse_qs(urlparse(response.json()["auth_url"]).query)["state"][0]


def test_google_calendar_connect_flow(client: TestClient, auth_headers: dict, db_session, tenant_id):
    _save_config(client, auth_headers)

    config = client.get(ENDPOINT, params={"action": "get-config"}, headers=auth_headers)
    assert config.status_code == 200
    assert config.json() == {
        "client_id": "tenant-client.apps.googleusercontent.com",
        "client_secret": "••••••••",
        "has_client_secret": True,
    }

    state = _connect(client, {**auth_headers, "X-Forwarded-For": "203.0.113.7, 10.0.0.1"}, json={})

    callback = client.get(ENDPOINT, params={"action": "callback", "code": "auth-code", "state": state})
    assert callback.status_code == 200
    assert callback.headers["content-type"].startswith("text/html")
    assert "postMessage" in callback.text
    assert "'nonce-" in callback.headers["content-security-policy"]
    assert callback.headers["x-frame-options"] == "DENY"

    integration = db_session.execute(select(Integration).where(Integration.tenant_id == tenant_id)).scalar_one()
    assert integration.status == "connected"
    credential = db_session.execute(
        select(IntegrationCredential).where(IntegrationCredential.integration_id == integration.id)
    ).scalar_one()
    assert is_encrypted(credential.access_token_encrypted)

    status_response = client.get(ENDPOINT, params={"action": "status"}, headers=auth_headers)
    assert status_response.status_code == 200
    assert status_response.json()["status"] == "connected"
    assert status_response.json()["connected_account_email"] == "owner@solar.test"

    test_response = client.post(ENDPOINT, params={"action": "test"}, headers=auth_headers)
    assert test_response.status_code == 200
    assert test_response.json()["success"] is True
    assert test_response.json()["calendars"][0]["id"] == "primary@solar.test"

    select_response = client.post(
        ENDPOINT,
        params={"action": "select-calendar"},
        headers=auth_headers,
        json={"calendar_id": "primary@solar.test", "calendar_name": "Agenda"},
    )
    assert select_response.status_code == 200

    init = client.get(ENDPOINT, params={"action": "init"}, headers=auth_headers)
    assert init.status_code == 200
    body = init.json()
    assert body["status"]["default_calendar_id"] == "primary@solar.test"
    assert body["config"]["has_client_secret"] is True
    actions = [event["action"] for event in body["events"]]
    assert actions[0] == "test_success"
    assert {"config_saved", "connect_started", "connect_completed"} <= set(actions)

    audit = client.get(ENDPOINT, params={"action": "audit-log"}, headers=auth_headers)
    assert audit.status_code == 200
    assert [event["action"] for event in audit.json()["events"]] == actions

    started = db_session.execute(
        select(IntegrationAuditEvent).where(IntegrationAuditEvent.action == "connect_started")
    ).scalar_one()
    assert started.ip == "203.0.113.7"

    for _ in range(2):
        disconnect = client.post(ENDPOINT, params={"action": "disconnect"}, headers=auth_headers)
        assert disconnect.status_code == 200
        assert disconnect.json() == {"success": True}

    final_status = client.get(ENDPOINT, params={"action": "status"}, headers=auth_headers)
    assert final_status.json()["status"] == "disconnected"


def test_callback_proxy_flow(client: TestClient, auth_headers: dict, fake_google):
    _save_config(client, auth_headers)
    state = _connect(client, {**auth_headers, "Origin": "http://localhost:3000"})

    response = client.post(
        ENDPOINT,
        params={"action": "callback-proxy"},
        json={"code": "auth-code", "state": state, "redirect_uri": PROXY_REDIRECT_URI},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert fake_google.form(fake_google.calls("token")[0])["redirect_uri"] == PROXY_REDIRECT_URI


def test_callback_proxy_rejects_invalid_state(client: TestClient, fake_google):
    response = client.post(
        ENDPOINT,
        params={"action": "callback-proxy"},
        json={"code": "auth-code", "state": "forged.0000"},
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "invalid_state", "retryable": False}
    assert fake_google.requests == []


def test_callback_page_reports_failure(client: TestClient):
    response = client.get(ENDPOINT, params={"action": "callback", "code": "auth-code", "state": "forged.0000"})

    assert response.status_code == 200
    assert "invalid_state" in response.text


def test_unknown_action_and_method(client: TestClient, auth_headers: dict):
    unknown = client.get(ENDPOINT, params={"action": "explode"}, headers=auth_headers)
    assert unknown.status_code == 400
    assert unknown.json()["error_code"] == "unknown_action"

    wrong_method = client.get(ENDPOINT, params={"action": "connect"}, headers=auth_headers)
    assert wrong_method.status_code == 400
    assert wrong_method.json()["error_code"] == "unknown_action"

    missing = client.get(ENDPOINT, headers=auth_headers)
    assert missing.status_code == 400


def test_tenant_actions_require_authentication(client: TestClient, tenant_id, user_id):
    anonymous = client.get(ENDPOINT, params={"action": "status"})
    assert anonymous.status_code == 401
    assert anonymous.json()["trace_id"]
    assert anonymous.json()["error_code"] == "unauthorized"
    assert anonymous.headers["www-authenticate"] == "Bearer"

    bad_token = client.get(ENDPOINT, params={"action": "status"}, headers={"Authorization": "Bearer not-a-jwt"})
    assert bad_token.status_code == 401

    token = create_access_token(user_id, tenant_id)
    mismatch = client.get(
        ENDPOINT,
        params={"action": "status"},
        headers={"Authorization": f"Bearer {token}", "X-Tenant-ID": str(uuid4())},
    )
    assert mismatch.status_code == 403
    assert mismatch.json()["error_code"] == "forbidden"

    invalid_header = client.get(
        ENDPOINT,
        params={"action": "status"},
        headers={"Authorization": f"Bearer {token}", "X-Tenant-ID": "not-a-uuid"},
    )
    assert invalid_header.status_code == 400
    assert invalid_header.json()["error_code"] == "invalid_tenant_header"


def test_integration_errors_are_rendered(client: TestClient, auth_headers: dict):
    connect = client.post(ENDPOINT, params={"action": "connect"}, headers=auth_headers)
    assert connect.status_code == 400
    assert connect.json()["error_code"] == "missing_credentials"

    test_response = client.post(ENDPOINT, params={"action": "test"}, headers=auth_headers)
    assert test_response.status_code == 400
    assert test_response.json()["error_code"] == "integration_not_connected"

    select_response = client.post(
        ENDPOINT,
        params={"action": "select-calendar"},
        headers=auth_headers,
        json={"calendar_id": "primary"},
    )
    assert select_response.status_code == 404
    assert select_response.json()["error_code"] == "integration_not_found"


def test_request_body_validation(client: TestClient, auth_headers: dict):
    missing_client_id = client.post(
        ENDPOINT,
        params={"action": "save-config"},
        headers=auth_headers,
        json={"client_secret": "secret"},
    )
    assert missing_client_id.status_code == 422
    assert missing_client_id.json()["error_code"] == "validation_error"
    assert missing_client_id.json()["fields"][0]["field"] == "client_id"

    invalid_json = client.post(
        ENDPOINT,
        params={"action": "save-config"},
        headers={**auth_headers, "Content-Type": "application/json"},
        content=b"{not json",
    )
    assert invalid_json.status_code == 400
    assert invalid_json.json()["error_code"] == "invalid_json"


def test_disconnect_without_integration_succeeds(client: TestClient, auth_headers: dict):
    response = client.post(ENDPOINT, params={"action": "disconnect"}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert response.headers["content-security-policy"].startswith("default-src 'self'")


def test_connect_with_unreadable_client_secret_returns_missing_credentials(
    client: TestClient, auth_headers: dict, db_session, tenant_id
):
    _save_config(client, auth_headers)
    integration = db_session.execute(select(Integration).where(Integration.tenant_id == tenant_id)).scalar_one()
    integration.oauth_client_secret_encrypted = "enc:" + "A" * 40
    db_session.commit()

    response = client.post(ENDPOINT, params={"action": "connect"}, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error_code"] == "missing_credentials"

    _save_config(client, auth_headers)
    assert client.post(ENDPOINT, params={"action": "connect"}, headers=auth_headers).status_code == 200
