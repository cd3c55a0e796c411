import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, Field, ValidationError
from starlette.concurrency import run_in_threadpool

from calendar_connector.application.errors import IntegrationError
from calendar_connector.application.services.integration_services import GoogleCalendarServices
from calendar_connector.application.services.oauth_flow_service import CallbackOutcome
from calendar_connector.core.config import settings
from calendar_connector.infrastructure.logging.context import bind_log_context, reset_log_context
from calendar_connector.interfaces.api.deps import (
    TenantContext,
    authenticate_tenant_user,
    get_google_calendar_services,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["google-calendar"])

OAUTH_MESSAGE_TYPE = "google-calendar-oauth"


class ConnectRequest(BaseModel):
    frontend_origin: str | None = Field(default=None, max_length=255)


class CallbackProxyRequest(BaseModel):
    code: str | None = None
    state: str | None = None
    redirect_uri: str | None = Field(default=None, max_length=2048)
    error: str | None = None


class SelectCalendarRequest(BaseModel):
    calendar_id: str = Field(min_length=1, max_length=1024)
    calendar_name: str | None = Field(default=None, max_length=255)


class SaveConfigRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=255)
    client_secret: str | None = Field(default=None, max_length=1024)


@dataclass(frozen=True)
class ActionRequest:
    query: dict[str, str]
    body: dict = field(default_factory=dict)
    origin: str | None = None


@dataclass(frozen=True)
class ActionContext:
    services: GoogleCalendarServices
    tenant: TenantContext | None
    ip: str | None
    user_agent: str | None

    @property
    def user(self) -> TenantContext:
        if self.tenant is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
        return self.tenant


ActionHandler = Callable[[ActionContext, ActionRequest], Response | dict]


@dataclass(frozen=True)
class ActionRoute:
    handler: ActionHandler
    requires_user: bool = True


def _validate(model: type[BaseModel], body: dict) -> BaseModel:
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _callback_payload(outcome: CallbackOutcome) -> dict:
    payload: dict = {"success": outcome.success}
    if not outcome.success:
        payload["error"] = outcome.error
        payload["retryable"] = outcome.retryable
    return payload


def _callback_page(outcome: CallbackOutcome) -> Response:
    target_origin = outcome.origin or settings.frontend_origin.rstrip("/")
    query = {"google_calendar": "connected" if outcome.success else "error"}
    if not outcome.success and outcome.error:
        query["reason"] = outcome.error
    dashboard_url = f"{settings.google_calendar_dashboard_url}?{urlencode(query)}"

    message = {"type": OAUTH_MESSAGE_TYPE, **_callback_payload(outcome)}
    script_data = json.dumps(
        {"message": message, "targetOrigin": target_origin, "dashboardUrl": dashboard_url}
    ).replace("<", "\\u003c")
    nonce = secrets.token_urlsafe(16)
    body = f"""<!doctype html>
<html>
<head><meta charset="utf-8"><title>Google Calendar</title></head>
<body>
<p>{"Google Calendar connected. You can close this window." if outcome.success else "Google Calendar connection failed."}</p>
<script nonce="{nonce}">
(function () {{
  var data = {script_data};
  if (window.opener && !window.opener.closed) {{
    window.opener.postMessage(data.message, data.targetOrigin);
    window.close();
  }} else {{
    window.location.replace(data.dashboardUrl);
  }}
}})();
</script>
</body>
</html>
"""
    response = HTMLResponse(content=body, status_code=status.HTTP_200_OK)
    response.headers["Content-Security-Policy"] = (
        f"default-src 'none'; script-src 'nonce-{nonce}'; frame-ancestors 'none'; base-uri 'none';"
    )
    response.headers["Cache-Control"] = "no-store"
    return response


def handle_connect(ctx: ActionContext, request: ActionRequest) -> dict:
    payload = _validate(ConnectRequest, request.body)
    auth_url = ctx.services.flow.connect(
        tenant_id=ctx.user.tenant_id,
        user_id=ctx.user.user_id,
        frontend_origin=payload.frontend_origin or request.origin,
        ip=ctx.ip,
        user_agent=ctx.user_agent,
    )
    return {"auth_url": auth_url}


def handle_callback(ctx: ActionContext, request: ActionRequest) -> Response:
    outcome = ctx.services.flow.callback(
        code=request.query.get("code"),
        state=request.query.get("state"),
        provider_error=request.query.get("error"),
    )
    if not outcome.success:
        logger.info("oauth_callback_failed tenant_id=%s error=%s", outcome.tenant_id, outcome.error)
    return _callback_page(outcome)


def handle_callback_proxy(ctx: ActionContext, request: ActionRequest) -> Response:
    payload = _validate(CallbackProxyRequest, request.body)
    outcome = ctx.services.flow.callback(
        code=payload.code,
        state=payload.state,
        redirect_uri=payload.redirect_uri,
        provider_error=payload.error,
    )
    if not outcome.success:
        logger.info("oauth_callback_failed tenant_id=%s error=%s", outcome.tenant_id, outcome.error)
    return JSONResponse(
        status_code=status.HTTP_200_OK if outcome.success else status.HTTP_400_BAD_REQUEST,
        content=_callback_payload(outcome),
    )


def handle_test(ctx: ActionContext, request: ActionRequest) -> dict:
    outcome = ctx.services.flow.test_connection(
        tenant_id=ctx.user.tenant_id,
        user_id=ctx.user.user_id,
        ip=ctx.ip,
        user_agent=ctx.user_agent,
    )
    if outcome.success:
        return {"success": True, "calendars": outcome.calendars}
    return {
        "success": False,
        "error": outcome.error,
        "http_status": outcome.http_status,
        "retryable": outcome.retryable,
    }


def handle_select_calendar(ctx: ActionContext, request: ActionRequest) -> dict:
    payload = _validate(SelectCalendarRequest, request.body)
    ctx.services.flow.select_calendar(
        tenant_id=ctx.user.tenant_id,
        calendar_id=payload.calendar_id,
        calendar_name=payload.calendar_name,
    )
    return {"success": True}


def handle_disconnect(ctx: ActionContext, request: ActionRequest) -> dict:
    ctx.services.flow.disconnect(
        tenant_id=ctx.user.tenant_id,
        user_id=ctx.user.user_id,
        ip=ctx.ip,
        user_agent=ctx.user_agent,
    )
    return {"success": True}


def handle_status(ctx: ActionContext, request: ActionRequest) -> dict:
    return ctx.services.status.status(ctx.user.tenant_id)


def handle_save_config(ctx: ActionContext, request: ActionRequest) -> dict:
    payload = _validate(SaveConfigRequest, request.body)
    ctx.services.flow.save_config(
        tenant_id=ctx.user.tenant_id,
        user_id=ctx.user.user_id,
        client_id=payload.client_id,
        client_secret=payload.client_secret,
        ip=ctx.ip,
        user_agent=ctx.user_agent,
    )
    return {"success": True}


def handle_get_config(ctx: ActionContext, request: ActionRequest) -> dict:
    return ctx.services.status.config(ctx.user.tenant_id)


def handle_audit_log(ctx: ActionContext, request: ActionRequest) -> dict:
    return ctx.services.status.audit_log(ctx.user.tenant_id)


def handle_init(ctx: ActionContext, request: ActionRequest) -> dict:
    return ctx.services.status.init(ctx.user.tenant_id)


ACTION_ROUTES: dict[tuple[str, str], ActionRoute] = {
    ("connect", "POST"): ActionRoute(handle_connect),
    ("callback", "GET"): ActionRoute(handle_callback, requires_user=False),
    ("callback-proxy", "POST"): ActionRoute(handle_callback_proxy, requires_user=False),
    ("test", "POST"): ActionRoute(handle_test),
    ("select-calendar", "POST"): ActionRoute(handle_select_calendar),
    ("disconnect", "POST"): ActionRoute(handle_disconnect),
    ("status", "GET"): ActionRoute(handle_status),
    ("save-config", "POST"): ActionRoute(handle_save_config),
    ("get-config", "GET"): ActionRoute(handle_get_config),
    ("audit-log", "GET"): ActionRoute(handle_audit_log),
    ("init", "GET"): ActionRoute(handle_init),
}


async def _read_json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "invalid_json", "message": "Request body must be valid JSON"},
        ) from exc
    if not isinstance(body, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "invalid_json", "message": "Request body must be a JSON object"},
        )
    return body


def _run_action(route: ActionRoute, ctx: ActionContext, action_request: ActionRequest) -> Response | dict:
    try:
        return route.handler(ctx, action_request)
    except IntegrationError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={"error_code": exc.error_code, "message": exc.message},
        ) from exc


@router.api_route("/integrations/google-calendar", methods=["GET", "POST"])
async def google_calendar_action(
    request: Request,
    services: GoogleCalendarServices = Depends(get_google_calendar_services),
):
    action = request.query_params.get("action") or ""
    route = ACTION_ROUTES.get((action, request.method.upper()))
    if route is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "unknown_action", "message": f"Unknown action: {action or '<missing>'}"},
        )

    tenant = authenticate_tenant_user(request) if route.requires_user else None
    body = await _read_json_body(request) if request.method.upper() == "POST" else {}
    ctx = ActionContext(
        services=services,
        tenant=tenant,
        ip=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    action_request = ActionRequest(
        query=dict(request.query_params),
        body=body,
        origin=request.headers.get("Origin"),
    )
    log_tokens = bind_log_context(action=action, tenant_id=str(tenant.tenant_id) if tenant else None)
    try:
        return await run_in_threadpool(_run_action, route, ctx, action_request)
    finally:
        reset_log_context(log_tokens)
