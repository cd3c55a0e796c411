from time import perf_counter
from uuid import UUID, uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from calendar_connector.infrastructure.logging.context import bind_log_context, reset_log_context
from calendar_connector.infrastructure.observability.metrics import record_request

DEFAULT_CONTENT_SECURITY_POLICY = "default-src 'self'; frame-ancestors 'none'; object-src 'none';"


class TenantContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        tenant_header = request.headers.get("X-Tenant-ID")
        log_tokens = []

        if tenant_header:
            try:
                tenant_id = UUID(tenant_header)
            except ValueError:
                trace_id = getattr(request.state, "request_id", None) or str(uuid4())
                return JSONResponse(
                    status_code=400,
                    content={
                        "error_code": "invalid_tenant_header",
                        "message": "Invalid X-Tenant-ID header",
                        "trace_id": trace_id,
                    },
                )
            request.state.tenant_id = tenant_id
            log_tokens = bind_log_context(tenant_id=str(tenant_id))

        try:
            return await call_next(request)
        finally:
            reset_log_context(log_tokens)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started_at = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            record_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=perf_counter() - started_at,
            )


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        log_tokens = bind_log_context(request_id=request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            reset_log_context(log_tokens)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds baseline security headers. A response that sets its own CSP (the OAuth
    callback page with its script nonce) keeps it."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if "Content-Security-Policy" not in response.headers:
            response.headers["Content-Security-Policy"] = DEFAULT_CONTENT_SECURITY_POLICY
        return response
