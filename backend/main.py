import json
import logging
import logging.config
from http import HTTPStatus
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from calendar_connector.core.config import settings
from calendar_connector.domain import models  # noqa: F401
from calendar_connector.infrastructure.logging.context import log_context_snapshot
from calendar_connector.interfaces.api.router import api_router
from calendar_connector.interfaces.http.middleware import (
    MetricsMiddleware,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    TenantContextMiddleware,
)

LOGGING_CONFIG_PATH = Path(__file__).with_name("logging.json")
SERVICE_LOGGERS = ("calendar_connector", "workers")

logger = logging.getLogger("calendar_connector")


def configure_logging(config_path: Path = LOGGING_CONFIG_PATH) -> None:
    if config_path.exists():
        logging.config.dictConfig(json.loads(config_path.read_text(encoding="utf-8")))
    else:
        logging.basicConfig(level=logging.INFO)
    if settings.log_level:
        for name in SERVICE_LOGGERS:
            logging.getLogger(name).setLevel(settings.log_level.upper())


def _status_error_code(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).name.lower()
    except ValueError:
        return f"http_{status_code}"


def _error_payload(*, request: Request, error_code: str, message: str, **extra) -> dict:
    return {
        "error_code": error_code,
        "message": message,
        "trace_id": getattr(request.state, "request_id", None),
        **extra,
    }


def _field_errors(exc: RequestValidationError) -> list[dict]:
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        fields.append({"field": ".".join(location) or None, "message": error.get("msg", "Invalid value")})
    return fields


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict) and "error_code" in exc.detail and "message" in exc.detail:
        error_code = str(exc.detail["error_code"])
        message = str(exc.detail["message"])
    else:
        error_code = _status_error_code(exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(request=request, error_code=error_code, message=message),
        headers=exc.headers,
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=_error_payload(
            request=request,
            error_code="validation_error",
            message="Request validation failed",
            fields=_field_errors(exc),
        ),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    context = log_context_snapshot()
    logger.exception(
        "unhandled_exception path=%s method=%s action=%s tenant_id=%s",
        request.url.path,
        request.method,
        context["action"],
        context["tenant_id"],
    )
    return JSONResponse(
        status_code=500,
        content=_error_payload(
            request=request,
            error_code="internal_server_error",
            message="Internal server error",
        ),
    )


def create_app() -> FastAPI:
    configure_logging()

    application = FastAPI(title=settings.app_name)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Tenant-ID", "X-Request-ID"],
    )
    application.add_middleware(SecurityHeadersMiddleware)
    application.add_middleware(TenantContextMiddleware)
    application.add_middleware(RequestIDMiddleware)
    application.add_middleware(MetricsMiddleware)

    application.add_exception_handler(HTTPException, http_exception_handler)
    application.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    application.add_exception_handler(Exception, unhandled_exception_handler)

    application.include_router(api_router)
    return application


app = create_app()
