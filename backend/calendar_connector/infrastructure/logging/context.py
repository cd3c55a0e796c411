from contextvars import ContextVar, Token

# Fields stamped on every log record emitted while a request or task is in flight.
_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)
_action_ctx: ContextVar[str | None] = ContextVar("integration_action", default=None)

_FIELDS: dict[str, ContextVar[str | None]] = {
    "request_id": _request_id_ctx,
    "tenant_id": _tenant_id_ctx,
    "action": _action_ctx,
}


def bind_log_context(**values: str | None) -> list[tuple[ContextVar, Token]]:
    tokens = []
    for name, value in values.items():
        var = _FIELDS[name]
        tokens.append((var, var.set(value)))
    return tokens


def reset_log_context(tokens: list[tuple[ContextVar, Token]]) -> None:
    for var, token in reversed(tokens):
        var.reset(token)


def log_context_snapshot() -> dict[str, str | None]:
    return {name: var.get() for name, var in _FIELDS.items()}