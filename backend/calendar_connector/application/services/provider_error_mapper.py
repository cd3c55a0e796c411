from dataclasses import dataclass

from calendar_connector.integrations.google_calendar import (
    PROVIDER_NAME,
    ProviderError,
    ProviderHTTPError,
    ProviderUnavailableError,
)


@dataclass(frozen=True)
class NormalizedProviderError:
    provider: str
    error_code: str
    category: str
    retryable: bool
    suggested_action: str


def map_provider_error(exc: ProviderError, *, provider: str = PROVIDER_NAME) -> NormalizedProviderError:
    if isinstance(exc, ProviderUnavailableError):
        return NormalizedProviderError(
            provider=provider,
            error_code=exc.error_code,
            category="unavailable",
            retryable=True,
            suggested_action="Retry later; the provider did not answer in time",
        )

    status_code = exc.status_code if isinstance(exc, ProviderHTTPError) else 0
    code = (exc.error_code or "unknown_error").strip()
    lowered = code.lower()

    if status_code == 401 or any(token in lowered for token in ("invalid_grant", "unauthenticated", "invalid_token")):
        return NormalizedProviderError(
            provider=provider,
            error_code=code,
            category="auth",
            retryable=False,
            suggested_action="Reconnect the integration",
        )
    if status_code == 429 or any(token in lowered for token in ("rate", "resource_exhausted")):
        return NormalizedProviderError(
            provider=provider,
            error_code=code,
            category="rate_limit",
            retryable=True,
            suggested_action="Wait for cooldown and retry",
        )
    if status_code >= 500:
        return NormalizedProviderError(
            provider=provider,
            error_code=code,
            category="server_error",
            retryable=True,
            suggested_action="Retry later; provider instability detected",
        )

    return NormalizedProviderError(
        provider=provider,
        error_code=code,
        category="rejected",
        retryable=False,
        suggested_action="Check the OAuth client configuration and reconnect",
    )
