from calendar_connector.integrations.google_calendar.client import (
    GOOGLE_CALENDAR_SCOPES,
    PROVIDER_NAME,
    BestEffort,
    GoogleCalendarClient,
    OAuthClientCredentials,
    ProviderError,
    ProviderHTTPError,
    ProviderUnavailableError,
)

__all__ = [
    "GOOGLE_CALENDAR_SCOPES",
    "PROVIDER_NAME",
    "BestEffort",
    "GoogleCalendarClient",
    "OAuthClientCredentials",
    "ProviderError",
    "ProviderHTTPError",
    "ProviderUnavailableError",
]
