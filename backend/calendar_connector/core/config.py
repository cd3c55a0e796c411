from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Calendar Connector"
    app_env: str = "development"
    log_level: str | None = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "solar_crm"
    postgres_user: str = "solar_crm"
    postgres_password: str = "solar_crm"

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_socket_timeout_seconds: float = 2.0

    database_url: str | None = None
    redis_url: str | None = None
    frontend_origin: str = "http://localhost:3000"
    additional_frontend_origins: str = ""
    worker_heartbeat_key: str = "worker:heartbeat"
    worker_heartbeat_ttl_seconds: int = 45

    jwt_secret_key: str = "change_this_in_production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60
    token_encryption_key: str | None = None
    oauth_state_secret: str | None = None
    oauth_state_ttl_seconds: int = 900

    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_calendar_redirect_uri: str = "http://localhost:8000/integrations/google-calendar?action=callback"
    google_calendar_proxy_callback_path: str = "/admin/integracoes/google-calendar/callback"
    google_calendar_dashboard_url: str = "http://localhost:3000/admin/integracoes"
    google_provider_timeout_seconds: float = 10.0
    token_refresh_skew_seconds: int = 60
    audit_log_page_size: int = 50
    integration_health_check_interval_seconds: float = 3600.0
    integration_health_check_last_run_key: str = "integration_health_check:last_run_at"

    @property
    def cors_allowed_origins(self) -> list[str]:
        origins = [self.frontend_origin.strip()]
        if self.additional_frontend_origins.strip():
            origins.extend(
                [value.strip() for value in self.additional_frontend_origins.split(",") if value.strip()]
            )
        unique: list[str] = []
        for origin in origins:
            normalized = origin.rstrip("/")
            if normalized and normalized not in unique:
                unique.append(normalized)
        return unique

    @property
    def cipher_master_secret(self) -> str:
        return self.token_encryption_key or self.jwt_secret_key

    @property
    def state_signing_secret(self) -> str:
        return self.oauth_state_secret or self.jwt_secret_key

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cache_redis_url(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/0"


settings = Settings()
