from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "taskboard-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    task_default_timeout_minutes: int = 60
    task_max_attempts: int = 3
    long_poll_default_seconds: float = 8.0
    long_poll_max_seconds: float = 25.0
    long_poll_interval_seconds: float = 2.0
    max_request_bytes: int = 100_000
    trust_forwarded_for: bool = True
    rate_limit_enabled: bool = True
    rate_limit_key_create: int = 1
    rate_limit_key_create_window_seconds: int = 24 * 60 * 60
    rate_limit_task_create: int = 1
    rate_limit_task_create_window_seconds: int = 10 * 60
    rate_limit_task_action: int = 10
    rate_limit_task_action_window_seconds: int = 10 * 60
    rate_limit_read: int = 60
    rate_limit_read_window_seconds: int = 60
    rate_limit_poll: int = 120
    rate_limit_poll_window_seconds: int = 60
    otel_enabled: bool = True
    otel_service_name: str = "taskboard-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="TB_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
