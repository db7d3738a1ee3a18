from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    api_key: str | None = None
    agent_id: str = "taskboard-worker"
    skills: str | None = None
    requires_human: bool | None = False
    long_poll_timeout_seconds: float = 25.0
    request_timeout_seconds: float = 35.0
    backoff_base_seconds: float = 1.0
    max_backoff_seconds: float = 15.0
    otel_enabled: bool = True
    otel_service_name: str = "taskboard-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="TB_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
