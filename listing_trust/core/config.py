from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "listing-trust-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    operation_timeout_seconds: float = 10.0
    duplicate_default_radius_km: float = 0.1
    submission_rate_limit: int = 10
    submission_rate_window_seconds: int = 3600
    notification_max_attempts: int = 5
    ml_analyzer_module_id: str = "ml-analyzer"
    ml_analyzer_api_key: str | None = None
    ml_analyzer_scopes: str = "ml:write"
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "listing-trust-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LT_", extra="ignore")


class WorkerSettings(BaseSettings):
    environment: str = "dev"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    dispatch_batch_size: int = 50
    notification_webhook_url: str | None = None
    notification_webhook_token: str | None = None
    delivery_timeout_seconds: float = 10.0
    otel_enabled: bool = True
    otel_service_name: str = "listing-trust-notifier"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LT_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_worker_settings() -> WorkerSettings:
    return WorkerSettings()
