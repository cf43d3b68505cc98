from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "runops-api"
    environment: str = "dev"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    channel: str = "airwork"
    blob_base_url: str | None = None
    blob_token: str | None = None
    blob_timeout_seconds: float = 30.0
    auth_url: str | None = None
    auth_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    cron_secret: str | None = None
    max_upload_bytes: int = 10 * 1024 * 1024
    freshness_stale_after_days: int = 14
    freshness_recent_posting_days: int = 7
    otel_enabled: bool = True
    otel_service_name: str = "runops-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RUNOPS_", extra="ignore")


class WorkerSettings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    cron_secret: str | None = None
    freshness_interval_seconds: float = 3600.0
    request_timeout_seconds: float = 120.0
    max_backoff_seconds: float = 300.0
    otel_enabled: bool = True
    otel_service_name: str = "runops-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RUNOPS_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_worker_settings() -> WorkerSettings:
    return WorkerSettings()
