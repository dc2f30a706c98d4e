from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "internship-hub-api"
    environment: str = "dev"
    repository_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    persistence_timeout_seconds: float = 5.0
    side_effect_timeout_seconds: float = 2.0
    admin_override_targets: list[str] = ["rejected"]
    notify_on_status_change: bool = True
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "internship-hub-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="IH_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
