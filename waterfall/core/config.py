from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

ReclaimCounterPolicy = Literal["refund", "preserve", "reset"]
StoreBackend = Literal["postgres", "memory"]


class Settings(BaseSettings):
    app_name: str = "waterfall-pipeline"
    environment: str = "dev"

    store_backend: StoreBackend = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    job_max_attempts: int = 3
    staging_max_retries: int = 3
    retry_base_seconds: int = 30
    retry_max_seconds: int = 600
    default_batch_size: int = 10
    max_batch_size: int = 1000

    reclaim_stale_after_seconds: int = 3600
    reclaim_counter_policy: ReclaimCounterPolicy = "refund"
    pipeline_stall_seconds: int = 1800

    source_base_interval_minutes: int = 360
    source_max_interval_minutes: int = 10080
    failure_backoff_multiplier: float = 2.0

    fetch_timeout_seconds: float = 15.0
    fetch_user_agent: str = "waterfall-pipeline/0.1 (+https://example.org/bot)"
    detail_rate_limit_ms: int = 200

    # Poll-until-drained driver
    api_base_url: str = "http://localhost:8000"
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    reclaim_interval_seconds: float = 300.0
    coordinator_interval_seconds: float = 600.0
    drain_max_batches: int = 50

    otel_enabled: bool = True
    otel_service_name: str = "waterfall-pipeline"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="WF_", extra="ignore", frozen=True)

    def bounded_batch_size(self, requested: int | None) -> int:
        if requested is None:
            requested = self.default_batch_size
        return max(1, min(requested, self.max_batch_size))


@lru_cache
def get_settings() -> Settings:
    return Settings()
