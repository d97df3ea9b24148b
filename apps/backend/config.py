"""Конфигурация приложения."""
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")
    app_env: str = "development"
    debug: bool = True

    database_url: str | None = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "warelay"
    postgres_user: str = "warelay"
    postgres_password: str = "changeme"

    redis_host: str = "localhost"
    redis_port: int = 6379
    rq_outbox_queue_name: str = "outbox"

    wa_graph_base_url: str = "https://graph.facebook.com"
    wa_graph_version: str = "v19.0"
    wa_send_timeout_seconds: float = 12.0

    webhook_secret: str = ""
    wa_verify_token: str = ""
    internal_api_secret: str = ""
    token_encryption_key: str = ""  # min 32 chars для шифрования токенов подключений

    enable_wa_send: bool = False
    worker_id: str | None = None
    worker_batch_size: int = 20
    worker_max_attempts: int = 5
    worker_poll_interval_ms: int = 2000
    rate_cap_per_min: int = 0
    rate_delay_min_ms: int = 800
    rate_delay_max_ms: int = 2200
    rate_limit_defer_seconds: int = 60
    outbox_lock_stale_seconds: int = 600
    backoff_base_ms: int = 60_000
    backoff_cap_ms: int = 3_600_000

    webhook_sweep_limit: int = 25
    webhook_reconcile_limit: int = 100
    webhook_max_attempts: int = 8
    webhook_retry_base_seconds: int = 60
    webhook_retry_cap_seconds: int = 3600
    rate_limit_retention_minutes: int = 10


@lru_cache
def get_settings() -> Settings:
    return Settings()
