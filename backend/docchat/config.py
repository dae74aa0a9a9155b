# backend/docchat/config.py
import os
import socket
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    """Worker settings from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"

    # Database
    database_url: str = "sqlite:///./docchat.db"

    # ===== DOCUMENT STORAGE =====
    # "local" reads <local_storage_path>/<bucket>/<path>, "r2" reads from Cloudflare R2
    storage_backend: str = "local"
    local_storage_path: str = "uploads"

    # Cloudflare R2 (S3-compatible)
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    r2_bucket: str = ""  # Used when a document row carries no bucket of its own

    # ===== CHANGE FEED =====
    # "redis" subscribes to insert notifications, "polling" scans the messages table
    change_feed_backend: str = "redis"
    redis_url: str = "redis://localhost:6379/0"
    chat_events_channel: str = "chat:messages:inserted"
    assistant_events_channel: str = "chat:messages:assistant"
    polling_interval_seconds: float = 2.0

    # ===== GENERATION =====
    anthropic_api_key: str = ""
    chat_llm_model: str = "claude-3-5-haiku-20241022"
    chat_llm_max_tokens: int = 2000
    chat_llm_temperature: float = 0.2
    chat_llm_timeout_seconds: int = 60
    chat_llm_max_retries: int = 2  # Retries after the first attempt
    chat_llm_retry_base_delay_seconds: float = 2.0

    # ===== CONTEXT =====
    chat_max_context_chars: int = 60_000
    chat_history_message_count: int = 4
    context_cache_ttl_seconds: int = 30  # 0 disables reuse

    # ===== CITATIONS =====
    citation_top_k: int = 3
    citation_min_similarity: float = 0.05

    # ===== WORKER =====
    worker_id: str = Field(default="", validate_default=True)  # host name plus pid when empty
    worker_concurrency: int = 4
    claim_timeout_seconds: int = 600
    max_processing_attempts: int = 3
    # in-flight messages still running this long after stop() are cancelled and unclaimed
    worker_shutdown_timeout_seconds: float = 30.0

    # ===== OBSERVABILITY =====
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: Path = Path("logs")
    metrics_port: int = 0  # 0 disables the Prometheus exporter

    # Celery (stale/failed message sweep)
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"
    sweep_interval_seconds: int = 300

    @field_validator("worker_id")
    @classmethod
    def _fill_worker_id(cls, value: str) -> str:
        return value or _default_worker_id()

    @field_validator("storage_backend", "change_feed_backend")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("chat_llm_max_retries")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("worker_concurrency", "max_processing_attempts")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


# Global settings instance
settings = Settings()
