"""
Vidya Core Settings — publication & engagement backend.

Every value can be overridden from the environment (prefix ``VIDYA_``) or a
local ``.env`` file.
"""
from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8",
        env_prefix="VIDYA_", case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "Vidya"
    app_version: str = "1.2.0"
    debug: bool = False
    log_level: str = "INFO"
    api_prefix: str = "/api/v1"
    cors_origins: List[str] = ["*"]

    # ── PostgreSQL ───────────────────────────────────────────────────────
    db_host: str = "postgres"
    db_port: int = 5432
    db_user: str = "vidya"
    db_password: str = "vidya_secret"
    db_name: str = "vidya"
    # Full SQLAlchemy URL; wins over the discrete fields above when set
    database_dsn: Optional[str] = None
    db_echo: bool = False

    @property
    def database_url(self) -> str:
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # ── Redis / Celery ───────────────────────────────────────────────────
    redis_url: str = "redis://redis:6379/0"
    celery_broker_url: str = "redis://redis:6379/1"
    celery_result_backend: str = "redis://redis:6379/2"

    # ── MinIO / S3 (blob store) ──────────────────────────────────────────
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = "vidya_minio"
    minio_secret_key: str = "vidya_minio_secret"
    minio_bucket: str = "vidya-media"
    minio_secure: bool = False
    # Base used to build public URLs; defaults to the endpoint itself
    media_public_base_url: Optional[str] = None
    max_upload_bytes: int = 2 * 1024 * 1024 * 1024

    # ── Moderation ───────────────────────────────────────────────────────
    # Account that receives upload_review notifications. Falls back to the
    # earliest moderator account when unset or not a moderator.
    moderation_recipient_id: Optional[str] = None
    release_scheduled_interval_seconds: int = 60

    # ── Engagement ───────────────────────────────────────────────────────
    view_debounce_seconds: float = 1.0
    view_reconcile_interval_seconds: int = 900

    # ── Notifications ────────────────────────────────────────────────────
    notification_queue_size: int = 10000
    notification_page_size: int = 50

    # ── Realtime ─────────────────────────────────────────────────────────
    realtime_buffer_size: int = 1000
    realtime_replay_limit: int = 500
    sse_poll_interval_seconds: float = 0.5
    sse_heartbeat_seconds: float = 15.0

    # ── Client ───────────────────────────────────────────────────────────
    client_timeout_seconds: float = 10.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
