# app/core/settings.py
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MB = 1024 * 1024


class Settings(BaseSettings):
    APP_NAME: str = "media-intake"
    app_env: str = "local"  # local | development | production

    # --- Auth ---
    ADMIN_TOKEN: str = Field("change-me", description="Bearer token for upload/admin routes")

    # --- Storage ---
    STORAGE_BACKEND: str = "local"  # local | s3
    S3_BUCKET: str = "images"
    S3_REGION: str = "us-east-1"
    S3_ENDPOINT_URL: Optional[str] = None  # MinIO: http://minio:9000
    LOCAL_STORAGE_ROOT: str = "./.local_storage"

    # --- Database ---
    database_url: str = "sqlite:///./media_intake.db"

    # --- Chunks ---
    chunk_min_bytes: int = 1
    chunk_max_bytes: int = 10 * MB
    max_total_chunks: int = 100
    max_file_bytes: int = 200 * MB
    adaptive_headroom_ratio: float = 0.02
    adaptive_min_chunk_bytes: int = 256 * 1024

    # --- Sessions ---
    session_idle_timeout_sec: float = 30 * 60
    eviction_interval_sec: float = 5 * 60
    max_recovery_attempts: int = 3

    # --- Memory ---
    # Pressure is classified once, here: share of memory_limit_mb in use.
    memory_limit_mb: int = 2048
    memory_medium_ratio: float = 0.60
    memory_high_ratio: float = 0.75
    memory_critical_ratio: float = 0.90

    # --- Processing ---
    preprocess_cleanup_pause_sec: float = 2.0
    strategy_retry_pause_sec: float = 1.0
    strategy_timeout_sec: float = 60.0

    # --- Write / verify ---
    storage_write_attempts: int = 3
    storage_backoff_base_sec: float = 1.0
    storage_backoff_cap_sec: float = 8.0
    verify_attempts: int = 4
    verify_backoff_base_sec: float = 0.25
    verify_backoff_cap_sec: float = 2.0
    verify_read_bytes: int = 1024
    verify_size_tolerance_ratio: float = 0.001

    # --- Bulk ---
    bulk_max_images: int = 5
    bulk_pause_sec: float = 2.0

    # --- Logging ---
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton Settings instance met simpele env-overrides."""
    s = Settings()
    if s.app_env.lower() == "development":
        s.log_level = "DEBUG"
    return s


settings = get_settings()
