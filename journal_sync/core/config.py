"""
Configuration settings for Journal Sync Service.

Uses pydantic-settings for environment variable loading.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Service
    service_name: str = "journal-sync"
    environment: str = "development"  # development, staging, production, test
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8002

    # Database
    database_url: str = "postgresql://localhost:5432/journal_sync"
    database_pool_size: int = 10

    # API Keys (comma-separated list of valid keys)
    api_keys: str = ""

    # CORS (comma-separated list of allowed origins)
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # Logging
    log_level: str = "INFO"

    # Conflict handling
    conflict_window_seconds: int = 300
    device_priority_threshold: int = 5
    default_conflict_strategy: str = "lastWriteWins"

    # Batch sync
    batch_size: int = 100
    batch_max_concurrency: int = 10
    batch_timeout_ms: int = 30000
    max_batch_operations: int = 10000

    # Object storage (MinIO / S3)
    s3_endpoint_url: Optional[str] = "http://minio:9000"
    s3_access_key: str = "minioadmin"
    s3_secret_key: str = "minioadmin"
    s3_region: str = "us-east-1"
    s3_bucket: str = "journiary"
    presigned_url_expiry_seconds: int = 3600

    # Monitoring
    monitoring_max_metrics: int = 10000
    monitoring_max_alerts: int = 1000
    slow_operation_ms: int = 5000

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into list."""
        if not self.api_keys:
            return []
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into list."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
