"""Configuration module using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Logging
    log_level: str = "INFO"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: list[str] = ["*"]

    # Policies
    policies_path: str | None = None  # JSON policy file; built-in policies when unset

    # Token verification (unset secret = every caller is partitioned by IP)
    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"
    jwt_audience: str | None = None
    jwt_issuer: str | None = None

    # Caller address
    trust_forwarded_for: bool = False  # Only behind a proxy that sets X-Forwarded-For

    # Admission controller
    lock_stripes: int = 64
    idle_eviction_windows: int = 10  # Evict quota state after this many idle windows
    sweep_interval_seconds: float = 30.0

    @property
    def policies_file(self) -> Path | None:
        """Policy file path, or None when built-in policies apply."""
        if not self.policies_path:
            return None
        return Path(self.policies_path)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
