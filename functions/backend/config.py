"""
Configuration and settings for the backup connector service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Cove Data Protection credentials (long-lived; exchanged for a session visa)
    cove_partner: Optional[str] = Field(default=None)
    cove_username: Optional[str] = Field(default=None)
    cove_password: Optional[str] = Field(default=None)

    # Connector instance id; namespaces every shared-store key
    cove_tool_id: str = Field(default="cove")

    cove_api_url: str = Field(default="https://api.backup.management/jsonapi")
    cove_draas_url: str = Field(
        default="https://api.backup.management/draas/actual-statistics/v1"
    )

    # Outbound call budget
    cove_rate_limit_max: int = Field(default=30, ge=1)
    cove_rate_limit_window_ms: int = Field(default=60_000, ge=1000)
    cove_timeout_seconds: float = Field(default=30.0, gt=0)
    cove_max_attempts: int = Field(default=3, ge=1)

    # Shared store (Redis)
    redis_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    @property
    def cove_configured(self) -> bool:
        return bool(self.cove_partner and self.cove_username and self.cove_password)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
