"""Application configuration for the signaling service and peer clients."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    ice_servers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ])

    offer_timeout_seconds: float = Field(default=12.0, gt=0)
    ice_restart_window_seconds: float = Field(default=5.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_base_delay_seconds: float = Field(default=1.0, ge=0)
    reconnect_max_delay_seconds: float = Field(default=16.0, ge=0)
    stats_interval_seconds: float = Field(default=1.0, gt=0)

    default_resolution: str = Field(default="720p")
    default_fps: int = Field(default=30)
    default_bitrate: int = Field(default=2000, description="Advisory bitrate in kbps")

    @field_validator("cors_allow_origins", "ice_servers", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
