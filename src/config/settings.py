"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal
from urllib.parse import urlsplit

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Signaling transport
    signaling_url: str = Field(
        default="ws://localhost:8000/ws/",
        description="WebSocket URL of the coordinating (matchmaking) service.",
    )
    signaling_ping_interval: float | None = Field(default=20.0)
    signaling_ping_timeout: float | None = Field(default=20.0)

    # Identity / credentials
    credential_strategy: Literal["remote", "local"] = Field(
        default="remote",
        description="remote: token issued by the identity service; local: random UUID generated here.",
    )
    identity_base_url: str = Field(default="http://localhost:8000")
    identity_timeout_seconds: float = Field(default=10.0, gt=0.0)
    credential_file: Path | None = Field(
        default=None,
        description="Optional file used to persist the bearer token across restarts.",
    )

    # Session timing
    offer_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay between Matched and the caller's offer, lets both sides finish local setup.",
    )
    in_call_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Client-side delay between Matched and InCall. No server confirmation is involved.",
    )
    reconnect_delay_seconds: float = Field(default=3.0, ge=0.0)

    # Peer connection
    ice_servers: list[str] = Field(
        default_factory=lambda: [
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
        ]
    )

    # Local media capture (passed to aiortc's MediaPlayer)
    media_audio: bool = Field(default=True)
    media_video: bool = Field(default=True)
    media_audio_device: str = Field(default="default")
    media_audio_format: str = Field(default="pulse", description="e.g. pulse, alsa, avfoundation, dshow")
    media_video_device: str = Field(default="/dev/video0")
    media_video_format: str = Field(default="v4l2")
    media_video_size: str = Field(default="640x480")

    @field_validator("signaling_url")
    @classmethod
    def ensure_ws_scheme(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("signaling_url must use ws:// or wss://")
        parts = urlsplit(value)
        try:
            parts.port
        except ValueError as exc:
            raise ValueError(f"signaling_url has an invalid port: {exc}") from exc
        if not parts.hostname:
            raise ValueError("signaling_url has no host")
        return value

    @field_validator("credential_file")
    @classmethod
    def ensure_credential_dir(cls, value: Path | None) -> Path | None:
        if value is not None:
            value.parent.mkdir(parents=True, exist_ok=True)
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
