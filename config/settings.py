"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion.  All keys use
the ``SAFEMAP_`` prefix; list-valued settings (contacts, voice phrases)
are read as JSON.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


# Default emergency phrases per speech-recognition language.
_DEFAULT_VOICE_PHRASES: dict[str, list[str]] = {
    "en": ["help me", "emergency", "i need help", "call police", "danger", "unsafe"],
    "hi": ["मुझे मदद चाहिए", "आपातकाल", "सहायता", "पुलिस बुलाओ", "खतरा", "असुरक्षित"],
}


class Settings(BaseSettings):
    """Central configuration for the SafeMap emergency service.

    Environment variables are loaded from a ``.env`` file when present.
    Durations are nominal seconds; ``time_scale`` converts them to
    wall-clock seconds (1.0 in production).
    """

    model_config = SettingsConfigDict(
        env_prefix="SAFEMAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000"

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    # ── Activation ─────────────────────────────────────────────────────
    countdown_seconds: int = Field(default=3, ge=0)
    time_scale: float = Field(default=1.0, gt=0)
    stealth_mode: bool = False

    # ── Notification sequencing ────────────────────────────────────────
    authority_name: str = "Emergency Services (112)"
    authority_phone: str = "112"
    notification_base_delay_seconds: float = Field(default=4.0, ge=0)
    notification_gap_seconds: float = Field(default=1.0, ge=0)
    notification_max_attempts: int = Field(default=3, ge=1)
    notification_backoff_seconds: float = Field(default=0.5, ge=0)
    notification_backoff_max_seconds: float = Field(default=8.0, ge=0)

    # ── Dispatch ───────────────────────────────────────────────────────
    dispatch_webhook_url: str = ""
    dispatch_timeout_seconds: float = 10.0

    # ── Contacts / escalation ──────────────────────────────────────────
    user_display_name: str = "A SafeMap user"
    emergency_contacts: list[dict[str, str]] = Field(
        default_factory=lambda: [
            {"name": "Mom", "phone": "+91-9876543210", "relationship": "family"},
        ]
    )
    secondary_contacts: list[dict[str, str]] = Field(default_factory=list)
    escalation_after_seconds: int | None = Field(default=None, ge=1)

    # ── Triggers ───────────────────────────────────────────────────────
    hotkey: str = "ctrl+shift+e"
    voice_phrases: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in _DEFAULT_VOICE_PHRASES.items()}
    )
    voice_language: str = "en"
    shake_threshold: float = Field(default=25.0, gt=0)  # m/s^2
    shake_peaks: int = Field(default=3, ge=1)
    shake_window_seconds: float = Field(default=1.5, gt=0)

    # ── Location ───────────────────────────────────────────────────────
    location_fix_timeout_seconds: float = 5.0

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Module-level singleton; import ``settings`` everywhere.
settings = Settings()
