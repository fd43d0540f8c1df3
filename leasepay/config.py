"""Application configuration settings."""
from __future__ import annotations

import enum
import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "0") in {
    "1",
    "true",
    "yes",
    "True",
    "YES",
}


class AmountMismatchPolicy(str, enum.Enum):
    """Which amount hits the tenant ledger when the provider confirms a different figure."""

    REQUESTED = "requested"
    CONFIRMED = "confirmed"


class Settings(BaseSettings):
    """Environment configuration for the leasepay backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///leasepay.db"
    LOG_LEVEL: str = "INFO"
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    # --- M-Pesa global defaults (lowest precedence) -----------------------
    mpesa_environment: str = "sandbox"
    mpesa_consumer_key: str | None = None
    mpesa_consumer_secret: str | None = None
    mpesa_passkey: str | None = None
    mpesa_shortcode: str | None = None
    mpesa_party_b: str | None = None
    mpesa_callback_base_url: str | None = None
    mpesa_account_reference_prefix: str = "RENT"
    MPESA_TIMEOUT_SECONDS: float = 30.0

    # --- Webhook shared secret (current + rotation slot) -----------------
    mpesa_webhook_token: str | None = None
    mpesa_webhook_token_next: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MPESA_WEBHOOK_TOKEN_NEXT", "mpesa_webhook_token_next"),
    )

    # --- Reconciliation --------------------------------------------------
    AMOUNT_MISMATCH_POLICY: AmountMismatchPolicy = AmountMismatchPolicy.REQUESTED
    CURRENCY: str = "KES"

    # --- Scheduler / stale transaction sweep ------------------------------
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED
    STALE_INITIATED_MINUTES: int = 15
    STALE_PENDING_MINUTES: int = 120

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator("mpesa_webhook_token", "mpesa_webhook_token_next")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty webhook tokens to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("AMOUNT_MISMATCH_POLICY", mode="before")
    @classmethod
    def _normalize_policy(cls, value: str | AmountMismatchPolicy) -> str | AmountMismatchPolicy:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def webhook_tokens(self) -> list[str]:
        """Return the configured webhook tokens, current one first."""

        return [t for t in (self.mpesa_webhook_token, self.mpesa_webhook_token_next) if t]


class AppInfo(BaseModel):
    name: str = "leasepay-backend"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "SCHEDULER_ENABLED",
    "AmountMismatchPolicy",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
