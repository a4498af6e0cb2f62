from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecretConfig(BaseSettings):
    """
    Sensitive config.

    This module is safe to commit: it contains *no* secrets, only loading logic.
    Real secret values should come from:
      - environment variables (preferred)
      - optional local `.env.secrets` file (developer convenience)
    """

    model_config = SettingsConfigDict(
        env_file=".env.secrets",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # CLI login defaults (optional; the CLI prompts when unset)
    username: str | None = Field(default=None, alias="DASHBOARD_USERNAME")
    password: SecretStr | None = Field(default=None, alias="DASHBOARD_PASSWORD")

    # --- reference backend secrets (defaults preserve dev behavior) ---
    dev_csrf_secret: SecretStr = Field(
        default=SecretStr("dev-insecure-csrf-secret"), alias="DEV_CSRF_SECRET"
    )
    dev_session_secret: SecretStr = Field(
        default=SecretStr("dev-insecure-session-secret"), alias="DEV_SESSION_SECRET"
    )
    # Comma-separated `username:password` pairs accepted by the devserver.
    dev_users: SecretStr = Field(default=SecretStr("alice:secret"), alias="DEV_USERS")
