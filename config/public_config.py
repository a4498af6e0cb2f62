from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- backend location ---
    api_base_url: str = Field(default="http://localhost:8000", alias="DASHBOARD_API_BASE_URL")
    http_timeout_s: float = Field(default=10.0, alias="DASHBOARD_HTTP_TIMEOUT_S")

    # --- endpoint contract ---
    token_path: str = Field(default="/api/csrf/", alias="DASHBOARD_TOKEN_PATH")
    login_path: str = Field(default="/api/auth/login/", alias="DASHBOARD_LOGIN_PATH")
    current_user_path: str = Field(default="/api/auth/user/", alias="DASHBOARD_CURRENT_USER_PATH")
    logout_path: str = Field(default="/api/auth/logout/", alias="DASHBOARD_LOGOUT_PATH")
    health_path: str = Field(default="/api/health/", alias="DASHBOARD_HEALTH_PATH")

    # --- anti-forgery token transport ---
    token_cookie: str = Field(default="csrftoken", alias="DASHBOARD_TOKEN_COOKIE")
    session_cookie: str = Field(default="sessionid", alias="DASHBOARD_SESSION_COOKIE")
    token_header: str = Field(default="X-CSRFToken", alias="DASHBOARD_TOKEN_HEADER")
    # Comma-separated JSON keys that may carry the token in the token-endpoint body.
    token_body_fields: str = Field(default="csrf_token,token", alias="DASHBOARD_TOKEN_BODY_FIELDS")
    # Cross-origin deployments cannot see the token cookie; read the body and cache it instead.
    cookies_observable: bool = Field(default=True, alias="DASHBOARD_COOKIES_OBSERVABLE")

    # --- acquisition backoff (delay = min(cap, base * 2**attempt)) ---
    token_poll_attempts: int = Field(default=3, alias="DASHBOARD_TOKEN_POLL_ATTEMPTS")
    token_poll_base_s: float = Field(default=0.1, alias="DASHBOARD_TOKEN_POLL_BASE_S")
    token_poll_cap_s: float = Field(default=1.0, alias="DASHBOARD_TOKEN_POLL_CAP_S")
    # 0 disables token expiry on the client side.
    token_max_age_s: float = Field(default=3600.0, alias="DASHBOARD_TOKEN_MAX_AGE_S")

    # --- session revalidation ---
    revalidate_interval_s: float = Field(default=15 * 60, alias="DASHBOARD_REVALIDATE_INTERVAL_S")

    # --- stale-token discriminator ---
    csrf_failure_header: str = Field(default="X-CSRF-Failure", alias="DASHBOARD_CSRF_FAILURE_HEADER")
    csrf_failure_marker: str = Field(default="csrf", alias="DASHBOARD_CSRF_FAILURE_MARKER")

    # --- client-side storage ---
    # Unset => in-memory storage only (nothing survives the process).
    state_dir: Path | None = Field(default=None, alias="DASHBOARD_STATE_DIR")
    storage_file_name: str = Field(default="client_state.json", alias="DASHBOARD_STORAGE_FILE")

    # --- logging ---
    # Unset => log to stderr only.
    log_dir: Path | None = Field(default=None, alias="DASHBOARD_LOG_DIR")
    log_level: str = Field(default="INFO", alias="DASHBOARD_LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="DASHBOARD_LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="DASHBOARD_LOG_BACKUP_COUNT")

    # --- reference backend (devserver) ---
    dev_host: str = Field(default="127.0.0.1", alias="DASHBOARD_DEV_HOST")
    dev_port: int = Field(default=8000, alias="DASHBOARD_DEV_PORT")
    dev_cookie_secure: bool = Field(default=False, alias="DASHBOARD_DEV_COOKIE_SECURE")

    def token_body_field_list(self) -> list[str]:
        return [f.strip() for f in (self.token_body_fields or "").split(",") if f.strip()]

    def storage_path(self) -> Path | None:
        if self.state_dir is None:
            return None
        return Path(self.state_dir).resolve() / self.storage_file_name
