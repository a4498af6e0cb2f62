from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def token_body_field_list(self) -> list[str]:
        return self.public.token_body_field_list()

    def storage_path(self):
        return self.public.storage_path()


def _is_insecure_default(secret: SecretStr, marker: str) -> bool:
    try:
        return secret.get_secret_value() == marker
    except Exception:
        return False


def _strict_secrets() -> bool:
    return bool(int(os.environ.get("STRICT_SECRETS", "0") or "0"))


def _validate_public(s: Settings) -> None:
    p = s.public
    base = str(p.api_base_url or "").strip().lower()
    if not (base.startswith("http://") or base.startswith("https://")):
        raise ConfigError(f"DASHBOARD_API_BASE_URL must be an http(s) URL, got {p.api_base_url!r}")
    if int(p.token_poll_attempts) < 0:
        raise ConfigError("DASHBOARD_TOKEN_POLL_ATTEMPTS must be >= 0")
    if float(p.token_poll_base_s) < 0 or float(p.token_poll_cap_s) < 0:
        raise ConfigError("Token poll delays must be >= 0")
    if float(p.revalidate_interval_s) <= 0:
        raise ConfigError("DASHBOARD_REVALIDATE_INTERVAL_S must be > 0")
    if float(p.http_timeout_s) <= 0:
        raise ConfigError("DASHBOARD_HTTP_TIMEOUT_S must be > 0")
    if float(p.token_max_age_s) < 0:
        raise ConfigError("DASHBOARD_TOKEN_MAX_AGE_S must be >= 0")
    if not p.token_body_field_list() and not bool(p.cookies_observable):
        raise ConfigError(
            "DASHBOARD_TOKEN_BODY_FIELDS is empty while DASHBOARD_COOKIES_OBSERVABLE=0; "
            "no token source would remain"
        )


def _validate_secrets(s: Settings) -> None:
    """
    Hard-fail only when explicitly requested.

    The devserver ships dev-insecure defaults; they only matter if someone exposes it.
    """
    weak: list[str] = []
    if _is_insecure_default(s.secret.dev_csrf_secret, "dev-insecure-csrf-secret"):
        weak.append("DEV_CSRF_SECRET")
    if _is_insecure_default(s.secret.dev_session_secret, "dev-insecure-session-secret"):
        weak.append("DEV_SESSION_SECRET")

    if weak:
        if _strict_secrets():
            raise ConfigError(
                "Unsafe security configuration detected: "
                + ", ".join(sorted(set(weak)))
                + ". Set them via environment variables or `.env.secrets`."
            )
        logging.getLogger("dashboard_client").debug(
            "weak_secrets_detected",
            extra={"weak": sorted(set(weak)), "strict_secrets": False},
        )

    base = str(s.public.api_base_url or "").strip().lower()
    if base.startswith("http://") and not any(
        h in base for h in ("://localhost", "://127.", "://[::1]", "://testserver")
    ):
        logging.getLogger("dashboard_client").warning(
            "plaintext_backend_warning",
            extra={"api_base_url": s.public.api_base_url},
        )


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    return {
        "strict_secrets": _strict_secrets(),
        "public": pub_s,
        "secrets": sec,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    public = PublicConfig()
    secret = SecretConfig()
    s = Settings(public=public, secret=secret)
    _validate_public(s)
    _validate_secrets(s)
    return s

