from __future__ import annotations

import pytest

from dashboard_client.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DASHBOARD_API_BASE_URL", "http://testserver")
    # cookie polls must not slow the suite down
    monkeypatch.setenv("DASHBOARD_TOKEN_POLL_BASE_S", "0")
    monkeypatch.setenv("DEV_USERS", "alice:secret,bob:hunter2:staff")
    monkeypatch.setenv("DEV_CSRF_SECRET", "test-csrf-secret-0123456789")
    monkeypatch.setenv("DEV_SESSION_SECRET", "test-session-secret-0123456789")
    for name in (
        "DASHBOARD_STATE_DIR",
        "DASHBOARD_LOG_DIR",
        "DASHBOARD_USERNAME",
        "DASHBOARD_PASSWORD",
        "DASHBOARD_COOKIES_OBSERVABLE",
        "DASHBOARD_REVALIDATE_INTERVAL_S",
        "STRICT_SECRETS",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
