"""Reference backend used by the test-suite and `dashboard-client devserver`."""

from __future__ import annotations

from dashboard_client.devserver.app import BackendState, DevUser, create_app, parse_users

__all__ = ["BackendState", "DevUser", "create_app", "parse_users"]
