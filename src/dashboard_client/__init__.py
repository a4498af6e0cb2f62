"""
Client for a session-cookie authenticated dashboard backend.

The public surface is `DashboardClient`; the pieces it wires together
(token acquisition, authenticated sending, session state) live in `dashboard_client.auth`.
"""

from __future__ import annotations

__version__ = "0.1.0"

from dashboard_client.client import DashboardClient  # noqa: E402

__all__ = ["DashboardClient", "__version__"]
