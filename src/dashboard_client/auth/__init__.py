from __future__ import annotations

from dashboard_client.auth.acquirer import TokenAcquirer
from dashboard_client.auth.cookies import CookieJarReader, clear_cookies, parse_cookie
from dashboard_client.auth.sender import SAFE_METHODS, AuthenticatedRequestSender, is_csrf_rejection
from dashboard_client.auth.session import LoginResult, SessionController, SessionState, UserIdentity
from dashboard_client.auth.storage import ClientStorage, restore_cookie_jar, save_cookie_jar

__all__ = [
    "SAFE_METHODS",
    "AuthenticatedRequestSender",
    "ClientStorage",
    "CookieJarReader",
    "LoginResult",
    "SessionController",
    "SessionState",
    "TokenAcquirer",
    "UserIdentity",
    "clear_cookies",
    "is_csrf_rejection",
    "parse_cookie",
    "restore_cookie_jar",
    "save_cookie_jar",
]
