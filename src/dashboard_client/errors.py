from __future__ import annotations

from typing import Any

import httpx

GENERIC_FAILURE = "An unexpected error occurred"
NETWORK_FAILURE = (
    "Network error: Unable to connect to server. Please check your internet connection."
)


class DashboardClientError(Exception):
    """Base for every failure this package lets cross its public operations."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = str(message)
        self.status = status


class TokenUnavailable(DashboardClientError):
    """Acquisition ran out of sources (cookie, body) or the token endpoint failed."""


class AuthRejected(DashboardClientError):
    """A mutating request was still rejected after the one forced refresh and retry."""

    def __init__(self, message: str, *, response: httpx.Response) -> None:
        super().__init__(message, status=response.status_code)
        self.response = response


class SessionProbeFailed(DashboardClientError):
    """The "who am I" probe failed for a reason other than a definitive 401."""


class LoginFailed(DashboardClientError):
    """Server-reported credential failure; `message` is the server's text when available."""


class BackendUnavailable(DashboardClientError):
    """Transport-level failure (connect error, timeout) on an ordinary request."""


def error_message_from_body(response: httpx.Response) -> str | None:
    """
    Pull the human-readable failure text out of a JSON error body.

    Accepts both `{"detail": ...}` (DRF / FastAPI) and `{"error": ...}`.
    """
    try:
        data: Any = response.json()
    except Exception:
        return None
    if not isinstance(data, dict):
        return None
    for key in ("error", "detail", "message"):
        val = data.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return None


def describe_failure(failure: BaseException | httpx.Response) -> str:
    """
    Map a failure to the message a user should see.

    Mirrors the response interceptor of the dashboard's browser client so that
    CLI and library users get the same wording.
    """
    if isinstance(failure, AuthRejected):
        return describe_failure(failure.response)
    if isinstance(failure, (BackendUnavailable, httpx.TransportError)):
        return NETWORK_FAILURE
    if isinstance(failure, httpx.Response):
        status = int(failure.status_code)
        if status == 401:
            return "Authentication failed: Please check your username and password"
        if status == 403:
            return "Access forbidden: You do not have permission to access this resource"
        if status >= 500:
            return "Server error: Please try again later"
        return error_message_from_body(failure) or GENERIC_FAILURE
    if isinstance(failure, DashboardClientError):
        return failure.message or GENERIC_FAILURE
    return str(failure) or GENERIC_FAILURE
