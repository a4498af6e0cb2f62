from __future__ import annotations

import uuid
from typing import Any

import httpx

from dashboard_client.auth.acquirer import TokenAcquirer
from dashboard_client.errors import AuthRejected, BackendUnavailable, describe_failure
from dashboard_client.utils.log import logger, request_id_var

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
_TRUTHY = {"1", "true", "yes", "on"}


def is_csrf_rejection(
    response: httpx.Response,
    *,
    failure_header: str = "X-CSRF-Failure",
    marker: str = "csrf",
) -> bool:
    """
    True only for a 403 that blames the anti-forgery token.

    Either the server says so explicitly (`X-CSRF-Failure: 1`) or the JSON error
    text mentions the marker ("CSRF Failed: CSRF token missing or incorrect.").
    Every other 403 is a real authorization failure and must not be retried.
    """
    if response.status_code != 403:
        return False
    flag = str(response.headers.get(failure_header) or "").strip().lower()
    if flag in _TRUTHY:
        return True
    try:
        data = response.json()
    except ValueError:
        return False
    if not isinstance(data, dict):
        return False
    needle = str(marker or "").lower()
    for key in ("detail", "error"):
        val = data.get(key)
        if isinstance(val, str) and needle and needle in val.lower():
            return True
    return False


class AuthenticatedRequestSender:
    """
    Sends requests on the shared client with credentials attached.

    Mutating methods also carry the anti-forgery token; a stale-token 403 gets
    exactly one forced refresh and one resend, never more.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        acquirer: TokenAcquirer,
        *,
        token_header: str = "X-CSRFToken",
        failure_header: str = "X-CSRF-Failure",
        failure_marker: str = "csrf",
    ) -> None:
        self._http = http
        self._acquirer = acquirer
        self.token_header = str(token_header)
        self.failure_header = str(failure_header)
        self.failure_marker = str(failure_marker)

    @classmethod
    def from_settings(
        cls, http: httpx.AsyncClient, acquirer: TokenAcquirer, settings: Any
    ) -> AuthenticatedRequestSender:
        return cls(
            http,
            acquirer,
            token_header=settings.token_header,
            failure_header=settings.csrf_failure_header,
            failure_marker=settings.csrf_failure_marker,
        )

    def is_rejection(self, response: httpx.Response) -> bool:
        return is_csrf_rejection(
            response, failure_header=self.failure_header, marker=self.failure_marker
        )

    def _attach_credentials(self, request: httpx.Request) -> None:
        # httpx renders the Cookie header when the request is built; re-render it
        # from the live jar so a refreshed token cookie goes out with the retry.
        request.headers.pop("Cookie", None)
        self._http.cookies.set_cookie_header(request)

    def _attach_token(self, request: httpx.Request, token: str) -> None:
        request.headers[self.token_header] = token
        self._attach_credentials(request)

    async def _transmit(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self._http.send(request)
        except httpx.HTTPError as ex:
            logger.warning(
                "request_transport_failed",
                method=request.method,
                path=request.url.path,
                error=str(ex),
            )
            raise BackendUnavailable(describe_failure(ex)) from ex

    async def send(
        self, request: httpx.Request, *, raise_on_rejection: bool = False
    ) -> httpx.Response:
        rid_token = request_id_var.set(uuid.uuid4().hex[:12])
        try:
            return await self._send(request, raise_on_rejection=raise_on_rejection)
        finally:
            request_id_var.reset(rid_token)

    async def _send(self, request: httpx.Request, *, raise_on_rejection: bool) -> httpx.Response:
        method = request.method.upper()
        if method in SAFE_METHODS:
            self._attach_credentials(request)
            return await self._transmit(request)

        # Buffer streamed bodies so the one retry can resend them.
        await request.aread()

        token = await self._acquirer.ensure_token()
        self._attach_token(request, token)
        response = await self._transmit(request)
        if not self.is_rejection(response):
            return response

        logger.warning("csrf_rejected_retrying", method=method, path=request.url.path)
        token = await self._acquirer.force_refresh()
        self._attach_token(request, token)
        retry = await self._transmit(request)
        if not self.is_rejection(retry):
            logger.info("csrf_retry_ok", method=method, path=request.url.path, status=retry.status_code)
            return retry

        logger.error("csrf_rejected_final", method=method, path=request.url.path)
        if raise_on_rejection:
            raise AuthRejected(
                "Request rejected: security token is invalid or expired. Please log in again.",
                response=retry,
            )
        return retry

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Any = None,
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
        raise_on_rejection: bool = False,
    ) -> httpx.Response:
        req = self._http.build_request(
            method.upper(), url, json=json, params=params, headers=headers, content=content
        )
        return await self.send(req, raise_on_rejection=raise_on_rejection)
