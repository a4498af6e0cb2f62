from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from dashboard_client.auth.sender import is_csrf_rejection
from dashboard_client.errors import AuthRejected, BackendUnavailable, describe_failure
from tests._helpers.backend import csrf_forbidden, mock_client, token_response


class _Server:
    """
    Issues tok-1, tok-2, ... from the token endpoint and accepts a mutation only
    when its header token is in `valid`.
    """

    def __init__(self, valid: set[str] | None = None, *, forbid: bool = False) -> None:
        self.valid = valid if valid is not None else {"tok-1"}
        self.forbid = forbid
        self.issued = 0
        self.seen: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/csrf/":
            self.issued += 1
            return token_response(f"tok-{self.issued}")
        self.seen.append(request)
        if request.method in {"GET", "HEAD", "OPTIONS"}:
            return httpx.Response(200, json={"results": []})
        if self.forbid:
            return httpx.Response(403, json={"detail": "You do not have permission to perform this action."})
        if request.headers.get("X-CSRFToken") in self.valid:
            return httpx.Response(201, json={"ok": True})
        return csrf_forbidden()


def _run(server: _Server, fn):
    async def main():
        async with mock_client(server) as dc:
            return await fn(dc)

    return asyncio.run(main())


def test_safe_methods_carry_no_token() -> None:
    server = _Server()

    async def go(dc):
        r = await dc.request("GET", "/api/tasks/")
        return r, dc.tokens.acquisitions

    r, acquisitions = _run(server, go)
    assert r.status_code == 200
    assert acquisitions == 0
    assert "X-CSRFToken" not in server.seen[0].headers


def test_mutation_carries_token_header_and_cookie() -> None:
    server = _Server()
    r = _run(server, lambda dc: dc.request("POST", "/api/tasks/", json={"title": "a"}))
    assert r.status_code == 201
    sent = server.seen[0]
    assert sent.headers["X-CSRFToken"] == "tok-1"
    assert "csrftoken=tok-1" in sent.headers["Cookie"]


def test_stale_token_is_refreshed_and_retried_once() -> None:
    server = _Server(valid={"tok-2"})
    r = _run(server, lambda dc: dc.request("POST", "/api/tasks/", json={"title": "a"}))
    assert r.status_code == 201
    assert [req.headers["X-CSRFToken"] for req in server.seen] == ["tok-1", "tok-2"]
    # the retry goes out with the refreshed cookie and the same body
    assert "csrftoken=tok-2" in server.seen[1].headers["Cookie"]
    assert json.loads(server.seen[1].content) == {"title": "a"}
    assert server.issued == 2


def test_second_rejection_is_returned_without_another_retry() -> None:
    server = _Server(valid=set())
    r = _run(server, lambda dc: dc.request("DELETE", "/api/tasks/1/"))
    assert r.status_code == 403
    assert len(server.seen) == 2
    assert server.issued == 2


def test_second_rejection_can_raise() -> None:
    server = _Server(valid=set())

    async def go(dc):
        with pytest.raises(AuthRejected) as ei:
            await dc.request("PUT", "/api/tasks/1/", json={}, raise_on_rejection=True)
        return ei.value

    err = _run(server, go)
    assert err.status == 403
    assert err.response.headers["X-CSRF-Failure"] == "1"
    assert describe_failure(err).startswith("Access forbidden")
    assert len(server.seen) == 2


def test_plain_403_is_not_retried() -> None:
    server = _Server(forbid=True)
    r = _run(server, lambda dc: dc.request("POST", "/api/admin/reset/"))
    assert r.status_code == 403
    assert len(server.seen) == 1
    assert server.issued == 1


def test_transport_failure_becomes_backend_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    async def main():
        async with mock_client(handler) as dc:
            with pytest.raises(BackendUnavailable) as ei:
                await dc.request("GET", "/api/tasks/")
            return ei.value

    err = asyncio.run(main())
    assert describe_failure(err).startswith("Network error")


def test_rejection_discriminator() -> None:
    req = httpx.Request("POST", "http://testserver/x")
    assert is_csrf_rejection(csrf_forbidden())
    assert is_csrf_rejection(httpx.Response(403, json={"detail": "CSRF Failed: Origin checking failed."}))
    assert is_csrf_rejection(httpx.Response(403, json={"error": "csrf token expired"}))
    assert is_csrf_rejection(httpx.Response(403, headers={"X-CSRF-Failure": "true"}, text="nope"))
    assert not is_csrf_rejection(httpx.Response(403, json={"detail": "Forbidden"}))
    assert not is_csrf_rejection(httpx.Response(403, text="<html>forbidden</html>", request=req))
    assert not is_csrf_rejection(httpx.Response(401, json={"detail": "CSRF Failed"}))
    assert not is_csrf_rejection(httpx.Response(403, headers={"X-CSRF-Failure": "0"}, json=["csrf"]))
