from __future__ import annotations

import asyncio

import httpx

from dashboard_client.devserver.app import CSRF_FAILED_DETAIL, create_app, parse_users


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


async def _token(c: httpx.AsyncClient) -> str:
    r = await c.get("/api/csrf/")
    assert r.status_code == 200
    assert r.cookies.get("csrftoken") == r.json()["csrf_token"]
    return r.json()["csrf_token"]


def test_parse_users() -> None:
    users = parse_users("alice:secret, bob:pw:staff,broken,:x")
    assert sorted(users) == ["alice", "bob"]
    assert users["bob"].is_staff and not users["alice"].is_staff
    assert users["alice"].id == 1


def test_mutation_without_token_is_csrf_rejection() -> None:
    async def main():
        async with _client(create_app()) as c:
            return await c.post("/api/auth/login/", json={"username": "alice", "password": "secret"})

    r = asyncio.run(main())
    assert r.status_code == 403
    assert r.headers["X-CSRF-Failure"] == "1"
    assert r.json() == {"detail": CSRF_FAILED_DETAIL}


def test_login_binds_token_to_session() -> None:
    async def main():
        app = create_app()
        async with _client(app) as c:
            anon = await _token(c)
            bad = await c.post(
                "/api/auth/login/",
                json={"username": "alice", "password": "wrong"},
                headers={"X-CSRFToken": anon},
            )
            ok = await c.post(
                "/api/auth/login/",
                json={"username": "alice", "password": "secret"},
                headers={"X-CSRFToken": anon},
            )
            stale = await c.post("/api/tasks/", json={"title": "x"}, headers={"X-CSRFToken": anon})
            fresh = await _token(c)
            good = await c.post("/api/tasks/", json={"title": "x"}, headers={"X-CSRFToken": fresh})
            me = await c.get("/api/auth/user/")
            return bad, ok, stale, good, me

    bad, ok, stale, good, me = asyncio.run(main())
    assert bad.status_code == 401 and bad.json() == {"error": "Invalid credentials"}
    assert ok.status_code == 200 and ok.json()["user"]["username"] == "alice"
    assert stale.status_code == 403 and stale.headers.get("X-CSRF-Failure") == "1"
    assert good.status_code == 201
    assert me.json()["user"]["username"] == "alice"


def test_header_must_match_cookie() -> None:
    async def main():
        async with _client(create_app()) as c:
            await _token(c)
            other = create_app().state.backend.issue_token("-")
            return await c.post(
                "/api/auth/login/",
                json={"username": "alice", "password": "secret"},
                headers={"X-CSRFToken": other},
            )

    assert asyncio.run(main()).status_code == 403


def test_permission_denial_is_not_flagged_as_csrf() -> None:
    async def main():
        async with _client(create_app()) as c:
            tok = await _token(c)
            await c.post(
                "/api/auth/login/",
                json={"username": "alice", "password": "secret"},
                headers={"X-CSRFToken": tok},
            )
            tok = await _token(c)
            return await c.post("/api/admin/reset/", headers={"X-CSRFToken": tok})

    r = asyncio.run(main())
    assert r.status_code == 403
    assert "X-CSRF-Failure" not in r.headers
    assert "csrf" not in r.text.lower()


def test_token_only_in_body_when_cookie_disabled() -> None:
    async def main():
        async with _client(create_app(set_token_cookie=False)) as c:
            r = await c.get("/api/csrf/")
            return r, c.cookies.get("csrftoken")

    r, cookie = asyncio.run(main())
    assert r.json()["csrf_token"]
    assert cookie is None
