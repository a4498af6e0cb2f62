from __future__ import annotations

import asyncio

import httpx
import pytest

from dashboard_client.auth.session import SessionState, UserIdentity
from dashboard_client.config import get_settings
from dashboard_client.errors import LoginFailed, SessionProbeFailed
from tests._helpers.backend import FakeClock, devserver_client, login_alice, mock_client, token_response


def test_probe_without_session_is_anonymous() -> None:
    async def main():
        dc, backend = devserver_client()
        async with dc:
            assert dc.is_loading
            user = await dc.probe_session()
            return user, dc.state, backend.counters["user"], dc.session.revalidation_active

    user, state, calls, timer = asyncio.run(main())
    assert user is None
    assert state is SessionState.ANONYMOUS
    assert calls == 1
    assert timer is False


def test_probe_is_throttled_while_recently_validated() -> None:
    clock = FakeClock()

    async def main():
        dc, backend = devserver_client(clock=clock)
        async with dc:
            await login_alice(dc)
            user = await dc.probe_session()
            skipped = backend.counters["user"]
            clock.advance(get_settings().revalidate_interval_s + 1)
            again = await dc.probe_session()
            return user, again, skipped, backend.counters["user"]

    user, again, skipped, after = asyncio.run(main())
    assert user is not None and user.username == "alice"
    assert again == user
    assert skipped == 0
    assert after == 1


def test_login_success_rotates_token() -> None:
    async def main():
        dc, backend = devserver_client()
        async with dc:
            before = await dc.ensure_token()
            result = await dc.login("alice", "secret")
            after = dc.tokens.get_cached_token()
            created = await dc.request("POST", "/api/tasks/", json={"title": "after login"})
            return before, after, result, created.status_code, dict(backend.counters)

    before, after, result, status, counters = asyncio.run(main())
    assert result.success and result.warning is None
    assert result.user is not None
    assert result.user.display_name == "Alice"
    assert after and after != before
    assert status == 201
    # one fetch before login, one rotation after; no rejected request
    assert counters["csrf"] == 2
    assert counters.get("csrf_rejected", 0) == 0


def test_login_failure_reports_server_message() -> None:
    async def main():
        dc, _ = devserver_client()
        async with dc:
            result = await dc.login("alice", "wrong")
            return result, dc.state

    result, state = asyncio.run(main())
    assert result.success is False
    assert result.error == "Invalid credentials"
    assert state is SessionState.UNKNOWN


def test_login_requires_credentials_without_network() -> None:
    async def main():
        dc, backend = devserver_client()
        async with dc:
            result = await dc.login("  ", "")
            return result, sum(backend.counters.values())

    result, calls = asyncio.run(main())
    assert result.success is False
    assert calls == 0


def test_login_or_raise() -> None:
    async def main():
        dc, _ = devserver_client()
        async with dc:
            with pytest.raises(LoginFailed) as ei:
                await dc.login_or_raise("bob", "nope")
            assert ei.value.message == "Invalid credentials"
            return await dc.login_or_raise("bob", "hunter2")

    user = asyncio.run(main())
    assert user.is_staff is True


def test_logout_clears_state_cookies_and_timer() -> None:
    async def main():
        dc, backend = devserver_client()
        async with dc:
            await login_alice(dc)
            assert dc.session.revalidation_active
            await dc.logout()
            out = {
                "state": dc.state,
                "user": dc.user,
                "timer": dc.session.revalidation_active,
                "cookies": dc.cookies.names(),
                "token": dc.tokens.get_cached_token(),
                "sessions": dict(backend.sessions),
            }
            out["probe"] = await dc.probe_session()
            return out

    out = asyncio.run(main())
    assert out["state"] is SessionState.ANONYMOUS
    assert out["user"] is None
    assert out["timer"] is False
    assert out["cookies"] == []
    assert out["token"] is None
    assert out["sessions"] == {}
    assert out["probe"] is None


def test_listeners_see_transitions() -> None:
    seen: list[tuple[SessionState, str | None]] = []

    async def main():
        dc, _ = devserver_client()
        async with dc:
            unsubscribe = dc.subscribe(lambda state, user: seen.append((state, user.username if user else None)))
            await login_alice(dc)
            await dc.logout()
            unsubscribe()
            await login_alice(dc)

    asyncio.run(main())
    assert seen == [(SessionState.AUTHENTICATED, "alice"), (SessionState.ANONYMOUS, None)]


def test_probe_failure_keeps_previous_state() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    async def main():
        async with mock_client(handler) as dc:
            with pytest.raises(SessionProbeFailed) as ei:
                await dc.probe_session()
            return ei.value, dc.state

    err, state = asyncio.run(main())
    assert err.status == 502
    assert state is SessionState.UNKNOWN


def test_probe_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def main():
        async with mock_client(handler) as dc:
            with pytest.raises(SessionProbeFailed) as ei:
                await dc.probe_session()
            return ei.value

    assert asyncio.run(main()).message.startswith("Network error")


def test_probe_result_superseded_by_login() -> None:
    async def main():
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/csrf/":
                return token_response("tok-1")
            if request.url.path == "/api/auth/user/":
                await release.wait()
                return httpx.Response(401, json={"detail": "Not authenticated"})
            return httpx.Response(200, json={"success": True, "user": {"id": 7, "username": "carol"}})

        async with mock_client(handler) as dc:
            probe = asyncio.create_task(dc.probe_session())
            await asyncio.sleep(0)
            result = await dc.login("carol", "pw")
            release.set()
            user = await probe
            return result, user, dc.state

    result, user, state = asyncio.run(main())
    assert result.success
    assert user is not None and user.username == "carol"
    assert state is SessionState.AUTHENTICATED


def test_revalidation_runs_and_stops(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DASHBOARD_REVALIDATE_INTERVAL_S", "0.02")
    get_settings.cache_clear()

    async def main():
        dc, backend = devserver_client()
        async with dc:
            await login_alice(dc)
            await asyncio.sleep(0.15)
            ticks = backend.counters["user"]
            await dc.logout()
            stopped_at = backend.counters["user"]
            await asyncio.sleep(0.1)
            return ticks, stopped_at, backend.counters["user"]

    ticks, stopped_at, final = asyncio.run(main())
    assert ticks >= 1
    assert final == stopped_at


def test_revalidation_notices_server_side_logout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DASHBOARD_REVALIDATE_INTERVAL_S", "0.02")
    get_settings.cache_clear()

    async def main():
        dc, backend = devserver_client()
        async with dc:
            await login_alice(dc)
            backend.sessions.clear()
            for _ in range(50):
                if dc.state is SessionState.ANONYMOUS:
                    break
                await asyncio.sleep(0.01)
            return dc.state, dc.session.revalidation_active

    state, active = asyncio.run(main())
    assert state is SessionState.ANONYMOUS
    assert active is False


def test_user_identity_payload_shapes() -> None:
    nested = UserIdentity.from_payload({"user": {"id": 1, "username": "alice", "first_name": "Alice", "last_name": "Liddell"}})
    flat = UserIdentity.from_payload({"id": 2, "username": "bob", "is_staff": True})
    assert nested is not None and nested.display_name == "Alice Liddell"
    assert flat is not None and flat.display_name == "bob" and flat.is_staff
    assert UserIdentity.from_payload({"user": {}}) is None
    assert UserIdentity.from_payload(["alice"]) is None
    assert flat.to_dict()["display_name"] == "bob"


def test_login_rotation_outlasts_refresh_sent_before_login() -> None:
    async def main():
        login_sent, login_gate = asyncio.Event(), asyncio.Event()
        csrf_sent, csrf_gate = asyncio.Event(), asyncio.Event()
        issued = 0
        mutation_tokens: list[str | None] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal issued
            path = request.url.path
            if path == "/api/csrf/":
                issued += 1
                prefix = "auth" if "sessionid=" in request.headers.get("Cookie", "") else "anon"
                if issued == 2:
                    csrf_sent.set()
                    await csrf_gate.wait()
                return token_response(f"{prefix}-{issued}")
            if path == "/api/auth/login/":
                login_sent.set()
                await login_gate.wait()
                return httpx.Response(
                    200,
                    json={"success": True, "user": {"id": 1, "username": "alice"}},
                    headers={"Set-Cookie": "sessionid=s-1; Path=/"},
                )
            mutation_tokens.append(request.headers.get("X-CSRFToken"))
            return httpx.Response(201, json={"id": 1})

        async with mock_client(handler) as dc:
            await dc.ensure_token()
            login = asyncio.create_task(dc.login("alice", "secret"))
            await login_sent.wait()
            refresh = asyncio.create_task(dc.force_refresh())
            await csrf_sent.wait()
            login_gate.set()
            while not dc.is_authenticated:
                await asyncio.sleep(0)
            csrf_gate.set()
            result = await login
            await refresh
            cached = dc.tokens.get_cached_token()
            created = await dc.request("POST", "/api/tasks/", json={"title": "x"})
            return result, cached, issued, created.status_code, mutation_tokens

    result, cached, issued, status, mutation_tokens = asyncio.run(main())
    assert result.success and result.warning is None
    assert cached == "auth-3"
    assert issued == 3
    assert status == 201
    assert mutation_tokens == ["auth-3"]


def test_timer_tick_skips_probe_made_just_before_it() -> None:
    clock = FakeClock()
    interval = get_settings().revalidate_interval_s

    async def main():
        tick = asyncio.Event()
        delays: list[float] = []

        async def sleep(delay: float) -> None:
            delays.append(delay)
            await tick.wait()
            tick.clear()

        dc, backend = devserver_client(clock=clock, sleep=sleep)
        async with dc:
            await login_alice(dc)
            # let the timer schedule its first sleep
            await asyncio.sleep(0)
            clock.advance(interval - 1)
            await dc.probe_session(force=True)
            manual = backend.counters["user"]
            clock.advance(1)
            tick.set()
            for _ in range(5):
                await asyncio.sleep(0)
            return manual, backend.counters["user"], delays, dc.state

    manual, after_tick, delays, state = asyncio.run(main())
    assert manual == 1
    assert after_tick == 1
    assert delays == [interval, interval - 1]
    assert state is SessionState.AUTHENTICATED
