from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx

from dashboard_client.auth.acquirer import TokenAcquirer
from dashboard_client.auth.cookies import CookieJarReader
from dashboard_client.auth.sender import AuthenticatedRequestSender
from dashboard_client.auth.session import (
    Listener,
    LoginResult,
    SessionController,
    SessionState,
    UserIdentity,
)
from dashboard_client.auth.storage import ClientStorage
from dashboard_client.config import Settings, get_settings
from dashboard_client.errors import DashboardClientError, TokenUnavailable
from dashboard_client.utils.log import logger, token_fingerprint
from dashboard_client.utils.retry import SleepFn


class DashboardClient:
    """
    One shared HTTP client (with its cookie jar) plus the three auth components
    wired on top of it.

        async with DashboardClient() as dc:
            await dc.probe_session()
            if not dc.is_authenticated:
                await dc.login("alice", "secret")
            r = await dc.request("POST", "/api/tasks/", json={"title": "x"})
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        storage: ClientStorage | None = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        self.base_url = str(base_url or s.api_base_url).rstrip("/")
        self._owns_http = http is None
        if http is None:
            http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=float(s.http_timeout_s),
                transport=transport,
                headers={"Accept": "application/json"},
            )
        self.http = http
        self.storage = storage if storage is not None else ClientStorage(s.storage_path())
        self.cookies = CookieJarReader(http.cookies)

        self.tokens = TokenAcquirer.from_settings(
            http, s, storage=self.storage, clock=clock, sleep=sleep
        )
        self.sender = AuthenticatedRequestSender.from_settings(http, self.tokens, s)
        self.session = SessionController.from_settings(
            http, self.tokens, self.sender, s, storage=self.storage, clock=clock, sleep=sleep
        )

    async def __aenter__(self) -> DashboardClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.session.aclose()
        if self._owns_http:
            await self.http.aclose()

    # --- session views ---

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def user(self) -> UserIdentity | None:
        return self.session.user

    @property
    def is_authenticated(self) -> bool:
        return self.session.is_authenticated

    @property
    def is_loading(self) -> bool:
        return self.session.is_loading

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.session.subscribe(listener)

    # --- delegated operations ---

    async def ensure_token(self) -> str:
        return await self.tokens.ensure_token()

    async def force_refresh(self) -> str:
        return await self.tokens.force_refresh()

    async def send(self, request: httpx.Request, *, raise_on_rejection: bool = False) -> httpx.Response:
        return await self.sender.send(request, raise_on_rejection=raise_on_rejection)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.sender.request(method, url, **kwargs)

    async def probe_session(self, *, force: bool = False) -> UserIdentity | None:
        return await self.session.probe_session(force=force)

    async def login(self, username: str, password: str) -> LoginResult:
        return await self.session.login(username, password)

    async def login_or_raise(self, username: str, password: str) -> UserIdentity:
        return await self.session.login_or_raise(username, password)

    async def logout(self) -> None:
        await self.session.logout()

    # --- diagnostics ---

    async def check_backend(self) -> bool:
        """True when the health endpoint answers 2xx. Never raises."""
        try:
            r = await self.sender.request("GET", self.settings.health_path)
        except DashboardClientError as ex:
            logger.warning("backend_unreachable", error=ex.message)
            return False
        ok = r.is_success
        if not ok:
            logger.warning("backend_unhealthy", status=r.status_code)
        return ok

    async def diagnose(self) -> dict[str, Any]:
        """
        Snapshot of everything that decides whether a protected request will work.

        Token values are reported as fingerprints only.
        """
        report: dict[str, Any] = {
            "base_url": self.base_url,
            "cookies_observable": self.tokens.cookies_observable,
            "token_source": self.tokens.token_source(),
            "token_fp": token_fingerprint(self.tokens.get_cached_token()),
            "token_fresh": self.tokens.is_fresh(),
            "session_state": self.state.value,
            "backend_reachable": await self.check_backend(),
        }
        fetched_before = self.tokens.acquisitions
        try:
            tok = await self.tokens.ensure_token()
            report["token_after_ensure_fp"] = token_fingerprint(tok)
        except TokenUnavailable as ex:
            report["token_after_ensure_fp"] = None
            report["token_error"] = ex.message
        # Status of the last token-endpoint round trip; None if none happened yet.
        report["token_fetched"] = self.tokens.acquisitions > fetched_before
        report["token_endpoint_status"] = self.tokens.last_status
        if self.tokens.last_error:
            report["token_endpoint_error"] = self.tokens.last_error
        report["cookie_names"] = self.cookies.names()
        logger.info("diagnose_done", backend_reachable=report["backend_reachable"])
        return report
