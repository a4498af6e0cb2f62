from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from dashboard_client.auth.cookies import CookieJarReader, clear_cookies
from dashboard_client.auth.storage import TOKEN_KEY, ClientStorage
from dashboard_client.errors import TokenUnavailable
from dashboard_client.utils.log import logger, token_fingerprint
from dashboard_client.utils.retry import SleepFn, poll_with_backoff


@dataclass(slots=True)
class _Acquisition:
    task: asyncio.Task[str] | None = None
    # refresh generation current when the GET went out; None until then
    generation: int | None = None

    def older_than(self, generation: int) -> bool:
        return self.generation is not None and self.generation < generation


class TokenAcquirer:
    """
    Owns the anti-forgery token: where it is read from, when it is re-fetched,
    and the single in-flight acquisition every concurrent caller shares.

    Token sources, in order:
      1. the token cookie (only when `cookies_observable`)
      2. ClientStorage, holding a token taken from a response body

    Acquisition: one credentialed GET of the token endpoint, then the cookie is
    polled with capped exponential backoff (the jar may be written after the
    body is read), then the body token is used as a fallback.

    Every force_refresh() bumps a generation counter. A forced caller that joins
    an acquisition whose GET went out under an older generation (for example
    before a login changed the session) waits for it and then starts one more,
    so it never returns a token minted for the previous session.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        token_path: str,
        cookie_name: str = "csrftoken",
        body_fields: Sequence[str] = ("csrf_token", "token"),
        cookies_observable: bool = True,
        storage: ClientStorage | None = None,
        poll_attempts: int = 3,
        poll_base_s: float = 0.1,
        poll_cap_s: float = 1.0,
        max_age_s: float = 3600.0,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._http = http
        self._cookies = CookieJarReader(http.cookies)
        self._storage = storage if storage is not None else ClientStorage()
        self.token_path = str(token_path)
        self.cookie_name = str(cookie_name)
        self.body_fields = tuple(str(f) for f in body_fields if f)
        self.cookies_observable = bool(cookies_observable)
        self.poll_attempts = max(0, int(poll_attempts))
        self.poll_base_s = float(poll_base_s)
        self.poll_cap_s = float(poll_cap_s)
        self.max_age_s = float(max_age_s)
        self._clock = clock
        self._sleep = sleep

        self._inflight: _Acquisition | None = None
        self._confirmed_at: float | None = None
        self._acquisitions = 0
        self._generation = 0
        self.last_status: int | None = None
        self.last_error: str | None = None

    @classmethod
    def from_settings(
        cls,
        http: httpx.AsyncClient,
        settings: Any,
        *,
        storage: ClientStorage | None = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
    ) -> TokenAcquirer:
        return cls(
            http,
            token_path=settings.token_path,
            cookie_name=settings.token_cookie,
            body_fields=settings.token_body_field_list(),
            cookies_observable=settings.cookies_observable,
            storage=storage,
            poll_attempts=settings.token_poll_attempts,
            poll_base_s=settings.token_poll_base_s,
            poll_cap_s=settings.token_poll_cap_s,
            max_age_s=settings.token_max_age_s,
            clock=clock,
            sleep=sleep,
        )

    # --- read-only views ---

    @property
    def acquisitions(self) -> int:
        """Number of token-endpoint round trips started by this instance."""
        return self._acquisitions

    @property
    def confirmed_at(self) -> float | None:
        return self._confirmed_at

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    def token_source(self) -> str | None:
        if self.cookies_observable and self._cookies.read(self.cookie_name):
            return "cookie"
        if self._storage.get(TOKEN_KEY):
            return "storage"
        return None

    def get_cached_token(self) -> str | None:
        """Current token without any network call, or None."""
        if self.cookies_observable:
            tok = self._cookies.read(self.cookie_name)
            if tok:
                return tok
        tok = self._storage.get(TOKEN_KEY)
        return str(tok) if tok else None

    def is_fresh(self) -> bool:
        # A token we did not fetch ourselves (restored jar, cookie set by another
        # response) has no timestamp; trust it and let a 403 retry correct it.
        if self.max_age_s <= 0 or self._confirmed_at is None:
            return True
        return (self._clock() - self._confirmed_at) < self.max_age_s

    # --- operations ---

    async def ensure_token(self) -> str:
        return await self._obtain(force=False)

    async def force_refresh(self) -> str:
        return await self._obtain(force=True)

    def reset(self) -> None:
        """Forget the current token everywhere the client keeps it (logout)."""
        self._invalidate()
        logger.info("token_reset")

    async def _obtain(self, *, force: bool) -> str:
        if force:
            self._generation += 1
        else:
            cached = self.get_cached_token()
            if cached and self.is_fresh():
                return cached
        wanted = self._generation if force else 0

        while True:
            current = self._inflight
            if current is not None and current.task is not None and current.task.done():
                # only reachable if the task was cancelled before its first step
                current = self._inflight = None
            if current is None:
                # A missing, expired or rejected token is replaced, never reused.
                # Never while an acquisition is polling: it would delete the cookie it waits for.
                self._invalidate()
                current = self._inflight = self._start()
            else:
                logger.debug("token_acquire_joined", forced=force)

            try:
                # Shield: a caller giving up must not cancel the acquisition other callers share.
                token = await asyncio.shield(current.task)
            except TokenUnavailable:
                if current.older_than(wanted):
                    continue
                raise
            if not current.older_than(wanted):
                return token
            logger.info("token_acquire_superseded", generation=current.generation, wanted=wanted)

    def _start(self) -> _Acquisition:
        attempt = _Acquisition()
        attempt.task = asyncio.create_task(self._acquire(attempt), name="token-acquire")
        return attempt

    def _invalidate(self) -> None:
        if self.cookies_observable:
            clear_cookies(self._http.cookies, [self.cookie_name])
        self._storage.remove(TOKEN_KEY)
        self._confirmed_at = None

    def _token_from_body(self, response: httpx.Response) -> str | None:
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        for field in self.body_fields:
            val = data.get(field)
            if isinstance(val, str) and val.strip():
                return val.strip()
        return None

    def _remember(self, token: str, *, source: str) -> None:
        self._confirmed_at = self._clock()
        if source == "body":
            self._storage.set(TOKEN_KEY, token)
        else:
            # The cookie is authoritative; drop any older body token.
            self._storage.remove(TOKEN_KEY)

    async def _acquire(self, attempt: _Acquisition) -> str:
        self._acquisitions += 1
        try:
            logger.info(
                "token_acquire_begin",
                endpoint=self.token_path,
                cookies_observable=self.cookies_observable,
            )
            attempt.generation = self._generation
            try:
                response = await self._http.get(self.token_path, headers={"Accept": "application/json"})
            except httpx.HTTPError as ex:
                self.last_status, self.last_error = None, str(ex)
                logger.warning("token_acquire_failed", endpoint=self.token_path, error=str(ex))
                raise TokenUnavailable(f"Failed to reach token endpoint: {ex}") from ex

            self.last_status, self.last_error = response.status_code, None
            if not response.is_success:
                logger.warning(
                    "token_acquire_failed",
                    endpoint=self.token_path,
                    status=response.status_code,
                )
                raise TokenUnavailable(
                    f"Failed to get CSRF token: {response.status_code}",
                    status=response.status_code,
                )

            body_token = self._token_from_body(response)
            token: str | None = None
            source = ""
            checks = 0
            if self.cookies_observable:
                token, checks = await poll_with_backoff(
                    lambda: self._cookies.read(self.cookie_name),
                    attempts=self.poll_attempts,
                    base=self.poll_base_s,
                    cap=self.poll_cap_s,
                    sleep=self._sleep,
                    on_miss=lambda attempt, delay: logger.debug(
                        "token_cookie_pending", attempt=attempt, delay_s=delay
                    ),
                )
                source = "cookie"
            if not token and body_token:
                token, source = body_token, "body"
            if not token:
                logger.error(
                    "token_unavailable",
                    endpoint=self.token_path,
                    cookie_checks=checks,
                    cookie_names=self._cookies.names(),
                )
                raise TokenUnavailable("CSRF token not found in cookies or response")

            self._remember(token, source=source)
            logger.info(
                "token_acquired",
                source=source,
                cookie_checks=checks,
                token_fp=token_fingerprint(token),
            )
            return token
        finally:
            if self._inflight is attempt:
                self._inflight = None
