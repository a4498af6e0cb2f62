from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

import httpx

from dashboard_client.auth.acquirer import TokenAcquirer
from dashboard_client.auth.cookies import clear_cookies
from dashboard_client.auth.sender import AuthenticatedRequestSender
from dashboard_client.auth.storage import ClientStorage
from dashboard_client.errors import (
    DashboardClientError,
    LoginFailed,
    SessionProbeFailed,
    TokenUnavailable,
    describe_failure,
    error_message_from_body,
)
from dashboard_client.utils.log import logger, set_username
from dashboard_client.utils.retry import SleepFn

LOGIN_FAILED_GENERIC = "Login failed. Please try again."
ROTATION_WARNING = (
    "Signed in, but the security token could not be refreshed; "
    "the next change may need one automatic retry."
)


class SessionState(str, Enum):
    UNKNOWN = "unknown"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True, slots=True)
class UserIdentity:
    id: int | str | None
    username: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    is_staff: bool = False

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.username

    @classmethod
    def from_payload(cls, data: Any) -> UserIdentity | None:
        """Accepts `{"user": {...}}` or the bare user object; None if no username."""
        if isinstance(data, dict) and isinstance(data.get("user"), dict):
            data = data["user"]
        if not isinstance(data, dict):
            return None
        username = str(data.get("username") or "").strip()
        if not username:
            return None
        return cls(
            id=data.get("id"),
            username=username,
            email=str(data.get("email") or ""),
            first_name=str(data.get("first_name") or ""),
            last_name=str(data.get("last_name") or ""),
            is_staff=bool(data.get("is_staff") or False),
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["display_name"] = self.display_name
        return d


@dataclass(frozen=True, slots=True)
class LoginResult:
    success: bool
    error: str | None = None
    user: UserIdentity | None = None
    # set when login worked but the post-login token rotation did not
    warning: str | None = None


Listener = Callable[[SessionState, "UserIdentity | None"], None]


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class SessionController:
    """
    Owns who the user is: Unknown -> Authenticated(identity) | Anonymous.

    Login/logout are the only places the token is rotated or dropped, and they do
    it through TokenAcquirer's public operations. While authenticated, a timer
    re-probes the session every `revalidate_interval_s`.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        acquirer: TokenAcquirer,
        sender: AuthenticatedRequestSender,
        *,
        login_path: str,
        current_user_path: str,
        logout_path: str,
        clear_cookie_names: Iterable[str] = ("sessionid", "csrftoken"),
        storage: ClientStorage | None = None,
        revalidate_interval_s: float = 15 * 60,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._http = http
        self._acquirer = acquirer
        self._sender = sender
        self.login_path = str(login_path)
        self.current_user_path = str(current_user_path)
        self.logout_path = str(logout_path)
        self.clear_cookie_names = tuple(clear_cookie_names)
        self._storage = storage if storage is not None else ClientStorage()
        self.revalidate_interval_s = float(revalidate_interval_s)
        self._clock = clock
        self._sleep = sleep

        self._state = SessionState.UNKNOWN
        self._user: UserIdentity | None = None
        self._validated_at: float | None = None
        # Bumped on login/logout so a probe that started earlier cannot overwrite them.
        self._epoch = 0
        self._timer: asyncio.Task[None] | None = None
        self._listeners: list[Listener] = []

    @classmethod
    def from_settings(
        cls,
        http: httpx.AsyncClient,
        acquirer: TokenAcquirer,
        sender: AuthenticatedRequestSender,
        settings: Any,
        *,
        storage: ClientStorage | None = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
    ) -> SessionController:
        return cls(
            http,
            acquirer,
            sender,
            login_path=settings.login_path,
            current_user_path=settings.current_user_path,
            logout_path=settings.logout_path,
            clear_cookie_names=(settings.session_cookie, settings.token_cookie),
            storage=storage,
            revalidate_interval_s=settings.revalidate_interval_s,
            clock=clock,
            sleep=sleep,
        )

    # --- state (read-only for everyone else) ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user(self) -> UserIdentity | None:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    @property
    def is_loading(self) -> bool:
        return self._state is SessionState.UNKNOWN

    @property
    def validated_at(self) -> float | None:
        return self._validated_at

    @property
    def revalidation_active(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_state(self, state: SessionState, user: UserIdentity | None) -> None:
        changed = state is not self._state or user != self._user
        self._state = state
        self._user = user
        set_username(user.username if user else None)
        if not changed:
            return
        logger.info("session_state_changed", state=state.value)
        for listener in list(self._listeners):
            try:
                listener(state, user)
            except Exception as ex:
                logger.warning("session_listener_failed", error=str(ex))

    # --- revalidation timer ---

    def start_revalidation(self) -> None:
        if self.revalidation_active:
            return
        self._timer = asyncio.create_task(self._revalidate_loop(), name="session-revalidate")

    def _cancel_timer(self) -> asyncio.Task[None] | None:
        task = self._timer
        self._timer = None
        if task is None or task is asyncio.current_task():
            # the loop sees the state change and exits by itself
            return None
        task.cancel()
        return task

    async def stop_revalidation(self) -> None:
        task = self._cancel_timer()
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    def _until_due(self) -> float:
        if self._validated_at is None:
            return self.revalidate_interval_s
        elapsed = self._clock() - self._validated_at
        return max(0.0, self.revalidate_interval_s - elapsed)

    async def _revalidate_loop(self) -> None:
        while self._state is SessionState.AUTHENTICATED:
            # a manual probe in between pushes the next check back
            await self._sleep(self._until_due())
            if self._state is not SessionState.AUTHENTICATED:
                break
            try:
                await self.probe_session()
            except SessionProbeFailed as ex:
                # stay logged in; the next tick tries again
                logger.warning("session_revalidate_failed", error=ex.message, status=ex.status)
        logger.debug("session_revalidate_stopped")

    # --- operations ---

    async def probe_session(self, *, force: bool = False) -> UserIdentity | None:
        """
        Ask the backend who we are.

        Skipped (no network) while authenticated and confirmed less than
        `revalidate_interval_s` ago, unless forced.
        """
        if (
            not force
            and self._state is SessionState.AUTHENTICATED
            and self._validated_at is not None
            and (self._clock() - self._validated_at) < self.revalidate_interval_s
        ):
            logger.debug("session_probe_skipped")
            return self._user

        epoch = self._epoch
        try:
            response = await self._sender.request("GET", self.current_user_path)
        except DashboardClientError as ex:
            logger.warning("session_probe_failed", error=ex.message)
            raise SessionProbeFailed(describe_failure(ex)) from ex

        if epoch != self._epoch:
            logger.info("session_probe_superseded")
            return self._user

        if response.status_code == 401:
            self._validated_at = None
            self._cancel_timer()
            self._set_state(SessionState.ANONYMOUS, None)
            return None

        if not response.is_success:
            logger.warning("session_probe_failed", status=response.status_code)
            raise SessionProbeFailed(
                f"Session check failed: {response.status_code}", status=response.status_code
            )

        user = UserIdentity.from_payload(_json_or_none(response))
        if user is None:
            logger.warning("session_probe_malformed", status=response.status_code)
            raise SessionProbeFailed(
                "Session check returned no user", status=response.status_code
            )

        self._validated_at = self._clock()
        self._set_state(SessionState.AUTHENTICATED, user)
        self.start_revalidation()
        return user

    async def login(self, username: str, password: str) -> LoginResult:
        username = str(username or "").strip()
        if not username or not password:
            return LoginResult(success=False, error="Username and password are required")

        logger.info("login_attempt", username=username)
        try:
            # the sender acquires the token first: login is itself a protected POST
            response = await self._sender.request(
                "POST", self.login_path, json={"username": username, "password": password}
            )
        except TokenUnavailable as ex:
            logger.warning("login_token_unavailable", error=ex.message)
            return LoginResult(success=False, error=ex.message)
        except DashboardClientError as ex:
            logger.warning("login_transport_failed", error=ex.message)
            return LoginResult(success=False, error=describe_failure(ex))

        if not response.is_success:
            message = error_message_from_body(response) or LOGIN_FAILED_GENERIC
            logger.info("login_failed", status=response.status_code)
            return LoginResult(success=False, error=message)

        user = UserIdentity.from_payload(_json_or_none(response)) or UserIdentity(
            id=None, username=username
        )
        self._epoch += 1
        self._validated_at = self._clock()
        self._set_state(SessionState.AUTHENTICATED, user)

        # The server binds tokens to the session; the pre-login one is dead now.
        warning = None
        try:
            await self._acquirer.force_refresh()
        except TokenUnavailable as ex:
            warning = ROTATION_WARNING
            logger.warning("login_token_rotation_failed", error=ex.message)

        self.start_revalidation()
        logger.info("login_ok", rotated=warning is None)
        return LoginResult(success=True, user=user, warning=warning)

    async def login_or_raise(self, username: str, password: str) -> UserIdentity:
        result = await self.login(username, password)
        if not result.success or result.user is None:
            raise LoginFailed(result.error or LOGIN_FAILED_GENERIC)
        return result.user

    async def logout(self) -> None:
        # Local state first: the UI must not wait on the network to look logged out.
        self._epoch += 1
        self._validated_at = None
        timer = self._cancel_timer()
        self._set_state(SessionState.ANONYMOUS, None)

        try:
            response = await self._sender.request("POST", self.logout_path)
            if not response.is_success:
                logger.warning("logout_remote_failed", status=response.status_code)
        except DashboardClientError as ex:
            logger.warning("logout_remote_failed", error=ex.message)

        self._acquirer.reset()
        cleared = clear_cookies(self._http.cookies, self.clear_cookie_names)
        self._storage.clear()
        if timer is not None:
            with suppress(asyncio.CancelledError):
                await timer
        logger.info("logout_ok", cleared_cookies=cleared)

    async def aclose(self) -> None:
        await self.stop_revalidation()
