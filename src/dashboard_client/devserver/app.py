from __future__ import annotations

import hmac
import secrets
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from itsdangerous import BadSignature, URLSafeTimedSerializer

from dashboard_client.config import get_settings
from dashboard_client.utils.log import logger

ANON_SID = "-"
CSRF_FAILED_DETAIL = "CSRF Failed: CSRF token missing or incorrect."
SESSION_MAX_AGE_S = 60 * 60 * 24 * 7


@dataclass(slots=True)
class DevUser:
    id: int
    username: str
    password: str
    is_staff: bool = False

    def public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": f"{self.username}@example.test",
            "first_name": self.username.capitalize(),
            "last_name": "",
            "is_staff": self.is_staff,
        }


def parse_users(raw: str) -> dict[str, DevUser]:
    """`alice:secret,bob:pw:staff` -> users keyed by name."""
    users: dict[str, DevUser] = {}
    for item in str(raw or "").split(","):
        parts = [p.strip() for p in item.strip().split(":")]
        if len(parts) < 2 or not parts[0]:
            continue
        is_staff = len(parts) > 2 and parts[2].lower() in {"staff", "admin"}
        users[parts[0]] = DevUser(
            id=len(users) + 1, username=parts[0], password=parts[1], is_staff=is_staff
        )
    return users


@dataclass(slots=True)
class BackendState:
    """Everything the reference backend remembers; tests inspect it directly."""

    users: dict[str, DevUser]
    csrf: URLSafeTimedSerializer
    sessions_ser: URLSafeTimedSerializer
    token_cookie: str = "csrftoken"
    session_cookie: str = "sessionid"
    token_header: str = "X-CSRFToken"
    cookie_secure: bool = False
    set_token_cookie: bool = True
    include_token_in_body: bool = True
    # sid -> username
    sessions: dict[str, str] = field(default_factory=dict)
    # sid -> token generation; bumping it makes every outstanding token stale
    generations: dict[str, int] = field(default_factory=dict)
    counters: Counter = field(default_factory=Counter)
    tasks: dict[int, dict[str, Any]] = field(default_factory=dict)
    next_task_id: int = 1

    def issue_token(self, sid: str) -> str:
        return self.csrf.dumps({"sid": sid, "g": self.generations.get(sid, 0), "n": secrets.token_hex(8)})

    def rotate(self, sid: str | None = None) -> None:
        """Invalidate outstanding tokens for one session id, or for all of them."""
        sids = [sid] if sid is not None else list({ANON_SID, *self.sessions, *self.generations})
        for s in sids:
            self.generations[s] = self.generations.get(s, 0) + 1
        logger.info("devserver_tokens_rotated", sids=len(sids))

    def sid_for(self, request: Request) -> str:
        raw = request.cookies.get(self.session_cookie)
        if not raw:
            return ANON_SID
        try:
            sid = str(self.sessions_ser.loads(raw, max_age=SESSION_MAX_AGE_S))
        except BadSignature:
            return ANON_SID
        return sid if sid in self.sessions else ANON_SID

    def user_for(self, request: Request) -> DevUser | None:
        sid = self.sid_for(request)
        if sid == ANON_SID:
            return None
        return self.users.get(self.sessions[sid])


def _backend(request: Request) -> BackendState:
    return request.app.state.backend


def _csrf_failed(state: BackendState, reason: str) -> HTTPException:
    state.counters["csrf_rejected"] += 1
    logger.info("devserver_csrf_rejected", reason=reason)
    return HTTPException(status_code=403, detail=CSRF_FAILED_DETAIL, headers={"X-CSRF-Failure": "1"})


def verify_csrf(request: Request) -> None:
    """
    Double-submit check plus a session binding.

    The header must match the cookie (when the cookie exists), carry a valid
    signature, and belong to the caller's current session and generation.
    """
    state = _backend(request)
    header = request.headers.get(state.token_header) or ""
    if not header:
        raise _csrf_failed(state, "missing_header")
    cookie = request.cookies.get(state.token_cookie)
    if cookie is not None and not hmac.compare_digest(cookie, header):
        raise _csrf_failed(state, "cookie_mismatch")
    try:
        data = state.csrf.loads(header)
    except BadSignature:
        raise _csrf_failed(state, "bad_signature") from None
    sid = state.sid_for(request)
    if not isinstance(data, dict) or data.get("sid") != sid:
        raise _csrf_failed(state, "wrong_session")
    if data.get("g") != state.generations.get(sid, 0):
        raise _csrf_failed(state, "stale_generation")


def _require_user(request: Request) -> DevUser:
    user = _backend(request).user_for(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication credentials were not provided.")
    return user


def _set_cookie(state: BackendState, response: Response, name: str, value: str, *, httponly: bool) -> None:
    response.set_cookie(
        name,
        value,
        httponly=httponly,
        samesite="lax",
        secure=state.cookie_secure,
        max_age=SESSION_MAX_AGE_S,
        path="/",
    )


router = APIRouter(prefix="/api")


@router.get("/health/")
async def health(request: Request) -> dict[str, str]:
    _backend(request).counters["health"] += 1
    return {"status": "ok"}


@router.get("/csrf/")
async def csrf_token(request: Request, response: Response) -> dict[str, Any]:
    state = _backend(request)
    state.counters["csrf"] += 1
    token = state.issue_token(state.sid_for(request))
    if state.set_token_cookie:
        # readable by the client on purpose: it echoes it back in the header
        _set_cookie(state, response, state.token_cookie, token, httponly=False)
    return {"csrf_token": token} if state.include_token_in_body else {"detail": "CSRF cookie set"}


@router.post("/auth/login/")
async def login(request: Request, response: Response) -> Any:
    state = _backend(request)
    state.counters["login"] += 1
    verify_csrf(request)
    try:
        body = await request.json()
    except ValueError:
        body = {}
    username = str((body or {}).get("username") or "")
    password = str((body or {}).get("password") or "")
    user = state.users.get(username)
    if user is None or not hmac.compare_digest(user.password.encode(), password.encode()):
        logger.info("devserver_login_failed", username=username)
        return JSONResponse(status_code=401, content={"error": "Invalid credentials"})

    sid = secrets.token_urlsafe(16)
    state.sessions[sid] = user.username
    # The pre-login token names the anonymous sid, so it stops verifying now.
    _set_cookie(state, response, state.session_cookie, state.sessions_ser.dumps(sid), httponly=True)
    logger.info("devserver_login_ok", username=user.username)
    return {"success": True, "user": user.public()}


@router.get("/auth/user/")
async def current_user(request: Request) -> dict[str, Any]:
    state = _backend(request)
    state.counters["user"] += 1
    return {"user": _require_user(request).public()}


@router.post("/auth/logout/")
async def logout(request: Request, response: Response) -> dict[str, Any]:
    state = _backend(request)
    state.counters["logout"] += 1
    verify_csrf(request)
    sid = state.sid_for(request)
    if sid != ANON_SID:
        state.sessions.pop(sid, None)
        state.generations.pop(sid, None)
    response.delete_cookie(state.session_cookie, path="/")
    response.delete_cookie(state.token_cookie, path="/")
    return {"success": True}


@router.get("/tasks/")
async def list_tasks(request: Request) -> dict[str, Any]:
    state = _backend(request)
    state.counters["tasks_list"] += 1
    _require_user(request)
    return {"results": list(state.tasks.values())}


@router.post("/tasks/", status_code=201)
async def create_task(request: Request) -> dict[str, Any]:
    state = _backend(request)
    state.counters["tasks_create"] += 1
    user = _require_user(request)
    verify_csrf(request)
    try:
        body = await request.json()
    except ValueError:
        body = {}
    title = str((body or {}).get("title") or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="title is required")
    task = {"id": state.next_task_id, "title": title, "owner": user.username, "done": False}
    state.tasks[task["id"]] = task
    state.next_task_id += 1
    return task


@router.delete("/tasks/{task_id}/", status_code=204)
async def delete_task(task_id: int, request: Request) -> Response:
    state = _backend(request)
    state.counters["tasks_delete"] += 1
    _require_user(request)
    verify_csrf(request)
    if state.tasks.pop(task_id, None) is None:
        raise HTTPException(status_code=404, detail="Not found.")
    return Response(status_code=204)


@router.post("/admin/reset/")
async def admin_reset(request: Request) -> dict[str, Any]:
    state = _backend(request)
    state.counters["admin_reset"] += 1
    user = _require_user(request)
    verify_csrf(request)
    if not user.is_staff:
        raise HTTPException(status_code=403, detail="You do not have permission to perform this action.")
    n = len(state.tasks)
    state.tasks.clear()
    return {"removed": n}


def create_app(
    *,
    users: dict[str, DevUser] | None = None,
    csrf_secret: str | None = None,
    session_secret: str | None = None,
    cookie_secure: bool | None = None,
    set_token_cookie: bool = True,
    include_token_in_body: bool = True,
) -> FastAPI:
    """
    Reference backend speaking the protocol the client expects.

    `set_token_cookie=False` models a cross-origin deployment where the client
    cannot see the token cookie and must use the body token.
    """
    s = get_settings()
    app = FastAPI(title="dashboard-client devserver")
    app.state.backend = BackendState(
        users=users if users is not None else parse_users(s.dev_users.get_secret_value()),
        csrf=URLSafeTimedSerializer(csrf_secret or s.dev_csrf_secret.get_secret_value(), salt="csrf"),
        sessions_ser=URLSafeTimedSerializer(
            session_secret or s.dev_session_secret.get_secret_value(), salt="session"
        ),
        token_cookie=s.token_cookie,
        session_cookie=s.session_cookie,
        token_header=s.token_header,
        cookie_secure=bool(s.dev_cookie_secure if cookie_secure is None else cookie_secure),
        set_token_cookie=set_token_cookie,
        include_token_in_body=include_token_in_body,
    )
    app.include_router(router)
    return app
