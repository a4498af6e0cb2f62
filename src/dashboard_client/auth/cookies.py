from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import unquote

import httpx


def parse_cookie(raw: str | None, name: str) -> str | None:
    """
    Find `name` in a `k=v; k2=v2` cookie string and return its URL-decoded value.

    Matching is by exact key; the first occurrence wins.
    """
    if not raw or not name:
        return None
    prefix = name + "="
    for part in raw.split(";"):
        item = part.strip()
        if item.startswith(prefix):
            return unquote(item[len(prefix) :])
    return None


class CookieJarReader:
    """
    Read-only view over the client's cookie jar.

    The jar is written by the server (Set-Cookie); this class never mutates it.
    """

    def __init__(self, cookies: httpx.Cookies) -> None:
        self._cookies = cookies

    def cookie_string(self) -> str:
        # Same shape as a browser's document.cookie.
        return "; ".join(f"{c.name}={c.value}" for c in self._cookies.jar if c.value is not None)

    def names(self) -> list[str]:
        return sorted({c.name for c in self._cookies.jar})

    def read(self, name: str) -> str | None:
        return parse_cookie(self.cookie_string(), name)


def clear_cookies(cookies: httpx.Cookies, names: Iterable[str]) -> list[str]:
    """
    Drop the named cookies from every domain/path in the jar.

    Only used at logout; the server should already have expired them.
    Returns the names that were actually present.
    """
    wanted = {str(n) for n in names if n}
    doomed = [c for c in cookies.jar if c.name in wanted]
    for c in doomed:
        cookies.jar.clear(c.domain, c.path, c.name)
    return sorted({c.name for c in doomed})
