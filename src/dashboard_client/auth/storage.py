from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import httpx

from dashboard_client.utils.locks import file_lock
from dashboard_client.utils.log import logger

TOKEN_KEY = "csrf_token"
COOKIES_KEY = "cookies"


class ClientStorage:
    """
    Small key/value store for client-side state (the browser's localStorage).

    With a path, every write is persisted atomically to a JSON file; without
    one, state lives in memory for the lifetime of the object.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path).resolve() if path is not None else None
        self._data: dict[str, Any] = {}
        if self.path is not None:
            self._data = self._read_file()

    def _lock(self):
        assert self.path is not None
        return file_lock(self.path.with_suffix(self.path.suffix + ".lock"))

    def _read_file(self) -> dict[str, Any]:
        assert self.path is not None
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as ex:
            logger.warning("client_storage_unreadable", path=str(self.path), error=str(ex))
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock():
            fd, tmp = tempfile.mkstemp(prefix=".client_state.", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._data, f, indent=2, sort_keys=True)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
            # holds session cookies
            os.chmod(self.path, 0o600)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def keys(self) -> list[str]:
        return sorted(self._data.keys())

    def clear(self) -> None:
        self._data = {}
        if self.path is None:
            return
        with self._lock():
            self.path.unlink(missing_ok=True)
        logger.info("client_storage_cleared", path=str(self.path))


def save_cookie_jar(storage: ClientStorage, cookies: httpx.Cookies) -> int:
    items = [
        {
            "name": c.name,
            "value": c.value,
            "domain": c.domain,
            "path": c.path,
        }
        for c in cookies.jar
        if c.value is not None
    ]
    storage.set(COOKIES_KEY, items)
    return len(items)


def restore_cookie_jar(storage: ClientStorage, cookies: httpx.Cookies) -> int:
    items = storage.get(COOKIES_KEY) or []
    n = 0
    for it in items if isinstance(items, list) else []:
        if not isinstance(it, dict) or not it.get("name"):
            continue
        cookies.set(
            str(it["name"]),
            str(it.get("value") or ""),
            domain=str(it.get("domain") or ""),
            path=str(it.get("path") or "/"),
        )
        n += 1
    return n
