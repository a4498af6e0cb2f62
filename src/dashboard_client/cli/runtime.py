from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from dashboard_client.auth.storage import ClientStorage, restore_cookie_jar, save_cookie_jar
from dashboard_client.client import DashboardClient
from dashboard_client.config import get_settings

T = TypeVar("T")


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def run_with_client(ctx: click.Context, fn: Callable[[DashboardClient], Awaitable[T]]) -> T:
    """
    Run one async operation against a fresh client.

    The cookie jar (session + token cookie) is restored from ClientStorage
    before and written back after, so successive invocations share a session.
    Tests pass `obj={"transport": ...}` to route requests to an in-process app.
    """
    obj = ctx.find_root().obj or {}
    s = get_settings()

    async def _main() -> T:
        storage = ClientStorage(s.storage_path())
        async with DashboardClient(
            settings=s,
            base_url=obj.get("base_url"),
            transport=obj.get("transport"),
            storage=storage,
        ) as dc:
            restore_cookie_jar(storage, dc.http.cookies)
            try:
                return await fn(dc)
            finally:
                save_cookie_jar(storage, dc.http.cookies)

    return asyncio.run(_main())
