from __future__ import annotations

import click

from dashboard_client.utils.log import set_log_level

from . import commands_admin, commands_requests, commands_session
from .commands_admin import config, devserver
from .commands_requests import diagnose, request
from .commands_session import login, logout, whoami


@click.group(name="dashboard-client", help="dashboard-client CLI (session + protected requests)")
@click.option("--log-level", default=None, help="Override DASHBOARD_LOG_LEVEL.")
@click.option("--base-url", default=None, help="Override DASHBOARD_API_BASE_URL.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, base_url: str | None) -> None:
    ctx.ensure_object(dict)
    if log_level:
        set_log_level(log_level)
    if base_url:
        ctx.obj["base_url"] = base_url


commands_session.add_commands(cli)
commands_requests.add_commands(cli)
commands_admin.add_commands(cli)

__all__ = [
    "cli",
    "login",
    "logout",
    "whoami",
    "request",
    "diagnose",
    "config",
    "devserver",
]
