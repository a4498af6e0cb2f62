from __future__ import annotations

import click

from dashboard_client.config import get_settings
from dashboard_client.errors import SessionProbeFailed

from .runtime import echo_json, run_with_client


@click.command(name="login")
@click.option("--username", "-u", default=None, help="Defaults to DASHBOARD_USERNAME, else prompts.")
@click.option("--password", "-p", default=None, help="Defaults to DASHBOARD_PASSWORD, else prompts.")
@click.pass_context
def login(ctx: click.Context, username: str | None, password: str | None) -> None:
    """Sign in and keep the session cookie for later commands."""
    s = get_settings()
    username = username or s.username or click.prompt("Username")
    if password is None:
        password = s.password.get_secret_value() if s.password is not None else None
    if not password:
        password = click.prompt("Password", hide_input=True)

    result = run_with_client(ctx, lambda dc: dc.login(str(username), str(password)))
    if not result.success:
        echo_json({"success": False, "error": result.error})
        raise SystemExit(1)
    out = {"success": True, "user": result.user.to_dict() if result.user else None}
    if result.warning:
        out["warning"] = result.warning
    echo_json(out)


@click.command(name="logout")
@click.pass_context
def logout(ctx: click.Context) -> None:
    """End the session and drop stored cookies/token."""
    run_with_client(ctx, lambda dc: dc.logout())
    echo_json({"success": True})


@click.command(name="whoami")
@click.pass_context
def whoami(ctx: click.Context) -> None:
    async def _probe(dc):
        return await dc.probe_session(force=True)

    try:
        user = run_with_client(ctx, _probe)
    except SessionProbeFailed as ex:
        echo_json({"authenticated": None, "error": ex.message})
        raise SystemExit(2) from None
    if user is None:
        echo_json({"authenticated": False})
        return
    echo_json({"authenticated": True, "user": user.to_dict()})


def add_commands(cli_group) -> None:
    cli_group.add_command(login)
    cli_group.add_command(logout)
    cli_group.add_command(whoami)


__all__ = ["add_commands", "login", "logout", "whoami"]
