from __future__ import annotations

import json
from typing import Any

import click
import httpx

from dashboard_client.errors import DashboardClientError, describe_failure

from .runtime import echo_json, run_with_client


def _body(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError:
        return r.text


@click.command(name="request")
@click.argument("method", type=click.Choice(["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"], case_sensitive=False))
@click.argument("path")
@click.option("--json", "json_body", default=None, help="JSON request body.")
@click.pass_context
def request(ctx: click.Context, method: str, path: str, json_body: str | None) -> None:
    """
    Send one request with session cookie and (for mutations) the anti-forgery token.
    """
    payload = None
    if json_body is not None:
        try:
            payload = json.loads(json_body)
        except ValueError as ex:
            raise click.BadParameter(f"not valid JSON: {ex}", param_hint="--json") from None

    try:
        r = run_with_client(ctx, lambda dc: dc.request(method.upper(), path, json=payload))
    except DashboardClientError as ex:
        echo_json({"ok": False, "error": describe_failure(ex)})
        raise SystemExit(2) from None

    out: dict[str, Any] = {"ok": r.is_success, "status": r.status_code, "body": _body(r)}
    if not r.is_success:
        out["error"] = describe_failure(r)
    echo_json(out)
    if not r.is_success:
        raise SystemExit(1)


@click.command(name="diagnose")
@click.pass_context
def diagnose(ctx: click.Context) -> None:
    """Report cookie/token/backend state (token values are fingerprinted)."""
    report = run_with_client(ctx, lambda dc: dc.diagnose())
    echo_json(report)
    if not report.get("backend_reachable"):
        raise SystemExit(2)


def add_commands(cli_group) -> None:
    cli_group.add_command(request)
    cli_group.add_command(diagnose)


__all__ = ["add_commands", "request", "diagnose"]
