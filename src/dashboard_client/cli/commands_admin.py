from __future__ import annotations

import click

from dashboard_client.config import get_safe_config_report

from .runtime import echo_json


@click.command(name="config")
def config() -> None:
    """Print the effective configuration (secrets shown as SET/UNSET only)."""
    echo_json(get_safe_config_report())


@click.command(name="devserver")
@click.option("--host", default=None, help="Defaults to DASHBOARD_DEV_HOST.")
@click.option("--port", type=int, default=None, help="Defaults to DASHBOARD_DEV_PORT.")
def devserver(host: str | None, port: int | None) -> None:
    """Run the reference backend (FastAPI + uvicorn)."""
    from dashboard_client.devserver.run import serve

    serve(host=host, port=port)


def add_commands(cli_group) -> None:
    cli_group.add_command(config)
    cli_group.add_command(devserver)


__all__ = ["add_commands", "config", "devserver"]
