"""ScanTrack CLI entry point — `scantrack` command group."""

from __future__ import annotations

import click

from scantrack.cli.commands.scan import scan_cmd


@click.group()
@click.version_option(package_name="scantrack")
@click.option(
    "--api-url",
    default="http://localhost:8000",
    envvar="SCANTRACK_API_URL",
    show_default=True,
    help="Base URL of the ScanTrack API server",
)
@click.pass_context
def cli(ctx: click.Context, api_url: str) -> None:
    """ScanTrack — security scan pipeline tracking.

    \b
    Quick start:
      scantrack scan list --state RUNNING
      scantrack scan sync
      scantrack scan compare <service-id>

    API docs: http://localhost:8000/docs
    """
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url.rstrip("/")


cli.add_command(scan_cmd)


@cli.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind host")
@click.option("--port", default=8000, show_default=True, help="Bind port")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload (dev mode)")
def serve(host: str, port: int, reload: bool) -> None:
    """Start the ScanTrack API server (and its reconciliation scheduler)."""
    import uvicorn

    uvicorn.run(
        "scantrack.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    cli()
