"""CLI commands for inspecting and managing scans."""

from __future__ import annotations

from typing import Any

import click

from scantrack.cli.output import comparison_view, console, scan_detail, scans_table


def _call(ctx: click.Context, method: str, path: str, **kwargs: Any) -> Any:
    """Send one request to the API and return the decoded body, exiting on failure."""
    import httpx

    api_url: str = ctx.obj["api_url"]
    try:
        r = httpx.request(method, f"{api_url}/api/v1{path}", timeout=30, **kwargs)
        r.raise_for_status()
    except httpx.ConnectError:
        console.print(f"[red]Cannot connect to API at {api_url}.[/red]")
        raise SystemExit(1)
    except httpx.HTTPStatusError as e:
        detail: Any = e.response.text
        try:
            detail = e.response.json().get("detail", detail)
        except ValueError:
            pass
        if isinstance(detail, dict):
            detail = detail.get("message", detail)
        console.print(f"[red]API error {e.response.status_code}:[/red] {detail}")
        raise SystemExit(1)
    return r.json() if r.content else None


@click.group("scan")
def scan_cmd() -> None:
    """Scan pipeline operations."""


@scan_cmd.command("list")
@click.option("--limit", default=20, show_default=True)
@click.option("--state", default=None, help="Only scans in this state (e.g. RUNNING)")
@click.option("--service", "service_id", default=None, help="Only scans of this service id")
@click.option("--all", "include_archived", is_flag=True, default=False, help="Include archived scans")
@click.pass_context
def scan_list(
    ctx: click.Context,
    limit: int,
    state: str | None,
    service_id: str | None,
    include_archived: bool,
) -> None:
    """List recent scans."""
    params: dict[str, Any] = {"limit": limit, "include_archived": include_archived}
    if state:
        params["state"] = state.upper()
    if service_id:
        params["service_id"] = service_id
    data = _call(ctx, "GET", "/scans", params=params)
    console.print(scans_table(data["items"]))


@scan_cmd.command("show")
@click.argument("scan_id")
@click.pass_context
def scan_show(ctx: click.Context, scan_id: str) -> None:
    """Show one scan."""
    scan_detail(_call(ctx, "GET", f"/scans/{scan_id}"))


@scan_cmd.command("sync")
@click.argument("scan_id", required=False)
@click.pass_context
def scan_sync(ctx: click.Context, scan_id: str | None) -> None:
    """Reconcile one scan (or every pending scan) with the CI system now."""
    if scan_id:
        scan_detail(_call(ctx, "POST", f"/scans/{scan_id}/sync"))
        return
    summary = _call(ctx, "POST", "/scans/sync")
    console.print(
        f"Checked [bold]{summary['checked']}[/bold], "
        f"changed [green]{summary['changed']}[/green], "
        f"errors [red]{summary['errors']}[/red]"
    )


@scan_cmd.command("cancel")
@click.argument("scan_id")
@click.pass_context
def scan_cancel(ctx: click.Context, scan_id: str) -> None:
    """Cancel a queued or running scan."""
    scan_detail(_call(ctx, "POST", f"/scans/{scan_id}/cancel"))


@scan_cmd.command("ack")
@click.argument("scan_id")
@click.option("--user", required=True, help="Who is acknowledging the critical findings")
@click.option("--archive", is_flag=True, default=False, help="Also hide the scan from default views")
@click.pass_context
def scan_ack(ctx: click.Context, scan_id: str, user: str, archive: bool) -> None:
    """Acknowledge the critical findings of a FAILED_SECURITY scan."""
    action = "archive" if archive else "acknowledge"
    scan_detail(
        _call(ctx, "POST", f"/scans/{scan_id}/acknowledge", json={"user": user, "action": action})
    )


@scan_cmd.command("compare")
@click.argument("service_id")
@click.pass_context
def scan_compare(ctx: click.Context, service_id: str) -> None:
    """Compare the two most recent finished scans of a service."""
    comparison_view(_call(ctx, "GET", f"/services/{service_id}/compare"))
