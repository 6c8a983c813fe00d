"""Rich output helpers — tables and detail views."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

console = Console()


def state_style(state: str) -> str:
    return {
        "QUEUED": "dim",
        "RUNNING": "yellow",
        "WAITING_CONFIRMATION": "cyan",
        "SUCCESS": "green",
        "FAILED": "red",
        "FAILED_SECURITY": "bold red",
        "BLOCKED": "bold red",
        "CANCELLED": "dim",
    }.get(state, "white")


def severity_style(severity: str) -> str:
    return {
        "CRITICAL": "bold red",
        "HIGH": "red",
        "MEDIUM": "yellow",
        "LOW": "dim",
    }.get(severity, "white")


def fmt_date(iso: str | None) -> str:
    if not iso:
        return "—"
    try:
        dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return iso


def fmt_counts(s: dict[str, Any]) -> str:
    return "/".join(str(s.get(f"vuln_{level}", 0)) for level in ("critical", "high", "medium", "low"))


def scans_table(items: list[dict[str, Any]]) -> Table:
    table = Table(
        title=f"Scans ({len(items)})",
        header_style="bold cyan",
        border_style="dim",
    )
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Pipeline", no_wrap=True)
    table.add_column("Mode")
    table.add_column("State")
    table.add_column("C/H/M/L", justify="right")
    table.add_column("Ack", justify="center")
    table.add_column("Created", style="dim")
    table.add_column("Completed", style="dim")

    for s in items:
        state = s.get("state", "?")
        ack_text = (
            Text("✓", style="green") if s.get("is_critical_acknowledged") else Text("—", style="dim")
        )
        table.add_row(
            str(s.get("id", ""))[:8] + "…",
            s.get("external_pipeline_id") or "—",
            s.get("scan_mode", ""),
            Text(state, style=state_style(state)),
            fmt_counts(s),
            ack_text,
            fmt_date(s.get("created_at")),
            fmt_date(s.get("completed_at")),
        )
    return table


def scan_detail(s: dict[str, Any]) -> None:
    """Print detailed view of a single scan."""
    console.rule(f"[bold cyan]Scan — {s.get('id')}")

    state = s.get("state", "?")
    fields = [
        ("ID", s.get("id")),
        ("Service", s.get("service_id")),
        ("Pipeline", s.get("external_pipeline_id")),
        ("Pipeline URL", s.get("pipeline_url")),
        ("Mode", s.get("scan_mode")),
        ("Image tag", s.get("image_tag")),
        ("Started", fmt_date(s.get("started_at"))),
        ("Completed", fmt_date(s.get("completed_at"))),
        ("Findings", fmt_counts(s) + "  (critical/high/medium/low)"),
        ("Image pushed", str(s.get("image_pushed"))),
        ("Error", s.get("error_message")),
        ("Acknowledged by", s.get("acknowledged_by")),
        ("Acknowledged at", fmt_date(s.get("acknowledged_at")) if s.get("acknowledged_at") else None),
    ]

    console.print(f"  [dim]{'State':<16}[/dim] ", end="")
    console.print(Text(state, style=state_style(state)))
    for label, value in fields:
        if value:
            console.print(f"  [dim]{label:<16}[/dim] {value}")


def findings_table(title: str, findings: list[dict[str, Any]]) -> Table:
    table = Table(title=f"{title} ({len(findings)})", header_style="bold cyan", border_style="dim")
    table.add_column("Severity")
    table.add_column("Rule")
    table.add_column("Location")
    table.add_column("Message")
    for f in findings:
        severity = f.get("severity", "")
        location = f.get("file", "")
        if f.get("line"):
            location += f":{f['line']}"
        table.add_row(
            Text(severity, style=severity_style(severity)),
            f.get("rule_id", ""),
            location,
            f.get("message", ""),
        )
    return table


def comparison_view(data: dict[str, Any]) -> None:
    """Print a service comparison returned by the API."""
    if not data.get("can_compare"):
        console.print(f"[yellow]Cannot compare:[/yellow] {data.get('reason')}")
        return

    comparison = data["comparison"]
    changes = comparison["changes"]
    trend = changes["trend"]
    trend_style = {"improved": "green", "degraded": "red"}.get(trend, "dim")

    console.rule("[bold cyan]Scan comparison")
    console.print(
        f"  [dim]Baseline[/dim] {comparison['baseline']['id']}  "
        f"[dim]Target[/dim] {comparison['target']['id']}"
    )
    console.print("  [dim]Trend[/dim]    ", end="")
    console.print(Text(f"{trend} ({changes['total']:+d})", style=trend_style))
    console.print(
        f"  [dim]Changes[/dim]  critical {changes['critical']:+d}, high {changes['high']:+d}, "
        f"medium {changes['medium']:+d}, low {changes['low']:+d}"
    )
    console.print(
        f"  new {comparison['new_count']}, resolved {comparison['resolved_count']}, "
        f"persistent {comparison['persistent_count']}"
    )
    for title, key in (("New", "new"), ("Resolved", "resolved")):
        if comparison[key]:
            console.print()
            console.print(findings_table(title, comparison[key]))
