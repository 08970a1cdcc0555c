"""
DriftGuard - Terminal summaries (rich).

Panels and tables for scan outcomes, retention runs, scan history, rules
and cache statistics. Each make_* function returns a renderable; the
render_* wrappers print it to a console (stderr by default).
"""

from typing import Optional

from rich import box as rich_box
from rich.console import Console, Group, RenderableType
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from driftguard.core.models import FileStatus, PriorityLevel, PriorityRule, ScanRun, ScanStatus, to_iso
from driftguard.core.orchestrator import ScanOutcome
from driftguard.core.retention import RetentionReport

MAX_LISTED_CHANGES = 25


def _style_priority(level: PriorityLevel) -> str:
    if level is PriorityLevel.CRITICAL:
        return "bold red"
    if level is PriorityLevel.HIGH:
        return "yellow"
    if level is PriorityLevel.NORMAL:
        return "cyan"
    return "dim"


def _style_status(status: ScanStatus) -> str:
    if status is ScanStatus.COMPLETED:
        return "bold green"
    if status is ScanStatus.FAILED:
        return "bold red"
    if status is ScanStatus.CANCELLED:
        return "yellow"
    return "cyan"


def _human_bytes(value: int) -> str:
    size = float(value)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def _console(console: Optional[Console]) -> Console:
    return console or Console(stderr=True)


def make_scan_summary(outcome: ScanOutcome) -> RenderableType:
    run = outcome.scan_run
    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_column(style="dim")
    summary.add_column()
    summary.add_row("Scan", f"#{run.id} ({run.scan_type.value})")
    summary.add_row("Status", Text(run.status.value, style=_style_status(run.status)))
    if outcome.error:
        summary.add_row("Error", Text(outcome.error, style="red"))
    summary.add_row("Total files", str(outcome.stats.total_files))
    summary.add_row("Changed", str(outcome.stats.changed_files))
    summary.add_row("New", str(outcome.stats.new_files))
    summary.add_row("Deleted", str(outcome.stats.deleted_files))
    summary.add_row("Stored records", str(outcome.stored_records))
    summary.add_row("Cache hits", f"{outcome.walk_stats.cache_hits} / {outcome.walk_stats.files_emitted}")
    summary.add_row("Duration", f"{run.duration_seconds:.2f}s")
    summary.add_row("Peak memory", _human_bytes(run.peak_memory))
    summary.add_row("Critical / high", f"{outcome.priority_stats.critical_count} / {outcome.priority_stats.high_count}")
    summary.add_row("Alerts", str(outcome.alerts_emitted))
    if outcome.is_baseline:
        summary.add_row("Baseline", Text("yes (first completed scan)", style="bold cyan"))
    parts: list[RenderableType] = [
        Panel(summary, title="[bold] Scan Summary [/]", border_style="cyan", box=rich_box.ROUNDED, padding=(0, 1))
    ]

    changes = sorted(outcome.changes, key=lambda r: (r.priority.rank, r.path))
    if changes:
        table = Table(show_header=True, box=rich_box.SIMPLE, padding=(0, 1))
        table.add_column("Status", width=8)
        table.add_column("Priority", width=8)
        table.add_column("Path", overflow="fold")
        for record in changes[:MAX_LISTED_CHANGES]:
            status_style = "red" if record.status is FileStatus.DELETED else "yellow" if record.status is FileStatus.CHANGED else "green"
            table.add_row(
                Text(record.status.value, style=status_style),
                Text(record.priority.value, style=_style_priority(record.priority)),
                record.path,
            )
        if len(changes) > MAX_LISTED_CHANGES:
            table.add_row("", "", Text(f"... {len(changes) - MAX_LISTED_CHANGES} more", style="dim"))
        parts.append(Panel(table, title="[bold] Changes [/]", border_style="magenta", box=rich_box.ROUNDED))
    return Group(*parts)


def make_retention_report(report: RetentionReport) -> RenderableType:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="dim")
    table.add_column()
    table.add_row("Run at", to_iso(report.started_at))
    table.add_row("Cache expired", str(report.cache_expired))
    table.add_row("Cache overflow purge", str(report.cache_overflow_purged))
    table.add_row("Protected scans", ", ".join(str(i) for i in report.protected_scan_ids) or "-")
    table.add_row("Diffs stripped", str(report.diffs_stripped))
    table.add_row("Scans deleted", str(report.scans_deleted))
    table.add_row("File records deleted", str(report.file_records_deleted))
    table.add_row("Logs deleted", str(report.logs_deleted.get("total_deleted", 0)))
    table.add_row("Velocity entries deleted", str(report.velocity_entries_deleted))
    table.add_row("Snapshots trimmed", str(report.contents_trimmed))
    if report.failed_steps:
        table.add_row("Failed steps", Text(", ".join(report.failed_steps), style="bold red"))
    return Panel(
        table,
        title="[bold] Retention [/]",
        border_style="green" if report.ok else "red",
        box=rich_box.ROUNDED,
        padding=(0, 1),
    )


def make_history(runs: list[ScanRun]) -> RenderableType:
    table = Table(show_header=True, box=rich_box.SIMPLE, padding=(0, 1))
    for column in ("ID", "Started", "Type", "Status", "Files", "Changed", "New", "Deleted", "Duration"):
        table.add_column(column)
    for run in runs:
        table.add_row(
            f"{run.id}{' *' if run.is_baseline else ''}",
            to_iso(run.started_at),
            run.scan_type.value,
            Text(run.status.value, style=_style_status(run.status)),
            str(run.total_files),
            str(run.changed_files),
            str(run.new_files),
            str(run.deleted_files),
            f"{run.duration_seconds:.2f}s",
        )
    if not runs:
        table.add_row(*(["-"] * 9))
    return Panel(table, title="[bold] Scan History [/]", subtitle="* baseline", border_style="cyan", box=rich_box.ROUNDED)


def make_rules(rules: list[PriorityRule]) -> RenderableType:
    table = Table(show_header=True, box=rich_box.SIMPLE, padding=(0, 1))
    for column in ("ID", "Order", "Priority", "Match", "Pattern", "Notify", "Velocity", "Active"):
        table.add_column(column)
    for rule in rules:
        velocity = f"{rule.velocity_threshold}/{rule.velocity_window_hours}h" if rule.tracks_velocity else "-"
        table.add_row(
            str(rule.id),
            str(rule.execution_order),
            Text(rule.priority_level.value, style=_style_priority(rule.priority_level)),
            rule.match_type.value,
            rule.path,
            "yes" if rule.notify_immediately else "no",
            velocity,
            "yes" if rule.is_active else "no",
        )
    return Panel(table, title="[bold] Priority Rules [/]", border_style="magenta", box=rich_box.ROUNDED)


def make_cache_stats(cache_stats: dict, content_stats: dict) -> RenderableType:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="dim")
    table.add_column()
    table.add_row("Cache entries", str(cache_stats["total_entries"]))
    table.add_row("Expired entries", str(cache_stats["expired_entries"]))
    for key in ("oldest_entry", "newest_entry", "next_expiration"):
        value = cache_stats.get(key)
        table.add_row(key.replace("_", " ").capitalize(), to_iso(value) if value else "-")
    table.add_row("Content snapshots", str(content_stats["total_entries"]))
    table.add_row("Snapshot size", _human_bytes(content_stats["total_compressed_size"]))
    table.add_row("Compression", f"{content_stats['compression_ratio']}%")
    return Panel(table, title="[bold] Cache [/]", border_style="cyan", box=rich_box.ROUNDED, padding=(0, 1))


def render_scan_summary(outcome: ScanOutcome, console: Optional[Console] = None) -> None:
    _console(console).print(make_scan_summary(outcome))


def render_retention_report(report: RetentionReport, console: Optional[Console] = None) -> None:
    _console(console).print(make_retention_report(report))


def render_history(runs: list[ScanRun], console: Optional[Console] = None) -> None:
    _console(console).print(make_history(runs))


def render_rules(rules: list[PriorityRule], console: Optional[Console] = None) -> None:
    _console(console).print(make_rules(rules))


def render_cache_stats(cache_stats: dict, content_stats: dict, console: Optional[Console] = None) -> None:
    _console(console).print(make_cache_stats(cache_stats, content_stats))
