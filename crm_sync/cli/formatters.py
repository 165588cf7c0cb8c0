"""CLI output formatting functions.

This module contains functions for displaying sync results and the job
ledger status report on the command line.
"""

from typing import TYPE_CHECKING, Optional

import click

if TYPE_CHECKING:
    from crm_sync.sync.engine import SyncResult
    from crm_sync.sync.jobs import SyncStatusReport

# Maximum synced contacts listed before truncating
MAX_LISTED_CONTACTS = 50


def _format_rate(rate: Optional[float]) -> str:
    return "n/a" if rate is None else f"{rate:.1f}%"


def show_sync_result(result: "SyncResult", show_contacts: bool = False) -> None:
    """
    Display the outcome of a sync run.

    Args:
        result: The SyncResult to display
        show_contacts: List per-contact details of incremental runs
    """
    click.echo("\n" + "=" * 50)
    click.echo(result.summary())
    click.echo("=" * 50)

    if not result.success:
        click.echo(click.style("\nSync failed.", fg="red"), err=True)
    elif result.errors:
        click.echo(
            click.style(
                f"\nSync finished with {result.errors} record error(s).", fg="yellow"
            )
        )
    else:
        click.echo(click.style("\nSync completed successfully!", fg="green"))

    if not show_contacts or not result.synced_contacts:
        return

    click.echo(f"\n=== Synced Contacts ({len(result.synced_contacts)}) ===")
    for info in result.synced_contacts[:MAX_LISTED_CONTACTS]:
        if info.is_new:
            marker = click.style("+", fg="green")
        else:
            marker = click.style("~", fg="cyan")
        click.echo(
            f"  {marker} {info.name} <{info.email or '-'}> [{info.lifecycle_label}]"
        )
        for change in info.changed_fields:
            click.echo(
                f"      {change.field}: {change.old_value or '(empty)'} -> "
                f"{change.new_value}"
            )
    if len(result.synced_contacts) > MAX_LISTED_CONTACTS:
        remaining = len(result.synced_contacts) - MAX_LISTED_CONTACTS
        click.echo(f"  ... and {remaining} more")


def show_status_report(report: "SyncStatusReport") -> None:
    """
    Display the job ledger status report.

    Args:
        report: Aggregated report from summarize_sync_jobs()
    """
    click.echo(f"=== Sync Jobs (last {report.days} days) ===\n")

    for summary in report.job_types:
        click.echo(click.style(summary.label, bold=True))
        if summary.job_count == 0 and summary.last_success_at is None:
            click.echo("  Never run")
            click.echo()
            continue

        status = summary.last_status or "-"
        color = {"completed": "green", "failed": "red", "running": "yellow"}.get(
            status
        )
        click.echo(f"  Last status: {click.style(status, fg=color)}")
        click.echo(f"  Last run: {summary.last_run_at or '-'}")
        if summary.last_success_at:
            click.echo(
                f"  Last success: {summary.last_success_at} "
                f"({summary.last_success_duration or '-'}, "
                f"{summary.last_success_records} records written)"
            )
        else:
            click.echo("  Last success: never")
        click.echo(
            f"  Success rate: {_format_rate(summary.success_rate)} "
            f"over {summary.job_count} job(s)"
        )
        click.echo()

    click.echo(
        f"Totals: {report.completed} completed, {report.failed} failed, "
        f"{report.running} running "
        f"(success rate {_format_rate(report.success_rate)})"
    )
