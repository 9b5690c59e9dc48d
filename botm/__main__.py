"""Command-line entry point (``python -m botm`` / ``botm``).

Meant for timer-driven execution, e.g. a monthly cron job or systemd timer:

    botm run                      # run for today
    botm run --date 2024-06-01    # run (or resume) a specific date
    botm history                  # recent runs and committed-user counts
"""

import asyncio
import json
from datetime import datetime, timezone

import click

from botm.logging_config import configure_logging


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL.")
@click.option("--console-logs", is_flag=True, help="Human-readable logs instead of JSON.")
def cli(log_level, console_logs):
    """Best-of-the-month playlist generation."""
    configure_logging(json_logs=False if console_logs else None, level=log_level)


@cli.command("run")
@click.option(
    "--date",
    "run_date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Run date (default: today, UTC).",
)
@click.option("--spotify-id", default=None, help="Only generate for this user.")
def run_cmd(run_date, spotify_id):
    """Generate playlists for all active users for one run date."""
    from botm.services.orchestrator import RunStartError
    from botm.worker.monthly_run import run_monthly

    day = run_date.date() if run_date else datetime.now(timezone.utc).date()
    try:
        outcome = asyncio.run(run_monthly(day, spotify_id=spotify_id))
    except RunStartError as exc:
        click.echo(f"Run did not start: {exc}", err=True)
        raise SystemExit(2)

    click.echo(json.dumps(outcome.as_dict(), indent=2))
    if not outcome.ok:
        raise SystemExit(1)


@cli.command("history")
@click.option("--limit", default=12, show_default=True, help="Number of runs to show.")
def history_cmd(limit):
    """Show recent runs."""
    from botm.database import async_session_factory
    from botm.services.run_ledger import RunLedger

    runs = asyncio.run(RunLedger(async_session_factory).latest_runs(limit))
    if not runs:
        click.echo("No runs recorded.")
        return
    for run in runs:
        click.echo(f"{run.id:>5}  {run.date.isoformat()}  {run.committed_users} users")


if __name__ == "__main__":
    cli()
