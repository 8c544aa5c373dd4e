# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the campaign queue.

Usage:
    campaign-queue init-db
    campaign-queue enqueue spring-sale -r a@example.com -r b@example.com \\
        --from news@example.com --subject "Spring sale" --body "..."
    campaign-queue enqueue spring-sale --file recipients.txt --subject "..."
    campaign-queue status spring-sale
    campaign-queue jobs spring-sale --status FAILED
    campaign-queue campaigns
    campaign-queue reclaim --older-than 600
    campaign-queue serve

Every command reads the same settings as the service (``--config`` or
``ACQ_CONFIG``); ``--db`` overrides the database path.
"""

from __future__ import annotations

import asyncio
import configparser
import json
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import EngineSettings, load_settings
from .engine import CampaignEngine
from .errors import CampaignQueueError
from .logger import configure_logging, get_logger
from .models import JobStatus
from .persistence import JobStore

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "PENDING": "yellow",
    "CLAIMED": "cyan",
    "SENT": "green",
    "FAILED": "red",
    "IN_PROGRESS": "yellow",
    "COMPLETED": "green",
    "COMPLETED_WITH_FAILURES": "magenta",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _styled(value: str) -> str:
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _format_ts(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def _read_recipients(path: Path) -> List[str]:
    """Read one address per line, skipping blanks and ``#`` comments."""
    lines = path.read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip() and not line.strip().startswith("#")]


def _get_store(settings: EngineSettings) -> JobStore:
    return JobStore(settings.db_path, max_recipients=settings.max_recipients)


@click.group()
@click.version_option(package_name="async-campaign-queue")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.ini (default: $ACQ_CONFIG or ./config.ini).")
@click.option("--db", "db_path", default=None, help="Override the database path.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """Durable bulk-email campaign queue."""
    try:
        settings = load_settings(config_path)
    except (ValueError, configparser.Error) as exc:
        # pydantic's ValidationError is a ValueError
        print_error(f"Invalid configuration: {exc}")
        sys.exit(1)
    if db_path:
        settings.db_path = db_path
    ctx.obj = settings


@main.command("init-db")
@click.pass_obj
def init_db(settings: EngineSettings) -> None:
    """Create the database schema."""
    run_async(_get_store(settings).init_db())
    print_success(f"Database ready at {settings.db_path}")


@main.command("enqueue")
@click.argument("campaign_id")
@click.option("--recipient", "-r", "recipients", multiple=True, help="Recipient address (repeatable).")
@click.option("--file", "-f", "recipients_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="File with one recipient address per line.")
@click.option("--from", "sender", help="Sender address.")
@click.option("--subject", "-s", help="Message subject.")
@click.option("--body", "-b", default="", help="Message body.")
@click.option("--html", is_flag=True, help="Send the body as HTML.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def enqueue(
    settings: EngineSettings,
    campaign_id: str,
    recipients: tuple,
    recipients_file: Optional[Path],
    sender: Optional[str],
    subject: Optional[str],
    body: str,
    html: bool,
    as_json: bool,
) -> None:
    """Enqueue a campaign, one job per recipient."""
    addresses = list(recipients)
    if recipients_file is not None:
        addresses.extend(_read_recipients(recipients_file))

    payload: Dict[str, Any] = {"body": body}
    if sender:
        payload["from"] = sender
    if subject is not None:
        payload["subject"] = subject
    if html:
        payload["content_type"] = "html"

    store = _get_store(settings)

    async def _enqueue():
        await store.init_db()
        return await store.enqueue(campaign_id, addresses, payload)

    try:
        job_ids = run_async(_enqueue())
    except CampaignQueueError as exc:
        print_error(str(exc))
        sys.exit(1)

    if as_json:
        print_json({"campaign_id": campaign_id, "job_ids": job_ids})
        return
    print_success(f"Campaign '{campaign_id}' enqueued with {len(job_ids)} job(s)")


@main.command("status")
@click.argument("campaign_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def status(settings: EngineSettings, campaign_id: str, as_json: bool) -> None:
    """Show the progress of a campaign."""
    engine = CampaignEngine.from_settings(settings)

    async def _status():
        await engine.init()
        return await engine.get_campaign_status(campaign_id)

    try:
        result = run_async(_status())
    except CampaignQueueError as exc:
        print_error(str(exc))
        sys.exit(1)

    if as_json:
        print_json(result.model_dump(mode="json"))
        return

    console.print(f"\n[bold cyan]Campaign: {campaign_id}[/bold cyan]\n")
    console.print(f"  Status:   {_styled(result.status.value)}")
    console.print(f"  Progress: {result.percent_complete:.1f}% of {result.total} job(s)")
    for job_status in JobStatus:
        console.print(f"  {job_status.value:<9} {result.counts.get(job_status, 0)}")
    console.print()


@main.command("jobs")
@click.argument("campaign_id")
@click.option("--status", "job_status", type=click.Choice([s.value for s in JobStatus]),
              help="Only jobs in this status.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def jobs(settings: EngineSettings, campaign_id: str, job_status: Optional[str], as_json: bool) -> None:
    """List the jobs of a campaign."""
    store = _get_store(settings)

    async def _list():
        await store.init_db()
        return await store.get_jobs_for_campaign(campaign_id, JobStatus(job_status) if job_status else None)

    try:
        job_list = run_async(_list())
    except CampaignQueueError as exc:
        print_error(str(exc))
        sys.exit(1)

    if as_json:
        print_json([job.model_dump(mode="json") for job in job_list])
        return

    if not job_list:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title=f"Jobs (campaign: {campaign_id})")
    table.add_column("ID", style="cyan")
    table.add_column("Recipient")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Next attempt")
    table.add_column("Last error")
    for job in job_list:
        table.add_row(
            job.id,
            job.recipient,
            _styled(job.status.value),
            str(job.attempt_count),
            _format_ts(job.next_eligible_at),
            job.last_error or "-",
        )
    console.print(table)


@main.command("campaigns")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def campaigns(settings: EngineSettings, as_json: bool) -> None:
    """List known campaigns."""
    store = _get_store(settings)

    async def _list():
        await store.init_db()
        return await store.list_campaigns()

    rows = run_async(_list())
    if as_json:
        print_json(rows)
        return
    if not rows:
        console.print("[dim]No campaigns found.[/dim]")
        return
    table = Table(title="Campaigns")
    table.add_column("ID", style="cyan")
    table.add_column("Jobs", justify="right")
    table.add_column("Created")
    table.add_column("Finished")
    for row in rows:
        table.add_row(row["id"], str(row["total"]), _format_ts(row["created_at"]),
                      _format_ts(row["terminal_notified_at"]))
    console.print(table)


@main.command("reclaim")
@click.option("--older-than", type=float, default=None,
              help="Release claims older than this many seconds (default: liveness timeout).")
@click.pass_obj
def reclaim(settings: EngineSettings, older_than: Optional[float]) -> None:
    """Release stuck claims back to PENDING."""
    store = _get_store(settings)
    threshold = settings.liveness_timeout if older_than is None else older_than

    async def _reclaim():
        await store.init_db()
        return await store.reclaim_stuck(threshold)

    released = run_async(_reclaim())
    print_success(f"Released {released} stuck job(s)")


@main.command("serve")
@click.pass_obj
def serve(settings: EngineSettings) -> None:
    """Run the dispatcher until interrupted."""
    if not settings.smtp_host:
        print_error("No SMTP host configured ([smtp] host or ACQ_SMTP_HOST).")
        sys.exit(1)
    configure_logging(settings.log_level)
    run_async(run_service(settings))


async def run_service(settings: EngineSettings, engine: Optional[CampaignEngine] = None) -> None:
    """Start the engine and block until SIGINT/SIGTERM."""
    engine = engine or CampaignEngine.from_settings(settings)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            get_logger().debug("No handler for %s on this platform", sig.name)
    await engine.start()
    try:
        await stop_event.wait()
    finally:
        await engine.stop()


if __name__ == "__main__":
    main()
