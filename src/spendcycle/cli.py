"""Command line entry points for spendcycle."""

from __future__ import annotations

import asyncio
import json
from datetime import date

import click

from .config import BaseConfig
from .context import create_engine_context
from .exceptions import CardConfigurationError, SpendCycleError
from .logging_config import setup_logging
from .models.card import Card, CardType
from .services.billing_cycle import upcoming_due_dates, validate_card_config
from .services.orchestrator import GenerationReport


def _echo_report(report: GenerationReport, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
        return

    click.echo(
        f"Processed {report.total_processed}: "
        f"{report.total_generated} generated, {report.total_failed} failed "
        f"({report.processing_time_ms:.0f} ms)"
    )
    for kind, counts in report.breakdown.items():
        click.echo(
            f"  {kind.value:<16} processed={counts.processed} generated={counts.generated} "
            f"skipped={counts.skipped} failed={counts.failed}"
        )
    for error in report.errors:
        click.echo(f"  ! {error.kind} #{error.source_id}: {error.error_type}: {error.message}", err=True)


def _run_report(ctx: click.Context, operation: str, owner_id: int | None, as_json: bool) -> None:
    engine_ctx = create_engine_context(ctx.obj["config"])
    runner = getattr(engine_ctx.orchestrator, operation)
    try:
        report = asyncio.run(runner(owner_id=owner_id))
    except SpendCycleError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_report(report, as_json)
    if report.errors:
        ctx.exit(1)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Generate dated expenses from recurring obligations."""
    config = BaseConfig()
    setup_logging(config)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema."""
    config = ctx.obj["config"]
    create_engine_context(config)
    click.echo(f"Database ready: {config.DATABASE_URL}")


@cli.command("run-pass")
@click.option("--owner-id", type=int, default=None, help="Only process this owner's obligations")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the report as JSON")
@click.pass_context
def run_pass(ctx: click.Context, owner_id: int | None, as_json: bool) -> None:
    """Run the scheduled pass: automatic debits, recurring expenses, installments."""
    _run_report(ctx, "run_scheduled_pass", owner_id, as_json)


@cli.command("run-pending")
@click.option("--owner-id", type=int, default=None, help="Only process this owner's obligations")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the report as JSON")
@click.pass_context
def run_pending(ctx: click.Context, owner_id: int | None, as_json: bool) -> None:
    """Generate one-time expenses that were never processed."""
    _run_report(ctx, "run_pending_one_time", owner_id, as_json)


@cli.command("run-full")
@click.option("--owner-id", type=int, default=None, help="Only process this owner's obligations")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the report as JSON")
@click.pass_context
def run_full(ctx: click.Context, owner_id: int | None, as_json: bool) -> None:
    """Run the scheduled pass followed by pending one-time expenses."""
    _run_report(ctx, "run_full_pass", owner_id, as_json)


@cli.command("serve")
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the generation scheduler until interrupted."""
    from .scheduler import GenerationScheduler

    config = ctx.obj["config"]
    settings = config.scheduler_settings()
    if not settings.enabled:
        raise click.ClickException("Scheduler disabled (SPENDCYCLE_SCHEDULER_ENABLED=false)")

    engine_ctx = create_engine_context(config)
    try:
        scheduler = GenerationScheduler(engine_ctx.orchestrator, settings, clock=engine_ctx.clock)
    except SpendCycleError as exc:
        raise click.ClickException(str(exc)) from exc

    async def _serve() -> None:
        scheduler.start()
        click.echo(f"Scheduler running ({settings.cron}, {settings.timezone}). Ctrl+C to stop.")
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("Scheduler stopped.")


@cli.command("card-cycle")
@click.argument("closing_day", type=click.IntRange(1, 31))
@click.argument("due_day", type=click.IntRange(1, 31))
@click.argument("purchase_date", type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--installments", type=click.IntRange(1, 60), default=1, show_default=True)
def card_cycle(closing_day: int, due_day: int, purchase_date, installments: int) -> None:
    """Show the due dates of a credit-card purchase."""
    card = Card(owner_id=0, name="cli", card_type=CardType.CREDIT.value, closing_day=closing_day, due_day=due_day)
    for warning in validate_card_config(card).warnings:
        click.echo(f"warning: {warning}", err=True)

    purchased: date = purchase_date.date()
    try:
        schedule = upcoming_due_dates(purchased, card, installments)
    except CardConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc

    for number, due in schedule:
        click.echo(f"{number}/{installments}  {due.isoformat()}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
