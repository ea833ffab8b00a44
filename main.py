"""Clarity-Pilot Entry Point.

This module serves as the bootstrap and command dispatch layer.
It contains NO business logic - all functional code resides in /clarity_pilot.

Responsibilities:
    1. Load and validate configuration
    2. Initialize logging infrastructure (fail-fast on error)
    3. Dispatch one marketplace operation per invocation
    4. Print the result as JSON on stdout and map it to an exit code

Exit codes:
    0   operation succeeded
    1   operation returned an error (see "error_type" / "do_not_retry")
    2   booking needs manual payment in the browser window
    130 interrupted (Ctrl+C)

Usage:
    python main.py search-experts "growth strategy" --max-rate 10 --enrich 3
    python main.py fill-booking alice --duration 30 --topic "Pricing review"
    python main.py submit-booking --expert alice
"""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click
from loguru import logger

from config.settings import GlobalConfig, get_config
from clarity_pilot import __version__
from clarity_pilot.exceptions import ClarityPilotError, LoggingInitializationError
from clarity_pilot.logger import configure_logging
from clarity_pilot.schemas import (
    ErrorResult,
    OperationResult,
    PaymentPendingResult,
    SearchResult,
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PAYMENT_PENDING = 2
EXIT_INTERRUPTED = 130


def _validate_startup_requirements(config: GlobalConfig) -> None:
    """Create state directories before any browser work.

    Raises:
        SystemExit: If a directory cannot be created.
    """
    for directory in (config.screenshot_dir, config.session_path.parent, config.budget_path.parent):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.critical("Failed to create state directory", directory=str(directory), error=str(exc))
            sys.exit(EXIT_ERROR)

    logger.debug(
        "Startup validation complete",
        screenshot_dir=str(config.screenshot_dir),
        base_url=config.base_url,
    )


def _exit_code(result: OperationResult) -> int:
    if isinstance(result, PaymentPendingResult):
        return EXIT_PAYMENT_PENDING
    if isinstance(result, ErrorResult):
        return EXIT_ERROR
    return EXIT_OK


def _emit(result: OperationResult, extra: dict[str, Any] | None = None) -> int:
    payload = result.model_dump(mode="json")
    if extra:
        payload.update(extra)
    click.echo(json.dumps(payload, indent=2))
    return _exit_code(result)


def _execute(config: GlobalConfig, call: Callable[[Any], Awaitable[OperationResult]]) -> OperationResult:
    """Run one client operation inside a browser session."""
    from clarity_pilot.browser import BrowserManager
    from clarity_pilot.client import ClarityClient

    async def runner() -> OperationResult:
        async with BrowserManager.create(config) as browser:
            return await call(ClarityClient(browser, config))

    try:
        return asyncio.run(runner())
    except ClarityPilotError as exc:
        logger.error("Operation aborted", error_type=type(exc).__name__, message=exc.message)
        return ErrorResult.from_exception(exc)


@click.group()
@click.version_option(version=__version__, prog_name="clarity-pilot")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Clarity-Pilot - search, compare and book Clarity.fm experts."""
    try:
        config = get_config()
    except Exception as exc:
        # Cannot log yet - print to stderr
        click.echo(f"FATAL: Configuration loading failed: {exc}", err=True)
        ctx.exit(EXIT_ERROR)

    try:
        configure_logging(config)
    except LoggingInitializationError as exc:
        click.echo(f"FATAL: {exc}", err=True)
        ctx.exit(EXIT_ERROR)

    _validate_startup_requirements(config)
    ctx.obj = config


@cli.command("search-experts")
@click.argument("query")
@click.option("--min-rate", type=float, default=None, help="Minimum USD per minute.")
@click.option("--max-rate", type=float, default=None, help="Maximum USD per minute.")
@click.option("--sort", type=click.Choice(["best_match", "rate", "calls"]), default="best_match")
@click.option("--page", type=click.IntRange(min=1), default=1)
@click.option("--limit", type=click.IntRange(min=1), default=10, help="Capped at 20.")
@click.option("--enrich", type=click.IntRange(min=0), default=0, help="Fetch ratings for the top N.")
@click.option("--export", "export_reports", is_flag=True, help="Also write Excel and HTML reports.")
@click.pass_obj
def search_experts(
    config: GlobalConfig,
    query: str,
    min_rate: float | None,
    max_rate: float | None,
    sort: str,
    page: int,
    limit: int,
    enrich: int,
    export_reports: bool,
) -> int:
    """Find experts for QUERY (resolved to a browse category)."""
    result = _execute(
        config,
        lambda client: client.search(
            query, min_rate=min_rate, max_rate=max_rate, sort=sort, page=page, limit=limit, enrich=enrich
        ),
    )
    if export_reports and isinstance(result, SearchResult):
        from clarity_pilot.client import export_search

        exported = export_search(config, result)
        return _emit(result, {"export": exported.model_dump(mode="json")})
    return _emit(result)


@cli.command("view-profile")
@click.argument("expert")
@click.pass_obj
def view_profile(config: GlobalConfig, expert: str) -> int:
    """Show the full profile of EXPERT (username, @handle or URL)."""
    return _emit(_execute(config, lambda client: client.view_profile(expert)))


@cli.command("compare-experts")
@click.argument("experts")
@click.pass_obj
def compare_experts(config: GlobalConfig, experts: str) -> int:
    """Compare 2-3 comma-separated EXPERTS and pick the best value."""
    return _emit(_execute(config, lambda client: client.compare(experts)))


@cli.command("fill-booking")
@click.argument("expert")
@click.option("--duration", type=click.IntRange(15, 120), default=30, help="Minutes.")
@click.option("--topic", default=None)
@click.option("--slot1", default=None)
@click.option("--slot2", default=None)
@click.option("--slot3", default=None)
@click.option("--phone", default=None, help="Overrides the configured phone number.")
@click.pass_obj
def fill_booking(
    config: GlobalConfig,
    expert: str,
    duration: int,
    topic: str | None,
    slot1: str | None,
    slot2: str | None,
    slot3: str | None,
    phone: str | None,
) -> int:
    """Fill (but do not submit) a call request to EXPERT."""
    fields = {
        "expert": expert,
        "duration": duration,
        "topic": topic,
        "slots": [slot1, slot2, slot3],
        "phone": phone,
    }
    return _emit(_execute(config, lambda client: client.fill_booking(**fields)))


@cli.command("submit-booking")
@click.option("--expert", default=None, help="Refuse unless the filled form is for this expert.")
@click.pass_obj
def submit_booking(config: GlobalConfig, expert: str | None) -> int:
    """Submit the booking form left open by fill-booking. Never retry on failure."""
    return _emit(_execute(config, lambda client: client.submit_booking(expert)))


@cli.command("list-calls")
@click.option("--status", type=click.Choice(["upcoming", "pending", "completed", "all"]), default="all")
@click.pass_obj
def list_calls(config: GlobalConfig, status: str) -> int:
    """List calls from the account dashboard."""
    return _emit(_execute(config, lambda client: client.list_calls(status)))


@cli.command("budget-status")
@click.option("--month", default=None, help="YYYY-MM, defaults to the current month.")
@click.pass_obj
def budget_status(config: GlobalConfig, month: str | None) -> int:
    """Show spend against the monthly cap."""
    from clarity_pilot.budget import BudgetTracker

    return _emit(BudgetTracker(config).get_status(month))


@cli.command("set-budget")
@click.argument("amount", type=click.FloatRange(min=0))
@click.pass_obj
def set_budget(config: GlobalConfig, amount: float) -> int:
    """Set the monthly spending cap in USD (0 disables the check)."""
    from clarity_pilot.budget import BudgetTracker

    return _emit(BudgetTracker(config).set_budget(amount))


@cli.command("screenshot")
@click.option("--filename", default=None)
@click.option("--full-page", is_flag=True)
@click.pass_obj
def screenshot(config: GlobalConfig, filename: str | None, full_page: bool) -> int:
    """Capture the current browser page."""
    return _emit(_execute(config, lambda client: client.screenshot(filename, full_page)))


@cli.command("reset")
@click.pass_obj
def reset(config: GlobalConfig) -> int:
    """Close the resident browser and clear the session."""
    return _emit(_execute(config, lambda client: client.reset()))


def main(argv: list[str] | None = None) -> int:
    """Application entry point.

    Returns:
        Exit code (see module docstring).
    """
    try:
        return cli.main(args=argv, prog_name="clarity-pilot", standalone_mode=False) or EXIT_OK
    except click.exceptions.Abort:
        logger.warning("Interrupted by user (Ctrl+C)")
        return EXIT_INTERRUPTED
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C)")
        return EXIT_INTERRUPTED
    except click.ClickException as exc:
        exc.show()
        return exc.exit_code


if __name__ == "__main__":
    sys.exit(main())
