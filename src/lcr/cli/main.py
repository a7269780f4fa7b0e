"""
CLI for logic-chain research.

Commands:
    lcr run TICKER - Run a logic-chain investigation
    lcr report ID - Show a saved report
    lcr history - List saved reports
    lcr resolve TEXT - Resolve free text into ticker candidates
    lcr config - Show current configuration
    lcr version - Print version
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lcr import __version__
from lcr.cli.progress import ResearchProgress
from lcr.config import Settings, clear_settings_cache, get_settings
from lcr.data.quote_client import TencentQuoteClient
from lcr.data.ticker_resolver import ResolveResult, resolve_user_query
from lcr.llm.router import ModelRouter
from lcr.logging import setup_logging
from lcr.research.orchestrator import build_orchestrator
from lcr.retrieval.search_provider import TavilySearchProvider
from lcr.storage.report_store import ReportPage, ReportStore, StoredReport
from lcr.stream import encode_snapshot
from lcr.types import Investigation, Language, Report, ResearchState, ResearchStatus

app = typer.Typer(
    name="lcr",
    help="Logic-Chain Research - AI-orchestrated equity investigations",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _require_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'lcr config' to see what's missing."
        )
        raise typer.Exit(1)
    return settings


def render_report(
    ticker: str,
    report: Report,
    investigation: Investigation | None = None,
    total_tokens: int | None = None,
) -> None:
    """Print a report as rich panels and tables."""
    console.print()
    console.print(
        Panel(
            report.verdict or "[dim]No verdict[/dim]",
            title=f"[bold green]{ticker} Verdict[/bold green]",
            border_style="green",
        )
    )
    if report.narrative_arc:
        console.print(Panel(report.narrative_arc, title="[bold]Narrative Arc[/bold]", border_style="cyan"))
    if report.marginal_changes:
        console.print(Panel(report.marginal_changes, title="[bold]Marginal Changes[/bold]", border_style="cyan"))

    financial = report.financial_reality
    fin_table = Table(title="Financial Reality", show_header=True)
    fin_table.add_column("Metric", style="cyan")
    fin_table.add_column("Assessment", style="green")
    fin_table.add_row("Cash burn rate", financial.cash_burn_rate or "[dim]n/a[/dim]")
    fin_table.add_row("Capex cycle", financial.capex_cycle or "[dim]n/a[/dim]")
    fin_table.add_row("Revenue trend", financial.revenue_trend or "[dim]n/a[/dim]")
    console.print(fin_table)

    if report.competitor_matrix:
        comp_table = Table(title="Competitor Matrix", show_header=True)
        comp_table.add_column("Name", style="cyan")
        comp_table.add_column("Market Cap")
        comp_table.add_column("Core Difference")
        comp_table.add_column("Resource Quality")
        for entry in report.competitor_matrix:
            comp_table.add_row(
                entry.name,
                entry.market_cap or "",
                entry.core_difference,
                entry.resource_quality or "",
            )
        console.print(comp_table)

    footer: list[str] = []
    if investigation is not None:
        footer.append(f"Nodes: {investigation.completed_nodes}/{investigation.total_nodes}")
        footer.append(f"Facts: {len(investigation.all_findings)}")
    if total_tokens is not None:
        footer.append(f"Tokens: {total_tokens:,}")
    if footer:
        console.print(f"\n[dim]{' | '.join(footer)}[/dim]")


async def _run(
    settings: Settings,
    ticker: str,
    language: Language,
    ndjson: bool,
    save: bool,
) -> ResearchState:
    search = TavilySearchProvider(settings.TAVILY_API_KEY)
    quotes = TencentQuoteClient()
    store: ReportStore | None = None
    if save:
        settings.ensure_directories()
        store = ReportStore(settings.DATABASE_PATH)
        await store.init()

    orchestrator = build_orchestrator(settings, ticker, search=search, quotes=quotes, store=store)
    state = ResearchState()
    try:
        if ndjson:
            async for state in orchestrator.stream(ticker, language):
                sys.stdout.buffer.write(encode_snapshot(state))
                sys.stdout.buffer.flush()
        else:
            with ResearchProgress(error_console, ticker) as progress:
                async for state in orchestrator.stream(ticker, language):
                    progress.update(state)
    finally:
        await search.close()
        await quotes.close()
        if store:
            await store.close()
    return state


@app.command()
def run(
    ticker: Annotated[str, typer.Argument(help="Ticker symbol (e.g., AAPL, 600519, 0700.HK)")],
    lang: Annotated[
        Language,
        typer.Option("--lang", "-l", help="Report language"),
    ] = Language.EN,
    ndjson: Annotated[
        bool,
        typer.Option("--ndjson", help="Write raw NDJSON snapshots to stdout"),
    ] = False,
    no_save: Annotated[
        bool,
        typer.Option("--no-save", help="Do not save the report to the database"),
    ] = False,
    log_file: Annotated[
        Optional[Path],
        typer.Option("--log-file", help="Append JSON Lines diagnostics (DEBUG and up) to this file"),
    ] = None,
) -> None:
    """Run a logic-chain investigation on a ticker.

    Plans topic chains, researches every step with web search, and
    synthesizes a report with a verdict.
    """
    settings = _require_settings()
    setup_logging(settings.LOG_LEVEL, log_file=log_file)
    ticker = ticker.upper().strip()

    state = asyncio.run(_run(settings, ticker, lang, ndjson, save=not no_save))

    if ndjson:
        if state.status != ResearchStatus.COMPLETED:
            raise typer.Exit(1)
        return

    if state.status == ResearchStatus.ERROR:
        error_console.print(f"\n[red]Error:[/red] {state.error}")
        raise typer.Exit(1)

    if state.report is not None:
        render_report(ticker, state.report, state.investigation, state.total_tokens)
    if state.report_id:
        console.print(f"[bold]Report saved:[/bold] {state.report_id}")
    console.print()


async def _with_store(settings: Settings, action):
    store = ReportStore(settings.DATABASE_PATH)
    await store.init()
    try:
        return await action(store)
    finally:
        await store.close()


@app.command()
def report(
    report_id: Annotated[str, typer.Argument(help="Saved report ID")],
) -> None:
    """Show a saved report."""
    settings = _require_settings()
    if not settings.DATABASE_PATH.exists():
        error_console.print("[red]Error:[/red] No report database found.")
        raise typer.Exit(1)

    stored: StoredReport | None = asyncio.run(_with_store(settings, lambda s: s.load(report_id)))
    if stored is None:
        error_console.print(f"[red]Error:[/red] Report not found: {report_id}")
        raise typer.Exit(1)

    console.print(f"[dim]{stored.id} | {stored.language.value} | {stored.created_at.isoformat()}[/dim]")
    render_report(stored.ticker, stored.report, stored.investigation, stored.total_tokens)
    console.print()


@app.command()
def history(
    ticker: Annotated[
        Optional[str],
        typer.Option("--ticker", "-t", help="Only reports for this ticker"),
    ] = None,
    page: Annotated[int, typer.Option("--page", "-p", min=1)] = 1,
    page_size: Annotated[int, typer.Option("--page-size", min=1, max=100)] = 10,
) -> None:
    """List saved reports, newest first."""
    settings = _require_settings()
    if not settings.DATABASE_PATH.exists():
        console.print("[yellow]No saved reports.[/yellow]")
        return

    table = Table(title="Saved Reports", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Ticker", style="bold")
    table.add_column("Lang")
    table.add_column("Created", style="dim")
    table.add_column("Tokens", justify="right")
    table.add_column("Summary")

    if ticker:
        reports: list[StoredReport] = asyncio.run(
            _with_store(settings, lambda s: s.list_by_ticker(ticker.upper().strip()))
        )
        for r in reports:
            table.add_row(
                r.id, r.ticker, r.language.value, r.created_at.strftime("%Y-%m-%d %H:%M"),
                f"{r.total_tokens:,}", r.report.verdict[:60],
            )
        console.print(table)
        return

    result: ReportPage = asyncio.run(
        _with_store(settings, lambda s: s.list_reports(page=page, page_size=page_size))
    )
    for summary in result.reports:
        table.add_row(
            summary.id, summary.ticker, summary.language.value,
            summary.created_at.strftime("%Y-%m-%d %H:%M"),
            f"{summary.total_tokens:,}", summary.summary[:60],
        )
    console.print(table)
    console.print(f"[dim]Page {result.page} of {result.total_pages} ({result.total} reports)[/dim]")


@app.command()
def resolve(
    text: Annotated[str, typer.Argument(help="Ticker, company name or concept")],
) -> None:
    """Resolve free text into ticker candidates."""
    settings = _require_settings()
    router = ModelRouter(settings)
    result: ResolveResult = asyncio.run(resolve_user_query(text, router.default_generator()))

    if result.error:
        error_console.print(f"[red]Error:[/red] {result.error}")
        raise typer.Exit(1)

    table = Table(title=f"Candidates for '{text}'", show_header=True)
    table.add_column("Symbol", style="cyan")
    table.add_column("Name")
    table.add_column("Market", style="green")
    for candidate in result.candidates:
        table.add_row(candidate.symbol, candidate.name, candidate.market)
    console.print(table)


@app.command()
def config() -> None:
    """Show current configuration.

    Displays all configuration values with API keys redacted.
    Also shows which generation providers are available.
    """
    console.print()
    console.print("[bold]Logic-Chain Research Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid or incomplete.[/red]")
        error_console.print()
        error_console.print("Required for a live run:")
        error_console.print("  - At least one of: GEMINI_API_KEY, DEEPSEEK_API_KEY, QWEN_API_KEY")
        error_console.print("  - TAVILY_API_KEY")
        error_console.print("  - CHAIN_CONCURRENCY must not exceed CALL_CONCURRENCY")
        error_console.print()
        error_console.print("Create a .env file or set environment variables.")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)

    console.print()
    providers = settings.available_providers
    if providers:
        console.print(f"[bold]Available Generation Providers:[/bold] {', '.join(providers)}")
    else:
        console.print("[yellow]No generation providers configured.[/yellow]")

    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"logic-chain-research version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
