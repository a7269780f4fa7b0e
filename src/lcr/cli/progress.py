"""Rich live progress display for a research run."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from lcr.types import LogType, ResearchState, ResearchStatus


@dataclass
class ChainRow:
    """Display row for one planned topic chain."""

    topic: str
    total: int
    completed: int = 0
    status: str = "pending"  # pending, running, complete


def chain_rows(state: ResearchState) -> list[ChainRow]:
    """Derive per-chain rows from a snapshot.

    Chains are matched by topic, since completed_chains arrive in
    completion order rather than plan order.
    """
    if not state.plan:
        return []

    finished = {chain.topic: chain for chain in state.completed_chains}
    started = {
        log.data.get("topic")
        for log in state.logs
        if log.type == LogType.MISSION_START and log.data and "topic" in log.data
    }

    rows: list[ChainRow] = []
    for chain in state.plan:
        row = ChainRow(topic=chain.topic, total=chain.total_nodes)
        if chain.topic in finished:
            row.completed = finished[chain.topic].completed_nodes
            row.status = "complete"
        elif chain.topic in started:
            row.status = "running"
        rows.append(row)
    return rows


class ResearchProgress:
    """Live progress panel fed with full-state snapshots."""

    STATUS_ICONS = {
        "pending": "[dim]...[/dim]",
        "running": "[yellow]...[/yellow]",
        "complete": "[green]OK[/green]",
    }

    def __init__(self, console: Console, ticker: str) -> None:
        """Initialize progress display.

        Args:
            console: Rich console to write to.
            ticker: Ticker being researched.
        """
        self.console = console
        self.ticker = ticker
        self.started_at = time.time()
        self.state = ResearchState()
        self._live: Live | None = None

    def _build_display(self) -> Panel:
        elapsed = time.time() - self.started_at
        state = self.state

        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Status", width=4)
        table.add_column("Topic", width=36)
        table.add_column("Nodes", width=8, justify="right", style="dim")

        for row in chain_rows(state):
            if row.status == "running":
                topic_style = "bold yellow"
            elif row.status == "complete":
                topic_style = "green"
            else:
                topic_style = "dim"
            table.add_row(
                self.STATUS_ICONS[row.status],
                Text(row.topic[:36], style=topic_style),
                f"{row.completed}/{row.total}",
            )

        last_message = state.logs[-1].message if state.logs else ""

        footer = Text()
        footer.append("Status: ", style="dim")
        footer.append(state.status.value, style="cyan")
        if state.total_tokens is not None:
            footer.append("  |  ", style="dim")
            footer.append("Tokens: ", style="dim")
            footer.append(f"{state.total_tokens:,}", style="green")
        footer.append("  |  ", style="dim")
        footer.append("Elapsed: ", style="dim")
        footer.append(f"{elapsed:.0f}s", style="cyan")

        content = Group(table, Text(""), Text(last_message[:80], style="dim"), footer)

        if state.status == ResearchStatus.COMPLETED:
            title = f"[bold green]{self.ticker} Research Complete[/bold green]"
            border_style = "green"
        elif state.status == ResearchStatus.ERROR:
            title = f"[bold red]{self.ticker} Research Failed[/bold red]"
            border_style = "red"
        else:
            title = f"[bold cyan]Researching {self.ticker}...[/bold cyan]"
            border_style = "cyan"

        return Panel(content, title=title, border_style=border_style)

    def update(self, state: ResearchState) -> None:
        """Replace the displayed state with a newer snapshot."""
        self.state = state
        if self._live:
            self._live.update(self._build_display())

    def __enter__(self) -> ResearchProgress:
        self._live = Live(
            self._build_display(),
            console=self.console,
            refresh_per_second=4,
            transient=False,
            auto_refresh=True,
            get_renderable=self._build_display,
        )
        self._live.__enter__()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._live:
            self._live.update(self._build_display())
            self._live.__exit__(exc_type, exc_val, exc_tb)
            self._live = None
