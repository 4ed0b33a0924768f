"""Rich-based display for catalogcue-sim.

This module provides visual output for the simulator using Rich library.
It's decoupled from the simulation logic - it just renders data.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


@dataclass
class SiteStatus:
    """Status of one store for display."""

    name: str
    capacity: float = 0.0
    refill_rate: float = 0.0
    tokens: float = 0.0
    in_flight: int = 0
    rate_limited: int = 0

    # Throughput tracking
    total_completed: int = 0
    total_failed: int = 0
    start_time: float = 0.0

    @property
    def total_processed(self) -> int:
        """Total attempts finished (completed + failed)."""
        return self.total_completed + self.total_failed

    @property
    def throughput(self) -> float:
        """Attempts finished per second."""
        if self.start_time <= 0:
            return 0.0
        elapsed = time.time() - self.start_time
        if elapsed > 0:
            return self.total_processed / elapsed
        return 0.0


@dataclass
class EventRecord:
    """A recent event for display."""

    timestamp: datetime
    event_type: str
    task_id: str
    site: str | None = None
    details: str = ""


@dataclass
class SimulationState:
    """Current state of the simulation for display.

    This is the data contract between the runner and display.
    The runner updates this; the display renders it.
    """

    # Queue stats
    submitted: int = 0
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0

    # Output
    records: int = 0
    invalid_records: int = 0
    stored: int = 0
    rate_limit_hits: int = 0

    # Timing
    start_time: float = 0.0
    elapsed: float = 0.0

    # Sites
    sites: dict[str, SiteStatus] = field(default_factory=dict)

    # Recent events (most recent first)
    events: list[EventRecord] = field(default_factory=list)
    max_events: int = 10

    # Config display
    latency_ms: int = 0
    latency_jitter: float = 0.2
    outlier_chance: float = 0.0
    error_rate: float = 0.0
    concurrency: int = 0

    # Scenario info
    scenario_name: str = "single_site"

    @property
    def throughput(self) -> float:
        """Tasks completed per second."""
        if self.elapsed > 0:
            return self.completed / self.elapsed
        return 0.0

    @property
    def progress(self) -> float:
        """Fraction of known tasks that are finished (0.0 to 1.0)."""
        if self.submitted > 0:
            return (self.completed + self.failed) / self.submitted
        return 0.0

    def add_event(self, event_type: str, task_id: str, site: str | None = None, details: str = "") -> None:
        """Add an event to the display log."""
        self.events.insert(0, EventRecord(
            timestamp=datetime.now(),
            event_type=event_type,
            task_id=task_id,
            site=site,
            details=details,
        ))
        # Trim to max
        if len(self.events) > self.max_events:
            self.events = self.events[:self.max_events]


class SimulatorDisplay:
    """Rich-based TUI display for the simulator.

    Panels:
    - Queue stats
    - Sites with token-bucket bars
    - Recent events log
    - Config footer
    """

    def __init__(self, state: SimulationState, console: Console | None = None):
        self.state = state
        self.console = console or Console()
        self._live: Live | None = None

    def __enter__(self) -> SimulatorDisplay:
        self._live = Live(
            self._build_layout(),
            console=self.console,
            refresh_per_second=10,
            screen=False,
        )
        self._live.__enter__()
        return self

    def __exit__(self, *args) -> None:
        if self._live:
            self._live.__exit__(*args)
            self._live = None

    def refresh(self) -> None:
        """Update the display with current state."""
        if self._live:
            self._live.update(self._build_layout())

    def _build_layout(self) -> Panel:
        s = self.state

        layout = Layout()
        layout.split_column(
            Layout(name="queue", size=4),
            Layout(name="sites", size=3 + max(1, len(s.sites))),
            Layout(name="events", size=7),
            Layout(name="controls", size=3),
        )
        layout["queue"].update(self._build_queue_section())
        layout["sites"].update(self._build_sites_section())
        layout["events"].update(self._build_events_section())
        layout["controls"].update(self._build_controls_section())

        return Panel(
            layout,
            title=f"[bold cyan]catalogcue-sim[/bold cyan] [dim]{s.scenario_name}[/dim]",
            border_style="cyan",
        )

    def _build_queue_section(self) -> Panel:
        s = self.state

        stats = Table.grid(expand=True, padding=(0, 2))
        for _ in range(5):
            stats.add_column(justify="left")
        stats.add_row(
            f"[dim]Queued:[/dim] [bold]{s.queued:,}[/bold]",
            f"[dim]In flight:[/dim] [bold yellow]{s.running}[/bold yellow]",
            f"[dim]Completed:[/dim] [bold green]{s.completed:,}[/bold green]",
            f"[dim]Retrying:[/dim] [bold magenta]{s.retrying}[/bold magenta]",
            f"[dim]Failed:[/dim] [bold red]{s.failed}[/bold red]",
        )

        stats2 = Table.grid(expand=True, padding=(0, 2))
        for _ in range(4):
            stats2.add_column(justify="left")
        stats2.add_row(
            f"[dim]Records:[/dim] [bold]{s.records:,}[/bold]"
            + (f" [red]({s.invalid_records} invalid)[/red]" if s.invalid_records else ""),
            f"[dim]Rate limited:[/dim] [bold cyan]{s.rate_limit_hits}[/bold cyan]",
            f"[dim]Progress:[/dim] [bold]{s.progress * 100:.0f}%[/bold]",
            f"[dim]Throughput:[/dim] [bold]{s.throughput:.1f}/s[/bold]",
        )

        content = Table.grid(expand=True)
        content.add_row(stats)
        content.add_row(stats2)
        return Panel(content, title="[bold]Queue[/bold]", border_style="blue")

    def _build_sites_section(self) -> Panel:
        s = self.state

        table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
        table.add_column("Site", width=14)
        table.add_column("Tokens", width=22)
        table.add_column("In flight", width=10, justify="right")
        table.add_column("Processed", width=12, justify="right")
        table.add_column("Throughput", width=10, justify="right")
        table.add_column("Waits", width=8, justify="right")

        for name, site in s.sites.items():
            if site.capacity:
                bar = self._progress_bar(site.tokens / site.capacity, 8)
                tokens = f"{bar} {site.tokens:.1f}/{site.capacity:g}"
            else:
                tokens = "[dim]-[/dim]"

            processed = f"[green]{site.total_completed}[/green]"
            if site.total_failed > 0:
                processed += f"/[red]{site.total_failed}[/red]"

            table.add_row(
                f"[bold]{name}[/bold]",
                tokens,
                str(site.in_flight),
                processed,
                f"{site.throughput:.1f}/s",
                f"[cyan]{site.rate_limited}[/cyan]",
            )

        if not s.sites:
            table.add_row("[dim]No sites configured[/dim]", "", "", "", "", "")

        return Panel(table, title="[bold]Sites[/bold]", border_style="blue")

    def _build_events_section(self) -> Panel:
        s = self.state

        table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
        table.add_column("Time", width=10, style="dim")
        table.add_column("Event", width=24)
        table.add_column("ID", width=10)
        table.add_column("Site", width=10)
        table.add_column("Details")

        event_styles = {
            "task-completed": "green",
            "task-failed-permanently": "red",
            "task-started": "yellow",
            "task-retry": "magenta",
            "task-enqueued": "dim",
            "rate-limited": "cyan",
            "record-invalid": "red",
            "records-flushed": "blue",
        }

        for event in s.events[:5]:
            style = event_styles.get(event.event_type, "white")
            table.add_row(
                event.timestamp.strftime("%H:%M:%S"),
                f"[{style}]{event.event_type}[/{style}]",
                event.task_id[:8] if event.task_id else "",
                event.site or "",
                event.details[:40] if event.details else "",
            )

        if not s.events:
            table.add_row("[dim]No events yet[/dim]", "", "", "", "")

        return Panel(table, title="[bold]Recent Events[/bold]", border_style="blue")

    def _build_controls_section(self) -> Panel:
        s = self.state

        text = Text()
        text.append("Latency: ", style="dim")
        text.append(f"{s.latency_ms}ms", style="bold")
        if s.latency_jitter > 0:
            text.append(f" ±{s.latency_jitter*100:.0f}%", style="dim")
        if s.outlier_chance > 0:
            text.append("  Outliers: ", style="dim")
            text.append(f"{s.outlier_chance*100:.0f}%", style="bold yellow")
        text.append("  Error: ", style="dim")
        text.append(f"{s.error_rate*100:.0f}%", style="bold red" if s.error_rate > 0 else "bold")
        text.append("  Concurrency: ", style="dim")
        text.append(str(s.concurrency), style="bold")
        text.append("    Ctrl+C to stop", style="dim")

        return Panel(text, title="[bold]Config[/bold]", border_style="dim")

    @staticmethod
    def _progress_bar(pct: float, width: int = 10) -> str:
        """Create a mini bar. Low is red: an empty bucket means waiting."""
        pct = min(1.0, max(0.0, pct))
        filled = int(pct * width)
        empty = width - filled

        if pct <= 0.1:
            color = "red"
        elif pct <= 0.3:
            color = "yellow"
        else:
            color = "green"

        return f"[{color}]{'█' * filled}{'░' * empty}[/{color}]"


def print_simple_stats(state: SimulationState) -> None:
    """Print a one-line progress update without the TUI."""
    s = state
    done = s.completed + s.failed
    print(
        f"\r[{done}/{s.submitted}] "
        f"Q:{s.queued} R:{s.running} ✓:{s.completed} ↻:{s.retrying} ✗:{s.failed} "
        f"({s.progress * 100:.0f}%) {s.throughput:.1f}/s",
        end="",
        flush=True,
    )
