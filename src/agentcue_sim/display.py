"""Rich-based display for agentcue-sim.

This module provides visual output for the simulator using Rich library.
It's decoupled from the simulation logic - it just renders data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


@dataclass
class AgentStatus:
    """Per agent type counters for display."""

    name: str
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    total_ms: float = 0.0

    @property
    def average_ms(self) -> float:
        if self.completed == 0:
            return 0.0
        return self.total_ms / self.completed


@dataclass
class EventRecord:
    """A recent event for display."""

    timestamp: datetime
    event_type: str
    job_id: str
    agent_type: str | None = None
    details: str = ""


@dataclass
class SimulationState:
    """Current state of the simulation for display.

    This is the data contract between the runner and display.
    The runner updates this; the display renders it.
    """

    # Queue counts, polled from the backend
    submitted: int = 0
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0

    # Observed from events
    retried: int = 0
    stalled: int = 0

    # Timing
    start_time: float = 0.0
    elapsed: float = 0.0

    agents: dict[str, AgentStatus] = field(default_factory=dict)

    # Recent events (most recent first)
    events: list[EventRecord] = field(default_factory=list)
    max_events: int = 10

    # Health
    health_status: str = "healthy"
    health_warnings: list[str] = field(default_factory=list)
    dashboard: dict[str, Any] | None = None

    # Config display
    scenario_name: str = "mixed_agents"
    target_count: int = 0
    latency_ms: int = 0
    error_rate: float = 0.0
    concurrency: int = 0

    @property
    def pending(self) -> int:
        return self.waiting + self.active + self.delayed

    @property
    def throughput(self) -> float:
        """Jobs finished per second."""
        if self.elapsed > 0:
            return (self.completed + self.failed) / self.elapsed
        return 0.0

    @property
    def progress(self) -> float:
        """Fraction complete (0.0 to 1.0)."""
        if self.submitted > 0:
            return (self.completed + self.failed) / self.submitted
        return 0.0

    def agent(self, agent_type: str) -> AgentStatus:
        if agent_type not in self.agents:
            self.agents[agent_type] = AgentStatus(name=agent_type)
        return self.agents[agent_type]

    def add_event(self, event_type: str, job_id: str, agent_type: str | None = None, details: str = "") -> None:
        """Add an event to the display log."""
        self.events.insert(0, EventRecord(
            timestamp=datetime.now(),
            event_type=event_type,
            job_id=job_id,
            agent_type=agent_type,
            details=details,
        ))
        if len(self.events) > self.max_events:
            self.events = self.events[:self.max_events]


class SimulatorDisplay:
    """Rich-based TUI display for the simulator.

    Queue counts, per-agent table, health panel, recent events and a
    config footer.
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
            Layout(name="agents", size=3 + max(len(s.agents), 1)),
            Layout(name="health", size=3 + len(s.health_warnings)),
            Layout(name="events", size=8),
            Layout(name="controls", size=3),
        )
        layout["queue"].update(self._build_queue_section())
        layout["agents"].update(self._build_agents_section())
        layout["health"].update(self._build_health_section())
        layout["events"].update(self._build_events_section())
        layout["controls"].update(self._build_controls_section())

        return Panel(
            layout,
            title=f"[bold cyan]agentcue-sim[/bold cyan] [dim]{s.scenario_name}[/dim]",
            border_style="cyan",
        )

    def _build_queue_section(self) -> Panel:
        s = self.state

        stats = Table.grid(expand=True, padding=(0, 2))
        for _ in range(5):
            stats.add_column(justify="left")
        stats.add_row(
            f"[dim]Waiting:[/dim] [bold]{s.waiting:,}[/bold]",
            f"[dim]Active:[/dim] [bold yellow]{s.active}[/bold yellow]",
            f"[dim]Delayed:[/dim] [bold magenta]{s.delayed}[/bold magenta]",
            f"[dim]Completed:[/dim] [bold green]{s.completed:,}[/bold green]",
            f"[dim]Failed:[/dim] [bold red]{s.failed}[/bold red]",
        )

        stats2 = Table.grid(expand=True, padding=(0, 2))
        for _ in range(4):
            stats2.add_column(justify="left")
        stats2.add_row(
            f"[dim]Retried:[/dim] [bold]{s.retried}[/bold]",
            f"[dim]Stalled:[/dim] [bold]{s.stalled}[/bold]",
            f"[dim]Progress:[/dim] [bold]{s.progress * 100:.0f}%[/bold]",
            f"[dim]Throughput:[/dim] [bold]{s.throughput:.1f}/s[/bold]",
        )

        content = Table.grid(expand=True)
        content.add_row(stats)
        content.add_row(stats2)
        return Panel(content, title="[bold]Queue[/bold]", border_style="blue")

    def _build_agents_section(self) -> Panel:
        s = self.state

        table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
        table.add_column("Agent", width=14)
        table.add_column("Progress", width=22)
        table.add_column("Processed", width=12, justify="right")
        table.add_column("Avg", width=10, justify="right")

        for name, agent in sorted(s.agents.items()):
            done = agent.completed + agent.failed
            pct = done / agent.submitted if agent.submitted else 0.0
            bar = f"{self._progress_bar(pct, 10)} {done}/{agent.submitted}"
            processed = f"[green]{agent.completed}[/green]"
            if agent.failed:
                processed += f"/[red]{agent.failed}[/red]"
            table.add_row(f"[bold]{name}[/bold]", bar, processed, f"{agent.average_ms:.0f}ms")

        if not s.agents:
            table.add_row("[dim]No tasks submitted[/dim]", "", "", "")

        return Panel(table, title="[bold]Agents[/bold]", border_style="blue")

    def _build_health_section(self) -> Panel:
        s = self.state
        healthy = s.health_status == "healthy"

        text = Text()
        text.append("Status: ", style="dim")
        text.append(s.health_status, style="bold green" if healthy else "bold yellow")
        for warning in s.health_warnings:
            text.append(f"\n  ⚠ {warning}", style="yellow")

        return Panel(text, title="[bold]Health[/bold]", border_style="green" if healthy else "yellow")

    def _build_events_section(self) -> Panel:
        s = self.state

        table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
        table.add_column("Time", width=10, style="dim")
        table.add_column("Event", width=12)
        table.add_column("ID", width=12)
        table.add_column("Agent", width=12)
        table.add_column("Details")

        event_styles = {
            "completed": "green",
            "failed": "red",
            "active": "yellow",
            "retrying": "magenta",
            "stalled": "magenta",
            "submitted": "dim",
        }
        for event in s.events[:6]:
            style = event_styles.get(event.event_type, "white")
            table.add_row(
                event.timestamp.strftime("%H:%M:%S"),
                f"[{style}]{event.event_type}[/{style}]",
                event.job_id[:12],
                event.agent_type or "",
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
        text.append("  Error: ", style="dim")
        text.append(f"{s.error_rate*100:.0f}%", style="bold red" if s.error_rate > 0 else "bold")
        text.append("  Concurrency: ", style="dim")
        text.append(str(s.concurrency), style="bold")
        text.append("  Target: ", style="dim")
        text.append(f"{s.target_count:,}", style="bold")
        text.append("    Ctrl+C to stop", style="dim")

        return Panel(text, title="[bold]Config[/bold]", border_style="dim")

    @staticmethod
    def _progress_bar(pct: float, width: int = 10) -> str:
        """Create a mini progress bar."""
        pct = min(1.0, max(0.0, pct))
        filled = int(pct * width)
        return f"[green]{'█' * filled}{'░' * (width - filled)}[/green]"


def print_simple_stats(state: SimulationState) -> None:
    """One-line progress for non-TUI runs."""
    s = state
    done = s.completed + s.failed
    pct = (done / s.submitted * 100) if s.submitted > 0 else 0

    print(
        f"\r[{done}/{s.submitted}] "
        f"W:{s.waiting} A:{s.active} D:{s.delayed} ✓:{s.completed} ✗:{s.failed} "
        f"({pct:.0f}%) {s.throughput:.1f}/s",
        end="",
        flush=True,
    )
