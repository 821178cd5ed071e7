#!/usr/bin/env python3
"""
agentcue-sim: Interactive simulator for agentcue.

Usage:
    agentcue-sim --count 20 --latency 50
    agentcue-sim --scenario flaky_agents --count 30 --duration 30
    agentcue-sim --count 50 --concurrency 8 --no-tui
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
import signal
import sys
from datetime import datetime

from rich.console import Console
from rich.table import Table

from agentcue_sim.display import SimulationState, SimulatorDisplay, print_simple_stats
from agentcue_sim.runner import SimConfig, SimulationRunner
from agentcue_sim.scenarios import SCENARIOS, list_scenarios

EVENT_SYMBOLS = {
    "completed": "✓",
    "failed": "✗",
    "active": "▶",
    "submitted": "+",
    "retrying": "⟳",
    "stalled": "!",
}


def configure_logging(verbose: bool = False) -> None:
    """Configure logging for the simulator."""
    agentcue_logger = logging.getLogger("agentcue")
    if verbose:
        agentcue_logger.setLevel(logging.DEBUG)
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        agentcue_logger.addHandler(handler)
    else:
        # Silence library logs - simulator handles its own display
        agentcue_logger.setLevel(logging.CRITICAL)


async def run_with_display(config: SimConfig, use_tui: bool = True, verbose: bool = False) -> SimulationState:
    """Run simulation with visual display.

    Args:
        config: Simulation configuration
        use_tui: Use Rich TUI display (default True)
        verbose: Print event log instead of status updates (implies no-tui)
    """
    state = SimulationState()

    if verbose:
        original_add_event = state.add_event

        def logging_add_event(event_type: str, job_id: str, agent_type: str | None = None, details: str = "") -> None:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            symbol = EVENT_SYMBOLS.get(event_type, "·")
            print(f"{ts} {symbol} {event_type:<10} {agent_type or '':<12} {job_id:<14} {details}")
            original_add_event(event_type, job_id, agent_type, details)

        state.add_event = logging_add_event  # type: ignore

    runner = SimulationRunner(config, state)

    if verbose:
        print("\nagentcue-sim [verbose]")
        print(f"   Scenario: {config.scenario}, Count: {config.count}")
        print(f"   Latency: {config.latency_ms}ms ±{int(config.latency_jitter*100)}%, Error: {config.error_rate * 100:.0f}%")
        print()
        print(f"{'TIME':<12} {'':1} {'EVENT':<10} {'AGENT':<12} {'JOB_ID':<14} DETAILS")
        print("-" * 80)
        await _run(runner, None)
        print("-" * 80)

    elif use_tui:
        display = SimulatorDisplay(state)

        async def update_loop():
            while True:
                display.refresh()
                await asyncio.sleep(0.1)

        with display:
            await _run(runner, update_loop)
    else:
        print("\nagentcue-sim")
        print(f"   Scenario: {config.scenario}, Count: {config.count}, Latency: {config.latency_ms}ms")
        print()

        async def update_loop():
            while True:
                print_simple_stats(state)
                await asyncio.sleep(0.5)

        await _run(runner, update_loop)
        print()

    print_final_summary(state)
    return state


async def _run(runner: SimulationRunner, update_loop) -> None:
    """Run the simulation alongside an optional refresh loop."""
    update_task = asyncio.create_task(update_loop()) if update_loop else None
    try:
        await runner.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        runner.stop()
    finally:
        if update_task is not None:
            update_task.cancel()
            try:
                await update_task
            except asyncio.CancelledError:
                pass
        await runner.cleanup()


def print_final_summary(state: SimulationState) -> None:
    """Print final summary after simulation."""
    console = Console()
    console.print()

    table = Table(title="Simulation Results", show_header=False, border_style="green")
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Submitted", str(state.submitted))
    table.add_row("Completed", f"[green]{state.completed}[/green]")
    table.add_row("Failed", f"[red]{state.failed}[/red]" if state.failed else "0")
    table.add_row("Retried", str(state.retried))
    table.add_row("Duration", f"{state.elapsed:.2f}s")
    table.add_row("Throughput", f"{state.throughput:.2f}/s")
    table.add_row("Health", state.health_status)
    console.print(table)

    if state.agents:
        agents = Table(title="By Agent", border_style="blue")
        agents.add_column("Agent")
        agents.add_column("Submitted", justify="right")
        agents.add_column("Completed", justify="right")
        agents.add_column("Failed", justify="right")
        agents.add_column("Avg", justify="right")
        for name, agent in sorted(state.agents.items()):
            agents.add_row(
                name,
                str(agent.submitted),
                str(agent.completed),
                str(agent.failed),
                f"{agent.average_ms:.0f}ms",
            )
        console.print(agents)


def main():
    parser = argparse.ArgumentParser(
        description="agentcue simulator - run agent workloads against a live queue",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  agentcue-sim --count 20 --latency 50
  agentcue-sim --scenario flaky_agents --count 30
  agentcue-sim --count 100 --concurrency 8 --no-tui
  agentcue-sim --list-scenarios
        """,
    )

    parser.add_argument(
        "--scenario",
        type=str,
        default="mixed_agents",
        choices=sorted(SCENARIOS),
        help="Scenario to run (default: mixed_agents)",
    )
    parser.add_argument(
        "--list-scenarios",
        action="store_true",
        help="List available scenarios and exit",
    )
    parser.add_argument(
        "--count", "-n",
        type=int,
        default=20,
        help="Number of tasks to submit (default: 20)",
    )
    parser.add_argument(
        "--latency", "-l",
        type=int,
        default=100,
        help="Base model latency in ms (default: 100)",
    )
    parser.add_argument(
        "--jitter", "-j",
        type=float,
        default=0.2,
        help="Latency variance as fraction, e.g. 0.2 = ±20%% (default: 0.2)",
    )
    parser.add_argument(
        "--error-rate", "-e",
        type=float,
        default=0.0,
        help="Fraction of model calls that fail, 0.0-1.0 (default: 0.0)",
    )
    parser.add_argument(
        "--duration", "-d",
        type=float,
        default=None,
        help="Maximum duration in seconds (default: run until complete)",
    )
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=4,
        help="Jobs processed at once (default: 4)",
    )
    parser.add_argument(
        "--attempts",
        type=int,
        default=3,
        help="Max attempts per job (default: 3)",
    )
    parser.add_argument(
        "--backoff",
        type=int,
        default=100,
        help="Base retry backoff in ms (default: 100)",
    )
    parser.add_argument(
        "--submit-rate", "-s",
        type=float,
        default=None,
        help="Submit rate (tasks/second), None = batch (default: batch)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=":memory:",
        help="SQLite path for the queue (default: in-memory)",
    )
    parser.add_argument(
        "--no-tui",
        action="store_true",
        help="Disable TUI, use simple text output",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print event log and library logs instead of the TUI",
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Print the final dashboard data as JSON",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible behavior (default: random)",
    )

    args = parser.parse_args()

    if args.list_scenarios:
        print("\nAvailable scenarios:\n")
        for info in list_scenarios():
            print(f"  {info.name:<15} {info.description}")
        print()
        sys.exit(0)

    configure_logging(verbose=args.verbose)

    if args.seed is not None:
        random.seed(args.seed)

    config = SimConfig(
        scenario=args.scenario,
        count=args.count,
        latency_ms=args.latency,
        latency_jitter=args.jitter,
        error_rate=args.error_rate,
        duration=args.duration,
        db_path=args.db,
        concurrency=args.concurrency,
        max_attempts=args.attempts,
        backoff_ms=args.backoff,
        submit_rate=args.submit_rate,
    )

    async def run_main():
        """Wrapper to handle signals properly."""
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        main_task = asyncio.create_task(
            run_with_display(config, use_tui=not args.no_tui, verbose=args.verbose)
        )
        stop_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            [main_task, stop_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if stop_task in done:
            print("\nInterrupted.")
            sys.exit(130)

        state = main_task.result()
        if args.dashboard and state.dashboard is not None:
            print(json.dumps(state.dashboard, indent=2, default=str))

    try:
        asyncio.run(run_main())
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
