#!/usr/bin/env python3
"""
catalogcue-sim: Interactive simulator for catalogcue.

Runs the real orchestrator against synthetic stores so you can watch
priorities, retries and rate budgets interact.

Usage:
    catalogcue-sim --pages 5 --latency 50
    catalogcue-sim --scenario multi_site --site-rpm 120
    catalogcue-sim --scenario flaky --max-retries 2 --no-tui
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime

from rich.console import Console
from rich.table import Table

from catalogcue.ratelimit import parse_rate
from catalogcue_sim.display import SimulationState, SimulatorDisplay, print_simple_stats
from catalogcue_sim.runner import SimConfig, SimulationRunner
from catalogcue_sim.scenarios import SCENARIOS, list_scenarios

EVENT_SYMBOLS = {
    "task-completed": "✓",
    "task-failed-permanently": "✗",
    "task-retry": "↻",
    "task-started": "▶",
    "rate-limited": "⏳",
    "record-invalid": "!",
    "records-flushed": "⇩",
}


def configure_logging(verbose: bool = False) -> None:
    """Configure logging for the simulator."""
    # Suppress catalogcue library logs during TUI mode
    lib_logger = logging.getLogger("catalogcue")
    if verbose:
        lib_logger.setLevel(logging.DEBUG)
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        lib_logger.addHandler(handler)
    else:
        # Silence library logs - simulator handles its own display
        lib_logger.setLevel(logging.CRITICAL)


async def run_with_display(config: SimConfig, use_tui: bool = True, verbose: bool = False) -> SimulationState:
    """Run simulation with visual display.

    Args:
        config: Simulation configuration
        use_tui: Use Rich TUI display (default True)
        verbose: Print event log instead of status updates (implies no-tui)
    """
    state = SimulationState()

    # Verbose mode: print each event as it happens
    if verbose:
        original_add_event = state.add_event

        def logging_add_event(event_type: str, task_id: str, site: str | None = None, details: str = "") -> None:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            symbol = EVENT_SYMBOLS.get(event_type, "·")
            print(f"{ts} {symbol} {event_type:<24} {site or '':<10} {task_id:<14} {details}")
            original_add_event(event_type, task_id, site, details)

        state.add_event = logging_add_event  # type: ignore

    runner = SimulationRunner(config, state)

    if verbose:
        print("\ncatalogcue-sim [verbose]")
        print(f"   Scenario: {config.scenario}, Pages: {config.pages} x {config.products_per_page}")
        print(f"   Latency: {config.latency_ms}ms ±{int(config.latency_jitter*100)}%, Error: {config.error_rate * 100:.0f}%")
        print()
        print(f"{'TIME':<12} {'':1} {'EVENT':<24} {'SITE':<10} {'TASK_ID':<14} DETAILS")
        print("-" * 80)

        try:
            await runner.run()
        except asyncio.CancelledError:
            runner.stop()
        finally:
            await runner.cleanup()

        print("-" * 80)

    elif use_tui:
        display = SimulatorDisplay(state)

        async def update_loop():
            """Background task to refresh display."""
            while True:
                display.refresh()
                await asyncio.sleep(0.1)

        with display:
            update_task = asyncio.create_task(update_loop())
            try:
                await runner.run()
            except asyncio.CancelledError:
                runner.stop()
            finally:
                update_task.cancel()
                try:
                    await update_task
                except asyncio.CancelledError:
                    pass
                await runner.cleanup()
            display.refresh()

    else:
        print("\ncatalogcue-sim")
        print(f"   Scenario: {config.scenario}, Latency: {config.latency_ms}ms, Error: {config.error_rate * 100:.0f}%")
        print()

        async def update_loop():
            """Print progress periodically."""
            while True:
                print_simple_stats(state)
                await asyncio.sleep(0.5)

        update_task = asyncio.create_task(update_loop())
        try:
            await runner.run()
        except asyncio.CancelledError:
            runner.stop()
        finally:
            update_task.cancel()
            try:
                await update_task
            except asyncio.CancelledError:
                pass
            await runner.cleanup()

        print_simple_stats(state)
        print()  # Newline after progress

    print_final_summary(state)
    return state


def print_final_summary(state: SimulationState, console: Console | None = None) -> None:
    """Print final summary after simulation."""
    console = console or Console()
    console.print()

    table = Table(title="Simulation Results", show_header=False, border_style="green")
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Tasks", str(state.submitted))
    table.add_row("Completed", f"[green]{state.completed}[/green]")
    table.add_row("Failed", f"[red]{state.failed}[/red]" if state.failed else "0")
    table.add_row("Left pending", str(state.queued + state.retrying))
    table.add_row("Records", str(state.records))
    if state.invalid_records:
        table.add_row("Invalid records", f"[red]{state.invalid_records}[/red]")
    table.add_row("Stored", str(state.stored))
    table.add_row("Rate limited", str(state.rate_limit_hits))
    table.add_row("Duration", f"{state.elapsed:.2f}s")
    table.add_row("Throughput", f"{state.throughput:.2f}/s")
    console.print(table)

    if state.sites:
        sites = Table(title="Per site", border_style="blue")
        sites.add_column("Site")
        sites.add_column("Completed", justify="right")
        sites.add_column("Failed", justify="right")
        sites.add_column("Rate limited", justify="right")
        for name, site in state.sites.items():
            sites.add_row(name, str(site.total_completed), str(site.total_failed), str(site.rate_limited))
        console.print(sites)
    console.print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="catalogcue-sim",
        description="Interactive simulator for catalogcue crawl orchestration",
    )
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default="single_site",
        help="Workload scenario (default: single_site)",
    )
    parser.add_argument(
        "--list-scenarios",
        action="store_true",
        help="List available scenarios and exit",
    )
    parser.add_argument(
        "--pages", "-p",
        type=int,
        default=3,
        help="Listing pages per store (default: 3)",
    )
    parser.add_argument(
        "--products",
        type=int,
        default=10,
        help="Products per listing page (default: 10)",
    )
    parser.add_argument(
        "--latency", "-l",
        type=int,
        default=100,
        help="Base fetch latency in milliseconds (default: 100)",
    )
    parser.add_argument(
        "--jitter", "-j",
        type=float,
        default=0.2,
        help="Latency jitter as fraction, e.g. 0.2 = ±20%% (default: 0.2)",
    )
    parser.add_argument(
        "--outliers",
        type=float,
        default=0.0,
        help="Chance of outlier (slow) request, 0.0-1.0 (default: 0.0)",
    )
    parser.add_argument(
        "--outlier-mult",
        type=float,
        default=5.0,
        help="Outlier latency multiplier (default: 5.0)",
    )
    parser.add_argument(
        "--error-rate", "-e",
        type=float,
        default=0.0,
        help="Fraction of fetches that fail and get retried, 0.0-1.0 (default: 0.0)",
    )
    parser.add_argument(
        "--gone-rate",
        type=float,
        default=0.0,
        help="Fraction of product pages that 404, 0.0-1.0 (default: 0.0)",
    )
    parser.add_argument(
        "--invalid-rate",
        type=float,
        default=0.0,
        help="Fraction of records missing required fields, 0.0-1.0 (default: 0.0)",
    )
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=3,
        help="Max tasks in flight (default: 3)",
    )
    parser.add_argument(
        "--site-rpm",
        type=float,
        default=240.0,
        help="Requests per minute per store; 0 uses the library default (default: 240)",
    )
    parser.add_argument(
        "--global-rate",
        default="600/min",
        help="Global sliding window, e.g. '60/min' (default: 600/min)",
    )
    parser.add_argument(
        "--burst",
        default="50/10s",
        help="Global burst window, e.g. '10/10s' (default: 50/10s)",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=3,
        help="Retries before a task fails permanently (default: 3)",
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=0.5,
        help="Base retry delay in seconds, doubled per attempt (default: 0.5)",
    )
    parser.add_argument(
        "--duration", "-d",
        type=float,
        default=None,
        help="Maximum duration in seconds (default: run until complete)",
    )
    parser.add_argument(
        "--tui",
        action="store_true",
        help="Use full TUI display (default when attached to a terminal)",
    )
    parser.add_argument(
        "--no-tui",
        action="store_true",
        help="Disable TUI, use simple text output",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print event log instead of status updates (no-tui)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible store behavior (default: random)",
    )
    return parser


def config_from_args(args: argparse.Namespace, parser: argparse.ArgumentParser) -> SimConfig:
    for name in ("global_rate", "burst"):
        try:
            parse_rate(getattr(args, name))
        except ValueError as e:
            parser.error(str(e))
    if args.concurrency < 1:
        parser.error("--concurrency must be at least 1")

    return SimConfig(
        pages=args.pages,
        products_per_page=args.products,
        latency_ms=args.latency,
        latency_jitter=args.jitter,
        outlier_chance=args.outliers,
        outlier_multiplier=args.outlier_mult,
        error_rate=args.error_rate,
        gone_rate=args.gone_rate,
        invalid_rate=args.invalid_rate,
        seed=args.seed,
        concurrency=args.concurrency,
        site_rpm=args.site_rpm or None,
        global_rate=args.global_rate,
        global_burst=args.burst,
        max_retries=args.max_retries,
        retry_delay=args.retry_delay,
        scenario=args.scenario,
        duration=args.duration,
    )


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_scenarios:
        print("\nAvailable scenarios:\n")
        for info in list_scenarios():
            print(f"  {info.name:<15} {info.description}")
        print()
        sys.exit(0)

    configure_logging(verbose=args.verbose)
    config = config_from_args(args, parser)
    use_tui = args.tui or (not args.no_tui and sys.stdout.isatty())

    async def run_main():
        """Wrapper to handle signals properly."""
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        main_task = asyncio.create_task(run_with_display(config, use_tui=use_tui, verbose=args.verbose))
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

    try:
        asyncio.run(run_main())
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
