"""Simulation runner for catalogcue-sim.

This module handles the actual simulation logic, decoupled from display.
It updates a SimulationState object that can be rendered by any display.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from catalogcue import (
    AdapterRegistry,
    Event,
    EventKind,
    GlobalLimits,
    Orchestrator,
    OrchestratorConfig,
)
from catalogcue.storage import MemoryStorage, StorageManager
from catalogcue_sim.scenarios import Scenario, get_scenario

if TYPE_CHECKING:
    from catalogcue_sim.display import SimulationState

logger = logging.getLogger(__name__)


@dataclass
class SimConfig:
    """Configuration for a simulation run."""

    # Catalog shape
    pages: int = 3
    products_per_page: int = 10
    priority: int = 5

    # Store behaviour
    latency_ms: int = 100
    latency_jitter: float = 0.2  # ±20% variance
    outlier_chance: float = 0.0  # Probability of outlier (0.0-1.0)
    outlier_multiplier: float = 5.0  # Outliers take this much longer
    error_rate: float = 0.0
    gone_rate: float = 0.0
    invalid_rate: float = 0.0
    seed: int | None = None

    # Orchestrator
    concurrency: int = 3
    site_rpm: float | None = 240.0
    global_rate: str = "600/min"
    global_burst: str = "50/10s"
    max_retries: int = 3
    retry_delay: float = 0.5
    flush_interval: float = 2.0
    flush_threshold: int = 10

    # Run control
    scenario: str = "single_site"
    duration: float | None = None
    stop_timeout: float = 5.0

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            concurrency=self.concurrency,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            tick_interval=0.25,
            flush_interval=self.flush_interval,
            flush_threshold=self.flush_threshold,
            global_limits=GlobalLimits.from_mapping(
                {"rate": self.global_rate, "burst": self.global_burst}
            ),
        )


class SimulationRunner:
    """Runs simulations and updates state for display.

    This class is decoupled from display - it just updates state.
    Counters are driven by orchestrator events; queue sizes and token
    levels are polled.

    Usage:
        config = SimConfig(pages=5, latency_ms=50)
        state = SimulationState()
        runner = SimulationRunner(config, state)

        # In your event loop:
        await runner.run()
    """

    def __init__(
        self,
        config: SimConfig,
        state: "SimulationState",
        on_event: Callable[[str, str, str | None, str], None] | None = None,
        scenario: Scenario | None = None,
    ):
        self.config = config
        self.state = state
        self.on_event = on_event or state.add_event
        self.scenario = scenario or get_scenario(config.scenario)

        self.storage = MemoryStorage("sim")
        self._orch: Orchestrator | None = None
        self._running = False

    @property
    def orchestrator(self) -> Orchestrator | None:
        return self._orch

    async def run(self) -> None:
        """Run the simulation until the crawl drains, time runs out or stop() is called."""
        self._running = True
        self.state.start_time = time.time()
        self.state.scenario_name = self.scenario.info.name
        self.state.latency_ms = self.config.latency_ms
        self.state.latency_jitter = self.config.latency_jitter
        self.state.outlier_chance = self.config.outlier_chance
        self.state.error_rate = self.config.error_rate
        self.state.concurrency = self.config.concurrency

        registry = AdapterRegistry()
        orch_config = self.config.orchestrator_config()
        self.scenario.setup(registry, orch_config, self.config, self.state)

        self._orch = Orchestrator(
            registry,
            storage=StorageManager([self.storage]),
            config=orch_config,
        )
        self._orch.events.add_listener(self._on_event)
        self._orch.enqueue_batch(self.scenario.seeds(self.config))

        await self._orch.start()
        try:
            await self._monitor()
        finally:
            await self._orch.stop(timeout=self.config.stop_timeout)
            self._update_state()
            self._running = False

    async def _monitor(self) -> None:
        """Poll until all work completes or duration exceeded."""
        while self._running:
            self._update_state()

            if self._orch.queue.is_empty():
                break

            if self.config.duration and self._elapsed >= self.config.duration:
                logger.info("Duration of %ss reached", self.config.duration)
                break

            await asyncio.sleep(0.05)

    def _update_state(self) -> None:
        """Copy queue sizes and token levels into the display state."""
        if not self._orch:
            return

        self.state.elapsed = self._elapsed

        stats = self._orch.get_queue_stats()
        self.state.queued = stats.pending - stats.retrying
        self.state.retrying = stats.retrying
        self.state.running = stats.in_flight
        self.state.completed = stats.completed
        self.state.failed = stats.failed

        for name, status in self._orch.get_rate_status()["sites"].items():
            site = self.state.sites.get(name)
            if site:
                site.tokens = status["tokens"]

    def _on_event(self, event: Event) -> None:
        """Fold one orchestrator event into the display state."""
        s = self.state
        site = s.sites.get(event.routing_key) if event.routing_key else None
        kind = event.kind

        if kind is EventKind.TASK_ENQUEUED:
            s.submitted += 1
        elif kind is EventKind.TASK_STARTED:
            if site:
                site.in_flight += 1
        elif kind is EventKind.TASK_COMPLETED:
            s.records += event.data.get("records", 0)
            if site:
                site.in_flight = max(0, site.in_flight - 1)
                site.total_completed += 1
        elif kind in (EventKind.TASK_RETRY, EventKind.TASK_FAILED_PERMANENTLY):
            if site:
                site.in_flight = max(0, site.in_flight - 1)
                site.total_failed += 1
        elif kind is EventKind.RATE_LIMITED:
            s.rate_limit_hits += 1
            if site:
                site.rate_limited += 1
        elif kind is EventKind.RECORD_INVALID:
            s.invalid_records += 1
        elif kind is EventKind.RECORDS_FLUSHED:
            s.stored += event.data.get("count", 0)

        if kind is not EventKind.TASK_ENQUEUED:
            self.on_event(kind.value, event.task_id or "", event.routing_key, event.detail)

    @property
    def _elapsed(self) -> float:
        """Elapsed time since start."""
        return time.time() - self.state.start_time

    def stop(self) -> None:
        """Request simulation stop."""
        self._running = False

    async def cleanup(self) -> None:
        """Clean up resources. Call after interrupt or completion."""
        if self._orch:
            try:
                await self._orch.stop(timeout=self.config.stop_timeout)
            except Exception:
                logger.exception("Error stopping orchestrator during cleanup")
            self._orch = None
        await self.storage.close()
        self._running = False
