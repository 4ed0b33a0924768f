"""Built-in scenarios for catalogcue-sim.

Scenarios define workload patterns - which stores exist, how they behave,
and what gets seeded.
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from catalogcue import AdapterRegistry, OrchestratorConfig, TaskSpec
    from catalogcue_sim.catalog import CatalogProfile, SyntheticCatalog
    from catalogcue_sim.display import SimulationState
    from catalogcue_sim.runner import SimConfig


@dataclass
class ScenarioInfo:
    """Metadata about a scenario."""
    name: str
    description: str


class Scenario(ABC):
    """Base class for simulation scenarios.

    A scenario defines:
    - Stores (adapters, with their latency and failure profiles)
    - Per-store rate limits
    - Seed targets
    """

    @property
    @abstractmethod
    def info(self) -> ScenarioInfo:
        """Return scenario metadata."""
        ...

    @abstractmethod
    def setup(
        self,
        registry: "AdapterRegistry",
        orch_config: "OrchestratorConfig",
        config: "SimConfig",
        state: "SimulationState",
    ) -> None:
        """Register adapters and site limits.

        Args:
            registry: Registry the orchestrator will route through
            orch_config: Orchestrator config, to add per-site limits to
            config: Simulation configuration (latency, error_rate, etc.)
            state: State object to update for display
        """
        ...

    @abstractmethod
    def seeds(self, config: "SimConfig") -> list["TaskSpec"]:
        """Targets to enqueue before starting."""
        ...

    @staticmethod
    def add_site(
        name: str,
        profile: "CatalogProfile",
        rpm: float | None,
        registry: "AdapterRegistry",
        orch_config: "OrchestratorConfig",
        config: "SimConfig",
        state: "SimulationState",
    ) -> "SyntheticCatalog":
        """Register one synthetic store, its limits and its display row."""
        from catalogcue import SiteLimits
        from catalogcue_sim.catalog import SyntheticCatalog
        from catalogcue_sim.display import SiteStatus

        rng = random.Random(f"{config.seed}:{name}") if config.seed is not None else None
        adapter = SyntheticCatalog(name, profile, rng)
        registry.register(name, adapter)

        limits = orch_config.default_site_limits
        if rpm:
            limits = SiteLimits.from_requests_per_minute(rpm, min_interval=0.0)
            orch_config.sites[name] = limits

        state.sites[name] = SiteStatus(
            name=name,
            capacity=limits.capacity,
            refill_rate=limits.refill_rate,
            tokens=limits.capacity,
            start_time=time.time(),
        )
        return adapter


# Import built-in scenarios
from catalogcue_sim.scenarios.single_site import SingleSiteScenario
from catalogcue_sim.scenarios.multi_site import MultiSiteScenario
from catalogcue_sim.scenarios.flaky import FlakyScenario

# Registry of built-in scenarios
SCENARIOS: dict[str, type[Scenario]] = {
    "single_site": SingleSiteScenario,
    "multi_site": MultiSiteScenario,
    "flaky": FlakyScenario,
}


def get_scenario(name: str) -> Scenario:
    """Get a scenario instance by name."""
    if name not in SCENARIOS:
        available = ", ".join(SCENARIOS.keys())
        raise ValueError(f"Unknown scenario: {name}. Available: {available}")
    return SCENARIOS[name]()


def list_scenarios() -> list[ScenarioInfo]:
    """List all available scenarios."""
    return [cls().info for cls in SCENARIOS.values()]
