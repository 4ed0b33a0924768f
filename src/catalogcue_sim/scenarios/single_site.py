"""Single site scenario - the default workload pattern.

One store, paginated listings fanning out into product pages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from catalogcue import TaskSpec
from catalogcue_sim.catalog import CatalogProfile, SyntheticCatalog
from catalogcue_sim.scenarios import Scenario, ScenarioInfo

if TYPE_CHECKING:
    from catalogcue import AdapterRegistry, OrchestratorConfig
    from catalogcue_sim.display import SimulationState
    from catalogcue_sim.runner import SimConfig


def profile_from(config: SimConfig) -> CatalogProfile:
    """Store behaviour as set on the command line."""
    return CatalogProfile(
        pages=config.pages,
        products_per_page=config.products_per_page,
        latency_ms=config.latency_ms,
        latency_jitter=config.latency_jitter,
        outlier_chance=config.outlier_chance,
        outlier_multiplier=config.outlier_multiplier,
        error_rate=config.error_rate,
        gone_rate=config.gone_rate,
        invalid_rate=config.invalid_rate,
    )


class SingleSiteScenario(Scenario):
    """One store behind one token bucket.

    The site bucket is usually the bottleneck here, so this is the place
    to watch tokens drain and refill.
    """

    def __init__(self) -> None:
        self._adapter: SyntheticCatalog | None = None

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="single_site",
            description="One store, paginated listings and products (default)",
        )

    def setup(
        self,
        registry: AdapterRegistry,
        orch_config: OrchestratorConfig,
        config: SimConfig,
        state: SimulationState,
    ) -> None:
        self._adapter = self.add_site(
            "acme", profile_from(config), config.site_rpm,
            registry, orch_config, config, state,
        )

    def seeds(self, config: SimConfig) -> list[TaskSpec]:
        if self._adapter is None:
            raise RuntimeError("setup() must run before seeds()")
        return [TaskSpec(self._adapter.seed_target, "acme", priority=config.priority)]
