"""Multi-site scenario - several stores sharing one global budget.

Each store has its own rate limit. The fast store is held back by the
global window rather than its own bucket; the slow one by its bucket.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

from catalogcue import TaskSpec
from catalogcue_sim.catalog import SyntheticCatalog
from catalogcue_sim.scenarios import Scenario, ScenarioInfo
from catalogcue_sim.scenarios.single_site import profile_from

if TYPE_CHECKING:
    from catalogcue import AdapterRegistry, OrchestratorConfig
    from catalogcue_sim.display import SimulationState
    from catalogcue_sim.runner import SimConfig


# (name, rpm multiplier, latency multiplier, priority)
STORES = [
    ("acme", 2.0, 0.5, 5),
    ("globex", 1.0, 1.0, 5),
    ("initech", 0.25, 2.0, 3),
]


class MultiSiteScenario(Scenario):
    """Three stores with different speeds and limits.

    ``initech`` is seeded at a lower priority, so its listings only get
    dispatched when the other stores have nothing eligible.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, tuple[SyntheticCatalog, int]] = {}

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="multi_site",
            description="Three stores with different rate limits and latencies",
        )

    def setup(
        self,
        registry: AdapterRegistry,
        orch_config: OrchestratorConfig,
        config: SimConfig,
        state: SimulationState,
    ) -> None:
        base = profile_from(config)
        for name, rpm_factor, latency_factor, priority in STORES:
            profile = replace(base, latency_ms=int(base.latency_ms * latency_factor))
            rpm = config.site_rpm * rpm_factor if config.site_rpm else None
            adapter = self.add_site(name, profile, rpm, registry, orch_config, config, state)
            self._adapters[name] = (adapter, priority)

    def seeds(self, config: SimConfig) -> list[TaskSpec]:
        return [
            TaskSpec(adapter.seed_target, name, priority=priority)
            for name, (adapter, priority) in self._adapters.items()
        ]
