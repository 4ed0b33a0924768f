"""Flaky scenario - a store that misbehaves.

Exercises retry with backoff, permanent failures for pages that are
gone, and records that fail validation.
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


class FlakyScenario(Scenario):
    """One well-behaved store next to one that errors, times out and 404s.

    Rates given on the command line are raised to at least the flaky
    defaults, never lowered.
    """

    ERROR_RATE = 0.3
    GONE_RATE = 0.05
    INVALID_RATE = 0.1

    def __init__(self) -> None:
        self._adapters: list[SyntheticCatalog] = []

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="flaky",
            description="A healthy store and a flaky one (errors, 404s, bad records)",
        )

    def setup(
        self,
        registry: AdapterRegistry,
        orch_config: OrchestratorConfig,
        config: SimConfig,
        state: SimulationState,
    ) -> None:
        base = profile_from(config)
        flaky = replace(
            base,
            error_rate=max(base.error_rate, self.ERROR_RATE),
            gone_rate=max(base.gone_rate, self.GONE_RATE),
            invalid_rate=max(base.invalid_rate, self.INVALID_RATE),
            outlier_chance=max(base.outlier_chance, 0.1),
        )
        self._adapters = [
            self.add_site("steady", base, config.site_rpm, registry, orch_config, config, state),
            self.add_site("wobbly", flaky, config.site_rpm, registry, orch_config, config, state),
        ]
        state.error_rate = flaky.error_rate

    def seeds(self, config: SimConfig) -> list[TaskSpec]:
        return [
            TaskSpec(adapter.seed_target, adapter.site, priority=config.priority)
            for adapter in self._adapters
        ]
