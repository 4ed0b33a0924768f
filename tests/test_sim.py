"""Simulator: scenarios, runner and display plumbing."""

import io

import pytest
from rich.console import Console

from catalogcue import AdapterRegistry, OrchestratorConfig, PageKind
from catalogcue.errors import FetchError, PageGoneError
from catalogcue_sim.catalog import CatalogProfile, SyntheticCatalog
from catalogcue_sim.cli import build_parser, config_from_args, print_final_summary
from catalogcue_sim.display import SimulationState, SimulatorDisplay
from catalogcue_sim.runner import SimConfig, SimulationRunner
from catalogcue_sim.scenarios import get_scenario, list_scenarios


def quick_config(**overrides):
    settings = dict(
        pages=2,
        products_per_page=3,
        latency_ms=0,
        seed=1,
        site_rpm=6000,
        global_rate="6000/min",
        global_burst="1000/10s",
        retry_delay=0.01,
        flush_interval=0.05,
        duration=10,
    )
    settings.update(overrides)
    return SimConfig(**settings)


class TestSyntheticCatalog:
    """Tests for the fake storefront."""

    def test_classify(self):
        catalog = SyntheticCatalog("acme", CatalogProfile())
        assert catalog.classify(catalog.seed_target) == PageKind.LISTING
        assert catalog.classify("https://acme.example/products/1-0") == PageKind.PRODUCT
        assert catalog.classify("https://acme.example/about") == PageKind.UNKNOWN
        assert catalog.can_handle("https://acme.example/products/1-0")
        assert not catalog.can_handle("https://other.example/products/1-0")

    async def test_discover_paginates(self):
        catalog = SyntheticCatalog("acme", CatalogProfile(pages=2, products_per_page=2, latency_ms=0))

        first = await catalog.discover(catalog.seed_target, "acme")
        assert first.discovered_targets == ["https://acme.example/products/1-0", "https://acme.example/products/1-1"]
        assert first.has_more
        last = await catalog.discover(first.next_target, "acme")
        assert not last.has_more
        assert last.next_target is None

    async def test_extract_and_failures(self):
        ok = SyntheticCatalog("acme", CatalogProfile(latency_ms=0))
        record = await ok.extract("https://acme.example/products/1-0", "acme")
        assert record["id"] == "acme-1-0"
        assert record["url"] == "https://acme.example/products/1-0"

        gone = SyntheticCatalog("acme", CatalogProfile(latency_ms=0, gone_rate=1.0))
        with pytest.raises(PageGoneError):
            await gone.extract("https://acme.example/products/1-0", "acme")

        broken = SyntheticCatalog("acme", CatalogProfile(latency_ms=0, error_rate=1.0))
        with pytest.raises(FetchError):
            await broken.discover(broken.seed_target, "acme")

        invalid = SyntheticCatalog("acme", CatalogProfile(latency_ms=0, invalid_rate=1.0))
        assert "name" not in await invalid.extract("https://acme.example/products/1-0", "acme")


class TestScenarios:
    """Tests for scenario lookup and setup."""

    def test_list_and_get(self):
        names = [info.name for info in list_scenarios()]
        assert names == ["single_site", "multi_site", "flaky"]
        assert get_scenario("flaky").info.name == "flaky"
        with pytest.raises(ValueError, match="Unknown scenario"):
            get_scenario("nope")

    def test_multi_site_setup(self):
        scenario = get_scenario("multi_site")
        registry = AdapterRegistry()
        orch_config = OrchestratorConfig()
        state = SimulationState()
        config = quick_config(site_rpm=120)

        scenario.setup(registry, orch_config, config, state)
        seeds = scenario.seeds(config)

        assert registry.routing_keys() == ["acme", "globex", "initech"]
        assert orch_config.sites["acme"].capacity == 120
        assert orch_config.sites["initech"].capacity == 15
        assert set(state.sites) == {"acme", "globex", "initech"}
        assert {s.routing_key: s.priority for s in seeds} == {"acme": 5, "globex": 5, "initech": 3}

    def test_single_site_without_rpm_uses_defaults(self):
        scenario = get_scenario("single_site")
        orch_config = OrchestratorConfig()
        state = SimulationState()

        scenario.setup(AdapterRegistry(), orch_config, quick_config(site_rpm=None), state)

        assert orch_config.sites == {}
        assert state.sites["acme"].capacity == orch_config.default_site_limits.capacity

    def test_seeds_before_setup(self):
        with pytest.raises(RuntimeError):
            get_scenario("single_site").seeds(quick_config())


class TestSimulationRunner:
    """Tests for running the real orchestrator against synthetic stores."""

    async def test_single_site_completes(self):
        state = SimulationState()
        runner = SimulationRunner(quick_config(), state)

        await runner.run()
        await runner.cleanup()

        # 2 listing pages + 2 * 3 products
        assert state.submitted == 8
        assert state.completed == 8
        assert state.failed == 0
        assert state.queued == state.running == 0
        assert state.records == 6
        assert state.stored == 6
        assert len(runner.storage.records) == 6
        assert state.sites["acme"].total_completed == 8
        assert state.sites["acme"].in_flight == 0
        assert state.events

    async def test_multi_site_completes(self):
        state = SimulationState()
        runner = SimulationRunner(quick_config(scenario="multi_site"), state)

        await runner.run()
        await runner.cleanup()

        assert state.completed == 24
        assert {name: s.total_completed for name, s in state.sites.items()} == {
            "acme": 8, "globex": 8, "initech": 8,
        }

    async def test_flaky_scenario_accounts_for_every_task(self):
        state = SimulationState()
        runner = SimulationRunner(quick_config(scenario="flaky", pages=4, products_per_page=5, max_retries=5), state)

        await runner.run()
        await runner.cleanup()

        assert state.submitted > 0
        assert state.completed + state.failed == state.submitted
        assert state.records + state.invalid_records <= state.completed
        assert state.stored == state.records
        assert state.sites["wobbly"].total_failed > 0

    async def test_duration_limit_ends_run(self):
        state = SimulationState()
        runner = SimulationRunner(quick_config(latency_ms=50, pages=5, concurrency=1, duration=0.1), state)

        await runner.run()
        await runner.cleanup()

        assert 0 < state.completed < state.submitted
        assert state.running == 0


class TestDisplay:
    """Tests that the display renders state without a terminal."""

    def test_layout_renders(self):
        state = SimulationState(submitted=10, completed=4, queued=5, running=1)
        state.add_event("task-completed", "abc123", "acme", "1 records")
        console = Console(file=io.StringIO(), width=120)

        console.print(SimulatorDisplay(state, console=console)._build_layout())

        assert "catalogcue-sim" in console.file.getvalue()

    def test_event_log_is_bounded(self):
        state = SimulationState(max_events=3)
        for i in range(5):
            state.add_event("task-started", str(i))
        assert [e.task_id for e in state.events] == ["4", "3", "2"]

    def test_final_summary(self):
        state = SimulationState(submitted=3, completed=2, failed=1, records=2, stored=2)
        console = Console(file=io.StringIO(), width=100)
        print_final_summary(state, console=console)
        assert "Simulation Results" in console.file.getvalue()


class TestCli:
    """Tests for argument parsing."""

    def test_defaults(self):
        parser = build_parser()
        config = config_from_args(parser.parse_args([]), parser)
        assert config.scenario == "single_site"
        assert config.concurrency == 3
        assert config.site_rpm == 240.0

    def test_flags(self):
        parser = build_parser()
        args = parser.parse_args([
            "--scenario", "flaky", "--pages", "4", "--site-rpm", "0",
            "--global-rate", "30/min", "--burst", "5/10s", "--seed", "3",
        ])
        config = config_from_args(args, parser)
        assert config.scenario == "flaky"
        assert config.pages == 4
        assert config.site_rpm is None
        assert config.orchestrator_config().global_limits.max_requests == 30
        assert config.seed == 3

    def test_bad_rate_exits(self):
        parser = build_parser()
        with pytest.raises(SystemExit):
            config_from_args(parser.parse_args(["--global-rate", "lots"]), parser)
