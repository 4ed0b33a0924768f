"""Orchestrator: dispatch, outcomes, storage flushes and lifecycle."""

import asyncio

import pytest

from catalogcue import (
    AdapterRegistry,
    DiscoveryResult,
    EventKind,
    GlobalLimits,
    Orchestrator,
    OrchestratorConfig,
    PageKind,
    RunState,
    SiteAdapter,
    SiteLimits,
    TaskState,
)
from catalogcue.errors import FetchError, PageGoneError
from catalogcue.storage import MemoryStorage, StorageBackend, StorageManager


def fast_config(**overrides):
    """Config with budgets high enough that only the test's own limits matter."""
    settings = dict(
        concurrency=3,
        retry_delay=0.01,
        retry_jitter=0,
        tick_interval=0.05,
        global_limits=GlobalLimits(1000, 60, 1000, 10),
        default_site_limits=SiteLimits(capacity=1000, refill_rate=1000, min_interval=0),
    )
    settings.update(overrides)
    return OrchestratorConfig(**settings)


class FakeSite(SiteAdapter):
    """Listings are targets starting with 'list:', products with 'prod:'."""

    def __init__(self, children=None, fail_times=None, latency=0.0, bad=()):
        self.children = children or {}
        self.fail_times = dict(fail_times or {})
        self.latency = latency
        self.bad = set(bad)
        self.calls = []
        self.active = 0
        self.max_active = 0

    def classify(self, target):
        if target.startswith("list:"):
            return PageKind.LISTING
        if target.startswith("prod:"):
            return PageKind.PRODUCT
        return PageKind.UNKNOWN

    async def _visit(self, target):
        self.calls.append(target)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            error = self.fail_times.get(target)
            if error is not None:
                exc, remaining = error
                if remaining:
                    self.fail_times[target] = (exc, remaining - 1)
                    raise exc
        finally:
            self.active -= 1

    async def discover(self, target, routing_key):
        await self._visit(target)
        return DiscoveryResult(discovered_targets=list(self.children.get(target, [])))

    async def extract(self, target, routing_key):
        await self._visit(target)
        record = {"id": target, "name": f"Item {target}", "url": f"https://{routing_key}.example/{target}"}
        if target in self.bad:
            del record["name"]
        return record


class DownStorage(StorageBackend):
    """Backend that always fails to write."""

    def __init__(self, name="down"):
        self.name = name

    @property
    def destination(self):
        return self.name

    async def write(self, records):
        raise OSError("disk full")


class SlowStorage(MemoryStorage):
    """Memory backend whose writes take a while."""

    def __init__(self, delay):
        super().__init__("slow")
        self.delay = delay

    async def write(self, records):
        await asyncio.sleep(self.delay)
        return await super().write(records)


def make_orchestrator(
adapter=None, storage=None, key="A", **config):
    registry = AdapterRegistry({key: adapter or FakeSite()})
    return Orchestrator(registry, storage=storage, config=fast_config(**config))


class TestEndToEnd:
    """A listing with three products, run to completion."""

    async def test_listing_fans_out_and_records_are_stored(self):
        site = FakeSite(children={"list:A": ["prod:1", "prod:2", "prod:3"]})
        memory = MemoryStorage()
        orch = make_orchestrator(site, storage=StorageManager([memory]))

        stats = await orch.run([{"target": "list:A", "routing_key": "A", "priority": 5}], timeout=5)

        assert stats.total_processed == 4
        assert stats.successful == 4
        assert stats.failed == 0
        assert stats.discovered == 3
        assert stats.records_collected == 3
        assert stats.records_stored == 3
        assert sorted(r["id"] for r in memory.records) == ["prod:1", "prod:2", "prod:3"]
        assert all(r["routing_key"] == "A" for r in memory.records)
        assert orch.state == RunState.STOPPED

    async def test_products_queued_above_their_listing(self):
        site = FakeSite(children={"list:A": ["prod:1"]})
        orch = make_orchestrator(site)

        await orch.run([{"target": "list:A", "routing_key": "A", "priority": 5}], timeout=5)

        done = {t.target: t for t in orch.queue.items(TaskState.COMPLETED)}
        assert done["prod:1"].priority == 6
        assert done["prod:1"].metadata["discovered_from"] == "list:A"
        assert done["prod:1"].metadata["page_kind"] == "product"
        assert done["list:A"].result == {"records": 0, "invalid": 0, "discovered": 1}

    async def test_next_listing_page_keeps_parent_priority(self):
        class Paged(FakeSite):
            async def discover(self, target, routing_key):
                await self._visit(target)
                if target == "list:1":
                    return DiscoveryResult(discovered_targets=["prod:a"], has_more=True, next_target="list:2")
                return DiscoveryResult(discovered_targets=["prod:b"])

        site = Paged()
        orch = make_orchestrator(site, concurrency=1)
        await orch.run([{"target": "list:1", "routing_key": "A", "priority": 5}], timeout=5)

        done = {t.target: t for t in orch.queue.items(TaskState.COMPLETED)}
        assert done["list:2"].priority == 5
        assert done["list:2"].metadata["parent_target"] == "list:1"
        # The product from page 1 runs before page 2 is fetched
        assert site.calls == ["list:1", "prod:a", "list:2", "prod:b"]

    async def test_discovered_duplicates_are_skipped(self):
        site = FakeSite(children={
            "list:1": ["prod:1", "prod:1", "", "prod:2"],
            "list:2": ["prod:2", "prod:3"],
        })
        orch = make_orchestrator(site, concurrency=1)

        stats = await orch.run([
            {"target": "list:1", "routing_key": "A"},
            {"target": "list:2", "routing_key": "A"},
        ], timeout=5)

        assert sorted(c for c in site.calls if c.startswith("prod:")) == ["prod:1", "prod:2", "prod:3"]
        assert stats.discovered == 3

    async def test_unknown_page_completes_without_records(self):
        orch = make_orchestrator()
        stats = await orch.run([{"target": "about-us", "routing_key": "A"}], timeout=5)
        assert stats.successful == 1
        assert stats.records_collected == 0

    async def test_sync_adapter_methods(self):
        class SyncSite(SiteAdapter):
            def classify(self, target):
                return "product"

            def discover(self, target, routing_key):
                return DiscoveryResult()

            def extract(self, target, routing_key):
                return {"id": "1", "name": "Sync", "url": "https://a.example/1"}

        memory = MemoryStorage()
        orch = make_orchestrator(SyncSite(), storage=StorageManager([memory]))
        await orch.run([{"target": "anything", "routing_key": "A"}], timeout=5)
        assert [r["name"] for r in memory.records] == ["Sync"]


class TestFailures:
    """Retries, permanent failures and invalid records."""

    async def test_transient_failures_are_retried(self):
        site = FakeSite(fail_times={"prod:1": (FetchError("flaky"), 2)})
        orch = make_orchestrator(site)
        sub = orch.events.subscribe({EventKind.TASK_RETRY})

        stats = await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)

        assert stats.successful == 1
        assert stats.failed == 2
        assert stats.total_processed == 3
        retries = sub.drain()
        assert [e.data["attempt"] for e in retries] == [1, 2]
        assert all(e.detail == "flaky" for e in retries)

    async def test_exhausted_retries_fail_permanently(self):
        site = FakeSite(fail_times={"prod:1": (FetchError("down"), 99)})
        orch = make_orchestrator(site, max_retries=2)
        sub = orch.events.subscribe({EventKind.TASK_FAILED_PERMANENTLY})

        stats = await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)

        assert site.calls == ["prod:1"] * 3
        assert stats.failed == 3
        assert stats.successful == 0
        [failed] = orch.failed_tasks()
        assert failed.error == "down"
        assert failed.attempt == 2
        assert [e.data["attempts"] for e in sub.drain()] == [3]

    async def test_page_gone_is_not_retried(self):
        site = FakeSite(fail_times={"prod:1": (PageGoneError("HTTP 404"), 99)})
        orch = make_orchestrator(site)

        await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)

        assert site.calls == ["prod:1"]
        assert orch.get_queue_stats().failed == 1

    async def test_missing_adapter_fails_without_spending_budget(self):
        orch = make_orchestrator()
        sub = orch.events.subscribe({EventKind.TASK_FAILED_PERMANENTLY})

        await orch.run([{"target": "prod:1", "routing_key": "nobody"}], timeout=5)

        [failed] = orch.failed_tasks()
        assert "nobody" in failed.error
        assert failed.attempt == 0
        assert orch.get_rate_status()["global"]["requests_in_window"] == 0
        assert len(sub.drain()) == 1

    async def test_invalid_records_are_dropped(self):
        site = FakeSite(bad={"prod:2"})
        memory = MemoryStorage()
        orch = make_orchestrator(site, storage=StorageManager([memory]))
        sub = orch.events.subscribe({EventKind.RECORD_INVALID})

        stats = await orch.run([
            {"target": "prod:1", "routing_key": "A"},
            {"target": "prod:2", "routing_key": "A"},
        ], timeout=5)

        assert stats.successful == 2
        assert stats.records_collected == 1
        assert stats.records_invalid == 1
        assert [r["id"] for r in memory.records] == ["prod:1"]
        [event] = sub.drain()
        assert event.target == "prod:2"
        assert "name" in event.detail

    async def test_wrong_discover_result_type_is_a_failure(self):
        class Broken(FakeSite):
            async def discover(self, target, routing_key):
                return ["not", "a", "result"]

        orch = make_orchestrator(Broken(), max_retries=0)
        await orch.run([{"target": "list:1", "routing_key": "A"}], timeout=5)

        [failed] = orch.failed_tasks()
        assert "discover returned list" in failed.error


class TestLimits:
    """Concurrency cap and rate budgets."""

    async def test_concurrency_cap(self):
        site = FakeSite(latency=0.05)
        orch = make_orchestrator(site, concurrency=2)

        await orch.run([{"target": f"prod:{i}", "routing_key": "A"} for i in range(6)], timeout=5)

        assert site.max_active == 2
        assert len(site.calls) == 6

    async def test_priority_order_with_single_slot(self):
        site = FakeSite()
        orch = make_orchestrator(site, concurrency=1)

        await orch.run([
            {"target": "prod:low", "routing_key": "A", "priority": 1},
            {"target": "prod:high", "routing_key": "A", "priority": 9},
            {"target": "prod:mid", "routing_key": "A", "priority": 5},
        ], timeout=5)

        assert site.calls == ["prod:high", "prod:mid", "prod:low"]

    async def test_site_bucket_waits_are_counted(self):
        orch = make_orchestrator(sites={"A": SiteLimits(capacity=1, refill_rate=50, min_interval=0)})
        sub = orch.events.subscribe({EventKind.RATE_LIMITED})

        stats = await orch.run([{"target": f"prod:{i}", "routing_key": "A"} for i in range(3)], timeout=5)

        events = sub.drain()
        assert stats.rate_limit_hits == len(events) == 2
        assert {e.detail for e in events} == {"site"}

    async def test_global_burst_waits_are_counted(self):
        orch = make_orchestrator(global_limits=GlobalLimits(100, 60, 2, 0.1))
        sub = orch.events.subscribe({EventKind.RATE_LIMITED})

        stats = await orch.run([{"target": f"prod:{i}", "routing_key": "A"} for i in range(3)], timeout=5)

        assert stats.rate_limit_hits >= 1
        assert "global" in {e.detail for e in sub.drain()}

    async def test_orchestrators_do_not_share_state(self):
        first = make_orchestrator(sites={"A": SiteLimits(capacity=1, refill_rate=0.001, min_interval=0)})
        second = make_orchestrator(sites={"A": SiteLimits(capacity=1, refill_rate=0.001, min_interval=0)})

        await first.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)
        # The first orchestrator's empty bucket must not slow the second one down
        stats = await second.run([{"target": "prod:1", "routing_key": "A"}], timeout=1)

        assert stats.rate_limit_hits == 0
        assert first.queue is not second.queue
        assert first.get_queue_stats().completed == second.get_queue_stats().completed == 1


class TestStorage:
    """Flushing buffered records."""

    async def test_periodic_flush_at_threshold(self):
        site = FakeSite(latency=0.02)
        memory = MemoryStorage()
        orch = make_orchestrator(
            site, storage=StorageManager([memory]), flush_interval=0.05, flush_threshold=2, concurrency=1,
        )
        orch.enqueue_batch([{"target": f"prod:{i}", "routing_key": "A"} for i in range(10)])

        await orch.start()
        await orch.join(timeout=5)
        flushed_while_running = len(memory.batches)
        await orch.stop()

        assert flushed_while_running >= 1
        assert len(memory.records) == 10

    async def test_storage_error_keeps_records_buffered(self):
        class Failing:
            async def store(self, records):
                raise OSError("disk full")

        orch = make_orchestrator(storage=Failing())
        sub = orch.events.subscribe({EventKind.STORAGE_ERROR})

        stats = await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)

        assert stats.records_stored == 0
        assert [r["id"] for r in orch.pending_records] == ["prod:1"]
        assert sub.drain()[0].detail == "disk full"

    async def test_failing_destinations_keep_records_buffered(self):
        manager = StorageManager([DownStorage("a"), DownStorage("b")])
        orch = make_orchestrator(storage=manager)
        sub = orch.events.subscribe({EventKind.STORAGE_ERROR})

        stats = await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)

        assert stats.records_stored == 0
        assert [r["id"] for r in orch.pending_records] == ["prod:1"]
        event = sub.drain()[-1]
        assert event.detail == "a: disk full; b: disk full"
        assert [r.ok for r in event.data["results"]] == [False, False]

        # Buffered records go out once a destination works again
        memory = MemoryStorage()
        manager.add(memory)
        results = await orch.flush()
        assert [r.ok for r in results] == [False, False, True]
        assert [r["id"] for r in memory.records] == ["prod:1"]
        assert orch.pending_records == []
        assert orch.get_run_stats().records_stored == 1

    async def test_storage_without_destinations_keeps_records_buffered(self):
        orch = make_orchestrator(storage=StorageManager())
        sub = orch.events.subscribe({EventKind.STORAGE_ERROR, EventKind.RECORDS_FLUSHED})

        stats = await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)

        assert stats.records_stored == 0
        assert len(orch.pending_records) == 1
        assert [e.kind for e in sub.drain()] == [EventKind.STORAGE_ERROR]

    async def test_stop_lets_periodic_flush_finish(self):
        slow = SlowStorage(delay=0.5)
        orch = make_orchestrator(storage=StorageManager([slow]), flush_interval=0.05, flush_threshold=1)
        orch.enqueue("prod:1", "A")

        await orch.start()
        await orch.join(timeout=5)
        await asyncio.sleep(0.1)  # periodic flush is now mid-write
        await orch.stop()

        assert [r["id"] for r in slow.records] == ["prod:1"]
        assert orch.pending_records == []
        assert orch.get_run_stats().records_stored == 1

    async def test_cancelled_flush_returns_records_to_buffer(self):
        orch = make_orchestrator()
        await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)
        slow = SlowStorage(delay=5)
        orch.storage = StorageManager([slow])

        flushing = asyncio.create_task(orch.flush())
        await asyncio.sleep(0.05)
        assert orch.pending_records == []
        flushing.cancel()
        with pytest.raises(asyncio.CancelledError):
            await flushing

        assert slow.records == []
        assert [r["id"] for r in orch.pending_records] == ["prod:1"]

    async def test_flush_without_storage_keeps_nothing_lost(self):
        orch = make_orchestrator()
        await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)
        assert await orch.flush() == []
        assert len(orch.pending_records) == 1

    async def test_flush_reports_per_destination(self):
        memory = MemoryStorage("mem")
        orch = make_orchestrator(storage=StorageManager([memory]))
        sub = orch.events.subscribe({EventKind.RECORDS_FLUSHED})

        await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)

        [event] = sub.drain()
        assert event.data["count"] == 1
        assert [r.destination for r in event.data["results"]] == ["mem"]


class TestLifecycle:
    """Start, stop and join semantics."""

    async def test_start_is_nonblocking_and_idempotent(self):
        orch = make_orchestrator()
        await orch.start()
        loop_task = orch._loop_task
        await orch.start()

        assert orch.is_running
        assert orch._loop_task is loop_task
        await orch.stop()

    async def test_stop_is_idempotent(self):
        orch = make_orchestrator()
        sub = orch.events.subscribe({EventKind.RUN_STOPPED})

        await orch.stop()  # Never started
        await orch.start()
        await orch.stop()
        await orch.stop()

        assert orch.state == RunState.STOPPED
        assert len(sub.drain()) == 1

    async def test_stop_waits_for_in_flight_work(self):
        site = FakeSite(latency=0.1)
        orch = make_orchestrator(site)
        orch.enqueue("prod:1", "A")
        await orch.start()
        await asyncio.sleep(0.02)

        await orch.stop()

        assert orch.get_queue_stats().completed == 1

    async def test_stop_timeout_returns_task_to_queue(self):
        site = FakeSite(latency=5)
        orch = make_orchestrator(site)
        orch.enqueue("prod:1", "A")
        await orch.start()
        await asyncio.sleep(0.02)

        await orch.stop(timeout=0.05)

        stats = orch.get_queue_stats()
        assert stats.in_flight == 0
        assert stats.pending == 1
        assert stats.retrying == 1

    async def test_pending_work_survives_stop_and_restart(self):
        site = FakeSite(latency=0.02)
        orch = make_orchestrator(site, concurrency=1)
        orch.enqueue_batch([{"target": f"prod:{i}", "routing_key": "A"} for i in range(5)])

        await orch.start()
        await asyncio.sleep(0.03)
        await orch.stop()
        assert orch.get_queue_stats().pending > 0

        await orch.start()
        await orch.join(timeout=5)
        await orch.stop()
        assert orch.get_queue_stats().completed == 5

    async def test_join_requires_running_when_work_remains(self):
        orch = make_orchestrator()
        orch.enqueue("prod:1", "A")
        with pytest.raises(RuntimeError):
            await orch.join(timeout=1)

    async def test_enqueue_while_running_wakes_loop(self):
        orch = make_orchestrator(tick_interval=10)
        await orch.start()
        orch.enqueue("prod:1", "A")
        await orch.join(timeout=1)
        await orch.stop()
        assert orch.get_run_stats().successful == 1

    async def test_events_reach_every_subscriber_in_order(self):
        orch = make_orchestrator()
        a = orch.events.subscribe()
        b = orch.events.subscribe()

        await orch.run([{"target": "prod:1", "routing_key": "A"}], timeout=5)

        kinds = [e.kind for e in a.drain()]
        assert kinds == [e.kind for e in b.drain()]
        assert kinds == [
            EventKind.TASK_ENQUEUED,
            EventKind.RUN_STARTED,
            EventKind.TASK_STARTED,
            EventKind.TASK_COMPLETED,
            EventKind.RUN_STOPPED,
        ]

    async def test_run_stats_is_a_copy(self):
        orch = make_orchestrator()
        stats = orch.get_run_stats()
        stats.successful = 99
        assert orch.get_run_stats().successful == 0
