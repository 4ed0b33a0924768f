"""The orchestrator: binds queue, rate budgets and collaborators into one loop."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from typing import Any, Callable

from catalogcue.adapters import AdapterRegistry, SiteAdapter, maybe_await
from catalogcue.browser import BrowserResource
from catalogcue.config import OrchestratorConfig
from catalogcue.errors import FetchTimeoutError, RecordValidationError
from catalogcue.events import EventBus, EventKind
from catalogcue.models import (
    DiscoveryResult,
    PageKind,
    QueueStats,
    RunState,
    RunStats,
    StoreResult,
    Task,
    TaskSpec,
    TaskState,
)
from catalogcue.queue import TaskQueue
from catalogcue.ratelimit import GlobalRateLimiter, SiteRateLimiter
from catalogcue.validation import RecordValidator

logger = logging.getLogger(__name__)

_MIN_WAIT = 0.001


class Orchestrator:
    """
    Control loop for a catalog crawl.

    The orchestrator decides WHEN a task is fetched. Adapters decide WHAT a
    page yields. It owns one TaskQueue, one SiteRateLimiter and one
    GlobalRateLimiter per instance; nothing is shared between instances.

    Each dispatched task goes through the global window, then its site's
    token bucket, then its adapter. Discovered product pages go back into
    the queue one priority above their parent so a listing's products
    finish before the next listing fans out.

    Example:
        registry = AdapterRegistry({"shop": ShopifyAdapter(fetcher, "https://shop.example")})
        orch = Orchestrator(registry, browser=fetcher, storage=StorageManager([...]))
        orch.enqueue("https://shop.example/collections/all", "shop")
        await orch.start()
        await orch.join()
        await orch.stop()
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        *,
        storage: Any = None,
        browser: BrowserResource | None = None,
        config: OrchestratorConfig | None = None,
        queue: TaskQueue | None = None,
        site_limiter: SiteRateLimiter | None = None,
        global_limiter: GlobalRateLimiter | None = None,
        events: EventBus | None = None,
        validator: RecordValidator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or OrchestratorConfig()
        cfg = self.config

        self.registry = registry
        self.storage = storage
        self.browser = browser
        self.events = events or EventBus()
        self._clock = clock

        self.queue = queue or TaskQueue(
            max_retries=cfg.max_retries,
            retry_delay=cfg.retry_delay,
            default_priority=cfg.default_priority,
            jitter=cfg.retry_jitter,
            clock=clock,
        )

        defaults = cfg.default_site_limits
        self.site_limiter = site_limiter or SiteRateLimiter(
            default_capacity=defaults.capacity,
            default_refill_rate=defaults.refill_rate,
            default_min_interval=defaults.min_interval,
            clock=clock,
        )
        for site, limits in cfg.sites.items():
            self.site_limiter.configure_site(
                site, limits.capacity, limits.refill_rate, limits.min_interval
            )

        limits = cfg.global_limits
        self.global_limiter = global_limiter or GlobalRateLimiter(
            limits.max_requests,
            limits.time_window,
            limits.burst_limit,
            limits.burst_window,
            clock=clock,
        )

        if validator is None:
            validator = RecordValidator() if cfg.validate_records else RecordValidator(schema=None)
        self.validator = validator

        self.state = RunState.IDLE
        self._stats = RunStats()
        self._buffer: list[dict[str, Any]] = []
        self._seen: set[tuple[str, str]] = set()

        self._loop_task: asyncio.Task | None = None
        self._flush_task: asyncio.Task | None = None
        self._periodic_flush: asyncio.Task | None = None
        self._dispatches: dict[str, asyncio.Task] = {}  # task_id -> dispatch
        self._wake = asyncio.Event()
        self._changed = asyncio.Event()

    # --- Enqueue ---

    def enqueue(
        self,
        target: str,
        routing_key: str,
        priority: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Add one task. Raises InvalidTaskError on malformed input."""
        task_id = self.queue.enqueue(target, routing_key, priority, metadata)
        self._seen.add((routing_key, target))
        self._announce(task_id)
        return task_id

    def enqueue_batch(self, tasks: Iterable[TaskSpec | Mapping[str, Any]]) -> list[str]:
        """Add several tasks at once; ids come back in input order."""
        ids = self.queue.enqueue_batch(tasks)
        for task_id in ids:
            task = self.queue.get(task_id)
            self._seen.add((task.routing_key, task.target))
            self._announce(task_id)
        return ids

    def _announce(self, task_id: str) -> None:
        task = self.queue.get(task_id)
        self.events.emit(
            EventKind.TASK_ENQUEUED,
            task_id=task_id,
            target=task.target,
            routing_key=task.routing_key,
            data={"priority": task.priority},
        )
        self._wake.set()

    # --- Lifecycle ---

    async def start(self) -> None:
        """
        Initialize the browser resource and begin dispatching.

        No-op if already running. A stopped orchestrator can be started
        again; its queue and statistics carry over.
        """
        if self.state is RunState.RUNNING:
            return
        if self.state is RunState.DRAINING:
            logger.warning("Cannot start while draining")
            return

        logger.info("Starting orchestrator...")
        if self.browser is not None:
            await self.browser.initialize()

        self.state = RunState.RUNNING
        self._wake.set()
        self._loop_task = asyncio.create_task(self._run_loop(), name="catalogcue-loop")
        self._flush_task = asyncio.create_task(self._flush_loop(), name="catalogcue-flush")
        self.events.emit(EventKind.RUN_STARTED, data={"concurrency": self.config.concurrency})
        logger.info("Orchestrator started (concurrency=%d)", self.config.concurrency)

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop gracefully.

        Stops dispatching, lets a periodic flush that is already writing
        finish, waits for in-flight tasks (cancelling any still running
        after ``timeout`` seconds, which then count as failed attempts),
        flushes buffered records and closes the browser resource. No-op
        unless running.
        """
        if self.state is not RunState.RUNNING:
            return

        logger.info("Stopping orchestrator...")
        self.state = RunState.DRAINING
        self._wake.set()

        for task in (self._flush_task, self._loop_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._flush_task = None
        self._loop_task = None
        if self._periodic_flush is not None:
            await asyncio.gather(self._periodic_flush, return_exceptions=True)
            self._periodic_flush = None

        if self._dispatches:
            running = list(self._dispatches.values())
            _, pending = await asyncio.wait(running, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled %d in-flight tasks after %ss", len(pending), timeout)
                await asyncio.gather(*pending, return_exceptions=True)

        try:
            await self.flush()
            if self.browser is not None:
                await self.browser.close()
        finally:
            self.state = RunState.STOPPED
            self._changed.set()
            stats = self.get_queue_stats()
            self.events.emit(
                EventKind.RUN_STOPPED,
                data={"queue": stats, "processed": self._stats.total_processed},
            )
            logger.info(
                "Orchestrator stopped: %d processed, %d pending, %d failed",
                self._stats.total_processed, stats.pending, stats.failed,
            )

    async def join(self, timeout: float | None = None) -> None:
        """
        Wait until nothing is pending or in flight.

        Raises:
            RuntimeError: If the orchestrator isn't running while work remains.
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """

        async def _drained() -> None:
            while not self.queue.is_empty():
                if self.state is not RunState.RUNNING:
                    raise RuntimeError(f"Orchestrator is {self.state.value} with work remaining")
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_drained(), timeout)

    async def run(
        self,
        seeds: Iterable[TaskSpec | Mapping[str, Any]],
        timeout: float | None = None,
    ) -> RunStats:
        """Enqueue ``seeds``, run until the queue drains, stop, and return stats."""
        self.enqueue_batch(seeds)
        await self.start()
        try:
            await self.join(timeout)
        finally:
            await self.stop()
        return self.get_run_stats()

    @property
    def is_running(self) -> bool:
        return self.state is RunState.RUNNING

    # --- Loop ---

    async def _run_loop(self) -> None:
        """Dispatch eligible work until no longer running."""
        while self.state is RunState.RUNNING:
            self._wake.clear()
            self._dispatch_ready()
            await self._wait_for_wake()

    def _dispatch_ready(self) -> None:
        while self.queue.in_flight_count < self.config.concurrency:
            task = self.queue.dequeue_next(self._clock())
            if task is None:
                return
            self._dispatches[task.id] = asyncio.create_task(
                self._process(task), name=f"catalogcue-task-{task.id}"
            )

    async def _wait_for_wake(self) -> None:
        """Sleep until something changes, the next retry is due, or a tick passes."""
        timeout = self.config.tick_interval
        if self.queue.in_flight_count < self.config.concurrency:
            next_at = self.queue.next_eligible_at()
            if next_at is not None:
                timeout = min(timeout, max(_MIN_WAIT, next_at - self._clock()))
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _flush_loop(self) -> None:
        while self.state is RunState.RUNNING:
            await asyncio.sleep(self.config.flush_interval)
            if len(self._buffer) >= self.config.flush_threshold:
                logger.info("Auto-saving %d records...", len(self._buffer))
                # Shielded so stop() can let a write in progress finish
                self._periodic_flush = asyncio.ensure_future(self.flush())
                try:
                    await asyncio.shield(self._periodic_flush)
                finally:
                    if self._periodic_flush.done():
                        self._periodic_flush = None

    # --- Dispatch ---

    async def _process(self, task: Task) -> None:
        """Run one task through rate budgets and its adapter, then record the outcome."""
        started = self._clock()
        self.events.emit(
            EventKind.TASK_STARTED,
            task_id=task.id,
            target=task.target,
            routing_key=task.routing_key,
            data={"attempt": task.attempt},
        )
        try:
            adapter = self.registry.get(task.routing_key)
            await self._clear_rate_budget(task)
            records, discovered = await self._run_adapter(adapter, task)
        except asyncio.CancelledError:
            self._record_failure(task, FetchTimeoutError("Cancelled during shutdown"), started)
            raise
        except Exception as e:
            self._record_failure(task, e, started)
        else:
            self._record_success(task, records, discovered, started)
        finally:
            self._dispatches.pop(task.id, None)
            self._wake.set()
            self._changed.set()

    async def _clear_rate_budget(self, task: Task) -> None:
        if await self.global_limiter.wait_for_allowance():
            self._stats.rate_limit_hits += 1
            self.events.emit(
                EventKind.RATE_LIMITED,
                task_id=task.id,
                target=task.target,
                routing_key=task.routing_key,
                detail="global",
            )
        if await self.site_limiter.consume(task.routing_key):
            self._stats.rate_limit_hits += 1
            self.events.emit(
                EventKind.RATE_LIMITED,
                task_id=task.id,
                target=task.target,
                routing_key=task.routing_key,
                detail="site",
            )

    async def _run_adapter(self, adapter: SiteAdapter, task: Task) -> tuple[list[Any], int]:
        """Classify the target and extract or discover accordingly."""
        kind = PageKind(await maybe_await(adapter.classify(task.target)))
        logger.debug("Page kind %s for %s", kind.value, task.target)

        if kind is PageKind.PRODUCT:
            record = await maybe_await(adapter.extract(task.target, task.routing_key))
            return ([record] if record is not None else []), 0

        if kind in (PageKind.LISTING, PageKind.SEARCH):
            result = await maybe_await(adapter.discover(task.target, task.routing_key))
            if not isinstance(result, DiscoveryResult):
                raise TypeError(
                    f"{type(adapter).__name__}.discover returned {type(result).__name__}"
                )
            discovered = self._enqueue_discovered(task, result)
            return list(result.records), discovered

        logger.info("Nothing to do for unknown page: %s", task.target)
        return [], 0

    def _enqueue_discovered(self, parent: Task, result: DiscoveryResult) -> int:
        """Queue product pages above the parent and the next listing page beside it."""
        specs: list[TaskSpec] = []
        for target in result.discovered_targets:
            if self._claim(parent.routing_key, target):
                specs.append(TaskSpec(
                    target=target,
                    routing_key=parent.routing_key,
                    priority=parent.priority + 1,
                    metadata={
                        **parent.metadata,
                        "discovered_from": parent.target,
                        "page_kind": PageKind.PRODUCT.value,
                    },
                ))

        if result.has_more and result.next_target:
            if self._claim(parent.routing_key, result.next_target):
                specs.append(TaskSpec(
                    target=result.next_target,
                    routing_key=parent.routing_key,
                    priority=parent.priority,
                    metadata={
                        **parent.metadata,
                        "parent_target": parent.target,
                        "page_kind": PageKind.LISTING.value,
                    },
                ))

        if not specs:
            return 0
        ids = self.enqueue_batch(specs)
        logger.info("Discovered %d new targets from %s", len(ids), parent.target)
        return len(ids)

    def _claim(self, routing_key: str, target: str) -> bool:
        """Mark a discovered target as queued. False if empty or already seen."""
        if not isinstance(target, str) or not target.strip():
            logger.warning("Skipping empty discovered target from %s", routing_key)
            return False
        if (routing_key, target) in self._seen:
            logger.debug("Already queued: %s", target)
            return False
        self._seen.add((routing_key, target))
        return True

    # --- Outcomes ---

    def _record_success(
        self, task: Task, raw_records: list[Any], discovered: int, started: float
    ) -> None:
        valid: list[dict[str, Any]] = []
        for raw in raw_records:
            if isinstance(raw, dict):
                raw = {**raw}
                raw.setdefault("routing_key", task.routing_key)
            try:
                valid.append(self.validator.validate(raw))
            except RecordValidationError as e:
                self._stats.records_invalid += 1
                logger.warning("Record from %s failed validation: %s", task.target, e)
                self.events.emit(
                    EventKind.RECORD_INVALID,
                    task_id=task.id,
                    target=task.target,
                    routing_key=task.routing_key,
                    detail=str(e),
                )

        self._buffer.extend(valid)
        self._stats.records_collected += len(valid)
        self._stats.discovered += discovered

        payload = {"records": len(valid), "invalid": len(raw_records) - len(valid), "discovered": discovered}
        self.queue.mark_completed(task.id, payload)

        duration = self._clock() - started
        self._stats.total_processed += 1
        self._stats.successful += 1
        self._stats.record_processing_time(duration)

        self.events.emit(
            EventKind.TASK_COMPLETED,
            task_id=task.id,
            target=task.target,
            routing_key=task.routing_key,
            detail=f"{len(valid)} records, {discovered} discovered",
            data={**payload, "duration": duration},
        )

    def _record_failure(self, task: Task, error: BaseException, started: float) -> None:
        duration = self._clock() - started
        self._stats.total_processed += 1
        self._stats.failed += 1
        self._stats.record_processing_time(duration)

        logger.warning("Failed to process %s: %s", task.target, error)
        outcome = self.queue.mark_failed(task.id, error)
        if outcome is None:
            return

        if outcome.state is TaskState.PENDING:
            self.events.emit(
                EventKind.TASK_RETRY,
                task_id=task.id,
                target=task.target,
                routing_key=task.routing_key,
                detail=outcome.error or "",
                data={"attempt": outcome.attempt, "eligible_at": outcome.eligible_at},
            )
        else:
            self.events.emit(
                EventKind.TASK_FAILED_PERMANENTLY,
                task_id=task.id,
                target=task.target,
                routing_key=task.routing_key,
                detail=outcome.error or "",
                data={"attempts": outcome.attempt + 1},
            )

    # --- Storage ---

    async def flush(self) -> list[StoreResult]:
        """
        Hand buffered records to storage now.

        If the storage call raises, is cancelled, or no destination accepts
        the batch, the records go back into the buffer for the next flush.
        """
        if not self._buffer or self.storage is None:
            return []

        batch, self._buffer = self._buffer, []
        logger.info("Saving %d records...", len(batch))
        try:
            results = await self.storage.store(batch)
        except Exception as e:
            logger.exception("Error saving records")
            self._buffer[:0] = batch
            self.events.emit(EventKind.STORAGE_ERROR, detail=str(e), data={"count": len(batch)})
            return []
        except BaseException:
            self._buffer[:0] = batch
            raise

        for result in results:
            if result.ok:
                logger.info("Saved %d records to %s", result.count_written, result.destination)
            else:
                logger.error("Failed to save to %s: %s", result.destination, result.error)

        if not any(r.ok for r in results):
            self._buffer[:0] = batch
            detail = "; ".join(f"{r.destination}: {r.error}" for r in results) or "no storage destinations"
            logger.error("No destination accepted %d records, keeping them buffered", len(batch))
            self.events.emit(
                EventKind.STORAGE_ERROR,
                detail=detail,
                data={"count": len(batch), "results": results},
            )
            return results

        self._stats.records_stored += len(batch)
        self.events.emit(
            EventKind.RECORDS_FLUSHED,
            detail=f"{len(batch)} records",
            data={"count": len(batch), "results": results},
        )
        return results

    @property
    def pending_records(self) -> list[dict[str, Any]]:
        """Records collected but not yet flushed."""
        return list(self._buffer)

    # --- Inspection ---

    def get_queue_stats(self) -> QueueStats:
        return self.queue.stats()

    def get_run_stats(self) -> RunStats:
        """A copy of the run counters."""
        s = self._stats
        return RunStats(
            total_processed=s.total_processed,
            successful=s.successful,
            failed=s.failed,
            rate_limit_hits=s.rate_limit_hits,
            average_processing_time=s.average_processing_time,
            records_collected=s.records_collected,
            records_invalid=s.records_invalid,
            records_stored=s.records_stored,
            discovered=s.discovered,
            started_at=s.started_at,
        )

    def get_rate_status(self) -> dict[str, Any]:
        return {
            "sites": self.site_limiter.status(),
            "global": self.global_limiter.stats(),
        }

    def failed_tasks(self) -> list[Task]:
        """Permanently failed tasks, each with its last error."""
        return self.queue.items(TaskState.FAILED)
