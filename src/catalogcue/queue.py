"""In-memory priority task queue with retry backoff.

Pending tasks live in two heaps. ``_delayed`` is keyed by eligibility time
and holds tasks that may not run yet; ``_ready`` is keyed by
``(-priority, lane, seq)`` and holds tasks that may. ``dequeue_next`` first
promotes every delayed task whose time has come, then pops the best ready
one, so a higher-priority task that is still backing off never blocks a
lower-priority task that is eligible now.

Retries use lane 0 and fresh tasks lane 1, which puts a retry at the front of
its priority tier while keeping retries FIFO among themselves.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import random
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any, Callable

from catalogcue.errors import InvalidTaskError, is_permanent
from catalogcue.models import QueueStats, Task, TaskSpec, TaskState

logger = logging.getLogger(__name__)

_RETRY_LANE = 0
_FRESH_LANE = 1


class TaskQueue:
    """
    Holds pending, in-flight, completed and failed tasks.

    The queue decides *which* task runs next and whether a failure is
    retried. It does not enforce concurrency; the orchestrator does.

    Example:
        queue = TaskQueue(max_retries=3, retry_delay=5.0)
        queue.enqueue("https://shop.example/collections/all", "shop", priority=5)
        task = queue.dequeue_next()
        queue.mark_completed(task.id, {"records": 12})
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        default_priority: int = 5,
        jitter: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")
        if jitter < 0:
            raise ValueError("jitter must be >= 0")

        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_priority = default_priority
        self.jitter = jitter
        self._clock = clock
        self._rng = rng or random.Random()

        self._pending: dict[str, Task] = {}
        self._ready: list[tuple[int, int, int, str]] = []
        self._delayed: list[tuple[float, int, str]] = []
        self._lane: dict[str, int] = {}
        self._in_flight: dict[str, Task] = {}
        self._completed: dict[str, Task] = {}
        self._failed: dict[str, Task] = {}
        self._seq = itertools.count()

    # --- Enqueue ---

    def enqueue(
        self,
        target: str,
        routing_key: str,
        priority: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """
        Insert a new pending task.

        Returns:
            The new task id.

        Raises:
            InvalidTaskError: If target or routing key is empty.
        """
        self._validate(target, routing_key)
        now = self._clock()
        task = Task(
            id=uuid.uuid4().hex[:12],
            target=target,
            routing_key=routing_key,
            priority=self.default_priority if priority is None else int(priority),
            attempt=0,
            created_at=now,
            eligible_at=now,
            metadata=dict(metadata or {}),
        )
        self._push(task, _FRESH_LANE)
        return task.id

    def enqueue_batch(self, tasks: Iterable[TaskSpec | Mapping[str, Any]]) -> list[str]:
        """
        Insert several tasks as one operation.

        Every entry is validated before any is inserted, so a malformed entry
        leaves the queue untouched. Ids come back in input order.
        """
        specs = [self._coerce_spec(t) for t in tasks]
        for spec in specs:
            self._validate(spec.target, spec.routing_key)
        return [
            self.enqueue(spec.target, spec.routing_key, spec.priority, spec.metadata)
            for spec in specs
        ]

    @staticmethod
    def _coerce_spec(item: TaskSpec | Mapping[str, Any]) -> TaskSpec:
        if isinstance(item, TaskSpec):
            return item
        if isinstance(item, Mapping):
            try:
                return TaskSpec(
                    target=item["target"],
                    routing_key=item["routing_key"],
                    priority=item.get("priority"),
                    metadata=item.get("metadata"),
                )
            except KeyError as e:
                raise InvalidTaskError(f"Task is missing field: {e.args[0]}") from e
        raise InvalidTaskError(f"Cannot build a task from {type(item).__name__}")

    @staticmethod
    def _validate(target: Any, routing_key: Any) -> None:
        if not isinstance(target, str) or not target.strip():
            raise InvalidTaskError(f"Invalid target: {target!r}")
        if not isinstance(routing_key, str) or not routing_key.strip():
            raise InvalidTaskError(f"Invalid routing key: {routing_key!r}")

    def _push(self, task: Task, lane: int) -> None:
        self._pending[task.id] = task
        self._lane[task.id] = lane
        heapq.heappush(self._delayed, (task.eligible_at, next(self._seq), task.id))

    # --- Dequeue ---

    def dequeue_next(self, now: float | None = None) -> Task | None:
        """
        Move the best eligible pending task to in-flight and return it.

        Returns None when nothing is eligible at ``now``.
        """
        if now is None:
            now = self._clock()

        self._promote(now)

        while self._ready:
            _, _, _, task_id = heapq.heappop(self._ready)
            task = self._pending.pop(task_id, None)
            if task is None:
                continue  # Removed while queued
            self._lane.pop(task_id, None)
            task = replace(task, state=TaskState.IN_FLIGHT)
            self._in_flight[task_id] = task
            return task

        return None

    def _promote(self, now: float) -> None:
        """Move delayed tasks whose eligibility has arrived into the ready heap."""
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, task_id = heapq.heappop(self._delayed)
            task = self._pending.get(task_id)
            if task is None:
                continue
            lane = self._lane.get(task_id, _FRESH_LANE)
            heapq.heappush(self._ready, (-task.priority, lane, seq, task_id))

    def next_eligible_at(self) -> float | None:
        """Earliest time a pending task becomes eligible, or None if none pending."""
        return min((t.eligible_at for t in self._pending.values()), default=None)

    # --- Outcomes ---

    def mark_completed(self, task_id: str, payload: Any = None) -> Task | None:
        """Move an in-flight task to completed, attaching ``payload``."""
        task = self._in_flight.pop(task_id, None)
        if task is None:
            logger.warning("Attempted to mark unknown task as completed: %s", task_id)
            return None

        done = replace(task, state=TaskState.COMPLETED, result=payload)
        self._completed[task_id] = done
        logger.debug("Completed: %s", task.target)
        return done

    def mark_failed(self, task_id: str, error: BaseException | str) -> Task | None:
        """
        Record a failed attempt.

        Retries with exponential backoff while ``attempt < max_retries`` and
        the error is not permanent; otherwise the task fails for good.

        Returns:
            The task in its new state (PENDING for a retry, FAILED if
            terminal), or None if the id was not in flight.
        """
        task = self._in_flight.pop(task_id, None)
        if task is None:
            logger.warning("Attempted to mark unknown task as failed: %s", task_id)
            return None

        message = str(error) or type(error).__name__
        permanent = isinstance(error, BaseException) and is_permanent(error)

        if not permanent and task.attempt < self.max_retries:
            retry = replace(
                task,
                state=TaskState.PENDING,
                attempt=task.attempt + 1,
                eligible_at=self._clock() + self.backoff_delay(task.attempt),
                error=message,
            )
            self._push(retry, _RETRY_LANE)
            logger.info(
                "Retrying: %s (attempt %d/%d)",
                task.target, retry.attempt + 1, self.max_retries + 1,
            )
            return retry

        failed = replace(task, state=TaskState.FAILED, error=message)
        self._failed[task_id] = failed
        logger.error("Failed permanently: %s - %s", task.target, message)
        return failed

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before retrying a task that failed on ``attempt``."""
        base = self.retry_delay * (2 ** attempt)
        if self.jitter:
            return base + self._rng.uniform(0, base * self.jitter)
        return base

    # --- Inspection ---

    def is_empty(self) -> bool:
        """True when nothing is pending and nothing is in flight."""
        return not self._pending and not self._in_flight

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def stats(self) -> QueueStats:
        return QueueStats(
            pending=len(self._pending),
            in_flight=len(self._in_flight),
            completed=len(self._completed),
            failed=len(self._failed),
            retrying=sum(1 for t in self._pending.values() if t.attempt > 0),
        )

    def get(self, task_id: str) -> Task | None:
        """Find a task in any state."""
        for bucket in (self._pending, self._in_flight, self._completed, self._failed):
            if task_id in bucket:
                return bucket[task_id]
        return None

    def items(self, state: TaskState | str) -> list[Task]:
        """
        List tasks in a state.

        ``"retry"`` lists pending tasks that have failed at least once.
        """
        if state == "retry":
            return [t for t in self._pending.values() if t.attempt > 0]
        state = TaskState(state)
        if state is TaskState.PENDING:
            return list(self._pending.values())
        if state is TaskState.IN_FLIGHT:
            return list(self._in_flight.values())
        if state is TaskState.COMPLETED:
            return list(self._completed.values())
        return list(self._failed.values())

    def remove(self, task_id: str) -> bool:
        """Drop a pending task. In-flight and finished tasks cannot be removed."""
        if self._pending.pop(task_id, None) is not None:
            self._lane.pop(task_id, None)
            return True
        if task_id in self._in_flight:
            logger.warning("Cannot remove task that is in flight: %s", task_id)
        return False

    def clear(self) -> QueueStats:
        """Forget every task. Returns the stats from just before clearing."""
        stats = self.stats()
        self._pending.clear()
        self._ready.clear()
        self._delayed.clear()
        self._lane.clear()
        self._in_flight.clear()
        self._completed.clear()
        self._failed.clear()
        logger.info("Queue cleared: %d tasks removed", stats.total)
        return stats

    def __len__(self) -> int:
        return len(self._pending) + len(self._in_flight)

    def __contains__(self, task_id: object) -> bool:
        return isinstance(task_id, str) and self.get(task_id) is not None
