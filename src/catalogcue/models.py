"""Core data models for catalogcue."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskState(str, Enum):
    """Possible states for a task."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class PageKind(str, Enum):
    """What an adapter says a target is."""

    PRODUCT = "product"
    LISTING = "listing"
    SEARCH = "search"
    UNKNOWN = "unknown"


class RunState(str, Enum):
    """Orchestrator lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Task:
    """A unit of scheduled work: a target plus routing and retry metadata."""

    id: str
    target: str
    routing_key: str
    priority: int = 5
    attempt: int = 0
    created_at: float = 0.0
    eligible_at: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)
    state: TaskState = TaskState.PENDING
    result: Any = None
    error: str | None = None  # Last error message


@dataclass(frozen=True)
class TaskSpec:
    """Input for a batch enqueue."""

    target: str
    routing_key: str
    priority: int | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class DiscoveryResult:
    """What an adapter found on a listing page."""

    records: list[dict[str, Any]] = field(default_factory=list)
    discovered_targets: list[str] = field(default_factory=list)
    has_more: bool = False
    next_target: str | None = None


@dataclass(frozen=True)
class StoreResult:
    """Outcome of writing records to one storage destination."""

    ok: bool
    count_written: int
    destination: str
    error: str | None = None


@dataclass(frozen=True)
class QueueStats:
    """Snapshot of queue sizes."""

    pending: int
    in_flight: int
    completed: int
    failed: int
    retrying: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_flight + self.completed + self.failed


@dataclass
class RunStats:
    """Counters for one orchestrator run.

    Derived bookkeeping only; the queue's completed/failed sets are the
    source of truth.
    """

    total_processed: int = 0
    successful: int = 0
    failed: int = 0  # Failed attempts, retried or not
    rate_limit_hits: int = 0
    average_processing_time: float = 0.0  # Seconds
    records_collected: int = 0
    records_invalid: int = 0
    records_stored: int = 0
    discovered: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def uptime(self) -> float:
        """Seconds since the run started."""
        return time.time() - self.started_at

    def record_processing_time(self, duration: float) -> None:
        """Fold one attempt's duration into the running mean.

        Call after ``total_processed`` has been incremented.
        """
        n = self.total_processed
        if n <= 1:
            self.average_processing_time = duration
        else:
            self.average_processing_time += (duration - self.average_processing_time) / n
