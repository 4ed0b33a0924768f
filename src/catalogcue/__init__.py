"""catalogcue - rate-limited crawl orchestration for e-commerce catalogs."""

from catalogcue.adapters import AdapterRegistry, SiteAdapter
from catalogcue.config import GlobalLimits, OrchestratorConfig, SiteLimits, load_config
from catalogcue.events import Event, EventBus, EventKind
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
from catalogcue.orchestrator import Orchestrator
from catalogcue.queue import TaskQueue
from catalogcue.ratelimit import GlobalRateLimiter, SiteRateLimiter, TokenBucket

__version__ = "0.1.0"
__all__ = [
    "Orchestrator",
    "TaskQueue",
    "TokenBucket",
    "SiteRateLimiter",
    "GlobalRateLimiter",
    "AdapterRegistry",
    "SiteAdapter",
    "EventBus",
    "Event",
    "EventKind",
    "OrchestratorConfig",
    "SiteLimits",
    "GlobalLimits",
    "load_config",
    "Task",
    "TaskSpec",
    "TaskState",
    "PageKind",
    "RunState",
    "RunStats",
    "QueueStats",
    "DiscoveryResult",
    "StoreResult",
]
