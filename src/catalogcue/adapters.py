"""Site adapters and the registry that routes tasks to them.

Adapters turn a target into records and newly discovered targets. The
orchestrator only ever calls ``classify``, ``discover`` and ``extract``;
what happens inside is the adapter's business.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any

from catalogcue.errors import NoAdapterError
from catalogcue.models import DiscoveryResult, PageKind

logger = logging.getLogger(__name__)


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable, so handlers may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value


class SiteAdapter(ABC):
    """
    Base class for site-specific adapters.

    Subclasses may implement the three operations as plain or ``async``
    methods.

    Example:
        class MyShop(SiteAdapter):
            async def classify(self, target):
                return PageKind.PRODUCT if "/p/" in target else PageKind.LISTING

            async def discover(self, target, routing_key):
                return DiscoveryResult(discovered_targets=[...])

            async def extract(self, target, routing_key):
                return {"id": "...", "name": "...", "url": target}
    """

    name: str = "base"

    @abstractmethod
    def classify(self, target: str) -> PageKind:
        """Say what kind of page ``target`` is."""
        ...

    @abstractmethod
    def discover(self, target: str, routing_key: str) -> DiscoveryResult:
        """Collect records and product targets from a listing or search page."""
        ...

    @abstractmethod
    def extract(self, target: str, routing_key: str) -> dict[str, Any] | None:
        """Extract one product record, or None if the page has none."""
        ...

    def can_handle(self, target: str) -> bool:
        """Whether this adapter recognizes ``target``. Defaults to False."""
        return False


class AdapterRegistry:
    """Maps routing keys to adapters.

    One registry is passed to each orchestrator; there is no process-wide
    instance.
    """

    def __init__(self, adapters: dict[str, SiteAdapter] | None = None) -> None:
        self._adapters: dict[str, SiteAdapter] = {}
        for routing_key, adapter in (adapters or {}).items():
            self.register(routing_key, adapter)

    def register(self, routing_key: str, adapter: SiteAdapter) -> None:
        if not routing_key:
            raise ValueError("routing_key must be non-empty")
        self._adapters[routing_key] = adapter
        logger.info(
            "Registered adapter for site: %s (%s)",
            routing_key, getattr(adapter, "name", type(adapter).__name__),
        )

    def get(self, routing_key: str) -> SiteAdapter:
        """
        Look up the adapter for ``routing_key``.

        Raises:
            NoAdapterError: If nothing is registered for it.
        """
        try:
            return self._adapters[routing_key]
        except KeyError:
            raise NoAdapterError(routing_key) from None

    def find_for_target(self, target: str) -> tuple[str, SiteAdapter] | None:
        """First (routing_key, adapter) pair whose adapter claims ``target``."""
        for routing_key, adapter in self._adapters.items():
            if adapter.can_handle(target):
                return routing_key, adapter
        return None

    def routing_keys(self) -> list[str]:
        return list(self._adapters)

    def unregister(self, routing_key: str) -> bool:
        return self._adapters.pop(routing_key, None) is not None

    def clear(self) -> None:
        self._adapters.clear()

    def __contains__(self, routing_key: object) -> bool:
        return routing_key in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)
