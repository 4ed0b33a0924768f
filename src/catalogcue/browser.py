"""Browser/fetch resource contract and an httpx-backed implementation.

The orchestrator owns the resource's ``initialize``/``close`` lifecycle.
Adapters acquire a context per routing key, navigate, and release. Per-task
timeouts live here; the orchestrator never runs its own timeout clock.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from catalogcue.errors import FetchError, FetchTimeoutError, PageGoneError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "catalogcue/0.1 (+https://github.com/catalogcue)"


@dataclass
class RenderedPage:
    """Content returned by ``navigate``."""

    url: str
    status_code: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        try:
            return json.loads(self.text)
        except json.JSONDecodeError as e:
            raise FetchError(f"Invalid JSON from {self.url}: {e}") from e


@dataclass
class FetchContext:
    """Handle for one acquired context."""

    routing_key: str
    acquired_at: float
    requests: int = 0


class BrowserResource(ABC):
    """Something that can fetch (and possibly render) targets."""

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def acquire_context(self, routing_key: str) -> Any:
        ...

    @abstractmethod
    async def navigate(self, handle: Any, target: str) -> RenderedPage:
        ...

    @abstractmethod
    async def release(self, handle: Any) -> None:
        ...

    @asynccontextmanager
    async def context(self, routing_key: str) -> AsyncIterator[Any]:
        """Acquire a context for ``routing_key`` and release it afterwards."""
        handle = await self.acquire_context(routing_key)
        try:
            yield handle
        finally:
            await self.release(handle)


class HttpFetcher(BrowserResource):
    """
    Fetches targets over plain HTTP with a shared ``httpx.AsyncClient``.

    No JavaScript rendering. Timeouts raise ``FetchTimeoutError``, other
    transport errors and 429/5xx responses raise ``FetchError`` (both
    retryable), and 404/410 raise ``PageGoneError`` (permanent).

    Example:
        fetcher = HttpFetcher(timeout=15.0)
        await fetcher.initialize()
        async with fetcher.context("shop") as ctx:
            page = await fetcher.navigate(ctx, "https://shop.example/products.json")
        await fetcher.close()
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        max_connections: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.headers = {"User-Agent": DEFAULT_USER_AGENT, **(headers or {})}
        self.max_connections = max_connections
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._active: set[int] = set()

    @property
    def is_open(self) -> bool:
        return self._client is not None

    @property
    def active_contexts(self) -> int:
        return len(self._active)

    async def initialize(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            headers=self.headers,
            follow_redirects=True,
            limits=httpx.Limits(max_connections=self.max_connections),
            transport=self._transport,
        )
        logger.debug("HTTP fetcher initialized (timeout=%ss)", self.timeout)

    async def close(self) -> None:
        if self._client is None:
            return
        if self._active:
            logger.warning("Closing fetcher with %d contexts still acquired", len(self._active))
        await self._client.aclose()
        self._client = None
        self._active.clear()

    async def acquire_context(self, routing_key: str) -> FetchContext:
        if self._client is None:
            raise FetchError("Fetcher is not initialized")
        handle = FetchContext(routing_key=routing_key, acquired_at=time.monotonic())
        self._active.add(id(handle))
        return handle

    async def release(self, handle: FetchContext) -> None:
        self._active.discard(id(handle))

    async def navigate(self, handle: FetchContext, target: str) -> RenderedPage:
        if self._client is None:
            raise FetchError("Fetcher is not initialized")

        handle.requests += 1
        try:
            resp = await self._client.get(target)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"Timed out after {self.timeout}s: {target}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Request failed for {target}: {e}") from e

        if resp.status_code in (404, 410):
            raise PageGoneError(f"HTTP {resp.status_code}: {target}")
        if resp.status_code >= 400:
            raise FetchError(f"HTTP {resp.status_code}: {target}")

        return RenderedPage(
            url=str(resp.url),
            status_code=resp.status_code,
            text=resp.text,
            headers=dict(resp.headers),
        )

    async def fetch(self, routing_key: str, target: str) -> RenderedPage:
        """Acquire, navigate and release in one call."""
        async with self.context(routing_key) as handle:
            return await self.navigate(handle, target)
