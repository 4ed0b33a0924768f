"""A synthetic storefront for the simulator.

Listing pages look like ``https://<site>.example/collections/all?page=N``
and product pages like ``https://<site>.example/products/<page>-<i>``.
Latency, errors and malformed records are drawn at random per call.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlparse

from catalogcue.adapters import SiteAdapter
from catalogcue.errors import FetchError, FetchTimeoutError, PageGoneError
from catalogcue.models import DiscoveryResult, PageKind


@dataclass
class CatalogProfile:
    """How a synthetic store behaves."""

    pages: int = 3
    products_per_page: int = 10
    latency_ms: int = 100
    latency_jitter: float = 0.2  # ±20% variance
    outlier_chance: float = 0.0
    outlier_multiplier: float = 5.0
    error_rate: float = 0.0
    timeout_share: float = 0.3  # Fraction of errors that are timeouts
    gone_rate: float = 0.0  # Products that 404
    invalid_rate: float = 0.0  # Products missing required fields


class SyntheticCatalog(SiteAdapter):
    """Adapter over a made-up catalog. Page contents are deterministic; timing is not."""

    name = "synthetic"

    def __init__(self, site: str, profile: CatalogProfile, rng: random.Random | None = None) -> None:
        self.site = site
        self.profile = profile
        self.host = f"{site}.example"
        self._rng = rng or random.Random()

    @property
    def seed_target(self) -> str:
        return f"https://{self.host}/collections/all?page=1"

    def can_handle(self, target: str) -> bool:
        return urlparse(target).netloc == self.host

    def classify(self, target: str) -> PageKind:
        path = urlparse(target).path
        if path.startswith("/products/"):
            return PageKind.PRODUCT
        if path.startswith("/collections/"):
            return PageKind.LISTING
        return PageKind.UNKNOWN

    async def discover(self, target: str, routing_key: str) -> DiscoveryResult:
        await self._simulate_fetch()
        page = int(parse_qs(urlparse(target).query).get("page", ["1"])[0])
        result = DiscoveryResult(
            discovered_targets=[
                f"https://{self.host}/products/{page}-{i}"
                for i in range(self.profile.products_per_page)
            ],
            has_more=page < self.profile.pages,
        )
        if result.has_more:
            result.next_target = f"https://{self.host}/collections/all?page={page + 1}"
        return result

    async def extract(self, target: str, routing_key: str) -> dict[str, Any] | None:
        await self._simulate_fetch()
        if self._rng.random() < self.profile.gone_rate:
            raise PageGoneError(f"HTTP 404: {target}")

        handle = urlparse(target).path.rsplit("/", 1)[-1]
        record: dict[str, Any] = {
            "id": f"{self.site}-{handle}",
            "name": f"{self.site.title()} product {handle}",
            "url": target,
            "price": round(self._rng.uniform(5, 250), 2),
            "currency": "usd",
            "brand": self.site.title(),
            "availability": "in_stock",
        }
        if self._rng.random() < self.profile.invalid_rate:
            del record["name"]
        return record

    async def _simulate_fetch(self) -> None:
        p = self.profile
        base = p.latency_ms / 1000.0
        if base > 0:
            if p.outlier_chance > 0 and self._rng.random() < p.outlier_chance:
                latency = base * p.outlier_multiplier * self._rng.uniform(0.8, 1.5)
            else:
                latency = base * self._rng.uniform(1 - p.latency_jitter, 1 + p.latency_jitter)
            await asyncio.sleep(latency)

        if self._rng.random() < p.error_rate:
            if self._rng.random() < p.timeout_share:
                raise FetchTimeoutError("Simulated timeout")
            raise FetchError("Simulated error")
