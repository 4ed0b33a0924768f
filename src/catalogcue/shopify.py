"""Adapter for Shopify storefronts using their public JSON endpoints.

Collections expose ``<collection>/products.json?limit=N&page=P`` and
products expose ``/products/<handle>.json``, so no HTML is parsed.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from catalogcue.adapters import SiteAdapter
from catalogcue.browser import BrowserResource
from catalogcue.errors import FetchError
from catalogcue.models import DiscoveryResult, PageKind

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 250  # Shopify's cap for products.json


class ShopifyAdapter(SiteAdapter):
    """
    Crawls one Shopify store.

    With ``follow_products`` (the default) a collection page yields product
    page targets and each product is extracted on its own. Without it, the
    collection's JSON already carries full products, so records come
    straight from the listing and nothing is discovered.

    Example:
        fetcher = HttpFetcher()
        adapter = ShopifyAdapter(fetcher, "https://shop.example")
        registry.register("shop", adapter)
    """

    name = "shopify"

    def __init__(
        self,
        browser: BrowserResource,
        base_url: str,
        *,
        page_size: int = MAX_PAGE_SIZE,
        follow_products: bool = True,
        currency: str | None = None,
    ) -> None:
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"base_url must be absolute: {base_url}")

        self.browser = browser
        self.base_url = f"{parsed.scheme}://{parsed.netloc}"
        self.host = parsed.netloc.lower()
        self.page_size = page_size
        self.follow_products = follow_products
        self.currency = currency

    def can_handle(self, target: str) -> bool:
        return urlparse(target).netloc.lower() == self.host

    def classify(self, target: str) -> PageKind:
        path = urlparse(target).path.rstrip("/")
        if "/products/" in path:
            return PageKind.PRODUCT
        if path in ("", "/collections", "/products", "/products.json") or "/collections/" in path:
            return PageKind.LISTING
        return PageKind.UNKNOWN

    async def discover(self, target: str, routing_key: str) -> DiscoveryResult:
        page_number = _page_of(target)
        data = await self._get_json(routing_key, self._listing_json_url(target, page_number))
        products = data.get("products") or []

        result = DiscoveryResult(has_more=len(products) >= self.page_size)
        if result.has_more:
            result.next_target = _with_page(target, page_number + 1)

        if self.follow_products:
            result.discovered_targets = [
                f"{self.base_url}/products/{p['handle']}" for p in products if p.get("handle")
            ]
        else:
            result.records = [self.to_record(p) for p in products]

        logger.debug(
            "Listing %s page %d: %d products, has_more=%s",
            target, page_number, len(products), result.has_more,
        )
        return result

    async def extract(self, target: str, routing_key: str) -> dict[str, Any] | None:
        url = urlparse(target)._replace(query="", fragment="")
        json_url = urlunparse(url._replace(path=url.path.rstrip("/") + ".json"))
        data = await self._get_json(routing_key, json_url)
        product = data.get("product")
        if not product:
            return None
        return self.to_record(product)

    async def _get_json(self, routing_key: str, url: str) -> dict[str, Any]:
        async with self.browser.context(routing_key) as handle:
            page = await self.browser.navigate(handle, url)
        data = page.json()
        if not isinstance(data, dict):
            raise FetchError(f"Unexpected JSON from {url}")
        return data

    def _listing_json_url(self, target: str, page_number: int) -> str:
        url = urlparse(target)
        path = url.path.rstrip("/")
        if not path.endswith("/products.json"):
            if path.endswith("/products"):
                path = path[: -len("/products")]
            path = f"{path}/products.json"
        query = urlencode({"limit": self.page_size, "page": page_number})
        return urlunparse(url._replace(path=path, query=query, fragment=""))

    def to_record(self, product: dict[str, Any]) -> dict[str, Any]:
        """Map a Shopify product object to a record."""
        variants = product.get("variants") or []
        prices = [_to_float(v.get("price")) for v in variants]
        prices = [p for p in prices if p is not None]
        available = [v.get("available") for v in variants if "available" in v]

        if available:
            availability = "in_stock" if any(available) else "out_of_stock"
        else:
            availability = None

        return {
            "id": product.get("id"),
            "name": product.get("title"),
            "url": f"{self.base_url}/products/{product.get('handle', '')}",
            "price": min(prices) if prices else None,
            "currency": self.currency,
            "brand": product.get("vendor") or None,
            "sku": next((v.get("sku") for v in variants if v.get("sku")), None),
            "category": product.get("product_type") or None,
            "availability": availability,
            "image_urls": [img["src"] for img in product.get("images") or [] if img.get("src")],
            "variants": [
                {
                    "id": v.get("id"),
                    "title": v.get("title"),
                    "sku": v.get("sku"),
                    "price": _to_float(v.get("price")),
                    "available": v.get("available"),
                }
                for v in variants
            ],
        }


def _page_of(target: str) -> int:
    values = parse_qs(urlparse(target).query).get("page")
    try:
        return max(1, int(values[0])) if values else 1
    except ValueError:
        return 1


def _with_page(target: str, page_number: int) -> str:
    url = urlparse(target)
    query = parse_qs(url.query)
    query["page"] = [str(page_number)]
    return urlunparse(url._replace(query=urlencode(query, doseq=True)))


def _to_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
