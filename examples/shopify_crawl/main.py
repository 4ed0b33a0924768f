#!/usr/bin/env python3
"""
Shopify Catalog Crawl

Crawls the product catalog of one or more Shopify stores through their
public JSON endpoints and writes records to JSONL and SQLite.

Demonstrates:
- Per-store token buckets under one global budget
- Listing pages fanning out into product pages
- Retry with backoff on timeouts and 5xx responses
- Validation and periodic flushing to storage

Usage:
    python main.py https://shop.example https://other.example
"""

import asyncio
import logging
import sys
from pathlib import Path
from urllib.parse import urlparse

from catalogcue import AdapterRegistry, EventKind, Orchestrator, OrchestratorConfig, SiteLimits, TaskSpec
from catalogcue.browser import HttpFetcher
from catalogcue.shopify import ShopifyAdapter
from catalogcue.storage import JsonlStorage, SqliteStorage, StorageManager

# Configuration
OUTPUT_DIR = Path("output")
REQUESTS_PER_MINUTE = 30  # Per store

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def crawl(store_urls: list[str]) -> None:
    OUTPUT_DIR.mkdir(exist_ok=True)

    fetcher = HttpFetcher(timeout=20, headers={"User-Agent": "catalogcue-example/0.1"})
    registry = AdapterRegistry()
    config = OrchestratorConfig(concurrency=4)

    seeds = []
    for url in store_urls:
        key = urlparse(url).netloc
        registry.register(key, ShopifyAdapter(fetcher, url, currency="USD"))
        config.sites[key] = SiteLimits.from_requests_per_minute(REQUESTS_PER_MINUTE)
        seeds.append(TaskSpec(f"{url.rstrip('/')}/collections/all", key))

    storage = StorageManager([
        JsonlStorage(OUTPUT_DIR / "products.jsonl"),
        SqliteStorage(OUTPUT_DIR / "products.db"),
    ])
    orch = Orchestrator(registry, browser=fetcher, storage=storage, config=config)

    @orch.events.add_listener
    def report(event):
        if event.kind is EventKind.TASK_COMPLETED:
            print(f"  ✓ {event.target} ({event.detail})", flush=True)
        elif event.kind is EventKind.TASK_FAILED_PERMANENTLY:
            print(f"  ✗ {event.target}: {event.detail}", flush=True)

    print(f"\n🛒 Crawling {len(seeds)} store(s)...\n")
    try:
        stats = await orch.run(seeds)
    finally:
        await storage.close()

    print("\n✅ Done!")
    print(f"   Pages processed: {stats.successful} ok, {stats.failed} failed attempts")
    print(f"   Records: {stats.records_collected} collected, {stats.records_stored} stored")
    print(f"   Rate limit waits: {stats.rate_limit_hits}")
    for task in orch.failed_tasks():
        print(f"   Gave up on {task.target}: {task.error}")


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    asyncio.run(crawl(sys.argv[1:]))


if __name__ == "__main__":
    main()
