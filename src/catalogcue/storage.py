"""Storage backends for extracted records.

``StorageManager`` fans a batch out to every configured backend and
reports one ``StoreResult`` per destination. A failing backend never stops
the others.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import aiosqlite

from catalogcue.models import StoreResult

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    """One place records can be written to."""

    @property
    @abstractmethod
    def destination(self) -> str:
        """Human-readable location, e.g. a file path."""
        ...

    @abstractmethod
    async def write(self, records: list[dict[str, Any]]) -> int:
        """Persist ``records`` and return how many were written."""
        ...

    async def close(self) -> None:
        """Release resources. Default does nothing."""


class MemoryStorage(StorageBackend):
    """Keeps records in a list. Handy for tests and dry runs."""

    def __init__(self, name: str = "memory") -> None:
        self._name = name
        self.records: list[dict[str, Any]] = []
        self.batches: list[list[dict[str, Any]]] = []

    @property
    def destination(self) -> str:
        return self._name

    async def write(self, records: list[dict[str, Any]]) -> int:
        self.batches.append(list(records))
        self.records.extend(records)
        return len(records)


class JsonlStorage(StorageBackend):
    """Appends records to a JSON Lines file, one object per line."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @property
    def destination(self) -> str:
        return str(self.path)

    async def write(self, records: list[dict[str, Any]]) -> int:
        lines = [json.dumps(r, ensure_ascii=False, default=str) + "\n" for r in records]
        await asyncio.to_thread(self._append, lines)
        return len(lines)

    def _append(self, lines: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.writelines(lines)


SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
    id TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT '',
    name TEXT,
    url TEXT,
    price REAL,
    currency TEXT,
    brand TEXT,
    data TEXT NOT NULL,  -- JSON
    stored_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (id, source)
);

CREATE INDEX IF NOT EXISTS idx_products_source ON products(source);
"""


class SqliteStorage(StorageBackend):
    """
    Upserts records into a SQLite ``products`` table.

    Records are keyed on (id, source); a later batch with the same key
    replaces the earlier row. ``source`` comes from the record's
    ``routing_key`` field when present.
    """

    def __init__(self, db_path: str | Path = "products.db") -> None:
        self.db_path = str(db_path)
        self._conn: aiosqlite.Connection | None = None

    @property
    def destination(self) -> str:
        return self.db_path

    async def _connect(self) -> aiosqlite.Connection:
        if self._conn is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.db_path)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.executescript(SCHEMA)
            await conn.commit()
            self._conn = conn
        return self._conn

    async def write(self, records: list[dict[str, Any]]) -> int:
        conn = await self._connect()
        rows = [
            (
                str(r.get("id", "")),
                str(r.get("routing_key") or ""),
                r.get("name"),
                r.get("url"),
                r.get("price"),
                r.get("currency"),
                r.get("brand"),
                json.dumps(r, ensure_ascii=False, default=str),
            )
            for r in records
        ]
        await conn.executemany(
            """
            INSERT INTO products (id, source, name, url, price, currency, brand, data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id, source) DO UPDATE SET
                name = excluded.name,
                url = excluded.url,
                price = excluded.price,
                currency = excluded.currency,
                brand = excluded.brand,
                data = excluded.data,
                stored_at = datetime('now')
            """,
            rows,
        )
        await conn.commit()
        return len(rows)

    async def count(self, source: str | None = None) -> int:
        """Number of stored products, optionally for one source."""
        conn = await self._connect()
        if source is None:
            query, params = "SELECT COUNT(*) FROM products", ()
        else:
            query, params = "SELECT COUNT(*) FROM products WHERE source = ?", (source,)
        async with conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def load(self, source: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        """Stored records, most recent first."""
        conn = await self._connect()
        query = "SELECT data FROM products"
        params: list = []
        if source is not None:
            query += " WHERE source = ?"
            params.append(source)
        query += " ORDER BY stored_at DESC LIMIT ?"
        params.append(limit)
        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [json.loads(row["data"]) for row in rows]

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None


class StorageManager:
    """Writes each batch to every backend and reports per-destination results.

    Example:
        storage = StorageManager([JsonlStorage("out/products.jsonl"),
                                  SqliteStorage("out/products.db")])
        results = await storage.store(records)
    """

    def __init__(self, backends: list[StorageBackend] | None = None) -> None:
        self.backends: list[StorageBackend] = list(backends or [])

    def add(self, backend: StorageBackend) -> None:
        self.backends.append(backend)

    async def store(self, records: list[dict[str, Any]]) -> list[StoreResult]:
        if not records:
            return []

        results = []
        for backend in self.backends:
            try:
                written = await backend.write(records)
            except Exception as e:
                logger.exception("Failed to store %d records to %s", len(records), backend.destination)
                results.append(StoreResult(False, 0, backend.destination, str(e) or type(e).__name__))
            else:
                results.append(StoreResult(True, written, backend.destination))
        return results

    async def close(self) -> None:
        for backend in self.backends:
            await backend.close()
