"""Pytest configuration and fixtures."""

import os
import uuid
from collections.abc import Callable, Iterable
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("SUPABASE_URL", "http://store.test")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-test")
os.environ.setdefault("QUICKBOOKS_CLIENT_ID", "qb-client-id")
os.environ.setdefault("QUICKBOOKS_CLIENT_SECRET", "qb-client-secret")

from commandx.store import Filter, StoreError, jsonable  # noqa: E402


class FakeStore:
    """In-memory stand-in for SupabaseClient.

    Rows pass through ``jsonable`` on write so they look like what the REST
    interface returns. Filters are evaluated with ``Filter.matches``.
    """

    def __init__(self, tables: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {
            name: [dict(r) for r in rows] for name, rows in (tables or {}).items()
        }
        self.rpc_handlers: dict[str, Callable[[dict[str, Any]], Any]] = {}
        self.failing_inserts: set[str] = set()
        self.uploads: dict[str, bytes] = {}
        self.rpc_calls: list[tuple[str, dict[str, Any]]] = []

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def _matching(self, table: str, filters: Iterable[Filter]) -> list[dict[str, Any]]:
        filters = list(filters)
        return [r for r in self.rows(table) if all(f.matches(r) for f in filters)]

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Iterable[Filter] = (),
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = [dict(r) for r in self._matching(table, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: str(r.get(column)), reverse=direction == "desc")
        return rows[:limit] if limit is not None else rows

    async def select_one(
        self,
        table: str,
        columns: str = "*",
        filters: Iterable[Filter] = (),
        order: str | None = None,
    ) -> dict[str, Any] | None:
        rows = await self.select(table, columns, filters, order=order, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        return (await self.insert_many(table, [row]))[0]

    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if table in self.failing_inserts:
            raise StoreError(f"Store error: 500 ({table})", status_code=500)
        stored = []
        for row in rows:
            record = jsonable(row)
            record.setdefault("id", str(uuid.uuid4()))
            self.rows(table).append(record)
            stored.append(dict(record))
        return stored

    async def update(
        self, table: str, values: dict[str, Any], filters: Iterable[Filter]
    ) -> list[dict[str, Any]]:
        filters = list(filters)
        if not filters:
            raise StoreError(f"Refusing to update {table} without filters")
        updated = []
        for row in self._matching(table, filters):
            row.update(jsonable(values))
            updated.append(dict(row))
        return updated

    async def upsert(self, table: str, row: dict[str, Any], on_conflict: str) -> dict[str, Any]:
        record = jsonable(row)
        for existing in self.rows(table):
            if existing.get(on_conflict) == record.get(on_conflict):
                existing.update(record)
                return dict(existing)
        return await self.insert(table, row)

    async def delete(self, table: str, filters: Iterable[Filter]) -> None:
        doomed = self._matching(table, filters)
        self.tables[table] = [r for r in self.rows(table) if r not in doomed]

    async def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        self.rpc_calls.append((function, params or {}))
        handler = self.rpc_handlers.get(function)
        return handler(params or {}) if handler else None

    async def upload(
        self, bucket: str, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> str:
        key = f"{bucket}/{path.lstrip('/')}"
        self.uploads[key] = data
        return key

    async def download(self, bucket: str, path: str) -> bytes:
        return self.uploads[f"{bucket}/{path.lstrip('/')}"]


@pytest.fixture
def store():
    """An empty in-memory store."""
    return FakeStore()


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.request = AsyncMock()
    client.post = AsyncMock()
    client.get = AsyncMock()
    client.aclose = AsyncMock()
    return client
