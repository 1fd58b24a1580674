"""Async client for the hosted database REST interface and object storage."""

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, cast
from uuid import UUID

import httpx
import structlog

from commandx.config import get_settings

logger = structlog.get_logger(__name__)


class StoreError(Exception):
    """Base exception for hosted store errors."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class RecordNotFoundError(StoreError):
    """A row or storage object that was required does not exist."""

    pass


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _coerce(left: Any, right: Any) -> tuple[Any, Any]:
    """Bring a row value and a filter value to comparable types."""
    if left is None or right is None:
        return left, right
    if isinstance(right, (int, float, Decimal)) and not isinstance(right, bool):
        try:
            return Decimal(str(left)), Decimal(str(right))
        except ArithmeticError:
            return str(left), str(right)
    return _format_value(left), _format_value(right)


@dataclass(frozen=True)
class Filter:
    """A single column predicate in REST query-string form."""

    column: str
    op: str
    value: Any = None

    def to_param(self) -> tuple[str, str]:
        """Render as a query parameter, e.g. ``("entry_date", "gte.2024-01-01")``."""
        if self.op == "is":
            return self.column, "is.null"
        if self.op == "not.is":
            return self.column, "not.is.null"
        if self.op == "in":
            values = ",".join(_format_value(v) for v in self.value)
            return self.column, f"in.({values})"
        return self.column, f"{self.op}.{_format_value(self.value)}"

    def matches(self, row: dict[str, Any]) -> bool:
        """Evaluate the predicate against an in-memory row."""
        current = row.get(self.column)
        if self.op == "is":
            return current is None
        if self.op == "not.is":
            return current is not None
        if self.op == "in":
            return _format_value(current) in {_format_value(v) for v in self.value}
        if self.op in ("like", "ilike"):
            if current is None:
                return False
            pattern = _format_value(self.value).strip("*%")
            haystack = str(current)
            if self.op == "ilike":
                return pattern.lower() in haystack.lower()
            return pattern in haystack

        left, right = _coerce(current, self.value)
        if left is None:
            return False
        if self.op == "eq":
            return bool(left == right)
        if self.op == "neq":
            return bool(left != right)
        if self.op == "gt":
            return bool(left > right)
        if self.op == "gte":
            return bool(left >= right)
        if self.op == "lt":
            return bool(left < right)
        if self.op == "lte":
            return bool(left <= right)
        raise ValueError(f"Unsupported filter operator: {self.op}")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def is_null(column: str) -> Filter:
    return Filter(column, "is")


def not_null(column: str) -> Filter:
    return Filter(column, "not.is")


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def ilike(column: str, value: str) -> Filter:
    return Filter(column, "ilike", f"*{value}*")


def jsonable(row: dict[str, Any]) -> dict[str, Any]:
    """Convert Decimal/date/UUID/Enum values to JSON-friendly primitives."""
    result: dict[str, Any] = {}
    for key, value in row.items():
        if isinstance(value, Decimal):
            result[key] = float(value)
        elif isinstance(value, (date, datetime)):
            result[key] = value.isoformat()
        elif isinstance(value, (UUID, Enum)):
            result[key] = _format_value(value)
        elif isinstance(value, dict):
            result[key] = jsonable(value)
        else:
            result[key] = value
    return result


class SupabaseClient:
    """Async client for the hosted relational store (REST) and object storage."""

    def __init__(
        self,
        base_url: str | None = None,
        service_role_key: str | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.supabase_url).rstrip("/")
        self._service_role_key = (
            service_role_key or settings.supabase_service_role_key.get_secret_value()
        )
        self._timeout = settings.store_timeout
        self._max_retries = settings.store_max_retries
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SupabaseClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    # === Generic Request ===

    async def _request(
        self,
        method: str,
        path: str,
        params: Sequence[tuple[str, str]] | None = None,
        json: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        retry_count: int = 0,
    ) -> httpx.Response:
        """Make a request with retry on transport failures."""
        client = await self._get_client()
        try:
            response = await client.request(
                method=method,
                url=path,
                params=list(params) if params else None,
                json=json,
                content=content,
                headers=headers or self._get_headers(),
            )
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count)
                return await self._request(
                    method, path, params, json, content, headers, retry_count + 1
                )
            raise StoreError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            try:
                error_detail = response.json() if response.content else {}
            except ValueError:
                error_detail = {"raw": response.text[:500] if response.text else ""}
            logger.warning(
                "store_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            if response.status_code == 404 and path.startswith("/storage/"):
                raise RecordNotFoundError(
                    f"Storage object not found: {path}",
                    status_code=404,
                    details=error_detail,
                )
            raise StoreError(
                f"Store error: {response.status_code}",
                status_code=response.status_code,
                details=error_detail,
            )
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> list[dict[str, Any]]:
        if not response.content:
            return []
        data = response.json()
        if isinstance(data, list):
            return cast(list[dict[str, Any]], data)
        if isinstance(data, dict):
            return [data]
        return []

    @staticmethod
    def _filter_params(filters: Iterable[Filter]) -> list[tuple[str, str]]:
        return [f.to_param() for f in filters]

    # === Table Operations ===

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Iterable[Filter] = (),
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select rows from a table.

        Args:
            table: Table name.
            columns: Column list in REST select syntax.
            filters: Column predicates, all of which must hold.
            order: Ordering such as ``"entry_date.asc"``.
            limit: Maximum rows to return.
        """
        params = [("select", columns), *self._filter_params(filters)]
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._request("GET", f"/rest/v1/{table}", params=params)
        return self._rows(response)

    async def select_one(
        self,
        table: str,
        columns: str = "*",
        filters: Iterable[Filter] = (),
        order: str | None = None,
    ) -> dict[str, Any] | None:
        """Return the first matching row or None."""
        rows = await self.select(table, columns, filters, order=order, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored."""
        rows = await self.insert_many(table, [row])
        if not rows:
            raise StoreError(f"Insert into {table} returned no row")
        return rows[0]

    async def insert_many(
        self, table: str, rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Insert several rows in one request."""
        if not rows:
            return []
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=[jsonable(r) for r in rows],
            headers=self._get_headers(prefer="return=representation"),
        )
        return self._rows(response)

    async def update(
        self, table: str, values: dict[str, Any], filters: Iterable[Filter]
    ) -> list[dict[str, Any]]:
        """Update matching rows and return them."""
        params = self._filter_params(filters)
        if not params:
            raise StoreError(f"Refusing to update {table} without filters")
        response = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=params,
            json=jsonable(values),
            headers=self._get_headers(prefer="return=representation"),
        )
        return self._rows(response)

    async def upsert(
        self, table: str, row: dict[str, Any], on_conflict: str
    ) -> dict[str, Any]:
        """Insert or merge a row keyed on ``on_conflict``."""
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            params=[("on_conflict", on_conflict)],
            json=[jsonable(row)],
            headers=self._get_headers(
                prefer="resolution=merge-duplicates,return=representation"
            ),
        )
        rows = self._rows(response)
        return rows[0] if rows else {}

    async def delete(self, table: str, filters: Iterable[Filter]) -> None:
        """Delete matching rows."""
        params = self._filter_params(filters)
        if not params:
            raise StoreError(f"Refusing to delete from {table} without filters")
        await self._request("DELETE", f"/rest/v1/{table}", params=params)

    async def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        """Call a database function."""
        response = await self._request(
            "POST", f"/rest/v1/rpc/{function}", json=jsonable(params or {})
        )
        return response.json() if response.content else None

    # === Object Storage ===

    async def download(self, bucket: str, path: str) -> bytes:
        """Download an object from storage."""
        response = await self._request(
            "GET", f"/storage/v1/object/{bucket}/{path.lstrip('/')}"
        )
        return response.content

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Upload (or overwrite) an object and return its storage key."""
        headers = self._get_headers()
        headers["Content-Type"] = content_type
        headers["x-upsert"] = "true"
        key = path.lstrip("/")
        await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{key}",
            content=data,
            headers=headers,
        )
        logger.info("storage_object_uploaded", bucket=bucket, path=key, size=len(data))
        return f"{bucket}/{key}"
