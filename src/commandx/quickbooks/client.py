"""Async client for the QuickBooks Online v3 accounting API."""

import asyncio
from typing import Any, cast

import httpx
import structlog

from commandx.config import get_settings
from commandx.quickbooks.errors import QuickBooksError, QuickBooksRateLimitError
from commandx.quickbooks.oauth import QuickBooksTokenManager

logger = structlog.get_logger(__name__)


def escape_query_value(value: str) -> str:
    """Escape a literal for use inside single quotes in a QuickBooks query."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _retry_after_seconds(value: str | None, default: int = 60) -> int:
    """Seconds from a Retry-After header; HTTP-date values fall back to ``default``."""
    try:
        return max(0, int(value)) if value is not None else default
    except ValueError:
        return default


class QuickBooksClient:
    """Authenticated requests against ``{api_base}/{realm_id}``.

    Tokens come from the token manager; a 401 triggers one refresh and retry.
    """

    def __init__(self, token_manager: QuickBooksTokenManager):
        settings = get_settings()
        self._tokens = token_manager
        self._api_base = settings.quickbooks_api_base.rstrip("/")
        self._minor_version = settings.quickbooks_minor_version
        self._timeout = settings.quickbooks_timeout
        self._max_retries = settings.quickbooks_max_retries
        self._client: httpx.AsyncClient | None = None

    @property
    def token_manager(self) -> QuickBooksTokenManager:
        return self._tokens

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "QuickBooksClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        endpoint: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        retry_count: int = 0,
        auth_retried: bool = False,
    ) -> dict[str, Any]:
        """Make an authenticated API request with retry logic."""
        access_token, realm_id = await self._tokens.get_valid_token()
        client = await self._get_client()
        query = {"minorversion": self._minor_version, **(params or {})}

        try:
            response = await client.request(
                method=method,
                url=f"{self._api_base}/{realm_id}{endpoint}",
                params=query,
                json=json,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
            )
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count)
                return await self.request(
                    method, endpoint, json, params, retry_count + 1, auth_retried
                )
            raise QuickBooksError(f"Request failed: {e}") from e

        if response.status_code == 401 and not auth_retried:
            # Token revoked or expired early
            await self._tokens.refresh()
            return await self.request(method, endpoint, json, params, retry_count, True)

        if response.status_code == 429:
            retry_after = _retry_after_seconds(response.headers.get("Retry-After"))
            raise QuickBooksRateLimitError(
                f"QuickBooks API error: 429 - rate limited, retry after {retry_after}s",
                status_code=429,
                details={"retry_after": retry_after},
            )

        if response.status_code >= 400:
            body = response.text[:1000] if response.text else ""
            logger.warning(
                "quickbooks_request_failed",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
            )
            raise QuickBooksError(
                f"QuickBooks API error: {response.status_code} - {body}",
                status_code=response.status_code,
                details=body,
            )

        return cast(dict[str, Any], response.json()) if response.content else {}

    async def query(self, sql: str) -> dict[str, Any]:
        """Run a query and return its ``QueryResponse`` object."""
        result = await self.request("GET", "/query", params={"query": sql})
        return cast(dict[str, Any], result.get("QueryResponse") or {})

    async def query_entities(self, entity: str, sql: str) -> list[dict[str, Any]]:
        return list((await self.query(sql)).get(entity) or [])

    async def get_entity(self, entity: str, entity_id: str) -> dict[str, Any] | None:
        rows = await self.query_entities(
            entity, f"SELECT * FROM {entity} WHERE Id = '{escape_query_value(entity_id)}'"
        )
        return rows[0] if rows else None

    async def create_entity(self, entity: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST an entity (create, or sparse update when ``Id`` is present)."""
        result = await self.request("POST", f"/{entity.lower()}", json=payload)
        return cast(dict[str, Any], result.get(entity) or {})
