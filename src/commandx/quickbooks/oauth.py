"""QuickBooks Online OAuth 2.0 connection and token lifecycle."""

import asyncio
import base64
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any, cast
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import structlog

from commandx.config import get_settings
from commandx.quickbooks.errors import (
    QuickBooksAuthError,
    QuickBooksError,
    QuickBooksNotConnectedError,
)
from commandx.store import SupabaseClient, eq, not_null

logger = structlog.get_logger(__name__)

SCOPE = "com.intuit.quickbooks.accounting"
DEFAULT_COMPANY_NAME = "QuickBooks Company"
REFRESH_MARGIN = timedelta(minutes=5)


def normalize_redirect_uri(uri: str) -> str:
    """Strip a trailing slash and lowercase the host and path.

    The redirect URI must match the one registered with Intuit exactly, for
    both the authorization request and the code exchange.
    """
    parts = urlsplit(uri[:-1] if uri.endswith("/") else uri)
    return urlunsplit(
        (parts.scheme, parts.netloc.lower(), parts.path.lower(), parts.query, parts.fragment)
    )


def build_authorization_url(redirect_uri: str, state: str | None = None) -> tuple[str, str]:
    """Return ``(url, state)`` for sending the user to Intuit's consent screen."""
    settings = get_settings()
    state = state or secrets.token_urlsafe(16)
    query = urlencode(
        {
            "client_id": settings.quickbooks_client_id,
            "response_type": "code",
            "scope": SCOPE,
            "redirect_uri": normalize_redirect_uri(redirect_uri),
            "state": state,
        }
    )
    return f"{settings.quickbooks_auth_url}?{query}", state


def _parse_expiry(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        expires = value
    else:
        expires = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return expires if expires.tzinfo else expires.replace(tzinfo=UTC)


class QuickBooksTokenManager:
    """Exchange, store and refresh QuickBooks tokens.

    Tokens live in the single ``quickbooks_config`` row so every job shares
    the same connection.
    """

    def __init__(self, store: SupabaseClient) -> None:
        settings = get_settings()
        self._store = store
        self._client_id = settings.quickbooks_client_id
        self._client_secret = settings.quickbooks_client_secret.get_secret_value()
        self._token_url = settings.quickbooks_token_url
        self._api_base = settings.quickbooks_api_base.rstrip("/")
        self._minor_version = settings.quickbooks_minor_version
        self._timeout = settings.quickbooks_timeout
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()
        self._logger = logger.bind(component="quickbooks_oauth")

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

    def _basic_auth(self) -> str:
        raw = f"{self._client_id}:{self._client_secret}".encode()
        return f"Basic {base64.b64encode(raw).decode()}"

    async def _post_token(self, form: dict[str, str]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                self._token_url,
                data=form,
                headers={
                    "Accept": "application/json",
                    "Authorization": self._basic_auth(),
                    "Content-Type": "application/x-www-form-urlencoded",
                },
            )
        except httpx.RequestError as e:
            raise QuickBooksError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            raise QuickBooksAuthError(
                f"Token request failed: {response.text}",
                status_code=response.status_code,
                details={"grant_type": form.get("grant_type")},
            )
        return cast(dict[str, Any], response.json())

    async def _fetch_company_name(self, access_token: str, realm_id: str) -> str:
        client = await self._get_client()
        try:
            response = await client.get(
                f"{self._api_base}/{realm_id}/companyinfo/{realm_id}",
                params={"minorversion": self._minor_version},
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {access_token}",
                },
            )
        except httpx.RequestError as e:
            self._logger.warning("company_info_failed", error=str(e))
            return DEFAULT_COMPANY_NAME
        if response.status_code != 200:
            self._logger.warning("company_info_failed", status_code=response.status_code)
            return DEFAULT_COMPANY_NAME
        info = response.json().get("CompanyInfo") or {}
        return info.get("CompanyName") or DEFAULT_COMPANY_NAME

    async def log_event(
        self, action: str, status: str, details: dict[str, Any] | None = None
    ) -> None:
        await self._store.insert(
            "quickbooks_sync_log",
            {"entity_type": "config", "action": action, "status": status, "details": details},
        )

    async def get_config(self) -> dict[str, Any] | None:
        """The connected configuration row, if any."""
        return await self._store.select_one(
            "quickbooks_config", filters=[eq("is_connected", True)]
        )

    async def exchange_code(self, code: str, realm_id: str, redirect_uri: str) -> dict[str, Any]:
        """Complete the OAuth flow and store the connection."""
        tokens = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": normalize_redirect_uri(redirect_uri),
            }
        )
        company_name = await self._fetch_company_name(tokens["access_token"], realm_id)
        expires_at = datetime.now(UTC) + timedelta(seconds=int(tokens.get("expires_in", 3600)))
        values = {
            "realm_id": realm_id,
            "access_token": tokens["access_token"],
            "refresh_token": tokens["refresh_token"],
            "token_expires_at": expires_at.isoformat(),
            "company_name": company_name,
            "is_connected": True,
        }

        existing = await self._store.select_one("quickbooks_config", "id")
        if existing:
            await self._store.update("quickbooks_config", values, [eq("id", existing["id"])])
        else:
            await self._store.insert("quickbooks_config", values)

        await self.log_event(
            "connect", "success", {"company_name": company_name, "realm_id": realm_id}
        )
        self._logger.info("quickbooks_connected", company=company_name, realm_id=realm_id)
        return {"success": True, "company_name": company_name, "realm_id": realm_id}

    async def refresh(self, config: dict[str, Any] | None = None) -> tuple[str, str]:
        """Refresh the access token; a rejected refresh disconnects the company."""
        config = config or await self.get_config()
        if not config:
            raise QuickBooksNotConnectedError("QuickBooks not connected")

        try:
            tokens = await self._post_token(
                {"grant_type": "refresh_token", "refresh_token": config["refresh_token"]}
            )
        except QuickBooksAuthError:
            await self._store.update(
                "quickbooks_config", {"is_connected": False}, [eq("id", config["id"])]
            )
            self._logger.error("token_refresh_failed", realm_id=config.get("realm_id"))
            raise

        expires_at = datetime.now(UTC) + timedelta(seconds=int(tokens.get("expires_in", 3600)))
        await self._store.update(
            "quickbooks_config",
            {
                "access_token": tokens["access_token"],
                "refresh_token": tokens.get("refresh_token", config["refresh_token"]),
                "token_expires_at": expires_at.isoformat(),
            },
            [eq("id", config["id"])],
        )
        self._logger.debug("tokens_refreshed")
        return tokens["access_token"], str(config["realm_id"])

    async def get_valid_token(self) -> tuple[str, str]:
        """Return ``(access_token, realm_id)``, refreshing if it expires soon."""
        async with self._lock:
            config = await self.get_config()
            if not config:
                raise QuickBooksNotConnectedError("QuickBooks not connected")
            expires_at = _parse_expiry(config.get("token_expires_at"))
            if expires_at is None or expires_at - REFRESH_MARGIN <= datetime.now(UTC):
                return await self.refresh(config)
            return config["access_token"], str(config["realm_id"])

    async def disconnect(self) -> None:
        await self._store.update(
            "quickbooks_config",
            {"is_connected": False, "access_token": None, "refresh_token": None},
            [not_null("id")],
        )
        await self.log_event("disconnect", "success")
        self._logger.info("quickbooks_disconnected")
