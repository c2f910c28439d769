"""
HTTP client for a health datastore gateway.

Writes versioned nutrition entries to a health platform through a small
REST gateway:

    GET  /v1/permissions                      -> {"nutrition_write": bool}
    POST /v1/permissions                      -> {"nutrition_write": bool}
    PUT  /v1/nutrition/{client_record_id}     (body: NutritionPayload)

The gateway performs the upsert keyed on clientRecordId; a body whose
clientRecordVersion is not newer than the stored one is ignored there.
"""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import quote, urlparse

import httpx

from ..errors import SyncError
from .base import NutritionPayload, get_registry

logger = logging.getLogger(__name__)

# Retry config for upserts
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds

DEFAULT_TIMEOUT = 30.0


class HttpHealthStore:
    """Health datastore reached over HTTPS with a bearer token."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_url = api_url.rstrip("/")

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not self._api_url.startswith("https://"):
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Health API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def has_write_permission(self) -> bool:
        """GET /v1/permissions. Transport errors propagate to the caller."""
        resp = await self._client.get("/v1/permissions")
        resp.raise_for_status()
        return bool(resp.json().get("nutrition_write"))

    async def request_permission(self) -> bool:
        """POST /v1/permissions. Returns False if the request fails."""
        try:
            resp = await self._client.post("/v1/permissions", json={"scopes": ["nutrition_write"]})
            resp.raise_for_status()
            return bool(resp.json().get("nutrition_write"))
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Permission request failed: %s", e)
            return False

    async def upsert(self, payload: NutritionPayload) -> None:
        """PUT /v1/nutrition/{id}.

        Retries up to MAX_RETRIES times with exponential backoff on
        transient errors (5xx, timeouts, connection errors).
        """
        path = f"/v1/nutrition/{quote(payload.client_record_id, safe='')}"
        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                resp = await self._client.put(path, json=payload.to_dict())
                resp.raise_for_status()
                return
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise SyncError(
                        f"Nutrition write rejected: {e.response.status_code} {e.response.text}"
                    ) from e
                last_error = e
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e

            if attempt < MAX_RETRIES - 1:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.info(
                    "Nutrition write attempt %d failed, retrying in %.1fs: %s",
                    attempt + 1, delay, last_error,
                )
                await asyncio.sleep(delay)

        raise SyncError(
            f"Nutrition write failed after {MAX_RETRIES} attempts: {last_error}"
        ) from last_error

    async def aclose(self) -> None:
        await self._client.aclose()


# Register providers
_registry = get_registry()
_registry.register_health("http", HttpHealthStore)
