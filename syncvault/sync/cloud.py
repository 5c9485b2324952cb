"""
HTTP client for the Sync Service.

Routes:
  GET|POST|DELETE /api/sync/{id}        — opaque state blob
  GET|PUT         /api/automation/{id}  — server-held automation document
  GET             /api/health

Every call carries the sync token in X-Sync-Password. Network errors,
timeouts, 429 and 5xx responses are retried with exponential backoff.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from syncvault.config.settings import Settings, settings as default_settings
from syncvault.errors import (
    AuthorizationError,
    NotFoundError,
    PayloadTooLargeError,
    SyncServerError,
    SyncServerUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Sync-Password"


class SyncCloudClient:
    """Async client for one Sync Service base URL."""

    def __init__(
        self,
        server_url: Optional[str] = None,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        config = config or default_settings
        self._server_url = (server_url or config.sync_server_url).rstrip("/")
        self._timeout = config.sync_request_timeout
        self._retries = config.sync_request_retries
        self._retry_delay = config.sync_retry_delay
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def server_url(self) -> str:
        return self._server_url

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._server_url,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Sync blob ───────────────────────────────────────────────

    async def fetch(self, sync_id: str, token: str) -> Any:
        resp = await self._request("GET", f"/api/sync/{sync_id}", token)
        self._raise_for_status(resp)
        return resp.json()

    async def push(self, sync_id: str, token: str, payload: Any) -> None:
        resp = await self._request("POST", f"/api/sync/{sync_id}", token, json=payload)
        self._raise_for_status(resp)

    async def delete(self, sync_id: str, token: str) -> None:
        logger.info("Deleting remote account %s", sync_id)
        resp = await self._request("DELETE", f"/api/sync/{sync_id}", token)
        self._raise_for_status(resp)

    # ── Automation ──────────────────────────────────────────────

    async def get_automation(self, sync_id: str, token: str) -> dict:
        resp = await self._request("GET", f"/api/automation/{sync_id}", token)
        self._raise_for_status(resp)
        return resp.json()

    async def put_automation(self, sync_id: str, token: str, document: dict) -> None:
        resp = await self._request("PUT", f"/api/automation/{sync_id}", token, json=document)
        self._raise_for_status(resp)

    # ── Health ──────────────────────────────────────────────────

    async def health(self) -> bool:
        try:
            resp = await self.client.get("/api/health")
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    # ── Internal ────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        json: Any = None,
    ) -> httpx.Response:
        headers = {TOKEN_HEADER: token}
        last_error: Optional[Exception] = None

        for attempt in range(self._retries + 1):
            delay = self._retry_delay * 2 ** attempt
            try:
                resp = await self.client.request(method, path, headers=headers, json=json)
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_error = e
                if attempt < self._retries:
                    logger.warning(
                        "%s on attempt %d. Retrying in %.1fs...",
                        "Timeout" if isinstance(e, httpx.TimeoutException) else "Network error",
                        attempt + 1, delay,
                    )
                    await self._sleep(delay)
                    continue
                break

            if resp.status_code == 429 and attempt < self._retries:
                retry_after = resp.headers.get("Retry-After")
                if retry_after and retry_after.isdigit():
                    delay = float(retry_after)
                logger.warning("429 Too Many Requests. Retrying in %.1fs...", delay)
                await self._sleep(delay)
                continue

            if resp.status_code >= 500 and attempt < self._retries:
                logger.warning("Server error %d. Retrying in %.1fs...", resp.status_code, delay)
                await self._sleep(delay)
                continue

            return resp

        raise SyncServerUnavailable(
            f"Failed to reach server at {self._server_url}: {last_error}"
        )

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            body = resp.json()
        except ValueError:
            body = None
        message = body.get("error", "") if isinstance(body, dict) else ""

        if resp.status_code == 400:
            raise ValidationError(message or "Bad request")
        if resp.status_code == 401:
            raise AuthorizationError("Invalid Password")
        if resp.status_code == 404:
            raise NotFoundError("Account ID not found")
        if resp.status_code == 413:
            raise PayloadTooLargeError(message or "Payload too large")
        if resp.status_code in (502, 503, 504):
            raise SyncServerUnavailable(f"Cloud Sync Server unavailable ({resp.status_code})")
        raise SyncServerError(f"Cloud Sync Server error ({resp.status_code}): {message}")
