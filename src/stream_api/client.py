"""Async client for the remote record collection API.

The client exposes a single operation, `store(records)`, and deliberately
has no retry logic: every failure (transport, authentication, validation) is
collapsed into a falsy result so the delivery pipeline can buffer and retry
on its own schedule.

The HTTP call uses `requests` executed in a thread so the event loop is never
blocked by network I/O.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import requests  # type: ignore
from loguru import logger

from config import StreamApiConfig

if TYPE_CHECKING:
    from activity.models import Record


class StreamApiClient:
    """Site-authenticated client for the record API.

    Members:
    - API key: `api_key`
    - Site UUID: `site_uuid`
    - Base URL: `base_url`
    - Per-request timeout: `timeout`
    """

    def __init__(self, config: StreamApiConfig):
        """Create a client using the given credentials."""
        self.config = config
        self.api_key = config.api_key
        self.site_uuid = config.site_uuid
        self.base_url: str = config.base_url
        self.timeout = config.timeout

    def is_connected(self) -> bool:
        """True when the site has both an API key and a UUID."""
        return self.config.is_connected

    def _headers(self) -> dict[str, str]:
        return {
            "Stream-Site-API-Key": self.api_key or "",
            "Stream-Site-UUID": self.site_uuid or "",
            "Accept": "application/json",
        }

    async def _send_request(self, method: str, path: str, body: Any | None) -> Any:
        """Send a request, returning the decoded JSON response.

        Raises:
        - `StreamApiError` for non-2xx responses
        - `requests.RequestException` for transport errors
        """
        url = self.base_url + path
        headers = self._headers()

        def _do_request() -> Any:
            """Execute the HTTP request synchronously (runs in a worker thread)."""
            resp = requests.request(method, url, headers=headers, json=body, timeout=self.timeout)
            if 200 <= resp.status_code < 300:
                if not resp.content:
                    return True
                return resp.json()

            error_payload: dict[str, Any] | None
            try:
                error_payload = resp.json()
            except Exception:  # noqa: BLE001 - best-effort parsing
                error_payload = None
            raise StreamApiError(status_code=resp.status_code, payload=error_payload)

        return await asyncio.to_thread(_do_request)

    async def store(self, records: Sequence[Record]) -> Any | None:
        """Submit a batch of records. Returns the API response, or None on any failure."""
        if not records:
            return None
        if not self.is_connected():
            logger.debug("Record API not connected; skipping request")
            return None

        body = [r.to_payload() for r in records]
        try:
            result = await self._send_request("POST", f"/sites/{self.site_uuid}/records", body)
        except StreamApiError as exc:
            logger.warning(f"Record API rejected {len(records)} record(s): {exc}")
            return None
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"Record API request failed: {type(exc).__name__}: {exc}")
            return None
        return result or None


class StreamApiError(RuntimeError):
    """HTTP-level error returned by the record API."""

    def __init__(self, *, status_code: int, payload: dict[str, Any] | None):
        """Create an error capturing HTTP status code and parsed payload (if any)."""
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"Record API HTTP {status_code}: {payload}")
