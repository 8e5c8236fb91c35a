"""Async HTTP client for the continuation server.

Mirrors the behaviour of the browser client: every response body is read as
text first, then parsed. Error bodies that turn out to be HTML pages (a proxy
or static server answering instead of the API) raise ``HtmlErrorPageError``.
Successful responses that are not JSON raise ``InvalidJsonError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any

import httpx

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 120.0


class ApiClientError(Exception):
    """Raised when the server answers with an error."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class HtmlErrorPageError(ApiClientError):
    """Raised when an error response is an HTML document instead of JSON."""


class InvalidJsonError(ApiClientError):
    """Raised when a successful response body is not valid JSON."""


class ContinuationApiClient:
    """Async client for the continuation server API.

    Usage::

        async with ContinuationApiClient("http://localhost:3001") as client:
            started = await client.generate_continuation(payload)
            result = await client.wait_for_task(started["taskId"])
            segment = result["segment"]
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> ContinuationApiClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, default_error: str, **kwargs: Any) -> dict:
        response = await self._client.request(method, url, **kwargs)
        logger.debug("[API Client] %s %s -> %d", method, url, response.status_code)
        return self._parse(response, default_error)

    def _raise_for_error(self, response: httpx.Response, default_error: str) -> None:
        if response.is_success:
            return
        text = response.text
        status = response.status_code
        try:
            error = json.loads(text)
        except ValueError:
            if "<!DOCTYPE" in text:
                raise HtmlErrorPageError(
                    f"Server returned HTML error page instead of JSON. Status: {status}. "
                    "This usually indicates a server configuration issue or the API "
                    "endpoint is not available.",
                    status_code=status,
                    body=text,
                ) from None
            raise ApiClientError(
                f"API Error ({status}): {text[:200]}...", status_code=status, body=text
            ) from None
        message = error.get("message") if isinstance(error, dict) else None
        raise ApiClientError(message or default_error, status_code=status, body=error)

    def _parse(self, response: httpx.Response, default_error: str) -> dict:
        self._raise_for_error(response, default_error)
        try:
            return json.loads(response.text)
        except ValueError:
            raise InvalidJsonError(
                "Server returned invalid JSON response. Check server logs for details.",
                status_code=response.status_code,
                body=response.text,
            ) from None

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def generate_continuation(self, data: dict) -> dict:
        """Start a background continuation task; returns ``taskId`` and ``checkStatusUrl``."""
        return await self._request(
            "POST", "/api/generate-continuation", "Failed to generate continuation", json=data
        )

    async def generate_continuation_sync(self, data: dict) -> dict:
        return await self._request(
            "POST", "/api/generate-continuation/sync", "Failed to generate continuation", json=data
        )

    async def test_continuation(self, data: dict) -> dict:
        return await self._request(
            "POST", "/api/test-continuation", "Failed to run test continuation", json=data
        )

    async def get_task_status(self, task_id: str) -> dict:
        return await self._request("GET", f"/api/task-status/{task_id}", "Failed to check task status")

    async def download_segments(self, segments: list, dest: str | Path = "veo3-segments.zip") -> Path:
        """Fetch the zip archive for ``segments`` and write it to ``dest``."""
        logger.info("[API Client] Downloading %d segments", len(segments))
        response = await self._client.post("/api/download", json={"segments": segments})
        self._raise_for_error(response, "Failed to download segments")

        path = Path(dest)
        path.write_bytes(response.content)
        return path

    async def health(self) -> dict:
        return await self._request("GET", "/api/health", "Health check failed")

    async def wait_for_task(
        self,
        task_id: str,
        poll_interval: float = 3.0,
        max_wait: float = 300.0,
    ) -> dict:
        """Poll the task until it leaves ``processing``.

        Returns the completed payload. A failed task surfaces as the
        ``ApiClientError`` raised for its 500 status response.
        """
        deadline = time.monotonic() + max_wait
        while True:
            status = await self.get_task_status(task_id)
            if status.get("status") != "processing":
                return status
            if time.monotonic() >= deadline:
                raise ApiClientError(f"Task {task_id} did not finish within {max_wait:g}s")
            await asyncio.sleep(poll_interval)
