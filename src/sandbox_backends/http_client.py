"""Async HTTP transport for the remote sandbox API."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any
from urllib.parse import urlsplit

import httpx

from src.sandbox_backends.errors import BackendError, TransportError

logger = logging.getLogger(__name__)


class SandboxHttpClient:
    """Thin JSON client bound to one configured base URL.

    One pooled ``httpx.AsyncClient`` is kept per timeout value, so command
    traffic (short deadline) and installs (long deadline) each reuse their own
    connections.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        default_timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        base = (base_url or "").strip().rstrip("/")
        if not base or not urlsplit(base).scheme:
            raise ValueError(f"base_url must be an absolute URL, got: {base_url!r}")
        self._base_url = base
        self._api_key = (api_key or "").strip() or None
        self._default_timeout_s = float(default_timeout_s)
        self._transport = transport
        self._clients: dict[float, httpx.AsyncClient] = {}

    @property
    def base_url(self) -> str:
        return self._base_url

    def build_url(self, path: str) -> str:
        p = str(path or "")
        if urlsplit(p).scheme or p.startswith("//"):
            raise ValueError(f"path must be relative to the configured base, got: {p!r}")
        return f"{self._base_url}/{p.lstrip('/')}"

    def _client_for(self, timeout_s: float) -> httpx.AsyncClient:
        client = self._clients.get(timeout_s)
        if client is None or client.is_closed:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_s),
                transport=self._transport,
            )
            self._clients[timeout_s] = client
        return client

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> dict[str, Any]:
        url = self.build_url(path)
        timeout = float(timeout_s or self._default_timeout_s)
        headers: dict[str, str] = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        content: str | None = None
        if body is not None:
            if isinstance(body, str):
                content = body
            else:
                content = json.dumps(body)
                headers["Content-Type"] = "application/json"

        client = self._client_for(timeout)
        started = time.monotonic()
        try:
            resp = await asyncio.wait_for(
                client.request(
                    method, url, content=content, params=params, headers=headers
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            elapsed = time.monotonic() - started
            logger.warning(
                "Sandbox API %s %s timed out after %.3fs (timeout=%ss)",
                method,
                url,
                elapsed,
                timeout,
            )
            raise TransportError(
                method=method,
                url=url,
                timeout_s=timeout,
                elapsed_s=elapsed,
                aborted=True,
                reason="deadline exceeded",
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                method=method,
                url=url,
                timeout_s=timeout,
                elapsed_s=time.monotonic() - started,
                aborted=False,
                reason=str(exc) or type(exc).__name__,
            ) from exc

        text = resp.text
        if resp.status_code < 200 or resp.status_code >= 300:
            raise BackendError(
                f"Sandbox API error {resp.status_code}: {text[:500]}",
                status_code=resp.status_code,
                body=text,
            )
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise BackendError(
                f"Sandbox API returned a non-JSON body for {method} {url}: {text[:200]}",
                status_code=resp.status_code,
                body=text,
            ) from exc
        if not isinstance(data, dict):
            return {"data": data}
        return data

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
