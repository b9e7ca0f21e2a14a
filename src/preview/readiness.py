"""Confirm a session's dev server is serving before the preview is shown.

Sequence per ``ensure_ready()`` call:
  1. poll session health + an HTTP ping of the preview URL
  2. cache-busting reload of the preview surface, short wait, check again
  3. recreate the preview surface once, wait, check again
  4. provision a new session and retarget (bounded per controller)

If the URL or the surface is not available yet, the controller waits and
re-checks instead of failing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from src.sandbox_backends.errors import PreviewUnreachable, SandboxError
from src.sandbox_backends.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreviewReadinessConfig:
    health_attempts: int = 12
    health_interval_s: float = 1.0
    reload_wait_s: float = 1.5
    surface_wait_s: float = 1.5
    max_session_recreates: int = 3
    rearm_delay_s: float = 0.5
    max_rearms: int = 120
    ping_timeout_s: float = 5.0


class PreviewSurface(Protocol):
    """Whatever renders the preview (an iframe, a headless page, ...)."""

    def is_mounted(self) -> bool: ...

    async def reload(self, url: str) -> None: ...

    async def recreate(self) -> None: ...


@dataclass(frozen=True)
class ReadinessReport:
    ready: bool
    session_id: str | None
    url: str | None
    health_checks: int = 0
    surface_recreated: bool = False
    session_recreated: bool = False
    reason: str | None = None

    @property
    def degraded(self) -> bool:
        return not self.ready

    def raise_for_status(self) -> None:
        if not self.ready:
            raise PreviewUnreachable(self.reason or "preview not reachable")

    def to_dict(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "session_id": self.session_id,
            "url": self.url,
            "health_checks": self.health_checks,
            "surface_recreated": self.surface_recreated,
            "session_recreated": self.session_recreated,
            "reason": self.reason,
        }


def cache_busted(url: str, *, now_ms: int | None = None) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "t"]
    query.append(("t", str(int(time.time() * 1000) if now_ms is None else now_ms)))
    return urlunsplit(parts._replace(query=urlencode(query)))


class PreviewReadinessController:
    def __init__(
        self,
        registry: SessionRegistry,
        session_id: str,
        surface: PreviewSurface,
        *,
        config: PreviewReadinessConfig | None = None,
        http: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.session_id = session_id
        self.surface = surface
        self.config = config or PreviewReadinessConfig()
        self._http = http
        self._owns_http = http is None
        self._sleep = sleep
        self._session_recreates = 0
        self._inflight: asyncio.Future[ReadinessReport] | None = None

    @property
    def session_recreates(self) -> int:
        return self._session_recreates

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.ping_timeout_s)
        return self._http

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    def current_url(self) -> str | None:
        provider = self.registry.get_provider(self.session_id)
        info = provider.get_sandbox_info() if provider else None
        return info.url if info else None

    async def ping(self, url: str) -> bool:
        try:
            resp = await self._client().get(url)
        except httpx.HTTPError as exc:
            logger.debug("Preview ping %s failed: %s", url, exc)
            return False
        return resp.status_code < 500

    async def check_health(self) -> bool:
        try:
            status = await self.registry.check_session_status(self.session_id)
        except SandboxError as exc:
            logger.warning("Status check for %s failed: %s", self.session_id, exc)
            return False
        if not (status.active and status.healthy and status.info and status.info.url):
            return False
        return await self.ping(status.info.url)

    async def _poll(self) -> tuple[bool, int]:
        for attempt in range(1, self.config.health_attempts + 1):
            if await self.check_health():
                return True, attempt
            if attempt < self.config.health_attempts:
                await self._sleep(self.config.health_interval_s)
        return False, self.config.health_attempts

    async def ensure_ready(self) -> ReadinessReport:
        """Run the readiness sequence; concurrent callers share one run."""
        pending = self._inflight
        if pending is None:
            pending = asyncio.ensure_future(self._run_shared())
            self._inflight = pending
        return await asyncio.shield(pending)

    async def _run_shared(self) -> ReadinessReport:
        try:
            return await self._run()
        finally:
            self._inflight = None

    async def _wait_for_target(self) -> str | None:
        for _ in range(self.config.max_rearms + 1):
            url = self.current_url()
            if url and self.surface.is_mounted():
                return url
            await self._sleep(self.config.rearm_delay_s)
        return None

    async def _run(self) -> ReadinessReport:
        url = await self._wait_for_target()
        if url is None:
            return ReadinessReport(
                ready=False,
                session_id=self.session_id,
                url=self.current_url(),
                reason="preview URL or surface never became available",
            )

        healthy, checks = await self._poll()
        await self.surface.reload(cache_busted(url))
        await self._sleep(self.config.reload_wait_s)
        if not healthy:
            healthy = await self.check_health()
            checks += 1

        surface_recreated = False
        if not healthy:
            logger.info("Preview for %s still unhealthy; recreating surface", self.session_id)
            await self.surface.recreate()
            surface_recreated = True
            await self._sleep(self.config.surface_wait_s)
            healthy = await self.check_health()
            checks += 1

        session_recreated = False
        reason = None
        if not healthy and self._session_recreates < self.config.max_session_recreates:
            self._session_recreates += 1
            logger.warning(
                "Preview for %s unreachable; provisioning a new session (%d/%d)",
                self.session_id,
                self._session_recreates,
                self.config.max_session_recreates,
            )
            try:
                provider = await self.registry.create_session()
            except SandboxError as exc:
                reason = f"session recreation failed: {exc}"
            else:
                info = provider.get_sandbox_info()
                if info is not None:
                    self.session_id = info.session_id
                    url = info.url or url
                    session_recreated = True
                    await self.surface.reload(cache_busted(url))
                    healthy, n = await self._poll()
                    checks += n

        if not healthy and reason is None:
            reason = f"dev server not reachable after {checks} health check(s)"
        return ReadinessReport(
            ready=healthy,
            session_id=self.session_id,
            url=url,
            health_checks=checks,
            surface_recreated=surface_recreated,
            session_recreated=session_recreated,
            reason=None if healthy else reason,
        )
