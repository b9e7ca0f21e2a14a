"""Session registry for multi-session callers.

``SessionRegistry`` maps session IDs to live ``SandboxProvider`` instances.
It is created once per process (usually by the HTTP app) and passed to the
code that needs it; there is no module-level registry.

Usage:
    registry = SessionRegistry(create_provider)

    provider = await registry.create_session()          # fresh session
    same = registry.get_provider(provider.get_sandbox_info().session_id)

    # Re-adopt a session known only by ID (e.g. after a process restart)
    provider = await registry.require_provider("abc123")

    await registry.terminate_all()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from src.sandbox_backends.base import SandboxInfo, SandboxProvider
from src.sandbox_backends.errors import ProvisionError, SandboxError, SessionNotFound

logger = logging.getLogger(__name__)

_READY_MARKER = "sandbox-ready"


@dataclass(frozen=True)
class SessionStatus:
    active: bool
    healthy: bool
    info: SandboxInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "healthy": self.healthy,
            "info": self.info.to_dict() if self.info else None,
        }


@dataclass
class _Entry:
    provider: SandboxProvider
    last_access: float


class SessionRegistry:
    def __init__(
        self,
        provider_factory: Callable[[], SandboxProvider] | None = None,
        *,
        idle_ttl_s: float | None = None,
    ) -> None:
        if provider_factory is None:
            from src.sandbox_backends.factory import create_provider

            provider_factory = create_provider
        self._factory = provider_factory
        self.idle_ttl_s = idle_ttl_s
        self._entries: dict[str, _Entry] = {}
        self._aliases: dict[str, str] = {}  # requested id -> replacement id
        self._pending_create: asyncio.Future[SandboxProvider] | None = None
        self._pending_by_id: dict[str, asyncio.Future[SandboxProvider]] = {}
        # Fallback for call sites that do not carry a session id.
        self.default_session_id: str | None = None

    # -- lookup ----------------------------------------------------------

    def _resolve_id(self, session_id: str) -> str:
        return self._aliases.get(session_id, session_id)

    def get_provider(self, session_id: str) -> SandboxProvider | None:
        entry = self._entries.get(self._resolve_id(session_id))
        return entry.provider if entry else None

    def get_default_provider(self) -> SandboxProvider | None:
        if not self.default_session_id:
            return None
        return self.get_provider(self.default_session_id)

    def list_sessions(self) -> list[str]:
        return list(self._entries.keys())

    def _touch(self, session_id: str) -> None:
        entry = self._entries.get(self._resolve_id(session_id))
        if entry is not None:
            entry.last_access = time.time()

    def register(self, session_id: str, provider: SandboxProvider) -> None:
        self._entries[session_id] = _Entry(provider=provider, last_access=time.time())
        if self.default_session_id is None:
            self.default_session_id = session_id

    def forget(self, session_id: str) -> SandboxProvider | None:
        """Drop a session from the registry without terminating it."""
        sid = self._resolve_id(session_id)
        entry = self._entries.pop(sid, None)
        for alias, target in list(self._aliases.items()):
            if target == sid or alias == session_id:
                self._aliases.pop(alias, None)
        if self.default_session_id in (sid, session_id):
            self.default_session_id = None
        return entry.provider if entry else None

    # -- reconnect / create ---------------------------------------------

    async def get_or_create_provider(
        self, session_id: str, *, provision: bool = False
    ) -> SandboxProvider:
        """Return the provider for `session_id`, reconnecting if needed.

        When the backend no longer knows the id, an unregistered provider with
        no session is returned, unless `provision` is set, in which case a
        fresh session is created and aliased under `session_id`. Concurrent
        calls for the same id share one in-flight reconnect whatever their
        `provision` flag.
        """
        existing = self.get_provider(session_id)
        if existing is not None:
            self._touch(session_id)
            return existing

        pending = self._pending_by_id.get(session_id)
        if pending is None:
            pending = asyncio.ensure_future(self._reconnect_shared(session_id))
            self._pending_by_id[session_id] = pending
        provider = await asyncio.shield(pending)
        if provider.get_sandbox_info() is not None or not provision:
            return provider

        # A concurrent provisioning caller may have replaced it already.
        replacement = self.get_provider(session_id)
        if replacement is not None:
            return replacement

        await provider.aclose()
        logger.info("Sandbox %s not found; provisioning a replacement", session_id)
        created = await self.create_session()
        info = created.get_sandbox_info()
        if info is not None and info.session_id != session_id:
            self._aliases[session_id] = info.session_id
        return created

    async def _reconnect_shared(self, session_id: str) -> SandboxProvider:
        try:
            provider = self._factory()
            if await provider.reconnect(session_id):
                self.register(session_id, provider)
            else:
                logger.info("Sandbox %s not found on backend", session_id)
            return provider
        finally:
            self._pending_by_id.pop(session_id, None)

    async def require_provider(self, session_id: str) -> SandboxProvider:
        provider = await self.get_or_create_provider(session_id)
        if provider.get_sandbox_info() is None:
            await provider.aclose()
            raise SessionNotFound(session_id)
        return provider

    async def create_session(
        self, existing_id: str | None = None, *, setup: bool = True
    ) -> SandboxProvider:
        """Restore `existing_id` or provision a fresh session.

        Fresh creations are de-duplicated: concurrent callers await the same
        in-flight creation and all see its result or its error.
        """
        if existing_id:
            provider = await self.require_provider(existing_id)
            self.default_session_id = self._resolve_id(existing_id)
            return provider

        pending = self._pending_create
        if pending is None:
            pending = asyncio.ensure_future(self._create_shared(setup))
            self._pending_create = pending
        return await asyncio.shield(pending)

    async def _create_shared(self, setup: bool) -> SandboxProvider:
        try:
            return await self._create_fresh(setup)
        finally:
            self._pending_create = None

    async def _create_fresh(self, setup: bool) -> SandboxProvider:
        provider = self._factory()
        try:
            info = await provider.create_sandbox()
            if setup:
                await provider.setup_runtime()
            probe = await provider.run_command(f'echo "{_READY_MARKER}"')
            if not probe.success or _READY_MARKER not in probe.stdout:
                raise ProvisionError(
                    f"Sandbox {info.session_id} failed its health check "
                    f"(exit_code={probe.exit_code})"
                )
        except Exception:
            await self._discard(provider)
            raise

        self.register(info.session_id, provider)
        self.default_session_id = info.session_id
        logger.info("Sandbox session %s registered", info.session_id)
        return provider

    async def _discard(self, provider: SandboxProvider) -> None:
        try:
            await provider.terminate()
            await provider.aclose()
        except Exception:
            logger.error("Failed to discard sandbox provider", exc_info=True)

    # -- status / teardown ----------------------------------------------

    async def check_session_status(self, session_id: str) -> SessionStatus:
        provider = self.get_provider(session_id)
        if provider is None:
            provider = await self.get_or_create_provider(session_id)
            if provider.get_sandbox_info() is None:
                await provider.aclose()
                return SessionStatus(active=False, healthy=False)

        info = provider.get_sandbox_info()
        if info is None:
            return SessionStatus(active=False, healthy=False)
        try:
            res = await provider.run_command(f'echo "{_READY_MARKER}"')
            healthy = res.success and _READY_MARKER in res.stdout
        except SessionNotFound:
            logger.info("Sandbox %s disappeared from backend", session_id)
            self.forget(session_id)
            return SessionStatus(active=False, healthy=False)
        except SandboxError as exc:
            logger.warning("Health check for sandbox %s failed: %s", session_id, exc)
            healthy = False
        return SessionStatus(active=True, healthy=healthy, info=info)

    async def terminate_session(self, session_id: str) -> bool:
        provider = self.forget(session_id)
        if provider is None:
            logger.warning("No sandbox registered for session '%s'", session_id)
            return False
        logger.info("Terminating sandbox session '%s'", session_id)
        try:
            await provider.terminate()
            await provider.aclose()
        except Exception:
            logger.error(
                "Failed to terminate sandbox session '%s'. Manual cleanup may be required.",
                session_id,
                exc_info=True,
            )
            return False
        return True

    async def terminate_all(self) -> int:
        session_ids = self.list_sessions()
        logger.info("Terminating %d sandbox session(s)", len(session_ids))
        failed = []
        done = 0
        for sid in session_ids:
            if await self.terminate_session(sid):
                done += 1
            else:
                failed.append(sid)
        if failed:
            logger.error("Failed to terminate %d sandbox(es): %s", len(failed), failed)
        return done

    async def cleanup_idle(self, max_age_s: float | None = None) -> int:
        """Terminate sessions idle longer than `max_age_s` (default: idle_ttl_s)."""
        ttl = self.idle_ttl_s if max_age_s is None else max_age_s
        if ttl is None:
            return 0
        cutoff = time.time() - ttl
        stale = [sid for sid, e in self._entries.items() if e.last_access < cutoff]
        cleaned = 0
        for sid in stale:
            logger.info("Cleaning up idle sandbox session '%s'", sid)
            if await self.terminate_session(sid):
                cleaned += 1
        return cleaned

    async def __aenter__(self) -> SessionRegistry:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.terminate_all()
