from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from src.sandbox_backends.base import SandboxProvider
from src.sandbox_backends.errors import SessionNotFound, SessionRecoveryExhausted
from src.sandbox_backends.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_BUDGET = 2


async def apply_with_session_recovery(
    registry: SessionRegistry,
    session_id: str | None,
    attempt: Callable[[SandboxProvider], Awaitable[T]],
    *,
    retry_budget: int = DEFAULT_RETRY_BUDGET,
    emit: Callable[[dict[str, Any]], Awaitable[None] | None] | None = None,
) -> T:
    """Run `attempt` against the session, recreating it when it goes missing.

    The whole request is replayed against a fresh session; anything the lost
    attempt wrote stays behind in the orphaned sandbox. At most
    ``retry_budget`` recreations happen, i.e. ``retry_budget + 1`` attempts.
    """
    sid = session_id
    last: SessionNotFound | None = None
    for attempt_no in range(retry_budget + 1):
        try:
            if sid:
                provider = await registry.require_provider(sid)
            else:
                provider = registry.get_default_provider() or await registry.create_session()
            return await attempt(provider)
        except SessionNotFound as exc:
            last = exc
            lost = exc.session_id or sid or ""
            if lost:
                registry.forget(lost)
            if attempt_no >= retry_budget:
                break
            logger.warning(
                "Sandbox %s not found (attempt %d/%d); recreating and replaying request",
                lost,
                attempt_no + 1,
                retry_budget + 1,
            )
            if emit is not None:
                res = emit({"type": "status", "message": "Sandbox expired. Recreating and retrying..."})
                if inspect.isawaitable(res):
                    await res
            provider = await registry.create_session()
            info = provider.get_sandbox_info()
            sid = info.session_id if info else None

    logger.error("Giving up after %d lost sandbox session(s)", retry_budget + 1)
    raise SessionRecoveryExhausted(retry_budget + 1, last)
