from __future__ import annotations

import time
from dataclasses import dataclass, field


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RestartGateConfig:
    cooldown_s: float = 5.0


@dataclass
class _SessionRestartState:
    last_restart_ms: int = 0
    in_progress: bool = False


@dataclass
class RestartGateState:
    by_session: dict[str, _SessionRestartState] = field(default_factory=dict)


@dataclass(frozen=True)
class RestartDecision:
    allowed: bool
    reason: str | None = None
    retry_after_ms: int | None = None


def decide_dev_server_restart(
    *,
    state: RestartGateState,
    session_id: str,
    cfg: RestartGateConfig,
    now_ms: int | None = None,
) -> RestartDecision:
    """Pure decision helper; does not mutate `state`."""
    sid = (session_id or "").strip()
    if not sid:
        return RestartDecision(allowed=False, reason="missing_session")

    rec = state.by_session.get(sid)
    if rec is None:
        return RestartDecision(allowed=True)
    if rec.in_progress:
        return RestartDecision(allowed=False, reason="in_progress")

    now = _now_ms() if now_ms is None else int(now_ms)
    elapsed = now - rec.last_restart_ms
    cooldown_ms = int(cfg.cooldown_s * 1000)
    if rec.last_restart_ms and elapsed < cooldown_ms:
        return RestartDecision(
            allowed=False, reason="cooldown", retry_after_ms=cooldown_ms - elapsed
        )
    return RestartDecision(allowed=True)


def mark_restart_started(
    *, state: RestartGateState, session_id: str, now_ms: int | None = None
) -> None:
    now = _now_ms() if now_ms is None else int(now_ms)
    state.by_session[session_id] = _SessionRestartState(last_restart_ms=now, in_progress=True)


def mark_restart_finished(*, state: RestartGateState, session_id: str) -> None:
    rec = state.by_session.get(session_id)
    if rec is not None:
        rec.in_progress = False
