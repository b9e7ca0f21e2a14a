from __future__ import annotations

from src.dev_server_restart import (
    RestartGateConfig,
    RestartGateState,
    decide_dev_server_restart,
    mark_restart_finished,
    mark_restart_started,
)


def test_first_restart_allowed():
    d = decide_dev_server_restart(
        state=RestartGateState(), session_id="s1", cfg=RestartGateConfig(), now_ms=1000
    )
    assert d.allowed


def test_missing_session_rejected():
    d = decide_dev_server_restart(
        state=RestartGateState(), session_id="  ", cfg=RestartGateConfig(), now_ms=1000
    )
    assert not d.allowed
    assert d.reason == "missing_session"


def test_in_progress_then_cooldown_then_allowed():
    st = RestartGateState()
    cfg = RestartGateConfig(cooldown_s=5.0)
    mark_restart_started(state=st, session_id="s1", now_ms=10_000)

    d = decide_dev_server_restart(state=st, session_id="s1", cfg=cfg, now_ms=10_500)
    assert d.reason == "in_progress"

    mark_restart_finished(state=st, session_id="s1")
    d = decide_dev_server_restart(state=st, session_id="s1", cfg=cfg, now_ms=12_000)
    assert not d.allowed
    assert d.reason == "cooldown"
    assert d.retry_after_ms == 3000

    d = decide_dev_server_restart(state=st, session_id="s1", cfg=cfg, now_ms=15_000)
    assert d.allowed


def test_sessions_are_independent():
    st = RestartGateState()
    mark_restart_started(state=st, session_id="s1", now_ms=1)
    d = decide_dev_server_restart(state=st, session_id="s2", cfg=RestartGateConfig(), now_ms=2)
    assert d.allowed


def test_finishing_unknown_session_is_noop():
    st = RestartGateState()
    mark_restart_finished(state=st, session_id="nope")
    assert st.by_session == {}
