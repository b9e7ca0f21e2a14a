from __future__ import annotations

import asyncio

import pytest

from src.code_apply.recovery import apply_with_session_recovery
from src.sandbox_backends.base import CommandResult, SandboxInfo
from src.sandbox_backends.errors import SessionNotFound, SessionRecoveryExhausted
from src.sandbox_backends.session_registry import SessionRegistry


class _FakeProvider:
    provider_name = "fake"

    def __init__(self, counter: list[int]) -> None:
        self._counter = counter
        self.info: SandboxInfo | None = None
        self.existing_files: set[str] = set()

    async def create_sandbox(self):
        self._counter[0] += 1
        self.info = SandboxInfo(
            session_id=f"sess-{self._counter[0]}", provider="fake", working_directory="/w"
        )
        return self.info

    async def reconnect(self, session_id):
        return False

    async def setup_runtime(self):
        return None

    async def run_command(self, command):
        return CommandResult(stdout="sandbox-ready\n", stderr="", exit_code=0)

    def get_sandbox_info(self):
        return self.info

    async def terminate(self):
        self.info = None

    async def aclose(self):
        return None


def _registry() -> tuple[SessionRegistry, list[int]]:
    counter = [0]
    return SessionRegistry(lambda: _FakeProvider(counter)), counter


def test_always_lost_session_gives_up_after_budget_plus_one_attempts():
    registry, counter = _registry()
    attempts: list[str] = []
    events: list[dict] = []

    async def attempt(provider):
        sid = provider.get_sandbox_info().session_id
        attempts.append(sid)
        raise SessionNotFound(sid)

    async def main():
        await registry.create_session()
        return await apply_with_session_recovery(
            registry, "sess-1", attempt, retry_budget=2, emit=events.append
        )

    with pytest.raises(SessionRecoveryExhausted) as ei:
        asyncio.run(main())

    assert attempts == ["sess-1", "sess-2", "sess-3"]
    assert ei.value.attempts == 3
    assert isinstance(ei.value.last_error, SessionNotFound)
    assert counter[0] == 3
    assert [e["type"] for e in events] == ["status", "status"]
    assert registry.list_sessions() == []


def test_recovers_after_one_recreation():
    registry, _counter = _registry()
    attempts: list[str] = []

    async def attempt(provider):
        sid = provider.get_sandbox_info().session_id
        attempts.append(sid)
        if sid == "sess-1":
            raise SessionNotFound(sid)
        return f"applied on {sid}"

    async def main():
        await registry.create_session()
        return await apply_with_session_recovery(registry, "sess-1", attempt)

    assert asyncio.run(main()) == "applied on sess-2"
    assert attempts == ["sess-1", "sess-2"]
    assert registry.get_provider("sess-1") is None
    assert registry.default_session_id == "sess-2"


def test_unknown_session_is_recreated():
    registry, _counter = _registry()

    async def attempt(provider):
        return provider.get_sandbox_info().session_id

    result = asyncio.run(apply_with_session_recovery(registry, "missing", attempt))

    assert result == "sess-1"


def test_without_session_id_uses_default_session():
    registry, counter = _registry()

    async def attempt(provider):
        return provider.get_sandbox_info().session_id

    async def main():
        first = await apply_with_session_recovery(registry, None, attempt)
        second = await apply_with_session_recovery(registry, None, attempt)
        return first, second

    assert asyncio.run(main()) == ("sess-1", "sess-1")
    assert counter[0] == 1


def test_other_errors_are_not_retried():
    registry, counter = _registry()
    calls = []

    async def attempt(provider):
        calls.append(1)
        raise ValueError("boom")

    async def main():
        await registry.create_session()
        await apply_with_session_recovery(registry, "sess-1", attempt)

    with pytest.raises(ValueError):
        asyncio.run(main())
    assert calls == [1]
    assert counter[0] == 1
