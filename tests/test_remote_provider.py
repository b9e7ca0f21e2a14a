from __future__ import annotations

import asyncio
import json

import pytest

httpx = pytest.importorskip("httpx")

from src.sandbox_backends.config import SandboxConfig
from src.sandbox_backends.errors import (
    NoActiveSandbox,
    ProvisionError,
    SessionNotFound,
    TransportError,
)
from src.sandbox_backends.http_client import SandboxHttpClient
from src.sandbox_backends.remote_provider import HttpSandboxProvider, build_install_command


class _FakeBackend:
    """In-memory stand-in for the sandbox API."""

    def __init__(self):
        self.sessions = {"known-1": {"url": "https://known-1.preview.test"}}
        self.commands: list[str] = []
        self.writes: list[dict] = []
        self.exit_codes: dict[str, int] = {}
        self.write_status = 200
        self.exec_delay_s = 0.0
        self.create_status = 200
        self.terminate_status = 200
        self.files: dict[str, str] = {}
        self.created = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else {}
        if path == "/sessions" and request.method == "POST":
            if self.create_status != 200:
                return httpx.Response(self.create_status, text="capacity")
            self.created += 1
            sid = f"sess-{self.created}"
            self.sessions[sid] = {}
            return httpx.Response(200, json={"sessionId": sid})
        parts = path.strip("/").split("/")
        sid = parts[1]
        if sid not in self.sessions:
            return httpx.Response(404, text=f"Sandbox {sid} not found")
        rest = "/".join(parts[2:])
        if rest == "" and request.method == "GET":
            return httpx.Response(200, json={"sessionId": sid, **self.sessions[sid]})
        if rest == "exec":
            if self.exec_delay_s:
                await asyncio.sleep(self.exec_delay_s)
            cmd = body["command"]
            self.commands.append(cmd)
            code = next((c for k, c in self.exit_codes.items() if k in cmd), 0)
            out = "present" if "test -f package.json" in cmd and "package.json" in self.files else ""
            if cmd.startswith("echo"):
                out = "sandbox-ready"
            return httpx.Response(200, json={"stdout": out, "stderr": "", "exitCode": code})
        if rest == "files/write":
            if self.write_status != 200:
                return httpx.Response(self.write_status, text="write api down")
            self.writes.append(body)
            self.files[body["path"]] = body["content"]
            return httpx.Response(200)
        if rest == "files/read":
            p = request.url.params["path"]
            if p not in self.files:
                return httpx.Response(404, text="no such file")
            return httpx.Response(200, json={"content": self.files[p]})
        if rest == "files/list":
            return httpx.Response(200, json={"files": [{"path": p} for p in self.files]})
        if rest == "terminate":
            if self.terminate_status != 200:
                return httpx.Response(self.terminate_status, text="boom")
            self.sessions.pop(sid, None)
            return httpx.Response(200, json={})
        return httpx.Response(500, text=f"unhandled {path}")


def _provider(backend: _FakeBackend, **cfg) -> HttpSandboxProvider:
    config = SandboxConfig(
        base_url="http://sandbox.test",
        dev_server_startup_delay_s=0,
        dev_server_kill_delay_s=0,
        template_dir=None,
        **cfg,
    )
    client = SandboxHttpClient(
        base_url=config.base_url,
        default_timeout_s=config.request_timeout_s,
        transport=httpx.MockTransport(backend),
    )
    return HttpSandboxProvider(config, client=client)


def test_operations_require_a_live_session():
    p = _provider(_FakeBackend())
    with pytest.raises(NoActiveSandbox):
        asyncio.run(p.run_command("ls"))
    with pytest.raises(NoActiveSandbox):
        asyncio.run(p.write_file("src/App.jsx", "x"))
    assert p.is_alive() is False


def test_create_then_run_command_with_nonzero_exit_does_not_raise():
    backend = _FakeBackend()
    backend.exit_codes["false"] = 3
    p = _provider(backend)

    async def _run():
        info = await p.create_sandbox()
        res = await p.run_command("false")
        return info, res

    info, res = asyncio.run(_run())
    assert info.session_id == "sess-1"
    assert info.url == "http://sess-1.sandbox.localhost"
    assert info.working_directory == "/workspace"
    assert res.exit_code == 3
    assert res.success is False


def test_create_failure_is_provision_error():
    backend = _FakeBackend()
    backend.create_status = 503
    with pytest.raises(ProvisionError):
        asyncio.run(_provider(backend).create_sandbox())


def test_create_terminates_previously_owned_session():
    backend = _FakeBackend()
    p = _provider(backend)

    async def _run():
        first = await p.create_sandbox()
        second = await p.create_sandbox()
        return first, second

    first, second = asyncio.run(_run())
    assert first.session_id not in backend.sessions
    assert second.session_id in backend.sessions


def test_reconnect_known_and_unknown():
    backend = _FakeBackend()
    p = _provider(backend)
    assert asyncio.run(p.reconnect("gone")) is False
    assert p.get_sandbox_info() is None
    assert asyncio.run(p.reconnect("known-1")) is True
    assert p.get_sandbox_info().url == "https://known-1.preview.test"


def test_write_falls_back_to_shell_when_api_fails():
    backend = _FakeBackend()
    backend.write_status = 500
    p = _provider(backend)

    async def _run():
        await p.create_sandbox()
        await p.write_file("/workspace/src/App.jsx", "export default 1")

    asyncio.run(_run())
    assert backend.writes == []
    shell = [c for c in backend.commands if "base64 -d" in c]
    assert len(shell) == 1
    assert "mkdir -p /workspace/src" in shell[0]
    assert "src/App.jsx" in p.existing_files


def test_write_does_not_fall_back_when_session_is_gone():
    backend = _FakeBackend()
    p = _provider(backend)

    async def _run():
        await p.create_sandbox()
        backend.sessions.clear()
        await p.write_file("src/App.jsx", "x")

    with pytest.raises(SessionNotFound):
        asyncio.run(_run())
    assert not any("base64" in c for c in backend.commands)


def test_write_rejects_paths_outside_workdir():
    p = _provider(_FakeBackend())

    async def _run():
        await p.create_sandbox()
        await p.write_file("../etc/passwd", "x")

    with pytest.raises(ValueError):
        asyncio.run(_run())


def test_read_missing_file_is_file_not_found():
    backend = _FakeBackend()
    p = _provider(backend)

    async def _run():
        await p.create_sandbox()
        await p.write_file("a.txt", "hello")
        assert await p.read_file("a.txt") == "hello"
        assert await p.list_files() == ["a.txt"]
        await p.read_file("missing.txt")

    with pytest.raises(FileNotFoundError):
        asyncio.run(_run())


def test_run_command_timeout_is_transport_error():
    backend = _FakeBackend()
    backend.exec_delay_s = 1.0
    p = _provider(backend, request_timeout_s=0.05, exec_timeout_s=0.05, install_timeout_s=1)

    async def _run():
        await p.create_sandbox()
        await p.run_command("sleep 10")

    with pytest.raises(TransportError) as ei:
        asyncio.run(_run())
    msg = str(ei.value)
    assert "timeout=0.05s" in msg
    assert "elapsed=" in msg
    assert "(aborted)" in msg


def test_install_packages_uses_install_timeout_and_restarts_dev_server():
    backend = _FakeBackend()
    p = _provider(backend)
    seen_timeouts: list[float] = []
    original = p._exec

    async def _spy(command, *, timeout_s):
        seen_timeouts.append(timeout_s)
        return await original(command, timeout_s=timeout_s)

    p._exec = _spy  # type: ignore[method-assign]

    async def _run():
        await p.create_sandbox()
        return await p.install_packages(["left-pad", "left-pad", "zod"])

    res = asyncio.run(_run())
    assert res.success
    assert "npm install --legacy-peer-deps left-pad zod" in backend.commands
    assert max(seen_timeouts) > p.config.command_timeout_s
    assert any(c.startswith("pkill -f vite") for c in backend.commands)
    assert any(c.startswith("nohup npm run dev") for c in backend.commands)


def test_install_failure_skips_restart():
    backend = _FakeBackend()
    backend.exit_codes["npm install"] = 1
    p = _provider(backend)

    async def _run():
        await p.create_sandbox()
        return await p.install_packages(["left-pad"])

    res = asyncio.run(_run())
    assert res.exit_code == 1
    assert not any(c.startswith("pkill") for c in backend.commands)


def test_install_nothing_is_a_noop():
    p = _provider(_FakeBackend())
    res = asyncio.run(p.install_packages([" ", ""]))
    assert res.success


def test_build_install_command_quotes_names():
    cmd = build_install_command(["a b", "@scope/pkg"], legacy_peer_deps=False)
    assert cmd == "npm install 'a b' @scope/pkg"


def test_setup_runtime_writes_skeleton_once():
    backend = _FakeBackend()
    p = _provider(backend)

    async def _run():
        await p.create_sandbox()
        await p.setup_runtime()
        n = len(backend.commands)
        await p.setup_runtime()
        return n

    n = asyncio.run(_run())
    assert len(backend.commands) == n
    assert {"package.json", "vite.config.js", "src/main.jsx", "src/App.jsx"} <= set(backend.files)
    assert "npm install --legacy-peer-deps" in backend.commands
    assert "src/App.jsx" in p.existing_files


def test_setup_runtime_failed_install_is_provision_error():
    backend = _FakeBackend()
    backend.exit_codes["npm install"] = 1
    p = _provider(backend)

    async def _run():
        await p.create_sandbox()
        await p.setup_runtime()

    with pytest.raises(ProvisionError):
        asyncio.run(_run())


def test_setup_runtime_prefers_template_copy():
    backend = _FakeBackend()
    config = SandboxConfig(
        base_url="http://sandbox.test",
        dev_server_startup_delay_s=0,
        dev_server_kill_delay_s=0,
        template_dir="/opt/app-template",
    )
    client = SandboxHttpClient(base_url=config.base_url, transport=httpx.MockTransport(backend))
    p = HttpSandboxProvider(config, client=client)

    async def _run():
        await p.create_sandbox()
        await p.setup_runtime()

    asyncio.run(_run())
    assert any("cp -a /opt/app-template/." in c for c in backend.commands)
    assert backend.writes == []
    assert not any(c.startswith("npm install") for c in backend.commands)


def test_terminate_clears_info_even_when_backend_fails():
    backend = _FakeBackend()
    backend.terminate_status = 500
    p = _provider(backend)

    async def _run():
        await p.create_sandbox()
        await p.terminate()

    asyncio.run(_run())
    assert p.get_sandbox_info() is None
    assert p.is_alive() is False


def test_terminate_cancels_pending_restart():
    backend = _FakeBackend()
    config = SandboxConfig(
        base_url="http://sandbox.test",
        dev_server_startup_delay_s=30,
        dev_server_kill_delay_s=0,
        template_dir=None,
    )
    client = SandboxHttpClient(base_url=config.base_url, transport=httpx.MockTransport(backend))
    p = HttpSandboxProvider(config, client=client)

    async def _run():
        await p.create_sandbox()
        restart = asyncio.ensure_future(p.restart_dev_server())
        while not any(c.startswith("nohup") for c in backend.commands):
            await asyncio.sleep(0.01)
        await p.terminate()
        with pytest.raises(asyncio.CancelledError):
            await restart

    asyncio.run(asyncio.wait_for(_run(), timeout=5))
