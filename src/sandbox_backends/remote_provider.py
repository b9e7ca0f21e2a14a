from __future__ import annotations

import asyncio
import logging
import shlex
from collections.abc import Coroutine, Iterable
from typing import Any
from urllib.parse import quote

from src.platform_scaffold.scaffold import (
    build_skeleton_context,
    dev_server_command,
    dev_server_kill_command,
    dev_server_launch_command,
    skeleton_files,
    template_copy_command,
)
from src.sandbox_backends.base import CommandResult, SandboxInfo
from src.sandbox_backends.config import SandboxConfig
from src.sandbox_backends.errors import (
    BackendError,
    NoActiveSandbox,
    ProvisionError,
    SandboxError,
    SessionNotFound,
    TransportError,
)
from src.sandbox_backends.file_write import (
    shell_write_command,
    to_internal,
    to_relative,
    write_with_fallback,
)
from src.sandbox_backends.http_client import SandboxHttpClient

logger = logging.getLogger(__name__)

# Extra time the HTTP layer waits beyond the remote command deadline.
_HTTP_GRACE_S = 5.0


def build_install_command(packages: Iterable[str], *, legacy_peer_deps: bool) -> str:
    argv = ["npm", "install"]
    if legacy_peer_deps:
        argv.append("--legacy-peer-deps")
    argv.extend(packages)
    return shlex.join(argv)


def _dedupe(items: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for item in items:
        s = str(item or "").strip()
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return out


def _command_result(data: dict[str, Any]) -> CommandResult:
    raw_exit = data.get("exitCode", data.get("exit_code"))
    try:
        exit_code = 0 if raw_exit is None else int(raw_exit)
    except (TypeError, ValueError):
        exit_code = -1
    return CommandResult(
        stdout=str(data.get("stdout") or ""),
        stderr=str(data.get("stderr") or ""),
        exit_code=exit_code,
    )


class HttpSandboxProvider:
    """Sandbox provider backed by the remote sandbox HTTP API.

    Endpoints (relative to the configured base URL):
      - POST /sessions, GET /sessions/{id}
      - POST /sessions/{id}/exec
      - POST /sessions/{id}/files/write, GET .../files/read, GET .../files/list
      - POST /sessions/{id}/terminate
    """

    provider_name = "http"

    def __init__(
        self,
        config: SandboxConfig | None = None,
        *,
        client: SandboxHttpClient | None = None,
    ) -> None:
        self.config = config or SandboxConfig.from_env()
        self._client = client or SandboxHttpClient(
            base_url=self.config.base_url,
            api_key=self.config.api_key,
            default_timeout_s=self.config.request_timeout_s,
        )
        self._skeleton = build_skeleton_context(
            dev_server_port=self.config.dev_server_port
        )
        self._info: SandboxInfo | None = None
        self._runtime_ready = False
        self._pending: set[asyncio.Task[Any]] = set()
        self.existing_files: set[str] = set()

    # -- helpers ---------------------------------------------------------

    @property
    def _root_dir(self) -> str:
        return self.config.working_directory

    def _preview_url(self, session_id: str) -> str:
        return f"{self.config.preview_scheme}://{session_id}{self.config.host_suffix}"

    def _require_session_id(self, operation: str) -> str:
        if self._info is None:
            raise NoActiveSandbox(operation)
        return self._info.session_id

    async def _session_request(
        self, method: str, suffix: str, *, operation: str, **kwargs: Any
    ) -> dict[str, Any]:
        sid = self._require_session_id(operation)
        path = f"sessions/{quote(sid, safe='')}/{suffix}"
        try:
            return await self._client.request(method, path, **kwargs)
        except BackendError as exc:
            if exc.status_code == 404:
                raise SessionNotFound(sid) from exc
            raise

    async def _exec(self, command: str, *, timeout_s: float) -> CommandResult:
        data = await self._session_request(
            "POST",
            "exec",
            operation="run_command",
            body={
                "command": command,
                "cwd": self._root_dir,
                "timeoutMs": int(timeout_s * 1000),
            },
            timeout_s=timeout_s,
        )
        return _command_result(data)

    async def _track(self, coro: Coroutine[Any, Any, Any]) -> Any:
        # Settle delays run as tasks so terminate() can cancel them.
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        try:
            return await task
        finally:
            self._pending.discard(task)

    # -- lifecycle -------------------------------------------------------

    async def create_sandbox(self) -> SandboxInfo:
        if self._info is not None:
            logger.info(
                "Terminating sandbox %s before creating a new one", self._info.session_id
            )
            await self.terminate()

        logger.info("Creating sandbox via %s", self._client.base_url)
        try:
            data = await self._client.request(
                "POST",
                "sessions",
                body={
                    "workdir": self._root_dir,
                    "devServerPort": self.config.dev_server_port,
                },
                timeout_s=self.config.create_timeout_s,
            )
        except (BackendError, TransportError) as exc:
            raise ProvisionError(f"Failed to create sandbox: {exc}") from exc

        sid = str(data.get("sessionId") or "").strip()
        if not sid:
            raise ProvisionError("Sandbox API did not return a sessionId")

        self._info = SandboxInfo(
            session_id=sid,
            provider=self.provider_name,
            working_directory=self._root_dir,
            url=str(data.get("url") or "").strip() or self._preview_url(sid),
        )
        self.existing_files.clear()
        self._runtime_ready = False
        logger.info("Sandbox created (id: %s, url: %s)", sid, self._info.url)
        return self._info

    async def reconnect(self, session_id: str) -> bool:
        sid = (session_id or "").strip()
        if not sid:
            return False
        try:
            data = await self._client.request("GET", f"sessions/{quote(sid, safe='')}")
        except BackendError as exc:
            if exc.status_code != 404:
                logger.warning("Reconnect to sandbox %s failed: %s", sid, exc)
            return False
        except TransportError as exc:
            logger.warning("Reconnect to sandbox %s failed: %s", sid, exc)
            return False

        got = str(data.get("sessionId") or "").strip()
        if not got:
            return False
        self._info = SandboxInfo(
            session_id=got,
            provider=self.provider_name,
            working_directory=self._root_dir,
            url=str(data.get("url") or "").strip() or self._preview_url(got),
        )
        self.existing_files.clear()
        logger.info("Reconnected to sandbox %s", got)
        return True

    def get_sandbox_info(self) -> SandboxInfo | None:
        return self._info

    def is_alive(self) -> bool:
        return self._info is not None

    async def terminate(self) -> None:
        for task in list(self._pending):
            task.cancel()
        info = self._info
        if info is None:
            return
        try:
            await self._client.request(
                "POST", f"sessions/{quote(info.session_id, safe='')}/terminate"
            )
            logger.info("Terminated sandbox %s", info.session_id)
        except SandboxError as exc:
            logger.warning("Failed to terminate sandbox %s: %s", info.session_id, exc)
        finally:
            self._info = None
            self._runtime_ready = False
            self.existing_files.clear()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- commands and files ---------------------------------------------

    async def run_command(self, command: str) -> CommandResult:
        return await self._exec(command, timeout_s=self.config.command_timeout_s)

    async def write_file(self, path: str, content: str) -> None:
        self._require_session_id("write_file")
        rel = to_relative(path, self._root_dir)
        if rel == ".":
            raise ValueError(f"Cannot write to the working directory itself: {path!r}")
        await write_with_fallback(
            rel,
            content,
            [("api", self._write_via_api), ("shell", self._write_via_shell)],
        )
        self.existing_files.add(rel)

    async def _write_via_api(self, rel: str, content: str) -> None:
        await self._session_request(
            "POST",
            "files/write",
            operation="write_file",
            body={"path": rel, "content": content},
        )

    async def _write_via_shell(self, rel: str, content: str) -> None:
        res = await self.run_command(
            shell_write_command(to_internal(rel, self._root_dir), content)
        )
        if not res.success:
            detail = res.stderr.strip() or f"exit code {res.exit_code}"
            raise BackendError(f"Shell write failed for {rel}: {detail}")

    async def read_file(self, path: str) -> str:
        rel = to_relative(path, self._root_dir)
        try:
            data = await self._session_request(
                "GET", "files/read", operation="read_file", params={"path": rel}
            )
        except SessionNotFound as exc:
            # The read endpoint also answers 404 for a missing file.
            raise FileNotFoundError(rel) from exc
        return str(data.get("content") or "")

    async def list_files(self, directory: str = ".") -> list[str]:
        rel = to_relative(directory, self._root_dir)
        data = await self._session_request(
            "GET", "files/list", operation="list_files", params={"path": rel}
        )
        out: list[str] = []
        for item in data.get("files") or []:
            if isinstance(item, dict):
                item = item.get("path")
            if isinstance(item, str) and item:
                out.append(item)
        return out

    # -- packages and dev server ----------------------------------------

    async def install_packages(
        self, packages: list[str], *, restart: bool | None = None
    ) -> CommandResult:
        names = _dedupe(packages)
        if not names:
            return CommandResult(stdout="", stderr="", exit_code=0)
        sid = self._require_session_id("install_packages")

        cmd = build_install_command(names, legacy_peer_deps=self.config.legacy_peer_deps)
        logger.info("Installing packages in sandbox %s: %s", sid, " ".join(names))
        res = await self._exec(cmd, timeout_s=self.config.install_timeout_s + _HTTP_GRACE_S)
        if not res.success:
            logger.warning(
                "Package install failed in sandbox %s (exit_code=%d): %s",
                sid,
                res.exit_code,
                res.stderr.strip()[:500],
            )
            return res

        should_restart = self.config.auto_restart_dev_server if restart is None else restart
        if should_restart:
            await self.restart_dev_server()
        return res

    async def setup_runtime(self) -> None:
        sid = self._require_session_id("setup_runtime")
        if self._runtime_ready:
            return

        probe = await self.run_command("test -f package.json && echo present || echo missing")
        if probe.stdout.strip() == "present":
            logger.info("Sandbox %s already has an application skeleton", sid)
            await self.run_command(
                f"pgrep -f {shlex.quote(self._skeleton.dev_server_process)} > /dev/null || "
                + dev_server_launch_command(dev_server_command(self._skeleton))
            )
        else:
            if not await self._copy_template():
                await self._write_skeleton()
            await self._track(
                self._restart(
                    dev_server_command(self._skeleton), self._skeleton.dev_server_process
                )
            )

        self.existing_files.update(skeleton_files(self._skeleton).keys())
        self._runtime_ready = True
        logger.info("Runtime ready in sandbox %s", sid)

    async def _copy_template(self) -> bool:
        template_dir = self.config.template_dir
        if not template_dir:
            return False
        check = (
            f"test -d {shlex.quote(template_dir.rstrip('/') + '/node_modules')} && "
            + template_copy_command(template_dir, self._root_dir)
        )
        res = await self.run_command(check)
        if res.success:
            logger.info("Copied prebuilt template from %s", template_dir)
            return True
        logger.info("No prebuilt template at %s; generating skeleton", template_dir)
        return False

    async def _write_skeleton(self) -> None:
        for path, content in skeleton_files(self._skeleton).items():
            await self.write_file(path, content)
        res = await self._exec(
            build_install_command([], legacy_peer_deps=self.config.legacy_peer_deps),
            timeout_s=self.config.install_timeout_s + _HTTP_GRACE_S,
        )
        if not res.success:
            detail = res.stderr.strip()[:500] or f"exit code {res.exit_code}"
            raise ProvisionError(f"npm install failed: {detail}")

    async def restart_dev_server(
        self, *, command: str | None = None, process_match: str | None = None
    ) -> None:
        sid = self._require_session_id("restart_dev_server")
        logger.info("Restarting dev server in sandbox %s", sid)
        await self._track(
            self._restart(
                command or dev_server_command(self._skeleton),
                process_match or self._skeleton.dev_server_process,
            )
        )

    async def _restart(self, command: str, process_match: str) -> None:
        await self.run_command(dev_server_kill_command(process_match))
        await asyncio.sleep(self.config.dev_server_kill_delay_s)
        res = await self.run_command(dev_server_launch_command(command))
        if not res.success:
            logger.warning(
                "Dev server launch returned exit_code=%d: %s",
                res.exit_code,
                res.stderr.strip()[:300],
            )
        await asyncio.sleep(self.config.dev_server_startup_delay_s)
