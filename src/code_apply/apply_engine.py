"""Apply a streamed generation to a sandbox.

One apply pass runs the stages analyze -> install -> write -> run -> restart
strictly in order. Failures inside a stage are recorded on ``ApplyResult`` and
the pass continues; only a lost session (``SessionNotFound``), a missing
session (``NoActiveSandbox``) or a malformed inbound stream stop it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import AsyncIterable, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from src.code_apply.events import GENERATION_EVENT_TYPES, validate_event
from src.code_apply.file_stream import FileStreamParser
from src.code_apply.packages import PREINSTALLED
from src.code_apply.response_parser import normalize_file_path, parsed_from_stream
from src.sandbox_backends.base import SandboxProvider
from src.sandbox_backends.errors import (
    GenerationError,
    NoActiveSandbox,
    SandboxError,
    SessionNotFound,
    StreamProtocolError,
)

logger = logging.getLogger(__name__)

APPLY_STAGES = ("analyze", "install", "write", "run", "restart")

Emit = Callable[[dict[str, Any]], Awaitable[None] | None]
T = TypeVar("T")

_SESSION_LOST_RE = re.compile(r"sandbox\s+\S*\s*not\s+found", re.IGNORECASE)

# Errors that no later stage can recover from.
_FATAL = (SessionNotFound, NoActiveSandbox)


@dataclass(frozen=True)
class ExecutedCommand:
    command: str
    exit_code: int
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and self.error is None


@dataclass
class ApplyResult:
    files_created: list[str] = field(default_factory=list)
    files_updated: list[str] = field(default_factory=list)
    packages_installed: list[str] = field(default_factory=list)
    packages_failed: list[str] = field(default_factory=list)
    commands_executed: list[ExecutedCommand] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    stage: str | None = None
    completed: bool = False
    explanation: str = ""
    structure: str | None = None
    template: str = ""
    checkpoint_id: str | None = None

    @property
    def partial_failure(self) -> bool:
        return bool(
            self.errors
            or self.packages_failed
            or any(not c.success for c in self.commands_executed)
        )

    @property
    def files_changed(self) -> list[str]:
        return [*self.files_created, *self.files_updated]

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_created": list(self.files_created),
            "files_updated": list(self.files_updated),
            "packages_installed": list(self.packages_installed),
            "packages_failed": list(self.packages_failed),
            "commands_executed": [
                {"command": c.command, "exit_code": c.exit_code, "success": c.success}
                for c in self.commands_executed
            ],
            "errors": list(self.errors),
            "stage": self.stage,
            "completed": self.completed,
            "partial_failure": self.partial_failure,
            "explanation": self.explanation,
            "structure": self.structure,
            "template": self.template,
            "checkpoint_id": self.checkpoint_id,
        }


@dataclass
class GenerationPayload:
    parser: FileStreamParser
    packages: list[str] = field(default_factory=list)
    completed_explicitly: bool = False
    # Paths already reported as completed; a replacement parser must not repeat them.
    emitted_paths: set[str] = field(default_factory=set)

    @property
    def text(self) -> str:
        return self.parser.text

    @property
    def usable(self) -> bool:
        """An explicit completion, or an early end that still produced files."""
        return self.completed_explicitly or self.parser.has_file_blocks()


def _dedupe(items: list[str], *, skip: frozenset[str] = frozenset()) -> list[str]:
    out: list[str] = []
    for item in items:
        s = str(item or "").strip()
        if s and s not in skip and s not in out:
            out.append(s)
    return out


class StreamingApplyEngine:
    def __init__(
        self,
        provider: SandboxProvider,
        *,
        emit: Emit | None = None,
        known_files: set[str] | None = None,
        extra_packages: list[str] | None = None,
        restart_dev_server: bool = True,
        checkpoint_label: str | None = None,
        project_id: str | None = None,
    ) -> None:
        self.provider = provider
        self._emit_cb = emit
        self._known = set(provider.existing_files if known_files is None else known_files)
        self._extra_packages = list(extra_packages or [])
        self._restart = restart_dev_server
        self._checkpoint_label = checkpoint_label
        self._project_id = project_id
        self.stage: str | None = None

    def _session_id(self) -> str:
        info = self.provider.get_sandbox_info()
        return info.session_id if info else ""

    async def _emit(self, event: dict[str, Any]) -> None:
        if self._emit_cb is None:
            return
        res = self._emit_cb(event)
        if inspect.isawaitable(res):
            await res

    def new_parser(self) -> FileStreamParser:
        return FileStreamParser(self._known, normalize_path=normalize_file_path)

    # -- generation stream ----------------------------------------------

    async def consume(self, stream: AsyncIterable[str | dict[str, Any]]) -> GenerationPayload:
        payload = GenerationPayload(parser=self.new_parser())
        async for item in stream:
            if isinstance(item, str):
                await self._feed(payload, item)
                continue
            event = validate_event(item)
            etype = event["type"]
            if etype not in GENERATION_EVENT_TYPES:
                logger.debug("Ignoring generation event %s", etype)
                continue
            if etype == "stream":
                text = event.get("text", "")
                if not isinstance(text, str):
                    raise StreamProtocolError("'stream' event text must be a string")
                await self._feed(payload, text)
            elif etype == "package":
                name = event.get("name") or event.get("package")
                if isinstance(name, str) and name.strip():
                    payload.packages.append(name.strip())
            elif etype == "status":
                await self._emit({"type": "status", "message": str(event.get("message") or "")})
            elif etype == "complete":
                generated = event.get("generated_code", event.get("generatedCode"))
                if isinstance(generated, str) and generated.strip() and generated != payload.text:
                    # The final aggregate is authoritative over what was streamed.
                    payload.parser = self.new_parser()
                    await self._feed(payload, generated)
                extra = event.get("packages")
                if isinstance(extra, list):
                    payload.packages.extend(p for p in extra if isinstance(p, str))
                payload.completed_explicitly = True
                break
            elif etype == "error":
                message = str(event.get("error") or event.get("message") or "generation failed")
                if event.get("code") == "session_not_found" or _SESSION_LOST_RE.search(message):
                    raise SessionNotFound(str(event.get("sandbox_id") or self._session_id()))
                raise GenerationError(message)
        return payload

    async def _feed(self, payload: GenerationPayload, text: str) -> None:
        for entry in payload.parser.feed(text):
            if entry.path in payload.emitted_paths:
                continue
            payload.emitted_paths.add(entry.path)
            await self._emit(
                {
                    "type": "file-progress",
                    "path": entry.path,
                    "change_type": entry.change_type,
                    "completed": True,
                }
            )

    # -- apply ----------------------------------------------------------

    async def _enter(self, result: ApplyResult, stage: str, step: int, message: str) -> None:
        self.stage = stage
        result.stage = stage
        await self._emit({"type": "step", "stage": stage, "step": step, "message": message})

    async def apply(self, payload: GenerationPayload) -> ApplyResult:
        result = ApplyResult()
        parsed = parsed_from_stream(payload.parser)
        result.explanation = parsed.explanation
        result.structure = parsed.structure
        result.template = parsed.template

        packages = _dedupe(
            [*self._extra_packages, *payload.packages, *parsed.packages], skip=PREINSTALLED
        )
        files = [f for f in parsed.files if f.content]
        if not files and not packages and not parsed.commands:
            result.errors.append("Generated output contained no files, packages or commands")
            await self._emit({"type": "error", "error": result.errors[-1], "stage": None})
            return result

        await self._emit(
            {"type": "start", "message": "Starting code application...", "total_steps": len(APPLY_STAGES)}
        )
        try:
            await self._enter(result, "analyze", 1, "Analyzing generated output...")

            await self._enter(result, "install", 2, "Installing packages...")
            if packages:
                await self._install(result, packages)

            await self._enter(result, "write", 3, f"Writing {len(files)} file(s)...")
            for index, entry in enumerate(files, start=1):
                await self._write(result, entry.path, entry.content, entry.change_type, index, len(files))

            await self._enter(result, "run", 4, "Running commands...")
            for cmd in parsed.commands:
                await self._run(result, cmd)

            await self._enter(result, "restart", 5, "Restarting dev server...")
            if self._restart and (result.files_changed or result.packages_installed):
                try:
                    await self.provider.restart_dev_server()
                except _FATAL:
                    raise
                except SandboxError as exc:
                    result.errors.append(f"Dev server restart failed: {exc}")

            await self._maybe_checkpoint(result)
        except asyncio.CancelledError:
            logger.info("Apply cancelled during stage %s", self.stage)
            await self._emit({"type": "error", "error": "cancelled", "stage": self.stage})
            raise

        result.completed = True
        message = f"Applied {len(result.files_changed)} file(s)"
        if result.partial_failure:
            message += f" with {len(result.errors) + len(result.packages_failed)} problem(s)"
        await self._emit(
            {
                "type": "complete",
                "results": result.to_dict(),
                "explanation": result.explanation,
                "structure": result.structure,
                "message": message,
            }
        )
        return result

    async def _install(self, result: ApplyResult, packages: list[str]) -> None:
        await self._emit({"type": "package-progress", "packages": packages, "status": "installing"})
        try:
            res = await self.provider.install_packages(packages, restart=False)
        except _FATAL:
            raise
        except SandboxError as exc:
            result.packages_failed.extend(packages)
            result.errors.append(f"Package install failed: {exc}")
            await self._emit({"type": "package-progress", "packages": packages, "status": "failed"})
            return
        if res.success:
            result.packages_installed.extend(packages)
            status = "installed"
        else:
            result.packages_failed.extend(packages)
            detail = res.stderr.strip()[:300] or f"exit code {res.exit_code}"
            result.errors.append(f"Package install failed: {detail}")
            status = "failed"
        await self._emit({"type": "package-progress", "packages": packages, "status": status})

    async def _write(
        self, result: ApplyResult, path: str, content: str, change_type: str, index: int, total: int
    ) -> None:
        await self._emit(
            {
                "type": "file-progress",
                "path": path,
                "current": index,
                "total": total,
                "change_type": change_type,
            }
        )
        try:
            await self.provider.write_file(path, content)
        except _FATAL:
            raise
        except (SandboxError, ValueError) as exc:
            result.errors.append(f"Failed to write {path}: {exc}")
            await self._emit({"type": "warning", "path": path, "message": str(exc)})
            return
        if change_type == "modified":
            result.files_updated.append(path)
        else:
            result.files_created.append(path)

    async def _run(self, result: ApplyResult, command: str) -> None:
        await self._emit({"type": "command-progress", "command": command})
        try:
            res = await self.provider.run_command(command)
        except _FATAL:
            raise
        except SandboxError as exc:
            result.commands_executed.append(ExecutedCommand(command, -1, error=str(exc)))
            result.errors.append(f"Command failed: {command}: {exc}")
            await self._emit(
                {"type": "command-complete", "command": command, "exit_code": -1, "success": False, "error": str(exc)}
            )
            return
        for stream_name, text in (("stdout", res.stdout), ("stderr", res.stderr)):
            if text:
                await self._emit(
                    {"type": "command-output", "command": command, "stream": stream_name, "output": text}
                )
        result.commands_executed.append(ExecutedCommand(command, res.exit_code))
        await self._emit(
            {"type": "command-complete", "command": command, "exit_code": res.exit_code, "success": res.success}
        )

    async def _maybe_checkpoint(self, result: ApplyResult) -> None:
        if not self._checkpoint_label or result.partial_failure or not result.files_changed:
            return
        from src.projects.state import create_checkpoint

        project_id = self._project_id or self._session_id()
        try:
            cp = await create_checkpoint(self.provider, project_id, self._checkpoint_label)
        except _FATAL:
            raise
        except SandboxError as exc:
            logger.warning("Checkpoint after apply failed: %s", exc)
            result.errors.append(f"Checkpoint failed: {exc}")
            return
        result.checkpoint_id = cp.id

    async def run(self, stream: AsyncIterable[str | dict[str, Any]]) -> ApplyResult:
        """Consume `stream` and apply it."""
        try:
            payload = await self.consume(stream)
        except asyncio.CancelledError:
            await self._emit({"type": "error", "error": "cancelled", "stage": "generate"})
            raise
        except StreamProtocolError as exc:
            await self._emit({"type": "error", "error": f"Malformed generation stream: {exc}", "stage": None})
            raise
        if not payload.usable:
            result = ApplyResult(errors=["Generation ended before any file was completed"])
            await self._emit({"type": "error", "error": result.errors[0], "stage": None})
            return result
        return await self.apply(payload)


class ApplyCoordinator:
    """Keeps at most one apply running per session.

    Submitting a new apply for a session cancels the one still in flight. The
    new apply only starts once every earlier one has unwound, so a burst of
    submissions never overlaps and the last one wins.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def is_active(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def cancel(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def submit(self, session_id: str, factory: Callable[[], Awaitable[T]]) -> T:
        prev = self._tasks.get(session_id)
        if prev is not None and not prev.done():
            logger.info("Cancelling in-flight apply for session %s", session_id)
            prev.cancel()

        # Registered before the first await so a later submit sees this one.
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        task: asyncio.Task[T] = asyncio.ensure_future(self._run_locked(lock, factory))
        self._tasks[session_id] = task
        try:
            return await task
        finally:
            if self._tasks.get(session_id) is task:
                self._tasks.pop(session_id, None)
                self._locks.pop(session_id, None)

    @staticmethod
    async def _run_locked(lock: asyncio.Lock, factory: Callable[[], Awaitable[T]]) -> T:
        async with lock:
            return await factory()
