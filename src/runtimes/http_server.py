from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import AsyncIterator
from typing import Any

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from src.code_apply.apply_engine import ApplyCoordinator, ApplyResult, StreamingApplyEngine
from src.code_apply.events import format_sse
from src.code_apply.packages import detect_and_install
from src.code_apply.recovery import apply_with_session_recovery
from src.dev_server_restart import (
    RestartGateConfig,
    RestartGateState,
    decide_dev_server_restart,
    mark_restart_finished,
    mark_restart_started,
)
from src.projects.state import (
    CheckpointNotFound,
    create_checkpoint,
    ensure_project_state,
    list_checkpoints,
    read_project_state,
    record_applied_files,
    restore_checkpoint,
)
from src.retry import is_retryable_error, with_retry
from src.sandbox_backends.base import SandboxProvider
from src.sandbox_backends.config import SandboxConfig
from src.sandbox_backends.errors import (
    BackendError,
    NoActiveSandbox,
    ProvisionError,
    SandboxError,
    SessionNotFound,
    SessionRecoveryExhausted,
    StreamProtocolError,
    TransportError,
)
from src.sandbox_backends.factory import create_provider
from src.sandbox_backends.session_registry import SessionRegistry

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

logger = logging.getLogger(__name__)

router = APIRouter()

_CREATE_RETRIES = 2  # 3 attempts in total
_SOURCE_EXTS = (".js", ".jsx", ".ts", ".tsx", ".css", ".json", ".html", ".md")
_SKIP_DIRS = ("node_modules", ".git", ".project", "dist", "build")
_MAX_SOURCE_CHARS = 100_000


def _error(code: str, detail: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": code, "detail": detail}, status_code=status_code)


def _error_from(exc: SandboxError) -> JSONResponse:
    if isinstance(exc, SessionNotFound):
        return _error("not_found", str(exc), 404)
    if isinstance(exc, SessionRecoveryExhausted):
        return _error("session_lost", str(exc), 410)
    if isinstance(exc, NoActiveSandbox):
        return _error("no_active_sandbox", str(exc), 409)
    if isinstance(exc, StreamProtocolError):
        return _error("malformed_stream", str(exc), 400)
    if isinstance(exc, (ProvisionError, TransportError, BackendError)):
        return _error("sandbox_backend_error", str(exc), 502)
    return _error("sandbox_error", str(exc), 500)


async def _json_body(request: Request) -> dict[str, Any]:
    body: Any
    try:
        body = await request.json()
    except Exception:
        body = {}
    if not isinstance(body, dict):
        body = {}
    return body


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


async def _provider(request: Request, sandbox_id: str) -> SandboxProvider:
    return await _registry(request).require_provider(sandbox_id)


async def _single_chunk(text: str) -> AsyncIterator[str]:
    yield text


@router.get("/healthz")
async def healthz(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True, "sessions": len(_registry(request).list_sessions())})


@router.post("/api/sandboxes")
async def api_create_sandbox(request: Request) -> JSONResponse:
    body = await _json_body(request)
    existing = str(body.get("sandbox_id") or "").strip() or None
    registry = _registry(request)

    try:
        if existing:
            provider = await registry.create_session(existing)
        else:
            provider = await with_retry(
                registry.create_session,
                retries=_CREATE_RETRIES,
                delay_s=2.0,
                backoff=2.0,
                max_delay_s=10.0,
                is_retryable=is_retryable_error,
            )
    except SandboxError as exc:
        logger.warning("Sandbox creation failed: %s", exc)
        return _error_from(exc)

    info = provider.get_sandbox_info()
    if info is None:
        return _error("sandbox_error", "Sandbox has no session after creation", 500)

    try:
        await ensure_project_state(provider, info.session_id)
    except SandboxError as exc:
        logger.warning("Could not write initial project state for %s: %s", info.session_id, exc)

    return JSONResponse(
        {
            "success": True,
            "restored": bool(existing),
            "sandbox_id": info.session_id,
            "url": info.url,
            "sandbox": info.to_dict(),
        }
    )


@router.get("/api/sandboxes/{sandbox_id}/status")
async def api_sandbox_status(request: Request, sandbox_id: str) -> JSONResponse:
    status = await _registry(request).check_session_status(sandbox_id)
    return JSONResponse(status.to_dict())


@router.delete("/api/sandboxes/{sandbox_id}")
async def api_kill_sandbox(request: Request, sandbox_id: str) -> JSONResponse:
    registry = _registry(request)
    if registry.get_provider(sandbox_id) is None:
        return _error("not_found", f"Sandbox {sandbox_id} not found", 404)
    ok = await registry.terminate_session(sandbox_id)
    return JSONResponse({"success": ok}, status_code=200 if ok else 502)


@router.post("/api/sandboxes/{sandbox_id}/apply")
async def api_apply(request: Request, sandbox_id: str):
    body = await _json_body(request)
    text = body.get("response")
    if not isinstance(text, str) or not text.strip():
        return _error("missing_response", "'response' must be a non-empty string", 400)
    packages = [p for p in body.get("packages") or [] if isinstance(p, str)]
    label = str(body.get("checkpoint_label") or "").strip() or None
    registry = _registry(request)
    coordinator: ApplyCoordinator = request.app.state.coordinator
    used: dict[str, str] = {"sandbox_id": sandbox_id}

    def _apply(emit) -> Any:
        async def _attempt(provider: SandboxProvider) -> ApplyResult:
            info = provider.get_sandbox_info()
            if info is not None:
                used["sandbox_id"] = info.session_id
            engine = StreamingApplyEngine(
                provider,
                emit=emit,
                extra_packages=packages,
                checkpoint_label=label,
                project_id=used["sandbox_id"],
            )
            result = await engine.run(_single_chunk(text))
            if result.completed and result.files_changed:
                try:
                    await record_applied_files(provider, used["sandbox_id"], result.files_changed)
                except SandboxError as exc:
                    logger.warning(
                        "Could not record applied files for %s: %s", used["sandbox_id"], exc
                    )
            return result

        return coordinator.submit(
            sandbox_id,
            lambda: apply_with_session_recovery(registry, sandbox_id, _attempt, emit=emit),
        )

    if not body.get("stream"):
        try:
            result = await _apply(None)
        except SandboxError as exc:
            return _error_from(exc)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return _error("superseded", "A newer apply request replaced this one", 409)
        return JSONResponse(
            {
                "success": result.completed and not result.partial_failure,
                "sandbox_id": used["sandbox_id"],
                "results": result.to_dict(),
            }
        )

    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    async def _runner() -> None:
        try:
            await _apply(queue.put_nowait)
        except SandboxError as exc:
            queue.put_nowait({"type": "error", "error": str(exc)})
        finally:
            queue.put_nowait(None)

    async def _events() -> AsyncIterator[str]:
        task = asyncio.ensure_future(_runner())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                if event.get("type") == "complete":
                    event = {**event, "sandbox_id": used["sandbox_id"]}
                yield format_sse(event)
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/api/sandboxes/{sandbox_id}/restart-dev-server")
async def api_restart_dev_server(request: Request, sandbox_id: str) -> JSONResponse:
    try:
        provider = await _provider(request, sandbox_id)
    except SandboxError as exc:
        return _error_from(exc)

    gate: RestartGateState = request.app.state.restart_gate
    decision = decide_dev_server_restart(
        state=gate, session_id=sandbox_id, cfg=request.app.state.restart_cfg
    )
    if not decision.allowed:
        return JSONResponse(
            {
                "success": False,
                "reason": decision.reason,
                "retry_after_ms": decision.retry_after_ms,
            },
            status_code=429 if decision.reason == "cooldown" else 409,
        )

    mark_restart_started(state=gate, session_id=sandbox_id)
    try:
        state = await read_project_state(provider, sandbox_id)
        await provider.restart_dev_server(
            command=state.dev_server.command,
            process_match=state.dev_server.process_match,
        )
    except SandboxError as exc:
        return _error_from(exc)
    finally:
        mark_restart_finished(state=gate, session_id=sandbox_id)
    return JSONResponse({"success": True})


@router.post("/api/sandboxes/{sandbox_id}/packages/detect-and-install")
async def api_detect_and_install(request: Request, sandbox_id: str) -> JSONResponse:
    body = await _json_body(request)
    files = body.get("files")
    if not isinstance(files, dict):
        return _error("missing_files", "'files' must be an object of path -> content", 400)
    try:
        provider = await _provider(request, sandbox_id)
        report = await detect_and_install(provider, files)
    except SandboxError as exc:
        return _error_from(exc)
    return JSONResponse(report.to_dict())


def _is_source_path(path: str) -> bool:
    parts = path.strip("/").split("/")
    if any(p in _SKIP_DIRS for p in parts):
        return False
    return posixpath.splitext(path)[1].lower() in _SOURCE_EXTS


@router.get("/api/sandboxes/{sandbox_id}/files")
async def api_sandbox_files(request: Request, sandbox_id: str) -> JSONResponse:
    try:
        provider = await _provider(request, sandbox_id)
        paths = sorted(p for p in await provider.list_files(".") if _is_source_path(p))
        files: dict[str, str] = {}
        for path in paths:
            try:
                content = await provider.read_file(path)
            except FileNotFoundError:
                continue
            if len(content) <= _MAX_SOURCE_CHARS:
                files[path] = content
    except SandboxError as exc:
        return _error_from(exc)
    return JSONResponse({"success": True, "files": files, "structure": paths})


@router.get("/api/sandboxes/{sandbox_id}/checkpoints")
async def api_list_checkpoints(request: Request, sandbox_id: str) -> JSONResponse:
    try:
        provider = await _provider(request, sandbox_id)
        checkpoints = await list_checkpoints(provider, sandbox_id)
    except SandboxError as exc:
        return _error_from(exc)
    return JSONResponse({"checkpoints": [cp.model_dump() for cp in checkpoints]})


@router.post("/api/sandboxes/{sandbox_id}/checkpoints")
async def api_create_checkpoint(request: Request, sandbox_id: str) -> JSONResponse:
    body = await _json_body(request)
    label = str(body.get("label") or "Checkpoint")
    try:
        provider = await _provider(request, sandbox_id)
        checkpoint = await create_checkpoint(provider, sandbox_id, label)
    except SandboxError as exc:
        return _error_from(exc)
    return JSONResponse({"success": True, "checkpoint": checkpoint.model_dump()})


@router.post("/api/sandboxes/{sandbox_id}/checkpoints/{checkpoint_id}/restore")
async def api_restore_checkpoint(
    request: Request, sandbox_id: str, checkpoint_id: str
) -> JSONResponse:
    try:
        provider = await _provider(request, sandbox_id)
        state = await restore_checkpoint(provider, sandbox_id, checkpoint_id)
    except ValueError as exc:
        return _error("invalid_checkpoint_id", str(exc), 400)
    except CheckpointNotFound as exc:
        return _error("checkpoint_not_found", str(exc), 404)
    except SandboxError as exc:
        return _error_from(exc)
    return JSONResponse({"success": True, "state": state.model_dump()})


def create_app(registry: SessionRegistry | None = None) -> FastAPI:
    if registry is None:
        cfg = SandboxConfig.from_env()
        registry = SessionRegistry(
            lambda: create_provider(config=cfg), idle_ttl_s=cfg.idle_ttl_s
        )

    app = FastAPI()
    app.state.registry = registry
    app.state.coordinator = ApplyCoordinator()
    app.state.restart_gate = RestartGateState()
    app.state.restart_cfg = RestartGateConfig()
    app.include_router(router)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.registry.terminate_all()

    return app


app = create_app()
