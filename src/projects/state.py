"""Per-project state stored inside the sandbox workspace.

The state file survives process restarts because it lives next to the code it
describes. Checkpoints are tarballs of the workspace (minus dependencies and
build output) plus a copy of the state at the time they were taken.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.sandbox_backends.errors import BackendError, SandboxError

if TYPE_CHECKING:  # pragma: no cover
    from src.sandbox_backends.base import SandboxProvider

logger = logging.getLogger(__name__)

STATE_DIR = ".project"
STATE_PATH = f"{STATE_DIR}/state.json"
CHECKPOINT_DIR = f"{STATE_DIR}/checkpoints"
MAX_MESSAGES = 200
DEFAULT_DEV_SERVER_COMMAND = "npm run dev -- --host 0.0.0.0 --port 5173"

_CHECKPOINT_ID_RE = re.compile(r"^cp-\d+$")
_ARCHIVE_EXCLUDES = ("node_modules", ".git", ".next", "dist", "build", STATE_DIR)


class CheckpointError(SandboxError):
    pass


class CheckpointNotFound(CheckpointError):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Checkpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str = "Checkpoint"
    created_at: str = Field(default_factory=_now_iso)


class DevServerSettings(BaseModel):
    command: str = DEFAULT_DEV_SERVER_COMMAND
    port: int = 5173
    process_match: str = "vite"


class ProjectState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    project_id: str
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    applied_files: list[str] = Field(default_factory=list)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    dev_server: DevServerSettings = Field(default_factory=DevServerSettings)

    @field_validator("messages")
    @classmethod
    def _trim_messages(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return v[-MAX_MESSAGES:]


def default_project_state(project_id: str) -> ProjectState:
    return ProjectState(project_id=project_id)


def normalize_project_state(raw: Any, project_id: str) -> ProjectState:
    if not isinstance(raw, dict):
        return default_project_state(project_id)
    data = dict(raw)
    data["project_id"] = str(data.get("project_id") or project_id)
    data["updated_at"] = _now_iso()
    try:
        return ProjectState.model_validate(data)
    except ValidationError as exc:
        logger.warning("Discarding invalid project state for %s: %s", project_id, exc)
        return default_project_state(project_id)


async def read_project_state(provider: SandboxProvider, project_id: str) -> ProjectState:
    try:
        raw = await provider.read_file(STATE_PATH)
        return normalize_project_state(json.loads(raw), project_id)
    except (FileNotFoundError, ValueError, BackendError) as exc:
        logger.debug("No readable project state for %s: %s", project_id, exc)
        return default_project_state(project_id)


async def write_project_state(provider: SandboxProvider, state: ProjectState) -> ProjectState:
    saved = state.model_copy(update={"updated_at": _now_iso()})
    await provider.write_file(STATE_PATH, saved.model_dump_json(indent=2))
    return saved


async def ensure_project_state(provider: SandboxProvider, project_id: str) -> ProjectState:
    """Return the stored state, writing a default one if the file is missing."""
    try:
        raw = await provider.read_file(STATE_PATH)
    except FileNotFoundError:
        return await write_project_state(provider, default_project_state(project_id))
    try:
        return normalize_project_state(json.loads(raw), project_id)
    except ValueError as exc:
        logger.warning("Unreadable project state for %s, keeping file: %s", project_id, exc)
        return default_project_state(project_id)


async def record_applied_files(
    provider: SandboxProvider, project_id: str, paths: list[str]
) -> ProjectState:
    state = await read_project_state(provider, project_id)
    applied = list(state.applied_files)
    for p in paths:
        if p not in applied:
            applied.append(p)
    return await write_project_state(provider, state.model_copy(update={"applied_files": applied}))


def _archive_path(checkpoint_id: str) -> str:
    if not _CHECKPOINT_ID_RE.match(checkpoint_id or ""):
        raise ValueError(f"invalid checkpoint id: {checkpoint_id!r}")
    return f"{CHECKPOINT_DIR}/{checkpoint_id}.tar.gz"


def _snapshot_path(checkpoint_id: str) -> str:
    return f"{CHECKPOINT_DIR}/{checkpoint_id}.json"


async def list_checkpoints(provider: SandboxProvider, project_id: str) -> list[Checkpoint]:
    return list((await read_project_state(provider, project_id)).checkpoints)


async def create_checkpoint(
    provider: SandboxProvider,
    project_id: str,
    label: str = "Checkpoint",
    *,
    now_ms: int | None = None,
) -> Checkpoint:
    state = await read_project_state(provider, project_id)
    checkpoint_id = f"cp-{int(time.time() * 1000) if now_ms is None else int(now_ms)}"
    archive = _archive_path(checkpoint_id)

    await provider.run_command(f"mkdir -p {shlex.quote(CHECKPOINT_DIR)}")
    argv = ["tar", "-czf", archive]
    argv.extend(f"--exclude=./{name}" for name in _ARCHIVE_EXCLUDES)
    argv.extend(["-C", ".", "."])
    res = await provider.run_command(shlex.join(argv))
    if not res.success:
        raise CheckpointError(res.stderr.strip() or res.stdout.strip() or "Checkpoint failed")

    checkpoint = Checkpoint(id=checkpoint_id, label=str(label or "Checkpoint"))
    state = state.model_copy(update={"checkpoints": [*state.checkpoints, checkpoint]})
    await provider.write_file(_snapshot_path(checkpoint_id), state.model_dump_json(indent=2))
    await write_project_state(provider, state)
    logger.info("Created checkpoint %s (%s) for %s", checkpoint_id, checkpoint.label, project_id)
    return checkpoint


async def restore_checkpoint(
    provider: SandboxProvider, project_id: str, checkpoint_id: str
) -> ProjectState:
    archive = _archive_path(checkpoint_id)
    current = await read_project_state(provider, project_id)

    probe = await provider.run_command(
        f"test -f {shlex.quote(archive)} && echo ok || echo missing"
    )
    if probe.stdout.strip() != "ok":
        raise CheckpointNotFound(f"Checkpoint {checkpoint_id} not found")

    await provider.run_command(
        "find . -mindepth 1 -maxdepth 1 ! -name node_modules "
        f"! -name {shlex.quote(STATE_DIR)} -exec rm -rf {{}} +"
    )
    res = await provider.run_command(f"tar -xzf {shlex.quote(archive)} -C .")
    if not res.success:
        raise CheckpointError(res.stderr.strip() or res.stdout.strip() or "Restore failed")

    try:
        raw = json.loads(await provider.read_file(_snapshot_path(checkpoint_id)))
        restored = normalize_project_state(raw, project_id)
    except (FileNotFoundError, ValueError, BackendError):
        restored = current

    # Checkpoints taken after this one stay restorable.
    merged: dict[str, Checkpoint] = {cp.id: cp for cp in current.checkpoints}
    for cp in restored.checkpoints:
        merged[cp.id] = cp
    restored = restored.model_copy(
        update={"checkpoints": sorted(merged.values(), key=lambda cp: cp.created_at)}
    )
    logger.info("Restored checkpoint %s for %s", checkpoint_id, project_id)
    return await write_project_state(provider, restored)
