"""Ordered file-write strategies and working-directory path mapping."""

from __future__ import annotations

import base64
import logging
import posixpath
import shlex
from collections.abc import Awaitable, Callable, Sequence

from src.sandbox_backends.errors import (
    BackendError,
    NoActiveSandbox,
    SandboxError,
    SessionNotFound,
)

logger = logging.getLogger(__name__)

WriteFn = Callable[[str, str], Awaitable[None]]


def to_internal(path: str, root_dir: str) -> str:
    root = posixpath.normpath(root_dir or "/")
    normalized = (path or "").strip() or "/"
    if root != "/" and (normalized == root or normalized.startswith(root + "/")):
        normalized = normalized[len(root) :]
    normalized = normalized.lstrip("/")
    internal_path = posixpath.normpath(posixpath.join(root, normalized))
    if root == "/":
        return internal_path
    if internal_path != root and not internal_path.startswith(root + "/"):
        raise ValueError(f"Path '{path}' escapes working directory '{root_dir}'")
    return internal_path


def to_relative(path: str, root_dir: str) -> str:
    rel = posixpath.relpath(to_internal(path, root_dir), root_dir)
    return "." if rel == "." else rel


def shell_write_command(internal_path: str, content: str) -> str:
    """Write `content` through a shell, creating parent directories.

    `mkdir -p` is a no-op for directories that already exist.
    """
    parent = posixpath.dirname(internal_path) or "/"
    payload = base64.b64encode(content.encode("utf-8")).decode("ascii")
    return (
        f"mkdir -p {shlex.quote(parent)} && "
        f"printf %s {shlex.quote(payload)} | base64 -d > {shlex.quote(internal_path)}"
    )


async def write_with_fallback(
    path: str,
    content: str,
    strategies: Sequence[tuple[str, WriteFn]],
) -> str:
    """Try each write strategy in order and return the name of the one that worked.

    A missing session is not something another strategy can fix, so
    ``SessionNotFound`` and ``NoActiveSandbox`` propagate immediately.
    """
    if not strategies:
        raise ValueError("at least one write strategy is required")
    failures: list[str] = []
    for name, write in strategies:
        try:
            await write(path, content)
        except (SessionNotFound, NoActiveSandbox):
            raise
        except SandboxError as exc:
            logger.warning("Write strategy %s failed for %s: %s", name, path, exc)
            failures.append(f"{name}: {exc}")
            continue
        if failures:
            logger.info("Wrote %s via fallback strategy %s", path, name)
        return name
    raise BackendError(f"All write strategies failed for {path}: " + "; ".join(failures))
