from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field, replace

from src.code_apply.file_stream import FileEntry, FileStreamParser
from src.code_apply.packages import detect_packages

logger = logging.getLogger(__name__)

_COMMAND_RE = re.compile(r"<command>(.*?)</command>", re.DOTALL)
_PACKAGE_RE = re.compile(r"<package>(.*?)</package>", re.DOTALL)
_PACKAGES_RE = re.compile(r"<packages>(.*?)</packages>", re.DOTALL)
_STRUCTURE_RE = re.compile(r"<structure>(.*?)</structure>", re.DOTALL)
_EXPLANATION_RE = re.compile(r"<explanation>(.*?)</explanation>", re.DOTALL)
_TEMPLATE_RE = re.compile(r"<template>(.*?)</template>", re.DOTALL)

# The skeleton owns these; generated versions would clobber the dev server setup.
CONFIG_FILES = frozenset(
    {
        "tailwind.config.js",
        "vite.config.js",
        "package.json",
        "package-lock.json",
        "tsconfig.json",
        "postcss.config.js",
    }
)


@dataclass
class ParsedResponse:
    files: list[FileEntry] = field(default_factory=list)
    packages: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    explanation: str = ""
    structure: str | None = None
    template: str = ""
    skipped_files: list[str] = field(default_factory=list)


def normalize_file_path(path: str) -> str:
    p = (path or "").strip().replace("\\", "/").lstrip("/")
    p = posixpath.normpath(p) if p else p
    if p in ("", "."):
        raise ValueError(f"invalid file path: {path!r}")
    if p.startswith("../"):
        raise ValueError(f"file path escapes the project: {path!r}")
    if p.startswith(("src/", "public/")) or p == "index.html" or p in CONFIG_FILES:
        return p
    return f"src/{p}"


def is_config_file(path: str) -> bool:
    return posixpath.basename(path) in CONFIG_FILES and "/" not in path.strip("/")


def _add_unique(target: list[str], items: list[str]) -> None:
    for item in items:
        s = item.strip()
        if s and s not in target:
            target.append(s)


def parse_generated_response(
    text: str,
    *,
    known_files: set[str] | None = None,
    detect_imports: bool = True,
) -> ParsedResponse:
    """Parse a complete generation response into files, packages and commands.

    Unterminated file blocks are dropped with a warning; writing a truncated
    module would break the running app.
    """
    parser = FileStreamParser(known_files, normalize_path=normalize_file_path)
    parser.feed(text or "")
    return parsed_from_stream(parser, detect_imports=detect_imports)


def parsed_from_stream(
    parser: FileStreamParser, *, detect_imports: bool = True
) -> ParsedResponse:
    text = parser.text
    out = ParsedResponse()

    pending = parser.current
    if pending is not None:
        logger.warning("File %s appears to be truncated (no closing tag); skipping", pending.path)

    for entry in parser.files:
        try:
            path = normalize_file_path(entry.path)
        except ValueError as exc:
            logger.warning("Skipping file block: %s", exc)
            out.skipped_files.append(entry.path)
            continue
        if is_config_file(path):
            out.skipped_files.append(path)
            continue
        if path != entry.path:
            entry = replace(entry, path=path)
        out.files.append(entry)
        if detect_imports and entry.kind == "script":
            _add_unique(out.packages, detect_packages(entry.content))

    out.commands = [m.strip() for m in _COMMAND_RE.findall(text) if m.strip()]
    _add_unique(out.packages, _PACKAGE_RE.findall(text))
    for block in _PACKAGES_RE.findall(text):
        _add_unique(out.packages, re.split(r"[\n,]+", block))

    m = _STRUCTURE_RE.search(text)
    if m:
        out.structure = m.group(1).strip()
    m = _EXPLANATION_RE.search(text)
    if m:
        out.explanation = m.group(1).strip()
    m = _TEMPLATE_RE.search(text)
    if m:
        out.template = m.group(1).strip()
    return out
