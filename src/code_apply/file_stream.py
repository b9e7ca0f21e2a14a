"""Incremental extraction of ``<file path="...">...</file>`` blocks.

The parser keeps its scan offsets between chunks, so each chunk only scans the
newly arrived text plus a small overlap for tags split across chunk borders.
"""

from __future__ import annotations

import posixpath
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace

OPEN_PREFIX = '<file path="'
OPEN_SUFFIX = '">'
CLOSE_TAG = "</file>"

_KIND_BY_EXT = {
    ".js": "script",
    ".jsx": "script",
    ".ts": "script",
    ".tsx": "script",
    ".mjs": "script",
    ".cjs": "script",
    ".css": "style",
    ".scss": "style",
    ".sass": "style",
    ".less": "style",
    ".html": "markup",
    ".htm": "markup",
    ".svg": "markup",
    ".json": "data",
    ".yaml": "data",
    ".yml": "data",
    ".toml": "data",
}


def kind_for_path(path: str) -> str:
    ext = posixpath.splitext(path)[1].lower()
    return _KIND_BY_EXT.get(ext, "text")


@dataclass(frozen=True)
class FileEntry:
    path: str
    content: str
    kind: str
    completed: bool
    change_type: str  # "created" | "modified"
    last_updated: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "content": self.content,
            "kind": self.kind,
            "completed": self.completed,
            "change_type": self.change_type,
            "last_updated": self.last_updated,
        }


class FileStreamParser:
    def __init__(
        self,
        known_files: set[str] | frozenset[str] | None = None,
        *,
        normalize_path: Callable[[str], str] | None = None,
    ) -> None:
        self._known = frozenset(known_files or ())
        self._normalize = normalize_path
        self._buf = ""
        self._scan_pos = 0  # where the next opening tag search starts
        self._open_path: str | None = None
        self._content_start = 0
        self._close_search_pos = 0
        self._entries: dict[str, FileEntry] = {}
        self._change_types: dict[str, str] = {}

    @property
    def text(self) -> str:
        return self._buf

    @property
    def files(self) -> list[FileEntry]:
        """Completed entries in closing-tag order."""
        return list(self._entries.values())

    @property
    def current(self) -> FileEntry | None:
        """The block still being generated, if any."""
        path = self._open_path
        if path is None or path in self._entries:
            return None
        return FileEntry(
            path=path,
            content=self._buf[self._content_start :],
            kind=kind_for_path(path),
            completed=False,
            change_type=self._change_type(path),
        )

    def has_file_blocks(self) -> bool:
        return bool(self._entries)

    def _normalized(self, path: str) -> str:
        if self._normalize is None:
            return path
        try:
            return self._normalize(path)
        except ValueError:
            # Left as-is; consumers reject it when they normalize again.
            return path

    def _change_type(self, path: str) -> str:
        ct = self._change_types.get(path)
        if ct is None:
            ct = "modified" if path in self._known else "created"
            self._change_types[path] = ct
        return ct

    def feed(self, chunk: str) -> list[FileEntry]:
        """Append `chunk`; return entries whose closing tag arrived in it."""
        if chunk:
            self._buf += chunk
        completed: list[FileEntry] = []
        buf = self._buf
        while True:
            if self._open_path is None:
                start = buf.find(OPEN_PREFIX, self._scan_pos)
                if start < 0:
                    # Keep a tail that could still grow into an opening tag.
                    self._scan_pos = max(self._scan_pos, len(buf) - len(OPEN_PREFIX) + 1)
                    break
                path_start = start + len(OPEN_PREFIX)
                end = buf.find(OPEN_SUFFIX, path_start)
                if end < 0:
                    self._scan_pos = start
                    break
                path = buf[path_start:end].split('"', 1)[0]
                if not path.strip() or "\n" in path or "<" in path:
                    self._scan_pos = start + 1
                    continue
                self._open_path = self._normalized(path.strip())
                self._content_start = end + len(OPEN_SUFFIX)
                self._close_search_pos = self._content_start
                self._change_type(self._open_path)

            close = buf.find(CLOSE_TAG, self._close_search_pos)
            if close < 0:
                self._close_search_pos = max(
                    self._content_start, len(buf) - len(CLOSE_TAG) + 1
                )
                break
            entry = self._complete(self._open_path, buf[self._content_start : close])
            if entry is not None:
                completed.append(entry)
            self._open_path = None
            self._scan_pos = close + len(CLOSE_TAG)
        return completed

    def _complete(self, path: str, raw: str) -> FileEntry | None:
        content = raw.strip()
        prev = self._entries.get(path)
        if prev is not None:
            # A repeated block never re-emits; a longer version replaces the body.
            if len(content) > len(prev.content):
                self._entries[path] = replace(prev, content=content, last_updated=time.time())
            return None
        entry = FileEntry(
            path=path,
            content=content,
            kind=kind_for_path(path),
            completed=True,
            change_type=self._change_type(path),
        )
        self._entries[path] = entry
        return entry


def extract_files(text: str, known_files: set[str] | None = None) -> list[FileEntry]:
    parser = FileStreamParser(known_files)
    parser.feed(text)
    return parser.files
