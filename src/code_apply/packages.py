from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from src.sandbox_backends.base import SandboxProvider

logger = logging.getLogger(__name__)

_IMPORT_RE = re.compile(
    r"""import\s+(?:(?:\{[^}]*\}|\*\s+as\s+\w+|\w+)(?:\s*,\s*(?:\{[^}]*\}|\*\s+as\s+\w+|\w+))*\s+from\s+)?['"]([^'"]+)['"]"""
)
_DYNAMIC_IMPORT_RE = re.compile(r"""import\s*\(\s*['"]([^'"]+)['"]\s*\)""")
_REQUIRE_RE = re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]\s*\)""")
_SCRIPT_EXT_RE = re.compile(r"\.(?:jsx?|tsx?|mjs|cjs)$")

NODE_BUILTINS = frozenset(
    {
        "fs",
        "path",
        "http",
        "https",
        "crypto",
        "stream",
        "util",
        "os",
        "url",
        "querystring",
        "child_process",
        "events",
        "buffer",
        "zlib",
        "net",
        "tls",
        "assert",
    }
)

# Present in every skeleton; never reinstall.
PREINSTALLED = frozenset({"react", "react-dom"})


def package_name_for(specifier: str) -> str | None:
    """Map an import specifier to its npm package name, or None for local imports."""
    s = (specifier or "").strip()
    if not s or s.startswith((".", "/", "@/", "~/")):
        return None
    if s.startswith("node:"):
        return None
    if s.startswith("@"):
        parts = s.split("/")
        if len(parts) < 2 or not parts[1]:
            return None
        name = "/".join(parts[:2])
    else:
        name = s.split("/")[0]
    if name in NODE_BUILTINS:
        return None
    return name


def detect_packages(
    content: str, *, skip: Iterable[str] = PREINSTALLED
) -> list[str]:
    """Package names imported or required by `content`, in first-seen order."""
    skipped = set(skip)
    out: list[str] = []
    specifiers: list[tuple[int, str]] = []
    for rx in (_IMPORT_RE, _DYNAMIC_IMPORT_RE, _REQUIRE_RE):
        specifiers.extend((m.start(), m.group(1)) for m in rx.finditer(content or ""))
    for _pos, specifier in sorted(specifiers):
        name = package_name_for(specifier)
        if name and name not in skipped and name not in out:
            out.append(name)
    return out


def detect_packages_in_files(files: Mapping[str, str]) -> list[str]:
    out: list[str] = []
    for path, content in files.items():
        if not isinstance(content, str) or not _SCRIPT_EXT_RE.search(path):
            continue
        for name in detect_packages(content):
            if name not in out:
                out.append(name)
    return out


def declared_dependencies(package_json: str) -> set[str]:
    parsed = json.loads(package_json or "{}")
    if not isinstance(parsed, dict):
        return set()
    deps: set[str] = set()
    for key in ("dependencies", "devDependencies"):
        section = parsed.get(key)
        if isinstance(section, dict):
            deps.update(str(k) for k in section)
    return deps


@dataclass
class PackageInstallReport:
    detected: list[str] = field(default_factory=list)
    already_installed: list[str] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "packages_detected": self.detected,
            "packages_already_installed": self.already_installed,
            "packages_installed": self.installed,
            "packages_failed": self.failed,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


async def _read_dependencies(provider: SandboxProvider) -> set[str] | None:
    try:
        return declared_dependencies(await provider.read_file("package.json"))
    except (FileNotFoundError, ValueError) as exc:
        logger.warning("Could not read package.json: %s", exc)
        return None


async def detect_and_install(
    provider: SandboxProvider, files: Mapping[str, str]
) -> PackageInstallReport:
    """Install packages imported by `files` that package.json does not declare."""
    report = PackageInstallReport(detected=detect_packages_in_files(files))
    if not report.detected:
        return report

    declared = await _read_dependencies(provider)
    if declared is None:
        missing = list(report.detected)
    else:
        report.already_installed = [p for p in report.detected if p in declared]
        missing = [p for p in report.detected if p not in declared]
    if not missing:
        return report

    logger.info("Installing detected packages: %s", missing)
    res = await provider.install_packages(missing)
    report.stdout, report.stderr = res.stdout, res.stderr

    declared = await _read_dependencies(provider)
    if declared is None:
        # No package.json to verify against; trust the exit code.
        report.installed = missing if res.success else []
        report.failed = [] if res.success else missing
    else:
        report.installed = [p for p in missing if p in declared]
        report.failed = [p for p in missing if p not in declared]
    return report
