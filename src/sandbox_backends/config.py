from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass


def _env_str(name: str, default: str = "") -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip() or default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


@dataclass(frozen=True)
class SandboxConfig:
    provider: str = "http"
    base_url: str = "http://localhost:8080"
    api_key: str | None = None
    working_directory: str = "/workspace"
    request_timeout_s: float = 30.0
    exec_timeout_s: float = 30.0
    install_timeout_s: float = 180.0
    create_timeout_s: float = 60.0
    dev_server_port: int = 5173
    dev_server_startup_delay_s: float = 7.0
    dev_server_kill_delay_s: float = 2.0
    host_suffix: str = ".sandbox.localhost"
    preview_scheme: str = "http"
    legacy_peer_deps: bool = True
    auto_restart_dev_server: bool = True
    template_dir: str | None = "/opt/app-template"
    idle_ttl_s: float = 3600.0

    def __post_init__(self) -> None:
        if not self.working_directory.startswith("/"):
            raise ValueError(
                f"working_directory must be absolute, got: {self.working_directory}"
            )
        object.__setattr__(
            self, "working_directory", posixpath.normpath(self.working_directory)
        )
        if self.install_timeout_s < self.request_timeout_s:
            raise ValueError(
                "install_timeout_s must not be shorter than request_timeout_s "
                f"({self.install_timeout_s} < {self.request_timeout_s})"
            )

    @property
    def command_timeout_s(self) -> float:
        return max(self.request_timeout_s, self.exec_timeout_s)

    @classmethod
    def from_env(cls) -> SandboxConfig:
        template_dir = _env_str("SANDBOX_TEMPLATE_DIR", "/opt/app-template")
        return cls(
            provider=_env_str("SANDBOX_PROVIDER", "http").lower(),
            base_url=_env_str("SANDBOX_API_BASE_URL", "http://localhost:8080"),
            api_key=_env_str("SANDBOX_API_KEY") or None,
            working_directory=_env_str("SANDBOX_WORKDIR", "/workspace"),
            request_timeout_s=_env_float("SANDBOX_REQUEST_TIMEOUT_S", 30.0),
            exec_timeout_s=_env_float("SANDBOX_EXEC_TIMEOUT_S", 30.0),
            install_timeout_s=_env_float("SANDBOX_INSTALL_TIMEOUT_S", 180.0),
            create_timeout_s=_env_float("SANDBOX_CREATE_TIMEOUT_S", 60.0),
            dev_server_port=_env_int("SANDBOX_DEV_SERVER_PORT", 5173),
            dev_server_startup_delay_s=_env_float(
                "SANDBOX_DEV_SERVER_STARTUP_DELAY_S", 7.0
            ),
            dev_server_kill_delay_s=_env_float("SANDBOX_DEV_SERVER_KILL_DELAY_S", 2.0),
            host_suffix=_env_str("SANDBOX_HOST_SUFFIX", ".sandbox.localhost"),
            preview_scheme=_env_str("SANDBOX_PREVIEW_SCHEME", "http"),
            legacy_peer_deps=_env_bool("SANDBOX_LEGACY_PEER_DEPS", default=True),
            auto_restart_dev_server=_env_bool(
                "SANDBOX_AUTO_RESTART_DEV_SERVER", default=True
            ),
            template_dir=None if template_dir.lower() in ("none", "off") else template_dir,
            idle_ttl_s=_env_float("SANDBOX_IDLE_TTL_S", 3600.0),
        )
