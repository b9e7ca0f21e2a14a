from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class SandboxInfo:
    """Identity and addressing of one live session.

    Immutable apart from ``url``, which a provider may fill in later via
    ``dataclasses.replace`` once the dev server is up.
    """

    session_id: str
    provider: str
    working_directory: str
    url: str | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "url": self.url,
            "provider": self.provider,
            "created_at": self.created_at,
            "working_directory": self.working_directory,
        }


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "success": self.success,
        }


class SandboxProvider(Protocol):
    """Capability set every sandbox backend implements.

    Every operation except ``create_sandbox``/``reconnect``/``get_sandbox_info``/
    ``is_alive``/``terminate`` requires a live session and raises
    ``NoActiveSandbox`` otherwise. ``run_command`` never raises for a non-zero
    exit; only transport failures propagate.
    """

    provider_name: str
    existing_files: set[str]

    async def create_sandbox(self) -> SandboxInfo: ...

    async def reconnect(self, session_id: str) -> bool: ...

    async def run_command(self, command: str) -> CommandResult: ...

    async def write_file(self, path: str, content: str) -> None: ...

    async def read_file(self, path: str) -> str: ...

    async def list_files(self, directory: str = ".") -> list[str]: ...

    async def install_packages(
        self, packages: list[str], *, restart: bool | None = None
    ) -> CommandResult: ...

    async def setup_runtime(self) -> None: ...

    async def restart_dev_server(
        self, *, command: str | None = None, process_match: str | None = None
    ) -> None: ...

    def get_sandbox_info(self) -> SandboxInfo | None: ...

    def is_alive(self) -> bool: ...

    async def terminate(self) -> None: ...

    async def aclose(self) -> None: ...
