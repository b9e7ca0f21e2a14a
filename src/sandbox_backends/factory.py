from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .base import SandboxProvider
    from .config import SandboxConfig

_PROVIDERS = ("http",)


def available_providers() -> tuple[str, ...]:
    return _PROVIDERS


def create_provider(
    name: str | None = None, config: SandboxConfig | None = None
) -> SandboxProvider:
    from .config import SandboxConfig

    cfg = config or SandboxConfig.from_env()
    provider = (name or cfg.provider or "http").strip().lower()
    if provider == "http":
        from .remote_provider import HttpSandboxProvider

        return HttpSandboxProvider(cfg)
    raise ValueError(
        f"Unknown sandbox provider {provider!r}; available: {', '.join(_PROVIDERS)}"
    )
