from __future__ import annotations


class SandboxError(RuntimeError):
    pass


class NoActiveSandbox(SandboxError):
    """Raised when an operation needs a live session but none is owned."""

    def __init__(self, operation: str = "") -> None:
        op = (operation or "").strip()
        msg = "No active sandbox"
        if op:
            msg = f"{msg} (operation: {op})"
        super().__init__(msg)
        self.operation = op


class ProvisionError(SandboxError):
    pass


class TransportError(SandboxError):
    """Network failure or deadline hit while talking to the sandbox API."""

    def __init__(
        self,
        *,
        method: str,
        url: str,
        timeout_s: float,
        elapsed_s: float,
        aborted: bool,
        reason: str = "",
    ) -> None:
        self.method = method.upper()
        self.url = url
        self.timeout_s = float(timeout_s)
        self.elapsed_s = float(elapsed_s)
        self.aborted = bool(aborted)
        self.reason = reason
        parts = [
            f"{self.method} {url} failed",
            f"(timeout={self.timeout_s:g}s, elapsed={self.elapsed_s:.3f}s)",
        ]
        if self.aborted:
            parts.append("(aborted)")
        if reason:
            parts.append(f": {reason}")
        super().__init__(" ".join(parts))


class BackendError(SandboxError):
    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SessionNotFound(SandboxError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Sandbox {session_id} not found")
        self.session_id = session_id


class SessionRecoveryExhausted(SandboxError):
    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        msg = (
            f"Sandbox session was lost {attempts} times in a row. "
            "Create a new sandbox and send the request again."
        )
        super().__init__(msg)
        self.attempts = attempts
        self.last_error = last_error


class StreamProtocolError(SandboxError):
    pass


class PreviewUnreachable(SandboxError):
    pass


class GenerationError(SandboxError):
    """The upstream generation stream reported a failure."""
