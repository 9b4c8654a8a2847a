"""Error taxonomy for the execution core.

Validation failures are the caller's fault and never worth retrying.
Provisioning failures are the platform's and may be retried by the caller;
nothing in this package retries them internally.
"""

from __future__ import annotations

from typing import Optional


class SandboxError(Exception):
    """Base class for execution-core errors."""

    default_code = "sandbox_error"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, *, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        return self.message


class ValidationError(SandboxError):
    """Input rejected before any sandbox was created."""

    default_code = "validation_failed"


class ProvisioningError(SandboxError):
    """Sandbox could not be created or started."""

    default_code = "provisioning_failed"
    retryable = True


class SandboxTimeoutError(SandboxError):
    """Wall-clock deadline exceeded; the sandbox was killed."""

    default_code = "timeout"


class CrashError(SandboxError):
    """Sandbox process exited while a session was still active."""

    default_code = "crashed"

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class SessionNotFound(SandboxError, KeyError):
    """Unknown or no longer active session id."""

    default_code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.message


class TranscodeAnomaly(SandboxError):
    """A malformed byte sequence passed through verbatim.

    Recorded and logged by the transcoder; never raised.
    """

    default_code = "transcode_anomaly"

    def __init__(self, kind: str, offset: int, sample: bytes):
        super().__init__(f"{kind} at offset {offset}: {sample[:16]!r}", kind)
        self.kind = kind
        self.offset = offset
        self.sample = sample
