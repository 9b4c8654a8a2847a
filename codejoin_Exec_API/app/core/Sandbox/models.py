from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import time


# Exit code reported when the wall-clock deadline killed the sandbox.
TIMEOUT_EXIT_CODE = 124


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SandboxState(str, Enum):
    created = "created"
    running = "running"
    exited = "exited"
    killed = "killed"
    removed = "removed"


class SandboxKind(str, Enum):
    batch = "batch"
    session = "session"


class SessionPhase(str, Enum):
    starting = "starting"
    active = "active"
    crashed = "crashed"
    idle_timeout = "idle_timeout"
    stopped = "stopped"
    removed = "removed"


class ErrorKind(str, Enum):
    validation = "validation"
    provisioning = "provisioning"
    timeout = "timeout"
    cancelled = "cancelled"


@dataclass
class StreamStats:
    """Running counters kept by a StreamTranscoder. Diagnostic only."""
    chunks: int = 0
    bytes: int = 0
    control_chars: int = 0
    ansi_sequences: int = 0
    decode_errors: int = 0
    pending: int = 0

    def copy(self) -> "StreamStats":
        return StreamStats(
            chunks=self.chunks,
            bytes=self.bytes,
            control_chars=self.control_chars,
            ansi_sequences=self.ansi_sequences,
            decode_errors=self.decode_errors,
            pending=self.pending,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "chunks": self.chunks,
            "bytes": self.bytes,
            "control_chars": self.control_chars,
            "ansi_sequences": self.ansi_sequences,
            "decode_errors": self.decode_errors,
            "pending": self.pending,
        }


@dataclass
class ExecutionRequest:
    language: str
    code: str = ""
    stdin: Optional[str] = None
    # <= 0 or None means "use the profile timeout"
    timeout_ms: Optional[int] = None


@dataclass
class ExecutionResult:
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    execution_time_ms: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_code: Optional[str] = None
    timed_out: bool = False
    truncated: bool = False
    run_id: Optional[str] = None
    language: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape consumed by the transport layer."""
        return {
            "success": self.success,
            "output": self.stdout,
            "error": self.error if self.error else self.stderr,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "executionTime": self.execution_time_ms,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "errorCode": self.error_code,
            "timedOut": self.timed_out,
            "truncated": self.truncated,
            "runId": self.run_id,
            "language": self.language,
        }


@dataclass
class Sandbox:
    id: str
    profile_id: str
    kind: SandboxKind = SandboxKind.batch
    tty: bool = False
    container_id: Optional[str] = None
    state: SandboxState = SandboxState.created
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class PipelineResult:
    accepted: bool
    normalized: bytes = b""
    reason: Optional[str] = None
    code: Optional[str] = None
    binary: bool = False
    continuation: bool = False
    stats: StreamStats = field(default_factory=StreamStats)

    @property
    def text(self) -> str:
        return self.normalized.decode("utf-8", errors="replace")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reason": self.reason,
            "code": self.code,
            "binary": self.binary,
            "continuation": self.continuation,
            "bytes": len(self.normalized),
            "stats": self.stats.to_dict(),
        }


@dataclass
class TerminalSession:
    id: str
    language: str
    sandbox: Sandbox
    owner: Optional[str] = None
    phase: SessionPhase = SessionPhase.starting
    created_at: datetime = field(default_factory=_utcnow)
    # monotonic clock, compared against by the idle sweep
    last_activity: float = field(default_factory=time.monotonic)
    cols: int = 80
    rows: int = 24
    output_stats: StreamStats = field(default_factory=StreamStats)
    input_stats: StreamStats = field(default_factory=StreamStats)
    exit_code: Optional[int] = None
    close_reason: Optional[str] = None

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "language": self.language,
            "owner": self.owner,
            "phase": self.phase.value,
            "sandbox_id": self.sandbox.id,
            "created_at": self.created_at.isoformat(),
            "idle_sec": round(time.monotonic() - self.last_activity, 3),
            "cols": self.cols,
            "rows": self.rows,
            "exit_code": self.exit_code,
            "close_reason": self.close_reason,
            "output_stats": self.output_stats.to_dict(),
            "input_stats": self.input_stats.to_dict(),
        }


@dataclass
class SessionStartResult:
    success: bool
    session_id: Optional[str] = None
    language: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_code: Optional[str] = None
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "sessionId": self.session_id,
            "language": self.language,
            "error": self.error,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "errorCode": self.error_code,
            "retryable": self.retryable,
        }
