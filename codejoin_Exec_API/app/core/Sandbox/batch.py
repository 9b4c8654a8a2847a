"""
Batch sandbox runner: run a program once, capture its output, destroy the
sandbox.

Lifecycle of one run:

1. validate code and stdin through the input pipeline (nothing is created on
   rejection)
2. take an admission slot and create the container
3. copy the source into /workspace as one tar archive
4. attach stdio, start, feed stdin from a writer thread
5. a timer kills the container at the deadline
6. read the multiplexed stream to EOF and split stdout/stderr
7. remove the container, whatever happened above
"""

from __future__ import annotations

from dataclasses import dataclass, field
from collections import deque
from typing import Deque, Dict, Optional
import socket
import threading
import time

from loguru import logger

from .exceptions import ProvisioningError
from .framing import STREAM_STDERR, STREAM_STDOUT, FrameDemultiplexer
from .input_pipeline import InputPipeline
from .languages import LanguageProfile
from .models import TIMEOUT_EXIT_CODE, ErrorKind, ExecutionResult, Sandbox, SandboxKind
from .policy import AdmissionController, SandboxPolicy
from .runners.docker_runner import (
    DockerRunner,
    _raw,
    socket_close,
    socket_recv,
    socket_send_all,
    socket_shutdown_write,
)
from .transcoder import StreamTranscoder, truncate_utf8
from codejoin_Exec_API.app.core.Logging.log_context import log_context, new_run_id
from codejoin_Exec_API.app.core.Metrics.metrics_manager import increment_counter, observe_histogram


@dataclass
class _RunState:
    run_id: str
    sandbox: Optional[Sandbox] = None
    timed_out: bool = False
    cancelled: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)


class _CappedBuffer:
    """Accumulates one output channel up to a byte cap; the rest is counted, not kept."""

    def __init__(self, cap: int, label: str, max_pending: int) -> None:
        self.cap = max(0, int(cap))
        self.data = bytearray()
        self.dropped = 0
        self.transcoder = StreamTranscoder(label=label, max_pending=max_pending)

    def add(self, payload: bytes) -> None:
        self._keep(self.transcoder.feed(payload))

    def finish(self) -> None:
        self._keep(self.transcoder.flush())

    def _keep(self, chunk: bytes) -> None:
        if not chunk:
            return
        room = self.cap + 4 - len(self.data)
        if room > 0:
            self.data += chunk[:room]
        if len(chunk) > room:
            self.dropped += len(chunk) - max(room, 0)

    @property
    def truncated(self) -> bool:
        return self.dropped > 0 or len(self.data) > self.cap

    def text(self) -> str:
        return truncate_utf8(bytes(self.data), self.cap).decode("utf-8", errors="replace")


class BatchRunner:
    """Runs one program per sandbox. Thread-safe; each run blocks its caller."""

    def __init__(
        self,
        docker: DockerRunner,
        pipeline: InputPipeline,
        admission: AdmissionController,
        policy: Optional[SandboxPolicy] = None,
    ) -> None:
        self.docker = docker
        self.pipeline = pipeline
        self.admission = admission
        self.policy = policy or SandboxPolicy(docker.cfg)
        self.cfg = self.policy.cfg
        self._lock = threading.RLock()
        self._runs: Dict[str, _RunState] = {}
        # ids cancelled before their run registered (bounded)
        self._early_cancels: Deque[str] = deque(maxlen=256)

    # -----------------
    # Cancellation
    # -----------------
    def cancel(self, run_id: str, *, before_start: bool = False) -> bool:
        """Force-kill an in-flight run. The run still removes its sandbox.

        With `before_start=True` an id that is not running yet is remembered,
        and a later `run()` with that id returns as cancelled without
        provisioning anything.
        """
        with self._lock:
            state = self._runs.get(run_id)
            if state is None:
                if before_start:
                    self._early_cancels.append(run_id)
                return False
        with state.lock:
            state.cancelled = True
            sandbox = state.sandbox
        if sandbox is not None:
            self.docker.kill(sandbox)
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def active_runs(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    def _on_deadline(self, state: _RunState) -> None:
        with state.lock:
            if state.sandbox is None:
                return
            state.timed_out = True
            sandbox = state.sandbox
        logger.info(f"Run {state.run_id} hit its deadline; killing sandbox {sandbox.id}")
        self.docker.kill(sandbox)

    # -----------------
    # Run
    # -----------------
    def run(
        self,
        profile: LanguageProfile,
        code: Optional[str | bytes],
        stdin: Optional[str | bytes] = None,
        timeout_ms: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> ExecutionResult:
        run_id = run_id or new_run_id()
        state = _RunState(run_id=run_id)
        with self._lock:
            if run_id in self._runs:
                raise ValueError(f"Run id already in use: {run_id}")
            if run_id in self._early_cancels:
                self._early_cancels.remove(run_id)
                state.cancelled = True
            self._runs[run_id] = state
        started = time.monotonic()
        result: Optional[ExecutionResult] = None
        try:
            with log_context(run_id=run_id, language=profile.id, sbx_component="batch") as log:
                result = self._run(state, profile, code, stdin, timeout_ms, log)
                log.info(
                    f"Run finished: success={result.success} exit={result.exit_code} "
                    f"kind={result.error_kind.value if result.error_kind else None} "
                    f"time={result.execution_time_ms}ms"
                )
                return result
        finally:
            with self._lock:
                self._runs.pop(run_id, None)
            self._record_metrics(profile.id, result, time.monotonic() - started)

    def _run(self, state, profile, code, stdin, timeout_ms, log) -> ExecutionResult:
        code_res = self.pipeline.validate_code(code, profile.id)
        if not code_res.accepted:
            log.info(f"Code rejected: {code_res.code}")
            return self._failure(state, profile, ErrorKind.validation, code_res.code, code_res.reason)
        stdin_res = self.pipeline.validate_stdin(stdin, profile.id)
        if not stdin_res.accepted:
            return self._failure(state, profile, ErrorKind.validation, stdin_res.code, stdin_res.reason)

        if not code_res.normalized:
            return ExecutionResult(success=True, exit_code=0, run_id=state.run_id, language=profile.id)
        if state.cancelled:
            return self._failure(state, profile, ErrorKind.cancelled, "cancelled", "Execution cancelled")

        effective_ms = self.policy.effective_timeout_ms(profile, timeout_ms)
        try:
            with self.admission.slot():
                return self._execute(state, profile, code_res.normalized, stdin_res.normalized, effective_ms)
        except ProvisioningError as e:
            log.warning(f"Provisioning failed ({e.code}): {e.message}")
            try:
                increment_counter("sandbox_provisioning_failures_total", labels={"code": e.code})
            except Exception:
                pass
            result = self._failure(state, profile, ErrorKind.provisioning, e.code, e.message)
            if state.cancelled:
                result.error_kind = ErrorKind.cancelled
                result.error_code = "cancelled"
                result.error = "Execution cancelled"
            return result

    def _execute(
        self,
        state: _RunState,
        profile: LanguageProfile,
        source: bytes,
        stdin: bytes,
        timeout_ms: int,
    ) -> ExecutionResult:
        sandbox = self.docker.new_sandbox(profile, SandboxKind.batch)
        limits = self.policy.limits_for(profile)
        command = ["sh", "-c", profile.build_command()]
        stdout = _CappedBuffer(self.cfg.max_output_bytes, f"{state.run_id}:stdout", self.cfg.transcoder_max_pending)
        stderr = _CappedBuffer(self.cfg.max_output_bytes, f"{state.run_id}:stderr", self.cfg.transcoder_max_pending)
        exit_code: Optional[int] = None
        started = time.monotonic()

        with self.docker.provisioned(sandbox, profile, limits, command) as container_id:
            with state.lock:
                state.sandbox = sandbox
                cancelled = state.cancelled
            if cancelled:
                return self._failure(state, profile, ErrorKind.cancelled, "cancelled", "Execution cancelled")

            self.docker.inject_file(container_id, profile.source_file_name, source)
            sock = self.docker.attach(container_id)
            try:
                self.docker.start(sandbox)
                started = time.monotonic()
                timer = threading.Timer(timeout_ms / 1000.0, self._on_deadline, args=(state,))
                timer.daemon = True
                timer.start()
                writer = threading.Thread(
                    target=self._feed_stdin,
                    args=(sock, stdin, state.run_id),
                    name=f"stdin-{sandbox.id[-8:]}",
                    daemon=True,
                )
                writer.start()
                try:
                    self._collect(sock, stdout, stderr, timeout_ms, state)
                finally:
                    timer.cancel()
                    writer.join(timeout=1.0)
            finally:
                socket_close(sock)
            exit_code = self.docker.wait(sandbox)
            elapsed_ms = int((time.monotonic() - started) * 1000)

        stdout.finish()
        stderr.finish()
        result = ExecutionResult(
            success=False,
            stdout=stdout.text(),
            stderr=stderr.text(),
            exit_code=exit_code,
            execution_time_ms=elapsed_ms,
            truncated=stdout.truncated or stderr.truncated,
            run_id=state.run_id,
            language=profile.id,
        )
        if state.timed_out:
            result.timed_out = True
            result.exit_code = TIMEOUT_EXIT_CODE
            result.error_kind = ErrorKind.timeout
            result.error_code = "timeout"
            result.error = f"Execution timed out after {timeout_ms} ms"
        elif state.cancelled:
            result.error_kind = ErrorKind.cancelled
            result.error_code = "cancelled"
            result.error = "Execution cancelled"
        else:
            result.success = exit_code == 0
        return result

    def _feed_stdin(self, sock, data: bytes, run_id: str) -> None:
        try:
            if data:
                socket_send_all(sock, data)
        except OSError as e:
            logger.warning(f"Writing stdin for run {run_id} failed: {e}")
        finally:
            socket_shutdown_write(sock)

    def _collect(self, sock, stdout: _CappedBuffer, stderr: _CappedBuffer, timeout_ms: int, state: _RunState) -> None:
        demux = FrameDemultiplexer()
        try:
            _raw(sock).settimeout(timeout_ms / 1000.0 + max(1, int(self.cfg.remove_grace_sec)))
        except (AttributeError, OSError):
            pass

        def _route(frames) -> None:
            for stream, payload in frames:
                if stream == STREAM_STDERR:
                    stderr.add(payload)
                elif stream == STREAM_STDOUT:
                    stdout.add(payload)

        while True:
            try:
                chunk = socket_recv(sock)
            except socket.timeout:
                logger.warning(f"Output stream of run {state.run_id} stalled past the deadline")
                with state.lock:
                    state.timed_out = True
                    sandbox = state.sandbox
                if sandbox is not None:
                    self.docker.kill(sandbox)
                break
            except OSError as e:
                logger.warning(f"Reading output of run {state.run_id} failed: {e}")
                break
            if not chunk:
                break
            _route(demux.feed(chunk))
        _route(demux.close())
        if demux.partial_frames:
            logger.debug(f"Run {state.run_id}: {demux.partial_frames} partial frame(s) at end of stream")

    # -----------------
    # Helpers
    # -----------------
    @staticmethod
    def _failure(state: _RunState, profile: LanguageProfile, kind: ErrorKind, code: Optional[str], message: Optional[str]) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            error=message,
            error_kind=kind,
            error_code=code,
            run_id=state.run_id,
            language=profile.id,
        )

    @staticmethod
    def _record_metrics(language: str, result: Optional[ExecutionResult], elapsed_sec: float) -> None:
        if result is None:
            outcome = "error"
        elif result.error_kind is not None:
            outcome = result.error_kind.value
        else:
            outcome = "success" if result.success else "failure"
        try:
            increment_counter("sandbox_runs_total", labels={"language": language, "outcome": outcome})
            observe_histogram("sandbox_run_duration_seconds", elapsed_sec, labels={"language": language})
        except Exception:
            pass
