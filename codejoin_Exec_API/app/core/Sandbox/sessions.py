"""
Interactive terminal sessions.

Each session owns one TTY sandbox running the language's REPL (or a shell)
and one reader thread that forwards PTY output to the stream hub as it
arrives. All session bookkeeping lives in a single lock-guarded map that the
input, output, sweep and stop paths share; teardown flips the session out of
the map exactly once, so the sandbox is removed exactly once no matter how
many paths race to stop it.

Phases: starting -> active -> (crashed | idle_timeout | stopped) -> removed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import shlex
import threading
import time
import uuid

from loguru import logger

from .exceptions import CrashError, SessionNotFound
from .input_pipeline import InputPipeline, PipelineOptions
from .languages import LanguageRegistry
from .models import PipelineResult, SandboxKind, SessionPhase, TerminalSession
from .policy import AdmissionController, SandboxPolicy
from .runners.docker_runner import (
    DockerRunner,
    _raw,
    socket_close,
    socket_recv,
    socket_send_all,
)
from .streams import SessionStreamHub
from .transcoder import StreamTranscoder
from codejoin_Exec_API.app.core.Logging.log_context import get_sandbox_logger
from codejoin_Exec_API.app.core.Metrics.metrics_manager import increment_counter, set_gauge


SESSION_PROMPT = "user@codejoin:~$ "
MAX_GEOMETRY = 10000


@dataclass
class _SessionHandle:
    session: TerminalSession
    sock: Any
    output: StreamTranscoder
    input: StreamTranscoder
    write_lock: threading.Lock = field(default_factory=threading.Lock)
    reader: Optional[threading.Thread] = None
    closing: bool = False


class SessionManager:
    """Starts, feeds, resizes and tears down interactive sandbox sessions."""

    def __init__(
        self,
        docker: DockerRunner,
        pipeline: InputPipeline,
        admission: AdmissionController,
        hub: SessionStreamHub,
        languages: LanguageRegistry,
        policy: Optional[SandboxPolicy] = None,
    ) -> None:
        self.docker = docker
        self.pipeline = pipeline
        self.admission = admission
        self.hub = hub
        self.languages = languages
        self.policy = policy or SandboxPolicy(docker.cfg)
        self.cfg = self.policy.cfg
        self._lock = threading.RLock()
        self._sessions: Dict[str, _SessionHandle] = {}
        self._by_owner: Dict[str, set[str]] = {}
        self._sweeper: Optional[threading.Thread] = None
        self._sweeper_stop = threading.Event()

    # -----------------
    # Lookup
    # -----------------
    def _handle(self, session_id: str, *, require_active: bool = True) -> _SessionHandle:
        with self._lock:
            handle = self._sessions.get(session_id)
            if handle is None or handle.closing:
                raise SessionNotFound(session_id)
            if require_active and handle.session.phase != SessionPhase.active:
                raise SessionNotFound(session_id)
            return handle

    def get_session(self, session_id: str) -> TerminalSession:
        return self._handle(session_id, require_active=False).session

    def list_sessions(self, owner: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            handles = list(self._sessions.values())
        return [h.session.to_dict() for h in handles if owner is None or h.session.owner == owner]

    def session_stats(self, session_id: str) -> Dict[str, Any]:
        handle = self._handle(session_id, require_active=False)
        with self._lock:
            data = handle.session.to_dict()
        data["pending_output_bytes"] = len(handle.output.pending)
        data["subscribers"] = self.hub.subscriber_count(session_id)
        return data

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _update_gauge(self) -> None:
        try:
            set_gauge("sandbox_sessions_active", self.active_count)
        except Exception:
            pass

    # -----------------
    # Start
    # -----------------
    def start(self, language: str, owner: Optional[str] = None, *, cols: int = 80, rows: int = 24) -> str:
        """Provision a TTY sandbox and return the new session id.

        Raises ValidationError for an unknown language and ProvisioningError
        when the sandbox cannot be created; nothing is left behind in either
        case.
        """
        profile = self.languages.get(language)
        self.admission.acquire()
        sandbox = self.docker.new_sandbox(profile, SandboxKind.session, tty=True)
        session_id = uuid.uuid4().hex
        log = get_sandbox_logger(session_id=session_id, sandbox_id=sandbox.id, owner=owner,
                                 language=profile.id, sbx_component="session")
        try:
            limits = self.policy.limits_for(profile)
            command = shlex.split(profile.interactive_command())
            container_id = self.docker.create(
                sandbox, profile, limits, command,
                environment={"PS1": SESSION_PROMPT, "SHELL": "/bin/sh"},
            )
            sock = self.docker.attach(container_id)
            try:
                self.docker.start(sandbox)
                if self._valid_geometry(cols, rows):
                    self.docker.resize(sandbox, int(cols), int(rows))
            except BaseException:
                socket_close(sock)
                raise
        except BaseException:
            self.docker.remove(sandbox)
            self.admission.release()
            raise

        session = TerminalSession(id=session_id, language=profile.id, sandbox=sandbox, owner=owner)
        if self._valid_geometry(cols, rows):
            session.cols, session.rows = int(cols), int(rows)
        handle = _SessionHandle(
            session=session,
            sock=sock,
            output=StreamTranscoder(label=f"{session_id}:out", max_pending=self.cfg.transcoder_max_pending),
            input=StreamTranscoder(label=f"{session_id}:in", max_pending=self.cfg.transcoder_max_pending),
        )
        session.output_stats = handle.output.stats
        session.input_stats = handle.input.stats
        handle.reader = threading.Thread(
            target=self._read_loop,
            args=(handle,),
            name=f"session-reader-{session_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._sessions[session_id] = handle
            if owner is not None:
                self._by_owner.setdefault(owner, set()).add(session_id)
            session.phase = SessionPhase.active
            session.touch()
        self.hub.publish_ready(session_id, profile.id)
        handle.reader.start()
        self._update_gauge()
        log.info(f"Terminal session started ({profile.image}, {' '.join(command)})")
        return session_id

    # -----------------
    # Output
    # -----------------
    def _read_loop(self, handle: _SessionHandle) -> None:
        session = handle.session
        log = get_sandbox_logger(session_id=session.id, sandbox_id=session.sandbox.id, sbx_component="session_reader")
        try:
            _raw(handle.sock).settimeout(None)
        except (AttributeError, OSError):
            pass
        while True:
            try:
                chunk = socket_recv(handle.sock)
            except OSError as e:
                if not handle.closing:
                    log.warning(f"Terminal stream error: {e}")
                break
            if not chunk:
                break
            out = handle.output.feed(chunk)
            # teardown flips `closing` under this lock before closing the hub stream
            with self._lock:
                if handle.closing:
                    break
                session.touch()
                if out:
                    self.hub.publish_output(session.id, out)
        rest = handle.output.flush()
        with self._lock:
            if rest and not handle.closing:
                self.hub.publish_output(session.id, rest)

        if handle.closing:
            return
        exit_code = self.docker.wait(session.sandbox, timeout=5)
        if exit_code == 0:
            log.info("Terminal process exited")
            self._teardown(session.id, SessionPhase.stopped, "exited", exit_code)
        else:
            err = CrashError(f"Sandbox process exited unexpectedly (exit code {exit_code})", exit_code)
            log.warning(f"Terminal session crashed: {err}")
            self._teardown(session.id, SessionPhase.crashed, "crashed", exit_code)

    # -----------------
    # Input
    # -----------------
    def send_input(self, session_id: str, data: Any) -> PipelineResult:
        handle = self._handle(session_id)
        session = handle.session
        result = self.pipeline.process(
            data, session.language, PipelineOptions(interactive=True, session_id=session_id)
        )
        if not result.accepted:
            logger.info(f"Input for session {session_id} rejected: {result.code}")
            return result
        if result.normalized:
            try:
                with handle.write_lock:
                    socket_send_all(handle.sock, result.normalized)
            except OSError as e:
                logger.warning(f"Writing to session {session_id} failed: {e}")
                self._teardown(session_id, SessionPhase.crashed, "crashed")
                raise CrashError(f"Session {session_id} is no longer accepting input") from e
            handle.input.feed(result.normalized)
        with self._lock:
            session.touch()
        return result

    @staticmethod
    def _valid_geometry(cols: Any, rows: Any) -> bool:
        for v in (cols, rows):
            if isinstance(v, bool) or not isinstance(v, int):
                return False
            if v <= 0 or v > MAX_GEOMETRY:
                return False
        return True

    def resize(self, session_id: str, cols: Any, rows: Any) -> bool:
        """Propagate terminal geometry. Invalid geometry is ignored (returns False)."""
        handle = self._handle(session_id)
        if not self._valid_geometry(cols, rows):
            logger.debug(f"Ignoring invalid geometry for session {session_id}: {cols!r}x{rows!r}")
            return False
        with self._lock:
            handle.session.cols, handle.session.rows = int(cols), int(rows)
        self.docker.resize(handle.session.sandbox, int(cols), int(rows))
        return True

    # -----------------
    # Teardown
    # -----------------
    def _teardown(self, session_id: str, phase: SessionPhase, reason: str, exit_code: Optional[int] = None) -> bool:
        with self._lock:
            handle = self._sessions.get(session_id)
            if handle is None or handle.closing:
                return False
            handle.closing = True
            session = handle.session
            session.phase = phase
            session.close_reason = reason
            if exit_code is not None:
                session.exit_code = exit_code
            self._sessions.pop(session_id, None)
            if session.owner is not None:
                owned = self._by_owner.get(session.owner)
                if owned is not None:
                    owned.discard(session_id)
                    if not owned:
                        self._by_owner.pop(session.owner, None)

        socket_close(handle.sock)
        try:
            self.docker.remove(session.sandbox)
        finally:
            self.admission.release()
            session.phase = SessionPhase.removed
            self.hub.close(session_id, reason, session.exit_code)
            self._update_gauge()
            try:
                increment_counter("sandbox_session_closed_total", labels={"reason": reason})
            except Exception:
                pass
        reader = handle.reader
        if reader is not None and reader is not threading.current_thread() and reader.is_alive():
            reader.join(timeout=2.0)
        logger.info(f"Terminal session {session_id} closed ({reason})")
        return True

    def stop(self, session_id: str, reason: str = "stopped") -> bool:
        """Idempotent: returns False when the session is already gone."""
        return self._teardown(session_id, SessionPhase.stopped, reason)

    def stop_owner(self, owner: str) -> int:
        """Tear down every session of a disconnected connection."""
        with self._lock:
            ids = list(self._by_owner.get(owner, ()))
        count = 0
        for sid in ids:
            if self._teardown(sid, SessionPhase.stopped, "disconnected"):
                count += 1
        if count:
            logger.info(f"Stopped {count} session(s) of disconnected owner {owner}")
        return count

    def sweep_idle(self, now: Optional[float] = None) -> List[str]:
        """Stop sessions idle longer than the configured timeout; returns their ids."""
        now = time.monotonic() if now is None else now
        limit = float(self.cfg.session_idle_timeout_sec)
        with self._lock:
            idle = [
                sid for sid, h in self._sessions.items()
                if h.session.phase == SessionPhase.active and now - h.session.last_activity > limit
            ]
        stopped = []
        for sid in idle:
            if self._teardown(sid, SessionPhase.idle_timeout, "idle_timeout"):
                stopped.append(sid)
        if stopped:
            logger.info(f"Idle sweep stopped {len(stopped)} session(s)")
        return stopped

    def start_sweeper(self) -> None:
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._sweeper_stop.clear()
            self._sweeper = threading.Thread(target=self._sweep_loop, name="session-idle-sweeper", daemon=True)
            self._sweeper.start()

    def _sweep_loop(self) -> None:
        interval = max(0.05, float(self.cfg.session_sweep_interval_sec))
        while not self._sweeper_stop.wait(interval):
            try:
                self.sweep_idle()
            except Exception as e:
                logger.warning(f"Idle sweep failed: {e}")

    def stop_sweeper(self) -> None:
        self._sweeper_stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=2.0)
        self._sweeper = None

    def shutdown(self) -> int:
        self.stop_sweeper()
        with self._lock:
            ids = list(self._sessions)
        count = sum(1 for sid in ids if self._teardown(sid, SessionPhase.stopped, "shutdown"))
        if count:
            logger.info(f"Stopped {count} session(s) on shutdown")
        return count
