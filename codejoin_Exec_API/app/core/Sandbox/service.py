from __future__ import annotations

import asyncio
import functools
import threading
from typing import Any, Dict, List, Optional

from loguru import logger

from .batch import BatchRunner
from .exceptions import CrashError, ProvisioningError, SandboxError, SessionNotFound, ValidationError
from .input_pipeline import InputPipeline
from .languages import LanguageRegistry, get_language_registry
from .models import ErrorKind, ExecutionResult, PipelineResult, SessionStartResult
from .policy import AdmissionController, SandboxPolicy, SandboxPolicyConfig, compute_policy_hash
from .runners.docker_runner import DockerRunner
from .sessions import SessionManager
from .streams import SessionStreamHub
from codejoin_Exec_API.app.core.Logging.log_context import new_run_id
from codejoin_Exec_API.app.core.Metrics import get_metrics_registry, increment_counter


class SandboxService:
    """Facade used by the transport layer for batch runs and terminal sessions.

    Validation and provisioning failures come back as structured results
    (`ExecutionResult`, `SessionStartResult`, `PipelineResult`); they are not
    raised past this class.
    """

    def __init__(
        self,
        cfg: Optional[SandboxPolicyConfig] = None,
        *,
        languages: Optional[LanguageRegistry] = None,
        docker: Optional[DockerRunner] = None,
        api: Optional[Any] = None,
        hub: Optional[SessionStreamHub] = None,
    ) -> None:
        self.cfg = cfg or SandboxPolicyConfig.from_settings()
        self.policy = SandboxPolicy(self.cfg)
        self.languages = languages or get_language_registry()
        self.docker = docker or DockerRunner(self.cfg, api=api)
        self.pipeline = InputPipeline(self.cfg)
        self.admission = AdmissionController(self.cfg.max_concurrent_sandboxes, self.cfg.admission_wait_sec)
        self.hub = hub or SessionStreamHub(self.cfg.stream_queue_max)
        self.batch = BatchRunner(self.docker, self.pipeline, self.admission, self.policy)
        self.sessions = SessionManager(
            self.docker, self.pipeline, self.admission, self.hub, self.languages, self.policy
        )
        self.policy_hash = compute_policy_hash(self.cfg)

    # -----------------
    # Batch
    # -----------------
    def run_batch(
        self,
        language_id: str,
        code: Optional[str | bytes],
        stdin: Optional[str | bytes] = None,
        timeout_ms: Optional[int] = None,
        *,
        run_id: Optional[str] = None,
    ) -> ExecutionResult:
        try:
            profile = self.languages.get(language_id)
        except ValidationError as e:
            return ExecutionResult(
                success=False,
                error=e.message,
                error_kind=ErrorKind.validation,
                error_code=e.code,
                run_id=run_id,
                language=language_id,
            )
        try:
            return self.batch.run(profile, code, stdin, timeout_ms, run_id=run_id)
        except SandboxError as e:
            kind = ErrorKind.validation if isinstance(e, ValidationError) else ErrorKind.provisioning
            logger.warning(f"Batch run for {language_id} failed ({e.code}): {e.message}")
            return ExecutionResult(
                success=False,
                error=e.message,
                error_kind=kind,
                error_code=e.code,
                run_id=run_id,
                language=profile.id,
            )

    async def run_batch_async(
        self,
        language_id: str,
        code: Optional[str | bytes],
        stdin: Optional[str | bytes] = None,
        timeout_ms: Optional[int] = None,
    ) -> ExecutionResult:
        """Run in a worker thread. Cancelling the awaiting task cancels the run."""
        run_id = new_run_id()
        loop = asyncio.get_running_loop()
        fut = loop.run_in_executor(
            None,
            functools.partial(self.run_batch, language_id, code, stdin, timeout_ms, run_id=run_id),
        )
        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            if not fut.done():
                self.batch.cancel(run_id, before_start=True)
            raise

    def cancel_run(self, run_id: str) -> bool:
        return self.batch.cancel(run_id)

    # -----------------
    # Sessions
    # -----------------
    def start_session(
        self,
        language_id: str,
        owner: Optional[str] = None,
        *,
        cols: int = 80,
        rows: int = 24,
    ) -> SessionStartResult:
        try:
            session_id = self.sessions.start(language_id, owner, cols=cols, rows=rows)
        except ValidationError as e:
            return SessionStartResult(
                success=False,
                language=language_id,
                error=e.message,
                error_kind=ErrorKind.validation,
                error_code=e.code,
            )
        except ProvisioningError as e:
            logger.warning(f"Session for {language_id} could not be provisioned ({e.code}): {e.message}")
            try:
                increment_counter("sandbox_provisioning_failures_total", labels={"code": e.code})
            except Exception:
                pass
            return SessionStartResult(
                success=False,
                language=language_id,
                error=e.message,
                error_kind=ErrorKind.provisioning,
                error_code=e.code,
                retryable=e.retryable,
            )
        self.sessions.start_sweeper()
        return SessionStartResult(success=True, session_id=session_id, language=language_id)

    def send_input(self, session_id: str, data: Any) -> PipelineResult:
        try:
            return self.sessions.send_input(session_id, data)
        except SessionNotFound as e:
            return PipelineResult(accepted=False, reason=e.message, code=e.code)
        except CrashError as e:
            return PipelineResult(accepted=False, reason=e.message, code=e.code)

    def resize(self, session_id: str, cols: Any, rows: Any) -> bool:
        try:
            return self.sessions.resize(session_id, cols, rows)
        except SessionNotFound:
            return False

    def stop_session(self, session_id: str) -> bool:
        return self.sessions.stop(session_id)

    def handle_disconnect(self, owner: str) -> int:
        return self.sessions.stop_owner(owner)

    def subscribe(self, session_id: str, *, with_buffer: bool = True) -> asyncio.Queue:
        """Queue of session frames: `output`, `ready` and the final `close`."""
        if with_buffer:
            return self.hub.subscribe_with_buffer(session_id)
        return self.hub.subscribe(session_id)

    def unsubscribe(self, session_id: str, q: asyncio.Queue) -> None:
        self.hub.unsubscribe(session_id, q)

    def session_info(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.sessions.session_stats(session_id)
        except SessionNotFound:
            return None

    def list_sessions(self, owner: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.sessions.list_sessions(owner)

    # -----------------
    # Discovery / lifecycle
    # -----------------
    def feature_discovery(self) -> Dict[str, Any]:
        languages = []
        for profile in self.languages.profiles():
            info = profile.summary()
            info["handler"] = self.pipeline.handler_info(profile.id)["features"]
            languages.append(info)
        return {
            "name": "docker",
            "available": bool(self.docker.available()),
            "interactive_supported": True,
            "languages": languages,
            "max_input_bytes": self.cfg.max_input_bytes,
            "max_output_bytes": self.cfg.max_output_bytes,
            "max_concurrent_sandboxes": self.admission.capacity,
            "sandboxes_in_use": self.admission.in_use,
            "session_idle_timeout_sec": self.cfg.session_idle_timeout_sec,
            "validation_enabled": self.pipeline.enable_validation,
            "policy_hash": self.policy_hash,
        }

    def metrics_snapshot(self) -> Dict[str, Dict[str, Any]]:
        return get_metrics_registry().snapshot()

    def export_metrics(self) -> str:
        """Prometheus text exposition of the in-process registry."""
        return get_metrics_registry().export_prometheus_format()

    def cleanup_orphans(self) -> int:
        return self.docker.cleanup_orphans()

    def shutdown(self) -> None:
        stopped = self.sessions.shutdown()
        for run_id in self.batch.active_runs():
            self.batch.cancel(run_id)
        logger.info(f"Sandbox service shut down ({stopped} session(s) stopped)")


_service: Optional[SandboxService] = None
_service_lock = threading.Lock()


def get_sandbox_service() -> SandboxService:
    global _service
    with _service_lock:
        if _service is None:
            _service = SandboxService()
        return _service


def reset_sandbox_service() -> None:
    """Shut down and drop the process singleton (tests, reloads)."""
    global _service
    with _service_lock:
        svc, _service = _service, None
    if svc is not None:
        svc.shutdown()
