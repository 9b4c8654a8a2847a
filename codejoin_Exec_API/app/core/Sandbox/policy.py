from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional
import hashlib
import json
import threading

from loguru import logger

from .exceptions import ProvisioningError
from .languages import LanguageProfile
from codejoin_Exec_API.app.core.config import settings as app_settings


@dataclass
class SandboxPolicyConfig:
    max_input_bytes: int = 1024 * 1024
    max_output_bytes: int = 64 * 1024
    max_concurrent_sandboxes: int = 32
    admission_wait_sec: float = 0.0
    remove_grace_sec: int = 10
    docker_timeout_sec: int = 30
    session_idle_timeout_sec: int = 900
    session_sweep_interval_sec: float = 30.0
    stream_queue_max: int = 1000
    enable_validation: bool = True
    tmpfs_size: str = "100m"
    user: str = "65534:65534"
    pids_limit: int = 256
    max_cpu: float = 4.0
    max_mem_mb: int = 8192
    docker_seccomp: Optional[str] = None
    transcoder_max_pending: int = 8192

    @classmethod
    def from_settings(cls) -> "SandboxPolicyConfig":
        def _get_int(key: str, dv: int) -> int:
            try:
                return int(getattr(app_settings, key))  # type: ignore[arg-type]
            except Exception:
                return dv
        def _get_float(key: str, dv: float) -> float:
            try:
                return float(getattr(app_settings, key))  # type: ignore[arg-type]
            except Exception:
                return dv
        def _get_str(key: str, dv: Optional[str]) -> Optional[str]:
            try:
                v = getattr(app_settings, key)
                return str(v) if v not in (None, "") else dv
            except Exception:
                return dv
        try:
            enable_validation = bool(getattr(app_settings, "SANDBOX_ENABLE_VALIDATION", True))
        except Exception:
            enable_validation = True
        return cls(
            max_input_bytes=_get_int("SANDBOX_MAX_INPUT_BYTES", 1024 * 1024),
            max_output_bytes=_get_int("SANDBOX_MAX_OUTPUT_BYTES", 64 * 1024),
            max_concurrent_sandboxes=_get_int("SANDBOX_MAX_CONCURRENT_SANDBOXES", 32),
            admission_wait_sec=_get_float("SANDBOX_ADMISSION_WAIT_SEC", 0.0),
            remove_grace_sec=_get_int("SANDBOX_REMOVE_GRACE_SEC", 10),
            docker_timeout_sec=_get_int("SANDBOX_DOCKER_TIMEOUT_SEC", 30),
            session_idle_timeout_sec=_get_int("SANDBOX_SESSION_IDLE_TIMEOUT_SEC", 900),
            session_sweep_interval_sec=_get_float("SANDBOX_SESSION_SWEEP_INTERVAL_SEC", 30.0),
            stream_queue_max=_get_int("SANDBOX_STREAM_QUEUE_MAX", 1000),
            enable_validation=enable_validation,
            tmpfs_size=_get_str("SANDBOX_TMPFS_SIZE", "100m") or "100m",
            user=_get_str("SANDBOX_USER", "65534:65534") or "65534:65534",
            pids_limit=_get_int("SANDBOX_PIDS_LIMIT", 256),
            max_cpu=_get_float("SANDBOX_MAX_CPU", 4.0),
            max_mem_mb=_get_int("SANDBOX_MAX_MEM_MB", 8192),
            docker_seccomp=_get_str("SANDBOX_DOCKER_SECCOMP", None),
            transcoder_max_pending=_get_int("SANDBOX_TRANSCODER_MAX_PENDING", 8192),
        )


@dataclass(frozen=True)
class ResourceLimits:
    """Effective ceilings for one sandbox after policy clamping."""
    memory_bytes: int
    nano_cpus: int
    cpu_period: int
    cpu_quota: int
    pids_limit: int
    ulimit_nofile: int
    ulimit_nproc: int


class SandboxPolicy:
    """Clamps per-profile and per-request values against the admin ceilings."""

    CPU_PERIOD = 100000

    def __init__(self, cfg: Optional[SandboxPolicyConfig] = None) -> None:
        self.cfg = cfg or SandboxPolicyConfig.from_settings()

    def effective_timeout_ms(self, profile: LanguageProfile, requested_ms: Optional[int]) -> int:
        """Requested timeouts may shorten but never extend the profile maximum."""
        if requested_ms is None or requested_ms <= 0:
            return profile.timeout_ms
        return min(int(requested_ms), profile.timeout_ms)

    def limits_for(self, profile: LanguageProfile) -> ResourceLimits:
        mem = min(profile.memory_bytes, int(self.cfg.max_mem_mb) * 1024 * 1024)
        cpu = min(float(profile.cpu_limit), float(self.cfg.max_cpu))
        if mem < profile.memory_bytes or cpu < profile.cpu_limit:
            logger.debug(f"Clamped limits for {profile.id}: mem={mem} cpu={cpu}")
        return ResourceLimits(
            memory_bytes=mem,
            nano_cpus=int(cpu * 1e9),
            cpu_period=self.CPU_PERIOD,
            cpu_quota=int(cpu * self.CPU_PERIOD),
            pids_limit=min(int(profile.process_limit), int(self.cfg.pids_limit)),
            ulimit_nofile=int(profile.ulimit_nofile),
            ulimit_nproc=int(profile.ulimit_nproc),
        )


class AdmissionController:
    """Bounded pool of sandbox slots shared by batch runs and sessions."""

    def __init__(self, capacity: int, wait_sec: float = 0.0) -> None:
        self.capacity = max(1, int(capacity))
        self.wait_sec = max(0.0, float(wait_sec))
        self._sem = threading.BoundedSemaphore(self.capacity)
        self._lock = threading.Lock()
        self._in_use = 0

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    def acquire(self) -> None:
        if self.wait_sec > 0:
            ok = self._sem.acquire(timeout=self.wait_sec)
        else:
            ok = self._sem.acquire(blocking=False)
        if not ok:
            raise ProvisioningError(
                f"Sandbox capacity exhausted ({self.capacity} in use)",
                "capacity_exceeded",
            )
        with self._lock:
            self._in_use += 1

    def release(self) -> None:
        with self._lock:
            if self._in_use <= 0:
                logger.warning("Admission slot released more times than acquired")
                return
            self._in_use -= 1
        self._sem.release()

    @contextmanager
    def slot(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()


def _canonical_policy_dict(cfg: SandboxPolicyConfig) -> dict:
    """Stable dict of the settings that affect sandbox isolation and limits."""
    return {
        "network": "none",
        "user": str(cfg.user),
        "read_only_root": True,
        "tmpfs_size": str(cfg.tmpfs_size),
        "pids_limit": int(cfg.pids_limit),
        "max_cpu": float(cfg.max_cpu),
        "max_mem_mb": int(cfg.max_mem_mb),
        "max_input_bytes": int(cfg.max_input_bytes),
        "max_output_bytes": int(cfg.max_output_bytes),
        "validation": bool(cfg.enable_validation),
        "security": {
            "cap_drop": "ALL",
            "no_new_privileges": True,
            "docker_seccomp": bool(cfg.docker_seccomp),
        },
    }


def compute_policy_hash(cfg: SandboxPolicyConfig) -> str:
    """Short reproducible hash (first 16 hex chars of sha256) of the policy material."""
    mat = _canonical_policy_dict(cfg)
    canon = json.dumps(mat, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canon.encode("utf-8")).hexdigest()[:16]
