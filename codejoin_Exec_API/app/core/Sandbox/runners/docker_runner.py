"""Docker Engine adapter for sandbox containers.

Wraps the docker SDK's low-level `APIClient`. Every container is created with
the same isolation settings: no network, non-root user, all capabilities
dropped, no-new-privileges, read-only root filesystem, tmpfs scratch space and
memory/CPU/PID ceilings. `provisioned()` guarantees removal on every exit path.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional
import io
import socket
import tarfile
import threading
import time
import uuid

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import Ulimit
from loguru import logger
from requests.exceptions import RequestException

from ..exceptions import ProvisioningError
from ..languages import WORKSPACE_DIR, LanguageProfile
from ..models import Sandbox, SandboxKind, SandboxState
from ..policy import ResourceLimits, SandboxPolicyConfig


SANDBOX_NAME_PREFIX = "codejoin"
LABEL_MANAGED = "codejoin.sandbox"
LABEL_KIND = "codejoin.sandbox.kind"
LABEL_LANGUAGE = "codejoin.sandbox.language"
SANDBOX_UID = 65534

# the low-level client lets transport failures (daemon restart, read timeout) through unwrapped
DOCKER_ERRORS = (APIError, DockerException, RequestException)


def _raw(sock: Any) -> Any:
    """The real socket behind docker-py's attach wrapper (SocketIO on unix)."""
    return getattr(sock, "_sock", sock)


def map_docker_error(exc: BaseException, image: Optional[str] = None) -> ProvisioningError:
    """Translate a docker SDK failure into a ProvisioningError with a stable code."""
    if isinstance(exc, ProvisioningError):
        return exc
    msg = str(exc)
    low = msg.lower()
    if isinstance(exc, ImageNotFound) or "no such image" in low or (
        isinstance(exc, NotFound) and "image" in low
    ):
        return ProvisioningError(
            f"Docker image '{image or 'unknown'}' not found. Please pull the required images.",
            "image_not_found",
        )
    if "permission denied" in low or "eacces" in low or "access is denied" in low:
        return ProvisioningError(
            "Permission denied accessing Docker. Ensure the service user can access the Docker socket.",
            "permission_denied",
        )
    if isinstance(exc, RequestException) or (
        "connection refused" in low
        or "error while fetching server api version" in low
        or "no such file or directory" in low
        or "connection aborted" in low
        or "failed to connect" in low
    ):
        return ProvisioningError(
            "Docker is not running or not accessible. Start the Docker daemon and try again.",
            "runtime_unavailable",
        )
    return ProvisioningError(f"Failed to provision sandbox: {msg}", "provisioning_failed")


class DockerRunner:
    """Low-level sandbox container operations.

    The API client is created lazily from the environment unless one is
    injected (tests pass a fake with the same method names).
    """

    def __init__(self, cfg: Optional[SandboxPolicyConfig] = None, api: Optional[Any] = None) -> None:
        self.cfg = cfg or SandboxPolicyConfig.from_settings()
        self._api = api
        self._api_lock = threading.Lock()
        self._live_lock = threading.RLock()
        self._live: Dict[str, Sandbox] = {}

    @property
    def api(self) -> Any:
        """Lazily initialize and return the low-level Docker client.

        Raises:
            ProvisioningError: If the Docker daemon is not reachable.
        """
        with self._api_lock:
            if self._api is None:
                try:
                    client = docker.from_env(timeout=int(self.cfg.docker_timeout_sec))
                    client.ping()
                except DOCKER_ERRORS as exc:
                    raise map_docker_error(exc) from exc
                self._api = client.api
            return self._api

    def available(self) -> bool:
        try:
            self.api.ping()
            return True
        except Exception as e:
            logger.debug(f"Docker not available: {e}")
            return False

    # -----------------
    # Bookkeeping
    # -----------------
    def new_sandbox(self, profile: LanguageProfile, kind: SandboxKind, *, tty: bool = False) -> Sandbox:
        with self._live_lock:
            while True:
                sid = f"{SANDBOX_NAME_PREFIX}-{kind.value}-{uuid.uuid4().hex}"
                if sid not in self._live:
                    break
            sandbox = Sandbox(id=sid, profile_id=profile.id, kind=kind, tty=tty)
            self._live[sid] = sandbox
            return sandbox

    def live_sandboxes(self) -> List[Sandbox]:
        with self._live_lock:
            return list(self._live.values())

    def _forget(self, sandbox: Sandbox) -> None:
        with self._live_lock:
            self._live.pop(sandbox.id, None)

    # -----------------
    # Container operations
    # -----------------
    def _host_config(self, limits: ResourceLimits) -> Any:
        security_opt = ["no-new-privileges:true"]
        if self.cfg.docker_seccomp:
            try:
                with open(self.cfg.docker_seccomp, "r", encoding="utf-8") as fh:
                    security_opt.append(f"seccomp={fh.read()}")
            except OSError as e:
                logger.warning(f"Seccomp profile {self.cfg.docker_seccomp} unreadable; using Docker default: {e}")
        return self.api.create_host_config(
            network_mode="none",
            cap_drop=["ALL"],
            security_opt=security_opt,
            read_only=True,
            tmpfs={
                "/tmp": f"rw,exec,nosuid,size={self.cfg.tmpfs_size}",
                "/var/tmp": "rw,noexec,nosuid,size=10m",
            },
            mem_limit=limits.memory_bytes,
            memswap_limit=limits.memory_bytes,
            cpu_period=limits.cpu_period,
            cpu_quota=limits.cpu_quota,
            pids_limit=limits.pids_limit,
            ulimits=[
                Ulimit(name="nofile", soft=limits.ulimit_nofile, hard=limits.ulimit_nofile),
                Ulimit(name="nproc", soft=limits.ulimit_nproc, hard=limits.ulimit_nproc),
            ],
        )

    def create(
        self,
        sandbox: Sandbox,
        profile: LanguageProfile,
        limits: ResourceLimits,
        command: List[str],
        *,
        environment: Optional[Dict[str, str]] = None,
    ) -> str:
        env = {"HOME": "/tmp"}
        if sandbox.tty:
            env["TERM"] = "xterm"
        env.update(environment or {})
        try:
            resp = self.api.create_container(
                image=profile.image,
                command=command,
                name=sandbox.id,
                user=self.cfg.user,
                environment=env,
                working_dir="/tmp",
                labels={
                    LABEL_MANAGED: "true",
                    LABEL_KIND: sandbox.kind.value,
                    LABEL_LANGUAGE: profile.id,
                },
                host_config=self._host_config(limits),
                volumes=[WORKSPACE_DIR],
                network_disabled=True,
                tty=sandbox.tty,
                stdin_open=True,
                # batch runs see EOF once the write side is shut down
                stdin_once=not sandbox.tty,
            )
        except DOCKER_ERRORS as exc:
            raise map_docker_error(exc, profile.image) from exc
        sandbox.container_id = resp.get("Id") if isinstance(resp, dict) else str(resp)
        sandbox.state = SandboxState.created
        logger.debug(f"Created sandbox {sandbox.id} ({profile.image}) container={sandbox.container_id}")
        return sandbox.container_id or sandbox.id

    def inject_file(self, container_id: str, file_name: str, data: bytes, path: str = WORKSPACE_DIR) -> None:
        """Copy one file into the container as a single tar archive."""
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            info = tarfile.TarInfo(name=file_name)
            info.size = len(data)
            info.mode = 0o644
            info.uid = SANDBOX_UID
            info.gid = SANDBOX_UID
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(data))
        try:
            ok = self.api.put_archive(container_id, path, buf.getvalue())
        except DOCKER_ERRORS as exc:
            raise map_docker_error(exc) from exc
        if ok is False:
            raise ProvisioningError(f"Failed to copy source into sandbox {container_id}", "provisioning_failed")

    def attach(self, container_id: str) -> Any:
        """Attach stdin/stdout/stderr; must happen before start so no output is missed."""
        try:
            return self.api.attach_socket(
                container_id,
                params={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1},
            )
        except DOCKER_ERRORS as exc:
            raise map_docker_error(exc) from exc

    def start(self, sandbox: Sandbox) -> None:
        try:
            self.api.start(sandbox.container_id or sandbox.id)
        except DOCKER_ERRORS as exc:
            raise map_docker_error(exc) from exc
        sandbox.state = SandboxState.running

    def kill(self, sandbox: Sandbox) -> bool:
        try:
            self.api.kill(sandbox.container_id or sandbox.id)
            sandbox.state = SandboxState.killed
            return True
        except NotFound:
            return False
        except DOCKER_ERRORS as e:
            # already-exited containers answer 409
            logger.debug(f"Kill of sandbox {sandbox.id} failed: {e}")
            return False

    def wait(self, sandbox: Sandbox, timeout: Optional[float] = None) -> Optional[int]:
        try:
            res = self.api.wait(sandbox.container_id or sandbox.id, timeout=timeout or self.cfg.docker_timeout_sec)
        except Exception as e:
            logger.warning(f"Wait on sandbox {sandbox.id} failed: {e}")
            return None
        if sandbox.state == SandboxState.running:
            sandbox.state = SandboxState.exited
        try:
            return int(res.get("StatusCode")) if isinstance(res, dict) else int(res)
        except (TypeError, ValueError):
            return None

    def resize(self, sandbox: Sandbox, cols: int, rows: int) -> None:
        try:
            self.api.resize(sandbox.container_id or sandbox.id, height=rows, width=cols)
        except DOCKER_ERRORS as e:
            logger.debug(f"Resize of sandbox {sandbox.id} failed: {e}")

    def remove(self, sandbox: Sandbox) -> bool:
        """Force-remove the container and its volumes. Idempotent."""
        ref = sandbox.container_id or sandbox.id
        try:
            self.api.remove_container(ref, v=True, force=True)
            removed = True
        except NotFound:
            removed = True
        except DOCKER_ERRORS as e:
            logger.warning(f"Failed to remove sandbox {sandbox.id}: {e}")
            removed = False
        sandbox.state = SandboxState.removed
        self._forget(sandbox)
        logger.debug(f"Removed sandbox {sandbox.id}")
        return removed

    @contextmanager
    def provisioned(
        self,
        sandbox: Sandbox,
        profile: LanguageProfile,
        limits: ResourceLimits,
        command: List[str],
        *,
        environment: Optional[Dict[str, str]] = None,
    ) -> Iterator[str]:
        """Create the container and remove it when the block exits, however it exits.

        Removal is attempted by name even when create itself failed, since the
        daemon may have created the container before the error surfaced.
        """
        try:
            container_id = self.create(sandbox, profile, limits, command, environment=environment)
            yield container_id
        finally:
            self.remove(sandbox)

    # -----------------
    # Images / health
    # -----------------
    def image_present(self, image: str) -> bool:
        try:
            self.api.inspect_image(image)
            return True
        except (ImageNotFound, NotFound):
            return False
        except DOCKER_ERRORS as exc:
            raise map_docker_error(exc, image) from exc

    def pull(self, image: str) -> None:
        repo, _, tag = image.rpartition(":") if ":" in image.split("/")[-1] else (image, "", "latest")
        try:
            self.api.pull(repo, tag=tag or "latest")
        except DOCKER_ERRORS as exc:
            raise map_docker_error(exc, image) from exc

    def cleanup_orphans(self) -> int:
        """Remove labeled sandbox containers left behind by a previous process."""
        try:
            containers = self.api.containers(all=True, filters={"label": f"{LABEL_MANAGED}=true"})
        except DOCKER_ERRORS as e:
            logger.warning(f"Orphan sweep failed: {e}")
            return 0
        with self._live_lock:
            live_names = set(self._live)
        count = 0
        for c in containers or []:
            names = [str(n).lstrip("/") for n in (c.get("Names") or [])]
            if any(n in live_names for n in names):
                continue
            try:
                self.api.remove_container(c.get("Id"), v=True, force=True)
                count += 1
            except DOCKER_ERRORS as e:
                logger.debug(f"Orphan {c.get('Id')} not removed: {e}")
        if count:
            logger.info(f"Removed {count} orphaned sandbox containers")
        return count


def socket_send_all(sock: Any, data: bytes) -> None:
    _raw(sock).sendall(data)


def socket_shutdown_write(sock: Any) -> None:
    try:
        _raw(sock).shutdown(socket.SHUT_WR)
    except OSError as e:
        logger.debug(f"Shutdown of sandbox stdin failed: {e}")


def socket_recv(sock: Any, size: int = 65536) -> bytes:
    return _raw(sock).recv(size)


def socket_close(sock: Any) -> None:
    # shutdown first so a reader blocked in recv() wakes up
    try:
        _raw(sock).shutdown(socket.SHUT_RDWR)
    except (AttributeError, OSError):
        pass
    for obj in (sock, _raw(sock)):
        try:
            obj.close()
        except Exception:
            pass
