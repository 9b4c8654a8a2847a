"""
In-process stand-ins for the docker SDK low-level client.

`FakeDockerAPI` implements the subset of `docker.APIClient` that
`DockerRunner` calls. Each started container runs a small Python "program"
on a thread; programs talk to the runner through a `FakeSocket` that behaves
like the attach socket (multiplexed frames for batch containers, raw bytes
for TTY containers).
"""

from __future__ import annotations

import io
import queue
import socket
import tarfile
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from docker.errors import APIError, ImageNotFound, NotFound

from codejoin_Exec_API.app.core.Sandbox.framing import STREAM_STDERR, STREAM_STDOUT, encode_frame


class FakeSocket:
    """Attach socket: a queue of inbound chunks, b"" meaning EOF."""

    def __init__(self) -> None:
        self._inbound: "queue.Queue[bytes]" = queue.Queue()
        self.sent = bytearray()
        self.write_shut = threading.Event()
        self.closed = False
        self.timeout: Optional[float] = None
        self.on_send: Optional[Callable[[bytes], None]] = None

    # reader side
    def settimeout(self, value: Optional[float]) -> None:
        self.timeout = value

    def recv(self, size: int = 65536) -> bytes:
        try:
            item = self._inbound.get(timeout=self.timeout or 30.0)
        except queue.Empty:
            raise socket.timeout("timed out")
        if item == b"":
            # EOF stays EOF
            self._inbound.put(b"")
        return item

    # program side
    def push(self, data: bytes) -> None:
        self._inbound.put(bytes(data))

    def eof(self) -> None:
        self._inbound.put(b"")

    # writer side
    def sendall(self, data: bytes) -> None:
        if self.closed or self.write_shut.is_set():
            raise BrokenPipeError("socket closed")
        self.sent += data
        if self.on_send is not None:
            self.on_send(bytes(data))

    def shutdown(self, how: int) -> None:
        if how in (socket.SHUT_WR, socket.SHUT_RDWR):
            self.write_shut.set()
        if how == socket.SHUT_RDWR:
            self.eof()

    def close(self) -> None:
        self.closed = True
        self.write_shut.set()
        self.eof()


@dataclass
class ProgramContext:
    """What a fake program sees while its container runs."""
    container_id: str
    create_kwargs: Dict[str, Any]
    files: Dict[str, bytes]
    sock: FakeSocket
    killed: threading.Event = field(default_factory=threading.Event)

    @property
    def tty(self) -> bool:
        return bool(self.create_kwargs.get("tty"))

    def stdout(self, data: bytes | str) -> None:
        self._write(STREAM_STDOUT, data)

    def stderr(self, data: bytes | str) -> None:
        self._write(STREAM_STDERR, data)

    def _write(self, stream: int, data: bytes | str) -> None:
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        self.sock.push(payload if self.tty else encode_frame(stream, payload))

    def read_stdin(self, timeout: float = 5.0) -> bytes:
        """Everything written to stdin, once the writer shut its side down."""
        self.sock.write_shut.wait(timeout)
        return bytes(self.sock.sent)


Program = Callable[[ProgramContext], int]


def exits_with(code: int = 0) -> Program:
    def _program(ctx: ProgramContext) -> int:
        return code
    return _program


class _Container:
    def __init__(self, cid: str, kwargs: Dict[str, Any]) -> None:
        self.id = cid
        self.kwargs = kwargs
        self.name = kwargs.get("name")
        self.files: Dict[str, bytes] = {}
        self.sock: Optional[FakeSocket] = None
        self.ctx: Optional[ProgramContext] = None
        self.thread: Optional[threading.Thread] = None
        self.exit_code: Optional[int] = None
        self.killed = threading.Event()
        self.started = False


class FakeDockerAPI:
    """Records every call; `program` decides what a started container does."""

    def __init__(self, program: Optional[Program] = None) -> None:
        self.program: Program = program or exits_with(0)
        self.lock = threading.Lock()
        self._by_id: Dict[str, _Container] = {}
        self.created: List[Dict[str, Any]] = []
        self.removed: List[str] = []
        self.killed: List[str] = []
        self.resized: List[tuple] = []
        self.pulled: List[tuple] = []
        self.images: set[str] = set()
        self.create_error: Optional[Exception] = None
        self.start_error: Optional[Exception] = None
        self.remove_error: Optional[Exception] = None
        self.ping_ok = True
        self._n = 0

    # -----------------
    # helpers for tests
    # -----------------
    def live(self) -> List[str]:
        with self.lock:
            return [c.id for c in self._by_id.values()]

    def last_created(self) -> Dict[str, Any]:
        return self.created[-1]

    def _get(self, ref: str) -> _Container:
        with self.lock:
            c = self._by_id.get(ref)
            if c is None:
                for cand in self._by_id.values():
                    if cand.name == ref:
                        c = cand
                        break
        if c is None:
            raise NotFound(f"No such container: {ref}")
        return c

    # -----------------
    # APIClient surface
    # -----------------
    def ping(self) -> bool:
        if not self.ping_ok:
            raise APIError("Error while fetching server API version: connection refused")
        return True

    def create_host_config(self, **kwargs: Any) -> Dict[str, Any]:
        return dict(kwargs)

    def create_container(self, **kwargs: Any) -> Dict[str, Any]:
        with self.lock:
            self.created.append(kwargs)
            if self.create_error is not None:
                raise self.create_error
            self._n += 1
            cid = f"fake{self._n:04d}"
            self._by_id[cid] = _Container(cid, kwargs)
        return {"Id": cid, "Warnings": []}

    def put_archive(self, container: str, path: str, data: bytes) -> bool:
        c = self._get(container)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            for member in tar.getmembers():
                fh = tar.extractfile(member)
                c.files[f"{path.rstrip('/')}/{member.name}"] = fh.read() if fh else b""
        return True

    def attach_socket(self, container: str, params: Optional[Dict[str, Any]] = None) -> FakeSocket:
        c = self._get(container)
        c.sock = FakeSocket()
        return c.sock

    def start(self, container: str) -> None:
        c = self._get(container)
        if self.start_error is not None:
            raise self.start_error
        sock = c.sock or FakeSocket()
        c.sock = sock
        c.ctx = ProgramContext(container_id=c.id, create_kwargs=c.kwargs, files=c.files, sock=sock, killed=c.killed)
        c.started = True

        def _run() -> None:
            try:
                code = self.program(c.ctx)
            except Exception:
                code = 1
            if c.exit_code is None:
                c.exit_code = code
            sock.eof()

        c.thread = threading.Thread(target=_run, name=f"fake-{c.id}", daemon=True)
        c.thread.start()

    def kill(self, container: str) -> None:
        c = self._get(container)
        if c.exit_code is not None:
            raise APIError(f"Container {container} is not running")
        with self.lock:
            self.killed.append(c.id)
        c.exit_code = 137
        c.killed.set()
        if c.sock is not None:
            c.sock.eof()

    def wait(self, container: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        c = self._get(container)
        if c.thread is not None:
            c.thread.join(timeout or 5.0)
        return {"StatusCode": c.exit_code if c.exit_code is not None else 0, "Error": None}

    def resize(self, container: str, height: int, width: int) -> None:
        c = self._get(container)
        with self.lock:
            self.resized.append((c.id, width, height))

    def remove_container(self, container: str, v: bool = False, force: bool = False) -> None:
        if self.remove_error is not None:
            raise self.remove_error
        c = self._get(container)
        c.killed.set()
        if c.sock is not None:
            c.sock.eof()
        with self.lock:
            self._by_id.pop(c.id, None)
            self.removed.append(c.id)

    def inspect_image(self, image: str) -> Dict[str, Any]:
        if image not in self.images:
            raise ImageNotFound(f"No such image: {image}")
        return {"Id": image}

    def pull(self, repository: str, tag: Optional[str] = None) -> str:
        self.pulled.append((repository, tag))
        self.images.add(f"{repository}:{tag}")
        return ""

    def containers_list(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [{"Id": c.id, "Names": [f"/{c.name}"]} for c in self._by_id.values()]

    def containers(self, all: bool = False, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return self.containers_list()
