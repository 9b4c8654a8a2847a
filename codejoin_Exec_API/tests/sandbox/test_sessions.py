from __future__ import annotations

import asyncio
import threading
import time

import pytest
from docker.errors import ImageNotFound

from codejoin_Exec_API.app.core.Sandbox.exceptions import SessionNotFound
from codejoin_Exec_API.app.core.Sandbox.models import ErrorKind, SessionPhase
from codejoin_Exec_API.tests.helpers.docker_fakes import ProgramContext

PROMPT = b"\x1b[32m>>> \x1b[0m"


def fake_repl(ctx: ProgramContext) -> int:
    """A REPL that evaluates exactly one expression and can be told to crash."""
    crash = threading.Event()

    def on_send(data: bytes) -> None:
        ctx.stdout(data.replace(b"\n", b"\r\n"))
        if b"print(1+1)" in data:
            ctx.stdout(b"2\r\n" + PROMPT)
        elif b"crash" in data:
            crash.set()

    ctx.sock.on_send = on_send
    ctx.stdout(b"Python 3.11.6\r\n" + PROMPT)
    while not ctx.killed.is_set():
        if crash.wait(0.02):
            return 139
    return 0


async def _read_until(q: asyncio.Queue, marker: bytes, timeout: float = 5.0) -> tuple[bytes, list[dict]]:
    data = b""
    frames: list[dict] = []
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while marker not in data:
        frame = await asyncio.wait_for(q.get(), max(0.01, deadline - loop.time()))
        frames.append(frame)
        if frame["type"] == "output":
            data += frame["data"]
    return data, frames


async def _next_of_type(q: asyncio.Queue, kind: str, timeout: float = 5.0) -> dict:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        frame = await asyncio.wait_for(q.get(), max(0.01, deadline - loop.time()))
        if frame["type"] == kind:
            return frame


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def repl_service(service, fake_api):
    fake_api.program = fake_repl
    return service


@pytest.mark.asyncio
async def test_python_session_prints_result_before_next_prompt(repl_service) -> None:
    started = repl_service.start_session("python", owner="conn-1")
    assert started.success is True
    sid = started.session_id
    q = repl_service.subscribe(sid)

    _, first = await _read_until(q, b">>> ")
    assert first[0]["type"] == "ready"

    res = repl_service.send_input(sid, "print(1+1)\n")
    assert res.accepted is True

    data, frames = await _read_until(q, b"2\r\n" + PROMPT)
    assert data.index(b"2\r\n") < data.rindex(b">>> ")
    # color codes around the prompt arrive untouched
    assert PROMPT in data
    seqs = [f["seq"] for f in first + frames]
    assert seqs == sorted(seqs)

    assert repl_service.stop_session(sid) is True
    close = await _next_of_type(q, "close")
    assert close["reason"] == "stopped"
    assert close["session_id"] == sid


@pytest.mark.asyncio
async def test_crash_is_notified_and_torn_down(repl_service, fake_api) -> None:
    sid = repl_service.start_session("python").session_id
    q = repl_service.subscribe(sid)
    await _read_until(q, b">>> ")

    repl_service.send_input(sid, "crash\n")
    close = await _next_of_type(q, "close")
    assert close["reason"] == "crashed"
    assert close["exit_code"] == 139

    assert _wait_for(lambda: fake_api.live() == [])
    assert repl_service.session_info(sid) is None
    assert _wait_for(lambda: repl_service.admission.in_use == 0)


@pytest.mark.unit
def test_session_sandbox_is_tty_and_isolated(repl_service, fake_api) -> None:
    sid = repl_service.start_session("python", cols=120, rows=40).session_id
    kwargs = fake_api.last_created()
    assert kwargs["tty"] is True
    assert kwargs["stdin_open"] is True
    assert kwargs["command"] == ["python", "-i", "-q"]
    assert kwargs["host_config"]["network_mode"] == "none"
    assert kwargs["host_config"]["cap_drop"] == ["ALL"]
    assert kwargs["environment"]["TERM"] == "xterm"
    assert kwargs["name"].startswith("codejoin-session-")
    assert fake_api.resized[-1][1:] == (120, 40)

    info = repl_service.session_info(sid)
    assert info["phase"] == SessionPhase.active.value
    assert (info["cols"], info["rows"]) == (120, 40)
    repl_service.stop_session(sid)


@pytest.mark.unit
def test_keystrokes_forwarded_verbatim(repl_service, fake_api) -> None:
    sid = repl_service.start_session("python").session_id
    sock = fake_api._get(fake_api.live()[0]).sock
    for keys in (b"\x1b[A", b"\x03", b"x = '\xc3\xa9'\r"):
        assert repl_service.send_input(sid, keys).accepted is True
    assert bytes(sock.sent) == b"\x1b[A\x03x = '\xc3\xa9'\r"
    stats = repl_service.session_info(sid)["input_stats"]
    assert stats["ansi_sequences"] == 1
    assert stats["bytes"] == len(sock.sent)
    repl_service.stop_session(sid)


@pytest.mark.unit
def test_dangerous_input_blocked_in_shell_session(service, fake_api) -> None:
    fake_api.program = fake_repl
    sid = service.start_session("bash").session_id
    sock = fake_api._get(fake_api.live()[0]).sock
    res = service.send_input(sid, "rm -rf /\r")
    assert res.accepted is False
    assert res.code == "dangerous_pattern"
    assert bytes(sock.sent) == b""
    service.stop_session(sid)


@pytest.mark.unit
def test_resize_validates_geometry(repl_service, fake_api) -> None:
    sid = repl_service.start_session("python").session_id
    before = len(fake_api.resized)
    assert repl_service.resize(sid, 100, 30) is True
    assert fake_api.resized[-1][1:] == (100, 30)
    for cols, rows in ((0, 30), (-1, 5), ("80", 24), (80, None), (True, 24)):
        assert repl_service.resize(sid, cols, rows) is False
    assert len(fake_api.resized) == before + 1
    assert repl_service.resize("missing", 80, 24) is False
    repl_service.stop_session(sid)


@pytest.mark.unit
def test_stop_is_idempotent_and_removes_once(repl_service, fake_api) -> None:
    sid = repl_service.start_session("python").session_id
    assert repl_service.stop_session(sid) is True
    assert repl_service.stop_session(sid) is False
    assert len(fake_api.removed) == 1
    assert fake_api.live() == []
    assert repl_service.admission.in_use == 0
    res = repl_service.send_input(sid, "print(1)\n")
    assert res.accepted is False
    assert res.code == "session_not_found"
    with pytest.raises(SessionNotFound):
        repl_service.sessions.get_session(sid)


@pytest.mark.unit
def test_concurrent_stop_from_many_threads(repl_service, fake_api) -> None:
    sid = repl_service.start_session("python").session_id
    outcomes = []
    barrier = threading.Barrier(8)

    def stopper() -> None:
        barrier.wait()
        outcomes.append(repl_service.stop_session(sid))

    threads = [threading.Thread(target=stopper) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)
    assert outcomes.count(True) == 1
    assert len(fake_api.removed) == 1


@pytest.mark.unit
def test_idle_sweep_stops_stale_sessions(repl_service, fake_api, policy_cfg) -> None:
    stale = repl_service.start_session("python").session_id
    fresh = repl_service.start_session("python").session_id
    for sid in (stale, fresh):
        # the banner frame is published after the reader touched the session
        assert _wait_for(lambda: any(f["type"] == "output" for f in repl_service.hub.get_buffer_snapshot(sid)))
    later = time.monotonic() + policy_cfg.session_idle_timeout_sec + 1
    # keep one session busy right up to the sweep
    repl_service.sessions.get_session(fresh).last_activity = later
    stopped = repl_service.sessions.sweep_idle(now=later)
    assert stopped == [stale]
    assert repl_service.session_info(stale) is None
    assert repl_service.session_info(fresh)["phase"] == "active"
    repl_service.stop_session(fresh)


@pytest.mark.unit
def test_disconnect_stops_all_sessions_of_owner(repl_service, fake_api) -> None:
    a1 = repl_service.start_session("python", owner="conn-a").session_id
    a2 = repl_service.start_session("javascript", owner="conn-a").session_id
    b1 = repl_service.start_session("python", owner="conn-b").session_id
    assert {s["id"] for s in repl_service.list_sessions("conn-a")} == {a1, a2}
    assert repl_service.handle_disconnect("conn-a") == 2
    assert repl_service.handle_disconnect("conn-a") == 0
    assert [s["id"] for s in repl_service.list_sessions()] == [b1]
    repl_service.stop_session(b1)


@pytest.mark.unit
def test_start_failure_leaves_nothing_behind(service, fake_api) -> None:
    fake_api.create_error = ImageNotFound("No such image: python:3.11-alpine")
    res = service.start_session("python")
    assert res.success is False
    assert res.error_kind == ErrorKind.provisioning
    assert res.error_code == "image_not_found"
    assert res.retryable is True
    assert service.docker.live_sandboxes() == []
    assert service.admission.in_use == 0
    assert service.list_sessions() == []


@pytest.mark.unit
def test_start_unknown_language(service, fake_api) -> None:
    res = service.start_session("brainfuck")
    assert res.success is False
    assert res.error_kind == ErrorKind.validation
    assert fake_api.created == []


@pytest.mark.unit
def test_sessions_keep_independent_state(repl_service, fake_api) -> None:
    ids = [repl_service.start_session("python").session_id for _ in range(10)]
    assert len(set(ids)) == 10
    assert len(set(fake_api.live())) == 10
    for sid in ids[:5]:
        repl_service.send_input(sid, "x\n")
    infos = [repl_service.session_info(sid) for sid in ids]
    assert [i["input_stats"]["bytes"] for i in infos] == [2] * 5 + [0] * 5
    assert repl_service.sessions.shutdown() == 10
    assert fake_api.live() == []


@pytest.mark.unit
def test_output_read_during_teardown_is_not_published(service, fake_api) -> None:
    go = threading.Event()

    def late_writer(ctx: ProgramContext) -> int:
        go.wait(5)
        ctx.stdout(b"late output\r\n")
        ctx.killed.wait(10)
        return 0

    fake_api.program = late_writer
    sid = service.start_session("python").session_id
    handle = service.sessions._sessions[sid]
    in_feed, release = threading.Event(), threading.Event()
    feed = handle.output.feed

    def held_feed(chunk: bytes) -> bytes:
        out = feed(chunk)
        if b"late" in chunk:
            in_feed.set()
            release.wait(5)
        return out

    handle.output.feed = held_feed
    go.set()
    assert in_feed.wait(5)

    stopper = threading.Thread(target=service.stop_session, args=(sid,))
    stopper.start()
    # the close frame has gone out and the hub has forgotten the session
    assert _wait_for(lambda: service.hub.get_buffer_snapshot(sid) == [])
    release.set()
    stopper.join(5)
    handle.reader.join(5)

    assert not handle.reader.is_alive()
    assert service.hub.get_buffer_snapshot(sid) == []
    assert service.hub.stats()["sessions"] == 0
