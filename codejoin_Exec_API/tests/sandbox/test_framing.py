from __future__ import annotations

import struct

import pytest

from codejoin_Exec_API.app.core.Sandbox.framing import (
    STREAM_STDERR,
    STREAM_STDOUT,
    FrameDemultiplexer,
    demultiplex,
    encode_frame,
)


def _frames(*parts: tuple[int, bytes]) -> bytes:
    return b"".join(encode_frame(stream, payload) for stream, payload in parts)


@pytest.mark.unit
def test_header_layout_is_channel_reserved_and_big_endian_length() -> None:
    frame = encode_frame(STREAM_STDERR, b"abc")
    assert frame[:8] == bytes([2, 0, 0, 0]) + struct.pack(">I", 3)
    assert frame[8:] == b"abc"


@pytest.mark.unit
def test_stdout_only() -> None:
    data = _frames((STREAM_STDOUT, b"hello "), (STREAM_STDOUT, b"world\n"))
    assert demultiplex(data) == (b"hello world\n", b"")


@pytest.mark.unit
def test_stderr_only() -> None:
    data = _frames((STREAM_STDERR, b"Traceback\n"), (STREAM_STDERR, "ошибка\n".encode("utf-8")))
    assert demultiplex(data) == (b"", "Traceback\nошибка\n".encode("utf-8"))


@pytest.mark.unit
def test_alternating_interleaving_reconstructs_both_channels() -> None:
    out_parts = [b"o1", b"o2\x00\xff", b"o3\n"]
    err_parts = [b"e1", b"", b"e3\n"]
    parts = []
    for o, e in zip(out_parts, err_parts):
        parts.append((STREAM_STDOUT, o))
        parts.append((STREAM_STDERR, e))
    stdout, stderr = demultiplex(_frames(*parts))
    assert stdout == b"".join(out_parts)
    assert stderr == b"".join(err_parts)


@pytest.mark.unit
def test_incremental_feed_one_byte_at_a_time() -> None:
    data = _frames((STREAM_STDOUT, b"abc"), (STREAM_STDERR, b"def"), (STREAM_STDOUT, b"g"))
    demux = FrameDemultiplexer()
    got = []
    for i in range(len(data)):
        got.extend(demux.feed(data[i:i + 1]))
    got.extend(demux.close())
    assert got == [(STREAM_STDOUT, b"abc"), (STREAM_STDERR, b"def"), (STREAM_STDOUT, b"g")]
    assert demux.frames == 3
    assert demux.partial_frames == 0
    assert demux.buffered == 0


@pytest.mark.unit
def test_trailing_partial_frame_keeps_available_payload() -> None:
    data = _frames((STREAM_STDOUT, b"done\n")) + encode_frame(STREAM_STDERR, b"cut off here")[:12]
    demux = FrameDemultiplexer()
    frames = demux.feed(data)
    assert frames == [(STREAM_STDOUT, b"done\n")]
    assert demux.close() == [(STREAM_STDERR, b"cut ")]
    assert demux.partial_frames == 1


@pytest.mark.unit
def test_partial_header_at_end_is_discarded() -> None:
    demux = FrameDemultiplexer()
    assert demux.feed(b"\x01\x00\x00") == []
    assert demux.close() == []
    assert demux.partial_frames == 1


@pytest.mark.unit
def test_unknown_stream_id_routed_to_stdout() -> None:
    demux = FrameDemultiplexer()
    frames = demux.feed(encode_frame(7, b"odd"))
    assert frames == [(STREAM_STDOUT, b"odd")]
    assert demux.unknown_streams == 1
