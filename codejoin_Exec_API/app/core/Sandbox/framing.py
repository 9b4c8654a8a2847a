"""Docker attach-stream demultiplexing.

When a container runs without a TTY, Docker multiplexes stdout and stderr on
one connection. Each frame is an 8-byte header followed by the payload:

    [stream id: 1 byte][reserved: 3 bytes][payload length: 4 bytes, big-endian]

Stream ids: 0 stdin, 1 stdout, 2 stderr.
"""

from __future__ import annotations

from typing import List, Tuple
import struct

from loguru import logger


HEADER_SIZE = 8
STREAM_STDIN = 0
STREAM_STDOUT = 1
STREAM_STDERR = 2

_HEADER = struct.Struct(">BxxxL")


def encode_frame(stream: int, payload: bytes) -> bytes:
    """Build one multiplexed frame (used by fakes and tests)."""
    return _HEADER.pack(stream, len(payload)) + payload


class FrameDemultiplexer:
    """Incremental frame parser.

    `feed()` accepts arbitrary slices of the combined stream and returns the
    complete (stream, payload) frames; partial headers and payloads are
    carried over to the next call.
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self.frames = 0
        self.partial_frames = 0
        self.unknown_streams = 0

    def feed(self, data: bytes) -> List[Tuple[int, bytes]]:
        if data:
            self._buf += data
        out: List[Tuple[int, bytes]] = []
        while len(self._buf) >= HEADER_SIZE:
            stream, length = _HEADER.unpack_from(self._buf, 0)
            if len(self._buf) < HEADER_SIZE + length:
                break
            payload = bytes(self._buf[HEADER_SIZE:HEADER_SIZE + length])
            del self._buf[:HEADER_SIZE + length]
            self.frames += 1
            if stream not in (STREAM_STDIN, STREAM_STDOUT, STREAM_STDERR):
                self.unknown_streams += 1
                logger.debug(f"Frame with unknown stream id {stream} ({length} bytes) routed to stdout")
                stream = STREAM_STDOUT
            out.append((stream, payload))
        return out

    def close(self) -> List[Tuple[int, bytes]]:
        """End of stream: return the available payload of a trailing partial frame."""
        if not self._buf:
            return []
        buf = bytes(self._buf)
        self._buf = bytearray()
        self.partial_frames += 1
        if len(buf) < HEADER_SIZE:
            logger.debug(f"Discarding {len(buf)} byte partial frame header at end of stream")
            return []
        stream, length = _HEADER.unpack_from(buf, 0)
        payload = buf[HEADER_SIZE:]
        logger.debug(f"Partial frame at end of stream: {len(payload)}/{length} bytes")
        if stream not in (STREAM_STDIN, STREAM_STDOUT, STREAM_STDERR):
            self.unknown_streams += 1
            stream = STREAM_STDOUT
        return [(stream, payload)] if payload else []

    @property
    def buffered(self) -> int:
        return len(self._buf)


def demultiplex(data: bytes) -> Tuple[bytes, bytes]:
    """Split a complete combined stream into (stdout, stderr)."""
    demux = FrameDemultiplexer()
    stdout = bytearray()
    stderr = bytearray()
    for stream, payload in demux.feed(data) + demux.close():
        if stream == STREAM_STDERR:
            stderr += payload
        elif stream == STREAM_STDOUT:
            stdout += payload
    return bytes(stdout), bytes(stderr)
