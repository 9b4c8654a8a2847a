"""
Binary-safe, ANSI-aware stream transcoding.

Terminal streams arrive in arbitrary chunks: a UTF-8 code point, an escape
sequence or a CRLF pair may be split across two reads. The transcoder keeps
the incomplete suffix of each chunk as a pending tail, prepends it to the next
chunk and emits only complete units. Nothing is ever dropped: malformed bytes
are passed through verbatim and counted as decode errors.

Classification per unit:

- printable ASCII runs
- UTF-8 code points (validated strictly; overlongs/surrogates are invalid)
- single-byte control codes (all C0 and DEL)
- escape sequences: CSI, OSC, DCS/SOS/PM/APC, SS2/SS3, nF and two-byte
  Fp/Fe/Fs. A lone ESC (followed by a byte that cannot start a sequence) is a
  control character.

Usage:

    tc = StreamTranscoder(normalize_newlines=True)
    for chunk in reads:
        out = tc.feed(chunk)
    out += tc.flush()
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Optional, Tuple
import re

from loguru import logger

from .exceptions import TranscodeAnomaly
from .models import StreamStats
from codejoin_Exec_API.app.core.Metrics.metrics_manager import increment_counter


DEFAULT_MAX_PENDING = 8192
# Longest CSI/nF sequence accepted before it is treated as malformed
MAX_CONTROL_SEQUENCE = 64

ESC = 0x1B
BEL = 0x07
CR = 0x0D
LF = 0x0A
TAB = 0x09
DEL = 0x7F
ST_FINAL = 0x5C  # ESC \

CTRL_INTERRUPT = 0x03
CTRL_EOF = 0x04
CTRL_SUSPEND = 0x1A
CTRL_BACKSPACE = 0x08

_STRING_INTRODUCERS = frozenset(b"]PX^_")  # OSC, DCS, SOS, PM, APC
_SINGLE_SHIFTS = frozenset(b"NO")

_PRINTABLE_RUN = re.compile(rb"[\x20-\x7e]+")

# scan results
_COMPLETE = 0
_INCOMPLETE = 1
_MALFORMED = 2
_LONE = 3


def _scan_escape(buf: bytes, i: int, n: int) -> Tuple[int, int]:
    """Scan the escape sequence starting at buf[i] (an ESC byte).

    Returns (status, end) where end is exclusive. For _MALFORMED the bytes
    buf[i:end] are passed through and scanning resumes at end.
    """
    if i + 1 >= n:
        return _INCOMPLETE, n
    intro = buf[i + 1]

    if intro == 0x5B:  # CSI
        j = i + 2
        while j < n:
            c = buf[j]
            if 0x40 <= c <= 0x7E:
                return _COMPLETE, j + 1
            if 0x20 <= c <= 0x3F:
                j += 1
                if j - i > MAX_CONTROL_SEQUENCE:
                    return _MALFORMED, j
                continue
            return _MALFORMED, j
        return _INCOMPLETE, n

    if intro in _STRING_INTRODUCERS:
        j = i + 2
        while j < n:
            c = buf[j]
            if c == BEL and intro == 0x5D:
                return _COMPLETE, j + 1
            if c == ESC:
                if j + 1 >= n:
                    return _INCOMPLETE, n
                if buf[j + 1] == ST_FINAL:
                    return _COMPLETE, j + 2
                return _MALFORMED, j
            j += 1
        return _INCOMPLETE, n

    if intro in _SINGLE_SHIFTS:
        if i + 2 >= n:
            return _INCOMPLETE, n
        if 0x20 <= buf[i + 2] <= 0x7E:
            return _COMPLETE, i + 3
        return _MALFORMED, i + 2

    if 0x20 <= intro <= 0x2F:  # nF: intermediates then a final byte
        j = i + 2
        while j < n and 0x20 <= buf[j] <= 0x2F:
            j += 1
            if j - i > MAX_CONTROL_SEQUENCE:
                return _MALFORMED, j
        if j >= n:
            return _INCOMPLETE, n
        if 0x30 <= buf[j] <= 0x7E:
            return _COMPLETE, j + 1
        return _MALFORMED, j

    if 0x30 <= intro <= 0x7E:  # Fp, Fe, Fs
        return _COMPLETE, i + 2

    return _LONE, i + 1


def _utf8_length(lead: int) -> int:
    if 0xC2 <= lead <= 0xDF:
        return 2
    if 0xE0 <= lead <= 0xEF:
        return 3
    if 0xF0 <= lead <= 0xF4:
        return 4
    return 0


def _continuation_ok(lead: int, pos: int, c: int) -> bool:
    """Strict UTF-8 continuation check (rejects overlongs, surrogates, > U+10FFFF)."""
    if pos == 1:
        if lead == 0xE0:
            return 0xA0 <= c <= 0xBF
        if lead == 0xED:
            return 0x80 <= c <= 0x9F
        if lead == 0xF0:
            return 0x90 <= c <= 0xBF
        if lead == 0xF4:
            return 0x80 <= c <= 0x8F
    return 0x80 <= c <= 0xBF


class _Scanner:
    """One pass over tail + chunk. Counts only units that are emitted."""

    def __init__(
        self,
        stats: StreamStats,
        *,
        normalize_newlines: bool,
        strip: bool = False,
        label: str = "stream",
        anomalies: Optional[Deque[TranscodeAnomaly]] = None,
    ) -> None:
        self.stats = stats
        self.normalize = normalize_newlines
        self.strip = strip
        self.label = label
        self.anomalies = anomalies

    def _anomaly(self, kind: str, offset: int, sample: bytes) -> None:
        self.stats.decode_errors += 1
        anomaly = TranscodeAnomaly(kind, offset, sample)
        if self.anomalies is not None:
            self.anomalies.append(anomaly)
        logger.debug(f"Transcode anomaly ({self.label}): {anomaly}")
        try:
            increment_counter("sandbox_transcode_anomalies_total", labels={"kind": kind})
        except Exception:
            pass

    def _control(self, out: bytearray, b: int) -> None:
        self.stats.control_chars += 1
        if not self.strip:
            out.append(b)
        elif b in (LF, TAB):
            out.append(b)
        elif b == CR:
            out.append(LF)

    def run(self, buf: bytes, final: bool) -> Tuple[bytes, bytes]:
        out = bytearray()
        n = len(buf)
        i = 0
        while i < n:
            b = buf[i]
            if 0x20 <= b <= 0x7E:
                m = _PRINTABLE_RUN.match(buf, i)
                end = m.end() if m else i + 1
                out += buf[i:end]
                i = end
                continue

            if b == ESC:
                status, end = _scan_escape(buf, i, n)
                if status == _INCOMPLETE:
                    if not final:
                        break
                    if i + 1 >= n:
                        status, end = _LONE, i + 1
                    else:
                        status, end = _MALFORMED, n
                if status == _COMPLETE:
                    self.stats.ansi_sequences += 1
                    if not self.strip:
                        out += buf[i:end]
                elif status == _LONE:
                    self._control(out, b)
                else:
                    self._anomaly("malformed_escape", i, bytes(buf[i:end]))
                    if not self.strip:
                        out += buf[i:end]
                i = end
                continue

            if b < 0x80:
                if b == CR and self.normalize:
                    if i + 1 < n:
                        if buf[i + 1] == LF:
                            self._control(out, LF)
                            i += 2
                            continue
                    elif not final:
                        # held so a CRLF split across chunks is still seen
                        break
                self._control(out, b)
                i += 1
                continue

            need = _utf8_length(b)
            if need == 0:
                self._anomaly("invalid_utf8", i, bytes(buf[i:i + 1]))
                if not self.strip:
                    out.append(b)
                i += 1
                continue
            k = 1
            valid = True
            while k < need:
                if i + k >= n:
                    break
                if not _continuation_ok(b, k, buf[i + k]):
                    valid = False
                    break
                k += 1
            if valid and k < need:
                if not final:
                    break
                self._anomaly("truncated_utf8", i, bytes(buf[i:n]))
                if not self.strip:
                    out += buf[i:n]
                i = n
                continue
            if not valid:
                self._anomaly("invalid_utf8", i, bytes(buf[i:i + 1]))
                if not self.strip:
                    out.append(b)
                i += 1
                continue
            out += buf[i:i + need]
            i += need
        return bytes(out), bytes(buf[i:])


def transcode(
    chunk: bytes,
    previous_tail: bytes = b"",
    *,
    normalize_newlines: bool = False,
    stats: Optional[StreamStats] = None,
    max_pending: int = DEFAULT_MAX_PENDING,
    final: bool = False,
    label: str = "stream",
) -> Tuple[bytes, bytes, StreamStats]:
    """Process one chunk. Returns (emitted, new_tail, stats).

    `stats` is updated in place when given. With `final=True` nothing is held
    back: an incomplete trailing unit is emitted verbatim as an anomaly.
    """
    st = stats if stats is not None else StreamStats()
    chunk = bytes(chunk or b"")
    if chunk:
        st.chunks += 1
        st.bytes += len(chunk)
    scanner = _Scanner(st, normalize_newlines=normalize_newlines, label=label)
    emitted, tail = scanner.run(bytes(previous_tail or b"") + chunk, final)
    if len(tail) > max(0, int(max_pending)):
        scanner._anomaly("pending_overflow", 0, tail)
        emitted += tail
        tail = b""
    st.pending = len(tail)
    return emitted, tail, st


class StreamTranscoder:
    """Stateful wrapper around `transcode` for one direction of one stream."""

    def __init__(
        self,
        *,
        normalize_newlines: bool = False,
        max_pending: int = DEFAULT_MAX_PENDING,
        label: str = "stream",
    ) -> None:
        self.normalize_newlines = normalize_newlines
        self.max_pending = max_pending
        self.label = label
        self._tail = b""
        self._stats = StreamStats()
        self.anomalies: Deque[TranscodeAnomaly] = deque(maxlen=32)

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def pending(self) -> bytes:
        return self._tail

    def _run(self, chunk: bytes, final: bool) -> bytes:
        st = self._stats
        chunk = bytes(chunk or b"")
        if chunk:
            st.chunks += 1
            st.bytes += len(chunk)
        scanner = _Scanner(
            st,
            normalize_newlines=self.normalize_newlines,
            label=self.label,
            anomalies=self.anomalies,
        )
        emitted, tail = scanner.run(self._tail + chunk, final)
        if len(tail) > self.max_pending:
            scanner._anomaly("pending_overflow", 0, tail)
            emitted += tail
            tail = b""
        self._tail = tail
        st.pending = len(tail)
        return emitted

    def feed(self, chunk: bytes) -> bytes:
        return self._run(chunk, final=False)

    def flush(self) -> bytes:
        """Emit whatever is still pending (end of stream)."""
        if not self._tail:
            return b""
        return self._run(b"", final=True)

    def reset_stats(self) -> StreamStats:
        """Return the current counters and start a fresh set; the tail is kept."""
        old = self._stats.copy()
        self._stats = StreamStats(pending=len(self._tail))
        return old


def strip_controls(data: bytes) -> bytes:
    """Remove escape sequences and control bytes, keeping LF and TAB.

    CR becomes LF. Used to build the text that content checks scan; the
    original bytes are what gets forwarded.
    """
    scanner = _Scanner(StreamStats(), normalize_newlines=True, strip=True, label="strip")
    out, _ = scanner.run(bytes(data or b""), final=True)
    return out


def truncate_utf8(data: bytes, limit: int) -> bytes:
    """Cut `data` to at most `limit` bytes on a complete UTF-8 character boundary."""
    if limit <= 0:
        return b""
    if len(data) <= limit:
        return data
    cut = limit
    back = 0
    # data[cut] is the first excluded byte; step back over a split character
    while cut > 0 and back < 3 and (data[cut] & 0xC0) == 0x80:
        cut -= 1
        back += 1
    return data[:cut]


def is_valid_utf8(data: bytes) -> bool:
    try:
        bytes(data).decode("utf-8")
        return True
    except UnicodeDecodeError:
        return False
