from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, Optional

from loguru import logger

from codejoin_Exec_API.app.core.Metrics.metrics_manager import increment_counter


BUFFER_FRAMES = 100


class SessionStreamHub:
    """In-memory pub/sub for interactive session output with bounded queues.

    Producers are session reader threads; consumers are asyncio tasks. Frames
    are stamped with a per-session sequence number under the hub lock and
    handed to each subscriber's loop with `call_soon_threadsafe`, so every
    subscriber sees the same frames in the same order. A full subscriber queue
    drops its oldest frame.
    """

    def __init__(self, max_queue: int = 1000) -> None:
        # Map session_id -> list of (loop, subscriber queue) pairs
        self._queues: dict[str, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = {}
        self._buffers: dict[str, list[dict]] = {}
        self._closed: set[str] = set()
        self._seq: dict[str, int] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.RLock()
        self._max_queue = max(1, int(max_queue))

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    def _subscriber_loop(self) -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            if self._loop is None:
                raise RuntimeError("subscribe() needs a running event loop or set_loop()")
            return self._loop

    def subscribe(self, session_id: str) -> asyncio.Queue:
        """Register a new subscriber queue; each call gets a distinct queue."""
        with self._lock:
            loop = self._subscriber_loop()
            q: asyncio.Queue = asyncio.Queue(self._max_queue)
            self._queues.setdefault(session_id, []).append((loop, q))
            return q

    def subscribe_with_buffer(self, session_id: str) -> asyncio.Queue:
        """Subscribe and pre-fill the queue with the buffered frames.

        The subscriber is registered after the buffered frames are enqueued,
        under the same lock, so history always precedes live frames.
        """
        with self._lock:
            loop = self._subscriber_loop()
            q: asyncio.Queue = asyncio.Queue(self._max_queue)
            for frame in (self._buffers.get(session_id) or [])[-BUFFER_FRAMES:]:
                self._queue_put_nowait(q, dict(frame))
            self._queues.setdefault(session_id, []).append((loop, q))
            return q

    def unsubscribe(self, session_id: str, q: asyncio.Queue) -> None:
        with self._lock:
            subs = self._queues.get(session_id)
            if not subs:
                return
            self._queues[session_id] = [(lp, sq) for (lp, sq) in subs if sq is not q]

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._queues.get(session_id) or [])

    def _next_seq(self, session_id: str) -> int:
        cur = self._seq.get(session_id, 0) + 1
        self._seq[session_id] = cur
        return cur

    def _publish(self, session_id: str, frame: dict) -> None:
        with self._lock:
            frame["seq"] = self._next_seq(session_id)
            buf = self._buffers.setdefault(session_id, [])
            buf.append(frame)
            if len(buf) > BUFFER_FRAMES:
                del buf[:-BUFFER_FRAMES]
            subs = list(self._queues.get(session_id) or [])
            dead = []
            # scheduled while holding the lock so per-loop FIFO matches seq order
            for (lp, q) in subs:
                try:
                    lp.call_soon_threadsafe(self._queue_put_nowait, q, dict(frame))
                except RuntimeError as e:
                    logger.debug(f"Dropping subscriber for session {session_id}: {e}")
                    dead.append(q)
            if dead:
                self._queues[session_id] = [(lp, q) for (lp, q) in subs if q not in dead]

    @staticmethod
    def _queue_put_nowait(q: asyncio.Queue, item: dict) -> None:
        try:
            q.put_nowait(item)
        except asyncio.QueueFull:
            # Drop oldest by draining one, then put
            try:
                _ = q.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                increment_counter(
                    "sandbox_stream_queue_drops_total",
                    labels={"reason": "drop_oldest"},
                )
            except Exception:
                pass
            try:
                q.put_nowait(item)
            except asyncio.QueueFull:
                pass

    def publish_output(self, session_id: str, data: bytes) -> None:
        if not data:
            return
        self._publish(session_id, {"type": "output", "session_id": session_id, "data": bytes(data)})

    def publish_ready(self, session_id: str, language: Optional[str] = None) -> None:
        self._publish(session_id, {"type": "ready", "session_id": session_id, "language": language})

    def publish_close(self, session_id: str, reason: str, exit_code: Optional[int] = None) -> bool:
        """Publish the close frame once per session. Returns False for duplicates."""
        with self._lock:
            if session_id in self._closed:
                return False
            self._closed.add(session_id)
            self._publish(
                session_id,
                {"type": "close", "session_id": session_id, "reason": reason, "exit_code": exit_code},
            )
            return True

    def get_buffer_snapshot(self, session_id: str) -> list[dict]:
        """Copies of the buffered frames (at most the last 100) with their seq."""
        with self._lock:
            return [dict(f) for f in (self._buffers.get(session_id) or [])[-BUFFER_FRAMES:]]

    def close(self, session_id: str, reason: str, exit_code: Optional[int] = None) -> None:
        self.publish_close(session_id, reason, exit_code)
        self.cleanup_session(session_id)

    def cleanup_session(self, session_id: str) -> None:
        """Remove all references for a session. Subscribers keep their queues."""
        with self._lock:
            self._queues.pop(session_id, None)
            self._buffers.pop(session_id, None)
            self._closed.discard(session_id)
            self._seq.pop(session_id, None)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "sessions": len(self._buffers),
                "subscribers": sum(len(v) for v in self._queues.values()),
            }
