"""Per-user live event streams (Server-Sent Events).

Each open connection owns a StreamHandle with a bounded queue. push() fans an
event out to a snapshot of the user's handles; delivery is best effort with
no acknowledgement or redelivery. Events are ordered per handle only.
State is process-local: with several instances, a user's stream and the
callback that completes their job must reach the same process.
"""

import asyncio
import threading
import uuid
from typing import Any, AsyncIterator

import orjson

from app.core.logging import get_logger

log = get_logger(__name__)

_CLOSE = object()

KEEPALIVE_FRAME = ": keepalive\n\n"


class StreamClosedError(Exception):
    pass


class StreamHandle:
    def __init__(self, user_id: str, queue_size: int = 100) -> None:
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False

    def write(self, event: dict[str, Any]) -> None:
        """Queue an event. Raises StreamClosedError or asyncio.QueueFull."""
        if self.closed:
            raise StreamClosedError(f"stream {self.id} is closed")
        self.queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            pass  # the reader notices `closed` on its next idle tick


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {orjson.dumps(event).decode()}\n\n"


class LiveNotificationHub:
    def __init__(self, queue_size: int = 100, keepalive_seconds: float = 15.0) -> None:
        self.queue_size = queue_size
        self.keepalive_seconds = keepalive_seconds
        self._streams: dict[str, list[StreamHandle]] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str) -> StreamHandle:
        handle = StreamHandle(user_id, self.queue_size)
        handle.write({"type": "connected", "message": "Connected to the video notification stream"})
        with self._lock:
            handles = self._streams.setdefault(user_id, [])
            handles.append(handle)
            count = len(handles)
        log.info("live_stream_opened", user_id=user_id, handle_id=handle.id, connections=count)
        return handle

    def unregister(self, user_id: str, handle: StreamHandle) -> None:
        """Remove exactly this handle; drop the user once no handles remain."""
        with self._lock:
            handles = self._streams.get(user_id)
            if handles is not None:
                for i, h in enumerate(handles):
                    if h is handle:
                        del handles[i]
                        break
                if not handles:
                    del self._streams[user_id]
                remaining = len(handles)
            else:
                remaining = 0
        handle.close()
        log.info("live_stream_closed", user_id=user_id, handle_id=handle.id, connections=remaining)

    def push(self, user_id: str, event: dict[str, Any]) -> int:
        """Write event to every open stream of user_id. Returns how many accepted it; never raises."""
        with self._lock:
            handles = list(self._streams.get(user_id, ()))
        if not handles:
            log.info("live_push_no_connections", user_id=user_id, event_type=event.get("type"))
            return 0
        delivered = 0
        for handle in handles:
            try:
                handle.write(event)
                delivered += 1
            except Exception as e:
                log.warning(
                    "live_push_failed",
                    user_id=user_id,
                    handle_id=handle.id,
                    event_type=event.get("type"),
                    error=repr(e),
                )
        log.info("live_push", user_id=user_id, event_type=event.get("type"), delivered=delivered, connections=len(handles))
        return delivered

    async def stream(self, handle: StreamHandle) -> AsyncIterator[str]:
        """SSE frames for one connection. Unregisters on disconnect, cancellation or shutdown."""
        try:
            while True:
                try:
                    event = await asyncio.wait_for(handle.queue.get(), timeout=self.keepalive_seconds)
                except asyncio.TimeoutError:
                    if handle.closed:
                        return
                    yield KEEPALIVE_FRAME
                    continue
                if event is _CLOSE:
                    return
                yield format_sse(event)
        finally:
            self.unregister(handle.user_id, handle)

    def connection_count(self, user_id: str | None = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._streams.get(user_id, ()))
            return sum(len(h) for h in self._streams.values())

    def has_user(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._streams

    def close_all(self) -> None:
        with self._lock:
            handles = [h for hs in self._streams.values() for h in hs]
            self._streams.clear()
        for handle in handles:
            handle.close()
        log.info("live_streams_closed_all", closed=len(handles))
