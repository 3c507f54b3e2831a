"""
ARSM - Log Broadcaster
========================
Fan-out hub that relays game-server output, installer progress and tailed
log-file lines to any number of passive WebSocket subscribers.

Model:
    - A ring buffer keeps the most recent lines (500 by default) so a
      browser that connects mid-session sees useful context
    - Each subscriber owns a bounded queue; publish() never waits on a
      subscriber. When a subscriber's queue is full the new line is dropped
      for that subscriber only and counted in ``Subscription.dropped``
    - publish() is safe to call from any thread (drain threads, the log
      tailer) as well as from the event loop

Message format (server -> client):
    {
        "type": "log",
        "data": {"text": "...", "stream": "stdout"},
        "timestamp": "2026-02-08T12:00:00+00:00"
    }

Usage:
    broadcaster = LogBroadcaster()
    broadcaster.publish("Game server is starting...", stream="system")

    # In the WebSocket endpoint:
    @app.websocket("/ws/logs")
    async def ws_logs(websocket: WebSocket):
        await websocket.accept()
        await broadcaster.serve(websocket)
"""

import json
import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 500
DEFAULT_QUEUE_SIZE = 1000


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class LogLine:
    """One line of output, stamped on arrival."""

    text: str
    stream: str = "stdout"
    timestamp: str = field(default_factory=_now)

    def to_message(self) -> dict:
        return {
            "type": "log",
            "data": {"text": self.text, "stream": self.stream},
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_message(), ensure_ascii=False)


class Subscription:
    """
    A registered listener.

    Attributes:
        replay:  Buffered lines captured at subscription time, oldest first.
        dropped: Lines discarded because the queue was full.
    """

    def __init__(self, replay: list[LogLine], loop: asyncio.AbstractEventLoop, capacity: int):
        self.replay = replay
        self.dropped = 0
        self._loop = loop
        self._queue: asyncio.Queue[LogLine] = asyncio.Queue(maxsize=capacity)

    def offer(self, line: LogLine) -> None:
        """Hand a line to this subscriber without blocking the caller."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._put(line)
        else:
            # Raises RuntimeError if the subscriber's loop has been closed
            self._loop.call_soon_threadsafe(self._put, line)

    def _put(self, line: LogLine) -> None:
        try:
            self._queue.put_nowait(line)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> LogLine:
        """Wait for the next live line."""
        return await self._queue.get()

    def get_nowait(self) -> LogLine | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class LogBroadcaster:
    """
    Ring buffer plus subscriber set, guarded by one lock of its own.

    Attributes:
        buffer_size: Number of recent lines kept for replay.
        queue_size:  Capacity of each subscriber's queue.
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.buffer_size = buffer_size
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._buffer: deque[LogLine] = deque(maxlen=buffer_size)
        self._subscribers: set[Subscription] = set()

    def subscribe(self) -> Subscription:
        """
        Register a new listener. Must be called from the event loop that
        will consume it.

        The replay snapshot and the registration happen under the same lock,
        so every line is seen exactly once: either in ``replay`` or live.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            subscription = Subscription(list(self._buffer), loop, self.queue_size)
            self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    def publish(self, text: str, stream: str = "stdout") -> LogLine:
        """
        Append a line to the buffer and offer it to every subscriber.

        Args:
            text:   The line, without trailing newline.
            stream: Origin tag ("stdout", "stderr", "system", "file", ...).

        Returns:
            The stamped LogLine.
        """
        line = LogLine(text=text, stream=stream)
        with self._lock:
            self._buffer.append(line)
            dead = []
            for subscription in self._subscribers:
                try:
                    subscription.offer(line)
                except RuntimeError:
                    dead.append(subscription)
            for subscription in dead:
                self._subscribers.discard(subscription)
        return line

    def recent(self, limit: int | None = None) -> list[LogLine]:
        """Snapshot of buffered lines, oldest first."""
        with self._lock:
            lines = list(self._buffer)
        if limit is not None:
            lines = lines[-limit:] if limit > 0 else []
        return lines

    @property
    def client_count(self) -> int:
        """Return the number of currently registered subscribers."""
        with self._lock:
            return len(self._subscribers)

    # -- WebSocket glue --------------------------------------------------------

    async def serve(self, websocket: WebSocket) -> None:
        """
        Stream lines to an accepted WebSocket until the client goes away.

        Sends the replay first, then live lines. Anything the client sends is
        read and discarded; reading only serves to notice the disconnect.
        """
        subscription = self.subscribe()
        receiver = asyncio.create_task(_wait_for_disconnect(websocket))
        getter = None
        try:
            for line in subscription.replay:
                await websocket.send_text(line.to_json())

            while True:
                getter = asyncio.create_task(subscription.get())
                done, _ = await asyncio.wait(
                    {getter, receiver}, return_when=asyncio.FIRST_COMPLETED,
                )
                if getter not in done:
                    break
                await websocket.send_text(getter.result().to_json())
        except (WebSocketDisconnect, RuntimeError, OSError):
            # Client vanished while we were sending
            pass
        finally:
            if getter is not None:
                getter.cancel()
            receiver.cancel()
            self.unsubscribe(subscription)
            if subscription.dropped:
                logger.info("[Logs] Subscriber dropped %d lines (slow client)", subscription.dropped)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Consume client frames of any kind until the disconnect message."""
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
    except (WebSocketDisconnect, RuntimeError):
        return
