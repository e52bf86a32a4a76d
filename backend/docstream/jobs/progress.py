"""Live progress channels for jobs and uploads.

Each channel (a job id or an upload id) owns a :class:`ProgressStream` with at
most one listener. Publishing never blocks the publisher: when the listener's
buffer is full the event is dropped and counted. A terminal event closes the
stream and the hub forgets the channel.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import orjson

from docstream.core.logging import get_logger
from docstream.core.metrics import PROGRESS_DROPPED
from docstream.utils.time import iso_now

logger = get_logger(__name__)

EVENT_TYPES = ("queued", "started", "progress", "retrying", "completed", "failed")
TERMINAL_EVENTS = frozenset({"completed", "failed"})

_CLOSED = object()


@dataclass(slots=True)
class ProgressEvent:
    type: str
    message: str
    channel: str
    percent: float | None = None
    data: dict[str, Any] | None = None
    timestamp: str = field(default_factory=iso_now)

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown progress event type: {self.type}")

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "channel": self.channel,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.percent is not None:
            payload["percent"] = self.percent
        if self.data:
            payload["data"] = self.data
        return payload

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict(), default=str)

    def to_line(self) -> bytes:
        """One NDJSON line."""
        return self.to_json() + b"\n"


class Subscription:
    """Bounded buffer feeding a single listener."""

    def __init__(
        self,
        channel: str,
        buffer_size: int,
        on_cancel: Callable[["Subscription"], None] | None = None,
    ) -> None:
        self.channel = channel
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=buffer_size)
        self._closed = threading.Event()
        self._on_cancel = on_cancel

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def finished(self) -> bool:
        """Closed and every buffered event consumed."""
        return self._closed.is_set() and self._queue.empty()

    def offer(self, event: ProgressEvent, force: bool = False) -> bool:
        """Buffer ``event`` without blocking.

        With ``force`` the oldest buffered event makes room when the buffer is
        full; terminal events use this so a slow listener still sees the end.
        """
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            if not force:
                return False
        try:
            self._queue.get_nowait()
        except queue.Empty:
            pass
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            return False
        return True

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None on timeout or once the subscription is finished."""
        if self.finished:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def poll(self) -> list[ProgressEvent]:
        """Drain whatever is buffered right now."""
        events: list[ProgressEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is not _CLOSED:
                events.append(item)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            # The reader sees `finished` once it drains the buffer.
            pass

    def cancel(self) -> None:
        """Listener went away; detach without touching the producer."""
        self.close()
        if self._on_cancel is not None:
            self._on_cancel(self)

    def __iter__(self) -> Iterator[ProgressEvent]:
        while not self.finished:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event


class ProgressStream:
    """Single-listener event channel with explicit close."""

    def __init__(
        self,
        channel: str,
        buffer_size: int = 64,
        on_close: Callable[["ProgressStream"], None] | None = None,
    ) -> None:
        self.channel = channel
        self.buffer_size = buffer_size
        self.last_event: ProgressEvent | None = None
        self._on_close = on_close
        self._subscriber: Subscription | None = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_listener(self) -> bool:
        with self._lock:
            return self._subscriber is not None and not self._subscriber.closed

    def attach(self) -> Subscription:
        """Attach a listener; a previous listener is ended."""
        subscription = Subscription(self.channel, self.buffer_size, on_cancel=self._detach)
        with self._lock:
            previous, self._subscriber = self._subscriber, subscription
            closed = self._closed
        if previous is not None:
            previous.close()
        if closed:
            subscription.close()
        return subscription

    def publish(self, event: ProgressEvent) -> bool:
        """Hand ``event`` to the listener; returns False when it was dropped."""
        with self._lock:
            if self._closed:
                return False
            self.last_event = event
            subscriber = self._subscriber
            if event.terminal:
                self._closed = True
                self._subscriber = None
        delivered = False
        if subscriber is not None:
            delivered = subscriber.offer(event, force=event.terminal)
            if not delivered:
                PROGRESS_DROPPED.inc()
                logger.debug("Dropped %s event on channel %s", event.type, self.channel)
        if event.terminal:
            if subscriber is not None:
                subscriber.close()
            self._notify_closed()
        return delivered

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscriber, self._subscriber = self._subscriber, None
        if subscriber is not None:
            subscriber.close()
        self._notify_closed()

    def _detach(self, subscription: Subscription) -> None:
        with self._lock:
            if self._subscriber is subscription:
                self._subscriber = None
            idle = self._subscriber is None
        if idle and self._on_close is not None:
            self._on_close(self)

    def _notify_closed(self) -> None:
        if self._on_close is not None:
            self._on_close(self)


class ProgressHub:
    """Maps channel ids to live progress streams."""

    def __init__(self, buffer_size: int = 64) -> None:
        self.buffer_size = buffer_size
        self._streams: dict[str, ProgressStream] = {}
        self._lock = threading.Lock()

    def channel(self, channel_id: str) -> ProgressStream:
        with self._lock:
            stream = self._streams.get(channel_id)
            if stream is None:
                stream = ProgressStream(channel_id, self.buffer_size, on_close=self._forget)
                self._streams[channel_id] = stream
            return stream

    def subscribe(self, channel_id: str) -> Subscription:
        return self.channel(channel_id).attach()

    def publish(
        self,
        channel_id: str,
        event_type: str,
        message: str,
        percent: float | None = None,
        data: dict[str, Any] | None = None,
    ) -> ProgressEvent:
        event = ProgressEvent(type=event_type, message=message, channel=channel_id, percent=percent, data=data)
        with self._lock:
            stream = self._streams.get(channel_id)
        # Nobody is listening: the event is dropped.
        if stream is not None:
            stream.publish(event)
        return event

    def has_listener(self, channel_id: str) -> bool:
        with self._lock:
            stream = self._streams.get(channel_id)
        return stream is not None and stream.has_listener

    @property
    def channels(self) -> list[str]:
        with self._lock:
            return list(self._streams)

    def _forget(self, stream: ProgressStream) -> None:
        with self._lock:
            if self._streams.get(stream.channel) is stream:
                del self._streams[stream.channel]


__all__ = [
    "EVENT_TYPES",
    "TERMINAL_EVENTS",
    "ProgressEvent",
    "Subscription",
    "ProgressStream",
    "ProgressHub",
]
