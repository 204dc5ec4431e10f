"""Progress events and notification sinks.

``publish`` is fire-and-forget: the buffered sink hands events to a daemon
thread through a bounded queue and drops them when the queue is full, so a
slow consumer never stalls a scan.
"""

from __future__ import annotations

import enum
import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .logging_config import get_logger

logger = get_logger(__name__)


class EventKind(str, enum.Enum):
    SCAN_STARTED = "scan_started"
    SERIES_PROCESSED = "series_processed"
    SCAN_COMPLETED = "scan_completed"
    FILE_ERROR = "file_error"


Payload = Dict[str, Any]


class NotificationSink(Protocol):
    def publish(self, kind: EventKind, payload: Payload) -> None:
        ...


class NullNotificationSink:
    def publish(self, kind: EventKind, payload: Payload) -> None:
        pass


class LoggingNotificationSink:
    """Writes events to the log; used by the CLI."""

    def publish(self, kind: EventKind, payload: Payload) -> None:
        if kind is EventKind.FILE_ERROR:
            logger.warning(f"[{kind.value}] {payload.get('path')}: {payload.get('reason')}")
        elif kind is EventKind.SERIES_PROCESSED:
            logger.debug(f"[{kind.value}] {payload}")
        else:
            logger.info(f"[{kind.value}] {payload}")


class RecordingNotificationSink:
    """Keeps every event in memory (tests and the CLI summary)."""

    def __init__(self) -> None:
        self.events: List[Tuple[EventKind, Payload]] = []
        self._lock = threading.Lock()

    def publish(self, kind: EventKind, payload: Payload) -> None:
        with self._lock:
            self.events.append((kind, dict(payload)))

    def of_kind(self, kind: EventKind) -> List[Payload]:
        with self._lock:
            return [payload for k, payload in self.events if k is kind]


_STOP = object()


class BufferedNotificationSink:
    """Forwards events to ``target`` on a background thread.

    Call ``close()`` (or use as a context manager) to flush and stop the thread.
    """

    def __init__(self, target: NotificationSink, maxsize: int = 1000):
        self.target = target
        self.dropped = 0
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(target=self._run, daemon=True, name="ShelfscanEvents")
        self._closed = False
        self._thread.start()

    def publish(self, kind: EventKind, payload: Payload) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait((kind, payload))
        except queue.Full:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Notification queue full, {self.dropped} event(s) dropped")

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            kind, payload = item
            try:
                self.target.publish(kind, payload)
            except Exception as exc:
                logger.error(f"Notification sink failed for {kind.value}: {exc}")

    def close(self, timeout: Optional[float] = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout)

    def __enter__(self) -> "BufferedNotificationSink":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class CallbackNotificationSink:
    """Adapts a plain callable to the sink protocol."""

    def __init__(self, callback: Callable[[EventKind, Payload], None]):
        self.callback = callback

    def publish(self, kind: EventKind, payload: Payload) -> None:
        self.callback(kind, payload)
