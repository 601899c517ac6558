"""Shared state between a download task and the reader that consumes it."""

from __future__ import annotations

import asyncio
import bisect
import logging
import queue
import threading
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class RequestedPosition:
    """The position a reader is waiting for, or None when nothing is requested."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._position: int | None = None

    def clear(self) -> None:
        with self._lock:
            self._position = None

    def get(self) -> int | None:
        with self._lock:
            return self._position

    def set(self, position: int) -> None:
        with self._lock:
            self._position = position


class PositionReached:
    """Lets a reader block until a requested position is written or the stream ends."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._position_reached = False
        self._stream_done = False

    def notify_position_reached(self) -> None:
        with self._condition:
            self._position_reached = True
            self._condition.notify_all()

    def notify_stream_done(self) -> None:
        with self._condition:
            self._stream_done = True
            self._condition.notify_all()

    def wait_for_position_reached(self) -> None:
        """Block until notified; the position flag is consumed unless the stream is done."""
        with self._condition:
            if self._stream_done:
                return
            started = time.monotonic()
            self._condition.wait_for(lambda: self._stream_done or self._position_reached)
            logger.debug("position reached after %.3fs", time.monotonic() - started)
            if not self._stream_done:
                self._position_reached = False


class Downloaded:
    """A thread-safe set of downloaded byte ranges, merged when they touch."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ranges: list[tuple[int, int]] = []

    def add(self, start: int, end: int) -> None:
        """Mark ``[start, end)`` as downloaded; empty ranges are ignored."""
        if end <= start:
            return
        with self._lock:
            merged_start, merged_end = start, end
            kept = []
            for range_start, range_end in self._ranges:
                if range_end < start or range_start > end:
                    kept.append((range_start, range_end))
                else:
                    merged_start = min(merged_start, range_start)
                    merged_end = max(merged_end, range_end)
            bisect.insort(kept, (merged_start, merged_end))
            self._ranges = kept

    def get(self, position: int) -> range | None:
        """Return the downloaded range holding ``position``, if any."""
        with self._lock:
            index = bisect.bisect_right(self._ranges, (position, float("inf"))) - 1
            if index >= 0:
                range_start, range_end = self._ranges[index]
                if range_start <= position < range_end:
                    return range(range_start, range_end)
        return None

    def next_gap(self, start: int, end: int) -> range | None:
        """Return the first range inside ``[start, end)`` that is not downloaded."""
        if end <= start:
            return None
        with self._lock:
            cursor = start
            for range_start, range_end in self._ranges:
                if range_end <= cursor:
                    continue
                if range_start >= end:
                    break
                if range_start > cursor:
                    return range(cursor, range_start)
                cursor = range_end
                if cursor >= end:
                    return None
        return range(cursor, end) if cursor < end else None


class NotifyRead:
    """Wakes the writing task when a reader has made room in the storage.

    A notification with no task waiting is kept and consumed by the next wait.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._write_requested = False
        self._permit = False
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = []

    def request(self) -> None:
        with self._lock:
            self._write_requested = True

    def notify_read(self) -> None:
        """Notify if a write was requested, clearing the request."""
        with self._lock:
            requested = self._write_requested
            self._write_requested = False
        if requested:
            self._notify_one()

    def notify_waiting(self) -> None:
        """Notify if a write was requested, keeping the request."""
        with self._lock:
            requested = self._write_requested
        if requested:
            self._notify_one()

    def _notify_one(self) -> None:
        with self._lock:
            while self._waiters:
                loop, future = self._waiters.pop(0)
                if not future.done():
                    loop.call_soon_threadsafe(_resolve, future)
                    return
            self._permit = True

    async def wait_for_read(self) -> None:
        """Wait until a reader signals that it has read."""
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._permit:
                self._permit = False
                return
            future: asyncio.Future[None] = loop.create_future()
            entry = (loop, future)
            self._waiters.append(entry)
        try:
            await future
        finally:
            with self._lock:
                if entry in self._waiters:
                    self._waiters.remove(entry)


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


class DownloadStatus:
    """Records whether the download failed."""

    def __init__(self) -> None:
        self._failed = threading.Event()

    def set_failed(self) -> None:
        self._failed.set()

    def is_failed(self) -> bool:
        return self._failed.is_set()


@dataclass
class SourceHandle:
    """The reader's view of a running download."""

    downloaded: Downloaded = field(default_factory=Downloaded)
    download_status: DownloadStatus = field(default_factory=DownloadStatus)
    requested_position: RequestedPosition = field(default_factory=RequestedPosition)
    position_reached: PositionReached = field(default_factory=PositionReached)
    content_length: int | None = None
    seek_requests: queue.Queue[int] = field(default_factory=lambda: queue.Queue(maxsize=1))
    notify_read_signal: NotifyRead = field(default_factory=NotifyRead)

    def get_downloaded_at_position(self, position: int) -> range | None:
        return self.downloaded.get(position)

    def wait_for_position(self, requested_position: int) -> None:
        """Block until the download reaches ``requested_position`` or ends."""
        self.requested_position.set(requested_position)
        logger.debug("waiting for requested position %d", requested_position)
        self.notify_read_signal.notify_waiting()
        self.position_reached.wait_for_position_reached()

    def seek(self, seek_position: int) -> None:
        """Ask the download to jump to ``seek_position`` and block until it gets there."""
        self.requested_position.set(seek_position)
        try:
            self.seek_requests.put_nowait(seek_position)
        except queue.Full:
            logger.error("Sent multiple seek requests without waiting")
        logger.debug("waiting for requested position %d", seek_position)
        self.position_reached.wait_for_position_reached()

    def notify_read(self) -> None:
        self.notify_read_signal.notify_read()

    def is_failed(self) -> bool:
        return self.download_status.is_failed()