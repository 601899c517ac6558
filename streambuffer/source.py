"""The download task that moves data from a source stream into storage."""

from __future__ import annotations

import asyncio
import copy
import enum
import io
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .handle import SourceHandle

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.01


class StreamOutcome(enum.Enum):
    """How a stream finished."""

    COMPLETED = "completed"
    CANCELLED_BY_USER = "cancelled_by_user"


class StreamPhase(enum.Enum):
    """The stage a download has reached."""

    PREFETCHING = "prefetching"
    DOWNLOADING = "downloading"
    COMPLETE = "complete"


@dataclass(frozen=True)
class StreamState:
    """A progress report passed to the ``on_progress`` callback.

    ``elapsed`` is in seconds since the download began. ``target`` is the
    prefetch size and is only set while prefetching.
    """

    current_position: int
    current_chunk: range
    elapsed: float
    phase: StreamPhase
    chunk_size: int = 0
    target: int | None = None


ProgressCallback = Callable[[Any, StreamState, Any], None]
ReconnectCallback = Callable[[Any, Any], None]


@dataclass
class SourceSettings:
    """Tuning for a download.

    ``retry_timeout`` is in seconds; callbacks receive the stream, and the
    progress callback also receives the current :class:`StreamState`. Both get
    the cancellation event last.
    """

    prefetch_bytes: int = 256 * 1024
    batch_write_size: int = 4096
    retry_timeout: float = 5.0
    on_progress: ProgressCallback | None = None
    on_reconnect: ReconnectCallback | None = None

    def __post_init__(self) -> None:
        if self.prefetch_bytes < 0:
            raise ValueError("prefetch_bytes must not be negative")
        if self.batch_write_size <= 0:
            raise ValueError("batch_write_size must be a positive integer")
        if self.retry_timeout <= 0:
            raise ValueError("retry_timeout must be positive")


class SourceStream(ABC):
    """A remote resource that can be streamed in chunks."""

    @abstractmethod
    def content_length(self) -> int | None:
        """Return the size in bytes, or None if it is unknown or infinite."""

    @abstractmethod
    async def seek_range(self, start: int, end: int | None) -> None:
        """Jump to ``start``; ``end`` is exclusive, or None for the rest of the stream."""

    @abstractmethod
    async def reconnect(self, current_position: int) -> None:
        """Reconnect after a failure, resuming at ``current_position``."""

    @abstractmethod
    def supports_seek(self) -> bool:
        """Return whether :meth:`seek_range` may be called."""

    @abstractmethod
    async def next_chunk(self) -> bytes | None:
        """Return the next chunk, or None at the end of the stream.

        Raising an exception reports a failed chunk; the download goes on.
        """

    async def on_finish(
        self, error: BaseException | None, outcome: StreamOutcome
    ) -> BaseException | None:
        """Called once the download ends; return the error to report, if any.

        By default the error is passed on unchanged.
        """
        logger.debug(
            "stream finished with outcome %s%s",
            outcome.value,
            "" if error is None else f" and error {error!r}",
        )
        return error


class _Action(enum.Enum):
    CONTINUE = enum.auto()
    COMPLETE = enum.auto()


class Source:
    """Downloads a :class:`SourceStream` into a storage writer.

    The writer must offer ``write``, ``flush``, ``seek`` and ``tell``.
    Readers use :meth:`source_handle` to follow and steer the download.
    """

    def __init__(
        self,
        writer: Any,
        content_length: int | None,
        settings: SourceSettings | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        settings = settings if settings is not None else SourceSettings()
        self.writer = writer
        self.content_length = content_length
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._handle = SourceHandle(content_length=content_length)
        self._prefetch_bytes = settings.prefetch_bytes
        self._batch_write_size = settings.batch_write_size
        self._retry_timeout = settings.retry_timeout
        self._on_progress = settings.on_progress
        self._on_reconnect = settings.on_reconnect
        self._prefetch_complete = settings.prefetch_bytes == 0
        self._prefetch_start_position = 0
        self._remaining: bytes | None = None

    def source_handle(self) -> SourceHandle:
        """Return a handle sharing this download's state."""
        return copy.copy(self._handle)

    async def download(self, stream: SourceStream) -> None:
        """Run the download to completion, failure or cancellation."""
        error: BaseException | None
        try:
            outcome = await self._download_inner(stream)
        except Exception as exc:
            error, outcome = exc, StreamOutcome.COMPLETED
        else:
            error = (
                InterruptedError("stream cancelled by user")
                if outcome is StreamOutcome.CANCELLED_BY_USER
                else None
            )
        try:
            error = await stream.on_finish(error, outcome)
        except Exception as exc:
            error = exc
        if error is not None:
            if outcome is StreamOutcome.COMPLETED:
                logger.error("download failed: %r", error)
            self._handle.download_status.set_failed()
        self._signal_download_complete()

    async def _download_inner(self, stream: SourceStream) -> StreamOutcome:
        logger.debug("starting file download")
        download_start = time.monotonic()
        loop = asyncio.get_running_loop()
        pending: asyncio.Future[bytes | None] | None = None
        deadline = 0.0
        try:
            while True:
                if self.cancel_event.is_set():
                    logger.debug("received cancellation request, stopping download task")
                    return StreamOutcome.CANCELLED_BY_USER
                position = self._poll_seek()
                if position is not None:
                    if pending is not None:
                        pending.cancel()
                        pending = None
                    await self._handle_seek(stream, position)
                    continue
                if pending is None:
                    pending = asyncio.ensure_future(stream.next_chunk())
                    deadline = loop.time() + self._retry_timeout
                wait_time = max(0.0, min(_POLL_INTERVAL, deadline - loop.time()))
                await asyncio.wait({pending}, timeout=wait_time)
                if pending.done():
                    task, pending = pending, None
                    if task.cancelled():
                        continue
                    try:
                        chunk = task.result()
                    except Exception as exc:
                        logger.error("Error fetching chunk from stream: %r", exc)
                        continue
                    action = await self._handle_bytes(stream, chunk, download_start)
                    if action is _Action.COMPLETE:
                        logger.debug(
                            "stream finished downloading in %.3fs",
                            time.monotonic() - download_start,
                        )
                        break
                elif loop.time() >= deadline:
                    pending.cancel()
                    pending = None
                    await self._handle_reconnect(stream)
        finally:
            if pending is not None:
                pending.cancel()
        self._report_download_complete(stream, download_start)
        return StreamOutcome.COMPLETED

    def _poll_seek(self) -> int | None:
        try:
            return self._handle.seek_requests.get_nowait()
        except queue.Empty:
            return None

    async def _handle_seek(self, stream: SourceStream, position: int) -> None:
        if not self._should_seek(stream, position):
            return
        logger.debug("seek position not yet downloaded")
        current = self.writer.tell()
        if self._prefetch_complete:
            logger.debug("re-starting prefetch")
            self._prefetch_start_position = position
            self._prefetch_complete = False
        else:
            logger.debug("seeking during prefetch, ending prefetch early")
            self._handle.downloaded.add(self._prefetch_start_position, current)
            self._prefetch_complete = True
        if self.content_length is not None:
            # start from the lower of the two so the whole missing range is found
            min_start = min(current, position)
            gap = self._handle.downloaded.next_gap(min_start, self.content_length)
            if gap is not None:
                seek_start = max(gap.start, position)
                logger.debug("requesting seek range %d..%d", seek_start, gap.stop)
                await self._seek(stream, seek_start, gap.stop)
        else:
            await self._seek(stream, position, None)

    async def _handle_reconnect(self, stream: SourceStream) -> None:
        logger.warning("timed out reading next chunk, retrying")
        position = self.writer.tell()
        try:
            await asyncio.wait_for(stream.reconnect(position), self._retry_timeout)
        except asyncio.TimeoutError:
            logger.warning("timed out attempting to reconnect")
            return
        except Exception as exc:
            logger.warning("error attempting to reconnect: %r", exc)
        if self._on_reconnect is not None:
            self._on_reconnect(stream, self.cancel_event)

    async def _handle_prefetch(
        self,
        stream: SourceStream,
        data: bytes | None,
        start_position: int,
        download_start: float,
    ) -> _Action:
        if data is None:
            self._prefetch_complete = True
            logger.debug("file shorter than prefetch length, download finished")
            self.writer.flush()
            self._handle.downloaded.add(start_position, self.writer.tell())
            return await self._finish_or_find_next_gap(stream)

        written = await self._write_batched(data)
        self.writer.flush()
        stream_position = self.writer.tell()
        partial_write = written < len(data)
        # end prefetch early if the storage could not take everything
        if partial_write:
            logger.debug("failed to write all during prefetch (%d of %d)", written, len(data))
            self._remaining = data[written:]
        if stream_position >= start_position + self._prefetch_bytes or partial_write:
            self._handle.downloaded.add(start_position, stream_position)
            logger.debug("prefetch complete")
            self._prefetch_complete = True

        self._report_progress(
            stream,
            StreamState(
                current_position=stream_position,
                current_chunk=range(0, stream_position),
                elapsed=time.monotonic() - download_start,
                phase=StreamPhase.PREFETCHING,
                chunk_size=written,
                target=self._prefetch_bytes,
            ),
        )
        return _Action.CONTINUE

    async def _finish_or_find_next_gap(self, stream: SourceStream) -> _Action:
        if stream.supports_seek() and self.content_length is not None:
            gap = self._handle.downloaded.next_gap(0, self.content_length)
            if gap is not None:
                logger.debug("downloading missing stream chunk %r", gap)
                await self._seek(stream, gap.start, gap.stop)
                return _Action.CONTINUE
        self.writer.flush()
        self._signal_download_complete()
        return _Action.COMPLETE

    async def _write_batched(self, data: bytes) -> int:
        written = 0
        while True:
            size = min(self._batch_write_size, len(data) - written)
            count = self.writer.write(data[written : written + size]) or 0
            if count == 0:
                return written
            written += count
            # give other tasks a turn between writes
            await asyncio.sleep(0)

    async def _handle_bytes(
        self, stream: SourceStream, data: bytes | None, download_start: float
    ) -> _Action:
        if not self._prefetch_complete:
            return await self._handle_prefetch(
                stream, data, self._prefetch_start_position, download_start
            )

        remaining, self._remaining = self._remaining, None
        if remaining is not None:
            data = remaining + data if data is not None else remaining
        elif data is None:
            return await self._finish_or_find_next_gap(stream)

        new_position = await self._write(data)
        downloaded_chunk = self._handle.downloaded.get(new_position - 1)
        self._report_progress(
            stream,
            StreamState(
                current_position=self.writer.tell(),
                current_chunk=downloaded_chunk if downloaded_chunk is not None else range(0),
                elapsed=time.monotonic() - download_start,
                phase=StreamPhase.DOWNLOADING,
                chunk_size=len(data),
            ),
        )
        return _Action.CONTINUE

    async def _write(self, data: bytes) -> int:
        handle = self._handle
        written = 0
        position = self.writer.tell()
        new_position = position
        # the reader may be behind, so this can take several rounds
        while written < len(data):
            handle.notify_read_signal.request()
            new_written = await self._write_batched(data[written:])
            if new_written > 0:
                self.writer.flush()
                written += new_written
            new_position = self.writer.tell()
            if new_position > position:
                handle.downloaded.add(position, new_position)

            requested = handle.requested_position.get()
            if requested is not None and new_position >= requested:
                logger.debug("notifying position reached")
                handle.requested_position.clear()
                handle.position_reached.notify_position_reached()

            if new_written == 0:
                logger.debug("waiting for next read")
                await handle.notify_read_signal.wait_for_read()
                logger.debug("read finished")
        return new_position

    def _should_seek(self, stream: SourceStream, position: int) -> bool:
        if not stream.supports_seek():
            logger.warning(
                "Attempting to seek, but it's unsupported. Waiting for stream to catch up."
            )
            return False
        downloaded = self._handle.downloaded.get(position)
        if downloaded is None:
            return True
        return self.writer.tell() not in downloaded

    async def _seek(self, stream: SourceStream, start: int, end: int | None) -> None:
        await stream.seek_range(start, end)
        self.writer.seek(start, io.SEEK_SET)

    def _signal_download_complete(self) -> None:
        self._handle.position_reached.notify_stream_done()

    def _report_progress(self, stream: SourceStream, state: StreamState) -> None:
        if self._on_progress is not None:
            self._on_progress(stream, state, self.cancel_event)

    def _report_download_complete(self, stream: SourceStream, download_start: float) -> None:
        position = self.writer.tell()
        chunk = self._handle.downloaded.get(max(position, 1) - 1)
        self._report_progress(
            stream,
            StreamState(
                current_position=position,
                current_chunk=chunk if chunk is not None else range(0),
                elapsed=time.monotonic() - download_start,
                phase=StreamPhase.COMPLETE,
            ),
        )