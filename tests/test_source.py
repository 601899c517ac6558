import asyncio
import threading
import time

import pytest

from streambuffer.bounded import BoundedStorageProvider
from streambuffer.memory import MemoryStorageProvider
from streambuffer.source import (
    Source,
    SourceSettings,
    SourceStream,
    StreamOutcome,
    StreamPhase,
)


class ChunkStream(SourceStream):
    """Yields a fixed list of chunks; exceptions in the list are raised."""

    def __init__(self, items, length=None, finish_error=None, keep_error=True):
        self.items = list(items)
        self.length = length
        self.finish_error = finish_error
        self.keep_error = keep_error
        self.finish_calls = []
        self.reconnects = []
        self.seek_calls = []

    def content_length(self):
        return self.length

    async def seek_range(self, start, end):
        self.seek_calls.append((start, end))

    async def reconnect(self, current_position):
        self.reconnects.append(current_position)

    def supports_seek(self):
        return False

    async def next_chunk(self):
        if not self.items:
            return None
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def on_finish(self, error, outcome):
        self.finish_calls.append((error, outcome))
        if self.finish_error is not None:
            return self.finish_error
        return error if self.keep_error else None


class SlowFirstStream(ChunkStream):
    def __init__(self, items):
        super().__init__(items)
        self.calls = 0

    async def next_chunk(self):
        self.calls += 1
        if self.calls == 1:
            await asyncio.sleep(10)
        return await super().next_chunk()


class SeekableStream(SourceStream):
    def __init__(self, data, chunk_size=2):
        self.data = data
        self.chunk_size = chunk_size
        self.pos = 0
        self.end = len(data)
        self.seek_calls = []

    def content_length(self):
        return len(self.data)

    async def seek_range(self, start, end):
        self.seek_calls.append((start, end))
        self.pos = start
        self.end = end if end is not None else len(self.data)

    async def reconnect(self, current_position):
        self.pos = current_position

    def supports_seek(self):
        return True

    async def next_chunk(self):
        if self.pos >= self.end:
            return None
        chunk = self.data[self.pos : min(self.pos + self.chunk_size, self.end)]
        self.pos += len(chunk)
        return chunk


class BrokenWriter:
    def write(self, data):
        raise OSError("disk gone")

    def flush(self):
        pass

    def seek(self, offset, whence=0):
        return offset

    def tell(self):
        return 0


def make_source(length, settings):
    reader, writer = MemoryStorageProvider().into_reader_writer(length)
    return reader, Source(writer, length, settings)


@pytest.mark.asyncio
async def test_full_download_round_trip():
    reader, source = make_source(6, SourceSettings(prefetch_bytes=2))
    stream = ChunkStream([b"abc", b"def"], length=6)
    await source.download(stream)
    handle = source.source_handle()
    assert reader.read() == b"abcdef"
    assert handle.get_downloaded_at_position(0) == range(0, 6)
    assert not handle.is_failed()
    assert stream.finish_calls == [(None, StreamOutcome.COMPLETED)]


@pytest.mark.asyncio
async def test_progress_phases():
    states = []
    settings = SourceSettings(
        prefetch_bytes=4, on_progress=lambda stream, state, cancel: states.append(state)
    )
    reader, source = make_source(6, settings)
    await source.download(ChunkStream([b"ab", b"cd", b"ef"], length=6))
    assert [s.phase for s in states] == [
        StreamPhase.PREFETCHING,
        StreamPhase.PREFETCHING,
        StreamPhase.DOWNLOADING,
        StreamPhase.COMPLETE,
    ]
    assert all(s.target == 4 for s in states[:2])
    assert states[2].current_chunk == range(0, 6)
    assert states[-1].current_position == 6
    assert states[-1].current_chunk == range(0, 6)
    assert all(s.elapsed >= 0 for s in states)


@pytest.mark.asyncio
async def test_stream_shorter_than_prefetch():
    reader, source = make_source(None, SourceSettings(prefetch_bytes=100))
    await source.download(ChunkStream([b"xy"]))
    assert reader.read() == b"xy"
    assert source.source_handle().get_downloaded_at_position(1) == range(0, 2)


@pytest.mark.asyncio
async def test_failed_chunk_is_skipped():
    reader, source = make_source(None, SourceSettings(prefetch_bytes=0))
    await source.download(ChunkStream([b"ab", ValueError("boom"), b"cd"]))
    assert reader.read() == b"abcd"
    assert not source.source_handle().is_failed()


@pytest.mark.asyncio
async def test_on_finish_error_marks_failed():
    reader, source = make_source(None, SourceSettings())
    error = OSError("late failure")
    await source.download(ChunkStream([b"ab"], finish_error=error))
    assert source.source_handle().is_failed()


@pytest.mark.asyncio
async def test_writer_error_reaches_on_finish():
    source = Source(BrokenWriter(), None, SourceSettings(prefetch_bytes=0))
    stream = ChunkStream([b"ab"])
    await source.download(stream)
    (error, outcome), = stream.finish_calls
    assert isinstance(error, OSError)
    assert outcome is StreamOutcome.COMPLETED
    assert source.source_handle().is_failed()


@pytest.mark.asyncio
async def test_cancellation_reports_interrupted():
    reader, source = make_source(None, SourceSettings())
    source.cancel_event.set()
    stream = ChunkStream([b"ab"])
    await source.download(stream)
    (error, outcome), = stream.finish_calls
    assert isinstance(error, InterruptedError)
    assert outcome is StreamOutcome.CANCELLED_BY_USER
    assert source.source_handle().is_failed()


@pytest.mark.asyncio
async def test_cancellation_error_can_be_swallowed():
    reader, source = make_source(None, SourceSettings())
    source.cancel_event.set()
    await source.download(ChunkStream([b"ab"], keep_error=False))
    assert not source.source_handle().is_failed()


@pytest.mark.asyncio
async def test_reconnect_after_timeout():
    reconnected = []
    settings = SourceSettings(
        prefetch_bytes=0,
        retry_timeout=0.05,
        on_reconnect=lambda stream, cancel: reconnected.append(stream),
    )
    reader, source = make_source(None, settings)
    stream = SlowFirstStream([b"ab"])
    await asyncio.wait_for(source.download(stream), 5)
    assert stream.reconnects == [0]
    assert reconnected == [stream]
    assert reader.read() == b"ab"


@pytest.mark.asyncio
async def test_seek_downloads_missing_ranges():
    data = b"0123456789"
    reader, source = make_source(len(data), SourceSettings(prefetch_bytes=0))
    handle = source.source_handle()
    handle.seek_requests.put_nowait(5)
    stream = SeekableStream(data)
    await asyncio.wait_for(source.download(stream), 5)
    assert stream.seek_calls == [(5, 10), (0, 5)]
    assert reader.read() == data
    assert handle.get_downloaded_at_position(0) == range(0, len(data))


@pytest.mark.asyncio
async def test_seek_ignored_when_unsupported():
    reader, source = make_source(None, SourceSettings(prefetch_bytes=0))
    source.source_handle().seek_requests.put_nowait(3)
    stream = ChunkStream([b"ab", b"cd"])
    await source.download(stream)
    assert stream.seek_calls == []
    assert reader.read() == b"abcd"


@pytest.mark.asyncio
async def test_requested_position_is_cleared_when_reached():
    reader, source = make_source(None, SourceSettings(prefetch_bytes=0))
    handle = source.source_handle()
    handle.requested_position.set(3)
    await source.download(ChunkStream([b"ab", b"cd"]))
    assert handle.requested_position.get() is None
    handle.wait_for_position(100)
    assert handle.get_downloaded_at_position(3) == range(0, 4)


@pytest.mark.asyncio
async def test_writer_waits_for_bounded_reader():
    chunks = [b"abcd", b"efgh", b"ijkl", b"mnop", b"qrst"]
    expected = b"".join(chunks)
    reader, writer = BoundedStorageProvider(MemoryStorageProvider(), 4).into_reader_writer(None)
    source = Source(writer, None, SourceSettings(prefetch_bytes=0))
    handle = source.source_handle()
    received = bytearray()

    def consume():
        deadline = time.monotonic() + 5
        while len(received) < len(expected) and time.monotonic() < deadline:
            chunk = reader.read(4)
            received.extend(chunk)
            handle.notify_read()
            if not chunk:
                time.sleep(0.001)

    thread = threading.Thread(target=consume)
    thread.start()
    await asyncio.wait_for(source.download(ChunkStream(chunks)), 5)
    thread.join(5)
    assert bytes(received) == expected
    assert not handle.is_failed()


@pytest.mark.parametrize(
    "kwargs",
    [{"prefetch_bytes": -1}, {"batch_write_size": 0}, {"retry_timeout": 0}],
)
def test_settings_validation(kwargs):
    with pytest.raises(ValueError):
        SourceSettings(**kwargs)