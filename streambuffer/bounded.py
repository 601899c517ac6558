"""Fixed-size circular storage for streams that must not grow without limit.

Once the buffer is full, old data is overwritten. The writer refuses to write
more than the reader has left room for, and reading or seeking outside the
buffered window raises an error.
"""

from __future__ import annotations

import contextlib
import io
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from .storage import StorageProvider


@contextlib.contextmanager
def _context(message: str) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise OSError(f"{message}: {exc}") from exc


def _read_exact(inner: Any, size: int, message: str) -> bytes:
    parts = []
    remaining = size
    with _context(message):
        while remaining:
            chunk = inner.read(remaining)
            if not chunk:
                raise OSError("failed to fill whole buffer")
            parts.append(chunk)
            remaining -= len(chunk)
    return b"".join(parts)


def _write_all(inner: Any, data: bytes, message: str) -> None:
    view = memoryview(data)
    with _context(message):
        while view:
            count = inner.write(view)
            if not count:
                raise OSError("failed to write whole buffer")
            view = view[count:]


def _resolve_seek(offset: int, whence: int, current: int) -> int:
    if whence == io.SEEK_SET:
        new_position = offset
    elif whence == io.SEEK_CUR:
        new_position = current + offset
    elif whence == io.SEEK_END:
        raise io.UnsupportedOperation("seek from end not supported")
    else:
        raise ValueError(f"invalid whence value: {whence}")
    if new_position < 0:
        raise ValueError(f"negative seek position {new_position}")
    return new_position


@dataclass
class _SharedInfo:
    size: int
    read: int = 0
    written: int = 0
    read_position: int = 0
    write_position: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def mapped_read_position(self, value: int) -> int:
        return (value + self.read_position % self.size) % self.size

    def mapped_write_position(self, value: int) -> int:
        return (value + self.write_position % self.size) % self.size


class BoundedStorageReader:
    """Reads from a fixed-size circular buffer."""

    def __init__(self, inner: Any, shared: _SharedInfo) -> None:
        self._inner = inner
        self._shared = shared

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes (up to the buffer size if negative)."""
        info = self._shared
        with info.lock:
            if size is None or size < 0:
                size = info.size
            if size > info.size:
                raise ValueError(
                    f"read size {size} is greater than buffer size {info.size}"
                )
            available = max(info.write_position - info.read_position, 0)
            if available > info.size:
                raise ValueError(
                    f"read position {info.read_position} is too far behind write "
                    f"position {info.write_position}, size {info.size}"
                )
            if info.read >= info.written:
                return b""

            limit = min(info.size, info.write_position)
            count = min(available, size)
            if count == 0:
                return b""

            start = info.mapped_read_position(0)
            end = info.mapped_read_position(count - 1) + 1
            with _context("error seeking to mapped start"):
                self._inner.seek(start, io.SEEK_SET)
            if start < end:
                data = _read_exact(self._inner, count, "error reading mapped positions")
            else:
                # the requested range wraps around the end of the buffer
                first_len = limit - start
                first = _read_exact(
                    self._inner, first_len, "error reading first mapped segment"
                )
                with _context("error seeking second mapped segment"):
                    self._inner.seek(0, io.SEEK_SET)
                second = _read_exact(
                    self._inner, count - first_len, "error reading second mapped segment"
                )
                data = first + second

            info.read_position += count
            info.read += count
            return data

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the absolute read position; seeking from the end is unsupported."""
        info = self._shared
        with info.lock:
            new_position = _resolve_seek(offset, whence, info.read_position)
            # moving backwards must also rewind the read counter
            info.read -= max(info.read_position - new_position, 0)
            info.read_position = new_position
            return new_position


class BoundedStorageWriter:
    """Writes to a fixed-size circular buffer."""

    def __init__(self, inner: Any, shared: _SharedInfo) -> None:
        self._inner = inner
        self._shared = shared

    def write(self, data: bytes) -> int:
        """Write as much of ``data`` as fits without overrunning the reader."""
        info = self._shared
        with info.lock:
            space_taken = max(info.write_position - info.read_position, 0)
            count = min(max(info.size - space_taken, 0), len(data))
            if count == 0:
                return 0
            chunk = bytes(data[:count])

            start = info.mapped_write_position(0)
            end = info.mapped_write_position(count - 1) + 1
            with _context("error seeking to mapped write start"):
                self._inner.seek(start, io.SEEK_SET)
            if start < end:
                _write_all(self._inner, chunk, "error writing mapped segment")
            else:
                first_len = info.size - start
                _write_all(
                    self._inner, chunk[:first_len], "error writing first mapped segment"
                )
                with _context("error seeking for second mapped segment"):
                    self._inner.seek(0, io.SEEK_SET)
                _write_all(
                    self._inner, chunk[first_len:], "error writing second mapped segment"
                )

            info.write_position += count
            info.written += count
            with _context("error flushing during write"):
                self._inner.flush()
            return count

    def flush(self) -> None:
        """Flush the underlying storage."""
        with self._shared.lock, _context("error flushing"):
            self._inner.flush()

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the absolute write position; seeking from the end is unsupported."""
        info = self._shared
        with info.lock:
            new_position = _resolve_seek(offset, whence, info.write_position)
            info.written -= max(info.write_position - new_position, 0)
            info.write_position = new_position
            return new_position

    def tell(self) -> int:
        """Return the absolute write position."""
        with self._shared.lock:
            return self._shared.write_position


class BoundedStorageProvider(StorageProvider):
    """Wraps another provider in a circular buffer of at most ``buffer_size`` bytes.

    With a known content length, the smaller of it and ``buffer_size`` is used.
    """

    def __init__(self, inner: StorageProvider, buffer_size: int) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be a positive integer")
        self.inner = inner
        self.buffer_size = buffer_size

    def max_capacity(self) -> int:
        return self.buffer_size

    def into_reader_writer(
        self, content_length: int | None = None
    ) -> tuple[BoundedStorageReader, BoundedStorageWriter]:
        if content_length is None:
            size = self.buffer_size
        else:
            size = min(content_length, self.buffer_size)
        if size < 0:
            raise ValueError(f"Requested buffer size of {size} is invalid")
        reader, writer = self.inner.into_reader_writer(size)
        shared = _SharedInfo(size=size)
        return BoundedStorageReader(reader, shared), BoundedStorageWriter(writer, shared)

    def __repr__(self) -> str:
        return f"BoundedStorageProvider(inner={self.inner!r}, buffer_size={self.buffer_size})"