"""Storage in a growable in-memory buffer shared between a reader and a writer."""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field

from .storage import StorageProvider


@dataclass
class _SharedBuffer:
    data: bytearray
    written: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)


class MemoryStorage:
    """A thread-safe view of a shared in-memory buffer with its own position."""

    def __init__(self, shared: _SharedBuffer) -> None:
        self._shared = shared
        self._position = 0

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes (all available if negative)."""
        shared = self._shared
        with shared.lock:
            available = min(max(len(shared.data) - self._position, 0), shared.written)
            count = available if size is None or size < 0 else min(available, size)
            chunk = bytes(shared.data[self._position : self._position + count])
        self._position += count
        return chunk

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the position and return it."""
        if whence == io.SEEK_SET:
            new_position = offset
        elif whence == io.SEEK_CUR:
            new_position = self._position + offset
        elif whence == io.SEEK_END:
            with self._shared.lock:
                new_position = len(self._shared.data) + offset
        else:
            raise ValueError(f"invalid whence value: {whence}")
        if new_position < 0:
            raise ValueError(f"negative seek position {new_position}")
        self._position = new_position
        return new_position

    def write(self, data: bytes) -> int:
        """Write all of ``data`` at the current position, growing the buffer as needed."""
        data = bytes(data)
        end = self._position + len(data)
        shared = self._shared
        with shared.lock:
            if end > len(shared.data):
                shared.data.extend(bytes(end - len(shared.data)))
            shared.data[self._position : end] = data
            shared.written += len(data)
        self._position = end
        return len(data)

    def flush(self) -> None:
        """Wait until any write in progress on the shared buffer has finished."""
        lock = self._shared.lock
        lock.acquire()
        lock.release()

    def tell(self) -> int:
        """Return the current position."""
        return self._position


class MemoryStorageProvider(StorageProvider):
    """Creates memory storage pre-sized to the content length, if known."""

    def into_reader_writer(
        self, content_length: int | None = None
    ) -> tuple[MemoryStorage, MemoryStorage]:
        initial_size = content_length or 0
        if initial_size < 0:
            raise ValueError(f"Requested buffer size of {initial_size} is invalid")
        shared = _SharedBuffer(bytearray(initial_size))
        return MemoryStorage(shared), MemoryStorage(shared)

    def __repr__(self) -> str:
        return "MemoryStorageProvider()"