"""Storage that picks between a fixed-size and a growable provider by content length.

- Streams without a known length use the fixed provider inside a bounded circular buffer.
- Finite streams no larger than the buffer size use the fixed provider directly.
- Larger finite streams use the variable provider.
"""

from __future__ import annotations

import copy
import enum
import io
from typing import Any

from .bounded import BoundedStorageProvider
from .storage import StorageProvider


class StorageKind(enum.Enum):
    """Which storage strategy an adaptive reader or writer is using."""

    BOUNDED = "bounded"
    FIXED = "fixed"
    VARIABLE = "variable"


class AdaptiveStorageReader:
    """Reader over whichever storage the adaptive provider chose."""

    def __init__(self, inner: Any, kind: StorageKind) -> None:
        self.inner = inner
        self.kind = kind

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes from the chosen storage."""
        return self.inner.read(size)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the read position and return it."""
        return self.inner.seek(offset, whence)

    def __repr__(self) -> str:
        return f"AdaptiveStorageReader(kind={self.kind.name})"


class AdaptiveStorageWriter:
    """Writer over whichever storage the adaptive provider chose."""

    def __init__(self, inner: Any, kind: StorageKind) -> None:
        self.inner = inner
        self.kind = kind

    def write(self, data: bytes) -> int:
        """Write ``data`` and return how many bytes were accepted."""
        return self.inner.write(data)

    def flush(self) -> None:
        """Flush the chosen storage."""
        self.inner.flush()

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the write position and return it."""
        return self.inner.seek(offset, whence)

    def tell(self) -> int:
        """Return the write position."""
        return self.inner.tell()

    def __repr__(self) -> str:
        return f"AdaptiveStorageWriter(kind={self.kind.name})"


class AdaptiveStorageProvider(StorageProvider):
    """Chooses fixed, bounded or variable storage based on the content length."""

    def __init__(
        self,
        fixed_storage: StorageProvider,
        variable_storage: StorageProvider,
        buffer_size: int,
    ) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be a positive integer")
        self.fixed_storage = fixed_storage
        self.variable_storage = variable_storage
        self.buffer_size = buffer_size

    def into_reader_writer(
        self, content_length: int | None = None
    ) -> tuple[AdaptiveStorageReader, AdaptiveStorageWriter]:
        if content_length is None:
            provider = BoundedStorageProvider(self.fixed_storage, self.buffer_size)
            reader, writer = provider.into_reader_writer(None)
            kind = StorageKind.BOUNDED
        elif content_length <= self.buffer_size:
            reader, writer = self.fixed_storage.into_reader_writer(content_length)
            kind = StorageKind.FIXED
        else:
            reader, writer = self.variable_storage.into_reader_writer(content_length)
            kind = StorageKind.VARIABLE
        return AdaptiveStorageReader(reader, kind), AdaptiveStorageWriter(writer, kind)

    def __repr__(self) -> str:
        return (
            f"AdaptiveStorageProvider(fixed_storage={self.fixed_storage!r}, "
            f"variable_storage={self.variable_storage!r}, buffer_size={self.buffer_size})"
        )


def adaptive_storage(provider: StorageProvider, buffer_size: int) -> AdaptiveStorageProvider:
    """Build an adaptive provider that uses copies of one provider for both roles."""
    return AdaptiveStorageProvider(copy.copy(provider), provider, buffer_size)