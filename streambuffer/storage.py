"""Base interface for the storage layer that backs a stream buffer."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class StorageProvider(ABC):
    """Creates a reader and a writer over one shared storage area.

    The reader and the writer keep track of their positions independently.
    Readers offer ``read(size)`` and ``seek(offset, whence)``; writers offer
    ``write(data)``, ``flush()``, ``seek(offset, whence)`` and ``tell()``.
    """

    @abstractmethod
    def into_reader_writer(self, content_length: int | None) -> tuple[Any, Any]:
        """Return a ``(reader, writer)`` pair sized for ``content_length``."""

    def max_capacity(self) -> int | None:
        """Return the most bytes the storage can hold at once, or None if unbounded."""
        return None