"""Storage in a temporary file that is removed when the reader is closed."""

from __future__ import annotations

import contextlib
import io
import os
import tempfile
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from typing import BinaryIO

from .storage import StorageProvider


def _cleanup(handle: BinaryIO, path: str) -> None:
    handle.close()
    with contextlib.suppress(OSError):
        os.unlink(path)


class TempStorageReader:
    """Reads from a temporary file; closing it deletes the file."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._file = open(path, "rb", buffering=0)
        self._finalizer = weakref.finalize(self, _cleanup, self._file, path)

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes (to end of file if negative)."""
        if size is None or size < 0:
            return self._file.readall()
        return self._file.read(size) or b""

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the read position and return it."""
        return self._file.seek(offset, whence)

    def tell(self) -> int:
        """Return the read position."""
        return self._file.tell()

    def close(self) -> None:
        """Close the file and delete it."""
        self._finalizer()

    @property
    def closed(self) -> bool:
        return not self._finalizer.alive

    def __enter__(self) -> TempStorageReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass(frozen=True)
class TempStorageProvider(StorageProvider):
    """Creates storage backed by a temporary file.

    ``tempfile_factory``, if given, must create a file and return its path; it
    takes precedence over ``storage_dir`` and ``prefix``.
    """

    storage_dir: str | os.PathLike[str] | None = None
    prefix: str | None = None
    tempfile_factory: Callable[[], str | os.PathLike[str]] | None = None

    def _create_file(self) -> str:
        if self.tempfile_factory is not None:
            return os.fspath(self.tempfile_factory())
        fd, path = tempfile.mkstemp(prefix=self.prefix, dir=self.storage_dir)
        os.close(fd)
        return path

    def into_reader_writer(
        self, content_length: int | None = None
    ) -> tuple[TempStorageReader, BinaryIO]:
        try:
            path = self._create_file()
        except OSError as exc:
            raise OSError(f"error creating temp file: {exc}") from exc
        try:
            reader = TempStorageReader(path)
        except OSError as exc:
            raise OSError(f"error reopening temp file: {exc}") from exc
        try:
            writer = open(path, "r+b", buffering=0)
        except OSError as exc:
            reader.close()
            raise OSError(f"error cloning temporary file: {exc}") from exc
        return reader, writer