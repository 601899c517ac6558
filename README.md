# streambuffer

`streambuffer` is the buffering layer for reading and seeking through a remote
media stream while it is still downloading. A download task (`Source`) writes
incoming chunks into a storage layer. The reading side uses a `SourceHandle` to
see what has arrived, to wait for a position, and to ask for a seek.

It has no dependencies outside the standard library.

## Installation

```
pip install streambuffer
```

## Storage providers

Every provider subclasses `streambuffer.storage.StorageProvider` and implements
`into_reader_writer(content_length)`. That call returns a `(reader, writer)`
pair over one shared storage area, and each keeps its own position. Readers
offer `read(size)` and `seek(offset, whence)`. Writers offer `write(data)`,
`flush()`, `seek(offset, whence)` and `tell()`. `max_capacity()` returns the
most bytes a provider can hold at once, or `None` when there is no limit.

- `streambuffer.memory.MemoryStorageProvider` keeps the data in a thread-safe
  in-memory buffer (`MemoryStorage`). The buffer starts at the content length
  and grows when a write goes past its end.
- `streambuffer.temp.TempStorageProvider(storage_dir=None, prefix=None,
  tempfile_factory=None)` keeps the data in a temporary file. The factory, if
  you give one, must create a file and return its path, and it takes precedence
  over the directory and the prefix. Closing the `TempStorageReader`, or using
  it as a context manager, deletes the file.
- `streambuffer.bounded.BoundedStorageProvider(inner, buffer_size)` wraps
  another provider in a fixed-size circular buffer. When the content length is
  known, the smaller of it and `buffer_size` is used. The writer accepts only as
  many bytes as the reader has made room for. A read larger than the buffer, a
  read that has fallen too far behind the writer, or a seek from the end raises
  an error. Make the buffer large enough for the prefetch data and for any
  seeking you expect to do.
- `streambuffer.adaptive.AdaptiveStorageProvider(fixed_storage,
  variable_storage, buffer_size)` picks a strategy from the content length:
  - an unknown length uses the fixed provider inside a bounded buffer;
  - a length up to `buffer_size` uses the fixed provider directly;
  - a larger length uses the variable provider.

  The reader's and writer's `kind` attribute is a `StorageKind`: `BOUNDED`,
  `FIXED` or `VARIABLE`. `adaptive_storage(provider, buffer_size)` builds one
  that uses copies of a single provider for both roles.

```python
from streambuffer.adaptive import AdaptiveStorageProvider
from streambuffer.memory import MemoryStorageProvider
from streambuffer.temp import TempStorageProvider

provider = AdaptiveStorageProvider(
    MemoryStorageProvider(),
    TempStorageProvider(),
    8 * 1024 * 1024,
)
reader, writer = provider.into_reader_writer(None)
writer.write(b"hello")
print(reader.read(5))  # b'hello'
```

## Downloading

To plug in a transport, subclass `streambuffer.source.SourceStream` and
implement these methods:

- `async next_chunk()` returns bytes, or `None` at the end of the stream.
  Raising an exception is logged and the download goes on.
- `content_length()`
- `supports_seek()`
- `async seek_range(start, end)`
- `async reconnect(current_position)`

`on_finish(error, outcome)` can be overridden to change the error that is
reported at the end.

Build a `Source(writer, content_length, settings, cancel_event)` and await
`Source.download(stream)`. Here `settings` is a `SourceSettings` and
`cancel_event` is a `threading.Event`. These are the `SourceSettings` fields
and their defaults:

- `prefetch_bytes`: 256 KiB
- `batch_write_size`: 4096
- `retry_timeout`: 5 seconds
- `on_progress(stream, state, cancel_event)`: optional callback
- `on_reconnect(stream, cancel_event)`: optional callback

If no chunk arrives within `retry_timeout`, the stream is asked to reconnect.
Setting the cancel event stops the download with the outcome
`StreamOutcome.CANCELLED_BY_USER`.

Progress is reported as `StreamState` values. Each one holds:

- `current_position`
- `current_chunk`
- `elapsed`
- `phase`, a `StreamPhase`: `PREFETCHING`, `DOWNLOADING` or `COMPLETE`
- `chunk_size`
- `target`

`Source.source_handle()` returns a `streambuffer.handle.SourceHandle` for the
reading side. It has these methods:

- `get_downloaded_at_position(position)` returns the downloaded `range` that
  holds a position, or `None`.
- `wait_for_position(position)` blocks until that position is written or the
  stream ends.
- `seek(position)` asks the download to jump there and blocks until it arrives.
- `notify_read()` tells a writer that is waiting for room that the reader has
  consumed data.
- `is_failed()` reports whether the download failed.

## What this package does not do

It ships no transports: there is no HTTP client, no subprocess source and no
async-reader source. You supply one by subclassing `SourceStream`.

There is also no single high-level reader that combines a storage reader with a
`SourceHandle`. To get a file-like object that blocks until data arrives, call
the handle's wait and seek methods around the storage reader's reads yourself.

## Running the tests

```
pip install -e ".[test]"
pytest
```