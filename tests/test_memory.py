import io

import pytest

from streambuffer.memory import MemoryStorageProvider


def _pair(content_length=None):
    return MemoryStorageProvider().into_reader_writer(content_length)


def test_write_then_read_round_trip():
    reader, writer = _pair()
    payload = b"hello world"
    assert writer.write(payload) == len(payload)
    assert reader.read(len(payload)) == payload


def test_reader_sees_nothing_before_writes():
    reader, _writer = _pair(16)
    assert reader.read(8) == b""


def test_positions_are_independent():
    reader, writer = _pair()
    writer.write(b"abcde")
    assert writer.tell() == 5
    assert reader.tell() == 0
    reader.read(2)
    assert reader.tell() == 2
    assert writer.tell() == 5


def test_read_all_available_with_negative_size():
    reader, writer = _pair()
    writer.write(b"chunk-one")
    assert reader.read() == b"chunk-one"


def test_seek_from_end_uses_initial_length():
    reader, _writer = _pair(10)
    assert reader.seek(0, io.SEEK_END) == 10
    assert reader.seek(-3, io.SEEK_END) == 7


def test_seek_current_is_relative():
    reader, writer = _pair()
    writer.write(b"0123456789")
    reader.seek(2)
    assert reader.seek(3, io.SEEK_CUR) == 5
    assert reader.read(2) == b"56"


def test_overwrite_in_place():
    reader, writer = _pair()
    writer.write(b"aaaa")
    writer.seek(1)
    writer.write(b"bb")
    assert reader.read(4) == b"abba"


def test_negative_content_length_rejected():
    with pytest.raises(ValueError):
        MemoryStorageProvider().into_reader_writer(-1)


def test_negative_seek_rejected():
    reader, _writer = _pair()
    with pytest.raises(ValueError):
        reader.seek(-1)


def test_invalid_whence_rejected():
    reader, _writer = _pair()
    with pytest.raises(ValueError):
        reader.seek(0, 7)