"""Unit tests for view ownership, closing and object serialization."""

from __future__ import annotations

import io
import json
import logging

import pytest

from binview import BinaryViewError, BinaryViewReader, BinaryViewWriter, IOFailure


def test_close_is_idempotent() -> None:
    """Closing twice is a no-op."""
    writer = BinaryViewWriter()
    reader = BinaryViewReader(b"")

    writer.close()
    writer.close()
    reader.close()
    reader.close()

    assert writer.closed and reader.closed


def test_exception_mid_section_releases_file(tmp_path) -> None:
    """A failing with-block closes the file and the section buffer."""
    path = tmp_path / "broken.bin"

    with pytest.raises(RuntimeError):
        with BinaryViewWriter(path) as writer:
            writer.write_int32(1)
            writer.begin_section()
            buffer = writer.sections.stream
            raise RuntimeError("boom")

    assert writer.closed
    assert buffer.closed
    assert writer.sections.base.stream.closed
    writer.close()


def test_borrowed_streams_stay_open() -> None:
    """Views never close streams they did not open."""
    stream = io.BytesIO()
    with BinaryViewWriter(stream) as writer:
        writer.write_int16(-2)
    with BinaryViewReader(stream) as reader:
        reader.position = 0
        assert reader.read_int16() == -2

    assert not stream.closed
    assert stream.getvalue() == b"\xfe\xff"


def test_to_bytes_survives_close() -> None:
    """An owned in-memory writer keeps its bytes after closing."""
    writer = BinaryViewWriter()
    writer.write_uint32(1)
    writer.close()

    assert writer.to_bytes() == b"\x01\x00\x00\x00"


def test_to_bytes_needs_in_memory_target(tmp_path) -> None:
    """File targets have no in-memory snapshot."""
    writer = BinaryViewWriter(tmp_path / "out.bin")
    writer.write_byte(1)
    writer.close()

    with pytest.raises(BinaryViewError):
        writer.to_bytes()
    assert (tmp_path / "out.bin").read_bytes() == b"\x01"


def test_operations_after_close_raise() -> None:
    """Closed views reject reads and writes."""
    writer = BinaryViewWriter()
    reader = BinaryViewReader(b"\x01\x00\x00\x00")
    writer.close()
    reader.close()

    with pytest.raises(ValueError):
        writer.write_int32(1)
    with pytest.raises(ValueError):
        reader.read_int32()
    with pytest.raises(ValueError):
        reader.begin_section()


def test_missing_file_raises_io_failure(tmp_path) -> None:
    """Unopenable paths raise IOFailure, which is an OSError."""
    with pytest.raises(IOFailure) as info:
        BinaryViewReader(tmp_path / "missing.bin")

    assert isinstance(info.value, OSError)


def test_close_with_open_sections_warns(caplog) -> None:
    """Sections left open at close are discarded with a warning."""
    writer = BinaryViewWriter()
    writer.write_byte(3)
    writer.begin_section()
    writer.write_string("never framed")

    with caplog.at_level(logging.WARNING, logger="binview"):
        writer.close()

    assert "open_sections_discarded" in caplog.text
    assert writer.to_bytes() == b"\x03"


def test_pickle_serializer_roundtrip(views) -> None:
    """serialize() embeds opaque objects between framed values."""
    writer, reader = views
    value = {"name": "crate", "sizes": [1, 2, 3]}
    writer.serialize(value)
    writer.write_int32(5)
    reader.position = 0

    assert reader.deserialize() == value
    assert reader.read_int32() == 5


class LineSerializer:
    """JSON lines serializer that records how it was used."""

    def __init__(self) -> None:
        self.calls = []

    def dump(self, value, stream) -> None:
        self.calls.append("dump")
        stream.write(json.dumps(value).encode() + b"\n")

    def load(self, stream):
        self.calls.append("load")
        return json.loads(stream.readline())


def test_injected_serializer_is_used() -> None:
    """Custom serializers replace pickle for serialize()/deserialize()."""
    serializer = LineSerializer()
    stream = io.BytesIO()
    writer = BinaryViewWriter(stream, serializer=serializer)
    with writer.section():
        writer.serialize([1, "two"])

    reader = BinaryViewReader(stream.getvalue(), serializer=serializer)
    with reader.section():
        assert reader.deserialize() == [1, "two"]

    assert serializer.calls == ["dump", "load"]
