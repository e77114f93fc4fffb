"""Unit tests for explicit fixed layouts."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from binview import BinaryViewWriter, Layout

POINT = Layout("Point", [("x", "i32"), ("y", "i32")])
RECT = Layout("RectangleF", [("x", "f32"), ("y", "f32"), ("width", "f32"), ("height", "f32")])
SEGMENT = Layout("Segment", [("start", POINT), ("end", POINT), ("visible", "bool")])


def test_layout_size_is_sum_of_fields() -> None:
    """Layouts carry no padding."""
    assert POINT.size == 8
    assert RECT.size == 16
    assert SEGMENT.size == 17


def test_point_wire_layout() -> None:
    """Fields should be written in declaration order."""
    writer = BinaryViewWriter()
    writer.write_struct(POINT, POINT(10, 42))

    assert writer.to_bytes() == b"\x0a\x00\x00\x00\x2a\x00\x00\x00"


@pytest.mark.parametrize(
    "layout,value",
    [
        (POINT, POINT(10, 42)),
        (RECT, RECT(10.0, 42.0, 25.5, 23.0)),
        (SEGMENT, SEGMENT(POINT(1, 2), POINT(-3, -4), True)),
    ],
)
def test_struct_roundtrip(views, layout, value) -> None:
    """Structs should decode to equal namedtuples."""
    writer, reader = views
    writer.write_struct(layout, value)
    reader.position = 0

    result = reader.read_struct(layout)

    assert result == value
    assert type(result).__name__ == layout.name


def test_struct_accepts_mapping_and_attributes(views) -> None:
    """Values may be mappings or objects with matching attributes."""
    writer, reader = views
    writer.write_struct(POINT, {"x": 1, "y": 2})
    writer.write(POINT, SimpleNamespace(x=3, y=4))
    reader.position = 0

    assert reader.read(POINT) == (1, 2)
    assert reader.read_struct(POINT).y == 4


def test_struct_value_count_must_match(views) -> None:
    """Sequences must supply one value per field."""
    writer, _ = views

    with pytest.raises(ValueError):
        writer.write_struct(POINT, (1, 2, 3))


def test_layout_rejects_unknown_kinds() -> None:
    """Layout fields must be known kinds."""
    with pytest.raises(ValueError):
        Layout("Bad", [("x", "int128")])
    with pytest.raises(ValueError):
        Layout("Empty", [])
