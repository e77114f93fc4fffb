"""Unit tests for the bounded SubStream window."""

from __future__ import annotations

import io

import pytest

from binview import RangeError, SubStream, TruncatedStreamError


@pytest.fixture
def parent() -> io.BytesIO:
    return io.BytesIO(b"0123456789")


def test_reads_stay_inside_window(parent) -> None:
    """Reads should be clamped to the window and return empty at its end."""
    window = SubStream(parent, 2, 5)

    assert window.read(3) == b"234"
    assert window.read(10) == b"56"
    assert window.read(1) == b""
    assert window.tell() == 5


def test_read_all_reads_only_window(parent) -> None:
    """read() with no size should stop at the window bound."""
    window = SubStream(parent, 4, 3)

    assert window.read() == b"456"


def test_parent_is_left_after_window_bytes(parent) -> None:
    """Reading the whole window leaves the parent right after it."""
    window = SubStream(parent, 1, 4)
    window.read()

    assert parent.tell() == 5


def test_window_past_parent_end_raises(parent) -> None:
    """Windows cannot extend beyond the parent's current length."""
    with pytest.raises(RangeError):
        SubStream(parent, 8, 3)
    with pytest.raises(RangeError):
        SubStream(parent, -1, 3)


@pytest.mark.parametrize(
    "pos,whence,expected",
    [(0, io.SEEK_SET, 0), (4, io.SEEK_SET, 4), (-1, io.SEEK_END, 3), (0, io.SEEK_END, 4)],
)
def test_seek_within_bounds(parent, pos, whence, expected) -> None:
    """Seek should work in window-local coordinates."""
    window = SubStream(parent, 3, 4)

    assert window.seek(pos, whence) == expected
    assert window.position == expected


@pytest.mark.parametrize("pos", [-1, 5])
def test_seek_out_of_bounds_raises(parent, pos) -> None:
    """Positions outside [0, length] should raise RangeError."""
    window = SubStream(parent, 3, 4)

    with pytest.raises(RangeError):
        window.seek(pos)
    with pytest.raises(RangeError):
        window.position = pos


def test_write_translates_into_parent(parent) -> None:
    """Writes should land at offset + position in the parent."""
    window = SubStream(parent, 2, 4)
    window.seek(1)
    window.write(b"ab")

    assert parent.getvalue() == b"012ab56789"


def test_write_past_bound_raises_unless_growable(parent) -> None:
    """Fixed windows reject writes past their end, growable ones extend."""
    fixed = SubStream(parent, 8, 2)
    with pytest.raises(RangeError):
        fixed.write(b"xyz")

    growable = SubStream(parent, 8, 2, growable=True)
    growable.write(b"xyz")

    assert growable.length == 3
    assert parent.getvalue() == b"01234567xyz"


def test_close_leaves_parent_open(parent) -> None:
    """Closing a window never closes its parent."""
    with SubStream(parent, 0, 4) as window:
        window.read(2)

    assert window.closed
    assert not parent.closed
    with pytest.raises(ValueError):
        window.read(1)


def test_truncated_parent_inside_bound_raises(parent) -> None:
    """A parent that shrinks under the window should fail loudly."""
    window = SubStream(parent, 2, 6)
    parent.truncate(5)

    with pytest.raises(TruncatedStreamError):
        window.read(6)
