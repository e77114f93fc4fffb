# ─────────────────────────────────────────────────────────────
#  BinaryView
#  > Darin Tanner, Elijah Tribhuwan, Sharad Sreekanth
#  Copyright (c) 2025 Quantius AI LLC.
#  License: MIT
#
#  Permission is hereby granted, free of charge, to any person obtaining
#  a copy of this software and associated documentation files (the
#  “Software”), to deal in the Software without restriction, subject to
#  the MIT License.
#
#  SPDX-License-Identifier: MIT
# ─────────────────────────────────────────────────────────────

from __future__ import annotations

import bz2
import io
import logging
import lzma
import os
import pickle
import shutil
import struct
import zlib
from collections import namedtuple
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import (
    Any,
    BinaryIO,
    Callable,
    Iterator,
    List,
    Literal,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np
import structlog

__all__ = [
    "BinaryViewReader",
    "BinaryViewWriter",
    "Layout",
    "SubStream",
    "StreamStack",
    "StreamEntry",
    "SectionRecord",
    "register_compression",
    "get_compression",
    "remove_compression",
    "BinaryViewError",
    "RangeError",
    "UnderflowError",
    "TruncatedStreamError",
    "CorruptDataError",
    "IOFailure",
]

# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------


class BinaryViewError(Exception):
    """Base exception for all binview failures."""


class RangeError(BinaryViewError, ValueError):
    """Raised for positions, bounds or values outside their valid range."""


class UnderflowError(BinaryViewError):
    """Raised when popping past the base stream or ending a section that is not open."""


class TruncatedStreamError(BinaryViewError, ValueError):
    """Raised when a declared length runs past the available bytes."""


class CorruptDataError(BinaryViewError, ValueError):
    """Raised for malformed compressed data or string metadata."""


class IOFailure(BinaryViewError, OSError):
    """Raised when the underlying file cannot be opened, flushed or closed."""


# ------------------------------------------------------------------
# Logging
# ------------------------------------------------------------------


def _get_logger(name: str) -> Any:
    """Return a structlog logger that renders through stdlib logging.

    Nothing is emitted unless the application configures ``logging``.
    """
    return structlog.wrap_logger(
        logging.getLogger(name),
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
    )


_LOG = _get_logger(__name__)

# ------------------------------------------------------------------
# Format constants & helpers
# ------------------------------------------------------------------

# Every multi-byte field is little-endian regardless of the host.
_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")

LengthPrefix = Literal["none", "byte", "uint16", "int32", "uint32", "int64", "uint64"]
StringLengthPrefix = Literal["default", "byte", "uint32", "uint64"]
CharSize = Literal["default", "byte", "char"]

_LENGTH_PREFIXES: dict[str, Optional[struct.Struct]] = {
    "none": None,
    "byte": _U8,
    "uint16": struct.Struct("<H"),
    "int32": struct.Struct("<i"),
    "uint32": _U32,
    "int64": struct.Struct("<q"),
    "uint64": _U64,
}

# String metadata byte:
#   bit 0 → u32 length      bit 2 → u64 length      neither → u8 length
#   bit 1 → 2-byte code units, otherwise 1-byte code units
_STR_LEN_U32 = 0x01
_STR_WIDE = 0x02
_STR_LEN_U64 = 0x04
_STR_META_MASK = _STR_LEN_U32 | _STR_WIDE | _STR_LEN_U64

_STRING_LENGTH_PREFIXES: dict[str, Tuple[int, struct.Struct]] = {
    "byte": (0, _U8),
    "uint32": (_STR_LEN_U32, _U32),
    "uint64": (_STR_LEN_U64, _U64),
}

_CHUNK_SIZE = 1 << 16
_DEFAULT_BUFFER_SIZE = 1 << 20


def _length_packer(prefix: str) -> Optional[struct.Struct]:
    try:
        return _LENGTH_PREFIXES[prefix]
    except KeyError:
        raise ValueError(f"Unsupported length prefix: {prefix!r}") from None


def _stream_length(stream: BinaryIO) -> int:
    pos = stream.tell()
    end = stream.seek(0, io.SEEK_END)
    stream.seek(pos)
    return end


def _set_stream_length(stream: BinaryIO, length: int) -> None:
    if length < 0:
        raise RangeError(f"length must be >= 0, got {length}")
    size = _stream_length(stream)
    if length <= size:
        stream.truncate(length)
        return
    pos = stream.tell()
    stream.seek(size)
    stream.write(b"\x00" * (length - size))
    stream.seek(pos)


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    # Declared lengths may be arbitrarily large; never hand them to read()
    if n > _CHUNK_SIZE:
        available = _stream_length(stream) - stream.tell()
        if n > available:
            raise TruncatedStreamError(
                f"Corrupted stream: expected {n} bytes, only {available} remain"
            )
    data = stream.read(n)
    if len(data) == n:
        return data
    parts = [data]
    got = len(data)
    while got < n:
        more = stream.read(n - got)
        if not more:
            raise TruncatedStreamError(
                f"Corrupted stream: expected {n} bytes, got {got}"
            )
        parts.append(more)
        got += len(more)
    return b"".join(parts)


# ------------------------------------------------------------------
# Compression codecs
# ------------------------------------------------------------------


@dataclass
class _CompressionCodec:
    compress: Callable[[bytes, int], bytes]
    decompress: Callable[[bytes], bytes]
    default_level: int = 6
    # Incremental decompressor factory; None → one-shot ``decompress``
    decompressor: Optional[Callable[[], Any]] = None


def _deflate(data: bytes, level: int) -> bytes:
    c = zlib.compressobj(level, zlib.DEFLATED, -zlib.MAX_WBITS)
    return c.compress(data) + c.flush()


def _inflate(data: bytes) -> bytes:
    return zlib.decompress(data, -zlib.MAX_WBITS)


_BUILTIN_CODECS: dict[str, _CompressionCodec] = {
    "deflate": _CompressionCodec(
        _deflate, _inflate, 6, lambda: zlib.decompressobj(-zlib.MAX_WBITS)
    ),
    "zlib": _CompressionCodec(
        lambda b, lv: zlib.compress(b, lv), zlib.decompress, 6, zlib.decompressobj
    ),
    "bz2": _CompressionCodec(
        lambda b, lv: bz2.compress(b, compresslevel=lv),
        bz2.decompress,
        9,
        bz2.BZ2Decompressor,
    ),
    "lzma": _CompressionCodec(
        lambda b, lv: lzma.compress(b, preset=lv),
        lzma.decompress,
        6,
        lzma.LZMADecompressor,
    ),
}

# Runtime-registered codecs
_CUSTOM_CODECS: dict[str, _CompressionCodec] = {}

_CORRUPT_ERRORS = (zlib.error, lzma.LZMAError, OSError, EOFError, ValueError)


def register_compression(
    name: str,
    compress_fn: Callable[[bytes, int], bytes],
    decompress_fn: Callable[[bytes], bytes],
    *,
    default_level: int = 6,
) -> None:
    """Register a custom section codec at runtime.

    The wire format carries no codec id, so readers and writers select the
    codec by *name* out of band.
    """
    if name in _BUILTIN_CODECS or name in _CUSTOM_CODECS:
        raise ValueError(f"Compression name {name!r} is already registered")
    if not (0 <= default_level <= 255):
        raise ValueError("default_level must be 0–255")
    _CUSTOM_CODECS[name] = _CompressionCodec(compress_fn, decompress_fn, default_level)


def get_compression(name: str) -> _CompressionCodec:
    """Return the codec registered under *name*."""
    codec = _BUILTIN_CODECS.get(name) or _CUSTOM_CODECS.get(name)
    if codec is None:
        raise KeyError(f"No codec named {name!r}")
    return codec


def remove_compression(name: str) -> None:
    """Unregister a custom codec. Built-in codecs cannot be removed."""
    if name in _BUILTIN_CODECS:
        raise ValueError("Built-in codecs cannot be removed")
    try:
        del _CUSTOM_CODECS[name]
    except KeyError as exc:
        raise KeyError(f"No custom codec named {name!r}") from exc


def _resolve_codec(name: str) -> _CompressionCodec:
    try:
        return get_compression(name)
    except KeyError:
        raise ValueError(f"Unsupported compression: {name!r}") from None


def _decompress_into(
    codec: _CompressionCodec, source: BinaryIO, sink: BinaryIO, chunk_size: int
) -> None:
    """Inflate everything *source* yields into *sink*."""
    if codec.decompressor is None:
        data = source.read()
        try:
            sink.write(codec.decompress(data))
        except _CORRUPT_ERRORS as exc:
            raise CorruptDataError(f"Corrupted compressed data: {exc}") from exc
        return

    d = codec.decompressor()
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            break
        try:
            sink.write(d.decompress(chunk))
        except _CORRUPT_ERRORS as exc:
            raise CorruptDataError(f"Corrupted compressed data: {exc}") from exc
    if not d.eof:
        raise CorruptDataError("Corrupted compressed data: missing end of stream")
    if d.unused_data:
        raise CorruptDataError(
            f"Corrupted compressed data: {len(d.unused_data)} bytes after end of stream"
        )


# ------------------------------------------------------------------
# Primitive codecs
# ------------------------------------------------------------------


class _Primitive:
    __slots__ = ("name", "size", "dtype", "_struct")

    def __init__(self, name: str, fmt: str, dtype: Optional[str]) -> None:
        self.name = name
        self._struct = struct.Struct("<" + fmt)
        self.size = self._struct.size
        self.dtype = dtype

    def pack(self, value: Any) -> bytes:
        try:
            return self._struct.pack(value)
        except (struct.error, OverflowError) as exc:
            raise RangeError(f"{value!r} out of range for {self.name}") from exc

    def unpack(self, data: bytes) -> Any:
        return self._struct.unpack(data)[0]


class _CharPrimitive:
    """A single UTF-16 code unit."""

    __slots__ = ()
    name = "char"
    size = 2
    dtype = None

    def pack(self, value: str) -> bytes:
        if not isinstance(value, str) or len(value) != 1:
            raise RangeError(f"char must be a single character, got {value!r}")
        code = ord(value)
        if code > 0xFFFF:
            raise RangeError(f"{value!r} does not fit a single UTF-16 code unit")
        return code.to_bytes(2, "little")

    def unpack(self, data: bytes) -> str:
        return chr(int.from_bytes(data, "little"))


_DECIMAL_MAX_SCALE = 28
_DECIMAL_MAX_MANTISSA = (1 << 96) - 1
_DECIMAL_SIGN = 0x80000000


class _DecimalPrimitive:
    """128-bit decimal: flags | hi | lo | mid, each a little-endian u32.

    flags holds the scale (0–28) in bits 16–23 and the sign in bit 31; the
    96-bit unsigned mantissa is split across hi, mid and lo.
    """

    __slots__ = ()
    name = "decimal"
    size = 16
    dtype = None
    _struct = struct.Struct("<IIII")

    def pack(self, value: Any) -> bytes:
        value = Decimal(repr(value)) if isinstance(value, float) else Decimal(value)
        if not value.is_finite():
            raise RangeError(f"{value} cannot be stored as a decimal")
        sign, digits, exponent = value.as_tuple()
        mantissa = int("".join(map(str, digits)))
        if exponent > 0:
            mantissa *= 10**exponent
            scale = 0
        else:
            scale = -exponent
        while (
            scale > _DECIMAL_MAX_SCALE or mantissa > _DECIMAL_MAX_MANTISSA
        ) and scale and mantissa % 10 == 0:
            mantissa //= 10
            scale -= 1
        if scale > _DECIMAL_MAX_SCALE or mantissa > _DECIMAL_MAX_MANTISSA:
            raise RangeError(f"{value} out of range for decimal")
        flags = (scale << 16) | (_DECIMAL_SIGN if sign else 0)
        return self._struct.pack(
            flags, mantissa >> 64, mantissa & 0xFFFFFFFF, (mantissa >> 32) & 0xFFFFFFFF
        )

    def unpack(self, data: bytes) -> Decimal:
        flags, hi, lo, mid = self._struct.unpack(data)
        scale = (flags >> 16) & 0xFF
        if scale > _DECIMAL_MAX_SCALE:
            raise CorruptDataError(f"Invalid decimal scale {scale}")
        mantissa = (hi << 64) | (mid << 32) | lo
        return Decimal((flags >> 31, tuple(map(int, str(mantissa))), -scale))


_PRIMITIVES: dict[str, Any] = {
    "bool": _Primitive("bool", "?", "?"),
    "char": _CharPrimitive(),
    "u8": _Primitive("u8", "B", "u1"),
    "i8": _Primitive("i8", "b", "i1"),
    "u16": _Primitive("u16", "H", "<u2"),
    "i16": _Primitive("i16", "h", "<i2"),
    "u32": _Primitive("u32", "I", "<u4"),
    "i32": _Primitive("i32", "i", "<i4"),
    "u64": _Primitive("u64", "Q", "<u8"),
    "i64": _Primitive("i64", "q", "<i8"),
    "f32": _Primitive("f32", "f", "<f4"),
    "f64": _Primitive("f64", "d", "<f8"),
    "decimal": _DecimalPrimitive(),
}

_KIND_ALIASES = {
    "boolean": "bool",
    "byte": "u8",
    "sbyte": "i8",
    "uint16": "u16",
    "int16": "i16",
    "uint32": "u32",
    "int32": "i32",
    "uint64": "u64",
    "int64": "i64",
    "single": "f32",
    "double": "f64",
}


def _checked_array(values: Any, codec: _Primitive) -> np.ndarray:
    """Cast *values* to ``codec.dtype``, raising where a scalar write would."""
    try:
        src = np.asarray(values)
    except (OverflowError, ValueError) as exc:
        raise RangeError(f"Array values out of range for {codec.name}") from exc
    if src.ndim != 1:
        raise ValueError("Arrays must be one-dimensional")

    target = np.dtype(codec.dtype)
    if src.size == 0 or target.kind == "b":
        return src.astype(target)

    if target.kind in "iu":
        if src.dtype.kind not in "biu":
            raise RangeError(f"{codec.name} arrays need integer values, got {src.dtype}")
        info = np.iinfo(target)
        if int(src.min()) < info.min or int(src.max()) > info.max:
            raise RangeError(f"Array values out of range for {codec.name}")
        return src.astype(target)

    if src.dtype.kind not in "biuf":
        raise RangeError(f"{codec.name} arrays need numeric values, got {src.dtype}")
    with np.errstate(over="ignore", invalid="ignore"):
        arr = src.astype(target)
    if np.any(np.isfinite(src) & ~np.isfinite(arr)):
        raise RangeError(f"Array values out of range for {codec.name}")
    return arr


def _codec_for(kind: Union[str, "Layout"]) -> Any:
    if isinstance(kind, Layout):
        return kind
    try:
        return _PRIMITIVES[_KIND_ALIASES.get(kind, kind)]
    except (KeyError, TypeError):
        raise ValueError(f"Unknown value kind: {kind!r}") from None


# ------------------------------------------------------------------
# Fixed layouts
# ------------------------------------------------------------------


class Layout:
    """Fixed-size record described field by field.

    ``Layout("Point", [("x", "i32"), ("y", "i32")])`` packs ``x`` then ``y``
    back to back with no padding. Fields may be primitive kinds or nested
    layouts. Decoded values are namedtuples named after the layout.
    """

    __slots__ = ("name", "fields", "size", "_codecs", "_type")
    dtype = None

    def __init__(
        self, name: str, fields: Sequence[Tuple[str, Union[str, "Layout"]]]
    ) -> None:
        if not fields:
            raise ValueError("A layout needs at least one field")
        self.name = name
        self.fields = tuple((field, kind) for field, kind in fields)
        self._codecs = tuple(_codec_for(kind) for _, kind in self.fields)
        self.size = sum(c.size for c in self._codecs)
        self._type = namedtuple(name, [field for field, _ in self.fields])

    def __call__(self, *args: Any, **kwargs: Any) -> tuple:
        return self._type(*args, **kwargs)

    def __repr__(self) -> str:
        return f"Layout({self.name!r}, {list(self.fields)!r})"

    def pack(self, value: Any) -> bytes:
        if isinstance(value, Mapping):
            items = [value[field] for field, _ in self.fields]
        elif isinstance(value, (tuple, list)):
            if len(value) != len(self.fields):
                raise ValueError(
                    f"{self.name} expects {len(self.fields)} values, got {len(value)}"
                )
            items = list(value)
        else:
            items = [getattr(value, field) for field, _ in self.fields]
        return b"".join(c.pack(item) for c, item in zip(self._codecs, items))

    def unpack(self, data: bytes) -> tuple:
        values = []
        offset = 0
        for c in self._codecs:
            values.append(c.unpack(data[offset : offset + c.size]))
            offset += c.size
        return self._type(*values)


# ------------------------------------------------------------------
# SubRange view
# ------------------------------------------------------------------


class SubStream(io.RawIOBase):
    """Bounded window over ``parent[offset : offset + length]``.

    Never closes *parent*. Reads stop at the window end; writes past it fail
    unless the window is *growable*.
    """

    def __init__(
        self, parent: BinaryIO, offset: int, length: int, *, growable: bool = False
    ) -> None:
        super().__init__()
        if offset < 0 or length < 0:
            raise RangeError(f"Invalid window offset={offset} length={length}")
        parent_length = _stream_length(parent)
        if offset + length > parent_length:
            raise RangeError(
                f"Window [{offset}, {offset + length}) exceeds parent length {parent_length}"
            )
        self._parent = parent
        self._offset = offset
        self._length = length
        self._pos = 0
        self._growable = growable

    # ------------------------------------------------ properties
    @property
    def offset(self) -> int:
        return self._offset

    @property
    def length(self) -> int:
        return self._length

    @property
    def remaining(self) -> int:
        return self._length - self._pos

    @property
    def position(self) -> int:
        return self.tell()

    @position.setter
    def position(self, value: int) -> None:
        self.seek(value)

    # ------------------------------------------------ io protocol
    def _check_open(self) -> None:
        if self.closed:
            raise ValueError("I/O operation on closed SubStream")

    def readable(self) -> bool:
        self._check_open()
        return self._parent.readable()

    def writable(self) -> bool:
        self._check_open()
        return self._parent.writable()

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        self._check_open()
        return self._pos

    def seek(self, pos: int, whence: int = io.SEEK_SET) -> int:
        self._check_open()
        if whence == io.SEEK_SET:
            target = pos
        elif whence == io.SEEK_CUR:
            target = self._pos + pos
        elif whence == io.SEEK_END:
            target = self._length + pos
        else:
            raise ValueError(f"Invalid whence ({whence})")
        if not (0 <= target <= self._length):
            raise RangeError(f"Position {target} outside [0, {self._length}]")
        self._pos = target
        return target

    def readinto(self, b: Any) -> int:
        self._check_open()
        n = min(len(b), self._length - self._pos)
        if n <= 0:
            return 0
        self._parent.seek(self._offset + self._pos)
        data = self._parent.read(n)
        if len(data) < n:
            raise TruncatedStreamError(
                f"Corrupted stream: window promises {n} more bytes, parent has {len(data)}"
            )
        b[:n] = data
        self._pos += n
        return n

    def write(self, b: Any) -> int:
        self._check_open()
        data = bytes(b)
        end = self._pos + len(data)
        if end > self._length:
            if not self._growable:
                raise RangeError(
                    f"Write of {len(data)} bytes at {self._pos} exceeds window length {self._length}"
                )
            self._length = end
        self._parent.seek(self._offset + self._pos)
        self._parent.write(data)
        self._pos = end
        return len(data)


# ------------------------------------------------------------------
# Section stack
# ------------------------------------------------------------------


@dataclass
class SectionRecord:
    """Bookkeeping for a pushed section.

    ``start_offset`` is the parent position when the section began.
    ``compressed_length`` is known on read at begin time, on write at end time.
    """

    start_offset: int
    compressed_length: Optional[int] = None
    kind: Literal["section", "whole"] = "section"


@dataclass
class StreamEntry:
    stream: BinaryIO
    closable: bool = False
    tag: Any = None

    def close(self) -> None:
        if self.closable and not self.stream.closed:
            self.stream.close()


class StreamStack:
    """Stack of active streams over a permanent base entry.

    The top entry is the active cursor. Observers registered with
    :meth:`subscribe` are called with the new top whenever it changes.
    """

    __slots__ = ("_entries", "_observers")

    def __init__(
        self,
        stream: Union[BinaryIO, StreamEntry],
        closable: bool = False,
        tag: Any = None,
    ) -> None:
        base = stream if isinstance(stream, StreamEntry) else StreamEntry(stream, closable, tag)
        self._entries: List[StreamEntry] = [base]
        self._observers: List[Callable[[StreamEntry], None]] = []

    # ------------------------------------------------ accessors
    @property
    def top(self) -> StreamEntry:
        return self._entries[-1]

    @property
    def stream(self) -> BinaryIO:
        return self._entries[-1].stream

    @property
    def base(self) -> StreamEntry:
        return self._entries[0]

    @property
    def depth(self) -> int:
        """Number of entries above the base."""
        return len(self._entries) - 1

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[StreamEntry]:
        """Iterate from the top entry down to the base."""
        return reversed(self._entries)

    # ------------------------------------------------ observers
    def subscribe(self, callback: Callable[[StreamEntry], None]) -> None:
        self._observers.append(callback)

    def unsubscribe(self, callback: Callable[[StreamEntry], None]) -> None:
        self._observers.remove(callback)

    def _notify(self) -> None:
        top = self._entries[-1]
        for callback in list(self._observers):
            callback(top)

    # ------------------------------------------------ push / pop
    def push(
        self,
        stream: Union[BinaryIO, StreamEntry],
        closable: bool = False,
        tag: Any = None,
    ) -> StreamEntry:
        entry = stream if isinstance(stream, StreamEntry) else StreamEntry(stream, closable, tag)
        self._entries.append(entry)
        self._notify()
        return entry

    def create(self, tag: Any = None) -> StreamEntry:
        """Push a fresh in-memory buffer."""
        return self.push(io.BytesIO(), closable=True, tag=tag)

    def pop(self, *, dispose: bool = True) -> StreamEntry:
        """Remove the top entry and return it.

        With ``dispose=False`` the entry's stream is left open and the caller
        becomes responsible for closing it.
        """
        if len(self._entries) == 1:
            raise UnderflowError("Cannot pop the base stream")
        entry = self._entries.pop()
        if dispose:
            entry.close()
        self._notify()
        return entry

    # ------------------------------------------------ top helpers
    def sub_stream(self, length: int) -> SubStream:
        """Window of *length* bytes starting at the active cursor."""
        stream = self.stream
        return SubStream(stream, stream.tell(), length)

    def copy_to_top(self, source: BinaryIO, keep_position: bool = False) -> None:
        """Write the rest of *source* at the active cursor."""
        target = self.stream
        pos = target.tell()
        shutil.copyfileobj(source, target)
        if keep_position:
            target.seek(pos)

    def insert_to_top(self, source: BinaryIO) -> None:
        """Insert the rest of *source* at the cursor, shifting the tail."""
        target = self.stream
        pos = target.tell()
        tail = target.read()
        target.seek(pos)
        shutil.copyfileobj(source, target)
        target.write(tail)

    # ------------------------------------------------ teardown
    def close(self) -> None:
        """Pop and dispose every entry above the base, innermost first."""
        while len(self._entries) > 1:
            self.pop()


def _is_section(entry: StreamEntry) -> bool:
    return isinstance(entry.tag, SectionRecord) and entry.tag.kind == "section"


def _is_whole(entry: StreamEntry) -> bool:
    return isinstance(entry.tag, SectionRecord) and entry.tag.kind == "whole"


# ------------------------------------------------------------------
# Shared reader / writer plumbing
# ------------------------------------------------------------------


def _open_stream(
    source: Any, mode: str, buffer_size: int
) -> Tuple[BinaryIO, bool]:
    """Return ``(stream, owned)`` for a path, bytes, stream or ``None``."""
    if source is None:
        return io.BytesIO(), True
    if isinstance(source, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(source)), True
    if isinstance(source, (str, os.PathLike)):
        try:
            return open(source, mode, buffering=buffer_size), True
        except OSError as exc:
            raise IOFailure(f"Cannot open {os.fspath(source)!r}: {exc}") from exc
    return source, False


class _BinaryView:
    __slots__ = ("_stack", "_codec", "_serializer", "_chunk_size", "_closed")

    def _init_view(
        self, stream: BinaryIO, owned: bool, codec: _CompressionCodec, serializer: Any
    ) -> None:
        # The base entry is closed by the view, never by the stack
        self._stack = StreamStack(stream, closable=owned)
        self._codec = codec
        self._serializer = serializer
        self._chunk_size = _CHUNK_SIZE
        self._closed = False

    # ------------------------------------------------ cursor
    @property
    def _stream(self) -> BinaryIO:
        if self._closed:
            raise ValueError("I/O operation on closed view")
        return self._stack.stream

    @property
    def sections(self) -> StreamStack:
        return self._stack

    @property
    def depth(self) -> int:
        return self._stack.depth

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def position(self) -> int:
        return self._stream.tell()

    @position.setter
    def position(self, value: int) -> None:
        if value < 0:
            raise RangeError(f"Position must be >= 0, got {value}")
        self._stream.seek(value)

    @property
    def length(self) -> int:
        return _stream_length(self._stream)

    @length.setter
    def length(self, value: int) -> None:
        _set_stream_length(self._stream, value)

    # ------------------------------------------------ sections
    @contextmanager
    def section(self) -> Iterator[Any]:
        """Scoped :meth:`begin_section` / :meth:`end_section` pair.

        If the block raises, the section and anything opened inside it is
        discarded.
        """
        self.begin_section()
        depth = self._stack.depth
        try:
            yield self
        except BaseException:
            while self._stack.depth >= depth:
                self._stack.pop()
            raise
        self.end_section()

    # ------------------------------------------------ housekeeping
    def _release(self) -> None:
        self._closed = True
        self._stack.close()
        base = self._stack.base
        if base.closable and not base.stream.closed:
            try:
                base.stream.close()
            except OSError as exc:
                raise IOFailure(f"Failed to close stream: {exc}") from exc


# ------------------------------------------------------------------
# Writer
# ------------------------------------------------------------------


class BinaryViewWriter(_BinaryView):
    __slots__ = ("_level", "_result")

    # ------------------------------------------------ initialisation
    def __init__(
        self,
        target: str | os.PathLike[str] | BinaryIO | None = None,
        *,
        compression: str = "deflate",
        compression_level: Optional[int] = None,
        serializer: Any = pickle,
        buffer_size: int = _DEFAULT_BUFFER_SIZE,
    ) -> None:
        codec = _resolve_codec(compression)
        if compression_level is None:
            self._level = codec.default_level
        else:
            if not (0 <= compression_level <= 255):
                raise ValueError("compression_level must be 0–255")
            self._level = compression_level
        self._result: Optional[bytes] = None

        stream, owned = _open_stream(target, "w+b", buffer_size)
        self._init_view(stream, owned, codec, serializer)

    def _write(self, data: bytes) -> None:
        self._stream.write(data)

    def _compress(self, payload: bytes) -> bytes:
        return self._codec.compress(payload, self._level)

    # ------------------------------------------------ primitives
    def write(self, kind: Union[str, Layout], value: Any) -> None:
        """Write *value* using the primitive kind or layout *kind*."""
        self._write(_codec_for(kind).pack(value))

    def write_struct(self, layout: Layout, value: Any) -> None:
        self._write(layout.pack(value))

    def write_bytes(self, data: bytes) -> None:
        self._write(data)

    def write_boolean(self, value: bool) -> None:
        self._write(_PRIMITIVES["bool"].pack(value))

    def write_char(self, value: str) -> None:
        self._write(_PRIMITIVES["char"].pack(value))

    def write_byte(self, value: int) -> None:
        self._write(_PRIMITIVES["u8"].pack(value))

    def write_sbyte(self, value: int) -> None:
        self._write(_PRIMITIVES["i8"].pack(value))

    def write_uint16(self, value: int) -> None:
        self._write(_PRIMITIVES["u16"].pack(value))

    def write_int16(self, value: int) -> None:
        self._write(_PRIMITIVES["i16"].pack(value))

    def write_uint32(self, value: int) -> None:
        self._write(_PRIMITIVES["u32"].pack(value))

    def write_int32(self, value: int) -> None:
        self._write(_PRIMITIVES["i32"].pack(value))

    def write_uint64(self, value: int) -> None:
        self._write(_PRIMITIVES["u64"].pack(value))

    def write_int64(self, value: int) -> None:
        self._write(_PRIMITIVES["i64"].pack(value))

    def write_single(self, value: float) -> None:
        self._write(_PRIMITIVES["f32"].pack(value))

    def write_double(self, value: float) -> None:
        self._write(_PRIMITIVES["f64"].pack(value))

    def write_decimal(self, value: Decimal) -> None:
        self._write(_PRIMITIVES["decimal"].pack(value))

    # ------------------------------------------------ strings
    def write_string(
        self,
        value: str,
        length_prefix: StringLengthPrefix = "default",
        char_size: CharSize = "default",
    ) -> None:
        """Write ``[meta][length][code units]``.

        ``"default"`` picks the narrowest width that fits. A ``"byte"``
        character width keeps only the low byte of each UTF-16 code unit.
        """
        units = value.encode("utf-16-le", "surrogatepass")
        count = len(units) // 2

        if char_size == "default":
            wide = any(units[1::2])
        elif char_size in ("byte", "char"):
            wide = char_size == "char"
        else:
            raise ValueError(f"Unsupported char size: {char_size!r}")

        if length_prefix == "default":
            if count <= 0xFF:
                length_prefix = "byte"
            elif count <= 0xFFFFFFFF:
                length_prefix = "uint32"
            else:
                length_prefix = "uint64"
        try:
            meta, packer = _STRING_LENGTH_PREFIXES[length_prefix]
        except KeyError:
            raise ValueError(f"Unsupported length prefix: {length_prefix!r}") from None
        try:
            length = packer.pack(count)
        except struct.error as exc:
            raise RangeError(
                f"String of {count} code units does not fit a {length_prefix} length"
            ) from exc

        if wide:
            meta |= _STR_WIDE
        self._write(bytes((meta,)) + length + (units if wide else units[0::2]))

    def write_string_array(
        self, values: Sequence[str], length_prefix: LengthPrefix = "int32"
    ) -> None:
        self._write(self._pack_length(len(values), length_prefix))
        for value in values:
            self.write_string(value)

    # ------------------------------------------------ arrays
    @staticmethod
    def _pack_length(count: int, length_prefix: str) -> bytes:
        packer = _length_packer(length_prefix)
        if packer is None:
            return b""
        try:
            return packer.pack(count)
        except struct.error as exc:
            raise RangeError(
                f"Length {count} does not fit a {length_prefix} length prefix"
            ) from exc

    def write_array(
        self,
        values: Any,
        kind: Union[str, Layout],
        length_prefix: LengthPrefix = "int32",
    ) -> None:
        """Write an optional length prefix followed by each element."""
        codec = _codec_for(kind)
        if codec.dtype is not None:
            arr = _checked_array(values, codec)
            count = int(arr.shape[0])
            payload = arr.tobytes()
        else:
            count = len(values)
            payload = b"".join(codec.pack(v) for v in values)
        self._write(self._pack_length(count, length_prefix) + payload)

    def write_list(
        self,
        values: Sequence[Any],
        write_item: Callable[[Any], None],
        length_prefix: LengthPrefix = "int32",
    ) -> None:
        """Write a length prefix then call *write_item* for each value."""
        self._write(self._pack_length(len(values), length_prefix))
        for value in values:
            write_item(value)

    # ------------------------------------------------ objects
    def serialize(self, value: Any) -> None:
        """Write *value* through the injected serializer."""
        self._serializer.dump(value, self._stream)

    # ------------------------------------------------ sections
    def begin_section(self) -> None:
        """Redirect writes into a buffer until :meth:`end_section`."""
        start = self._stream.tell()
        self._stack.create(tag=SectionRecord(start))
        _LOG.debug("section_begin", side="write", start=start, depth=self._stack.depth)

    def end_section(self) -> None:
        """Compress the section buffer and append ``[u64 length][payload]``."""
        entry = self._stack.top
        if not _is_section(entry):
            raise UnderflowError("No open section to end")
        self._stack.pop(dispose=False)
        try:
            payload = entry.stream.getvalue()
            compressed = self._compress(payload)
            self._write(_U64.pack(len(compressed)) + compressed)
        finally:
            entry.stream.close()
        entry.tag.compressed_length = len(compressed)
        _LOG.debug(
            "section_end",
            side="write",
            size=len(payload),
            compressed=len(compressed),
            depth=self._stack.depth,
        )

    def compress_all(self) -> None:
        """Compress everything written from here on as one unframed blob."""
        if self._stack.depth:
            raise BinaryViewError("compress_all() cannot be nested inside a section")
        self._stack.create(tag=SectionRecord(self._stream.tell(), kind="whole"))

    # ------------------------------------------------ finalisation
    def to_bytes(self) -> bytes:
        """Return the contents of an in-memory target."""
        if self._result is not None:
            return self._result
        if any(_is_whole(entry) for entry in self._stack):
            raise BinaryViewError(
                "to_bytes() is unavailable until compress_all() is finalized by close()"
            )
        base = self._stack.base.stream
        if isinstance(base, io.BytesIO) and not base.closed:
            return base.getvalue()
        raise BinaryViewError("to_bytes() requires an in-memory target")

    def _finish(self) -> None:
        open_sections = sum(1 for entry in self._stack if _is_section(entry))
        if open_sections:
            _LOG.warning("open_sections_discarded", count=open_sections)
        while self._stack.depth and _is_section(self._stack.top):
            self._stack.pop()

        if self._stack.depth:
            entry = self._stack.pop(dispose=False)
            try:
                payload = entry.stream.getvalue()
                compressed = self._compress(payload)
                self._stack.stream.write(compressed)
            finally:
                entry.stream.close()
            _LOG.debug(
                "compress_all_finalized", size=len(payload), compressed=len(compressed)
            )

        try:
            self._stack.stream.flush()
        except OSError as exc:
            raise IOFailure(f"Failed to flush stream: {exc}") from exc

    def _release(self) -> None:
        base = self._stack.base.stream
        if isinstance(base, io.BytesIO) and not base.closed:
            self._result = base.getvalue()
        super()._release()

    def close(self) -> None:
        if self._closed:
            return
        try:
            self._finish()
        finally:
            self._release()

    # ------------------------------------------------ context manager
    def __enter__(self) -> "BinaryViewWriter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool | None:
        if exc_type is None:
            self.close()
        elif not self._closed:
            self._release()
        return None


# ------------------------------------------------------------------
# Reader
# ------------------------------------------------------------------


class BinaryViewReader(_BinaryView):
    __slots__ = ()

    def __init__(
        self,
        source: str | os.PathLike[str] | bytes | BinaryIO | None = None,
        *,
        compression: str = "deflate",
        serializer: Any = pickle,
        buffer_size: int = _DEFAULT_BUFFER_SIZE,
    ) -> None:
        codec = _resolve_codec(compression)
        stream, owned = _open_stream(source, "rb", buffer_size)
        self._init_view(stream, owned, codec, serializer)

    def _read(self, n: int) -> bytes:
        return _read_exact(self._stream, n)

    # ------------------------------------------------ primitives
    def read(self, kind: Union[str, Layout]) -> Any:
        """Read one value of the primitive kind or layout *kind*."""
        codec = _codec_for(kind)
        return codec.unpack(self._read(codec.size))

    def read_struct(self, layout: Layout) -> tuple:
        return layout.unpack(self._read(layout.size))

    def read_bytes(self, n: int = -1) -> bytes:
        """Read up to *n* bytes; short at end of stream."""
        return self._stream.read(n)

    def read_boolean(self) -> bool:
        return self.read("bool")

    def read_char(self) -> str:
        return self.read("char")

    def read_byte(self) -> int:
        return self.read("u8")

    def read_sbyte(self) -> int:
        return self.read("i8")

    def read_uint16(self) -> int:
        return self.read("u16")

    def read_int16(self) -> int:
        return self.read("i16")

    def read_uint32(self) -> int:
        return self.read("u32")

    def read_int32(self) -> int:
        return self.read("i32")

    def read_uint64(self) -> int:
        return self.read("u64")

    def read_int64(self) -> int:
        return self.read("i64")

    def read_single(self) -> float:
        return self.read("f32")

    def read_double(self) -> float:
        return self.read("f64")

    def read_decimal(self) -> Decimal:
        return self.read("decimal")

    # ------------------------------------------------ strings
    def read_string(self) -> str:
        meta = self._read(1)[0]
        if meta & ~_STR_META_MASK or (meta & _STR_LEN_U32 and meta & _STR_LEN_U64):
            raise CorruptDataError(f"Invalid string metadata 0x{meta:02x}")

        if meta & _STR_LEN_U64:
            packer = _U64
        elif meta & _STR_LEN_U32:
            packer = _U32
        else:
            packer = _U8
        count = packer.unpack(self._read(packer.size))[0]

        if meta & _STR_WIDE:
            return self._read(count * 2).decode("utf-16-le", "surrogatepass")
        return self._read(count).decode("latin-1")

    def read_string_array(self, length_prefix: LengthPrefix = "int32") -> List[str]:
        count = self._read_length(length_prefix, None)
        return [self.read_string() for _ in range(count)]

    # ------------------------------------------------ arrays
    def _read_length(self, length_prefix: str, count: Optional[int]) -> int:
        packer = _length_packer(length_prefix)
        if packer is None:
            if count is None:
                raise ValueError("count is required when the length prefix is 'none'")
            if count < 0:
                raise RangeError(f"count must be >= 0, got {count}")
            return count
        n = packer.unpack(self._read(packer.size))[0]
        if n < 0:
            raise CorruptDataError(f"Negative length prefix {n}")
        return n

    def read_array(
        self,
        kind: Union[str, Layout],
        length_prefix: LengthPrefix = "int32",
        count: Optional[int] = None,
        *,
        as_numpy: bool = False,
    ) -> Any:
        """Read an array written by :meth:`BinaryViewWriter.write_array`.

        *count* is only consulted when *length_prefix* is ``"none"``.
        """
        codec = _codec_for(kind)
        n = self._read_length(length_prefix, count)
        data = self._read(n * codec.size)

        if codec.dtype is not None:
            if n == 0:
                arr = np.empty(0, dtype=codec.dtype)
            else:
                arr = np.frombuffer(data, dtype=codec.dtype, count=n).copy()
            return arr if as_numpy else arr.tolist()

        if as_numpy:
            raise ValueError(f"{codec.name} values cannot be returned as an ndarray")
        size = codec.size
        return [codec.unpack(data[i * size : (i + 1) * size]) for i in range(n)]

    def read_array_into(
        self,
        target: Any,
        kind: Union[str, Layout],
        offset: int = 0,
        count: Optional[int] = None,
        length_prefix: LengthPrefix = "int32",
    ) -> int:
        """Read an array into *target* starting at *offset*; return the count.

        Lists grow as needed; other sequences must already be large enough.
        """
        if offset < 0 or offset > len(target):
            raise RangeError(f"Offset {offset} outside target of length {len(target)}")
        values = self.read_array(kind, length_prefix, count)
        end = offset + len(values)
        if end > len(target) and not isinstance(target, list):
            raise RangeError(f"Target of length {len(target)} cannot hold {end} values")
        target[offset:end] = values
        return len(values)

    def read_list(
        self,
        read_item: Callable[[], Any],
        length_prefix: LengthPrefix = "int32",
        count: Optional[int] = None,
    ) -> List[Any]:
        n = self._read_length(length_prefix, count)
        return [read_item() for _ in range(n)]

    # ------------------------------------------------ objects
    def deserialize(self) -> Any:
        """Read one value through the injected serializer."""
        return self._serializer.load(self._stream)

    # ------------------------------------------------ sections
    def begin_section(self) -> None:
        """Inflate the next ``[u64 length][payload]`` section and read from it."""
        parent = self._stream
        length = _U64.unpack(self._read(8))[0]
        start = parent.tell()
        remaining = _stream_length(parent) - start
        if length > remaining:
            raise TruncatedStreamError(
                f"Section declares {length} compressed bytes, only {remaining} remain"
            )

        buffer = io.BytesIO()
        try:
            with SubStream(parent, start, length) as window:
                _decompress_into(self._codec, window, buffer, self._chunk_size)
        except BaseException:
            buffer.close()
            raise
        parent.seek(start + length)
        size = buffer.tell()
        buffer.seek(0)
        self._stack.push(buffer, closable=True, tag=SectionRecord(start, length))
        _LOG.debug(
            "section_begin",
            side="read",
            compressed=length,
            size=size,
            depth=self._stack.depth,
        )

    def end_section(self) -> None:
        """Drop the current section and resume the parent stream."""
        if not _is_section(self._stack.top):
            raise UnderflowError("No open section to end")
        self._stack.pop()
        _LOG.debug("section_end", side="read", depth=self._stack.depth)

    def decompress_all(self) -> None:
        """Inflate the rest of the stream and read from the result."""
        if self._stack.depth:
            raise BinaryViewError("decompress_all() cannot be nested inside a section")
        base = self._stream
        start = base.tell()
        buffer = io.BytesIO()
        try:
            _decompress_into(self._codec, base, buffer, self._chunk_size)
        except BaseException:
            buffer.close()
            raise
        buffer.seek(0)
        self._stack.push(
            buffer,
            closable=True,
            tag=SectionRecord(start, base.tell() - start, kind="whole"),
        )

    # ------------------------------------------------ housekeeping
    def close(self) -> None:
        if not self._closed:
            self._release()

    def __enter__(self) -> "BinaryViewReader":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
