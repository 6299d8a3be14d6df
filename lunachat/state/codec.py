"""
Canonical binary codec for every stored value.

The codec is configured big-endian with fixed-width integers so that the
lexicographic order of encoded u64 values matches their numeric order. That
property is what lets the ordered key-value engine iterate ids in numeric
order.

Wire format:
    u64      8 bytes, big-endian
    str      u64 byte length, then UTF-8 bytes
    bytes    u64 byte length, then raw bytes
    option   1 tag byte (0 = none, 1 = some), then the value if some
    list     u64 item count, then each item
    enum     u64 discriminant
    record   fields concatenated in declaration order (no names, no tags)

Invariants:
    - decode(encode(x)) == x for every supported value
    - decode() consumes the whole buffer; trailing bytes are an error
    - Every decode failure raises CodecError (never IndexError/struct.error)

How to change safely:
    - Record layouts are positional: adding, removing or reordering a field
      changes the table format and needs a new table version plus migration
    - Keep the old record codec around for the migrator
"""

from __future__ import annotations

import struct
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any, Generic, TypeVar

from ..errors import CodecError

T = TypeVar("T")

_U64 = struct.Struct(">Q")
_TAG = struct.Struct(">B")


class Codec(Generic[T]):
    """Base class for a binary codec of values of type T.

    Subclasses implement `write` (append the encoding to a buffer) and
    `read` (decode one value at an offset and return the new offset).
    """

    def write(self, value: T, out: bytearray) -> None:
        raise NotImplementedError

    def read(self, data: bytes, offset: int) -> tuple[T, int]:
        raise NotImplementedError

    def encode(self, value: T) -> bytes:
        """Encode a value to bytes.

        Raises:
            CodecError: If the value cannot be represented
        """
        out = bytearray()
        try:
            self.write(value, out)
        except (struct.error, TypeError, AttributeError, UnicodeEncodeError, OverflowError) as e:
            raise CodecError(f"cannot encode {value!r}: {e}") from e
        return bytes(out)

    def decode(self, data: bytes) -> T:
        """Decode a complete buffer.

        Raises:
            CodecError: If the bytes are truncated, malformed or have trailing data
        """
        data = bytes(data)
        value, offset = self.read(data, 0)
        if offset != len(data):
            raise CodecError(f"{len(data) - offset} trailing byte(s) after value")
        return value


def _take(data: bytes, offset: int, size: int) -> tuple[bytes, int]:
    end = offset + size
    if size < 0 or end > len(data):
        raise CodecError(f"unexpected end of data: need {size} byte(s) at offset {offset}")
    return data[offset:end], end


class U64Codec(Codec[int]):
    """Unsigned 64-bit integer, big-endian."""

    def write(self, value: int, out: bytearray) -> None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"expected int, got {type(value).__name__}")
        out += _U64.pack(value)

    def read(self, data: bytes, offset: int) -> tuple[int, int]:
        raw, offset = _take(data, offset, _U64.size)
        return _U64.unpack(raw)[0], offset


class BytesCodec(Codec[bytes]):
    """Length-prefixed raw bytes."""

    def write(self, value: bytes, out: bytearray) -> None:
        out += _U64.pack(len(value))
        out += value

    def read(self, data: bytes, offset: int) -> tuple[bytes, int]:
        length, offset = U64.read(data, offset)
        return _take(data, offset, length)


class StrCodec(Codec[str]):
    """Length-prefixed UTF-8 string."""

    def write(self, value: str, out: bytearray) -> None:
        if not isinstance(value, str):
            raise TypeError(f"expected str, got {type(value).__name__}")
        BYTES.write(value.encode("utf-8"), out)

    def read(self, data: bytes, offset: int) -> tuple[str, int]:
        raw, offset = BYTES.read(data, offset)
        try:
            return raw.decode("utf-8"), offset
        except UnicodeDecodeError as e:
            raise CodecError(f"invalid UTF-8 string: {e}") from e


class OptionCodec(Codec[Any]):
    """Optional value: a 0/1 tag byte followed by the value when present."""

    def __init__(self, inner: Codec[Any]) -> None:
        self.inner = inner

    def write(self, value: Any, out: bytearray) -> None:
        if value is None:
            out += _TAG.pack(0)
        else:
            out += _TAG.pack(1)
            self.inner.write(value, out)

    def read(self, data: bytes, offset: int) -> tuple[Any, int]:
        raw, offset = _take(data, offset, _TAG.size)
        tag = raw[0]
        if tag == 0:
            return None, offset
        if tag == 1:
            return self.inner.read(data, offset)
        raise CodecError(f"invalid option tag {tag} at offset {offset - 1}")


class ListCodec(Codec[list]):
    """Length-prefixed homogeneous list."""

    def __init__(self, inner: Codec[Any]) -> None:
        self.inner = inner

    def write(self, value: list, out: bytearray) -> None:
        out += _U64.pack(len(value))
        for item in value:
            self.inner.write(item, out)

    def read(self, data: bytes, offset: int) -> tuple[list, int]:
        count, offset = U64.read(data, offset)
        items = []
        for _ in range(count):
            item, offset = self.inner.read(data, offset)
            items.append(item)
        return items, offset


class EnumCodec(Codec[Enum]):
    """Integer-valued enum encoded as its u64 discriminant."""

    def __init__(self, enum_cls: type[Enum]) -> None:
        self.enum_cls = enum_cls

    def write(self, value: Enum, out: bytearray) -> None:
        if not isinstance(value, self.enum_cls):
            raise TypeError(f"expected {self.enum_cls.__name__}, got {type(value).__name__}")
        U64.write(value.value, out)

    def read(self, data: bytes, offset: int) -> tuple[Enum, int]:
        raw, offset = U64.read(data, offset)
        try:
            return self.enum_cls(raw), offset
        except ValueError as e:
            raise CodecError(f"unknown {self.enum_cls.__name__} discriminant {raw}") from e


class WrapperCodec(Codec[T]):
    """A value stored as another codec's value (e.g. typed ids over u64)."""

    def __init__(
        self,
        inner: Codec[Any],
        wrap: Callable[[Any], T],
        unwrap: Callable[[T], Any],
    ) -> None:
        self.inner = inner
        self.wrap = wrap
        self.unwrap = unwrap

    def write(self, value: T, out: bytearray) -> None:
        self.inner.write(self.unwrap(value), out)

    def read(self, data: bytes, offset: int) -> tuple[T, int]:
        raw, offset = self.inner.read(data, offset)
        return self.wrap(raw), offset


class RecordCodec(Codec[T]):
    """Positional record codec for a dataclass.

    Example:
        >>> codec = RecordCodec(Thread, (("key", THREAD_ID), ("title", STR), ("post", POST_ID)))
        >>> codec.decode(codec.encode(thread)) == thread
        True
    """

    def __init__(self, cls: type[T], fields: Sequence[tuple[str, Codec[Any]]]) -> None:
        self.cls = cls
        self.fields = tuple(fields)

    def write(self, value: T, out: bytearray) -> None:
        if not isinstance(value, self.cls):
            raise TypeError(f"expected {self.cls.__name__}, got {type(value).__name__}")
        for name, codec in self.fields:
            codec.write(getattr(value, name), out)

    def read(self, data: bytes, offset: int) -> tuple[T, int]:
        values = {}
        for name, codec in self.fields:
            values[name], offset = codec.read(data, offset)
        return self.cls(**values), offset


U64 = U64Codec()
BYTES = BytesCodec()
STR = StrCodec()
