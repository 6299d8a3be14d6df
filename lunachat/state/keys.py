"""
Identifier types.

All entities are keyed by a 64-bit unsigned integer serialized as 8
big-endian bytes. PostId, ThreadId and UserId are distinct types over the
same representation: a PostId never compares equal to a ThreadId with the
same number, and typed tables refuse keys of the wrong type.

TableType names the tables known to the id allocator and the version
registry. Its discriminants are part of the on-disk format.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..errors import CodecError
from .codec import U64, EnumCodec, WrapperCodec

MAX_KEY = 2**64 - 1


@dataclass(frozen=True, order=True)
class Key:
    """A 64-bit unsigned identifier."""

    value: int

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise TypeError(f"{type(self).__name__} expects an int, got {type(self.value).__name__}")
        if not 0 <= self.value <= MAX_KEY:
            raise ValueError(f"{type(self).__name__} out of range: {self.value}")

    def __int__(self) -> int:
        return self.value

    def __str__(self) -> str:
        return str(self.value)

    def to_bytes(self) -> bytes:
        """Return the 8-byte big-endian form."""
        return self.value.to_bytes(8, "big")

    @classmethod
    def from_bytes(cls, data: bytes) -> Key:
        """Parse the 8-byte big-endian form.

        Raises:
            CodecError: If data is not exactly 8 bytes
        """
        if len(data) != 8:
            raise CodecError(f"Failed to convert ID from {len(data)} byte(s), expected 8")
        return cls(int.from_bytes(data, "big"))


class PostId(Key):
    pass


class ThreadId(Key):
    pass


class UserId(Key):
    pass


class TableType(Enum):
    """Tables known to the allocator and version registry."""

    POSTS = 0
    USERS = 1
    HIGHEST_KEYS = 2
    THREADS = 3


def key_codec(key_cls: type[Key]) -> WrapperCodec:
    return WrapperCodec(U64, key_cls, int)


POST_ID = key_codec(PostId)
THREAD_ID = key_codec(ThreadId)
USER_ID = key_codec(UserId)
TABLE_TYPE = EnumCodec(TableType)
