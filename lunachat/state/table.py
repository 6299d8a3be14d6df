"""
Typed tables, the id allocator and the table version registry.

Table[K, V] wraps a Keyspace with a key codec and a value codec and is the
capability set shared by every entity store: get, insert, iter, watch,
flush. HighestKeys allocates monotonic ids per TableType. Versions records
the schema version of each table.

Invariants:
    - Keys are type-checked: a Table keyed by PostId rejects a ThreadId
    - HighestKeys.next() is an atomic read-modify-write; the first id is 1
    - Ids are persistent and never repeat across restarts
    - Only the migrator moves a version forward; readers never downgrade

How to change safely:
    - Bump CURRENT_VERSIONS together with a registered migration step
    - Never reuse a keyspace name for a different table
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Generic, TypeVar

from .codec import U64, Codec
from .engine import Keyspace, Subscriber
from .keys import TABLE_TYPE, TableType

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

# Keyspace names on disk
POSTS = "posts"
THREADS = "threads"
USERS = "users"
USERNAMES = "usernames"
HIGHEST_KEYS = "highest_keys"
VERSIONS = "versions"

# Schema version written by this code, per table
CURRENT_VERSIONS: dict[TableType, int] = {
    TableType.POSTS: 3,
    TableType.USERS: 2,
    TableType.HIGHEST_KEYS: 1,
    TableType.THREADS: 1,
}


class Table(Generic[K, V]):
    """Generic keyed store over an ordered keyspace.

    Attributes:
        keyspace: Underlying keyspace
        key_codec: Codec for keys
        value_codec: Codec for values
        key_type: If set, keys must be instances of this type
    """

    def __init__(
        self,
        keyspace: Keyspace,
        key_codec: Codec[K],
        value_codec: Codec[V],
        key_type: type | None = None,
    ) -> None:
        self.keyspace = keyspace
        self.key_codec = key_codec
        self.value_codec = value_codec
        self.key_type = key_type

    def encode_key(self, key: K) -> bytes:
        if self.key_type is not None and type(key) is not self.key_type:
            raise TypeError(
                f"{self.keyspace.name} is keyed by {self.key_type.__name__}, "
                f"got {type(key).__name__}"
            )
        return self.key_codec.encode(key)

    def decode_key(self, raw: bytes) -> K:
        return self.key_codec.decode(raw)

    def decode_value(self, raw: bytes) -> V:
        return self.value_codec.decode(raw)

    def get(self, key: K) -> V | None:
        raw = self.keyspace.get(self.encode_key(key))
        if raw is None:
            return None
        return self.value_codec.decode(raw)

    def insert(self, key: K, value: V) -> None:
        self.keyspace.insert(self.encode_key(key), self.value_codec.encode(value))

    def iter(self, reverse: bool = False) -> Iterator[tuple[K, V]]:
        for raw_key, raw_value in self.keyspace.iter(reverse=reverse):
            yield self.key_codec.decode(raw_key), self.value_codec.decode(raw_value)

    def __iter__(self) -> Iterator[tuple[K, V]]:
        return self.iter()

    def keys(self, reverse: bool = False) -> Iterator[K]:
        for key, _ in self.iter(reverse=reverse):
            yield key

    def values(self, reverse: bool = False) -> Iterator[V]:
        for _, value in self.iter(reverse=reverse):
            yield value

    def watch(self) -> Subscriber:
        return self.keyspace.watch()

    async def flush(self) -> None:
        await self.keyspace.flush()


class HighestKeys:
    """Per-table monotonic 64-bit id counters.

    Example:
        >>> highest_keys.next(TableType.POSTS)
        1
        >>> highest_keys.next(TableType.POSTS)
        2
    """

    def __init__(self, keyspace: Keyspace) -> None:
        self.keyspace = keyspace

    def next(self, table: TableType) -> int:
        """Allocate the next id for `table`.

        Raises:
            CodecError: If the stored counter is corrupt or would overflow
            StorageError: If the engine fails
        """

        def bump(old: bytes | None) -> bytes:
            current = 0 if old is None else U64.decode(old)
            return U64.encode(current + 1)

        old = self.keyspace.fetch_and_update(TABLE_TYPE.encode(table), bump)
        allocated = (0 if old is None else U64.decode(old)) + 1
        logger.debug("Allocated key", extra={"table": table.name, "key": allocated})
        return allocated

    def peek(self, table: TableType) -> int:
        """Return the highest id allocated so far (0 if none)."""
        raw = self.keyspace.get(TABLE_TYPE.encode(table))
        return 0 if raw is None else U64.decode(raw)

    def advance_to(self, table: TableType, value: int) -> int:
        """Raise the counter of `table` to at least `value`.

        Used after importing rows whose ids were not allocated here, so that
        later calls to next() never hand out an id that is already taken.

        Returns:
            The counter after the update
        """

        def bump(old: bytes | None) -> bytes:
            current = 0 if old is None else U64.decode(old)
            return U64.encode(max(current, value))

        old = self.keyspace.fetch_and_update(TABLE_TYPE.encode(table), bump)
        current = 0 if old is None else U64.decode(old)
        if value > current:
            logger.info(
                "Advanced key counter",
                extra={"table": table.name, "from": current, "to": value},
            )
        return max(current, value)


class Versions(Table[TableType, int]):
    """Schema version per table."""

    def __init__(self, keyspace: Keyspace) -> None:
        super().__init__(keyspace, TABLE_TYPE, U64, key_type=TableType)

    async def ensure_initialized(self) -> list[TableType]:
        """Set every recognized table without a version to 1.

        Returns:
            Tables that were initialized by this call
        """
        initialized = [table for table in TableType if self.get(table) is None]
        for table in initialized:
            self.insert(table, 1)
        if initialized:
            await self.flush()
            logger.info(
                "Initialized table versions",
                extra={"tables": [table.name for table in initialized]},
            )
        return initialized

    def outdated(self) -> dict[TableType, tuple[int, int]]:
        """Tables whose stored version is behind CURRENT_VERSIONS."""
        behind = {}
        for table, required in CURRENT_VERSIONS.items():
            stored = self.get(table)
            if stored is not None and stored < required:
                behind[table] = (stored, required)
        return behind
