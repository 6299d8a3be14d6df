"""
Embedded ordered key-value engine on top of SQLite.

A Database is a single SQLite file holding any number of named keyspaces.
Each keyspace is an ordered map from bytes to bytes backed by one
`WITHOUT ROWID` table, so iteration follows memcmp order of the keys (and
therefore numeric order of big-endian encoded ids).

Every committed write is published to the keyspace's active subscribers.
Subscribers are pull-based async iterators that can be fed from any thread.

Invariants:
    - Writes are atomic per key and serialized by the database lock
    - Events are published in commit order, per keyspace
    - iter() never holds the database lock between yielded items, so
      writers are not blocked by slow consumers
    - flush() checkpoints on its own connection and never holds the lock
    - sqlite3 errors surface as StorageError

How to change safely:
    - Keyspace names are table names on disk; never rename one in place
    - Keep publication inside the write lock or event order breaks
    - Test concurrent writers from threads and tasks
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
import threading
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from ..errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_PATH = "db"
DB_FILENAME = "forum.sqlite3"
ITER_BATCH_SIZE = 256

_KEYSPACE_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


@dataclass(frozen=True)
class Insert:
    """A key was written.

    Attributes:
        key: Raw key bytes
        value: New value bytes
        previous: Value replaced by this write, None for a new key
    """

    key: bytes
    value: bytes
    previous: bytes | None = None


@dataclass(frozen=True)
class Remove:
    """A key was removed.

    Attributes:
        key: Raw key bytes
        previous: Value that was removed
    """

    key: bytes
    previous: bytes | None = None


Event = Union[Insert, Remove]


class Subscriber:
    """Asynchronous stream of change events for one keyspace.

    Events are buffered from the moment the subscriber is created, so a
    caller that subscribes before writing will observe its own writes.

    Thread safety:
        Publication may happen on any thread; the waiting task is woken on
        its own event loop via call_soon_threadsafe.

    Example:
        >>> async with keyspace.watch() as sub:
        ...     async for event in sub:
        ...         handle(event)
    """

    def __init__(self, keyspace: Keyspace) -> None:
        self._keyspace = keyspace
        self._pending: deque[Event] = deque()
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._waiter: asyncio.Future | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _publish(self, event: Event) -> None:
        with self._lock:
            if self._closed:
                return
            self._pending.append(event)
            loop, waiter = self._loop, self._waiter
        self._wake_from_any_thread(loop, waiter)

    @staticmethod
    def _wake(waiter: asyncio.Future) -> None:
        if not waiter.done():
            waiter.set_result(None)

    def _wake_from_any_thread(
        self,
        loop: asyncio.AbstractEventLoop | None,
        waiter: asyncio.Future | None,
    ) -> None:
        if loop is None or waiter is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._wake, waiter)

    def __aiter__(self) -> Subscriber:
        return self

    async def __anext__(self) -> Event:
        while True:
            with self._lock:
                if self._pending:
                    return self._pending.popleft()
                if self._closed:
                    raise StopAsyncIteration
                self._loop = asyncio.get_running_loop()
                waiter = self._loop.create_future()
                self._waiter = waiter
            try:
                await waiter
            finally:
                with self._lock:
                    if self._waiter is waiter:
                        self._waiter = None

    def close(self) -> None:
        """Stop receiving events and wake any pending waiter."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._pending.clear()
            loop, waiter = self._loop, self._waiter
        self._keyspace._unsubscribe(self)
        self._wake_from_any_thread(loop, waiter)

    async def __aenter__(self) -> Subscriber:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class Keyspace:
    """A named ordered map from bytes to bytes.

    Handles are cached per Database and safe to share across threads and
    tasks.
    """

    def __init__(self, db: Database, name: str) -> None:
        self.db = db
        self.name = name
        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Keyspace({self.name!r})"

    def get(self, key: bytes) -> bytes | None:
        row = self.db._fetchone(f'SELECT value FROM "{self.name}" WHERE key = ?', (key,), self.name)
        return None if row is None else bytes(row[0])

    def insert(self, key: bytes, value: bytes) -> bytes | None:
        """Write a value and return the value it replaced."""
        with self.db._lock:
            previous = self.db._transact(
                lambda conn: self._put(conn, key, value), self.name
            )
            self._publish(Insert(key=bytes(key), value=bytes(value), previous=previous))
        return previous

    def remove(self, key: bytes) -> bytes | None:
        """Delete a key and return the removed value (None if absent)."""
        with self.db._lock:
            previous = self.db._transact(lambda conn: self._delete(conn, key), self.name)
            if previous is not None:
                self._publish(Remove(key=bytes(key), previous=previous))
        return previous

    def fetch_and_update(
        self,
        key: bytes,
        update: Callable[[bytes | None], bytes | None],
    ) -> bytes | None:
        """Atomically replace the value of `key` with `update(old)`.

        Returning None from `update` removes the key.

        Returns:
            The old value (None if the key was absent)
        """
        with self.db._lock:

            def apply(conn: sqlite3.Connection) -> tuple[bytes | None, bytes | None]:
                old = self._select(conn, key)
                new = update(old)
                if new is None:
                    self._delete(conn, key)
                else:
                    self._put(conn, key, new)
                return old, new

            old, new = self.db._transact(apply, self.name)
            if new is None:
                if old is not None:
                    self._publish(Remove(key=bytes(key), previous=old))
            else:
                self._publish(Insert(key=bytes(key), value=bytes(new), previous=old))
        return old

    def iter(self, reverse: bool = False) -> Iterator[tuple[bytes, bytes]]:
        """Lazily iterate (key, value) pairs in key order.

        The sequence is restartable by calling iter() again. Rows are read
        in batches, so a row written while iterating shows up only if it
        sorts after the current batch; no row is yielded twice.
        """
        order, compare = ("DESC", "<") if reverse else ("ASC", ">")
        first = f'SELECT key, value FROM "{self.name}" ORDER BY key {order} LIMIT ?'
        after = f'SELECT key, value FROM "{self.name}" WHERE key {compare} ? ORDER BY key {order} LIMIT ?'
        rows = self.db._fetchall(first, (ITER_BATCH_SIZE,), self.name)
        while rows:
            for key, value in rows:
                yield bytes(key), bytes(value)
            if len(rows) < ITER_BATCH_SIZE:
                return
            rows = self.db._fetchall(after, (rows[-1][0], ITER_BATCH_SIZE), self.name)

    def __iter__(self) -> Iterator[tuple[bytes, bytes]]:
        return self.iter()

    def __len__(self) -> int:
        row = self.db._fetchone(f'SELECT COUNT(*) FROM "{self.name}"', (), self.name)
        return int(row[0])

    def is_empty(self) -> bool:
        return self.db._fetchone(f'SELECT 1 FROM "{self.name}" LIMIT 1', (), self.name) is None

    def watch(self) -> Subscriber:
        """Subscribe to every subsequent write on this keyspace."""
        subscriber = Subscriber(self)
        with self._subscribers_lock:
            self._subscribers.append(subscriber)
        logger.debug("Keyspace subscriber added", extra={"keyspace": self.name})
        return subscriber

    async def flush(self) -> None:
        await self.db.flush()

    def _unsubscribe(self, subscriber: Subscriber) -> None:
        with self._subscribers_lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
        logger.debug("Keyspace subscriber removed", extra={"keyspace": self.name})

    def _publish(self, event: Event) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber._publish(event)

    def _select(self, conn: sqlite3.Connection, key: bytes) -> bytes | None:
        row = conn.execute(f'SELECT value FROM "{self.name}" WHERE key = ?', (key,)).fetchone()
        return None if row is None else bytes(row[0])

    def _put(self, conn: sqlite3.Connection, key: bytes, value: bytes) -> bytes | None:
        previous = self._select(conn, key)
        conn.execute(
            f'INSERT INTO "{self.name}" (key, value) VALUES (?, ?) '
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        return previous

    def _delete(self, conn: sqlite3.Connection, key: bytes) -> bytes | None:
        previous = self._select(conn, key)
        if previous is not None:
            conn.execute(f'DELETE FROM "{self.name}" WHERE key = ?', (key,))
        return previous


class Database:
    """A single on-disk database holding named ordered keyspaces.

    This class owns one SQLite connection shared by all keyspaces. Access
    is serialized by a re-entrant lock, which also orders change events.

    Example:
        >>> with Database("db") as db:
        ...     posts = db.open_keyspace("posts")
        ...     posts.insert(b"k", b"v")
    """

    def __init__(
        self,
        path: str | Path = DEFAULT_PATH,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Open (or create) the database in directory `path`.

        Args:
            path: Storage directory
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout

        Raises:
            StorageError: If the database cannot be opened
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = threading.RLock()
        self._keyspaces: dict[str, Keyspace] = {}
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self.path / DB_FILENAME),
                timeout=busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
                check_same_thread=False,
            )
            self._conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
            if wal_mode:
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"cannot open database at {self.path}: {e}") from e
        self._closed = False
        logger.info("Opened database", extra={"path": str(self.path)})

    def open_keyspace(self, name: str) -> Keyspace:
        """Open (creating if needed) the keyspace called `name`."""
        if not _KEYSPACE_NAME.match(name):
            raise ValueError(f"Invalid keyspace name: {name!r}")
        with self._lock:
            keyspace = self._keyspaces.get(name)
            if keyspace is None:
                self._execute(
                    f'CREATE TABLE IF NOT EXISTS "{name}" '
                    "(key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID",
                    (),
                    name,
                )
                keyspace = Keyspace(self, name)
                self._keyspaces[name] = keyspace
            return keyspace

    async def flush(self) -> None:
        """Wait until all prior writes are durable on disk."""
        await asyncio.to_thread(self.flush_sync)

    def flush_sync(self) -> None:
        """Checkpoint the WAL on a short-lived connection of its own.

        Does not take the database lock, so writers on other threads and
        on the event loop keep going while the checkpoint runs.
        """
        if not self.wal_mode:
            return
        if self._closed:
            raise StorageError(f"database at {self.path} is closed")
        try:
            conn = sqlite3.connect(
                str(self.path / DB_FILENAME),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
            try:
                conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"checkpoint failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
        logger.info("Closed database", extra={"path": str(self.path)})

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _execute(self, sql: str, params: tuple, keyspace: str | None) -> None:
        with self._lock:
            try:
                self._conn.execute(sql, params)
            except sqlite3.Error as e:
                raise StorageError(str(e), keyspace=keyspace) from e

    def _fetchone(self, sql: str, params: tuple, keyspace: str | None) -> tuple | None:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise StorageError(str(e), keyspace=keyspace) from e

    def _fetchall(self, sql: str, params: tuple, keyspace: str | None) -> list[tuple]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e), keyspace=keyspace) from e

    def _transact(self, work: Callable[[sqlite3.Connection], object], keyspace: str) -> object:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(str(e), keyspace=keyspace) from e
            try:
                result = work(self._conn)
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._conn.execute("ROLLBACK")
                raise StorageError(str(e), keyspace=keyspace) from e
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            return result
