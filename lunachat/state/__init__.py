"""
Persistent forum state.

ForumState is the process-wide bundle of store handles over one Database.
It is created once at startup, shared by every request and subscriber,
and released at shutdown.

Example:
    >>> async with await ForumState.open("db") as state:
    ...     thread = state.threads.get(ThreadId(1))
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .engine import DEFAULT_PATH, Database, Event, Insert, Remove, Subscriber
from .keys import PostId, TableType, ThreadId, UserId
from .post import Post, Posts
from .sanitizer import Sanitizer
from .table import HIGHEST_KEYS, POSTS, THREADS, USERNAMES, USERS, VERSIONS, HighestKeys, Versions
from .thread import Thread, Threads
from .user import User, Users

__all__ = [
    "DEFAULT_PATH",
    "Database",
    "Event",
    "ForumState",
    "Insert",
    "Post",
    "PostId",
    "Posts",
    "Remove",
    "Sanitizer",
    "Subscriber",
    "TableType",
    "Thread",
    "ThreadId",
    "Threads",
    "User",
    "UserId",
    "Users",
]


@dataclass
class ForumState:
    """Store handles sharing one database.

    Attributes:
        db: The open database
        posts: Posts store
        threads: Threads store
        users: Users store with username index
        highest_keys: Id allocator
        versions: Table version registry
        sanitizer: HTML cleaner for titles and bodies
    """

    db: Database
    posts: Posts
    threads: Threads
    users: Users
    highest_keys: HighestKeys
    versions: Versions
    sanitizer: Sanitizer

    @classmethod
    def from_database(cls, db: Database, sanitizer: Sanitizer | None = None) -> ForumState:
        """Build store handles over an already open database."""
        highest_keys = HighestKeys(db.open_keyspace(HIGHEST_KEYS))
        return cls(
            db=db,
            posts=Posts(db.open_keyspace(POSTS), highest_keys),
            threads=Threads(db.open_keyspace(THREADS), highest_keys),
            users=Users(db.open_keyspace(USERS), db.open_keyspace(USERNAMES), highest_keys),
            highest_keys=highest_keys,
            versions=Versions(db.open_keyspace(VERSIONS)),
            sanitizer=sanitizer or Sanitizer(),
        )

    @classmethod
    async def open(
        cls,
        path: str | Path = DEFAULT_PATH,
        sanitizer: Sanitizer | None = None,
    ) -> ForumState:
        """Open the database at `path` and initialize absent table versions.

        Raises:
            StorageError: If the database cannot be opened
        """
        db = Database(path)
        try:
            state = cls.from_database(db, sanitizer)
            await state.versions.ensure_initialized()
        except BaseException:
            db.close()
            raise
        return state

    async def flush(self) -> None:
        await self.db.flush()

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> ForumState:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def __aenter__(self) -> ForumState:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()
