"""
Threads: a title plus the id of the thread's root post.
"""

from __future__ import annotations

from dataclasses import dataclass

from .codec import STR, RecordCodec
from .engine import Keyspace
from .keys import POST_ID, THREAD_ID, PostId, TableType, ThreadId
from .table import HighestKeys, Table


@dataclass
class Thread:
    """A titled thread rooted at `post`."""

    key: ThreadId
    title: str
    post: PostId


THREAD_CODEC = RecordCodec(
    Thread,
    (
        ("key", THREAD_ID),
        ("title", STR),
        ("post", POST_ID),
    ),
)


class Threads(Table[ThreadId, Thread]):
    """ThreadId -> Thread, plus id allocation."""

    def __init__(self, keyspace: Keyspace, highest_keys: HighestKeys) -> None:
        super().__init__(keyspace, THREAD_ID, THREAD_CODEC, key_type=ThreadId)
        self.highest_keys = highest_keys

    def next_key(self) -> ThreadId:
        return ThreadId(self.highest_keys.next(TableType.THREADS))

    def find_by_root(self, post: PostId) -> Thread | None:
        """Thread whose root post is `post`."""
        for thread in self.values():
            if thread.post == post:
                return thread
        return None
