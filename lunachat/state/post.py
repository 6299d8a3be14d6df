"""
Posts: authored, sanitized messages arranged in a tree per thread.

Each post stores its parent id and the ids of its children, i.e. the tree
is kept as two one-way edges in the same keyspace. Dangling references are
possible for a moment between the child insert and the parent update of a
reply; readers must treat them as transient.
"""

from __future__ import annotations

from dataclasses import dataclass

from .codec import STR, ListCodec, OptionCodec, RecordCodec
from .engine import Keyspace
from .keys import POST_ID, THREAD_ID, USER_ID, PostId, TableType, ThreadId, UserId
from .table import HighestKeys, Table


@dataclass
class Post:
    """A single post.

    Attributes:
        key: Post id
        body: Sanitized HTML body
        author: Id of the user who wrote it
        parent: Post this one replies to, None for a thread root
        children: Replies to this post, in insertion order
        thread: Thread the post belongs to
    """

    key: PostId
    body: str
    author: UserId
    parent: PostId | None
    children: list[PostId]
    thread: ThreadId


POST_CODEC = RecordCodec(
    Post,
    (
        ("key", POST_ID),
        ("body", STR),
        ("author", USER_ID),
        ("parent", OptionCodec(POST_ID)),
        ("children", ListCodec(POST_ID)),
        ("thread", THREAD_ID),
    ),
)


class Posts(Table[PostId, Post]):
    """PostId -> Post, plus id allocation."""

    def __init__(self, keyspace: Keyspace, highest_keys: HighestKeys) -> None:
        super().__init__(keyspace, POST_ID, POST_CODEC, key_type=PostId)
        self.highest_keys = highest_keys

    def next_key(self) -> PostId:
        return PostId(self.highest_keys.next(TableType.POSTS))

    def latest_in_thread(self, thread: ThreadId) -> Post | None:
        """Most recently inserted post of `thread` (last in key order)."""
        for post in self.values(reverse=True):
            if post.thread == thread:
                return post
        return None
