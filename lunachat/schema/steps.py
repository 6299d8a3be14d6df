"""
Registered table migrations and the legacy record layouts they read.

Record history:
    User v1   key, username, password
    User v2   key, username, password, avatar
    Post v1   key, body, author
    Post v2   key, body, author, parent, children
    Post v3   key, body, author, parent, children, thread
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import MigrationError, ThreadNotFoundError
from ..state.codec import STR, ListCodec, OptionCodec, RecordCodec
from ..state.keys import POST_ID, USER_ID, PostId, TableType, UserId
from ..state.post import POST_CODEC, Post
from ..state.table import CURRENT_VERSIONS, HIGHEST_KEYS, POSTS, THREADS, USERS
from ..state.thread import Thread
from ..state.user import USER_CODEC, User
from .migrator import MigrationContext, MigrationStep, TableMigration

logger = logging.getLogger(__name__)


@dataclass
class User1:
    key: UserId
    username: str
    password: str

    def __repr__(self) -> str:
        return f"User1(key={self.key!r}, username={self.username!r}, password='[redacted]')"


@dataclass
class Post1:
    key: PostId
    body: str
    author: UserId


@dataclass
class Post2:
    key: PostId
    body: str
    author: UserId
    parent: PostId | None
    children: list[PostId]


USER1_CODEC = RecordCodec(
    User1,
    (("key", USER_ID), ("username", STR), ("password", STR)),
)

POST1_CODEC = RecordCodec(
    Post1,
    (("key", POST_ID), ("body", STR), ("author", USER_ID)),
)

POST2_CODEC = RecordCodec(
    Post2,
    (
        ("key", POST_ID),
        ("body", STR),
        ("author", USER_ID),
        ("parent", OptionCodec(POST_ID)),
        ("children", ListCodec(POST_ID)),
    ),
)


def migrate_user1(ctx: MigrationContext, user: User1) -> User:
    """Add an empty avatar and make sure the username index has the user."""
    users = ctx.state.users
    if users.usernames.get(user.username.encode("utf-8")) is None:
        users.usernames.insert(user.username.encode("utf-8"), users.encode_key(user.key))
    return User(key=user.key, username=user.username, password=user.password, avatar=None)


def migrate_post1(ctx: MigrationContext, post: Post1) -> Post2:
    """Link v1 posts into a chain along key order.

    Each post gets its predecessor as parent and its successor as only
    child, so both directions of every edge agree. The first post has no
    predecessor and becomes the root of a new untitled thread.
    """
    before, after = ctx.neighbours(POST_ID.encode(post.key))
    parent = before.key if before is not None else None
    children = [after.key] if after is not None else []

    if parent is None:
        threads = ctx.state.threads
        thread_key = threads.next_key()
        threads.insert(thread_key, Thread(key=thread_key, title="", post=post.key))
        logger.info(
            "Created thread for root post",
            extra={"thread_id": int(thread_key), "post_id": int(post.key)},
        )

    return Post2(
        key=post.key,
        body=post.body,
        author=post.author,
        parent=parent,
        children=children,
    )


def migrate_post2(ctx: MigrationContext, post: Post2) -> Post:
    """Record the thread of each post by walking up to its root."""
    root = post
    seen = {root.key}
    while root.parent is not None:
        parent = ctx.lookup(POST_ID.encode(root.parent))
        if parent is None:
            raise MigrationError(
                f"Post {root.key} has missing parent {root.parent}",
                table=TableType.POSTS.name,
            )
        if parent.key in seen:
            raise MigrationError(
                f"Cycle in parent links at post {parent.key}",
                table=TableType.POSTS.name,
            )
        seen.add(parent.key)
        root = parent

    thread = ctx.state.threads.find_by_root(root.key)
    if thread is None:
        raise ThreadNotFoundError(root.key, f"No thread is rooted at post {root.key}")

    return Post(
        key=post.key,
        body=post.body,
        author=post.author,
        parent=post.parent,
        children=list(post.children),
        thread=thread.key,
    )


MIGRATIONS: tuple[TableMigration, ...] = (
    TableMigration(
        table=TableType.USERS,
        keyspace=USERS,
        max_version=CURRENT_VERSIONS[TableType.USERS],
        steps=(MigrationStep(1, USER1_CODEC, USER_CODEC, migrate_user1),),
        key_table=TableType.USERS,
    ),
    TableMigration(
        table=TableType.THREADS,
        keyspace=THREADS,
        max_version=CURRENT_VERSIONS[TableType.THREADS],
        key_table=TableType.THREADS,
    ),
    TableMigration(
        table=TableType.POSTS,
        keyspace=POSTS,
        max_version=CURRENT_VERSIONS[TableType.POSTS],
        steps=(
            MigrationStep(1, POST1_CODEC, POST2_CODEC, migrate_post1),
            MigrationStep(2, POST2_CODEC, POST_CODEC, migrate_post2),
        ),
        key_table=TableType.POSTS,
    ),
    TableMigration(
        table=TableType.HIGHEST_KEYS,
        keyspace=HIGHEST_KEYS,
        max_version=CURRENT_VERSIONS[TableType.HIGHEST_KEYS],
    ),
)
