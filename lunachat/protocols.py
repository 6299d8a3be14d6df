"""
Mutation protocols and page read models.

create_thread and reply are the only code paths that write posts and
threads while the server runs. Both sanitize client text before storing
it and keep the post tree consistent:

    create_thread: root post (parent None) first, then the thread row
    reply:         child post first, then the parent's children list

Invariants:
    - A post's thread equals its parent's thread
    - Each thread has exactly one root post and thread.post points at it
    - Replies attach to the latest post of the thread, so a thread's posts
      form a chain

Concurrency:
    Each protocol is a sequence of separate writes. Between the child
    insert and the parent update of a reply, readers may see a child that
    its parent does not list yet; thread_posts() tolerates this. A crash
    between the two writes of create_thread leaves an orphan root post.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import (
    NotLoggedInError,
    PostNotFoundError,
    ThreadHasNoPostsError,
    ThreadNotFoundError,
    UserNotFoundError,
)
from .feeds import PostCard, ThreadCard, post_card, thread_card
from .state import ForumState
from .state.keys import PostId, ThreadId, UserId
from .state.post import Post
from .state.thread import Thread
from .state.user import User

logger = logging.getLogger(__name__)


def _author_key(author: User | None) -> UserId:
    if author is None:
        raise NotLoggedInError()
    return author.key


async def create_thread(
    state: ForumState,
    author: User | None,
    title: str,
    body: str,
) -> ThreadId:
    """Start a thread with `body` as its root post.

    Raises:
        NotLoggedInError: If there is no author
        StorageError: If a write fails
    """
    author_key = _author_key(author)
    thread_key = state.threads.next_key()
    post_key = state.posts.next_key()

    post = Post(
        key=post_key,
        body=state.sanitizer.clean(body),
        author=author_key,
        parent=None,
        children=[],
        thread=thread_key,
    )
    state.posts.insert(post_key, post)
    await state.posts.flush()

    thread = Thread(key=thread_key, title=state.sanitizer.clean(title), post=post_key)
    state.threads.insert(thread_key, thread)
    await state.threads.flush()

    logger.info(
        "Created thread",
        extra={"thread_id": int(thread_key), "post_id": int(post_key), "user_id": int(author_key)},
    )
    return thread_key


async def reply(
    state: ForumState,
    author: User | None,
    thread_key: ThreadId,
    body: str,
) -> tuple[PostId, ThreadId]:
    """Append a reply to the latest post of a thread.

    Returns:
        (new post id, thread id re-derived from the parent)

    Raises:
        NotLoggedInError: If there is no author
        ThreadHasNoPostsError: If the thread has no posts
        PostNotFoundError: If the parent vanished
    """
    author_key = _author_key(author)

    latest = state.posts.latest_in_thread(thread_key)
    if latest is None:
        raise ThreadHasNoPostsError(thread_key)
    parent_key = latest.key

    parent = state.posts.get(parent_key)
    if parent is None:
        raise PostNotFoundError(parent_key)
    thread_key = parent.thread

    key = state.posts.next_key()
    post = Post(
        key=key,
        body=state.sanitizer.clean(body),
        author=author_key,
        parent=parent_key,
        children=[],
        thread=thread_key,
    )
    state.posts.insert(key, post)

    parent = state.posts.get(parent_key)
    if parent is None:
        raise PostNotFoundError(parent_key)
    parent.children.append(key)
    state.posts.insert(parent_key, parent)

    await state.posts.flush()

    logger.info(
        "Added reply",
        extra={
            "thread_id": int(thread_key),
            "post_id": int(key),
            "parent_id": int(parent_key),
            "user_id": int(author_key),
        },
    )
    return key, thread_key


def forum_cards(state: ForumState) -> list[ThreadCard]:
    """Every thread in key order, with its root post and author.

    Raises:
        PostNotFoundError: If a thread's root post is missing
        UserNotFoundError: If a root post's author is missing
    """
    return [thread_card(state, thread) for thread in state.threads.values()]


@dataclass
class ThreadPage:
    thread: Thread
    posts: list[PostCard]


def thread_posts(state: ForumState, thread_key: ThreadId) -> ThreadPage:
    """Posts of a thread in depth-first order from the root.

    Each post is visited once. A child id that does not resolve is a reply
    still being written and is left out.

    Raises:
        ThreadNotFoundError: If the thread does not exist
        PostNotFoundError: If the root post is missing
    """
    thread = state.threads.get(thread_key)
    if thread is None:
        raise ThreadNotFoundError(thread_key)

    visited: set[PostId] = set()
    ordered: list[Post] = []
    to_visit = [thread.post]
    while to_visit:
        key = to_visit.pop()
        if key in visited:
            continue
        visited.add(key)
        post = state.posts.get(key)
        if post is None:
            if key == thread.post:
                raise PostNotFoundError(key)
            logger.warning(
                "Skipping dangling child reference",
                extra={"thread_id": int(thread_key), "post_id": int(key)},
            )
            continue
        ordered.append(post)
        to_visit.extend(reversed(post.children))

    return ThreadPage(thread=thread, posts=[post_card(state, post) for post in ordered])


def user_profile(state: ForumState, user_id: UserId) -> User:
    """Raises UserNotFoundError if there is no such user."""
    user = state.users.get(user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    return user
