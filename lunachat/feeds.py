"""
Live feeds and Server-Sent Events.

A feed subscribes to one table on construction and turns its change events
into cards: ThreadsFeed yields a ThreadCard for every new thread,
PostsFeed yields a PostCard for every new reply in one thread. sse_stream
renders the cards of a feed as SSE frames and interleaves keep-alive
comments.

Architecture:
    Keyspace.insert() --publish--> Subscriber --> Feed --> FeedItem
                                                               |
                                   render(card) --> sse_stream() --> client

Invariants:
    - A feed sees only writes committed after it was created
    - One failed item never ends a feed; it is yielded as FeedItem(error=...)
    - There is no ordering between tables: a thread can arrive before its
      root post is readable, so lookups that miss are retried briefly
    - Closing the SSE generator closes the feed and its subscription

How to change safely:
    - Keep feeds pull-based; never spawn a task per subscriber
    - Test with the subscriber created before the writes it must observe
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from .errors import ForumError, NotFoundError, PostNotFoundError, UserNotFoundError
from .state import ForumState
from .state.engine import Event, Insert, Subscriber
from .state.keys import PostId, ThreadId
from .state.post import Post
from .state.thread import Thread
from .state.user import User

logger = logging.getLogger(__name__)

KEEP_ALIVE_SECONDS = 1.0
KEEP_ALIVE_TEXT = "keep-alive-text"
ENRICH_RETRIES = 3
ENRICH_RETRY_DELAY = 0.05


@dataclass(frozen=True)
class ThreadCard:
    """A thread as shown in the forum list."""

    thread_id: ThreadId
    title: str
    body: str
    author: User
    sse: bool = False


@dataclass(frozen=True)
class PostCard:
    """A post as shown on a thread page."""

    post_id: PostId
    body: str
    author: User
    sse: bool = False


Card = ThreadCard | PostCard


def thread_card(state: ForumState, thread: Thread, sse: bool = False) -> ThreadCard:
    """Build the card of `thread` from its root post and author.

    Raises:
        PostNotFoundError: If the root post is missing
        UserNotFoundError: If the author is missing
    """
    post = state.posts.get(thread.post)
    if post is None:
        raise PostNotFoundError(thread.post)
    author = state.users.get(post.author)
    if author is None:
        raise UserNotFoundError(post.author)
    return ThreadCard(
        thread_id=thread.key,
        title=thread.title,
        body=post.body,
        author=author,
        sse=sse,
    )


def post_card(state: ForumState, post: Post, sse: bool = False) -> PostCard:
    """Build the card of `post`.

    Raises:
        UserNotFoundError: If the author is missing
    """
    author = state.users.get(post.author)
    if author is None:
        raise UserNotFoundError(post.author)
    return PostCard(post_id=post.key, body=post.body, author=author, sse=sse)


@dataclass(frozen=True)
class FeedItem:
    """One element of a feed: a card, or the error that replaced it."""

    card: Card | None = None
    error: ForumError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Feed:
    """Base class of table feeds.

    Subclasses implement `_watch` (open the subscription) and `_project`
    (turn one event into a FeedItem, or None to skip it).
    """

    def __init__(
        self,
        state: ForumState,
        retries: int = ENRICH_RETRIES,
        retry_delay: float = ENRICH_RETRY_DELAY,
    ) -> None:
        self.state = state
        self.retries = retries
        self.retry_delay = retry_delay
        self._subscriber = self._watch()

    def _watch(self) -> Subscriber:
        raise NotImplementedError

    async def _project(self, event: Event) -> FeedItem | None:
        raise NotImplementedError

    def __aiter__(self) -> Feed:
        return self

    async def __anext__(self) -> FeedItem:
        while True:
            event = await self._subscriber.__anext__()
            item = await self._project(event)
            if item is not None:
                return item

    def close(self) -> None:
        self._subscriber.close()

    @property
    def closed(self) -> bool:
        return self._subscriber.closed

    async def __aenter__(self) -> Feed:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    async def _enrich(self, build: Callable[[], Card]) -> Card:
        """Call `build`, retrying lookups that miss."""
        attempt = 0
        while True:
            try:
                return build()
            except NotFoundError:
                if attempt >= self.retries:
                    raise
                attempt += 1
                await asyncio.sleep(self.retry_delay)

    def _failed(self, event: Event, error: ForumError) -> FeedItem:
        logger.warning(
            "Feed item failed",
            extra={
                "feed": type(self).__name__,
                "key": event.key.hex(),
                "code": error.code,
                "error": error.message,
            },
        )
        return FeedItem(error=error)


class ThreadsFeed(Feed):
    """Cards of threads created after the feed was opened."""

    def _watch(self) -> Subscriber:
        return self.state.threads.watch()

    async def _project(self, event: Event) -> FeedItem | None:
        if not isinstance(event, Insert):
            return None
        try:
            thread = self.state.threads.decode_value(event.value)
            card = await self._enrich(lambda: thread_card(self.state, thread, sse=True))
        except ForumError as e:
            return self._failed(event, e)
        return FeedItem(card=card)


class PostsFeed(Feed):
    """Cards of replies added to one thread after the feed was opened.

    Re-inserts of existing posts (a parent gaining a child) and root posts
    are not new replies and are skipped.
    """

    def __init__(self, state: ForumState, thread_id: ThreadId, **kwargs) -> None:
        self.thread_id = thread_id
        super().__init__(state, **kwargs)

    def _watch(self) -> Subscriber:
        return self.state.posts.watch()

    async def _project(self, event: Event) -> FeedItem | None:
        if not isinstance(event, Insert) or event.previous is not None:
            return None
        try:
            post = self.state.posts.decode_value(event.value)
        except ForumError as e:
            return self._failed(event, e)
        if post.thread != self.thread_id or post.parent is None:
            return None
        try:
            card = await self._enrich(lambda: post_card(self.state, post, sse=True))
        except ForumError as e:
            return self._failed(event, e)
        return FeedItem(card=card)


def data_frame(html: str) -> str:
    """SSE frame carrying `html`, one data line per line of text."""
    lines = html.splitlines() or [""]
    return "".join(f"data: {line}\n" for line in lines) + "\n"


def error_frame(error: ForumError) -> str:
    return f"event: error\ndata: {error.message}\n\n"


def keep_alive_frame() -> str:
    return f": {KEEP_ALIVE_TEXT}\n\n"


async def sse_stream(
    feed: Feed,
    render: Callable[[Card], str],
    keep_alive: float = KEEP_ALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Render a feed as SSE text.

    Yields a data frame per card, an `error` event per failed item and a
    keep-alive comment whenever `keep_alive` seconds pass without an item.
    The pending read is kept across keep-alives, so no event is lost.

    Args:
        feed: Feed to stream; closed when the generator finishes
        render: Turns a card into an HTML fragment
        keep_alive: Seconds between keep-alive comments
    """
    pending: asyncio.Future | None = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(feed.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=keep_alive)
            if not done:
                yield keep_alive_frame()
                continue

            task, pending = pending, None
            try:
                item = task.result()
            except StopAsyncIteration:
                return

            if not item.ok:
                yield error_frame(item.error)
                continue
            try:
                html = render(item.card)
            except ForumError as e:
                logger.error("Failed to render feed item", extra={"code": e.code}, exc_info=True)
                yield error_frame(e)
                continue
            yield data_frame(html)
    finally:
        if pending is not None:
            pending.cancel()
        feed.close()
