"""
Unit tests for live feeds and SSE framing.

Tests cover:
- ThreadsFeed and PostsFeed projection rules
- Lookup retries and failed items
- SSE frames, keep-alives and stream shutdown
"""

import asyncio
import tempfile

import pytest

from lunachat.errors import PostNotFoundError, RenderError
from lunachat.feeds import (
    KEEP_ALIVE_TEXT,
    PostCard,
    PostsFeed,
    ThreadCard,
    ThreadsFeed,
    data_frame,
    error_frame,
    keep_alive_frame,
    sse_stream,
)
from lunachat.protocols import create_thread, reply
from lunachat.state import ForumState
from lunachat.state.engine import Database
from lunachat.state.keys import PostId, ThreadId, UserId
from lunachat.state.post import Post
from lunachat.state.thread import Thread
from lunachat.state.user import User


async def next_item(feed, timeout=1):
    return await asyncio.wait_for(feed.__anext__(), timeout=timeout)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def state(data_dir):
    forum = ForumState.from_database(Database(data_dir))
    yield forum
    forum.close()


@pytest.fixture
def alice(state):
    key = state.users.next_key()
    user = User(key=key, username="alice", password="hash")
    state.users.insert(key, user)
    return user


class TestThreadsFeed:
    """Tests for the forum-wide thread feed."""

    @pytest.mark.asyncio
    async def test_new_thread_card(self, state, alice):
        async with ThreadsFeed(state) as feed:
            thread_key = await create_thread(state, alice, "Hello", "first post")
            item = await next_item(feed)

        assert item.ok
        assert item.card == ThreadCard(
            thread_id=thread_key,
            title="Hello",
            body="first post",
            author=alice,
            sse=True,
        )

    @pytest.mark.asyncio
    async def test_only_later_threads(self, state, alice):
        """Threads created before the feed opened are not delivered."""
        await create_thread(state, alice, "old", "x")
        async with ThreadsFeed(state) as feed:
            new_key = await create_thread(state, alice, "new", "y")
            item = await next_item(feed)
        assert item.card.thread_id == new_key

    @pytest.mark.asyncio
    async def test_threads_in_commit_order(self, state, alice):
        async with ThreadsFeed(state) as feed:
            keys = [await create_thread(state, alice, f"t{n}", "b") for n in range(3)]
            items = [await next_item(feed) for _ in range(3)]
        assert [item.card.thread_id for item in items] == keys

    @pytest.mark.asyncio
    async def test_remove_is_skipped(self, state, alice):
        key = await create_thread(state, alice, "gone", "x")
        async with ThreadsFeed(state) as feed:
            state.threads.keyspace.remove(state.threads.encode_key(key))
            kept = await create_thread(state, alice, "kept", "y")
            item = await next_item(feed)
        assert item.card.thread_id == kept

    @pytest.mark.asyncio
    async def test_missing_root_post_yields_error(self, state, alice):
        """A thread whose root never appears becomes a failed item; the feed goes on."""
        async with ThreadsFeed(state, retries=1, retry_delay=0.01) as feed:
            state.threads.insert(ThreadId(50), Thread(key=ThreadId(50), title="x", post=PostId(50)))
            failed = await next_item(feed)
            good_key = await create_thread(state, alice, "fine", "y")
            good = await next_item(feed)

        assert not failed.ok
        assert isinstance(failed.error, PostNotFoundError)
        assert good.ok
        assert good.card.thread_id == good_key

    @pytest.mark.asyncio
    async def test_retry_finds_late_root_post(self, state, alice):
        """The root post may become readable shortly after the thread row."""
        loop = asyncio.get_running_loop()
        root = Post(
            key=PostId(7),
            body="late",
            author=alice.key,
            parent=None,
            children=[],
            thread=ThreadId(7),
        )
        async with ThreadsFeed(state, retries=5, retry_delay=0.02) as feed:
            state.threads.insert(ThreadId(7), Thread(key=ThreadId(7), title="t", post=PostId(7)))
            loop.call_later(0.03, state.posts.insert, PostId(7), root)
            item = await next_item(feed)
        assert item.ok
        assert item.card.body == "late"

    @pytest.mark.asyncio
    async def test_close(self, state):
        feed = ThreadsFeed(state)
        feed.close()
        assert feed.closed
        with pytest.raises(StopAsyncIteration):
            await feed.__anext__()


class TestPostsFeed:
    """Tests for the per-thread reply feed."""

    @pytest.mark.asyncio
    async def test_reply_card(self, state, alice):
        thread_key = await create_thread(state, alice, "t", "root")
        async with PostsFeed(state, thread_key) as feed:
            post_key, _ = await reply(state, alice, thread_key, "a reply")
            item = await next_item(feed)
        assert item.card == PostCard(post_id=post_key, body="a reply", author=alice, sse=True)

    @pytest.mark.asyncio
    async def test_parent_update_is_skipped(self, state, alice):
        """Each reply yields exactly one card, not one for the parent rewrite."""
        thread_key = await create_thread(state, alice, "t", "root")
        async with PostsFeed(state, thread_key) as feed:
            first, _ = await reply(state, alice, thread_key, "one")
            second, _ = await reply(state, alice, thread_key, "two")
            items = [await next_item(feed), await next_item(feed)]
        assert [item.card.post_id for item in items] == [first, second]

    @pytest.mark.asyncio
    async def test_other_threads_are_skipped(self, state, alice):
        mine = await create_thread(state, alice, "mine", "root")
        other = await create_thread(state, alice, "other", "root")
        async with PostsFeed(state, mine) as feed:
            await reply(state, alice, other, "elsewhere")
            here, _ = await reply(state, alice, mine, "here")
            item = await next_item(feed)
        assert item.card.post_id == here

    @pytest.mark.asyncio
    async def test_root_post_is_skipped(self, state, alice):
        """A thread created after the feed opened contributes only its replies."""
        async with PostsFeed(state, ThreadId(1)) as feed:
            thread_key = await create_thread(state, alice, "t", "root")
            assert thread_key == ThreadId(1)
            post_key, _ = await reply(state, alice, thread_key, "reply")
            item = await next_item(feed)
        assert item.card.post_id == post_key

    @pytest.mark.asyncio
    async def test_missing_author_yields_error(self, state, alice):
        thread_key = await create_thread(state, alice, "t", "root")
        async with PostsFeed(state, thread_key, retries=0) as feed:
            stray = Post(
                key=PostId(90),
                body="x",
                author=UserId(404),
                parent=PostId(1),
                children=[],
                thread=thread_key,
            )
            state.posts.insert(PostId(90), stray)
            item = await next_item(feed)
        assert not item.ok
        assert item.error.code == "NOT_FOUND"


class TestFrames:
    """Tests for SSE frame formatting."""

    def test_data_frame(self):
        assert data_frame("<p>hi</p>") == "data: <p>hi</p>\n\n"

    def test_data_frame_multiline(self):
        """Every line of the fragment gets its own data field."""
        assert data_frame("<p>\nhi\n</p>") == "data: <p>\ndata: hi\ndata: </p>\n\n"

    def test_data_frame_empty(self):
        assert data_frame("") == "data: \n\n"

    def test_keep_alive_frame(self):
        assert keep_alive_frame() == f": {KEEP_ALIVE_TEXT}\n\n"

    def test_error_frame(self):
        frame = error_frame(PostNotFoundError(PostId(3)))
        assert frame.startswith("event: error\ndata: ")
        assert frame.endswith("\n\n")


class TestSseStream:
    """Tests for sse_stream."""

    @staticmethod
    def render(card):
        return f"<p>{card.title}</p>"

    @pytest.mark.asyncio
    async def test_keep_alive_when_idle(self, state):
        feed = ThreadsFeed(state)
        stream = sse_stream(feed, self.render, keep_alive=0.02)
        try:
            assert await asyncio.wait_for(stream.__anext__(), timeout=1) == keep_alive_frame()
            assert await asyncio.wait_for(stream.__anext__(), timeout=1) == keep_alive_frame()
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_item_after_keep_alive(self, state, alice):
        """A write during a keep-alive wait is still delivered."""
        feed = ThreadsFeed(state)
        stream = sse_stream(feed, self.render, keep_alive=0.02)
        try:
            assert await asyncio.wait_for(stream.__anext__(), timeout=1) == keep_alive_frame()
            await create_thread(state, alice, "Live", "body")
            frame = keep_alive_frame()
            while frame == keep_alive_frame():
                frame = await asyncio.wait_for(stream.__anext__(), timeout=1)
            assert frame == "data: <p>Live</p>\n\n"
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_render_failure_becomes_error_event(self, state, alice):
        def broken(card):
            raise RenderError("partial/thread.html", "boom")

        feed = ThreadsFeed(state)
        stream = sse_stream(feed, broken, keep_alive=5)
        try:
            await create_thread(state, alice, "t", "b")
            frame = await asyncio.wait_for(stream.__anext__(), timeout=1)
            assert frame.startswith("event: error\n")
            assert "boom" in frame
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_aclose_closes_feed(self, state):
        feed = ThreadsFeed(state)
        stream = sse_stream(feed, self.render, keep_alive=0.02)
        await asyncio.wait_for(stream.__anext__(), timeout=1)
        await stream.aclose()
        assert feed.closed

    @pytest.mark.asyncio
    async def test_ends_when_feed_closes(self, state):
        feed = ThreadsFeed(state)
        stream = sse_stream(feed, self.render, keep_alive=5)
        feed.close()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(stream.__anext__(), timeout=1)
