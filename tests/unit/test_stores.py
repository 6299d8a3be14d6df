"""
Unit tests for the entity stores and ForumState.

Tests cover:
- Users and the username index
- Password redaction
- Post and thread lookups
- Opening and closing the forum state
"""

import logging
import tempfile
from pathlib import Path

import pytest

from lunachat.errors import StorageError
from lunachat.state import ForumState
from lunachat.state.engine import Database
from lunachat.state.keys import PostId, TableType, ThreadId, UserId
from lunachat.state.post import Post
from lunachat.state.table import USERNAMES
from lunachat.state.thread import Thread
from lunachat.state.user import User


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


class TestUsers:
    """Tests for the Users store."""

    def test_insert_and_lookup_both_ways(self, state):
        key = state.users.next_key()
        user = User(key=key, username="alice", password="hash")
        state.users.insert(key, user)

        assert state.users.get(key) == user
        assert state.users.get_by_username("alice") == user
        assert state.users.get_by_username("bob") is None

    def test_index_matches_records(self, state):
        """Every stored user is reachable through its username."""
        for name in ["alice", "bob", "carol"]:
            key = state.users.next_key()
            state.users.insert(key, User(key=key, username=name, password="h"))

        for user in state.users.values():
            assert state.users.get_by_username(user.username) == user
        assert state.users.get_by_username("carol").key == UserId(3)

    def test_create_claims_username(self, state):
        first = User(key=UserId(1), username="alice", password="one")
        second = User(key=UserId(2), username="alice", password="two")

        assert state.users.create(UserId(1), first)
        assert not state.users.create(UserId(2), second)

        assert state.users.get(UserId(2)) is None
        assert state.users.get_by_username("alice") == first

    def test_create_rejects_empty_username(self, state):
        with pytest.raises(ValueError):
            state.users.create(UserId(1), User(key=UserId(1), username="", password="h"))
        assert state.users.get_by_username("") is None

    def test_unknown_username(self, state):
        assert state.users.get_by_username("nobody") is None

    def test_dangling_index_entry(self, state, caplog):
        """An index entry without a user record reads as not found."""
        state.db.open_keyspace(USERNAMES).insert(b"ghost", UserId(9).to_bytes())
        with caplog.at_level(logging.WARNING):
            assert state.users.get_by_username("ghost") is None
        assert "missing user" in caplog.text

    def test_empty_username_rejected(self, state):
        with pytest.raises(ValueError):
            state.users.insert(UserId(1), User(key=UserId(1), username="", password="h"))
        assert state.users.get(UserId(1)) is None

    def test_unicode_username(self, state):
        key = state.users.next_key()
        state.users.insert(key, User(key=key, username="zoë", password="h"))
        assert state.users.get_by_username("zoë").key == key

    def test_repr_redacts_password(self):
        user = User(key=UserId(1), username="alice", password="pbkdf2:secret")
        assert "pbkdf2:secret" not in repr(user)
        assert "[redacted]" in repr(user)

    @pytest.mark.asyncio
    async def test_flush(self, state):
        key = state.users.next_key()
        state.users.insert(key, User(key=key, username="alice", password="h"))
        await state.users.flush()
        assert state.users.get(key) is not None


class TestPostsAndThreads:
    """Tests for the Posts and Threads stores."""

    def _post(self, n, thread, parent=None):
        return Post(
            key=PostId(n),
            body=f"post {n}",
            author=UserId(1),
            parent=PostId(parent) if parent else None,
            children=[],
            thread=ThreadId(thread),
        )

    def test_next_keys_are_independent(self, state):
        assert state.posts.next_key() == PostId(1)
        assert state.threads.next_key() == ThreadId(1)
        assert state.posts.next_key() == PostId(2)
        assert state.highest_keys.peek(TableType.POSTS) == 2

    def test_latest_in_thread(self, state):
        state.posts.insert(PostId(1), self._post(1, thread=1))
        state.posts.insert(PostId(2), self._post(2, thread=2))
        state.posts.insert(PostId(3), self._post(3, thread=1, parent=1))
        state.posts.insert(PostId(4), self._post(4, thread=2, parent=2))

        assert state.posts.latest_in_thread(ThreadId(1)).key == PostId(3)
        assert state.posts.latest_in_thread(ThreadId(2)).key == PostId(4)
        assert state.posts.latest_in_thread(ThreadId(3)) is None

    def test_find_by_root(self, state):
        state.threads.insert(ThreadId(1), Thread(key=ThreadId(1), title="a", post=PostId(1)))
        state.threads.insert(ThreadId(2), Thread(key=ThreadId(2), title="b", post=PostId(5)))
        assert state.threads.find_by_root(PostId(5)).key == ThreadId(2)
        assert state.threads.find_by_root(PostId(3)) is None

    def test_children_order_preserved(self, state):
        post = self._post(1, thread=1)
        post.children = [PostId(4), PostId(2), PostId(3)]
        state.posts.insert(PostId(1), post)
        assert state.posts.get(PostId(1)).children == [PostId(4), PostId(2), PostId(3)]


class TestForumState:
    """Tests for opening and closing the state bundle."""

    @pytest.mark.asyncio
    async def test_open_initializes_versions(self, data_dir):
        async with await ForumState.open(data_dir) as forum:
            for table in TableType:
                assert forum.versions.get(table) == 1

    @pytest.mark.asyncio
    async def test_open_keeps_data(self, data_dir):
        async with await ForumState.open(data_dir) as forum:
            key = forum.users.next_key()
            forum.users.insert(key, User(key=key, username="alice", password="h"))
            await forum.flush()

        async with await ForumState.open(data_dir) as forum:
            assert forum.users.get_by_username("alice") is not None
            assert forum.users.next_key() == UserId(2)

    @pytest.mark.asyncio
    async def test_close(self, data_dir):
        forum = await ForumState.open(data_dir)
        forum.close()
        with pytest.raises(StorageError):
            forum.posts.get(PostId(1))

    def test_sync_context_manager(self, data_dir):
        with ForumState.from_database(Database(data_dir)) as forum:
            forum.threads.insert(ThreadId(1), Thread(key=ThreadId(1), title="t", post=PostId(1)))
        with ForumState.from_database(Database(data_dir)) as forum:
            assert forum.threads.get(ThreadId(1)).title == "t"

    @pytest.mark.asyncio
    async def test_open_unusable_path(self, data_dir):
        """A path that is a regular file cannot hold the database."""
        blocker = Path(data_dir) / "not-a-dir"
        blocker.write_text("x")
        with pytest.raises(StorageError):
            await ForumState.open(blocker)
