"""
Integration tests for the HTTP API.

Every test runs the application through TestClient inside `with`, so the
lifespan (version checks, auth backend) runs as it does in production.
The SSE routes stream forever and are covered at the feed level in
tests/unit/test_feeds.py.
"""

import tempfile

import pytest
from fastapi.testclient import TestClient

from lunachat.api import create_app
from lunachat.auth import PasswordHasher
from lunachat.config import Settings
from lunachat.errors import SchemaOutdatedError
from lunachat.state import ForumState
from lunachat.state.engine import Database
from lunachat.state.keys import PostId, TableType, ThreadId, UserId
from lunachat.state.post import Post

FAST_HASH = "pbkdf2:sha256:1000"


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
def client(state):
    """Test client over a fresh forum."""
    app = create_app(Settings(session_secret="test-secret"), state, PasswordHasher(FAST_HASH))
    with TestClient(app) as test_client:
        yield test_client


def register(client, username="alice", password="pw", **data):
    return client.post(
        "/register",
        data={"username": username, "password": password, **data},
        follow_redirects=False,
    )


def start_thread(client, title="Hello", body="first post"):
    return client.post("/thread", data={"title": title, "body": body}, follow_redirects=False)


class TestBasics:
    """Health, static files and the empty forum."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_empty_forum(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert 'sse-connect="/sse"' in response.text
        assert "Log in" in response.text
        assert "new-thread" not in response.text

    def test_static_stylesheet(self, client):
        response = client.get("/static/style.css")
        assert response.status_code == 200

    def test_lifespan_initializes_versions(self, client, state):
        assert state.versions.outdated() == {}
        assert state.versions.get(TableType.POSTS) == 3


class TestAccounts:
    """Register, log in and log out."""

    def test_register_logs_in(self, client):
        response = register(client)
        assert response.status_code == 303
        assert response.headers["location"] == "/"

        page = client.get("/")
        assert "alice" in page.text
        assert "new-thread" in page.text

    def test_register_duplicate(self, client):
        register(client)
        client.get("/logout")
        response = register(client, password="other")
        assert response.status_code == 200
        assert "Username already taken" in response.text

    def test_register_empty_username(self, client):
        response = register(client, username="")
        assert response.status_code == 200
        assert "Username must not be empty" in response.text

    def test_login_page(self, client):
        response = client.get("/login", params={"next": "/thread/1"})
        assert response.status_code == 200
        assert 'value="/thread/1"' in response.text

    def test_login_wrong_password(self, client):
        register(client)
        client.get("/logout")
        response = client.post("/login", data={"username": "alice", "password": "nope"})
        assert response.status_code == 200
        assert "Username or password incorrect" in response.text

    def test_login_unknown_user(self, client):
        response = client.post("/login", data={"username": "ghost", "password": "pw"})
        assert "Username or password incorrect" in response.text

    def test_login_follows_next(self, client):
        register(client)
        client.get("/logout")
        response = client.post(
            "/login",
            data={"username": "alice", "password": "pw", "next": "/thread/1"},
            follow_redirects=False,
        )
        assert response.status_code == 303
        assert response.headers["location"] == "/thread/1"

    def test_login_ignores_foreign_next(self, client):
        register(client)
        client.get("/logout")
        response = client.post(
            "/login",
            data={"username": "alice", "password": "pw", "next": "//evil.example/"},
            follow_redirects=False,
        )
        assert response.headers["location"] == "/"

    def test_logout(self, client):
        register(client)
        response = client.get("/logout", follow_redirects=False)
        assert response.status_code == 303
        assert "Log in" in client.get("/").text

    def test_password_change_ends_session(self, client, state):
        """A session bound to an old password hash is logged out."""
        register(client)
        user = state.users.get_by_username("alice")
        user.password = PasswordHasher(FAST_HASH).hash("new password")
        state.users.insert(user.key, user)

        page = client.get("/")
        assert "Log in" in page.text
        assert "new-thread" not in page.text


class TestThreads:
    """Creating, viewing and replying to threads."""

    def test_anonymous_post_redirects_to_login(self, client, state):
        response = start_thread(client)
        assert response.status_code == 303
        assert response.headers["location"] == "/login?next=/"
        assert list(state.threads.keys()) == []

    def test_anonymous_reply_redirects_to_login(self, client):
        response = client.post("/thread/1", data={"body": "x"}, follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/login?next=/thread/1"

    def test_create_and_view(self, client):
        register(client)
        response = start_thread(client, title="Hello", body="<b>first</b><script>x()</script>")
        assert response.status_code == 303
        assert response.headers["location"] == "/thread/1"

        page = client.get("/thread/1")
        assert page.status_code == 200
        assert "Hello" in page.text
        assert "<b>first</b>" in page.text
        assert "<script>x()" not in page.text
        assert 'sse-connect="/thread/1/sse"' in page.text

        forum = client.get("/")
        assert 'href="/thread/1"' in forum.text

    def test_reply_redirects(self, client, state):
        register(client)
        start_thread(client)
        response = client.post("/thread/1", data={"body": "a reply"}, follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/thread/1"
        assert state.posts.get(PostId(2)).parent == PostId(1)
        assert "a reply" in client.get("/thread/1").text

    def test_boosted_reply_is_empty(self, client):
        """htmx requests get an empty 200; the post arrives over SSE."""
        register(client)
        start_thread(client)
        response = client.post(
            "/thread/1",
            data={"body": "boosted"},
            headers={"HX-Boosted": "true"},
            follow_redirects=False,
        )
        assert response.status_code == 200
        assert response.content == b""

    def test_thread_page_order(self, client):
        register(client)
        start_thread(client, body="root-body")
        for body in ["reply-alpha", "reply-beta"]:
            client.post("/thread/1", data={"body": body})
        text = client.get("/thread/1").text
        assert text.index("root-body") < text.index("reply-alpha") < text.index("reply-beta")

    def test_missing_thread(self, client):
        response = client.get("/thread/99")
        assert response.status_code == 500
        assert response.text == "Internal Server Error"

    def test_reply_to_missing_thread(self, client):
        register(client)
        response = client.post("/thread/42", data={"body": "x"}, follow_redirects=False)
        assert response.status_code == 500

    def test_invalid_id(self, client):
        assert client.get("/thread/-1").status_code == 422
        assert client.get("/thread/abc").status_code == 422


class TestUsers:
    """Profile pages."""

    def test_user_page(self, client):
        register(client)
        response = client.get("/user/1")
        assert response.status_code == 200
        assert "<h1>alice</h1>" in response.text

    def test_missing_user(self, client):
        assert client.get("/user/9").status_code == 500

    def test_escapes_username(self, client):
        register(client, username="<b>bob</b>")
        response = client.get("/user/1")
        assert "&lt;b&gt;bob&lt;/b&gt;" in response.text


class TestStartup:
    """Version checks in the lifespan."""

    def test_refuses_stale_tables(self, state):
        post = Post(PostId(1), "x", UserId(1), None, [], ThreadId(1))
        state.posts.insert(PostId(1), post)
        state.versions.insert(TableType.POSTS, 1)

        app = create_app(Settings(session_secret="test-secret"), state)
        with pytest.raises(SchemaOutdatedError):
            with TestClient(app):
                pass
