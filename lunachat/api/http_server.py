"""
HTTP server for LunaChat.

FastAPI application serving the forum pages, the form posts that drive the
mutation protocols and the two SSE feeds. Pages are rendered server-side;
the browser side uses htmx, which marks its boosted requests with the
HX-Boosted header.

Routes:
    GET  /                   forum page
    GET  /sse                live thread cards
    POST /thread             start a thread
    GET  /thread/{id}        thread page
    GET  /thread/{id}/sse    live reply cards of one thread
    POST /thread/{id}        reply
    GET  /user/{id}          profile page
    GET  /login, POST /login, GET /logout, POST /register
    GET  /health
    /static                  static files

Invariants:
    - Posting routes redirect anonymous users to /login
    - A session whose auth token no longer matches the user is logged out
    - Every ForumError becomes a plain 500; details only go to the log

How to change safely:
    - Keep HX-Boosted replies empty: the new post arrives over SSE
    - Test every route with TestClient inside `with` so the lifespan runs
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated
from urllib.parse import quote

from fastapi import Depends, FastAPI, Form, Path, Request
from fastapi.responses import (
    HTMLResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.middleware.sessions import SessionMiddleware

from .._version import __version__
from ..auth import (
    LOGIN_FAILED,
    AuthBackend,
    Credentials,
    PasswordHasher,
    Permission,
    session_token,
    session_token_matches,
)
from ..config import Settings
from ..errors import ForumError
from ..feeds import PostsFeed, ThreadsFeed, sse_stream
from ..protocols import create_thread, forum_cards, reply, thread_posts, user_profile
from ..render import Renderer
from ..schema import MIGRATIONS, ensure_current
from ..state import DEFAULT_PATH, ForumState
from ..state.keys import MAX_KEY, ThreadId, UserId
from ..state.user import User

logger = logging.getLogger(__name__)

SESSION_USER_ID = "user_id"
SESSION_AUTH = "auth"

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

KeyPath = Annotated[int, Path(ge=0, le=MAX_KEY)]


def get_forum(request: Request) -> ForumState:
    """Get forum state from app state."""
    return request.app.state.forum


def get_auth(request: Request) -> AuthBackend:
    return request.app.state.auth


def get_renderer(request: Request) -> Renderer:
    return request.app.state.renderer


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def current_user(
    request: Request,
    auth: AuthBackend = Depends(get_auth),
    settings: Settings = Depends(get_settings),
) -> User | None:
    """User bound to the session, or None.

    The session is cleared if the user is gone or changed their password.
    """
    user_id = request.session.get(SESSION_USER_ID)
    token = request.session.get(SESSION_AUTH)
    if user_id is None or token is None:
        return None
    user = await auth.get_user(UserId(int(user_id)))
    if user is None or not session_token_matches(user, settings.session_secret, token):
        logger.info("Session no longer valid", extra={"user_id": user_id})
        request.session.clear()
        return None
    return user


def log_in(request: Request, user: User, settings: Settings) -> None:
    request.session.clear()
    request.session[SESSION_USER_ID] = int(user.key)
    request.session[SESSION_AUTH] = session_token(user, settings.session_secret)


def safe_next(next_url: str | None) -> str:
    """Only follow local redirect targets."""
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/"


def see_other(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=303)


def login_redirect(next_url: str) -> RedirectResponse:
    return see_other(f"/login?next={quote(next_url, safe='/')}")


def create_app(
    settings: Settings | None = None,
    state: ForumState | None = None,
    hasher: PasswordHasher | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Server settings (read from the environment if omitted)
        state: Open forum state; if omitted the lifespan opens ./db and
            closes it on shutdown
        hasher: Password hasher override
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Open the forum state and check table versions."""
        forum = state if state is not None else await ForumState.open(DEFAULT_PATH)
        try:
            await forum.versions.ensure_initialized()
            await ensure_current(forum, MIGRATIONS)
            app.state.forum = forum
            app.state.auth = AuthBackend(forum.users, hasher)
            logger.info("Forum ready", extra={"path": str(forum.db.path)})
            yield
        finally:
            if state is None:
                forum.close()

    app = FastAPI(
        title="LunaChat",
        description="Threaded forum with live updates",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.renderer = Renderer(settings.templates_dir)

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        max_age=settings.session_max_age,
        same_site="lax",
    )

    @app.exception_handler(ForumError)
    async def forum_error_handler(request: Request, exc: ForumError) -> Response:
        logger.error(
            f"Request failed: {exc.message}",
            extra={"path": request.url.path, "code": exc.code, "details": exc.details},
            exc_info=exc,
        )
        return PlainTextResponse("Internal Server Error", status_code=500)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "lunachat", "version": __version__}

    @app.get("/", response_class=HTMLResponse)
    async def forum_page(
        forum: ForumState = Depends(get_forum),
        auth: AuthBackend = Depends(get_auth),
        renderer: Renderer = Depends(get_renderer),
        user: User | None = Depends(current_user),
    ):
        html = renderer.render(
            "forum.html",
            threads=forum_cards(forum),
            logged_in_user=user,
            can_post=await auth.has_perm(user, Permission.POST),
        )
        return HTMLResponse(html)

    @app.get("/sse")
    async def threads_sse(
        forum: ForumState = Depends(get_forum),
        renderer: Renderer = Depends(get_renderer),
    ):
        logger.debug("SSE connection established", extra={"feed": "threads"})
        stream = sse_stream(ThreadsFeed(forum), renderer.render_card, settings.sse_keep_alive_seconds)
        return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)

    @app.post("/thread")
    async def thread_create(
        title: str = Form(...),
        body: str = Form(...),
        forum: ForumState = Depends(get_forum),
        user: User | None = Depends(current_user),
    ):
        if user is None:
            return login_redirect("/")
        thread_key = await create_thread(forum, user, title, body)
        return see_other(f"/thread/{thread_key}")

    @app.get("/thread/{thread_id}", response_class=HTMLResponse)
    async def thread_page(
        thread_id: KeyPath,
        forum: ForumState = Depends(get_forum),
        auth: AuthBackend = Depends(get_auth),
        renderer: Renderer = Depends(get_renderer),
        user: User | None = Depends(current_user),
    ):
        page = thread_posts(forum, ThreadId(thread_id))
        html = renderer.render(
            "thread.html",
            thread=page.thread,
            posts=page.posts,
            logged_in_user=user,
            can_post=await auth.has_perm(user, Permission.POST),
        )
        return HTMLResponse(html)

    @app.get("/thread/{thread_id}/sse")
    async def posts_sse(
        thread_id: KeyPath,
        forum: ForumState = Depends(get_forum),
        renderer: Renderer = Depends(get_renderer),
    ):
        logger.debug("SSE connection established", extra={"feed": "posts", "thread_id": thread_id})
        feed = PostsFeed(forum, ThreadId(thread_id))
        stream = sse_stream(feed, renderer.render_card, settings.sse_keep_alive_seconds)
        return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)

    @app.post("/thread/{thread_id}")
    async def thread_reply(
        request: Request,
        thread_id: KeyPath,
        body: str = Form(...),
        forum: ForumState = Depends(get_forum),
        user: User | None = Depends(current_user),
    ):
        if user is None:
            return login_redirect(f"/thread/{thread_id}")
        _, thread_key = await reply(forum, user, ThreadId(thread_id), body)
        if request.headers.get("HX-Boosted"):
            return Response(status_code=200)
        return see_other(f"/thread/{thread_key}")

    @app.get("/user/{user_id}", response_class=HTMLResponse)
    async def user_page(
        user_id: KeyPath,
        forum: ForumState = Depends(get_forum),
        renderer: Renderer = Depends(get_renderer),
        user: User | None = Depends(current_user),
    ):
        html = renderer.render(
            "user.html",
            user=user_profile(forum, UserId(user_id)),
            logged_in_user=user,
        )
        return HTMLResponse(html)

    @app.get("/login", response_class=HTMLResponse)
    async def login_page(
        next: str | None = None,
        renderer: Renderer = Depends(get_renderer),
    ):
        return HTMLResponse(renderer.render("login.html", error=None, next=next))

    @app.post("/login")
    async def login(
        request: Request,
        username: str = Form(""),
        password: str = Form(""),
        next: str | None = Form(None),
        auth: AuthBackend = Depends(get_auth),
        renderer: Renderer = Depends(get_renderer),
    ):
        try:
            creds = Credentials(username=username, password=password, next=next)
        except ValidationError:
            return HTMLResponse(renderer.render("login.html", error=LOGIN_FAILED, next=next))
        user = await auth.authenticate(creds)
        if user is None:
            return HTMLResponse(renderer.render("login.html", error=LOGIN_FAILED, next=next))
        log_in(request, user, settings)
        logger.info("User logged in", extra={"user_id": int(user.key)})
        return see_other(safe_next(creds.next))

    @app.post("/register")
    async def register(
        request: Request,
        username: str = Form(""),
        password: str = Form(""),
        next: str | None = Form(None),
        auth: AuthBackend = Depends(get_auth),
        renderer: Renderer = Depends(get_renderer),
    ):
        try:
            creds = Credentials(username=username, password=password, next=next)
        except ValidationError:
            return HTMLResponse(
                renderer.render("login.html", error="Username must not be empty", next=next)
            )
        result = await auth.register(creds)
        if not result.ok:
            return HTMLResponse(renderer.render("login.html", error=result.error, next=None))
        log_in(request, result.user, settings)
        return see_other(safe_next(creds.next))

    @app.get("/logout")
    async def logout(request: Request):
        request.session.clear()
        return see_other("/")

    if settings.static_dir.exists():
        app.mount("/static", StaticFiles(directory=str(settings.static_dir)), name="static")

    return app
