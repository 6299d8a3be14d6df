"""
Authentication backend.

Verifies credentials against the Users store, binds sessions to the
password hash and answers permission checks. Password hashing and
verification are CPU-bound and run on the default thread-pool executor so
they never block the event loop.

Invariants:
    - The password hash is only read here; it is never logged
    - A session is valid only while its token matches the user's current
      password hash, so changing a password ends every session
    - Every authenticated user holds Permission.POST; there are no roles

How to change safely:
    - Keep the hasher behind PasswordHasher so tests can swap the cost
    - Existing hashes must stay verifiable when the hash method changes
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import AuthError, ForumError, TaskError
from .state.keys import UserId
from .state.user import User, Users

logger = logging.getLogger(__name__)

USERNAME_TAKEN = "Username already taken"
LOGIN_FAILED = "Username or password incorrect"


class Credentials(BaseModel):
    """Login or registration form."""

    username: str = Field(..., min_length=1, description="Login name")
    password: str = Field(..., description="Plain-text password")
    next: str | None = Field(None, description="Where to go after logging in")


class Permission(Enum):
    POST = "post"


class PasswordHasher:
    """Salted password hashing via werkzeug.security.

    Attributes:
        method: werkzeug hash method, e.g. "scrypt" or "pbkdf2:sha256"
    """

    def __init__(self, method: str = "scrypt") -> None:
        self.method = method

    def hash(self, password: str) -> str:
        """Hash a password with a fresh random salt.

        Raises:
            AuthError: If the hash method is unusable
        """
        try:
            return generate_password_hash(password, method=self.method)
        except (ValueError, TypeError) as e:
            raise AuthError(f"Failed to hash password: {e}") from e

    def verify(self, password: str, stored: str) -> bool:
        if not stored:
            return False
        try:
            return check_password_hash(stored, password)
        except (ValueError, TypeError) as e:
            raise AuthError(f"Failed to verify password: {e}") from e


@dataclass
class RegisterResult:
    """Outcome of a registration attempt: a new user or an error message."""

    user: User | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.user is not None


def session_auth_hash(user: User) -> bytes:
    """Bytes a session is bound to: the user's password hash."""
    return user.password.encode("utf-8")


def session_token(user: User, secret: str) -> str:
    """Keyed digest of the session auth hash, safe to keep in a client cookie."""
    return hmac.new(secret.encode("utf-8"), session_auth_hash(user), hashlib.sha256).hexdigest()


def session_token_matches(user: User, secret: str, token: str) -> bool:
    return hmac.compare_digest(session_token(user, secret), token)


class AuthBackend:
    """Credential checks and user lookups over the Users store.

    Example:
        >>> backend = AuthBackend(state.users)
        >>> user = await backend.authenticate(Credentials(username="alice", password="hunter2"))
    """

    def __init__(self, users: Users, hasher: PasswordHasher | None = None) -> None:
        self.users = users
        self.hasher = hasher or PasswordHasher()

    async def authenticate(self, creds: Credentials) -> User | None:
        """Return the user if the password matches, else None.

        Raises:
            AuthError: If the stored hash cannot be checked
            TaskError: If the executor fails to run the check
        """
        user = self.users.get_by_username(creds.username)
        if user is None:
            logger.info("Login for unknown username", extra={"username": creds.username})
            return None

        ok = await self._run_blocking(self.hasher.verify, creds.password, user.password)
        if not ok:
            logger.info("Login with wrong password", extra={"user_id": int(user.key)})
            return None
        return user

    async def get_user(self, user_id: UserId) -> User | None:
        return self.users.get(user_id)

    async def get_user_permissions(self, user: User) -> set[Permission]:
        return {Permission.POST}

    async def has_perm(self, user: User | None, permission: Permission) -> bool:
        if user is None:
            return False
        return permission in await self.get_user_permissions(user)

    async def register(self, creds: Credentials) -> RegisterResult:
        """Create a user unless the username is taken.

        Hashing suspends this coroutine, so the early lookup only saves a
        wasted hash; the username is claimed atomically by Users.create().
        A lost race leaves a gap in the user ids.

        Raises:
            AuthError: If hashing fails
            StorageError: If the user cannot be stored
        """
        if self.users.get_by_username(creds.username) is not None:
            return RegisterResult(error=USERNAME_TAKEN)

        password = await self._run_blocking(self.hasher.hash, creds.password)
        key = self.users.next_key()
        user = User(key=key, username=creds.username, password=password, avatar=None)
        if not self.users.create(key, user):
            return RegisterResult(error=USERNAME_TAKEN)
        await self.users.flush()

        logger.info("Registered user", extra={"user_id": int(key), "username": user.username})
        return RegisterResult(user=user)

    async def _run_blocking(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except ForumError:
            raise
        except RuntimeError as e:
            raise TaskError(f"Blocking task failed: {e}") from e
