"""
Users and the username index.

Users live in two keyspaces: `users` (UserId -> User) and `usernames`
(UTF-8 username -> UserId). The two writes of insert() and create() are
not transactional. New users go through create(), which claims the
username atomically before writing the record. A username that resolves to an id without a user record is
reported as not found; the index is authoritative only when both hops
resolve.

Invariants:
    - users[usernames[u.username]] == u for every stored user
    - Usernames are non-empty
    - The password hash never appears in repr() or log records
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .codec import STR, OptionCodec, RecordCodec
from .engine import Keyspace
from .keys import USER_ID, TableType, UserId
from .table import HighestKeys, Table

logger = logging.getLogger(__name__)


@dataclass(repr=False)
class User:
    """A registered user.

    Attributes:
        key: User id
        username: Unique login name
        password: Salted password hash (opaque)
        avatar: Optional avatar URL
    """

    key: UserId
    username: str
    password: str
    avatar: str | None = None

    def __repr__(self) -> str:
        return (
            f"User(key={self.key!r}, username={self.username!r}, "
            f"password='[redacted]', avatar={self.avatar!r})"
        )


USER_CODEC = RecordCodec(
    User,
    (
        ("key", USER_ID),
        ("username", STR),
        ("password", STR),
        ("avatar", OptionCodec(STR)),
    ),
)


class Users(Table[UserId, User]):
    """UserId -> User with a username secondary index."""

    def __init__(
        self,
        keyspace: Keyspace,
        usernames: Keyspace,
        highest_keys: HighestKeys,
    ) -> None:
        super().__init__(keyspace, USER_ID, USER_CODEC, key_type=UserId)
        self.usernames = usernames
        self.highest_keys = highest_keys

    def next_key(self) -> UserId:
        return UserId(self.highest_keys.next(TableType.USERS))

    def insert(self, key: UserId, user: User) -> None:
        """Write the user record, then the username index entry.

        Raises:
            ValueError: If the username is empty
        """
        if not user.username:
            raise ValueError("username must not be empty")
        super().insert(key, user)
        self.usernames.insert(user.username.encode("utf-8"), self.encode_key(key))

    def get_by_username(self, username: str) -> User | None:
        raw_key = self.usernames.get(username.encode("utf-8"))
        if raw_key is None:
            return None
        raw_user = self.keyspace.get(raw_key)
        if raw_user is None:
            logger.warning(
                "Username index points at a missing user",
                extra={"username": username, "user_id": int(self.decode_key(raw_key))},
            )
            return None
        return self.decode_value(raw_user)

    def create(self, key: UserId, user: User) -> bool:
        """Store a new user only if its username is still free.

        The index entry is claimed with one atomic read-modify-write, then
        the user record is written. Of two concurrent creates for the same
        username exactly one succeeds.

        Returns:
            False if the username was already claimed; nothing is written

        Raises:
            ValueError: If the username is empty
        """
        if not user.username:
            raise ValueError("username must not be empty")
        raw_key = self.encode_key(key)
        previous = self.usernames.fetch_and_update(
            user.username.encode("utf-8"),
            lambda old: raw_key if old is None else old,
        )
        if previous is not None:
            logger.info("Username already claimed", extra={"username": user.username})
            return False
        super().insert(key, user)
        return True

    async def flush(self) -> None:
        await self.keyspace.flush()
        await self.usernames.flush()
