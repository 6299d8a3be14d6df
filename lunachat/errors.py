"""
Error types for the LunaChat forum core.

This module defines every exception raised by the core:
- ForumError: Base exception
- CodecError: Stored bytes or identifiers could not be (de)serialized
- StorageError: The key-value engine reported a failure
- NotFoundError and its entity-specific subclasses
- AuthError, RenderError, TaskError: collaborator failures
- NotLoggedInError: a protocol needing an actor received none
- SchemaOutdatedError, MigrationError: schema version problems

Invariants:
    - All errors inherit from ForumError
    - Errors include context for debugging in `details`
    - Password hashes never appear in messages or details
"""

from __future__ import annotations

from typing import Any


class ForumError(Exception):
    """Base exception for all LunaChat errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "FORUM_ERROR"
        self.details = details or {}


class CodecError(ForumError):
    """Binary encoding or decoding failed."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Failed to serialize or deserialize data: {message}", code="CODEC_ERROR")


class StorageError(ForumError):
    """The underlying key-value engine reported an error."""

    def __init__(self, message: str, keyspace: str | None = None) -> None:
        super().__init__(
            f"Failed to interact with the database: {message}",
            code="STORAGE_ERROR",
            details={"keyspace": keyspace},
        )
        self.keyspace = keyspace


class NotFoundError(ForumError):
    """An entity referenced by id does not exist."""

    entity = "entity"

    def __init__(self, key: Any, message: str | None = None) -> None:
        super().__init__(
            message or f"{self.entity} {key} not found",
            code="NOT_FOUND",
            details={"entity": self.entity, "key": int(key)},
        )
        self.key = key


class PostNotFoundError(NotFoundError):
    entity = "Post"


class ThreadNotFoundError(NotFoundError):
    entity = "Thread"


class UserNotFoundError(NotFoundError):
    entity = "User"


class ThreadHasNoPostsError(NotFoundError):
    """A reply targeted a thread that has no posts to attach to."""

    entity = "Thread"

    def __init__(self, key: Any) -> None:
        super().__init__(key, f"Thread {key} has no posts")


class AuthError(ForumError):
    """The authentication or session subsystem failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="AUTH_ERROR")


class RenderError(ForumError):
    """A template failed to render."""

    def __init__(self, template: str, message: str) -> None:
        super().__init__(
            f"Failed to render template {template}: {message}",
            code="RENDER_ERROR",
            details={"template": template},
        )


class TaskError(ForumError):
    """A blocking task or network I/O failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="TASK_ERROR")


class NotLoggedInError(ForumError):
    """A protocol requiring an authenticated actor received none."""

    def __init__(self) -> None:
        super().__init__("Not logged in", code="NOT_LOGGED_IN")


class SchemaOutdatedError(ForumError):
    """Stored table versions are behind the running code.

    Attributes:
        outdated: Mapping of table name to (stored, required) versions
    """

    def __init__(self, outdated: dict[str, tuple[int, int]]) -> None:
        tables = ", ".join(f"{name} v{have} < v{want}" for name, (have, want) in outdated.items())
        super().__init__(
            f"Database schema is outdated ({tables}); run lunachat-migrate",
            code="SCHEMA_OUTDATED",
            details={"outdated": outdated},
        )
        self.outdated = outdated


class MigrationError(ForumError):
    """A table could not be migrated."""

    def __init__(self, message: str, table: str | None = None) -> None:
        super().__init__(message, code="MIGRATION_ERROR", details={"table": table})
        self.table = table
