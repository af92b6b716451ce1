"""Exception hierarchy for relkit."""

from __future__ import annotations


class RelkitError(Exception):
    """Base class for every error raised by relkit."""


class ConfigurationError(RelkitError):
    """Raised when models, associations or the database are set up incorrectly.

    Configuration errors are raised at definition time (or before any SQL is
    issued) and are never retried.
    """


class ValidationError(RelkitError):
    """Raised when a definition is rejected before any SQL is generated."""


class ConnectionError(RelkitError):  # noqa: A001
    """Raised when a connection to the database cannot be opened."""

    def __init__(self, original: BaseException | str) -> None:
        self.original = original
        super().__init__(str(original))


class EmptyResultError(RelkitError):
    """Raised when a query that must return rows returns none."""


class DatabaseError(RelkitError):
    """A statement failed to execute.

    Carries the driver's exception and the SQL text that caused it.

    Example:
        >>> try:
        ...     await db.query("SELECT * FROM missing")
        ... except DatabaseError as err:
        ...     print(err.sql, err.original)
    """

    def __init__(self, original: BaseException, sql: str | None = None) -> None:
        self.original = original
        self.sql = sql
        message = str(original)
        if sql:
            message = f"{message} [sql: {sql}]"
        super().__init__(message)


class UniqueConstraintError(DatabaseError):
    """A statement violated a unique or primary key constraint."""


class ForeignKeyConstraintError(DatabaseError):
    """A statement violated a foreign key constraint."""
