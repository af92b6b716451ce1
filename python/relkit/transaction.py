"""Transaction handles."""

from __future__ import annotations

import logging
import uuid
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from relkit.errors import RelkitError

if TYPE_CHECKING:
    from relkit.database import Database
    from relkit.dialects.abstract import Connection

logger = logging.getLogger("relkit.transaction")


class IsolationLevel(StrEnum):
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class TransactionType(StrEnum):
    """SQLite ``BEGIN`` flavours."""

    DEFERRED = "DEFERRED"
    IMMEDIATE = "IMMEDIATE"
    EXCLUSIVE = "EXCLUSIVE"


class Transaction:
    """A database transaction, or a savepoint when it has a parent.

    A root transaction acquires its own connection, keyed by its id. Nested
    transactions share the parent's connection and run as savepoints named
    ``<id>-sp-<n>``.

    Example:
        >>> async with db.transaction() as tx:
        ...     await db.create(User(name="Alice"), transaction=tx)
        ...     # commits on exit, rolls back on any exception

        >>> tx = await db.begin(isolation_level=IsolationLevel.SERIALIZABLE)
        >>> try:
        ...     await post.set_tags([tag], transaction=tx)
        ...     await tx.commit()
        ... except Exception:
        ...     await tx.rollback()
        ...     raise
    """

    def __init__(
        self,
        database: Database,
        *,
        isolation_level: str | None = None,
        autocommit: bool | None = None,
        type: str = TransactionType.DEFERRED,
        parent: Transaction | None = None,
    ) -> None:
        self.database = database
        self.isolation_level = isolation_level
        self.autocommit = autocommit
        self.type = type
        self.parent = parent
        self.savepoints: list[Transaction] = []
        self.connection: Connection | None = None
        self.finished: str | None = None

        if parent is not None:
            self.id = parent.id
            self.name: str | None = f"{parent.id}-sp-{len(parent.savepoints)}"
            parent.savepoints.append(self)
        else:
            self.id = uuid.uuid4().hex
            self.name = None

    def __repr__(self) -> str:
        return f"<Transaction {self.name or self.id}>"

    async def prepare(self) -> Transaction:
        """Acquire the connection and issue the begin statements."""
        if self.parent is not None:
            self.connection = self.parent.connection
        else:
            self.connection = await self.database.connection_manager.get_connection(self.id)

        query_interface = self.database.query_interface
        try:
            await query_interface.start_transaction(self)
            if self.isolation_level:
                await query_interface.set_isolation_level(self, self.isolation_level)
            if self.autocommit is not None:
                await query_interface.set_autocommit(self, self.autocommit)
        except Exception:
            await self._cleanup()
            raise

        logger.debug("Started transaction %s", self.name or self.id)
        return self

    def transaction(self, **options: Any) -> Transaction:
        """A savepoint nested in this transaction."""
        return Transaction(self.database, parent=self, **options)

    async def commit(self) -> None:
        self._check_open("committed")
        try:
            await self.database.query_interface.commit_transaction(self)
            self.finished = "commit"
            logger.debug("Committed transaction %s", self.name or self.id)
        finally:
            await self._cleanup()

    async def rollback(self) -> None:
        self._check_open("rolled back")
        try:
            await self.database.query_interface.rollback_transaction(self)
            self.finished = "rollback"
            logger.debug("Rolled back transaction %s", self.name or self.id)
        finally:
            await self._cleanup()

    def _check_open(self, action: str) -> None:
        if self.finished is not None:
            raise RelkitError(
                f"Transaction cannot be {action} because it has been finished with state: {self.finished}"
            )
        if self.connection is None:
            raise RelkitError(f"Transaction cannot be {action} because it was never started")

    async def _cleanup(self) -> None:
        if self.parent is not None or self.connection is None:
            return
        connection, self.connection = self.connection, None
        await self.database.connection_manager.release_connection(connection)

    async def __aenter__(self) -> Transaction:
        if self.connection is None:
            await self.prepare()
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        if self.finished is not None:
            return
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
