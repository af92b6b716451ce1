"""SQLite dialect backed by aiosqlite."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping, Sequence
from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any, ClassVar
from uuid import UUID

import aiosqlite

from relkit import errors
from relkit.dialects.abstract import (
    AbstractConnectionManager,
    AbstractQuery,
    AbstractQueryGenerator,
    Connection,
    Dialect,
    RawResult,
    Statement,
    TableName,
    table_name_of,
)
from relkit.fields import ColumnInfo
from relkit.results import ResultInterpreter

if TYPE_CHECKING:
    from relkit.query_interface import QueryInterface
    from relkit.transaction import Transaction

logger = logging.getLogger("relkit.connection")

_MEMORY_KEY = "memory"
_NUMERIC = re.compile(r"^-?\d+(\.\d+)?$")


class SQLiteQueryGenerator(AbstractQueryGenerator):
    """SQL builder for SQLite: backtick quoting, ``?`` placeholders."""

    dialect: ClassVar[str] = "sqlite"
    quote_char: ClassVar[str] = "`"

    def _quote_table_name(self, table: TableName) -> str:
        # SQLite has no schemas; the qualified name is a single identifier
        return self.quote_identifier(str(table))

    def format_value(self, value: Any) -> Any:
        value = super().format_value(value)
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (datetime, date, time)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, UUID):
            return str(value)
        return value

    def _escape_bool(self, value: bool) -> str:
        return "1" if value else "0"

    def _primary_key_sql(self, column: ColumnInfo) -> str:
        if column.autoincrement and column.python_type is int:
            return "PRIMARY KEY AUTOINCREMENT"
        return "PRIMARY KEY"

    def _insert_keyword(self, options: Mapping[str, Any]) -> str:
        return "INSERT OR IGNORE INTO" if options.get("ignore_duplicates") else "INSERT INTO"

    def _missing_value_sql(self) -> str:
        return "NULL"

    def create_schema(self, schema: str) -> str | None:
        return None

    def drop_schema(self, schema: str) -> str | None:
        return None

    def show_schemas_query(self) -> str:
        return self.show_tables_query()

    def drop_table_query(self, table: str | TableName, options: Mapping[str, Any] | None = None) -> str:
        return f"DROP TABLE IF EXISTS {self.quote_table(table)};"

    def version_query(self) -> str:
        return "SELECT sqlite_version() as `version`;"

    def show_tables_query(self) -> str:
        return "SELECT name FROM `sqlite_master` WHERE type='table' and name!='sqlite_sequence';"

    def describe_table_query(self, table: str | TableName) -> str:
        return f"PRAGMA TABLE_INFO({self.quote_table(table)});"

    def show_indexes_query(self, table: str | TableName) -> str:
        name = self.escape(str(table))
        return (
            "SELECT il.name AS name, il.`unique` AS `unique`, il.origin AS origin, "
            "ii.name AS column_name, ii.seqno AS seqno "
            f"FROM pragma_index_list({name}) AS il JOIN pragma_index_info(il.name) AS ii "
            "ORDER BY il.seq, ii.seqno;"
        )

    def get_foreign_keys_query(self, table: str | TableName) -> str:
        return f"PRAGMA foreign_key_list({self.quote_table(table)});"

    def drop_foreign_key_query(self, table: str | TableName, foreign_key: str) -> str | None:
        return None

    def add_column_query(self, table: str | TableName, key: str, definition: str) -> str:
        return f"ALTER TABLE {self.quote_table(table)} ADD {self.quote_identifier(key)} {definition};"

    def rebuild_table_query(
        self,
        table: str | TableName,
        attributes: Mapping[str, str],
        import_columns: Sequence[str],
    ) -> list[str]:
        """Recreate ``table`` with ``attributes``, copying rows through a backup table.

        ``import_columns`` are the select expressions reading the old table, in
        the order of ``attributes``.
        """
        backup_name = f"{table_name_of(table)}_backup"
        backup = self.quote_identifier(backup_name)
        quoted = self.quote_table(table)
        export_columns = ", ".join(self.quote_identifier(name) for name in attributes)
        return [
            self.create_table_query(backup_name, attributes, {"temporary": True}),
            f"INSERT INTO {backup} SELECT {', '.join(import_columns)} FROM {quoted};",
            f"DROP TABLE {quoted};",
            self.create_table_query(table, attributes),
            f"INSERT INTO {quoted} SELECT {export_columns} FROM {backup};",
            f"DROP TABLE {backup};",
        ]

    def upsert_query(
        self,
        table: str | TableName,
        insert_values: Mapping[str, Any],
        update_values: Mapping[str, Any],
        conflict_keys: Sequence[Sequence[str]],
        options: Mapping[str, Any] | None = None,
    ) -> list[Statement]:
        """``INSERT OR IGNORE`` followed by an UPDATE of the conflicting row."""
        statements = [self.insert_query(table, insert_values, {"ignore_duplicates": bool(conflict_keys)})]
        if conflict_keys and update_values:
            where = self._conflict_where(insert_values, conflict_keys)
            statements.append(self.update_query(table, update_values, where))
        return statements

    # ========== Transactions ==========

    def set_autocommit_query(self, value: bool, transaction: Transaction) -> str | None:
        return None

    def set_isolation_level_query(self, value: str | None, transaction: Transaction) -> str | None:
        if transaction.parent is not None or not value:
            return None
        return f"PRAGMA read_uncommitted = {'ON' if value == 'READ UNCOMMITTED' else 'OFF'};"

    def start_transaction_query(self, transaction: Transaction) -> str:
        if transaction.parent is not None:
            return f"SAVEPOINT {self.quote_identifier(transaction.name)};"
        return f"BEGIN {transaction.type} TRANSACTION;"


class SQLiteConnectionManager(AbstractConnectionManager):
    """Caches one aiosqlite connection per transaction id.

    An in-memory database only exists inside its connection, so every caller
    shares a single connection and releasing it is a no-op unless forced.
    """

    def __init__(self, config: Any) -> None:
        super().__init__(config)
        self.connections: dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def get_connection(self, uuid: str = "default") -> Connection:
        key = _MEMORY_KEY if self.config.in_memory else uuid
        connection = self.connections.get(key)
        if connection is not None:
            return connection

        async with self._lock:
            connection = self.connections.get(key)
            if connection is not None:
                return connection

            storage = self.config.storage
            try:
                raw = await aiosqlite.connect(storage, isolation_level=None)
            except (aiosqlite.Error, OSError) as err:
                logger.error("Could not open SQLite database %s: %s", storage, err)
                raise errors.ConnectionError(err) from err

            raw.row_factory = aiosqlite.Row
            if self.config.foreign_keys:
                await raw.execute("PRAGMA FOREIGN_KEYS=ON")

            connection = Connection(raw, key)
            self.connections[key] = connection
            logger.debug("Opened SQLite connection %s to %s", key, storage)
            return connection

    async def release_connection(self, connection: Connection, force: bool = False) -> None:
        if not force and (self.config.in_memory or connection.uuid == "default"):
            return
        if self.connections.get(connection.uuid) is connection:
            del self.connections[connection.uuid]
        await connection.raw.close()
        logger.debug("Closed SQLite connection %s", connection.uuid)

    async def close(self) -> None:
        for connection in list(self.connections.values()):
            await self.release_connection(connection, force=True)


class SQLiteQuery(AbstractQuery):
    async def run(self, sql: str, params: Sequence[Any] | None = None) -> RawResult:
        self.log(sql)
        try:
            cursor = await self.connection.raw.execute(sql, list(params or ()))
            try:
                rows = await cursor.fetchall()
                columns = [column[0] for column in cursor.description or ()]
                rowcount = cursor.rowcount if cursor.rowcount >= 0 else len(rows)
                return RawResult(
                    rows=[dict(row) for row in rows],
                    rowcount=rowcount,
                    inserted_id=cursor.lastrowid,
                    columns=columns,
                )
            finally:
                await cursor.close()
        except aiosqlite.Error as err:
            raise self.format_error(err, sql) from err

    async def run_upsert(self, statements: Sequence[Statement]) -> RawResult:
        insert_sql, insert_params = statements[0]
        inserted = await self.run(insert_sql, insert_params)
        if inserted.rowcount:
            return RawResult(rows=inserted.rows, rowcount=1, inserted_id=inserted.inserted_id)
        for sql, params in statements[1:]:
            await self.run(sql, params)
        return RawResult(rowcount=2)

    def format_error(self, err: Exception, sql: str) -> errors.DatabaseError:
        message = str(err)
        if isinstance(err, aiosqlite.IntegrityError):
            if "UNIQUE constraint failed" in message:
                return errors.UniqueConstraintError(err, sql)
            if "FOREIGN KEY constraint failed" in message:
                return errors.ForeignKeyConstraintError(err, sql)
        return errors.DatabaseError(err, sql)


class SQLiteResults(ResultInterpreter):
    def show_tables(self, rows: list[dict[str, Any]]) -> list[str]:
        return [row["name"] for row in rows]

    def describe(self, rows: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        result = {}
        for row in rows:
            default = row["dflt_value"]
            if default == "NULL":
                default = None
            elif isinstance(default, str) and len(default) > 1 and default[0] == default[-1] == "'":
                default = default[1:-1].replace("''", "'")
            result[row["name"]] = {
                "type": row["type"],
                "allow_null": row["notnull"] == 0,
                "default_value": default,
                "primary_key": row["pk"] > 0,
            }
        return result

    def show_indexes(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        indexes: dict[str, dict[str, Any]] = {}
        for row in rows:
            index = indexes.setdefault(
                row["name"],
                {
                    "name": row["name"],
                    "unique": bool(row["unique"]),
                    "primary": row["origin"] == "pk",
                    "fields": [],
                },
            )
            index["fields"].append({"attribute": row["column_name"]})
        return list(indexes.values())

    def version(self, rows: list[dict[str, Any]]) -> str | None:
        return rows[0]["version"] if rows else None


class TableRebuilder:
    """Removes, changes and renames columns by rebuilding the table.

    SQLite's ALTER TABLE cannot drop or redefine a column, so the helper reads
    the current definition with DESCRIBE and the foreign keys with
    ``PRAGMA foreign_key_list``, then recreates the table through a temporary
    backup. Table-level constraints other than the primary key are not
    carried over.
    """

    def __init__(self, query_interface: QueryInterface) -> None:
        self.query_interface = query_interface
        self.generator: SQLiteQueryGenerator = query_interface.generator  # type: ignore[assignment]

    async def remove_column(self, table: str | TableName, attribute: str, **options: Any) -> None:
        definitions = await self._definitions(table, options)
        definitions.pop(attribute, None)
        columns = [self.generator.quote_identifier(name) for name in definitions]
        await self._rebuild(table, definitions, columns, options)

    async def change_column(
        self, table: str | TableName, attributes: Mapping[str, ColumnInfo], **options: Any
    ) -> None:
        definitions = await self._definitions(table, options)
        for name, column in attributes.items():
            definitions[column.field or name] = self.generator.attribute_to_sql(column, table)
        columns = [self.generator.quote_identifier(name) for name in definitions]
        await self._rebuild(table, definitions, columns, options)

    async def rename_column(self, table: str | TableName, before: str, after: str, **options: Any) -> None:
        current = await self._definitions(table, options)
        definitions = {after if name == before else name: definition for name, definition in current.items()}
        q = self.generator.quote_identifier
        columns = [f"{q(before)} AS {q(after)}" if name == after else q(name) for name in definitions]
        await self._rebuild(table, definitions, columns, options)

    async def _definitions(self, table: str | TableName, options: Mapping[str, Any]) -> dict[str, str]:
        described = await self.query_interface.describe_table(table, **options)
        foreign_keys = await self.query_interface.get_foreign_key_references(table, **options)
        references = {fk["from"]: fk for fk in foreign_keys}

        definitions = {}
        for name, info in described.items():
            sql = info["type"] or "TEXT"
            if not info["allow_null"] and not info["primary_key"]:
                sql += " NOT NULL"
            default = info["default_value"]
            if default is not None:
                text = str(default)
                literal = text if _NUMERIC.match(text) or text.upper().startswith("CURRENT_") else None
                sql += f" DEFAULT {literal or self.generator.escape(default)}"
            if info["primary_key"]:
                sql += " PRIMARY KEY"
            fk = references.get(name)
            if fk is not None:
                sql += (
                    f" REFERENCES {self.generator.quote_identifier(fk['table'])}"
                    f" ({self.generator.quote_identifier(fk['to'])})"
                    f" ON DELETE {fk['on_delete']} ON UPDATE {fk['on_update']}"
                )
            definitions[name] = sql
        return definitions

    async def _rebuild(
        self,
        table: str | TableName,
        definitions: Mapping[str, str],
        columns: Sequence[str],
        options: Mapping[str, Any],
    ) -> None:
        statements = self.generator.rebuild_table_query(table, definitions, columns)
        toggle_foreign_keys = self.query_interface.database.config.foreign_keys
        # Dropping the old table would otherwise cascade into referencing rows
        if toggle_foreign_keys:
            await self.query_interface.database.query("PRAGMA foreign_keys = OFF", **options)
        try:
            for sql in statements:
                await self.query_interface.database.query(sql, **options)
        finally:
            if toggle_foreign_keys:
                await self.query_interface.database.query("PRAGMA foreign_keys = ON", **options)


DIALECT = Dialect(
    name="sqlite",
    generator=SQLiteQueryGenerator,
    connection_manager=SQLiteConnectionManager,
    query=SQLiteQuery,
    interpreter=SQLiteResults,
    supports_schemas=False,
    rebuilder=TableRebuilder,
)
