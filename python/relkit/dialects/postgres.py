"""PostgreSQL dialect backed by an asyncpg pool."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, ClassVar

import asyncpg

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
from relkit.errors import ValidationError
from relkit.fields import ColumnInfo
from relkit.results import ResultInterpreter

if TYPE_CHECKING:
    from relkit.transaction import Transaction

logger = logging.getLogger("relkit.connection")

_RETURNS_ROWS = re.compile(r"^\s*(SELECT|WITH|SHOW|VALUES|EXPLAIN)\b|\bRETURNING\b", re.IGNORECASE)

_TRIGGER_EVENT_TYPES = {
    "before": "BEFORE",
    "after": "AFTER",
    "instead_of": "INSTEAD OF",
    "after_constraint": "AFTER",
}


class PostgresQueryGenerator(AbstractQueryGenerator):
    """SQL builder for PostgreSQL: double-quote quoting, ``$n`` placeholders."""

    dialect: ClassVar[str] = "postgresql"
    quote_char: ClassVar[str] = '"'
    supports_returning: ClassVar[bool] = True

    def _escape_bytes(self, value: bytes) -> str:
        return f"'\\x{value.hex()}'::bytea"

    def _on_conflict_sql(self, options: Mapping[str, Any]) -> str:
        return " ON CONFLICT DO NOTHING" if options.get("ignore_duplicates") else ""

    def show_schemas_query(self) -> str:
        return (
            "SELECT schema_name FROM information_schema.schemata "
            "WHERE schema_name <> 'information_schema' AND schema_name != 'public' "
            "AND schema_name !~ E'^pg_';"
        )

    def version_query(self) -> str:
        return "SHOW SERVER_VERSION;"

    def show_tables_query(self) -> str:
        return (
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_type LIKE '%TABLE' AND table_name != 'spatial_ref_sys';"
        )

    def _schema_of(self, table: str | TableName) -> str:
        if isinstance(table, TableName) and table.schema:
            return table.schema
        return "public"

    def describe_table_query(self, table: str | TableName) -> str:
        return (
            'SELECT pk.constraint_type as "Constraint", c.column_name as "Field", '
            'c.column_default as "Default", c.is_nullable as "Null", '
            "(CASE WHEN c.udt_name = 'hstore' THEN c.udt_name ELSE c.data_type END) || "
            "(CASE WHEN c.character_maximum_length IS NOT NULL "
            "THEN '(' || c.character_maximum_length || ')' ELSE '' END) as \"Type\", "
            "(SELECT array_agg(e.enumlabel ORDER BY e.enumsortorder) FROM pg_catalog.pg_type t "
            'JOIN pg_catalog.pg_enum e ON t.oid=e.enumtypid WHERE t.typname=c.udt_name) AS "special" '
            "FROM information_schema.columns c "
            "LEFT JOIN (SELECT tc.table_schema, tc.table_name, cu.column_name, tc.constraint_type "
            "FROM information_schema.TABLE_CONSTRAINTS tc JOIN information_schema.KEY_COLUMN_USAGE cu "
            "ON tc.table_schema=cu.table_schema and tc.table_name=cu.table_name "
            "and tc.constraint_name=cu.constraint_name and tc.constraint_type='PRIMARY KEY') pk "
            "ON pk.table_schema=c.table_schema AND pk.table_name=c.table_name AND pk.column_name=c.column_name "
            f"WHERE c.table_name = {self.escape(table_name_of(table))} "
            f"AND c.table_schema = {self.escape(self._schema_of(table))} "
            "ORDER BY c.ordinal_position;"
        )

    def show_indexes_query(self, table: str | TableName) -> str:
        return (
            'SELECT i.relname AS name, ix.indisprimary AS "primary", ix.indisunique AS "unique", '
            "array_agg(a.attname) AS column_names, pg_get_indexdef(ix.indexrelid) AS definition "
            "FROM pg_class t JOIN pg_index ix ON t.oid = ix.indrelid "
            "JOIN pg_class i ON i.oid = ix.indexrelid "
            "JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey) "
            f"WHERE t.relkind = 'r' AND t.relname = {self.escape(table_name_of(table))} "
            "GROUP BY i.relname, ix.indexrelid, ix.indisprimary, ix.indisunique ORDER BY i.relname;"
        )

    def get_foreign_keys_query(self, table: str | TableName) -> str:
        return (
            "SELECT conname AS constraint_name, pg_catalog.pg_get_constraintdef(r.oid, true) AS condef "
            "FROM pg_catalog.pg_constraint r WHERE r.conrelid = "
            f"(SELECT oid FROM pg_class WHERE relname = {self.escape(table_name_of(table))} LIMIT 1) "
            "AND r.contype = 'f' ORDER BY 1;"
        )

    def change_column_query(self, table: str | TableName, attributes: Mapping[str, ColumnInfo]) -> list[str]:
        """One ALTER TABLE statement per changed property of each column."""
        quoted = self.quote_table(table)
        statements = []
        for name, column in attributes.items():
            field = self.quote_identifier(column.field or name)
            alter = f"ALTER TABLE {quoted} ALTER COLUMN {field}"

            statements.append(f"{alter} {'DROP' if column.nullable else 'SET'} NOT NULL;")

            if column.server_default is not None:
                statements.append(f"{alter} SET DEFAULT {column.server_default};")
            elif column.default is not None and not callable(column.default):
                statements.append(f"{alter} SET DEFAULT {self.escape(column.default)};")
            else:
                statements.append(f"{alter} DROP DEFAULT;")

            if column.is_enum:
                enum_name = self.pg_enum_name(table, column.field or name)
                statements.append(f"{alter} TYPE {enum_name} USING ({field}::{enum_name});")
            else:
                statements.append(f"{alter} TYPE {column.sql_type(self.dialect)};")

            if column.unique is True:
                constraint = self.quote_identifier(f"{table_name_of(table)}_{column.field or name}_unique")
                statements.append(f"ALTER TABLE {quoted} ADD CONSTRAINT {constraint} UNIQUE ({field});")

            if column.foreign_key is not None:
                fk = column.foreign_key
                constraint = self.quote_identifier(f"{column.field or name}_foreign_idx")
                sql = (
                    f"ALTER TABLE {quoted} ADD CONSTRAINT {constraint} FOREIGN KEY ({field}) "
                    f"REFERENCES {self.quote_identifiers(fk.table)} ({self.quote_identifier(fk.column)})"
                )
                if fk.ondelete:
                    sql += f" ON DELETE {fk.ondelete.upper()}"
                if fk.onupdate:
                    sql += f" ON UPDATE {fk.onupdate.upper()}"
                statements.append(sql + ";")
        return statements

    def _index_modifiers(self, options: Mapping[str, Any]) -> str:
        return " CONCURRENTLY" if options.get("concurrently") else ""

    def _index_method(self, options: Mapping[str, Any]) -> str:
        method = options.get("method") or options.get("using")
        return f" USING {method}" if method else ""

    def upsert_query(
        self,
        table: str | TableName,
        insert_values: Mapping[str, Any],
        update_values: Mapping[str, Any],
        conflict_keys: Sequence[Sequence[str]],
        options: Mapping[str, Any] | None = None,
    ) -> list[Statement]:
        """INSERT ... ON CONFLICT DO UPDATE, reporting whether the row was inserted.

        PostgreSQL accepts a single conflict target, so the first key is used.
        """
        sql, params = self.insert_query(table, insert_values)
        sql = sql.rstrip(";")
        if conflict_keys:
            target = ", ".join(self.quote_identifier(key) for key in conflict_keys[0])
            if update_values:
                assignments = ", ".join(
                    f"{self.quote_identifier(key)} = EXCLUDED.{self.quote_identifier(key)}"
                    for key in update_values
                    if key in insert_values
                )
                sql += f" ON CONFLICT ({target}) DO UPDATE SET {assignments}" if assignments else (
                    f" ON CONFLICT ({target}) DO NOTHING"
                )
            else:
                sql += f" ON CONFLICT ({target}) DO NOTHING"
        sql += ' RETURNING (xmax = 0) AS "inserted";'
        return [(sql, params)]

    # ========== Enums ==========

    def enum_table_name(self, table: str | TableName) -> str:
        """Table part of enum type names; non-public schemas prefix it."""
        if isinstance(table, TableName) and table.schema and table.schema != "public":
            return f"{table.schema}_{table.table_name}"
        return table_name_of(table)

    def enum_type_name(self, table: str | TableName, attr: str) -> str:
        return f"enum_{self.enum_table_name(table)}_{attr}"

    def pg_enum_name(self, table: str | TableName, attr: str) -> str:
        return self.quote_identifier(self.enum_type_name(table, attr))

    def enum_type_sql(self, column: ColumnInfo, table: str | TableName) -> str:
        return self.pg_enum_name(table, column.column_name)

    def pg_list_enums(self, table: str | TableName | None = None, attr: str | None = None) -> str:
        """List enum types with their labels in declared order."""
        enum_filter = ""
        if table is not None and attr is not None:
            enum_filter = f" AND t.typname={self.escape(self.enum_type_name(table, attr))}"
        return (
            "SELECT t.typname enum_name, array_agg(e.enumlabel ORDER BY e.enumsortorder) enum_value "
            "FROM pg_type t JOIN pg_enum e ON t.oid = e.enumtypid "
            "JOIN pg_catalog.pg_namespace n ON n.oid = t.typnamespace "
            f"WHERE n.nspname = 'public'{enum_filter} GROUP BY 1;"
        )

    def pg_enum(self, table: str | TableName, attr: str, values: Sequence[str]) -> str:
        labels = ", ".join(self.escape(value) for value in values)
        return f"CREATE TYPE {self.pg_enum_name(table, attr)} AS ENUM({labels});"

    def pg_enum_add(
        self,
        table: str | TableName,
        attr: str,
        value: str,
        before: str | None = None,
        after: str | None = None,
    ) -> str:
        sql = f"ALTER TYPE {self.pg_enum_name(table, attr)} ADD VALUE {self.escape(value)}"
        if before is not None:
            sql += f" BEFORE {self.escape(before)}"
        elif after is not None:
            sql += f" AFTER {self.escape(after)}"
        return sql + ";"

    def pg_enum_drop(
        self,
        table: str | TableName | None = None,
        attr: str | None = None,
        enum_name: str | None = None,
    ) -> str:
        name = self.quote_identifier(enum_name) if enum_name else self.pg_enum_name(table or "", attr or "")
        return f"DROP TYPE IF EXISTS {name};"

    # ========== Transactions ==========

    def set_autocommit_query(self, value: bool, transaction: Transaction) -> str | None:
        # Autocommit cannot be switched off on the server
        return None

    def defer_constraints_query(self, transaction: Transaction, constraints: Sequence[str] | None = None) -> str:
        if constraints:
            return f"SET CONSTRAINTS {', '.join(self.quote_identifier(c) for c in constraints)} DEFERRED;"
        return "SET CONSTRAINTS ALL DEFERRED;"

    # ========== Triggers and functions ==========

    def _function_params(self, params: Sequence[Mapping[str, str]] | None) -> str:
        expanded = []
        for param in params or ():
            if "type" not in param:
                raise ValidationError(f"Function parameter {param!r} needs a type")
            parts = [param.get("direction"), param.get("name"), param["type"]]
            expanded.append(" ".join(part for part in parts if part))
        return ", ".join(expanded)

    def _trigger_events(self, fire_on: Mapping[str, Sequence[str] | None] | Sequence[str]) -> str:
        if not fire_on:
            raise ValidationError("Trigger needs at least one event")
        if not isinstance(fire_on, Mapping):
            fire_on = {event: None for event in fire_on}
        events = []
        for event, columns in fire_on.items():
            event = event.upper()
            if event not in ("INSERT", "UPDATE", "DELETE", "TRUNCATE"):
                raise ValidationError(f"Unknown trigger event {event!r}")
            if event == "UPDATE" and columns:
                event += " OF " + ", ".join(self.quote_identifier(c) for c in columns)
            events.append(event)
        return " OR ".join(events)

    def create_trigger(
        self,
        table: str | TableName,
        trigger_name: str,
        event_type: str,
        fire_on: Mapping[str, Sequence[str] | None] | Sequence[str],
        function_name: str,
        function_params: Sequence[Mapping[str, str]] | None = None,
        options: Sequence[str] | None = None,
    ) -> str:
        """CREATE TRIGGER.

        Example:
            >>> generator.create_trigger("posts", "posts_touch", "after", {"update": ["title"]},
            ...                          "touch", options=["FOR EACH ROW"])
        """
        if event_type not in _TRIGGER_EVENT_TYPES:
            raise ValidationError(f"Unknown trigger event type {event_type!r}")
        constraint = "CONSTRAINT " if event_type == "after_constraint" else ""
        parts = [
            f"CREATE {constraint}TRIGGER {self.quote_identifier(trigger_name)}",
            f"{_TRIGGER_EVENT_TYPES[event_type]} {self._trigger_events(fire_on)}",
            f"ON {self.quote_table(table)}",
        ]
        if options:
            parts.append(" ".join(options))
        parts.append(
            f"EXECUTE PROCEDURE {self.quote_identifier(function_name)}({self._function_params(function_params)});"
        )
        return " ".join(parts)

    def drop_trigger(self, table: str | TableName, trigger_name: str) -> str:
        return f"DROP TRIGGER {self.quote_identifier(trigger_name)} ON {self.quote_table(table)} RESTRICT;"

    def rename_trigger(self, table: str | TableName, old_name: str, new_name: str) -> str:
        return (
            f"ALTER TRIGGER {self.quote_identifier(old_name)} ON {self.quote_table(table)} "
            f"RENAME TO {self.quote_identifier(new_name)};"
        )

    def create_function(
        self,
        function_name: str,
        params: Sequence[Mapping[str, str]] | None,
        return_type: str,
        language: str,
        body: str,
        options: Sequence[str] | None = None,
    ) -> str:
        if not (function_name and return_type and language and body):
            raise ValidationError("create_function needs a name, return type, language and body")
        sql = (
            f"CREATE FUNCTION {self.quote_identifier(function_name)}({self._function_params(params)}) "
            f"RETURNS {return_type} AS $func$ BEGIN {body} END; $func$ LANGUAGE {language}"
        )
        if options:
            sql += " " + " ".join(options)
        return sql + ";"

    def drop_function(self, function_name: str, params: Sequence[Mapping[str, str]] | None = None) -> str:
        if not function_name:
            raise ValidationError("drop_function needs a function name")
        return f"DROP FUNCTION {self.quote_identifier(function_name)}({self._function_params(params)}) RESTRICT;"

    def rename_function(
        self, old_name: str, params: Sequence[Mapping[str, str]] | None, new_name: str
    ) -> str:
        if not (old_name and new_name):
            raise ValidationError("rename_function needs the old and new names")
        return (
            f"ALTER FUNCTION {self.quote_identifier(old_name)}({self._function_params(params)}) "
            f"RENAME TO {self.quote_identifier(new_name)};"
        )


class PostgresConnectionManager(AbstractConnectionManager):
    """Acquires connections from an asyncpg pool created on first use."""

    def __init__(self, config: Any) -> None:
        super().__init__(config)
        self.pool: Any = None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> Any:
        if self.pool is not None:
            return self.pool
        async with self._lock:
            if self.pool is None:
                server_settings = {"search_path": self.config.schema} if self.config.schema else None
                try:
                    self.pool = await asyncpg.create_pool(
                        host=self.config.host,
                        port=self.config.port,
                        user=self.config.username,
                        password=self.config.password,
                        database=self.config.database,
                        min_size=self.config.min_connections,
                        max_size=self.config.max_connections,
                        server_settings=server_settings,
                    )
                except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as err:
                    logger.error("Could not connect to PostgreSQL at %s: %s", self.config.host, err)
                    raise errors.ConnectionError(err) from err
                logger.debug("Opened PostgreSQL pool to %s/%s", self.config.host, self.config.database)
        return self.pool

    async def get_connection(self, uuid: str = "default") -> Connection:
        pool = await self._get_pool()
        try:
            raw = await pool.acquire()
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as err:
            logger.error("Could not acquire a PostgreSQL connection: %s", err)
            raise errors.ConnectionError(err) from err
        return Connection(raw, uuid)

    async def release_connection(self, connection: Connection, force: bool = False) -> None:
        if self.pool is not None:
            await self.pool.release(connection.raw)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.debug("Closed PostgreSQL pool")


def _status_count(status: str) -> int | None:
    """Row count from a command tag such as ``UPDATE 3`` or ``INSERT 0 1``."""
    last = status.rsplit(" ", 1)[-1] if status else ""
    return int(last) if last.isdigit() else None


class PostgresQuery(AbstractQuery):
    async def run(self, sql: str, params: Sequence[Any] | None = None) -> RawResult:
        self.log(sql)
        conn = self.connection.raw
        args = list(params or ())
        try:
            if _RETURNS_ROWS.search(sql):
                records = await conn.fetch(sql, *args)
                rows = [dict(record) for record in records]
                return RawResult(rows=rows, rowcount=len(rows), columns=list(records[0].keys()) if records else [])
            status = await conn.execute(sql, *args)
            return RawResult(rowcount=_status_count(status))
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as err:
            raise self.format_error(err, sql) from err

    async def run_upsert(self, statements: Sequence[Statement]) -> RawResult:
        sql, params = statements[0]
        result = await self.run(sql, params)
        inserted = bool(result.rows and result.rows[0].get("inserted"))
        return RawResult(rows=result.rows, rowcount=1 if inserted else 2)

    def format_error(self, err: Exception, sql: str) -> errors.DatabaseError:
        if isinstance(err, asyncpg.UniqueViolationError):
            return errors.UniqueConstraintError(err, sql)
        if isinstance(err, asyncpg.ForeignKeyViolationError):
            return errors.ForeignKeyConstraintError(err, sql)
        return errors.DatabaseError(err, sql)


class PostgresResults(ResultInterpreter):
    def show_tables(self, rows: list[dict[str, Any]]) -> list[str]:
        return [row["table_name"] for row in rows]

    def describe(self, rows: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        result = {}
        for row in rows:
            info = {
                "type": str(row["Type"]).upper(),
                "allow_null": row["Null"] == "YES",
                "default_value": row["Default"],
                "primary_key": row["Constraint"] == "PRIMARY KEY",
            }
            if row.get("special"):
                info["special"] = list(row["special"])
            result[row["Field"]] = info
        return result

    def show_indexes(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "name": row["name"],
                "primary": row["primary"],
                "unique": row["unique"],
                "fields": [{"attribute": column} for column in row["column_names"]],
                "definition": row.get("definition"),
            }
            for row in rows
        ]

    def version(self, rows: list[dict[str, Any]]) -> str | None:
        if not rows:
            return None
        return str(rows[0]["server_version"]).split(" ", 1)[0]


DIALECT = Dialect(
    name="postgresql",
    generator=PostgresQueryGenerator,
    connection_manager=PostgresConnectionManager,
    query=PostgresQuery,
    interpreter=PostgresResults,
)
