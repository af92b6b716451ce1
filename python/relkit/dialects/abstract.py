"""Dialect-neutral SQL generation and execution interfaces.

Every dialect provides four collaborators, bundled in a ``Dialect``:

- a query generator: a pure SQL builder returning SQL text (DDL), a
  ``(sql, params)`` pair (DML) or ``None`` when the operation is a no-op on
  that dialect;
- a connection manager that opens, caches and releases driver connections;
- a query class that runs one statement on a connection and returns a
  ``RawResult``, translating driver errors into ``DatabaseError``;
- a result interpreter (see ``relkit.results``).
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from relkit import naming
from relkit.errors import DatabaseError, ValidationError
from relkit.fields import ColumnInfo
from relkit.query import Bind, ColumnRef, Include, build_where, or_

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.config import DatabaseConfig
    from relkit.database import Database
    from relkit.query_types import QueryOptions
    from relkit.results import ResultInterpreter
    from relkit.transaction import Transaction

logger = logging.getLogger("relkit.query")

Statement = tuple[str, list[Any]]


@dataclass(frozen=True)
class TableName:
    """A schema-qualified table name."""

    table_name: str
    schema: str | None = None
    delimiter: str = "."

    def __str__(self) -> str:
        if self.schema:
            return f"{self.schema}{self.delimiter}{self.table_name}"
        return self.table_name


@dataclass
class RawResult:
    """Driver output of a single statement, before interpretation."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int | None = None
    inserted_id: Any = None
    columns: list[str] = field(default_factory=list)


@dataclass
class ConnectionState:
    """Transaction-related state of one driver connection."""

    autocommit: bool = True
    isolation_level: str | None = None
    in_transaction: bool = False


class Connection:
    """A driver connection plus the state the transaction driver tracks on it."""

    def __init__(self, raw: Any, uuid: str = "default") -> None:
        self.raw = raw
        self.uuid = uuid
        self.state = ConnectionState()
        self.lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<Connection {self.uuid} {self.state}>"

    def reset_state(self) -> None:
        self.state = ConnectionState()


def table_name_of(table: str | TableName) -> str:
    return table.table_name if isinstance(table, TableName) else table


class AbstractQueryGenerator:
    """Builds SQL for one dialect.

    DML methods take values keyed by physical column name; where clauses are
    keyed by attribute name and mapped through ``model`` when one is given.
    """

    dialect: ClassVar[str] = "abstract"
    quote_char: ClassVar[str] = '"'
    supports_returning: ClassVar[bool] = False

    # ========== Quoting and values ==========

    def bind(self) -> Bind:
        return Bind(self.dialect, self.format_value)

    def quote_identifier(self, identifier: str) -> str:
        if identifier == "*":
            return identifier
        q = self.quote_char
        return f"{q}{identifier.replace(q, q * 2)}{q}"

    def quote_identifiers(self, identifiers: str) -> str:
        """Quote a dotted identifier part by part."""
        if "." in identifiers:
            return ".".join(self.quote_identifier(part) for part in identifiers.split("."))
        return self.quote_identifier(identifiers)

    def quote_table(self, table: str | TableName, alias: str | None = None) -> str:
        if isinstance(table, TableName):
            sql = self._quote_table_name(table)
        else:
            sql = self.quote_identifiers(table)
        if alias:
            sql += f" AS {self.quote_identifier(alias)}"
        return sql

    def _quote_table_name(self, table: TableName) -> str:
        if table.schema:
            return f"{self.quote_identifier(table.schema)}.{self.quote_identifier(table.table_name)}"
        return self.quote_identifier(table.table_name)

    def add_schema(self, table_name: str, schema: str | None = None, delimiter: str = ".") -> str | TableName:
        if not schema:
            return table_name
        return TableName(table_name, schema, delimiter)

    def format_value(self, value: Any) -> Any:
        """Convert a Python value into one the driver accepts as a parameter."""
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value

    def escape(self, value: Any) -> str:
        """Render ``value`` as an SQL literal."""
        if value is None:
            return "NULL"
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, bool):
            return self._escape_bool(value)
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, (datetime, date, time)):
            value = value.isoformat(sep=" ") if isinstance(value, datetime) else value.isoformat()
        elif isinstance(value, (dict, list)):
            value = json.dumps(value)
        elif isinstance(value, bytes):
            return self._escape_bytes(value)
        return "'" + str(value).replace("'", "''") + "'"

    def _escape_bool(self, value: bool) -> str:
        return "TRUE" if value else "FALSE"

    def _escape_bytes(self, value: bytes) -> str:
        return f"X'{value.hex()}'"

    def _column_ref(self, model: type[Base] | None, alias: str | None = None) -> ColumnRef:
        def ref(attr: str) -> str:
            column = self.quote_identifier(model.field_for(attr) if model is not None else attr)
            return f"{self.quote_identifier(alias)}.{column}" if alias else column

        return ref

    # ========== Schemas ==========

    def create_schema(self, schema: str) -> str | None:
        return f"CREATE SCHEMA IF NOT EXISTS {self.quote_identifier(schema)};"

    def drop_schema(self, schema: str) -> str | None:
        return f"DROP SCHEMA IF EXISTS {self.quote_identifier(schema)} CASCADE;"

    def show_schemas_query(self) -> str:
        raise NotImplementedError

    def version_query(self) -> str:
        raise NotImplementedError

    # ========== Tables ==========

    def attribute_to_sql(self, column: ColumnInfo, table: str | TableName) -> str:
        """Render the definition (everything after the name) of one column."""
        if column.is_enum:
            parts = [self.enum_type_sql(column, table)]
        else:
            parts = [column.sql_type(self.dialect)]

        if not column.nullable and not column.primary_key:
            parts.append("NOT NULL")

        if column.server_default is not None:
            parts.append(f"DEFAULT {column.server_default}")
        elif column.default is not None and not callable(column.default):
            parts.append(f"DEFAULT {self.escape(column.default)}")

        if column.unique is True:
            parts.append("UNIQUE")

        if column.primary_key:
            parts.append(self._primary_key_sql(column))

        if column.foreign_key is not None:
            fk = column.foreign_key
            parts.append(f"REFERENCES {self.quote_identifiers(fk.table)} ({self.quote_identifier(fk.column)})")
            if fk.ondelete:
                parts.append(f"ON DELETE {fk.ondelete.upper()}")
            if fk.onupdate:
                parts.append(f"ON UPDATE {fk.onupdate.upper()}")

        return " ".join(parts)

    def _primary_key_sql(self, column: ColumnInfo) -> str:
        return "PRIMARY KEY"

    def attributes_to_sql(
        self, attributes: Mapping[str, ColumnInfo], table: str | TableName
    ) -> dict[str, str]:
        """Map each physical column name to its definition."""
        return {
            column.field or name: self.attribute_to_sql(column, table) for name, column in attributes.items()
        }

    def enum_type_sql(self, column: ColumnInfo, table: str | TableName) -> str:
        return "TEXT"

    def create_table_query(
        self,
        table: str | TableName,
        attributes: Mapping[str, str],
        options: Mapping[str, Any] | None = None,
    ) -> str:
        """CREATE TABLE from ``{column: definition}``.

        More than one PRIMARY KEY definition becomes a composite key clause.
        """
        options = options or {}
        primary_keys = [name for name, definition in attributes.items() if "PRIMARY KEY" in definition]
        composite = len(primary_keys) > 1

        definitions = []
        for name, definition in attributes.items():
            if composite:
                definition = definition.replace(" PRIMARY KEY", "")
            definitions.append(f"{self.quote_identifier(name)} {definition}")

        for key_name, fields_ in (options.get("unique_keys") or {}).items():
            columns = ", ".join(self.quote_identifier(f) for f in fields_)
            definitions.append(f"CONSTRAINT {self.quote_identifier(key_name)} UNIQUE ({columns})")

        if composite:
            definitions.append(f"PRIMARY KEY ({', '.join(self.quote_identifier(pk) for pk in primary_keys)})")

        create = "CREATE TEMPORARY TABLE" if options.get("temporary") else "CREATE TABLE IF NOT EXISTS"
        return f"{create} {self.quote_table(table)} ({', '.join(definitions)});"

    def drop_table_query(self, table: str | TableName, options: Mapping[str, Any] | None = None) -> str:
        cascade = " CASCADE" if (options or {}).get("cascade") else ""
        return f"DROP TABLE IF EXISTS {self.quote_table(table)}{cascade};"

    def rename_table_query(self, before: str | TableName, after: str | TableName) -> str:
        return f"ALTER TABLE {self.quote_table(before)} RENAME TO {self.quote_table(after)};"

    def show_tables_query(self) -> str:
        raise NotImplementedError

    def describe_table_query(self, table: str | TableName) -> str:
        raise NotImplementedError

    # ========== Columns ==========

    def add_column_query(self, table: str | TableName, key: str, definition: str) -> str:
        return f"ALTER TABLE {self.quote_table(table)} ADD COLUMN {self.quote_identifier(key)} {definition};"

    def remove_column_query(self, table: str | TableName, attribute: str) -> str | list[str]:
        return f"ALTER TABLE {self.quote_table(table)} DROP COLUMN {self.quote_identifier(attribute)};"

    def change_column_query(
        self, table: str | TableName, attributes: Mapping[str, ColumnInfo]
    ) -> str | list[str]:
        raise NotImplementedError

    def rename_column_query(
        self, table: str | TableName, before: str, after: str, attributes: Mapping[str, str] | None = None
    ) -> str | list[str]:
        return (
            f"ALTER TABLE {self.quote_table(table)} "
            f"RENAME COLUMN {self.quote_identifier(before)} TO {self.quote_identifier(after)};"
        )

    # ========== Indexes and keys ==========

    def _index_field_names(self, fields_: Sequence[Any]) -> list[str]:
        names = []
        for f in fields_:
            if isinstance(f, str):
                names.append(f)
            else:
                names.append(f.get("attribute") or f.get("name"))
        return names

    def name_indexes(self, indexes: Sequence[Mapping[str, Any]], raw_table: str) -> list[dict[str, Any]]:
        """Give every index without an explicit name one derived from its fields."""
        named = []
        for index in indexes:
            index = dict(index)
            if not index.get("name"):
                names = self._index_field_names(index.get("fields") or [])
                index["name"] = naming.underscore(f"{raw_table}_{'_'.join(names)}")
            named.append(index)
        return named

    def add_index_query(
        self, table: str | TableName, options: Mapping[str, Any], raw_table: str | None = None
    ) -> str:
        """CREATE INDEX.

        ``options`` holds ``fields`` (names or ``{"attribute", "order",
        "collate"}`` dicts) plus optional ``name``, ``unique``, ``method``,
        ``concurrently`` and a raw-SQL ``where``.
        """
        fields_ = options.get("fields") or []
        if not fields_:
            raise ValidationError("Index needs at least one field")
        raw_table = raw_table or table_name_of(table)

        field_sqls = []
        for f in fields_:
            if isinstance(f, str):
                field_sqls.append(self.quote_identifier(f))
                continue
            name = f.get("attribute") or f.get("name")
            sql = self.quote_identifier(name)
            if f.get("collate"):
                sql += f" COLLATE {self.quote_identifier(f['collate'])}"
            if f.get("order"):
                sql += f" {f['order'].upper()}"
            field_sqls.append(sql)

        name = options.get("name") or self.name_indexes([options], raw_table)[0]["name"]
        unique = options.get("unique") or str(options.get("type", "")).upper() == "UNIQUE"
        sql = (
            f"CREATE {'UNIQUE ' if unique else ''}INDEX{self._index_modifiers(options)} "
            f"{self.quote_identifier(name)} ON {self.quote_table(table)}"
            f"{self._index_method(options)} ({', '.join(field_sqls)})"
        )
        if options.get("where"):
            sql += f" WHERE {options['where']}"
        return sql + ";"

    def _index_modifiers(self, options: Mapping[str, Any]) -> str:
        return ""

    def _index_method(self, options: Mapping[str, Any]) -> str:
        return ""

    def remove_index_query(self, table: str | TableName, index_name_or_attributes: str | Sequence[str]) -> str:
        if isinstance(index_name_or_attributes, str):
            name = index_name_or_attributes
        else:
            name = naming.underscore(f"{table_name_of(table)}_{'_'.join(index_name_or_attributes)}")
        return f"DROP INDEX IF EXISTS {self.quote_identifier(name)};"

    def show_indexes_query(self, table: str | TableName) -> str:
        raise NotImplementedError

    def get_foreign_keys_query(self, table: str | TableName) -> str:
        raise NotImplementedError

    def drop_foreign_key_query(self, table: str | TableName, foreign_key: str) -> str | None:
        return f"ALTER TABLE {self.quote_table(table)} DROP CONSTRAINT {self.quote_identifier(foreign_key)};"

    # ========== DML ==========

    def _returning_sql(self, options: Mapping[str, Any]) -> str:
        return " RETURNING *" if options.get("returning") else ""

    def _insert_keyword(self, options: Mapping[str, Any]) -> str:
        return "INSERT INTO"

    def _on_conflict_sql(self, options: Mapping[str, Any]) -> str:
        return ""

    def _missing_value_sql(self) -> str:
        return "DEFAULT"

    def insert_query(
        self,
        table: str | TableName,
        values: Mapping[str, Any],
        options: Mapping[str, Any] | None = None,
    ) -> Statement:
        options = options or {}
        bind = self.bind()
        if values:
            columns = ", ".join(self.quote_identifier(k) for k in values)
            placeholders = ", ".join(bind.add(v) for v in values.values())
            body = f"({columns}) VALUES ({placeholders})"
        else:
            body = "DEFAULT VALUES"
        sql = f"{self._insert_keyword(options)} {self.quote_table(table)} {body}"
        sql += self._on_conflict_sql(options) + self._returning_sql(options)
        return sql + ";", bind.params

    def bulk_insert_query(
        self,
        table: str | TableName,
        records: Sequence[Mapping[str, Any]],
        options: Mapping[str, Any] | None = None,
    ) -> Statement:
        """Multi-row INSERT; columns missing from a record get the column default."""
        options = options or {}
        columns: list[str] = []
        for record in records:
            for key in record:
                if key not in columns:
                    columns.append(key)
        if not columns:
            raise ValidationError("Bulk insert needs at least one column value")

        bind = self.bind()
        tuples = []
        for record in records:
            values = [bind.add(record[c]) if c in record else self._missing_value_sql() for c in columns]
            tuples.append(f"({', '.join(values)})")

        sql = (
            f"{self._insert_keyword(options)} {self.quote_table(table)} "
            f"({', '.join(self.quote_identifier(c) for c in columns)}) VALUES {', '.join(tuples)}"
        )
        sql += self._on_conflict_sql(options) + self._returning_sql(options)
        return sql + ";", bind.params

    def update_query(
        self,
        table: str | TableName,
        values: Mapping[str, Any],
        where: Any,
        options: Mapping[str, Any] | None = None,
        model: type[Base] | None = None,
    ) -> Statement:
        options = options or {}
        if not values:
            raise ValidationError("Update needs at least one value")
        bind = self.bind()
        assignments = ", ".join(f"{self.quote_identifier(k)} = {bind.add(v)}" for k, v in values.items())
        sql = f"UPDATE {self.quote_table(table)} SET {assignments}"
        where_sql = build_where(where, bind, self._column_ref(model))
        if where_sql:
            sql += f" WHERE {where_sql}"
        return sql + self._returning_sql(options) + ";", bind.params

    def increment_query(
        self,
        table: str | TableName,
        values: Mapping[str, Any],
        where: Any,
        options: Mapping[str, Any] | None = None,
        model: type[Base] | None = None,
    ) -> Statement:
        """UPDATE adding each value to its column."""
        options = options or {}
        bind = self.bind()
        assignments = ", ".join(
            f"{self.quote_identifier(k)} = {self.quote_identifier(k)} + {bind.add(v)}" for k, v in values.items()
        )
        sql = f"UPDATE {self.quote_table(table)} SET {assignments}"
        where_sql = build_where(where, bind, self._column_ref(model))
        if where_sql:
            sql += f" WHERE {where_sql}"
        return sql + self._returning_sql(options) + ";", bind.params

    def delete_query(
        self,
        table: str | TableName,
        where: Any,
        options: Mapping[str, Any] | None = None,
        model: type[Base] | None = None,
    ) -> Statement:
        options = options or {}
        bind = self.bind()
        where_sql = build_where(where, bind, self._column_ref(model))
        sql = f"DELETE FROM {self.quote_table(table)}"
        limit = options.get("limit")
        if limit is not None and model is not None and model.__primary_key__:
            pk = self.quote_identifier(model.primary_key_field())
            inner = f"SELECT {pk} FROM {self.quote_table(table)}"
            if where_sql:
                inner += f" WHERE {where_sql}"
            sql += f" WHERE {pk} IN ({inner} LIMIT {int(limit)})"
        elif where_sql:
            sql += f" WHERE {where_sql}"
        return sql + ";", bind.params

    def upsert_query(
        self,
        table: str | TableName,
        insert_values: Mapping[str, Any],
        update_values: Mapping[str, Any],
        conflict_keys: Sequence[Sequence[str]],
        options: Mapping[str, Any] | None = None,
    ) -> list[Statement]:
        """Insert, or update the row matching any of ``conflict_keys``."""
        raise NotImplementedError

    def _limit_sql(self, limit: int | None, offset: int | None) -> str:
        sql = ""
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        if offset:
            sql += f" OFFSET {int(offset)}"
        return sql

    def _order_sql(self, order: Sequence[Any], ref: ColumnRef) -> str:
        parts = []
        for item in order:
            if isinstance(item, str):
                if item.startswith("-"):
                    parts.append(f"{ref(item[1:])} DESC")
                else:
                    parts.append(f"{ref(item)} ASC")
            else:
                col, direction = item
                parts.append(f"{ref(col)} {str(direction).upper()}")
        return ", ".join(parts)

    def select_query(
        self,
        table: str | TableName,
        options: Mapping[str, Any] | None = None,
        model: type[Base] | None = None,
    ) -> Statement:
        """SELECT with optional joined includes.

        Options: ``attributes`` (names or ``(expression, alias)`` pairs),
        ``where``, ``include`` (``Include`` list), ``order``, ``limit``,
        ``offset`` and ``table_alias``. The main table is aliased with the
        model name; included columns come back as ``"<alias>.<attribute>"``.
        """
        options = options or {}
        bind = self.bind()
        q = self.quote_identifier
        alias = options.get("table_alias") or (model.__name__ if model is not None else None)
        ref = self._column_ref(model, alias)

        attributes = options.get("attributes")
        if attributes is None:
            attributes = list(model.__columns__) if model is not None else ["*"]

        select_parts = []
        for attr in attributes:
            if isinstance(attr, tuple):
                expression, attr_alias = attr
                select_parts.append(f"{expression} AS {q(attr_alias)}")
            elif attr == "*":
                select_parts.append(f"{q(alias)}.*" if alias else "*")
            else:
                select_parts.append(f"{ref(attr)} AS {q(attr)}")

        joins = []
        include: Include
        for include in options.get("include") or []:
            include_ref = self._column_ref(include.model, include.as_)
            include_attrs = (
                include.attributes if include.attributes is not None else list(include.model.__columns__)
            )
            for attr in include_attrs:
                select_parts.append(f"{include_ref(attr)} AS {q(f'{include.as_}.{attr}')}")
            on = f"{include_ref(include.on[0])} = {ref(include.on[1])}"
            include_where = build_where(include.where, bind, include_ref)
            if include_where:
                on += f" AND {include_where}"
            join = "INNER JOIN" if include.required else "LEFT OUTER JOIN"
            joins.append(f"{join} {self.quote_table(include.model.get_table_name(), include.as_)} ON {on}")

        sql = f"SELECT {', '.join(select_parts)} FROM {self.quote_table(table, alias)}"
        if joins:
            sql += " " + " ".join(joins)
        where_sql = build_where(options.get("where"), bind, ref)
        if where_sql:
            sql += f" WHERE {where_sql}"
        if options.get("order"):
            sql += f" ORDER BY {self._order_sql(options['order'], ref)}"
        sql += self._limit_sql(options.get("limit"), options.get("offset"))
        return sql + ";", bind.params

    def count_query(
        self,
        table: str | TableName,
        options: Mapping[str, Any] | None = None,
        model: type[Base] | None = None,
    ) -> Statement:
        options = dict(options or {})
        options["attributes"] = [("COUNT(*)", "count")]
        options.pop("order", None)
        return self.select_query(table, options, model)

    def _conflict_where(self, insert_values: Mapping[str, Any], conflict_keys: Sequence[Sequence[str]]) -> Any:
        return or_(*[{key: insert_values[key] for key in keys} for keys in conflict_keys])

    # ========== Transactions ==========

    def set_autocommit_query(self, value: bool, transaction: Transaction) -> str | None:
        if transaction.parent is not None:
            return None
        return f"SET autocommit = {1 if value else 0};"

    def set_isolation_level_query(self, value: str | None, transaction: Transaction) -> str | None:
        if transaction.parent is not None or not value:
            return None
        return f"SET TRANSACTION ISOLATION LEVEL {value};"

    def start_transaction_query(self, transaction: Transaction) -> str:
        if transaction.parent is not None:
            return f"SAVEPOINT {self.quote_identifier(transaction.name)};"
        return "START TRANSACTION;"

    def defer_constraints_query(self, transaction: Transaction, constraints: Sequence[str] | None = None) -> str | None:
        return None

    def commit_transaction_query(self, transaction: Transaction) -> str | None:
        if transaction.parent is not None:
            return None
        return "COMMIT;"

    def rollback_transaction_query(self, transaction: Transaction) -> str:
        if transaction.parent is not None:
            return f"ROLLBACK TO SAVEPOINT {self.quote_identifier(transaction.name)};"
        return "ROLLBACK;"

    # ========== Triggers and functions ==========

    def create_trigger(self, *args: Any, **kwargs: Any) -> str | None:
        return None

    def drop_trigger(self, *args: Any, **kwargs: Any) -> str | None:
        return None

    def rename_trigger(self, *args: Any, **kwargs: Any) -> str | None:
        return None

    def create_function(self, *args: Any, **kwargs: Any) -> str | None:
        return None

    def drop_function(self, *args: Any, **kwargs: Any) -> str | None:
        return None

    def rename_function(self, *args: Any, **kwargs: Any) -> str | None:
        return None


class AbstractConnectionManager(ABC):
    """Opens and releases driver connections for one ``Database``."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config

    @abstractmethod
    async def get_connection(self, uuid: str = "default") -> Connection:
        """Return a connection, opening one if needed."""

    @abstractmethod
    async def release_connection(self, connection: Connection, force: bool = False) -> None:
        """Hand a connection back once a query or transaction is done with it."""

    @abstractmethod
    async def close(self) -> None:
        """Close every connection this manager opened."""


class AbstractQuery(ABC):
    """Runs statements on one connection."""

    def __init__(self, connection: Connection, database: Database, options: QueryOptions) -> None:
        self.connection = connection
        self.database = database
        self.options = options

    def log(self, sql: str) -> None:
        option = self.options.logging
        if option is False:
            return
        if callable(option):
            option(sql)
            return
        level = logging.INFO if self.database.config.log_sql else logging.DEBUG
        logger.log(level, "Executing (%s): %s", self.connection.uuid, sql)

    @abstractmethod
    async def run(self, sql: str, params: Sequence[Any] | None = None) -> RawResult:
        """Execute ``sql`` and return the raw driver output."""

    @abstractmethod
    async def run_upsert(self, statements: Sequence[Statement]) -> RawResult:
        """Run an upsert; ``rowcount`` is 1 when inserted and 2 when updated."""

    @abstractmethod
    def format_error(self, err: Exception, sql: str) -> DatabaseError:
        """Wrap a driver error in the matching ``DatabaseError``."""


@dataclass(frozen=True)
class Dialect:
    """The collaborators one database backend provides."""

    name: str
    generator: type[AbstractQueryGenerator]
    connection_manager: type[AbstractConnectionManager]
    query: type[AbstractQuery]
    interpreter: type[ResultInterpreter]
    supports_schemas: bool = True
    rebuilder: type | None = None
    """Helper that alters columns by rebuilding the table, for dialects without ALTER COLUMN."""
