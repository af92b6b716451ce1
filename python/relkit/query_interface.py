"""Routes abstract database operations to dialect SQL and tags their intent.

Each method asks the dialect's generator for SQL, attaches a ``QueryType``
(and the instance or model the result belongs to) to the statement's
``QueryOptions`` and hands both to ``Database.query``. Dialect quirks are
routing decisions made here: PostgreSQL enum types are synced before
``CREATE TABLE``, and SQLite column changes go through the table rebuilder.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from relkit.dialects.abstract import TableName, table_name_of
from relkit.errors import ConfigurationError, EmptyResultError, ValidationError
from relkit.fields import ENUM, ColumnInfo
from relkit.query_types import QueryType

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.database import Database
    from relkit.dialects.abstract import Connection
    from relkit.query import Include
    from relkit.transaction import Transaction

logger = logging.getLogger("relkit.query")

EXECUTION_KEYS = ("transaction", "logging")


def _execution(options: Mapping[str, Any]) -> dict[str, Any]:
    return {key: options[key] for key in EXECUTION_KEYS if key in options}


def _normalize_attribute(name: str, attribute: Any) -> ColumnInfo:
    """Turn a ColumnInfo, an ENUM or a plain Python type into a ColumnInfo."""
    if isinstance(attribute, ColumnInfo):
        column = attribute.copy()
        if column.name is None:
            column.name = name
    elif isinstance(attribute, ENUM):
        column = ColumnInfo(name=name, python_type=str, nullable=True, enum_values=attribute.values)
    else:
        column = ColumnInfo(name=name, python_type=attribute, nullable=True)

    if column.is_enum and not column.enum_values:
        raise ValidationError("Values for ENUM haven't been defined.")
    return column


def normalize_attributes(attributes: Mapping[str, Any]) -> dict[str, ColumnInfo]:
    return {name: _normalize_attribute(name, attribute) for name, attribute in attributes.items()}


class QueryInterface:
    """Dialect-neutral schema, DML and transaction operations for one ``Database``.

    Example:
        >>> qi = db.query_interface
        >>> await qi.create_table("users", {"id": mapped_column(primary_key=True), "name": str})
        >>> await qi.add_index("users", ["name"])
        >>> await qi.describe_table("users")
        {'id': {'type': 'INTEGER', ...}, 'name': {...}}
    """

    def __init__(self, database: Database) -> None:
        self.database = database
        self.dialect = database.dialect
        self.generator = database.generator
        self._rebuilder = self.dialect.rebuilder(self) if self.dialect.rebuilder is not None else None

    @property
    def is_postgres(self) -> bool:
        return self.dialect.name == "postgresql"

    async def _run_all(self, statements: str | Sequence[str] | None, **options: Any) -> None:
        """Run one statement or a list of them in order."""
        if statements is None:
            return
        if isinstance(statements, str):
            statements = [statements]
        for sql in statements:
            await self.database.query(sql, **options)

    # ========== Schemas ==========

    async def create_schema(self, schema: str, **options: Any) -> Any:
        sql = self.generator.create_schema(schema)
        if sql is None:
            return None
        return await self.database.query(sql, **_execution(options))

    async def drop_schema(self, schema: str, **options: Any) -> Any:
        sql = self.generator.drop_schema(schema)
        if sql is None:
            return None
        return await self.database.query(sql, **_execution(options))

    async def drop_all_schemas(self, skip: Sequence[str] = (), **options: Any) -> None:
        """Drop every schema except ``skip``; drops all tables where schemas are unsupported."""
        if not self.dialect.supports_schemas:
            await self.database.drop(**_execution(options))
            return
        for schema in await self.show_all_schemas(**options):
            if schema not in skip:
                await self.drop_schema(schema, **options)

    async def show_all_schemas(self, **options: Any) -> list[str]:
        rows = await self.database.query(
            self.generator.show_schemas_query(),
            type=QueryType.SELECT,
            raw=True,
            logging=options.get("logging", False),
            transaction=options.get("transaction"),
        )
        return [value for row in rows for value in row.values()]

    async def database_version(self, **options: Any) -> str | None:
        return await self.database.query(
            self.generator.version_query(), type=QueryType.VERSION, **_execution(options)
        )

    # ========== Tables ==========

    async def create_table(
        self,
        table: str | TableName,
        attributes: Mapping[str, Any],
        *,
        schema: str | None = None,
        unique_keys: Mapping[str, Sequence[str]] | None = None,
        temporary: bool = False,
        **options: Any,
    ) -> Any:
        """Create ``table`` from attribute definitions.

        ``attributes`` maps names to ``ColumnInfo`` records, ``ENUM`` values or
        plain Python types. On PostgreSQL the enum types of ENUM columns are
        created or extended first, in declared label order.

        Raises:
            ValidationError: If an ENUM attribute has no values
        """
        execution = _execution(options)
        if isinstance(table, str):
            table = self.generator.add_schema(table, schema)
        columns = normalize_attributes(attributes)

        if self.is_postgres:
            await self._sync_enums(table, columns, execution)

        sql = self.generator.create_table_query(
            table,
            self.generator.attributes_to_sql(columns, table),
            {"unique_keys": dict(unique_keys or {}), "temporary": temporary},
        )
        return await self.database.query(sql, **execution)

    async def _sync_enums(
        self, table: str | TableName, columns: Mapping[str, ColumnInfo], execution: Mapping[str, Any]
    ) -> None:
        """Create missing enum types and add missing labels to existing ones.

        Runs strictly before the statement that uses the types. A missing label
        is anchored BEFORE the nearest following declared label that already
        exists, or AFTER the nearest preceding one.
        """
        generator = self.generator
        for name, column in columns.items():
            if not column.is_enum:
                continue
            field = column.column_name
            rows = await self.database.query(
                generator.pg_list_enums(table, field), type=QueryType.SELECT, raw=True, **execution
            )
            declared = list(column.enum_values or ())

            if not rows:
                await self.database.query(generator.pg_enum(table, field, declared), **execution)
                continue

            existing = list(rows[0]["enum_value"] or [])
            for position, value in enumerate(declared):
                if value in existing:
                    continue
                before = next((label for label in declared[position + 1 :] if label in existing), None)
                after = None
                if before is None:
                    after = next((label for label in reversed(declared[:position]) if label in existing), None)
                await self.database.query(
                    generator.pg_enum_add(table, field, value, before=before, after=after), **execution
                )
                if before is not None:
                    existing.insert(existing.index(before), value)
                elif after is not None:
                    existing.insert(existing.index(after) + 1, value)
                else:
                    existing.append(value)
                logger.debug("Added label %r to enum %s", value, generator.enum_type_name(table, field))

    async def drop_table(
        self, table: str | TableName, *, cascade: bool = False, force: bool = False, **options: Any
    ) -> Any:
        """Drop ``table``; on PostgreSQL also drop the enum types of its model."""
        execution = _execution(options)
        sql = self.generator.drop_table_query(table, {"cascade": cascade or force})
        result = await self.database.query(sql, **execution)

        if self.is_postgres:
            model = self.database.registry.get_by_table(table_name_of(table))
            if model is not None:
                for column in model.__columns__.values():
                    if column.is_enum:
                        await self.database.query(
                            self.generator.pg_enum_drop(table, column.column_name), **execution
                        )
        return result

    async def drop_all_tables(self, skip: Sequence[str] = (), **options: Any) -> None:
        """Drop every table except those named in ``skip``.

        SQLite switches foreign key enforcement off for the duration when it is
        on. PostgreSQL drops every foreign key constraint first so tables can
        be dropped in any order.
        """
        execution = _execution(options)
        tables = [table for table in await self.show_all_tables(**execution) if table_name_of(table) not in skip]

        if self.dialect.name == "sqlite":
            rows = await self.database.query("PRAGMA foreign_keys;", type=QueryType.SELECT, raw=True, **execution)
            enabled = bool(rows and next(iter(rows[0].values())))
            if enabled:
                await self.database.query("PRAGMA foreign_keys = OFF", **execution)
            try:
                for table in tables:
                    await self.drop_table(table, **execution)
            finally:
                if enabled:
                    await self.database.query("PRAGMA foreign_keys = ON", **execution)
            return

        foreign_keys = await self.get_foreign_keys_for_tables(tables, **execution)
        for table in tables:
            for constraint in foreign_keys.get(str(table), []):
                await self._run_all(self.generator.drop_foreign_key_query(table, constraint), **execution)
        for table in tables:
            await self.drop_table(table, cascade=True, **execution)

    async def drop_all_enums(self, **options: Any) -> None:
        """Drop every enum type in the public schema (PostgreSQL only)."""
        if not self.is_postgres:
            return
        execution = _execution(options)
        rows = await self.database.query(
            self.generator.pg_list_enums(), type=QueryType.SELECT, raw=True, **execution
        )
        for row in rows:
            await self.database.query(self.generator.pg_enum_drop(enum_name=row["enum_name"]), **execution)

    async def rename_table(self, before: str | TableName, after: str | TableName, **options: Any) -> Any:
        return await self.database.query(self.generator.rename_table_query(before, after), **_execution(options))

    async def show_all_tables(self, **options: Any) -> list[str]:
        return await self.database.query(
            self.generator.show_tables_query(), type=QueryType.SHOWTABLES, raw=True, **_execution(options)
        )

    async def describe_table(
        self, table: str | TableName, schema: str | None = None, **options: Any
    ) -> dict[str, dict[str, Any]]:
        """Column map of ``table``: ``{column: {type, allow_null, default_value, primary_key}}``.

        Raises:
            EmptyResultError: If the table has no columns, usually because it
                does not exist in that schema
        """
        if isinstance(table, str) and schema:
            table = self.generator.add_schema(table, schema)
        result = await self.database.query(
            self.generator.describe_table_query(table), type=QueryType.DESCRIBE, **_execution(options)
        )
        if not result:
            raise EmptyResultError(
                f"No description found for table {str(table)!r}. Check the table name and schema; "
                "remember, they are case sensitive."
            )
        return result

    # ========== Columns ==========

    async def add_column(self, table: str | TableName, key: str, attribute: Any, **options: Any) -> Any:
        execution = _execution(options)
        column = _normalize_attribute(key, attribute)
        if self.is_postgres:
            await self._sync_enums(table, {key: column}, execution)
        sql = self.generator.add_column_query(table, column.column_name, self.generator.attribute_to_sql(column, table))
        return await self.database.query(sql, **execution)

    async def remove_column(self, table: str | TableName, attribute: str, **options: Any) -> None:
        execution = _execution(options)
        if self._rebuilder is not None:
            await self._rebuilder.remove_column(table, attribute, **execution)
            return
        await self._run_all(self.generator.remove_column_query(table, attribute), **execution)

    async def change_column(self, table: str | TableName, attribute: str, data_type: Any, **options: Any) -> None:
        """Redefine column ``attribute`` of ``table``."""
        execution = _execution(options)
        columns = {attribute: _normalize_attribute(attribute, data_type)}
        if self._rebuilder is not None:
            await self._rebuilder.change_column(table, columns, **execution)
            return
        if self.is_postgres:
            await self._sync_enums(table, columns, execution)
        await self._run_all(self.generator.change_column_query(table, columns), **execution)

    async def rename_column(self, table: str | TableName, before: str, after: str, **options: Any) -> None:
        execution = _execution(options)
        if self._rebuilder is not None:
            await self._rebuilder.rename_column(table, before, after, **execution)
            return
        await self._run_all(self.generator.rename_column_query(table, before, after), **execution)

    # ========== Indexes and keys ==========

    async def add_index(
        self, table: str | TableName, attributes: Sequence[Any] | None = None, **options: Any
    ) -> Any:
        """Create an index on ``attributes`` (or ``fields=``).

        Example:
            >>> await qi.add_index("users", ["email"], unique=True)
            >>> await qi.add_index("users", fields=[{"attribute": "name", "order": "DESC"}])
        """
        execution = _execution(options)
        index = {key: value for key, value in options.items() if key not in EXECUTION_KEYS}
        if attributes is not None:
            index["fields"] = list(attributes)
        sql = self.generator.add_index_query(table, index, table_name_of(table))
        return await self.database.query(sql, **execution)

    async def show_index(self, table: str | TableName, **options: Any) -> list[dict[str, Any]]:
        return await self.database.query(
            self.generator.show_indexes_query(table), type=QueryType.SHOWINDEXES, **_execution(options)
        )

    def name_indexes(self, indexes: Sequence[Mapping[str, Any]], raw_table: str) -> list[dict[str, Any]]:
        return self.generator.name_indexes(indexes, raw_table)

    async def remove_index(
        self, table: str | TableName, index_name_or_attributes: str | Sequence[str], **options: Any
    ) -> Any:
        sql = self.generator.remove_index_query(table, index_name_or_attributes)
        return await self.database.query(sql, **_execution(options))

    async def get_foreign_keys_for_tables(
        self, tables: Sequence[str | TableName], **options: Any
    ) -> dict[str, list[str]]:
        """Map each table name to the names of its foreign key constraints."""
        result = {}
        for table in tables:
            rows = await self.get_foreign_key_references(table, **options)
            result[str(table)] = [row["constraint_name"] for row in rows if row.get("constraint_name")]
        return result

    async def get_foreign_key_references(self, table: str | TableName, **options: Any) -> list[dict[str, Any]]:
        return await self.database.query(
            self.generator.get_foreign_keys_query(table), type=QueryType.FOREIGNKEYS, **_execution(options)
        )

    # ========== DML ==========

    async def insert(
        self,
        instance: Base | None,
        table: str | TableName,
        values: Mapping[str, Any],
        **options: Any,
    ) -> Any:
        """INSERT one row; with ``instance`` the generated values are written back to it."""
        returning = instance is not None and self.generator.supports_returning
        statement = self.generator.insert_query(
            table, values, {"returning": returning, "ignore_duplicates": options.get("ignore_duplicates", False)}
        )
        return await self.database.query(
            statement,
            type=QueryType.INSERT,
            instance=instance,
            model=type(instance) if instance is not None else None,
            **_execution(options),
        )

    def conflict_keys(self, model: type[Base], values: Mapping[str, Any]) -> list[list[str]]:
        """Column sets an upsert of ``values`` can conflict on.

        The primary key plus every unique constraint and unique index whose
        columns are all present in ``values``.
        """
        candidates: list[list[str]] = []
        primary = [model.field_for(name) for name in model.__primary_keys__]
        candidates.append(primary)
        for names in model.__unique_constraints__.values():
            candidates.append([model.field_for(name) for name in names])
        for index in model.__options__.indexes:
            if index.get("unique") or str(index.get("type", "")).upper() == "UNIQUE":
                fields_ = self.generator._index_field_names(index.get("fields") or [])
                candidates.append([model.field_for(name) for name in fields_])

        keys: list[list[str]] = []
        for candidate in candidates:
            if candidate and all(column in values for column in candidate) and candidate not in keys:
                keys.append(candidate)
        return keys

    async def upsert(
        self,
        table: str | TableName,
        insert_values: Mapping[str, Any],
        update_values: Mapping[str, Any],
        model: type[Base],
        **options: Any,
    ) -> bool:
        """Insert a row or update the existing one; True when a row was inserted."""
        statements = self.generator.upsert_query(
            table, insert_values, update_values, self.conflict_keys(model, insert_values)
        )
        return await self.database.query(statements, type=QueryType.UPSERT, model=model, **_execution(options))

    async def bulk_insert(
        self,
        table: str | TableName,
        records: Sequence[Mapping[str, Any]],
        *,
        model: type[Base] | None = None,
        ignore_duplicates: bool = False,
        **options: Any,
    ) -> Any:
        returning = model is not None and self.generator.supports_returning
        statement = self.generator.bulk_insert_query(
            table, records, {"returning": returning, "ignore_duplicates": ignore_duplicates}
        )
        return await self.database.query(statement, type=QueryType.INSERT, model=model, **_execution(options))

    async def update(
        self,
        instance: Base,
        table: str | TableName,
        values: Mapping[str, Any],
        where: Any,
        **options: Any,
    ) -> Base:
        statement = self.generator.update_query(table, values, where, {}, type(instance))
        return await self.database.query(
            statement, type=QueryType.UPDATE, instance=instance, model=type(instance), **_execution(options)
        )

    async def bulk_update(
        self,
        table: str | TableName,
        values: Mapping[str, Any],
        where: Any,
        *,
        model: type[Base] | None = None,
        **options: Any,
    ) -> int:
        statement = self.generator.update_query(table, values, where, {}, model)
        return await self.database.query(statement, type=QueryType.BULKUPDATE, model=model, **_execution(options))

    async def delete(self, instance: Base, table: str | TableName, where: Any, **options: Any) -> int:
        statement = self.generator.delete_query(table, where, {}, type(instance))
        return await self.database.query(
            statement, type=QueryType.DELETE, instance=instance, model=type(instance), **_execution(options)
        )

    async def bulk_delete(
        self,
        table: str | TableName,
        where: Any,
        *,
        model: type[Base] | None = None,
        limit: int | None = None,
        **options: Any,
    ) -> int:
        statement = self.generator.delete_query(table, where, {"limit": limit}, model)
        return await self.database.query(statement, type=QueryType.BULKDELETE, model=model, **_execution(options))

    async def select(
        self,
        model: type[Base] | None,
        table: str | TableName,
        *,
        attributes: Sequence[Any] | None = None,
        where: Any = None,
        include: Sequence[Include] | None = None,
        order: Sequence[Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        raw: bool = False,
        plain: bool = False,
        **options: Any,
    ) -> Any:
        statement = self.generator.select_query(
            table,
            {
                "attributes": list(attributes) if attributes is not None else None,
                "where": where,
                "include": list(include or []),
                "order": order,
                "limit": limit,
                "offset": offset,
            },
            model,
        )
        return await self.database.query(
            statement,
            type=QueryType.SELECT,
            model=model,
            raw=raw,
            plain=plain,
            include=list(include or []),
            **_execution(options),
        )

    async def increment(
        self,
        model: type[Base] | None,
        table: str | TableName,
        values: Mapping[str, Any],
        where: Any,
        **options: Any,
    ) -> Any:
        """Add each of ``values`` to its column in the matching rows."""
        statement = self.generator.increment_query(table, values, where, {}, model)
        return await self.database.query(statement, type=QueryType.RAW, model=model, **_execution(options))

    async def raw_select(
        self,
        table: str | TableName,
        attribute: str,
        data_type: Callable[[Any], Any] | None = None,
        *,
        model: type[Base] | None = None,
        plain: bool = True,
        attributes: Sequence[Any] | None = None,
        where: Any = None,
        include: Sequence[Include] | None = None,
        **options: Any,
    ) -> Any:
        """Select a single value such as an aggregate, cast with ``data_type``.

        Example:
            >>> await qi.raw_select("users", "count", int, attributes=[("COUNT(*)", "count")])
            3
        """
        if not attribute:
            raise ValidationError("raw_select needs the name of the attribute to read")
        statement = self.generator.select_query(
            table,
            {
                "attributes": list(attributes) if attributes is not None else [attribute],
                "where": where,
                "include": list(include or []),
            },
            model,
        )
        return await self.database.query(
            statement,
            type=QueryType.SELECT,
            model=model,
            raw=True,
            plain=plain,
            attribute=attribute,
            data_type=data_type,
            **_execution(options),
        )

    # ========== Triggers and functions ==========

    async def _run_optional(self, sql: str | None, options: Mapping[str, Any]) -> Any:
        if sql is None:
            return None
        return await self.database.query(sql, **_execution(options))

    async def create_trigger(
        self,
        table: str | TableName,
        trigger_name: str,
        timing: str,
        fire_on: Any,
        function_name: str,
        function_params: Sequence[Mapping[str, str]] | None = None,
        trigger_options: Sequence[str] | None = None,
        **options: Any,
    ) -> Any:
        sql = self.generator.create_trigger(
            table, trigger_name, timing, fire_on, function_name, function_params, trigger_options
        )
        return await self._run_optional(sql, options)

    async def drop_trigger(self, table: str | TableName, trigger_name: str, **options: Any) -> Any:
        return await self._run_optional(self.generator.drop_trigger(table, trigger_name), options)

    async def rename_trigger(self, table: str | TableName, old_name: str, new_name: str, **options: Any) -> Any:
        return await self._run_optional(self.generator.rename_trigger(table, old_name, new_name), options)

    async def create_function(
        self,
        function_name: str,
        params: Sequence[Mapping[str, str]] | None,
        return_type: str,
        language: str,
        body: str,
        function_options: Sequence[str] | None = None,
        **options: Any,
    ) -> Any:
        sql = self.generator.create_function(function_name, params, return_type, language, body, function_options)
        return await self._run_optional(sql, options)

    async def drop_function(
        self, function_name: str, params: Sequence[Mapping[str, str]] | None = None, **options: Any
    ) -> Any:
        return await self._run_optional(self.generator.drop_function(function_name, params), options)

    async def rename_function(
        self,
        old_name: str,
        params: Sequence[Mapping[str, str]] | None,
        new_name: str,
        **options: Any,
    ) -> Any:
        return await self._run_optional(self.generator.rename_function(old_name, params, new_name), options)

    # ========== Quoting ==========

    def quote_identifier(self, identifier: str) -> str:
        return self.generator.quote_identifier(identifier)

    def quote_identifiers(self, identifiers: str) -> str:
        return self.generator.quote_identifiers(identifiers)

    def quote_table(self, table: str | TableName) -> str:
        return self.generator.quote_table(table)

    def escape(self, value: Any) -> str:
        return self.generator.escape(value)

    # ========== Transactions ==========
    #
    # These are plain functions returning the awaitable so that a missing
    # transaction handle fails at the call site, before anything is awaited.

    def _require_connection(self, transaction: Transaction | None, operation: str) -> Connection:
        if transaction is None:
            raise ConfigurationError(f"Unable to {operation} a transaction without a transaction object!")
        if transaction.connection is None:
            raise ConfigurationError(f"Unable to {operation} a transaction that has no connection")
        return transaction.connection

    async def _transition(
        self,
        transaction: Transaction,
        sql: str | None,
        apply: Callable[[Connection], None] | None = None,
    ) -> None:
        if sql is not None:
            await self.database.query(sql, transaction=transaction)
        connection = transaction.connection
        if apply is not None and connection is not None and transaction.parent is None:
            apply(connection)

    def set_autocommit(self, transaction: Transaction, value: bool) -> Awaitable[None]:
        self._require_connection(transaction, "set autocommit for")
        sql = self.generator.set_autocommit_query(value, transaction)

        def apply(connection: Connection) -> None:
            connection.state.autocommit = value

        return self._transition(transaction, sql, apply)

    def set_isolation_level(self, transaction: Transaction, value: str) -> Awaitable[None]:
        self._require_connection(transaction, "set isolation level for")
        sql = self.generator.set_isolation_level_query(value, transaction)

        def apply(connection: Connection) -> None:
            connection.state.isolation_level = value

        return self._transition(transaction, sql, apply)

    def start_transaction(self, transaction: Transaction) -> Awaitable[None]:
        self._require_connection(transaction, "start")
        sql = self.generator.start_transaction_query(transaction)

        def apply(connection: Connection) -> None:
            connection.state.in_transaction = True
            connection.state.autocommit = False

        return self._transition(transaction, sql, apply)

    def defer_constraints(self, transaction: Transaction, constraints: Sequence[str] | None = None) -> Awaitable[None]:
        self._require_connection(transaction, "defer constraints of")
        return self._transition(transaction, self.generator.defer_constraints_query(transaction, constraints))

    def commit_transaction(self, transaction: Transaction) -> Awaitable[None]:
        self._require_connection(transaction, "commit")
        return self._transition(
            transaction, self.generator.commit_transaction_query(transaction), _reset_connection_state
        )

    def rollback_transaction(self, transaction: Transaction) -> Awaitable[None]:
        self._require_connection(transaction, "rollback")
        return self._transition(
            transaction, self.generator.rollback_transaction_query(transaction), _reset_connection_state
        )


def _reset_connection_state(connection: Connection) -> None:
    connection.reset_state()
