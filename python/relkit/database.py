"""Database facade: statement execution, model operations and schema sync."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import fields, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from relkit.config import DatabaseConfig
from relkit.dialects import get_dialect
from relkit.errors import ConfigurationError, RelkitError
from relkit.query import NOT_SET, Query, merge_where
from relkit.query_interface import QueryInterface
from relkit.query_types import QueryOptions, QueryType
from relkit.registry import Registry
from relkit.transaction import Transaction

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.query import Include

T = TypeVar("T", bound="Base")

logger = logging.getLogger("relkit.connection")

_QUERY_OPTION_FIELDS = frozenset(f.name for f in fields(QueryOptions))


def _row_values(instance: Base, only: Sequence[str] | None = None) -> dict[str, Any]:
    """Column values of ``instance`` keyed by physical column name.

    Unset values are left out so the database applies its defaults, and so are
    empty auto-increment keys.
    """
    model = type(instance)
    values = {}
    for name, column in model.__columns__.items():
        if only is not None and name not in only:
            continue
        value = instance.__dict__.get(name)
        if value is None and (
            name not in instance.__dict__
            or (column.primary_key and column.autoincrement)
            or column.server_default is not None
        ):
            continue
        values[column.column_name] = value
    return values


def _field_values(model: type[Base], values: Mapping[str, Any]) -> dict[str, Any]:
    return {model.field_for(name): value for name, value in values.items()}


class Database:
    """Entry point owning the dialect, the connections and the query interface.

    Example:
        >>> registry = Registry()
        >>> Model = declarative_base(registry)
        >>> db = Database("sqlite::memory:", registry=registry)
        >>> await db.sync()
        >>> user = await db.create(User(name="Alice"))
        >>> await db.find(User).filter(name="Alice").first()
    """

    def __init__(
        self,
        config: DatabaseConfig | str | None = None,
        *,
        registry: Registry | None = None,
        **options: Any,
    ) -> None:
        if config is None:
            config = DatabaseConfig.from_env()
        elif isinstance(config, str):
            config = DatabaseConfig.from_url(config)
        if options:
            config = config.with_options(options)

        self.config = config
        self.dialect = get_dialect(config.dialect)
        self.generator = self.dialect.generator()
        self.connection_manager = self.dialect.connection_manager(config)
        self.interpreter = self.dialect.interpreter()
        self.registry = registry if registry is not None else Registry()
        self.query_interface = QueryInterface(self)
        self.registry.bind(self)

    def __repr__(self) -> str:
        target = self.config.storage if self.config.dialect == "sqlite" else self.config.database
        return f"<Database {self.config.dialect} {target}>"

    async def __aenter__(self) -> Database:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.close()

    # ========== Execution ==========

    async def query(self, sql: Any, options: QueryOptions | None = None, **kwargs: Any) -> Any:
        """Run one statement and interpret its result.

        ``sql`` is SQL text, a ``(sql, params)`` pair, or the statement list
        of an upsert. Keyword arguments override fields of ``options``.

        Example:
            >>> rows, _ = await db.query("SELECT 1 AS one")
            >>> await db.query(("SELECT * FROM users WHERE id = ?", [1]), type=QueryType.SELECT, raw=True)
        """
        changes = {key: value for key, value in kwargs.items() if key in _QUERY_OPTION_FIELDS}
        if options is None:
            options = QueryOptions(**changes)
        elif changes:
            options = replace(options, **changes)

        if isinstance(sql, tuple):
            sql, bind = sql
            options.bind = list(bind)

        transaction = options.transaction
        if transaction is not None:
            if transaction.connection is None:
                raise RelkitError(f"{transaction!r} has not been started or is already finished")
            connection = transaction.connection
        else:
            connection = await self.connection_manager.get_connection()

        try:
            async with connection.lock:
                runner = self.dialect.query(connection, self, options)
                if options.type is QueryType.UPSERT:
                    raw = await runner.run_upsert(sql)
                else:
                    raw = await runner.run(sql, options.bind)
        finally:
            if transaction is None:
                await self.connection_manager.release_connection(connection)

        return self.interpreter.format(raw, options)

    # ========== Transactions ==========

    def transaction(self, **options: Any) -> Transaction:
        """A transaction that starts when entered.

        Example:
            >>> async with db.transaction() as tx:
            ...     await post.set_tags([tag1, tag2], transaction=tx)
        """
        options.setdefault("isolation_level", self.config.isolation_level)
        return Transaction(self, **options)

    async def begin(self, **options: Any) -> Transaction:
        """Start a transaction the caller commits or rolls back."""
        return await self.transaction(**options).prepare()

    # ========== Scopes ==========

    def _scope_where(self, model: type[Base], scope: Any) -> Any:
        model_options = model.__options__
        if scope is False:
            return None
        if scope is NOT_SET or scope is None or scope is True:
            return model_options.default_scope
        if isinstance(scope, str):
            if scope not in model_options.scopes:
                raise ConfigurationError(f"Model {model.__name__} has no scope named {scope!r}")
            return model_options.scopes[scope]
        return scope

    def _paranoid_where(self, model: type[Base], paranoid: bool) -> Any:
        if paranoid and model.__options__.paranoid:
            return {"deleted_at": None}
        return None

    def _conditions(self, model: type[Base], where: Any, scope: Any, paranoid: bool) -> Any:
        return merge_where(self._scope_where(model, scope), self._paranoid_where(model, paranoid), where)

    # ========== Model operations ==========

    async def create(
        self,
        instance: T,
        *,
        fields: Sequence[str] | None = None,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> T:
        """INSERT ``instance`` and fill in its generated key."""
        model = type(instance)
        return await self.query_interface.insert(
            instance,
            model.get_table_name(),
            _row_values(instance, fields),
            transaction=transaction,
            logging=logging,
        )

    async def save(
        self,
        instance: T,
        *,
        fields: Sequence[str] | None = None,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> T:
        """INSERT a new instance, or UPDATE a loaded one by primary key."""
        if instance.is_new_record:
            return await self.create(instance, fields=fields, transaction=transaction, logging=logging)

        model = type(instance)
        primary = {model.field_for(name) for name in model.__primary_keys__}
        values = {key: value for key, value in _row_values(instance, fields).items() if key not in primary}
        if not values:
            return instance
        return await self.query_interface.update(
            instance, model.get_table_name(), values, instance.where(), transaction=transaction, logging=logging
        )

    async def bulk_create(
        self,
        model: type[T],
        records: Sequence[T | Mapping[str, Any]],
        *,
        ignore_duplicates: bool = False,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> list[T]:
        """INSERT many rows in one statement.

        ``records`` are instances or attribute dicts. Returns the inserted
        instances; on PostgreSQL they are re-read from ``RETURNING``.
        """
        instances = [record if isinstance(record, model) else model(**record) for record in records]
        if not instances:
            return []
        result = await self.query_interface.bulk_insert(
            model.get_table_name(),
            [_row_values(instance) for instance in instances],
            model=model,
            ignore_duplicates=ignore_duplicates,
            transaction=transaction,
            logging=logging,
        )
        if isinstance(result, list) and all(isinstance(item, model) for item in result):
            return result
        for instance in instances:
            object.__setattr__(instance, "_is_new_record", False)
        return instances

    async def find_all(
        self,
        model: type[T],
        where: Any = None,
        *,
        attributes: Sequence[Any] | None = None,
        include: Sequence[Include] | None = None,
        order: Sequence[Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        scope: Any = NOT_SET,
        paranoid: bool = True,
        raw: bool = False,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> list[Any]:
        """SELECT rows of ``model`` as instances, or as dicts with ``raw=True``.

        Example:
            >>> await db.find_all(User, {"age__gte": 18}, order=["-created_at"], limit=10)
            >>> await db.find_all(User, Q(name="Alice") | Q(name="Bob"), scope=False)
        """
        return await self.query_interface.select(
            model,
            model.get_table_name(),
            attributes=attributes,
            where=self._conditions(model, where, scope, paranoid),
            include=include,
            order=order,
            limit=limit,
            offset=offset,
            raw=raw,
            transaction=transaction,
            logging=logging,
        )

    async def find_one(
        self,
        model: type[T],
        where: Any = None,
        *,
        attributes: Sequence[Any] | None = None,
        include: Sequence[Include] | None = None,
        order: Sequence[Any] | None = None,
        offset: int | None = None,
        scope: Any = NOT_SET,
        paranoid: bool = True,
        raw: bool = False,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> Any:
        return await self.query_interface.select(
            model,
            model.get_table_name(),
            attributes=attributes,
            where=self._conditions(model, where, scope, paranoid),
            include=include,
            order=order,
            limit=1,
            offset=offset,
            raw=raw,
            plain=True,
            transaction=transaction,
            logging=logging,
        )

    async def find_by_pk(self, model: type[T], pk: Any, **options: Any) -> T | None:
        if model.__primary_key__ is None:
            raise ConfigurationError(f"{model.__name__} has no primary key")
        return await self.find_one(model, {model.__primary_key__: pk}, **options)

    async def count(
        self,
        model: type[Base],
        where: Any = None,
        *,
        scope: Any = NOT_SET,
        paranoid: bool = True,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> int:
        result = await self.query_interface.raw_select(
            model.get_table_name(),
            "count",
            int,
            model=model,
            attributes=[("COUNT(*)", "count")],
            where=self._conditions(model, where, scope, paranoid),
            transaction=transaction,
            logging=logging,
        )
        return result or 0

    async def update(
        self,
        model: type[Base],
        values: Mapping[str, Any],
        where: Any = None,
        *,
        scope: Any = NOT_SET,
        paranoid: bool = True,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> int:
        """UPDATE every matching row with attribute ``values``; returns the row count."""
        return await self.query_interface.bulk_update(
            model.get_table_name(),
            _field_values(model, values),
            self._conditions(model, where, scope, paranoid),
            model=model,
            transaction=transaction,
            logging=logging,
        )

    async def destroy(
        self,
        model: type[Base],
        where: Any = None,
        *,
        force: bool = False,
        limit: int | None = None,
        scope: Any = NOT_SET,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> int:
        """Delete matching rows; paranoid models are soft-deleted unless ``force``."""
        if model.__options__.paranoid and not force:
            return await self.update(
                model,
                {"deleted_at": datetime.now(UTC)},
                where,
                scope=scope,
                transaction=transaction,
                logging=logging,
            )
        return await self.query_interface.bulk_delete(
            model.get_table_name(),
            self._conditions(model, where, scope, paranoid=False),
            model=model,
            limit=limit,
            transaction=transaction,
            logging=logging,
        )

    async def remove(
        self,
        instance: Base,
        *,
        force: bool = False,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> int:
        """Delete one loaded instance by primary key."""
        model = type(instance)
        if model.__options__.paranoid and not force:
            object.__setattr__(instance, "deleted_at", datetime.now(UTC))
            await self.save(instance, fields=["deleted_at"], transaction=transaction, logging=logging)
            return 1
        return await self.query_interface.delete(
            instance, model.get_table_name(), instance.where(), transaction=transaction, logging=logging
        )

    async def upsert(
        self,
        model: type[Base],
        values: Base | Mapping[str, Any],
        *,
        update_fields: Sequence[str] | None = None,
        transaction: Transaction | None = None,
        logging: Any = None,
    ) -> bool:
        """Insert, or update the row that conflicts on the primary key or a unique key.

        Returns True when a row was inserted and False when one was updated.

        Example:
            >>> await db.upsert(User, {"email": "alice@example.com", "name": "Alice"})
            True
        """
        instance = values if isinstance(values, model) else model(**values)
        insert_values = _row_values(instance)
        primary = {model.field_for(name) for name in model.__primary_keys__}
        if update_fields is not None:
            allowed = {model.field_for(name) for name in update_fields}
            update_values = {key: value for key, value in insert_values.items() if key in allowed}
        else:
            update_values = {key: value for key, value in insert_values.items() if key not in primary}
        return await self.query_interface.upsert(
            model.get_table_name(),
            insert_values,
            update_values,
            model,
            transaction=transaction,
            logging=logging,
        )

    def find(self, model: type[T]) -> Query[T]:
        """Start a fluent query.

        Example:
            >>> await db.find(User).filter(age__gte=18).order_by("name").limit(10).all()
        """
        return Query(self, model)

    # ========== Schema ==========

    def _sorted_models(self) -> list[type[Base]]:
        """Registered models with every foreign key target before its referrers."""
        models = self.registry.models()
        by_table = {model.__tablename__: model for model in models}
        ordered: list[type[Base]] = []
        visiting: set[str] = set()

        def visit(model: type[Base]) -> None:
            if model in ordered or model.__name__ in visiting:
                return
            visiting.add(model.__name__)
            for column in model.__columns__.values():
                if column.foreign_key is None:
                    continue
                target = by_table.get(column.foreign_key.table.rsplit(".", 1)[-1])
                if target is not None and target is not model:
                    visit(target)
            visiting.discard(model.__name__)
            ordered.append(model)

        for model in models:
            visit(model)
        return ordered

    def _unique_keys(self, model: type[Base]) -> dict[str, list[str]]:
        """Table-level unique constraints; single-column ``unique=True`` stays inline."""
        keys = {}
        for name, attributes in model.__unique_constraints__.items():
            if len(attributes) == 1 and model.__columns__[attributes[0]].unique is True:
                continue
            keys[name] = [model.field_for(attribute) for attribute in attributes]
        return keys

    def _indexes(self, model: type[Base]) -> list[dict[str, Any]]:
        indexes = [dict(index) for index in model.__options__.indexes]
        for column in model.__columns__.values():
            if column.index and not column.primary_key:
                indexes.append({"fields": [column.column_name]})
        return self.query_interface.name_indexes(indexes, model.__tablename__)

    async def sync(self, *, force: bool = False, **options: Any) -> None:
        """Create the tables and indexes of every registered model.

        Tables are created referenced-first. ``force=True`` drops them first.
        """
        models = self._sorted_models()
        if force:
            await self.drop(**options)

        if self.dialect.supports_schemas:
            for schema in dict.fromkeys(m.__options__.schema for m in models if m.__options__.schema):
                await self.query_interface.create_schema(schema, **options)

        for model in models:
            table = model.get_table_name()
            await self.query_interface.create_table(
                table, dict(model.__columns__), unique_keys=self._unique_keys(model), **options
            )
            existing = {index["name"] for index in await self.query_interface.show_index(table, **options)}
            for index in self._indexes(model):
                if index["name"] not in existing:
                    await self.query_interface.add_index(table, **index, **options)
            logger.debug("Synced model %s to table %s", model.__name__, table)

    async def drop(self, **options: Any) -> None:
        """Drop the tables of every registered model, referrers first."""
        for model in reversed(self._sorted_models()):
            await self.query_interface.drop_table(model.get_table_name(), cascade=True, **options)

    async def close(self) -> None:
        await self.connection_manager.close()


# ========== Convenience Functions ==========


def create_database(config: DatabaseConfig | str | None = None, **kwargs: Any) -> Database:
    """Create a Database.

    Example:
        >>> db = create_database("postgresql://localhost/app", registry=registry)
    """
    return Database(config, **kwargs)


@asynccontextmanager
async def database_context(config: DatabaseConfig | str | None = None, **kwargs: Any) -> AsyncIterator[Database]:
    """Database that is closed on exit.

    Example:
        >>> async with database_context("sqlite::memory:", registry=registry) as db:
        ...     await db.sync()
    """
    database = Database(config, **kwargs)
    try:
        yield database
    finally:
        await database.close()
