"""Registry of models, passed explicitly to everything that looks models up."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from relkit.errors import ConfigurationError
from relkit.fields import ColumnInfo

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.database import Database


_DEFINE_OPTIONS = {
    "table_name": "__tablename__",
    "schema": "__schema__",
    "indexes": "__indexes__",
    "paranoid": "__paranoid__",
    "underscored": "__underscored__",
    "unique_keys": "__unique_keys__",
    "singular": "__singular__",
    "plural": "__plural__",
    "default_scope": "__default_scope__",
    "scopes": "__scopes__",
}


class Registry:
    """Maps model names and table names to model classes.

    A registry is created once per schema and handed to ``declarative_base``.
    Associations use it to create or fetch join models by name, and the
    ``Database`` binds itself to it so accessors can reach the connection.

    Example:
        >>> registry = Registry()
        >>> Model = declarative_base(registry)
        >>> PostTag = registry.define("PostTag", {"priority": int})
    """

    def __init__(self) -> None:
        self._models: dict[str, type[Base]] = {}
        self._tables: dict[str, type[Base]] = {}
        self._database: Database | None = None
        self.base: type[Base] | None = None

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def register(self, model: type[Base]) -> None:
        """Register (or refresh) a model class."""
        self._models[model.__name__] = model
        self._tables[model.__tablename__] = model

    def is_defined(self, name: str) -> bool:
        return name in self._models

    def get(self, name: str) -> type[Base]:
        """Return the model registered under ``name``."""
        try:
            return self._models[name]
        except KeyError:
            raise ConfigurationError(f"Model {name!r} is not defined in this registry") from None

    def get_by_table(self, table_name: str) -> type[Base] | None:
        return self._tables.get(table_name)

    def models(self) -> list[type[Base]]:
        return list(self._models.values())

    def define(self, name: str, columns: dict[str, Any] | None = None, **options: Any) -> type[Base]:
        """Create a model class named ``name`` on this registry's base.

        Args:
            name: Model (class) name
            columns: Mapping of attribute name to a ``ColumnInfo`` or a Python type
            **options: table_name, schema, indexes, paranoid, underscored,
                unique_keys, singular, plural, default_scope, scopes

        Example:
            >>> PostTag = registry.define("PostTag", indexes=[], paranoid=False)
        """
        from relkit.base import ModelMeta, declarative_base

        unknown = set(options) - set(_DEFINE_OPTIONS)
        if unknown:
            raise ConfigurationError(f"Unknown model options for {name}: {', '.join(sorted(unknown))}")

        base = self.base if self.base is not None else declarative_base(self)
        namespace: dict[str, Any] = {"__module__": base.__module__}
        for key, value in options.items():
            namespace[_DEFINE_OPTIONS[key]] = value
        for attr_name, spec in (columns or {}).items():
            if isinstance(spec, ColumnInfo):
                namespace[attr_name] = spec
            else:
                namespace[attr_name] = ColumnInfo(python_type=spec, nullable=True)
        return ModelMeta(name, (base,), namespace)  # type: ignore[return-value]

    def bind(self, database: Database) -> None:
        self._database = database

    @property
    def database(self) -> Database:
        """The database this registry's models run their queries on."""
        if self._database is None:
            raise ConfigurationError("Registry is not bound to a Database")
        return self._database
