"""Declarative base for models."""

from __future__ import annotations

import json
import sys
import types
import typing
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time
from functools import partial
from typing import Any, ClassVar, get_type_hints

from relkit import naming
from relkit.errors import ConfigurationError
from relkit.fields import ColumnInfo, Mapped

if typing.TYPE_CHECKING:
    from relkit.associations import Association, BelongsTo, BelongsToMany, HasMany, HasOne
    from relkit.registry import Registry


@dataclass
class ModelOptions:
    """Per-model options collected from the class body."""

    name_singular: str
    name_plural: str
    underscored: bool = True
    paranoid: bool = False
    schema: str | None = None
    unique_keys: dict[str, list[str]] = field(default_factory=dict)
    indexes: list[dict[str, Any]] = field(default_factory=list)
    default_scope: Any = None
    scopes: dict[str, Any] = field(default_factory=dict)


class AttributeSet:
    """Mutable attribute table of a model while its schema is being assembled.

    Model creation and association setup change attributes only through this
    builder. Queries read the immutable snapshot published by
    ``Model._finalize()`` as ``__columns__``.
    """

    def __init__(self, columns: Mapping[str, ColumnInfo] | None = None) -> None:
        self._columns: dict[str, ColumnInfo] = dict(columns or {})

    def __contains__(self, name: object) -> bool:
        return name in self._columns

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def items(self) -> list[tuple[str, ColumnInfo]]:
        return list(self._columns.items())

    def get(self, name: str) -> ColumnInfo | None:
        return self._columns.get(name)

    def ensure(self, name: str) -> ColumnInfo:
        """Return the attribute ``name``, creating an auto-generated one if missing."""
        column = self._columns.get(name)
        if column is None:
            column = ColumnInfo(name=name, auto_generated=True)
            self._columns[name] = column
        return column

    def merge(self, name: str, **changes: Any) -> ColumnInfo:
        """Merge ``changes`` into attribute ``name`` without replacing it."""
        column = self.ensure(name)
        column.merge(**changes)
        return column

    def remove(self, name: str) -> ColumnInfo | None:
        return self._columns.pop(name, None)

    def primary_keys(self) -> list[str]:
        return [name for name, column in self._columns.items() if column.primary_key]

    def snapshot(self) -> Mapping[str, ColumnInfo]:
        """Publish an immutable copy of the current attributes."""
        return types.MappingProxyType({name: column.copy() for name, column in self._columns.items()})


def _model_hints(cls: type) -> dict[str, Any]:
    """Resolve class annotations against the defining module plus relkit types."""
    from relkit.associations import Association
    from relkit.registry import Registry

    module = sys.modules.get(cls.__module__, None)
    globalns = dict(getattr(module, "__dict__", {})) if module else {}
    # Names used by Base's own annotations
    globalns.update(
        ClassVar=ClassVar,
        Any=Any,
        Mapped=Mapped,
        Mapping=Mapping,
        ColumnInfo=ColumnInfo,
        AttributeSet=AttributeSet,
        ModelOptions=ModelOptions,
        Registry=Registry,
        Association=Association,
    )
    try:
        return get_type_hints(cls, globalns=globalns, localns={})
    except (NameError, TypeError):
        # Forward references to models defined later cannot be resolved yet
        return {}


class ModelMeta(type):
    """Metaclass for models that processes field definitions."""

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> ModelMeta:
        cls = super().__new__(mcs, name, bases, namespace, **kwargs)

        # Declarative bases carry the registry but are not models themselves
        if namespace.get("__abstract__"):
            return cls

        registry = getattr(cls, "__registry__", None)
        if registry is None:
            raise ConfigurationError(
                f"{name} must derive from a base created by declarative_base(registry)"
            )

        tablename = namespace.get("__tablename__")
        if tablename is None:
            tablename = naming.pluralize(naming.underscore(name))
        cls.__tablename__ = tablename  # type: ignore[attr-defined]

        hints = _model_hints(cls)
        columns: dict[str, ColumnInfo] = {}

        for attr_name, attr_value in namespace.items():
            if attr_name.startswith("_") or not isinstance(attr_value, ColumnInfo):
                continue
            attr_value.name = attr_name
            if attr_name in hints:
                python_type = _extract_mapped_type(hints[attr_name])
                if python_type is not None and attr_value.python_type is None:
                    attr_value.python_type = python_type
                if python_type is dict or python_type is list:
                    attr_value.is_json = True
            columns[attr_name] = attr_value

        # Mapped annotations without a mapped_column() value
        for attr_name, hint in hints.items():
            if attr_name.startswith("_") or attr_name in columns:
                continue
            hint_str = str(hint)
            if "Mapped[" not in hint_str and "Mapped" not in str(typing.get_origin(hint) or ""):
                continue
            python_type = _extract_mapped_type(hint)
            if python_type is None:
                continue
            is_nullable = "None" in hint_str
            columns[attr_name] = ColumnInfo(
                name=attr_name,
                python_type=python_type,
                nullable=is_nullable,
                is_json=(python_type is dict or python_type is list),
            )

        if not any(column.primary_key for column in columns.values()) and getattr(cls, "__auto_pk__", True):
            columns = {
                "id": ColumnInfo(
                    name="id",
                    python_type=int,
                    primary_key=True,
                    autoincrement=True,
                    auto_generated=True,
                ),
                **columns,
            }

        paranoid = bool(getattr(cls, "__paranoid__", False))
        if paranoid and "deleted_at" not in columns:
            columns["deleted_at"] = ColumnInfo(
                name="deleted_at", python_type=datetime, nullable=True, index=True
            )

        # Column descriptors live in the attribute table, not on the class
        for attr_name in columns:
            if attr_name in namespace and isinstance(namespace[attr_name], ColumnInfo):
                delattr(cls, attr_name)

        unique_keys: dict[str, list[str]] = {}
        for fields_ in getattr(cls, "__unique_keys__", ()):
            fields_ = [fields_] if isinstance(fields_, str) else list(fields_)
            unique_keys[f"{tablename}_{'_'.join(fields_)}_unique"] = fields_

        cls.__options__ = ModelOptions(  # type: ignore[attr-defined]
            name_singular=getattr(cls, "__singular__", None) or naming.singularize(name),
            name_plural=getattr(cls, "__plural__", None) or naming.pluralize(name),
            underscored=bool(getattr(cls, "__underscored__", True)),
            paranoid=paranoid,
            schema=getattr(cls, "__schema__", None),
            unique_keys=unique_keys,
            indexes=list(getattr(cls, "__indexes__", ())),
            default_scope=getattr(cls, "__default_scope__", None),
            scopes=dict(getattr(cls, "__scopes__", {})),
        )
        cls.__attributes__ = AttributeSet(columns)  # type: ignore[attr-defined]
        cls.__associations__ = {}  # type: ignore[attr-defined]
        cls.__accessors__ = {}  # type: ignore[attr-defined]
        cls.__hints__ = hints  # type: ignore[attr-defined]
        cls._finalize()  # type: ignore[attr-defined]

        return cls

    def _finalize(cls) -> None:
        """Publish the attribute snapshot and recompute derived key metadata."""
        columns = cls.__attributes__.snapshot()
        cls.__columns__ = columns
        primary_keys = [name for name, column in columns.items() if column.primary_key]
        cls.__primary_keys__ = tuple(primary_keys)
        cls.__primary_key__ = primary_keys[0] if primary_keys else None
        cls.__fields__ = {column.column_name: name for name, column in columns.items()}

        unique: dict[str, list[str]] = {
            key: list(names) for key, names in cls.__options__.unique_keys.items()
        }
        for name, column in columns.items():
            if not column.unique:
                continue
            key = (
                column.unique
                if isinstance(column.unique, str)
                else f"{cls.__tablename__}_{column.column_name}_unique"
            )
            members = unique.setdefault(key, [])
            if name not in members:
                members.append(name)
        cls.__unique_constraints__ = unique

        cls.__registry__.register(cls)


def _extract_mapped_type(hint: Any) -> type | None:
    """Extract the inner type from Mapped[T] annotation."""
    origin = typing.get_origin(hint)
    if origin is None:
        return hint if isinstance(hint, type) else None

    args = typing.get_args(hint)
    if not args:
        return None
    inner = args[0] if origin is Mapped else hint

    # Handle Optional (Union with None)
    inner_origin = typing.get_origin(inner)
    if inner_origin is typing.Union or inner_origin is types.UnionType:
        non_none = [a for a in typing.get_args(inner) if a is not type(None)]
        return non_none[0] if len(non_none) == 1 else None
    if inner_origin is not None:
        return inner_origin
    return inner if isinstance(inner, type) else None


class Base(metaclass=ModelMeta):
    """Base class for all models.

    Models derive from a base bound to a registry rather than from this class
    directly:

    Example:
        >>> registry = Registry()
        >>> Model = declarative_base(registry)
        >>> class User(Model):
        ...     __tablename__ = "users"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str] = mapped_column(max_length=100)
    """

    __abstract__: ClassVar[bool] = True
    __registry__: ClassVar[Registry]
    __tablename__: ClassVar[str]
    __columns__: ClassVar[Mapping[str, ColumnInfo]]
    __attributes__: ClassVar[AttributeSet]
    __primary_key__: ClassVar[str | None]
    __primary_keys__: ClassVar[tuple[str, ...]]
    __fields__: ClassVar[dict[str, str]]
    __options__: ClassVar[ModelOptions]
    __unique_constraints__: ClassVar[dict[str, list[str]]]
    __associations__: ClassVar[dict[str, Association]]
    __accessors__: ClassVar[dict[str, tuple[Association, str]]]
    __hints__: ClassVar[dict[str, Any]]

    _is_new_record: bool
    _through_values: dict[str, dict[str, Any]]
    _included: dict[str, Any]

    def __init__(self, **kwargs: Any) -> None:
        """Initialize a model instance with the given column values."""
        object.__setattr__(self, "_is_new_record", True)
        object.__setattr__(self, "_through_values", {})
        object.__setattr__(self, "_included", {})

        provided_keys = set(kwargs)
        for key, value in kwargs.items():
            if key in self.__columns__:
                setattr(self, key, value)
            else:
                raise TypeError(f"Unknown column: {key}")

        # Set defaults only for columns that were not provided.
        for col_name, col_info in self.__columns__.items():
            if col_name in provided_keys:
                continue
            if col_info.default is not None:
                default = col_info.default() if callable(col_info.default) else col_info.default
                setattr(self, col_name, default)
            elif col_info.nullable:
                setattr(self, col_name, None)

    def __repr__(self) -> str:
        pk = self.__primary_key__
        if pk and pk in self.__dict__:
            return f"<{self.__class__.__name__} {pk}={self.__dict__[pk]!r}>"
        return f"<{self.__class__.__name__}>"

    def __getattr__(self, name: str) -> Any:
        """Resolve association accessors and unset columns."""
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        cls = type(self)
        entry = cls.__accessors__.get(name)
        if entry is not None:
            association, operation = entry
            return partial(getattr(association, operation), self)

        if name in cls.__columns__:
            return None

        raise AttributeError(f"'{cls.__name__}' object has no attribute '{name}'")

    @property
    def is_new_record(self) -> bool:
        """Whether this instance has not been persisted yet."""
        return self._is_new_record

    def get(self, name: str, default: Any = None) -> Any:
        """Return the value of attribute ``name``."""
        value = self.__dict__.get(name, default)
        return default if value is None else value

    def where(self) -> dict[str, Any]:
        """Return a filter matching this instance by primary key."""
        return {pk: self.get(pk) for pk in self.__primary_keys__}

    def set_through(self, through: type[Base] | str, **values: Any) -> Base:
        """Set join-row attributes used when this instance is associated.

        Example:
            >>> tag.set_through(PostTag, priority=2)
            >>> await post.add_tag(tag)
        """
        key = through if isinstance(through, str) else through.__name__
        self._through_values[key] = dict(values)
        return self

    def through_values(self, through: type[Base] | str) -> dict[str, Any]:
        key = through if isinstance(through, str) else through.__name__
        return dict(self._through_values.get(key, {}))

    def included(self, alias: str) -> Any:
        """Return the row loaded alongside this instance under ``alias``."""
        return self._included.get(alias)

    def to_dict(self) -> dict[str, Any]:
        """Convert model instance to a dictionary."""
        return {col_name: self.get(col_name) for col_name in self.__columns__}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Base:
        """Create a model instance from a dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__columns__})

    @classmethod
    def _from_row(cls, data: Mapping[str, Any]) -> Base:
        """Build a persisted instance from a database row, skipping validation.

        Row keys may be attribute names or physical column names.
        """
        instance = object.__new__(cls)
        object.__setattr__(instance, "_is_new_record", False)
        object.__setattr__(instance, "_through_values", {})
        object.__setattr__(instance, "_included", {})

        cols = cls.__columns__
        fields_ = cls.__fields__
        for key, value in data.items():
            attr = key if key in cols else fields_.get(key)
            if attr is None:
                continue
            object.__setattr__(instance, attr, _load_value(cols[attr], value))

        return instance

    @classmethod
    def get_table_name(cls) -> Any:
        """Return the table name, schema-qualified when the model has a schema."""
        from relkit.dialects.abstract import TableName

        if cls.__options__.schema:
            return TableName(cls.__tablename__, cls.__options__.schema)
        return cls.__tablename__

    @classmethod
    def field_for(cls, attr: str) -> str:
        """Physical column name of attribute ``attr``."""
        column = cls.__columns__.get(attr)
        return column.column_name if column else attr

    @classmethod
    def primary_key_field(cls) -> str | None:
        if cls.__primary_key__ is None:
            return None
        return cls.field_for(cls.__primary_key__)

    # ========== Associations ==========

    @classmethod
    def belongs_to_many(cls, target: type[Base], **options: Any) -> BelongsToMany:
        """Declare a many-to-many association through a join model.

        Example:
            >>> Post.belongs_to_many(Tag, through="PostTag")
            >>> await post.set_tags([tag1, tag2])
        """
        from relkit.associations import BelongsToMany

        return cls._associate(BelongsToMany(cls, target, **options))

    @classmethod
    def has_many(cls, target: type[Base], **options: Any) -> HasMany:
        """Declare a one-to-many association keyed on the target."""
        from relkit.associations import HasMany

        return cls._associate(HasMany(cls, target, **options))

    @classmethod
    def has_one(cls, target: type[Base], **options: Any) -> HasOne:
        from relkit.associations import HasOne

        return cls._associate(HasOne(cls, target, **options))

    @classmethod
    def belongs_to(cls, target: type[Base], **options: Any) -> BelongsTo:
        from relkit.associations import BelongsTo

        return cls._associate(BelongsTo(cls, target, **options))

    @classmethod
    def _associate(cls, association: Any) -> Any:
        association.inject_attributes()
        cls.__associations__[association.as_] = association
        for operation, accessor in association.accessors.items():
            cls.__accessors__[accessor] = (association, operation)
        return association


def _load_value(column: ColumnInfo, value: Any) -> Any:
    """Convert a driver value to the column's Python type."""
    if value is None:
        return None
    if column.is_json and isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value  # Keep as string if not valid JSON
    python_type = column.python_type
    if python_type is bool and isinstance(value, int):
        return bool(value)
    if isinstance(value, str):
        if python_type is datetime:
            return datetime.fromisoformat(value)
        if python_type is date:
            return date.fromisoformat(value)
        if python_type is time:
            return time.fromisoformat(value)
    return value


def declarative_base(registry: Registry | None = None, *, name: str = "Base") -> type[Base]:
    """Create a model base class bound to ``registry``.

    Example:
        >>> registry = Registry()
        >>> Model = declarative_base(registry)
    """
    from relkit.registry import Registry

    registry = registry if registry is not None else Registry()
    base = ModelMeta(name, (Base,), {"__abstract__": True, "__registry__": registry, "__module__": __name__})
    if registry.base is None:
        registry.base = base
    return base  # type: ignore[return-value]
