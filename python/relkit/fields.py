"""Column and field definitions for models."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, replace
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class JSON:
    """Marker class for JSON columns.

    PostgreSQL stores them as JSONB, SQLite as TEXT holding a JSON string.

    Example:
        >>> class Product(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     metadata: Mapped[dict] = mapped_column(JSON)
    """

    pass


class ENUM:
    """Enumerated column type with a fixed, ordered list of labels.

    On PostgreSQL each ENUM column gets its own ``CREATE TYPE`` named
    ``enum_<table>_<column>``; SQLite stores the label as TEXT.

    Example:
        >>> class Ticket(Base):
        ...     status: Mapped[str] = mapped_column(ENUM("open", "pending", "closed"))
    """

    def __init__(self, *values: str) -> None:
        self.values = tuple(values)

    def __repr__(self) -> str:
        return f"ENUM{self.values!r}"


class Mapped(Generic[T]):
    """Type annotation wrapper indicating a database-mapped column.

    Example:
        >>> class User(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str] = mapped_column(max_length=100)
        ...     age: Mapped[int | None] = mapped_column(nullable=True)
    """

    pass


@dataclass
class ForeignKey:
    """Defines a foreign key reference to another table.

    Args:
        target: The target column in format "table.column"
        ondelete: Action on delete (CASCADE, SET NULL, RESTRICT, NO ACTION)
        onupdate: Action on update (CASCADE, SET NULL, RESTRICT, NO ACTION)

    Example:
        >>> class Post(Base):
        ...     author_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    """

    target: str
    ondelete: str | None = None
    onupdate: str | None = None

    @property
    def table(self) -> str:
        """Get the target table name (schema-qualified when given that way)."""
        return self.target.rsplit(".", 1)[0]

    @property
    def column(self) -> str:
        """Get the target column name."""
        parts = self.target.rsplit(".", 1)
        return parts[1] if len(parts) > 1 else "id"


@dataclass
class ColumnInfo:
    """Stores metadata about a database column.

    ``unique`` is either a flag or the name of a unique constraint shared by
    several columns. ``field`` is the physical column name when it differs
    from the attribute name. ``auto_generated`` marks columns the ORM added
    on its own, such as the surrogate ``id`` key.
    """

    name: str | None = None
    python_type: type | None = None
    primary_key: bool = False
    nullable: bool = False
    unique: bool | str = False
    index: bool = False
    default: Any = None
    server_default: str | None = None
    max_length: int | None = None
    foreign_key: ForeignKey | None = None
    autoincrement: bool | None = None
    is_json: bool = False
    field: str | None = None
    enum_values: tuple[str, ...] | None = None
    auto_generated: bool = False
    comment: str | None = None
    extra: dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def column_name(self) -> str:
        """Physical column name."""
        return self.field or self.name or ""

    @property
    def is_enum(self) -> bool:
        return self.enum_values is not None

    @property
    def on_delete(self) -> str | None:
        return self.foreign_key.ondelete if self.foreign_key else None

    @property
    def on_update(self) -> str | None:
        return self.foreign_key.onupdate if self.foreign_key else None

    def copy(self, **changes: Any) -> ColumnInfo:
        """Return a copy, optionally with some fields changed."""
        if self.foreign_key is not None and "foreign_key" not in changes:
            changes["foreign_key"] = replace(self.foreign_key)
        if "extra" not in changes:
            changes["extra"] = dict(self.extra)
        return replace(self, **changes)

    def merge(self, **changes: Any) -> None:
        """Apply ``changes`` in place, leaving every other field untouched."""
        known = {f.name for f in dataclasses.fields(self)}
        for key, value in changes.items():
            if key in known:
                setattr(self, key, value)
            else:
                self.extra[key] = value

    def sql_type(self, dialect: str = "postgresql") -> str:
        """Get the SQL type for this column.

        ENUM columns are resolved by the query generator, which knows the
        table the type belongs to.
        """
        if self.is_json:
            return "JSONB" if dialect == "postgresql" else "TEXT"

        if self.python_type is None:
            return "TEXT"

        origin = getattr(self.python_type, "__origin__", None)
        if origin is Union:
            args = getattr(self.python_type, "__args__", ())
            non_none = [a for a in args if a is not type(None)]
            actual_type = non_none[0] if non_none else str
        else:
            actual_type = self.python_type

        if actual_type is dict or actual_type is list:
            return "JSONB" if dialect == "postgresql" else "TEXT"

        if dialect == "sqlite":
            return self._sqlite_type(actual_type)
        return self._pg_type(actual_type)

    def _pg_type(self, python_type: type) -> str:
        """Get PostgreSQL type for a Python type."""
        if python_type is int:
            if self.primary_key and self.autoincrement:
                return "SERIAL"
            return "INTEGER"
        elif python_type is str:
            if self.max_length:
                return f"VARCHAR({self.max_length})"
            return "TEXT"
        elif python_type is float:
            return "DOUBLE PRECISION"
        elif python_type is Decimal:
            return "DECIMAL"
        elif python_type is bool:
            return "BOOLEAN"
        elif python_type is bytes:
            return "BYTEA"
        elif python_type is datetime:
            return "TIMESTAMP"
        elif python_type is date:
            return "DATE"
        elif python_type is time:
            return "TIME"
        else:
            return "TEXT"

    def _sqlite_type(self, python_type: type) -> str:
        """Get SQLite type for a Python type."""
        if python_type is int:
            return "INTEGER"
        elif python_type is str:
            if self.max_length:
                return f"VARCHAR({self.max_length})"
            return "TEXT"
        elif python_type in (float, Decimal):
            return "REAL"
        elif python_type is bool:
            return "INTEGER"  # SQLite uses 0/1 for bool
        elif python_type is bytes:
            return "BLOB"
        elif python_type in (datetime, date, time):
            return "TEXT"  # SQLite stores dates as text
        else:
            return "TEXT"


def mapped_column(
    type_or_fk: type | ForeignKey | ENUM | None = None,
    /,
    *,
    primary_key: bool = False,
    nullable: bool = False,
    unique: bool | str = False,
    index: bool = False,
    default: Any = None,
    server_default: str | None = None,
    max_length: int | None = None,
    autoincrement: bool | None = None,
    field: str | None = None,
    comment: str | None = None,
) -> Any:
    """Define a database column.

    Args:
        type_or_fk: Optional ForeignKey, ENUM or JSON marker for this column
        primary_key: Whether this is a primary key column
        nullable: Whether NULL values are allowed
        unique: Whether values must be unique, or a constraint name shared
            with other columns
        index: Whether to create an index on this column
        default: Default value (can be callable)
        server_default: SQL expression for server-side default
        max_length: Maximum length for string columns
        autoincrement: Whether to auto-increment (for integer PKs)
        field: Physical column name, when it differs from the attribute name

    Returns:
        A ColumnInfo descriptor

    Example:
        >>> id: Mapped[int] = mapped_column(primary_key=True)
        >>> email: Mapped[str] = mapped_column(unique=True)
        >>> author_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
        >>> status: Mapped[str] = mapped_column(ENUM("draft", "published"))
    """
    foreign_key = None
    is_json = False
    enum_values = None

    if isinstance(type_or_fk, ForeignKey):
        foreign_key = type_or_fk
    elif isinstance(type_or_fk, ENUM):
        enum_values = type_or_fk.values
    elif type_or_fk is JSON or (isinstance(type_or_fk, type) and issubclass(type_or_fk, JSON)):
        is_json = True

    # Primary keys are not nullable by default
    if primary_key:
        nullable = False
        if autoincrement is None:
            autoincrement = True

    return ColumnInfo(
        primary_key=primary_key,
        nullable=nullable,
        unique=unique,
        index=index,
        default=default,
        server_default=server_default,
        max_length=max_length,
        foreign_key=foreign_key,
        autoincrement=autoincrement,
        is_json=is_json,
        field=field,
        enum_values=enum_values,
        comment=comment,
    )
