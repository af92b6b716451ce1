"""Where-clause building, joined includes and the fluent query builder."""

from __future__ import annotations

import functools
import operator
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.database import Database

ColumnRef = Callable[[str], str]

T = TypeVar("T", bound="Base")


class _NotSet:
    def __repr__(self) -> str:
        return "NOT_SET"

    def __bool__(self) -> bool:
        return False


NOT_SET: Any = _NotSet()


class Bind:
    """Collects bound parameters and renders the dialect's placeholder for each.

    SQLite uses ``?`` and PostgreSQL numbered ``$n`` placeholders. Values go
    through ``formatter`` first, so JSON, booleans and datetimes reach the
    driver in a form it accepts.
    """

    def __init__(self, dialect: str, formatter: Callable[[Any], Any] | None = None) -> None:
        self.dialect = dialect
        self.params: list[Any] = []
        self._formatter = formatter

    def add(self, value: Any) -> str:
        if self._formatter is not None:
            value = self._formatter(value)
        self.params.append(value)
        return f"${len(self.params)}" if self.dialect == "postgresql" else "?"


# ========== Q Objects for Complex Conditions ==========


class Q:
    """Django-style Q object for complex query conditions.

    Supports AND (&) and OR (|) operations for building complex WHERE clauses.

    Example:
        >>> # OR condition
        >>> await db.find_all(User, where=Q(age__gt=18) | Q(vip=True))

        >>> # Combined
        >>> await db.find_all(User, where=(Q(age__gt=18) | Q(vip=True)) & Q(active=True))

        >>> # Negation
        >>> await db.find_all(User, where=~Q(banned=True))
    """

    def __init__(self, **kwargs: Any) -> None:
        self._filters: list[tuple[str, str, Any]] = []
        self._children: list[tuple[str, Q]] = []  # ("AND"/"OR", child_q)
        self._negated = False

        for key, value in kwargs.items():
            col, op = _parse_filter_key(key)
            self._filters.append((col, op, value))

    def __repr__(self) -> str:
        return f"Q(filters={self._filters!r}, children={self._children!r}, negated={self._negated})"

    def __or__(self, other: Q) -> Q:
        """Combine with OR."""
        result = Q()
        result._children = [("OR", self), ("OR", other)]
        return result

    def __and__(self, other: Q) -> Q:
        """Combine with AND."""
        result = Q()
        result._children = [("AND", self), ("AND", other)]
        return result

    def __invert__(self) -> Q:
        """Negate the condition."""
        result = Q()
        result._filters = self._filters.copy()
        result._children = self._children.copy()
        result._negated = not self._negated
        return result

    @classmethod
    def exact(cls, **kwargs: Any) -> Q:
        """Equality filters whose keys are never parsed for operators."""
        q = cls()
        q._filters = [(key, "eq", value) for key, value in kwargs.items()]
        return q

    def to_sql(self, bind: Bind, column_ref: ColumnRef) -> str:
        """Convert to SQL WHERE clause fragment."""
        if self._children:
            parts = [sql for _join_type, child in self._children if (sql := child.to_sql(bind, column_ref))]
            if not parts:
                return ""
            connector = " OR " if self._children[0][0] == "OR" else " AND "
            sql = f"({connector.join(parts)})"

        elif self._filters:
            filter_parts = [
                _build_filter_sql(column_ref(col), op, value, bind) for col, op, value in self._filters
            ]
            sql = " AND ".join(filter_parts)
            if len(filter_parts) > 1:
                sql = f"({sql})"
        else:
            return ""

        if self._negated:
            sql = f"NOT {sql}"

        return sql


def or_(*conditions: Q | Mapping[str, Any]) -> Q:
    """OR together dicts and Q objects.

    Example:
        >>> or_({"id": 1}, {"id": 2})
    """
    qs = [c if isinstance(c, Q) else Q.exact(**c) for c in conditions]
    if not qs:
        return Q()
    return functools.reduce(operator.or_, qs)


def _parse_filter_key(key: str) -> tuple[str, str]:
    """Parse Django-style filter key into column and operator."""
    operators = {
        "gt", "gte", "lt", "lte", "ne",
        "like", "ilike",
        "in", "notin",
        "isnull", "isnotnull",
        "contains", "icontains",
        "startswith", "istartswith",
        "endswith", "iendswith",
    }  # fmt: skip

    if "__" in key:
        parts = key.rsplit("__", 1)
        if len(parts) == 2 and parts[1] in operators:
            return parts[0], parts[1]

    return key, "eq"


def _build_filter_sql(col_ref: str, op: str, value: Any, bind: Bind) -> str:
    """Build SQL for a single filter condition."""
    insensitive_like = "ILIKE" if bind.dialect == "postgresql" else "LIKE"

    if op == "eq":
        if value is None:
            return f"{col_ref} IS NULL"
        if isinstance(value, (list, tuple, set, frozenset)):
            op = "in"
        else:
            return f"{col_ref} = {bind.add(value)}"

    if op == "in":
        if not value:
            return "1 = 0"  # Empty IN -> always false
        placeholders = ", ".join(bind.add(v) for v in value)
        return f"{col_ref} IN ({placeholders})"

    elif op == "notin":
        if not value:
            return "1 = 1"  # Empty NOT IN -> always true
        placeholders = ", ".join(bind.add(v) for v in value)
        return f"{col_ref} NOT IN ({placeholders})"

    elif op == "isnull":
        return f"{col_ref} IS NULL" if value else f"{col_ref} IS NOT NULL"

    elif op == "isnotnull":
        return f"{col_ref} IS NOT NULL" if value else f"{col_ref} IS NULL"

    elif op == "ne" and value is None:
        return f"{col_ref} IS NOT NULL"

    elif op == "contains":
        return f"{col_ref} LIKE {bind.add(f'%{value}%')}"

    elif op == "icontains":
        return f"{col_ref} {insensitive_like} {bind.add(f'%{value}%')}"

    elif op == "startswith":
        return f"{col_ref} LIKE {bind.add(f'{value}%')}"

    elif op == "istartswith":
        return f"{col_ref} {insensitive_like} {bind.add(f'{value}%')}"

    elif op == "endswith":
        return f"{col_ref} LIKE {bind.add(f'%{value}')}"

    elif op == "iendswith":
        return f"{col_ref} {insensitive_like} {bind.add(f'%{value}')}"

    op_sql = {
        "gt": ">",
        "gte": ">=",
        "lt": "<",
        "lte": "<=",
        "ne": "!=",
        "like": "LIKE",
        "ilike": insensitive_like,
    }.get(op, "=")
    return f"{col_ref} {op_sql} {bind.add(value)}"


def build_where(where: Any, bind: Bind, column_ref: ColumnRef | None = None) -> str:
    """Render a where description to SQL, appending its parameters to ``bind``.

    ``where`` is a dict (keys may carry ``__op`` suffixes, list values become
    IN and None becomes IS NULL), a ``Q`` object, or a list of either joined
    with AND. ``column_ref`` maps an attribute name to the quoted column
    reference.
    """
    if column_ref is None:
        column_ref = _identity
    if where is None:
        return ""
    if isinstance(where, Q):
        return where.to_sql(bind, column_ref)
    if isinstance(where, Mapping):
        parts = []
        for key, value in where.items():
            col, op = _parse_filter_key(key)
            parts.append(_build_filter_sql(column_ref(col), op, value, bind))
        return " AND ".join(parts)
    if isinstance(where, (list, tuple)):
        # OR groups render parenthesized, so plain AND joining is safe
        return " AND ".join(sql for w in where if (sql := build_where(w, bind, column_ref)))
    raise TypeError(f"Unsupported where clause: {where!r}")


def _identity(col: str) -> str:
    return col


def merge_where(*wheres: Any) -> list[Any] | None:
    """AND several where descriptions together, dropping empty ones."""
    merged = []
    for where in wheres:
        if where is None or where is NOT_SET:
            continue
        if isinstance(where, list):
            merged.extend(w for w in where if w)
        elif isinstance(where, Q) or where:
            merged.append(where)
    return merged or None


@dataclass
class Include:
    """A model joined into a select and hydrated under ``included(as_)``.

    ``on`` pairs the attribute on the included model with the attribute on
    the parent model it must equal.
    """

    model: type[Base]
    as_: str
    on: tuple[str, str]
    where: Any = None
    attributes: list[str] | None = None
    required: bool = True


class Query(Generic[T]):
    """Fluent query builder for a model.

    Supports Django-style filter kwargs with operators:
        - field=value: Exact match
        - field__gt=value: Greater than
        - field__gte=value: Greater than or equal
        - field__lt=value: Less than
        - field__lte=value: Less than or equal
        - field__ne=value: Not equal
        - field__like=value: SQL LIKE pattern
        - field__ilike=value: Case-insensitive LIKE (PostgreSQL)
        - field__in=[values]: IN clause
        - field__notin=[values]: NOT IN clause
        - field__isnull=True/False: IS NULL / IS NOT NULL
        - field__contains=value: LIKE %value%
        - field__startswith=value: LIKE value%
        - field__endswith=value: LIKE %value

    Soft Delete:
        Paranoid models automatically exclude soft-deleted records.
        Use with_deleted() to include them or only_deleted() to query only deleted.
    """

    def __init__(self, database: Database, model: type[T]) -> None:
        self._database = database
        self._model = model
        self._where: list[Any] = []
        self._order: list[tuple[str, str]] = []
        self._limit_val: int | None = None
        self._offset_val: int | None = None
        self._scope: Any = NOT_SET
        self._include_deleted = False
        self._only_deleted = False

    def filter(self, *q_objects: Q, **kwargs: Any) -> Query[T]:
        """Add filter conditions using Django-style kwargs or Q objects.

        Example:
            >>> db.find(User).filter(name="Alice", age__gt=18)
            >>> db.find(User).filter(Q(age__gt=18) | Q(vip=True))
        """
        self._where.extend(q_objects)
        if kwargs:
            self._where.append(dict(kwargs))
        return self

    def filter_by(self, **kwargs: Any) -> Query[T]:
        """Alias for filter() with exact matches only."""
        self._where.append(Q.exact(**kwargs))
        return self

    def order_by(self, *columns: str, desc: bool = False) -> Query[T]:
        """Add ORDER BY clause."""
        direction = "DESC" if desc else "ASC"
        for col in columns:
            if col.startswith("-"):
                self._order.append((col[1:], "DESC"))
            else:
                self._order.append((col, direction))
        return self

    def limit(self, n: int) -> Query[T]:
        """Limit results."""
        self._limit_val = n
        return self

    def offset(self, n: int) -> Query[T]:
        """Offset results."""
        self._offset_val = n
        return self

    def scope(self, scope: Any) -> Query[T]:
        """Use a named scope or an ad hoc filter instead of the default scope."""
        self._scope = scope
        return self

    def unscoped(self) -> Query[T]:
        self._scope = False
        return self

    def with_deleted(self) -> Query[T]:
        """Include soft-deleted records in results.

        Example:
            >>> all_articles = await db.find(Article).with_deleted().all()
        """
        self._include_deleted = True
        return self

    def only_deleted(self) -> Query[T]:
        """Return only soft-deleted records."""
        self._include_deleted = True
        self._only_deleted = True
        return self

    def _conditions(self) -> list[Any] | None:
        where = list(self._where)
        if self._only_deleted:
            where.append({"deleted_at__isnotnull": True})
        return merge_where(where)

    def _find_options(self) -> dict[str, Any]:
        return {
            "where": self._conditions(),
            "scope": self._scope,
            "paranoid": not self._include_deleted,
        }

    async def all(self) -> list[T]:
        """Execute query and return all results."""
        return await self._database.find_all(
            self._model,
            order=self._order or None,
            limit=self._limit_val,
            offset=self._offset_val,
            **self._find_options(),
        )

    async def first(self) -> T | None:
        """Execute query and return first result."""
        return await self._database.find_one(
            self._model,
            order=self._order or None,
            offset=self._offset_val,
            **self._find_options(),
        )

    async def count(self) -> int:
        """Return count of matching rows."""
        return await self._database.count(self._model, **self._find_options())

    async def exists(self) -> bool:
        """Check if any matching rows exist."""
        return await self.count() > 0

    async def delete(self, *, force: bool = False) -> int:
        """Delete all matching rows and return count.

        Paranoid models are soft-deleted unless ``force`` is set.
        """
        return await self._database.destroy(self._model, where=self._conditions(), force=force)

    async def update(self, **values: Any) -> int:
        """Update all matching rows and return count.

        Example:
            >>> count = await db.find(User).filter(age__lt=18).update(status="minor")
        """
        return await self._database.update(
            self._model, values, where=self._conditions(), paranoid=not self._include_deleted
        )

    async def values(self, *columns: str) -> list[dict[str, Any]]:
        """Return specific columns as dicts.

        Example:
            >>> await db.find(User).values("id", "name")
            [{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob"}]
        """
        return await self._database.find_all(
            self._model,
            attributes=list(columns) or None,
            order=self._order or None,
            limit=self._limit_val,
            offset=self._offset_val,
            raw=True,
            **self._find_options(),
        )
