"""Turns raw driver output into the value each query intent returns."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from relkit.query_types import QueryType

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.dialects.abstract import RawResult
    from relkit.query_types import QueryOptions


class ResultInterpreter:
    """Dispatch on ``QueryType``.

    | intent                   | result                                        |
    |--------------------------|-----------------------------------------------|
    | INSERT with instance     | the instance, with generated values filled in |
    | INSERT with model        | hydrated instances of the returned rows       |
    | SELECT                   | instances, raw rows, or one row when ``plain``|
    | SHOWTABLES               | list of table names                           |
    | SHOWINDEXES              | list of ``{name, primary, unique, fields}``   |
    | DESCRIBE                 | ``{column: {type, allow_null, ...}}``         |
    | VERSION                  | version string                                |
    | FOREIGNKEYS              | rows                                          |
    | UPDATE with instance     | the instance                                  |
    | UPDATE/DELETE/BULK*      | affected row count                            |
    | UPSERT                   | True when inserted, False when updated        |
    | RAW                      | ``(rows, raw result)``                        |

    Dialects override the ``show_tables``, ``show_indexes``, ``describe``
    and ``version`` hooks.
    """

    def format(self, raw: RawResult, options: QueryOptions) -> Any:
        query_type = options.type

        if query_type is QueryType.INSERT:
            return self.handle_insert(raw, options)
        if query_type is QueryType.SELECT:
            return self.handle_select(raw, options)
        if query_type is QueryType.SHOWTABLES:
            return self.show_tables(raw.rows)
        if query_type is QueryType.SHOWINDEXES:
            return self.show_indexes(raw.rows)
        if query_type is QueryType.DESCRIBE:
            return self.describe(raw.rows)
        if query_type is QueryType.VERSION:
            return self.version(raw.rows)
        if query_type is QueryType.FOREIGNKEYS:
            return raw.rows
        if query_type is QueryType.UPSERT:
            return raw.rowcount == 1
        if query_type is QueryType.UPDATE and options.instance is not None:
            return options.instance
        if query_type in (QueryType.UPDATE, QueryType.DELETE, QueryType.BULKUPDATE, QueryType.BULKDELETE):
            return raw.rowcount or 0
        return raw.rows, raw

    def handle_insert(self, raw: RawResult, options: QueryOptions) -> Any:
        instance = options.instance
        if instance is not None:
            model = type(instance)
            if raw.rows:
                self._assign(instance, raw.rows[0])
            else:
                pk = model.__primary_key__
                column = model.__columns__.get(pk) if pk else None
                if column is not None and column.autoincrement and raw.inserted_id is not None:
                    if instance.get(pk) is None:
                        object.__setattr__(instance, pk, raw.inserted_id)
            object.__setattr__(instance, "_is_new_record", False)
            return instance

        if options.model is not None and raw.rows:
            return [options.model._from_row(row) for row in raw.rows]
        if raw.rows:
            return raw.rows
        return raw.inserted_id if raw.inserted_id is not None else raw.rowcount

    def _assign(self, instance: Base, row: Mapping[str, Any]) -> None:
        loaded = type(instance)._from_row(row)
        for key, value in loaded.__dict__.items():
            if not key.startswith("_"):
                object.__setattr__(instance, key, value)

    def handle_select(self, raw: RawResult, options: QueryOptions) -> Any:
        model = options.model
        if options.raw or model is None:
            rows = raw.rows
        else:
            rows = [self._hydrate(model, row, options) for row in raw.rows]

        if options.plain:
            if not rows:
                return None
            first = rows[0]
            if options.attribute is not None and isinstance(first, Mapping):
                value = first.get(options.attribute)
                return options.data_type(value) if options.data_type and value is not None else value
            return first
        return rows

    def _hydrate(self, model: type[Base], row: Mapping[str, Any], options: QueryOptions) -> Base:
        if not options.include:
            return model._from_row(row)
        main = {key: value for key, value in row.items() if "." not in key}
        instance = model._from_row(main)
        for include in options.include:
            prefix = f"{include.as_}."
            data = {key[len(prefix) :]: value for key, value in row.items() if key.startswith(prefix)}
            if data and any(value is not None for value in data.values()):
                instance._included[include.as_] = include.model._from_row(data)
            else:
                instance._included[include.as_] = None
        return instance

    # ========== Dialect hooks ==========

    def show_tables(self, rows: list[dict[str, Any]]) -> list[str]:
        return [next(iter(row.values())) for row in rows]

    def show_indexes(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return rows

    def describe(self, rows: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        return {
            row["name"]: {
                "type": str(row.get("type", "")).upper(),
                "allow_null": bool(row.get("allow_null", True)),
                "default_value": row.get("default_value"),
                "primary_key": bool(row.get("primary_key", False)),
            }
            for row in rows
        }

    def version(self, rows: list[dict[str, Any]]) -> str | None:
        if not rows:
            return None
        return str(next(iter(rows[0].values())))
