"""Query intent tags and the options bag that travels with every statement."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.query import Include
    from relkit.transaction import Transaction


class QueryType(StrEnum):
    """Intent of a statement, used to pick how its result is interpreted."""

    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    UPSERT = "UPSERT"
    DELETE = "DELETE"
    RAW = "RAW"
    BULKUPDATE = "BULKUPDATE"
    BULKDELETE = "BULKDELETE"
    SHOWTABLES = "SHOWTABLES"
    SHOWINDEXES = "SHOWINDEXES"
    DESCRIBE = "DESCRIBE"
    VERSION = "VERSION"
    FOREIGNKEYS = "FOREIGNKEYS"


@dataclass
class QueryOptions:
    """Execution options attached to a single statement.

    Attributes:
        type: Intent tag; exactly one per statement, RAW when not given
        bind: Bound parameters for the statement's placeholders
        instance: Model instance the result is written back to
        model: Model class rows are hydrated into
        raw: Return plain rows instead of model instances
        plain: Return only the first row (or None)
        transaction: Transaction whose connection runs the statement
        logging: False silences the statement log; a callable receives the SQL
        include: Joined models hydrated under ``included(alias)``
        data_type: Callable applied to a plain single-value result
        attribute: Result column read by ``raw_select``
        returning: Ask the generator for the affected rows
    """

    type: QueryType = QueryType.RAW
    bind: list[Any] = field(default_factory=list)
    instance: Base | None = None
    model: type[Base] | None = None
    raw: bool = False
    plain: bool = False
    transaction: Transaction | None = None
    logging: bool | Callable[[str], Any] | None = None
    include: list[Include] = field(default_factory=list)
    data_type: Callable[[Any], Any] | None = None
    attribute: str | None = None
    returning: bool = False
