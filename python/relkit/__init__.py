"""relkit - associations and a dialect-aware query interface for async SQL."""

from __future__ import annotations

from relkit.associations import Association, BelongsTo, BelongsToMany, HasMany, HasOne, Through
from relkit.base import Base, declarative_base
from relkit.config import DatabaseConfig
from relkit.database import Database, create_database, database_context
from relkit.errors import (
    ConfigurationError,
    ConnectionError,
    DatabaseError,
    EmptyResultError,
    ForeignKeyConstraintError,
    RelkitError,
    UniqueConstraintError,
    ValidationError,
)
from relkit.fields import ENUM, JSON, ForeignKey, Mapped, mapped_column
from relkit.mixins import SoftDeleteMixin
from relkit.query import Include, Q, Query, or_
from relkit.query_interface import QueryInterface
from relkit.query_types import QueryOptions, QueryType
from relkit.registry import Registry
from relkit.transaction import IsolationLevel, Transaction, TransactionType

__version__ = "0.1.0"

__all__ = [
    # Core
    "Database",
    "DatabaseConfig",
    "create_database",
    "database_context",
    "Registry",
    "Transaction",
    "IsolationLevel",
    "TransactionType",
    "QueryInterface",
    "QueryOptions",
    "QueryType",
    # Model definition
    "Base",
    "declarative_base",
    "Mapped",
    "mapped_column",
    "ForeignKey",
    "JSON",
    "ENUM",
    "SoftDeleteMixin",
    # Associations
    "Association",
    "BelongsTo",
    "BelongsToMany",
    "HasMany",
    "HasOne",
    "Through",
    # Query building
    "Query",
    "Q",
    "or_",
    "Include",
    # Errors
    "RelkitError",
    "ConfigurationError",
    "ValidationError",
    "ConnectionError",
    "DatabaseError",
    "UniqueConstraintError",
    "ForeignKeyConstraintError",
    "EmptyResultError",
]
