"""Database dialects."""

from __future__ import annotations

import importlib

from relkit.dialects.abstract import Dialect, TableName
from relkit.errors import ConfigurationError

_MODULES = {
    "sqlite": "relkit.dialects.sqlite",
    "postgresql": "relkit.dialects.postgres",
    "postgres": "relkit.dialects.postgres",
}


def get_dialect(name: str) -> Dialect:
    """Return the dialect called ``name``, importing its driver on first use."""
    module_name = _MODULES.get(name.lower())
    if module_name is None:
        raise ConfigurationError(f"Unsupported dialect: {name!r}")
    return importlib.import_module(module_name).DIALECT


__all__ = ["Dialect", "TableName", "get_dialect"]
