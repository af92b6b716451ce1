"""Behaviour shared by every association variant."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, ClassVar

from relkit import naming
from relkit.errors import ConfigurationError

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.database import Database

EXECUTION_OPTION_KEYS = frozenset(
    {"transaction", "hooks", "individual_hooks", "ignore_duplicates", "validate", "fields", "logging"}
)
"""Accessor keyword arguments that control execution and are never written as row data."""

RUN_OPTION_KEYS = ("transaction", "logging")


def split_options(options: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split accessor kwargs into (execution options, row attributes)."""
    execution = {key: value for key, value in options.items() if key in EXECUTION_OPTION_KEYS}
    data = {key: value for key, value in options.items() if key not in EXECUTION_OPTION_KEYS}
    return execution, data


def run_options(options: Mapping[str, Any]) -> dict[str, Any]:
    """The subset of options every database call accepts."""
    return {key: options[key] for key in RUN_OPTION_KEYS if key in options}


class Association:
    """An association from ``source`` to ``target``.

    Subclasses resolve their keys, install them with ``inject_attributes()``
    and publish an accessor table mapping each operation to the method name
    instances expose, e.g. ``{"get": "get_tags", "add": "add_tag"}``.
    """

    association_type: ClassVar[str] = "Association"
    is_multi_association: ClassVar[bool] = False

    def __init__(
        self,
        source: type[Base],
        target: type[Base],
        *,
        as_: str | Mapping[str, str] | None = None,
        scope: Any = None,
        constraints: bool = True,
        on_delete: str | None = None,
        on_update: str | None = None,
    ) -> None:
        self.source = source
        self.target = target
        self.scope = scope
        self.constraints = constraints
        self.on_delete = on_delete
        self.on_update = on_update
        self.is_self_association = source is target
        self.is_aliased = as_ is not None
        self.as_, self.name_singular, self.name_plural = self._names(as_)
        self.accessors: dict[str, str] = {}

    def __repr__(self) -> str:
        return f"<{self.association_type} {self.source.__name__}.{self.as_} -> {self.target.__name__}>"

    def _names(self, as_: str | Mapping[str, str] | None) -> tuple[str, str, str]:
        """Return (alias, singular, plural)."""
        if isinstance(as_, Mapping):
            singular, plural = as_["singular"], as_["plural"]
        elif as_ is not None and self.is_multi_association:
            singular, plural = naming.singularize(as_), as_
        elif as_ is not None:
            singular, plural = as_, naming.pluralize(as_)
        else:
            singular = self.target.__options__.name_singular
            plural = self.target.__options__.name_plural
        return (plural if self.is_multi_association else singular), singular, plural

    def _build_accessors(self, operations: Iterable[str]) -> dict[str, str]:
        singular = naming.underscore(self.name_singular)
        plural = naming.underscore(self.name_plural)
        templates = {
            "get": f"get_{plural if self.is_multi_association else singular}",
            "set": f"set_{plural if self.is_multi_association else singular}",
            "add_multiple": f"add_{plural}",
            "add": f"add_{singular}",
            "create": f"create_{singular}",
            "remove": f"remove_{singular}",
            "remove_multiple": f"remove_{plural}",
            "has_single": f"has_{singular}",
            "has_all": f"has_{plural}",
        }
        return {operation: templates[operation] for operation in operations}

    @property
    def database(self) -> Database:
        return self.source.__registry__.database

    def inject_attributes(self) -> None:
        raise NotImplementedError

    def check_naming_collision(self, pending: Iterable[str] = ()) -> None:
        """Reject aliases and accessors that shadow existing model members.

        ``pending`` names columns the association is about to add to the source.
        """
        source = self.source
        columns = {*source.__columns__, *pending}
        if self.as_ in columns:
            raise ConfigurationError(
                f"Naming collision between attribute '{self.as_}' and association '{self.as_}' "
                f"on model {source.__name__}. To remedy this, change either foreign_key or as_ "
                "in your association definition"
            )
        for accessor in self.accessors.values():
            if accessor in columns:
                raise ConfigurationError(
                    f"Accessor '{accessor}' of association '{self.as_}' collides with an attribute "
                    f"of model {source.__name__}"
                )
            existing = source.__accessors__.get(accessor)
            if existing is not None and existing[0] is not self:
                raise ConfigurationError(
                    f"Accessor '{accessor}' of association '{self.as_}' is already defined by "
                    f"association '{existing[0].as_}' on model {source.__name__}"
                )
            if hasattr(source, accessor):
                raise ConfigurationError(
                    f"Accessor '{accessor}' of association '{self.as_}' collides with a member "
                    f"of model {source.__name__}"
                )

    def to_instance_list(self, values: Any) -> list[Base]:
        """Normalize one or many targets, given as instances, key values or dicts."""
        if values is None:
            return []
        if not isinstance(values, (list, tuple, set, frozenset)):
            values = [values]

        pk = self.target.__primary_key__
        instances = []
        for value in values:
            if isinstance(value, self.target):
                instances.append(value)
            elif isinstance(value, Mapping):
                instances.append(self.target._from_row(value))
            else:
                instances.append(self.target._from_row({pk: value}))
        return instances

    def _scope_values(self) -> dict[str, Any]:
        return dict(self.scope) if isinstance(self.scope, Mapping) else {}
