"""Foreign key inference for associations."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from relkit import naming
from relkit.errors import ConfigurationError

if TYPE_CHECKING:
    from relkit.base import Base


@dataclass
class ResolvedKey:
    """A foreign key name plus what it was derived from.

    Attributes:
        name: Attribute name of the key on the model that holds it
        python_type: Type of the referenced primary key
        field: Physical column of the referenced primary key
        defaulted: True when the caller gave no key at all, so pairing may
            still rename it
        attribute: Extra column options given with an explicit key
    """

    name: str
    python_type: type | None
    field: str
    defaulted: bool
    attribute: dict[str, Any] = field(default_factory=dict)


def default_key_name(owner: type[Base], singular: str, underscored: bool) -> str:
    """``<singular>_<pk>``, camelized for models that are not underscored.

    Example:
        >>> default_key_name(User, "User", True)
        'user_id'
        >>> default_key_name(User, "User", False)
        'UserId'
    """
    pk = owner.__primary_key__
    return naming.camelize_if(f"{naming.underscored_if(singular, underscored)}_{pk}", not underscored)


def resolve_key(
    owner: type[Base],
    spec: str | Mapping[str, Any] | None = None,
    *,
    singular: str | None = None,
    underscored: bool | None = None,
) -> ResolvedKey:
    """Resolve the key that references ``owner``'s primary key.

    ``spec`` is the caller's key option: a name, a mapping with ``name`` (or
    ``field_name``) plus column options, or None to synthesize one from
    ``singular`` (the owner's singular name by default).
    """
    pk = owner.__primary_key__
    if pk is None:
        raise ConfigurationError(f"{owner.__name__} has no primary key to associate through")
    column = owner.__columns__[pk]
    if underscored is None:
        underscored = owner.__options__.underscored

    attribute: dict[str, Any] = {}
    name: str | None
    if isinstance(spec, Mapping):
        attribute = dict(spec)
        name = attribute.pop("name", None) or attribute.pop("field_name", None)
        defaulted = False
    else:
        name = spec or None
        defaulted = spec is None

    if not name:
        name = default_key_name(owner, singular or owner.__options__.name_singular, underscored)

    return ResolvedKey(
        name=name,
        python_type=column.python_type,
        field=column.column_name,
        defaulted=defaulted,
        attribute=attribute,
    )
