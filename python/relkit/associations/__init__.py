"""Associations between models."""

from relkit.associations.base import Association
from relkit.associations.belongs_to import BelongsTo
from relkit.associations.belongs_to_many import BelongsToMany, Through
from relkit.associations.has_many import HasMany
from relkit.associations.has_one import HasOne

__all__ = ["Association", "BelongsTo", "BelongsToMany", "HasMany", "HasOne", "Through"]
