"""One-to-one associations keyed on the target."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from relkit.associations.base import run_options
from relkit.associations.has_many import HasMany
from relkit.query import NOT_SET, merge_where

if TYPE_CHECKING:
    from relkit.base import Base


class HasOne(HasMany):
    """``source`` has at most one ``target`` row holding ``foreign_key``.

    Example:
        >>> User.has_one(Profile)
        >>> await user.set_profile(profile)
        >>> await user.get_profile()
    """

    association_type = "HasOne"
    is_multi_association = False

    def __init__(self, source: type[Base], target: type[Base], **options: Any) -> None:
        super().__init__(source, target, **options)
        self.accessors = self._build_accessors(("get", "set", "create"))

    async def get(self, instance: Base, *, where: Any = None, scope: Any = NOT_SET, **options: Any) -> Base | None:
        return await self.database.find_one(
            self.target,
            where=merge_where({self.foreign_key: self._source_key(instance)}, self.scope, where),
            scope=scope,
            **options,
        )

    async def set(self, instance: Base, target: Any, **options: Any) -> None:
        """Point ``target`` at ``instance``, detaching the previous row; None only detaches."""
        run = run_options(options)
        pk = self.target.__primary_key__
        keys = self._target_keys(target)
        where: dict[str, Any] = {self.foreign_key: self._source_key(instance)}
        if keys:
            where[f"{pk}__notin"] = keys
        await self.database.update(self.target, {self.foreign_key: None}, where=where, scope=False, **run)
        if keys:
            await self.add(instance, keys, **run)

    async def create(self, instance: Base, values: Mapping[str, Any] | None = None, **options: Any) -> Base:
        await self.database.update(
            self.target,
            {self.foreign_key: None},
            where={self.foreign_key: self._source_key(instance)},
            scope=False,
            **run_options(options),
        )
        return await super().create(instance, values, **options)
