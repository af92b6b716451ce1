"""Associations whose key lives on the source."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from relkit import naming
from relkit.associations.base import Association, run_options
from relkit.associations.keys import resolve_key
from relkit.fields import ForeignKey
from relkit.query import NOT_SET, merge_where

if TYPE_CHECKING:
    from relkit.base import Base


class BelongsTo(Association):
    """``source`` holds ``foreign_key`` pointing at one ``target`` row.

    The key defaults to ``<alias>_<target pk>``, e.g. ``author_id`` for
    ``Post.belongs_to(User, as_="author")``.
    """

    association_type = "BelongsTo"

    def __init__(
        self,
        source: type[Base],
        target: type[Base],
        *,
        foreign_key: str | Mapping[str, Any] | None = None,
        as_: str | Mapping[str, str] | None = None,
        scope: Any = None,
        constraints: bool = True,
        on_delete: str | None = None,
        on_update: str | None = None,
    ) -> None:
        super().__init__(
            source,
            target,
            as_=as_,
            scope=scope,
            constraints=constraints,
            on_delete=on_delete,
            on_update=on_update,
        )
        key = resolve_key(
            target,
            foreign_key,
            singular=naming.underscore(self.as_) if self.is_aliased else None,
            underscored=source.__options__.underscored,
        )
        self.foreign_key = key.name
        self.foreign_key_attribute = key.attribute
        self.accessors = self._build_accessors(("get", "set", "create"))

    def inject_attributes(self) -> None:
        self.check_naming_collision((self.foreign_key,))
        target_pk = self.target.__columns__[self.target.__primary_key__]
        attribute: dict[str, Any] = {"python_type": target_pk.python_type, "nullable": True}
        attribute.update(self.foreign_key_attribute)
        if self.constraints is not False:
            attribute["foreign_key"] = ForeignKey(
                f"{self.target.get_table_name()}.{target_pk.column_name}",
                ondelete=self.on_delete or ("SET NULL" if attribute["nullable"] else "NO ACTION"),
                onupdate=self.on_update or "CASCADE",
            )
        self.source.__attributes__.merge(self.foreign_key, **attribute)
        self.source._finalize()

    async def get(self, instance: Base, *, where: Any = None, scope: Any = NOT_SET, **options: Any) -> Base | None:
        value = instance.get(self.foreign_key)
        if value is None:
            return None
        return await self.database.find_one(
            self.target,
            where=merge_where({self.target.__primary_key__: value}, self.scope, where),
            scope=scope,
            **options,
        )

    async def set(self, instance: Base, target: Any, *, save: bool = True, **options: Any) -> Base:
        """Point ``instance`` at ``target`` (an instance, a key or None) and save the key."""
        targets = self.to_instance_list(target)
        value = targets[0].get(self.target.__primary_key__) if targets else None
        object.__setattr__(instance, self.foreign_key, value)
        if save:
            await self.database.save(instance, fields=[self.foreign_key], **run_options(options))
        return instance

    async def create(self, instance: Base, values: Mapping[str, Any] | None = None, **options: Any) -> Base:
        target = await self.database.create(
            self.target(**{**(values or {}), **self._scope_values()}), **run_options(options)
        )
        await self.set(instance, target, **options)
        return target
