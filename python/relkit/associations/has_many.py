"""One-to-many associations keyed on the target."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from relkit.associations.base import Association, run_options
from relkit.associations.keys import resolve_key
from relkit.fields import ForeignKey
from relkit.query import NOT_SET, merge_where, or_

if TYPE_CHECKING:
    from relkit.base import Base


class HasMany(Association):
    """``source`` has many ``target`` rows, each holding ``foreign_key``.

    Example:
        >>> User.has_many(Post)
        >>> await user.get_posts()
        >>> await user.add_post(post)
    """

    association_type = "HasMany"
    is_multi_association = True

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
        key = resolve_key(source, foreign_key, underscored=target.__options__.underscored)
        self.foreign_key = key.name
        self.foreign_key_attribute = key.attribute
        self.accessors = self._build_accessors(
            ("get", "set", "add_multiple", "add", "create", "remove", "remove_multiple", "has_single", "has_all")
        )

    def inject_attributes(self) -> None:
        self.check_naming_collision((self.foreign_key,) if self.is_self_association else ())
        source_pk = self.source.__columns__[self.source.__primary_key__]
        attribute: dict[str, Any] = {"python_type": source_pk.python_type, "nullable": True}
        attribute.update(self.foreign_key_attribute)
        if self.constraints is not False:
            on_delete = self.on_delete or ("SET NULL" if attribute["nullable"] else "CASCADE")
            attribute["foreign_key"] = ForeignKey(
                f"{self.source.get_table_name()}.{source_pk.column_name}",
                ondelete=on_delete,
                onupdate=self.on_update or "CASCADE",
            )
        self.target.__attributes__.merge(self.foreign_key, **attribute)
        self.target._finalize()

    def _source_key(self, instance: Base) -> Any:
        return instance.get(self.source.__primary_key__)

    def _target_keys(self, targets: Any) -> list[Any]:
        pk = self.target.__primary_key__
        return [target.get(pk) for target in self.to_instance_list(targets)]

    async def get(self, instance: Base, *, where: Any = None, scope: Any = NOT_SET, **options: Any) -> list[Any]:
        return await self.database.find_all(
            self.target,
            where=merge_where({self.foreign_key: self._source_key(instance)}, self.scope, where),
            scope=scope,
            **options,
        )

    async def has(self, instance: Base, targets: Any, **options: Any) -> bool:
        keys = self._target_keys(targets)
        if not keys:
            return True
        pk = self.target.__primary_key__
        rows = await self.get(
            instance,
            where=or_(*[{pk: key} for key in keys]),
            scope=False,
            raw=True,
            attributes=[pk],
            **run_options(options),
        )
        return len(rows) == len(keys)

    has_single = has
    has_all = has

    async def set(self, instance: Base, targets: Any, **options: Any) -> None:
        """Make ``targets`` exactly the associated rows; others get a NULL key."""
        run = run_options(options)
        pk = self.target.__primary_key__
        source_key = self._source_key(instance)
        desired = set(self._target_keys(targets))

        current_rows = await self.database.find_all(
            self.target,
            where=merge_where({self.foreign_key: source_key}, self.scope),
            attributes=[pk],
            scope=False,
            raw=True,
            **run,
        )
        current = {row[pk] for row in current_rows}

        operations = []
        obsolete = sorted(current - desired, key=repr)
        if obsolete:
            operations.append(
                self.database.update(self.target, {self.foreign_key: None}, where={pk: obsolete}, scope=False, **run)
            )
        unassociated = [key for key in self._target_keys(targets) if key not in current]
        if unassociated:
            operations.append(
                self.database.update(
                    self.target,
                    {self.foreign_key: source_key, **self._scope_values()},
                    where={pk: unassociated},
                    scope=False,
                    **run,
                )
            )
        await asyncio.gather(*operations)

    async def add(self, instance: Base, targets: Any, **options: Any) -> None:
        keys = self._target_keys(targets)
        if not keys:
            return
        await self.database.update(
            self.target,
            {self.foreign_key: self._source_key(instance), **self._scope_values()},
            where={self.target.__primary_key__: keys},
            scope=False,
            **run_options(options),
        )

    add_multiple = add

    async def remove(self, instance: Base, targets: Any, **options: Any) -> int:
        keys = self._target_keys(targets)
        if not keys:
            return 0
        return await self.database.update(
            self.target,
            {self.foreign_key: None},
            where={self.foreign_key: self._source_key(instance), self.target.__primary_key__: keys},
            scope=False,
            **run_options(options),
        )

    remove_multiple = remove

    async def create(self, instance: Base, values: Mapping[str, Any] | None = None, **options: Any) -> Base:
        values = {**(values or {}), **self._scope_values(), self.foreign_key: self._source_key(instance)}
        return await self.database.create(self.target(**values), **run_options(options))
