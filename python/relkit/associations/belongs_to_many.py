"""Many-to-many associations through a join model."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from relkit.associations.base import Association, run_options, split_options
from relkit.associations.keys import resolve_key
from relkit.errors import ConfigurationError
from relkit.fields import ForeignKey
from relkit.naming import combine_table_names, singularize
from relkit.query import NOT_SET, Include, merge_where, or_

if TYPE_CHECKING:
    from relkit.base import Base

logger = logging.getLogger("relkit.associations")


@dataclass
class Through:
    """The join model of a many-to-many association.

    ``unique=False`` leaves the key pair unconstrained when the join model
    keeps its own primary key. ``scope`` values are written into every join
    row the association creates and filter every join row it reads.
    """

    model: type[Base]
    unique: bool = True
    scope: dict[str, Any] = field(default_factory=dict)


def find_pair(association: BelongsToMany) -> BelongsToMany | None:
    """Find the reciprocal association sharing ``association``'s join model.

    The first candidate wins. More than one candidate means two associations
    claim the same join model in the same direction, which is logged.
    """
    candidates = [
        other
        for other in association.target.__associations__.values()
        if isinstance(other, BelongsToMany)
        and other is not association
        and other.target is association.source
        and other.through.model is association.through.model
    ]
    if len(candidates) > 1:
        logger.warning(
            "Ambiguous pairing for %r: %s share the join model %s; pairing with %r",
            association,
            ", ".join(repr(candidate) for candidate in candidates),
            association.through.model.__name__,
            candidates[0],
        )
    return candidates[0] if candidates else None


class BelongsToMany(Association):
    """Many-to-many association between ``source`` and ``target``.

    The join model holds ``identifier`` (the source-side key, ``foreign_key``)
    and ``foreign_identifier`` (the target-side key, ``other_key``).

    Example:
        >>> Post.belongs_to_many(Tag, through="PostTag")
        >>> Tag.belongs_to_many(Post, through="PostTag")
        >>> await post.set_tags([tag1, tag2])
        >>> await post.has_tags([tag1, tag2])
        True
    """

    association_type = "BelongsToMany"
    is_multi_association = True

    def __init__(
        self,
        source: type[Base],
        target: type[Base],
        *,
        through: type[Base] | str | Mapping[str, Any] | None = None,
        as_: str | Mapping[str, str] | None = None,
        foreign_key: str | Mapping[str, Any] | None = None,
        other_key: str | Mapping[str, Any] | None = None,
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
        if through is None or through is True:
            raise ConfigurationError("belongs_to_many must be given a through option, either a string or a model")
        if self.is_self_association and not self.is_aliased:
            raise ConfigurationError("'as_' must be defined for many-to-many self-associations")

        self.combined_table_name = combine_table_names(
            source.__tablename__, self.as_ if self.is_self_association else target.__tablename__
        )

        source_key = resolve_key(source, foreign_key)
        target_key = resolve_key(
            target,
            other_key,
            singular=singularize(self.as_) if self.is_self_association else None,
        )
        self.foreign_key = source_key.name
        self.foreign_key_default = source_key.defaulted
        self.foreign_key_attribute = source_key.attribute
        self.other_key = target_key.name
        self.other_key_default = target_key.defaulted
        self.other_key_attribute = target_key.attribute

        self.accessors = self._build_accessors(
            ("get", "set", "add_multiple", "add", "create", "remove", "remove_multiple", "has_single", "has_all")
        )
        # Before the join model is defined or the partner is touched
        self.check_naming_collision()

        self.through = self._resolve_through(through)
        self.identifier = self.foreign_key
        self.foreign_identifier = self.other_key
        self.identifier_field: str | None = None
        self.foreign_identifier_field: str | None = None
        self.primary_key_deleted = False

        self.paired = find_pair(self)
        if self.paired is not None:
            self._pair(self.paired)

    def _resolve_through(self, through: type[Base] | str | Mapping[str, Any]) -> Through:
        options: dict[str, Any] = dict(through) if isinstance(through, Mapping) else {"model": through}
        model = options.get("model")
        if model is None:
            raise ConfigurationError("belongs_to_many through options need a model")

        if isinstance(model, str):
            registry = self.source.__registry__
            if registry.is_defined(model):
                model = registry.get(model)
            else:
                model = registry.define(
                    model,
                    table_name=model,
                    indexes=[],
                    paranoid=False,
                    underscored=self.source.__options__.underscored,
                )

        return Through(model=model, unique=options.get("unique", True), scope=dict(options.get("scope") or {}))

    def _pair(self, paired: BelongsToMany) -> None:
        """Link with the reciprocal association and reconcile defaulted keys."""
        self.paired = paired
        paired.paired = self

        if self.other_key_default:
            self.other_key = paired.foreign_key
            self.foreign_identifier = self.other_key

        if paired.other_key_default:
            # Drop the column installed under the paired association's inferred name
            if paired.other_key != self.foreign_key:
                self.through.model.__attributes__.remove(paired.other_key)
            paired.other_key = self.foreign_key
            paired.foreign_identifier = self.foreign_key
            paired.foreign_identifier_field = None

    @property
    def through_model(self) -> type[Base]:
        return self.through.model

    def inject_attributes(self) -> None:
        """Install the two key columns on the join model and re-finalize it."""
        through = self.through.model
        attributes = through.__attributes__
        self.identifier = self.foreign_key
        self.foreign_identifier = self.other_key
        key_names = (self.identifier, self.foreign_identifier)

        for name, column in attributes.items():
            if column.primary_key and column.auto_generated and name not in key_names:
                attributes.remove(name)
                self.primary_key_deleted = True

        source_pk = self.source.__columns__[self.source.__primary_key__]
        target_pk = self.target.__columns__[self.target.__primary_key__]
        source_attribute: dict[str, Any] = {"python_type": source_pk.python_type, **self.foreign_key_attribute}
        target_attribute: dict[str, Any] = {"python_type": target_pk.python_type, **self.other_key_attribute}

        surrogate_remains = any(
            column.primary_key for name, column in attributes.items() if name not in key_names
        )
        if not surrogate_remains:
            source_attribute.update(primary_key=True, unique=False)
            target_attribute.update(primary_key=True, unique=False)
        elif self.through.unique is not False:
            unique_key = f"{through.__tablename__}_{self.identifier}_{self.foreign_identifier}_unique"
            source_attribute["unique"] = target_attribute["unique"] = unique_key

        existing_source = attributes.ensure(self.identifier)
        existing_target = attributes.ensure(self.foreign_identifier)

        if self.constraints is not False:
            # Per-call options win on the source side, earlier calls win on the target side
            source_attribute["foreign_key"] = ForeignKey(
                f"{self.source.get_table_name()}.{source_pk.column_name}",
                ondelete=self.on_delete or existing_source.on_delete or "CASCADE",
                onupdate=self.on_update or existing_source.on_update or "CASCADE",
            )
            target_attribute["foreign_key"] = ForeignKey(
                f"{self.target.get_table_name()}.{target_pk.column_name}",
                ondelete=existing_target.on_delete or self.on_delete or "CASCADE",
                onupdate=existing_target.on_update or self.on_update or "CASCADE",
            )

        attributes.merge(self.identifier, **source_attribute)
        attributes.merge(self.foreign_identifier, **target_attribute)

        self.identifier_field = attributes.ensure(self.identifier).column_name
        self.foreign_identifier_field = attributes.ensure(self.foreign_identifier).column_name

        paired = self.paired
        if paired is not None and paired.foreign_identifier_field is None:
            paired.foreign_identifier_field = attributes.ensure(paired.foreign_identifier).column_name

        through._finalize()

    # ========== Accessors ==========

    def _source_key(self, instance: Base) -> Any:
        return instance.get(self.source.__primary_key__)

    def _target_key(self, target: Base) -> Any:
        return target.get(self.target.__primary_key__)

    def _through_attributes(self, target: Base, defaults: Mapping[str, Any]) -> dict[str, Any]:
        return {**defaults, **target.through_values(self.through.model)}

    async def get(
        self,
        instance: Base,
        *,
        where: Any = None,
        scope: Any = NOT_SET,
        join_table_attributes: list[str] | None = None,
        order: list[Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        raw: bool = False,
        paranoid: bool = True,
        **options: Any,
    ) -> list[Any]:
        """Targets joined to ``instance``; each exposes its join row as ``included(<through>)``.

        ``scope=False`` drops the target's default scope, a string selects a
        named scope of the target.
        """
        through = self.through.model
        through_where = {self.identifier: self._source_key(instance), **self.through.scope}
        include = Include(
            model=through,
            as_=through.__name__,
            on=(self.foreign_identifier, self.target.__primary_key__),
            where=through_where,
            attributes=join_table_attributes,
            required=True,
        )
        return await self.database.find_all(
            self.target,
            where=merge_where(self.scope, where),
            include=[include],
            scope=scope,
            order=order,
            limit=limit,
            offset=offset,
            raw=raw,
            paranoid=paranoid,
            **run_options(options),
        )

    async def has(self, instance: Base, targets: Any, *, where: Any = None, **options: Any) -> bool:
        """True when every one of ``targets`` is associated with ``instance``."""
        targets = targets if isinstance(targets, (list, tuple)) else [targets]
        if not targets:
            return True

        pk = self.target.__primary_key__
        conditions = [
            target.where() if isinstance(target, self.target) else {pk: target} for target in targets
        ]
        rows = await self.get(
            instance,
            where=merge_where(or_(*conditions), where),
            scope=False,
            raw=True,
            **run_options(options),
        )
        return len(rows) == len(targets)

    has_single = has
    has_all = has

    async def set(self, instance: Base, targets: Any, **options: Any) -> None:
        """Make ``targets`` exactly the associated set.

        Join rows of targets no longer wanted are deleted in one statement,
        new targets are inserted in one statement, and kept targets get their
        join row updated when through attributes are given. The writes run
        concurrently; the call fails with the first failing write.
        """
        execution, defaults = split_options(options)
        run = run_options(execution)
        desired = self.to_instance_list(targets)
        through = self.through.model
        source_key = self._source_key(instance)

        current_rows = await self.database.find_all(
            through, where={self.identifier: source_key, **self.through.scope}, raw=True, **run
        )
        current = {row[self.foreign_identifier]: row for row in current_rows}
        desired_keys = {self._target_key(target) for target in desired}

        unassociated = [target for target in desired if self._target_key(target) not in current]
        obsolete = [key for key in current if key not in desired_keys]

        operations = []
        for target in desired:
            key = self._target_key(target)
            if key not in current:
                continue
            attributes = self._through_attributes(target, defaults)
            if attributes:
                operations.append(
                    self.database.update(
                        through,
                        attributes,
                        where={self.identifier: source_key, self.foreign_identifier: key},
                        **run,
                    )
                )

        if obsolete:
            operations.append(
                self.database.destroy(
                    through,
                    where={self.identifier: source_key, self.foreign_identifier: obsolete},
                    force=True,
                    **run,
                )
            )

        if unassociated:
            records = [
                {
                    **self._through_attributes(target, defaults),
                    self.identifier: source_key,
                    self.foreign_identifier: self._target_key(target),
                    **self.through.scope,
                }
                for target in unassociated
            ]
            operations.append(
                self.database.bulk_create(
                    through, records, ignore_duplicates=execution.get("ignore_duplicates", False), **run
                )
            )

        await asyncio.gather(*operations)

    async def add(self, instance: Base, targets: Any, **options: Any) -> None:
        """Associate ``targets`` without removing anything.

        Already associated targets are updated only when their through
        attributes differ from the stored join row.
        """
        targets = self.to_instance_list(targets)
        if not targets:
            return

        execution, defaults = split_options(options)
        run = run_options(execution)
        through = self.through.model
        source_key = self._source_key(instance)

        current_rows = await self.database.find_all(
            through,
            where={
                self.identifier: source_key,
                self.foreign_identifier: [self._target_key(target) for target in targets],
                **self.through.scope,
            },
            raw=True,
            **run,
        )
        current = {row[self.foreign_identifier]: row for row in current_rows}

        unassociated = []
        changed = []
        for target in targets:
            existing = current.get(self._target_key(target))
            if existing is None:
                unassociated.append(target)
                continue
            attributes = self._through_attributes(target, defaults)
            if any(value != existing.get(name) for name, value in attributes.items()):
                changed.append((target, attributes))

        operations = []
        if unassociated:
            records = [
                {
                    **self._through_attributes(target, defaults),
                    self.identifier: source_key,
                    self.foreign_identifier: self._target_key(target),
                    **self.through.scope,
                }
                for target in unassociated
            ]
            operations.append(
                self.database.bulk_create(
                    through, records, ignore_duplicates=execution.get("ignore_duplicates", False), **run
                )
            )

        for target, attributes in changed:
            operations.append(
                self.database.update(
                    through,
                    attributes,
                    where={self.identifier: source_key, self.foreign_identifier: self._target_key(target)},
                    **run,
                )
            )

        await asyncio.gather(*operations)

    add_multiple = add

    async def remove(self, instance: Base, targets: Any, **options: Any) -> int:
        """Delete the join rows between ``instance`` and ``targets``."""
        targets = self.to_instance_list(targets)
        if not targets:
            return 0
        return await self.database.destroy(
            self.through.model,
            where={
                self.identifier: self._source_key(instance),
                self.foreign_identifier: [self._target_key(target) for target in targets],
            },
            force=True,
            **run_options(options),
        )

    remove_multiple = remove

    async def create(
        self,
        instance: Base,
        values: Mapping[str, Any] | None = None,
        *,
        fields: list[str] | None = None,
        **options: Any,
    ) -> Base:
        """Create a target and associate it; returns the new target."""
        values = dict(values or {})
        scope_values = self._scope_values()
        if scope_values:
            values.update(scope_values)
            if fields is not None:
                fields = [*fields, *scope_values]

        target = await self.database.create(self.target(**values), fields=fields, **run_options(options))
        await self.add(instance, target, **options)
        return target
