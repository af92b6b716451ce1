"""Mixins for common model patterns."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import ClassVar


class SoftDeleteMixin:
    """Mixin that adds soft delete functionality to models.

    Marks the model paranoid, which adds a nullable, indexed ``deleted_at``
    column. Rows with ``deleted_at`` set are excluded from ``find_all`` unless
    ``paranoid=False`` is passed, and ``destroy`` sets the column instead of
    deleting the row unless ``force=True``.

    Example:
        >>> class Article(Model, SoftDeleteMixin):
        ...     __tablename__ = "articles"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     title: Mapped[str]
        >>>
        >>> await db.destroy(Article, where={"id": 1})
        >>> await db.find_all(Article, paranoid=False)
    """

    __paranoid__: ClassVar[bool] = True

    @property
    def is_deleted(self) -> bool:
        """Check if this instance is soft-deleted."""
        return getattr(self, "deleted_at", None) is not None

    def mark_deleted(self) -> None:
        """Mark this instance as deleted (sets deleted_at to now)."""
        self.deleted_at = datetime.now(UTC)

    def mark_restored(self) -> None:
        """Restore a soft-deleted instance (clears deleted_at)."""
        self.deleted_at = None
