"""Mixins for common model patterns."""

from __future__ import annotations

from datetime import UTC, datetime

from tagorm.fields import Mapped, orm


class SoftDeleteMixin:
    """Adds a ``deleted_at`` soft-delete column to a model.

    Repositories of models carrying a ``soft`` column filter out rows whose
    marker is set; ``soft_delete`` writes the marker instead of removing the row.

    Example:
        >>> class Article(Model, SoftDeleteMixin):
        ...     __tablename__ = "articles"
        ...     id: Mapped[int] = orm("pk,auto")
        ...     title: Mapped[str] = orm("")
        >>> repo = orm.repository(Article)
        >>> repo.soft_delete(article)       # UPDATE articles SET deleted_at = ...
        >>> repo.query().find()             # excludes deleted rows
        >>> repo.with_trashed().find()      # includes them
    """

    deleted_at: Mapped[datetime | None] = orm("soft,index")

    @property
    def is_deleted(self) -> bool:
        value = self.__dict__.get("deleted_at")
        return isinstance(value, datetime)

    def mark_deleted(self) -> None:
        self.deleted_at = datetime.now(UTC)

    def mark_restored(self) -> None:
        self.deleted_at = None
