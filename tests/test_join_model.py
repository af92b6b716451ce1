"""Tests for the key columns installed on join models."""

from __future__ import annotations

import pytest

from relkit import Mapped, mapped_column


@pytest.fixture
def models(Model):
    class Post(Model):
        __tablename__ = "posts"

        id: Mapped[int] = mapped_column(primary_key=True)
        title: Mapped[str]

    class Tag(Model):
        __tablename__ = "tags"

        id: Mapped[int] = mapped_column(primary_key=True)
        name: Mapped[str]

    return Post, Tag


class TestCompositePrimaryKey:
    """Join models without their own primary key."""

    def test_generated_primary_key_is_removed(self, models, registry) -> None:
        """The auto-generated id gives way to the two keys."""
        Post, Tag = models
        association = Post.belongs_to_many(Tag, through="PostTag")
        PostTag = registry.get("PostTag")
        assert "id" not in PostTag.__columns__
        assert association.primary_key_deleted is True
        assert PostTag.__primary_keys__ == ("post_id", "tag_id")

    def test_keys_are_not_also_unique(self, models, registry) -> None:
        """A composite primary key never carries a unique constraint as well."""
        Post, Tag = models
        Post.belongs_to_many(Tag, through="PostTag")
        Tag.belongs_to_many(Post, through="PostTag")
        PostTag = registry.get("PostTag")
        for name in ("post_id", "tag_id"):
            assert PostTag.__columns__[name].primary_key is True
            assert PostTag.__columns__[name].unique is False
        assert PostTag.__unique_constraints__ == {}

    def test_key_types_follow_referenced_keys(self, Model, registry) -> None:
        """Key columns take the type of the primary key they reference."""

        class Document(Model):
            code: Mapped[str] = mapped_column(primary_key=True, autoincrement=False)

        class Label(Model):
            name: Mapped[str]

        Document.belongs_to_many(Label, through="DocumentLabel")
        DocumentLabel = registry.get("DocumentLabel")
        assert DocumentLabel.__columns__["document_code"].python_type is str
        assert DocumentLabel.__columns__["label_id"].python_type is int


class TestSurrogatePrimaryKey:
    """Join models that declare their own primary key."""

    @pytest.fixture
    def post_tag(self, Model):
        class PostTag(Model):
            __tablename__ = "post_tags"

            id: Mapped[int] = mapped_column(primary_key=True)
            priority: Mapped[int | None]

        return PostTag

    def test_declared_primary_key_is_kept(self, models, post_tag) -> None:
        """An explicit primary key is not removed."""
        Post, Tag = models
        association = Post.belongs_to_many(Tag, through=post_tag)
        assert post_tag.__primary_keys__ == ("id",)
        assert association.primary_key_deleted is False

    def test_keys_share_a_unique_constraint(self, models, post_tag) -> None:
        """Both keys carry the same named unique constraint."""
        Post, Tag = models
        Post.belongs_to_many(Tag, through=post_tag)
        Tag.belongs_to_many(Post, through=post_tag)
        name = "post_tags_post_id_tag_id_unique"
        assert post_tag.__columns__["post_id"].unique == name
        assert post_tag.__columns__["tag_id"].unique == name
        assert post_tag.__columns__["post_id"].primary_key is False
        assert post_tag.__unique_constraints__ == {name: ["post_id", "tag_id"]}

    def test_unique_false_leaves_keys_unconstrained(self, models, post_tag) -> None:
        """through unique=False skips the unique constraint."""
        Post, Tag = models
        Post.belongs_to_many(Tag, through={"model": post_tag, "unique": False})
        assert post_tag.__columns__["post_id"].unique is False
        assert post_tag.__columns__["tag_id"].unique is False
        assert post_tag.__unique_constraints__ == {}


class TestForeignKeyConstraints:
    """Test the foreign keys of the join model's key columns."""

    def test_default_cascade(self, models, registry) -> None:
        """Both keys cascade on delete and update by default."""
        Post, Tag = models
        Post.belongs_to_many(Tag, through="PostTag")
        columns = registry.get("PostTag").__columns__
        assert columns["post_id"].foreign_key.table == "posts"
        assert columns["post_id"].foreign_key.column == "id"
        assert columns["post_id"].on_delete == "CASCADE"
        assert columns["tag_id"].foreign_key.table == "tags"
        assert columns["tag_id"].on_update == "CASCADE"

    def test_source_side_option_wins(self, models, registry) -> None:
        """A later association's on_delete overrides its own key."""
        Post, Tag = models
        Post.belongs_to_many(Tag, through="PostTag")
        Tag.belongs_to_many(Post, through="PostTag", on_delete="RESTRICT")
        columns = registry.get("PostTag").__columns__
        assert columns["tag_id"].on_delete == "RESTRICT"

    def test_target_side_existing_wins(self, models, registry) -> None:
        """An earlier constraint on the other key is kept."""
        Post, Tag = models
        Post.belongs_to_many(Tag, through="PostTag")
        Tag.belongs_to_many(Post, through="PostTag", on_delete="RESTRICT")
        columns = registry.get("PostTag").__columns__
        assert columns["post_id"].on_delete == "CASCADE"

    def test_constraints_disabled(self, models, registry) -> None:
        """constraints=False installs the keys without foreign keys."""
        Post, Tag = models
        Post.belongs_to_many(Tag, through="PostTag", constraints=False)
        columns = registry.get("PostTag").__columns__
        assert columns["post_id"].foreign_key is None
        assert columns["tag_id"].foreign_key is None
