"""Tests for many-to-many association definition and pairing."""

from __future__ import annotations

import logging

import pytest

from relkit import BelongsToMany, ConfigurationError, Mapped, mapped_column


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


class TestDefinition:
    """Test belongs_to_many() options."""

    def test_through_is_required(self, models) -> None:
        """A missing through option is a configuration error."""
        Post, Tag = models
        with pytest.raises(ConfigurationError, match="through"):
            Post.belongs_to_many(Tag)

    def test_through_true_is_rejected(self, models) -> None:
        """through=True does not name a join model."""
        Post, Tag = models
        with pytest.raises(ConfigurationError, match="through"):
            Post.belongs_to_many(Tag, through=True)

    def test_self_association_needs_alias(self, Model) -> None:
        """A model associated with itself must be given as_."""

        class User(Model):
            name: Mapped[str]

        with pytest.raises(ConfigurationError, match="self-associations"):
            User.belongs_to_many(User, through="Follow")

    def test_string_through_defines_join_model(self, models, registry) -> None:
        """A join model named by string is created on the registry."""
        Post, Tag = models
        association = Post.belongs_to_many(Tag, through="PostTag")
        PostTag = registry.get("PostTag")
        assert association.through.model is PostTag
        assert PostTag.__tablename__ == "PostTag"
        assert set(PostTag.__columns__) == {"post_id", "tag_id"}

    def test_string_through_reuses_existing_model(self, models, registry) -> None:
        """A join model already in the registry is reused, not redefined."""
        Post, Tag = models
        PostTag = registry.define("PostTag", {"priority": int})
        association = Post.belongs_to_many(Tag, through="PostTag")
        assert association.through.model is PostTag
        assert "priority" in PostTag.__columns__

    def test_through_mapping(self, models) -> None:
        """A mapping through option carries unique and scope."""
        Post, Tag = models
        association = Post.belongs_to_many(
            Tag, through={"model": "PostTag", "unique": False, "scope": {"kind": "primary"}}
        )
        assert association.through.unique is False
        assert association.through.scope == {"kind": "primary"}

    def test_accessor_names(self, models) -> None:
        """Accessors use the target's plural and singular names."""
        Post, Tag = models
        association = Post.belongs_to_many(Tag, through="PostTag")
        assert association.as_ == "Tags"
        assert association.accessors == {
            "get": "get_tags",
            "set": "set_tags",
            "add_multiple": "add_tags",
            "add": "add_tag",
            "create": "create_tag",
            "remove": "remove_tag",
            "remove_multiple": "remove_tags",
            "has_single": "has_tag",
            "has_all": "has_tags",
        }
        assert Post.__accessors__["get_tags"] == (association, "get")

    def test_alias_accessor_names(self, models) -> None:
        """An alias is the plural; its singular is inferred."""
        Post, Tag = models
        association = Post.belongs_to_many(Tag, through="PostTag", as_="labels")
        assert association.accessors["get"] == "get_labels"
        assert association.accessors["add"] == "add_label"

    def test_irregular_alias_singular(self, Model) -> None:
        """Accessor singulars follow the English inflection rules."""

        class Actor(Model):
            name: Mapped[str]

        class Film(Model):
            title: Mapped[str]

        association = Actor.belongs_to_many(Film, through="Credit", as_="Movies")
        assert association.accessors["add"] == "add_movie"
        assert association.accessors["has_all"] == "has_movies"
        assert Actor.__accessors__["create_movie"] == (association, "create")

    def test_combined_table_name(self, models) -> None:
        """The combined name orders both table names lexically."""
        Post, Tag = models
        association = Post.belongs_to_many(Tag, through="PostTag")
        assert association.combined_table_name == "poststags"

    def test_naming_collision(self, Model) -> None:
        """An accessor shadowing a column is rejected."""

        class Post(Model):
            get_tags: Mapped[str | None]

        class Tag(Model):
            name: Mapped[str]

        with pytest.raises(ConfigurationError, match="collides"):
            Post.belongs_to_many(Tag, through="PostTag")

    def test_naming_collision_leaves_pair_untouched(self, Model, registry) -> None:
        """A rejected association neither pairs nor rewrites the join model."""

        class Post(Model):
            title: Mapped[str]

        class Tag(Model):
            get_posts: Mapped[str | None]

        tags = Post.belongs_to_many(Tag, through="PostTag")
        with pytest.raises(ConfigurationError, match="collides"):
            Tag.belongs_to_many(Post, through="PostTag", foreign_key="label_id")

        assert tags.paired is None
        assert tags.other_key == "tag_id"
        assert set(registry.get("PostTag").__columns__) == {"post_id", "tag_id"}
        assert Tag.__associations__ == {}

    def test_naming_collision_defines_no_join_model(self, Model, registry) -> None:
        """The collision is reported before a string join model is created."""

        class Post(Model):
            get_tags: Mapped[str | None]

        class Tag(Model):
            name: Mapped[str]

        with pytest.raises(ConfigurationError, match="collides"):
            Post.belongs_to_many(Tag, through="PostTag")
        assert registry.is_defined("PostTag") is False


class TestPairing:
    """Test reciprocal association pairing."""

    def test_pairing_is_symmetric(self, models) -> None:
        """Both directions point at each other."""
        Post, Tag = models
        tags = Post.belongs_to_many(Tag, through="PostTag")
        posts = Tag.belongs_to_many(Post, through="PostTag")
        assert tags.paired is posts
        assert posts.paired is tags

    def test_keys_mirror_each_other(self, models) -> None:
        """Each side's foreign key is the other side's other key."""
        Post, Tag = models
        tags = Post.belongs_to_many(Tag, through="PostTag")
        posts = Tag.belongs_to_many(Post, through="PostTag")
        assert (tags.identifier, tags.foreign_identifier) == ("post_id", "tag_id")
        assert (posts.identifier, posts.foreign_identifier) == ("tag_id", "post_id")

    def test_explicit_key_is_adopted_by_pair(self, models, registry) -> None:
        """A defaulted other key takes the paired association's explicit key."""
        Post, Tag = models
        tags = Post.belongs_to_many(Tag, through="PostTag", foreign_key="article_id")
        posts = Tag.belongs_to_many(Post, through="PostTag")
        assert posts.other_key == "article_id"
        assert tags.foreign_key == "article_id"
        assert set(registry.get("PostTag").__columns__) == {"article_id", "tag_id"}

    def test_stale_inferred_key_is_removed(self, models, registry) -> None:
        """An inferred key installed first is replaced by the pair's explicit key."""
        Post, Tag = models
        tags = Post.belongs_to_many(Tag, through="PostTag")
        Tag.belongs_to_many(Post, through="PostTag", foreign_key="label_id")
        PostTag = registry.get("PostTag")
        assert tags.other_key == "label_id"
        assert tags.foreign_identifier == "label_id"
        assert tags.foreign_identifier_field == "label_id"
        assert set(PostTag.__columns__) == {"post_id", "label_id"}

    def test_different_join_models_do_not_pair(self, models) -> None:
        """Associations through different join models stay unpaired."""
        Post, Tag = models
        tags = Post.belongs_to_many(Tag, through="PostTag")
        posts = Tag.belongs_to_many(Post, through="TagPost")
        assert tags.paired is None
        assert posts.paired is None

    def test_self_association_pairing(self, Model, registry) -> None:
        """Aliased self-associations through one join model pair with each other."""

        class User(Model):
            name: Mapped[str]

        followers = User.belongs_to_many(User, as_="followers", through="Follow", foreign_key="followee_id")
        following = User.belongs_to_many(User, as_="following", through="Follow", foreign_key="follower_id")
        assert followers.paired is following
        assert followers.other_key == "follower_id"
        assert following.other_key == "followee_id"
        assert set(registry.get("Follow").__columns__) == {"followee_id", "follower_id"}

    def test_ambiguous_pairing_warns(self, models, caplog) -> None:
        """More than one candidate logs a warning and pairs with the first."""
        Post, Tag = models
        tags = Post.belongs_to_many(Tag, through="PostTag")
        Post.belongs_to_many(Tag, through="PostTag", as_="labels")

        with caplog.at_level(logging.WARNING, logger="relkit.associations"):
            posts = Tag.belongs_to_many(Post, through="PostTag")

        assert "Ambiguous pairing" in caplog.text
        assert posts.paired is tags
        assert isinstance(posts, BelongsToMany)
