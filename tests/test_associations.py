"""Tests for has_many, has_one and belongs_to associations."""

from __future__ import annotations

import pytest

from relkit import BelongsTo, HasMany, HasOne, Mapped


@pytest.fixture
async def author(blog, blog_db):
    return await blog_db.create(blog.User(name="Alice"))


def ids(instances) -> set[int]:
    return {instance.id for instance in instances}


class TestDefinitions:
    """Test key injection and accessor names."""

    def test_belongs_to_key(self, blog) -> None:
        """An aliased belongs_to names its key after the alias."""
        association = blog.Post.__associations__["author"]
        assert isinstance(association, BelongsTo)
        assert association.foreign_key == "author_id"
        column = blog.Post.__columns__["author_id"]
        assert column.nullable is True
        assert column.foreign_key.table == "users"
        assert column.on_delete == "SET NULL"
        assert column.on_update == "CASCADE"

    def test_belongs_to_accessors(self, blog) -> None:
        """Single associations expose get, set and create."""
        association = blog.Post.__associations__["author"]
        assert association.accessors == {
            "get": "get_author",
            "set": "set_author",
            "create": "create_author",
        }

    def test_has_many_accessors(self, blog) -> None:
        """has_many exposes the plural and singular accessors."""
        association = blog.User.__associations__["Posts"]
        assert isinstance(association, HasMany)
        assert association.foreign_key == "author_id"
        assert association.accessors["get"] == "get_posts"
        assert association.accessors["add"] == "add_post"
        assert association.accessors["has_all"] == "has_posts"

    def test_has_one_key(self, blog) -> None:
        """has_one installs <source>_<pk> on the target."""
        association = blog.User.__associations__["Profile"]
        assert isinstance(association, HasOne)
        assert association.foreign_key == "user_id"
        assert "user_id" in blog.Profile.__columns__
        assert set(association.accessors.values()) == {"get_profile", "set_profile", "create_profile"}

    def test_has_many_explicit_on_delete(self, Model) -> None:
        """on_delete overrides the SET NULL default."""

        class Team(Model):
            name: Mapped[str]

        class Member(Model):
            name: Mapped[str]

        Team.has_many(Member, on_delete="CASCADE")
        assert Member.__columns__["team_id"].on_delete == "CASCADE"


class TestHasMany:
    """Test has_many accessors."""

    async def test_add_and_get(self, blog, blog_db, author) -> None:
        """Added targets point at the source."""
        first = await blog_db.create(blog.Post(title="First"))
        second = await blog_db.create(blog.Post(title="Second"))
        await author.add_posts([first, second])
        assert ids(await author.get_posts()) == {first.id, second.id}

    async def test_set_detaches_others(self, blog, blog_db, author) -> None:
        """set() nulls the key of rows no longer wanted."""
        first = await blog_db.create(blog.Post(title="First"))
        second = await blog_db.create(blog.Post(title="Second"))
        await author.set_posts([first, second])
        await author.set_posts([second])
        assert ids(await author.get_posts()) == {second.id}
        detached = await blog_db.find_by_pk(blog.Post, first.id)
        assert detached.author_id is None

    async def test_has(self, blog, blog_db, author) -> None:
        """has_post() checks the key on the target."""
        mine = await blog_db.create(blog.Post(title="Mine"))
        other = await blog_db.create(blog.Post(title="Other"))
        await author.add_post(mine)
        assert await author.has_post(mine) is True
        assert await author.has_posts([mine, other]) is False

    async def test_remove(self, blog, blog_db, author) -> None:
        """remove_post() nulls the key without deleting the row."""
        post = await blog_db.create(blog.Post(title="Draft"))
        await author.add_post(post)
        assert await author.remove_post(post) == 1
        assert await author.get_posts() == []
        assert await blog_db.count(blog.Post) == 1

    async def test_create(self, author) -> None:
        """create_post() inserts a target already pointing at the source."""
        post = await author.create_post({"title": "New"})
        assert post.author_id == author.id
        assert ids(await author.get_posts()) == {post.id}


class TestHasOne:
    """Test has_one accessors."""

    async def test_set_and_get(self, blog, blog_db, author) -> None:
        """The target set last is the one returned."""
        first = await blog_db.create(blog.Profile(bio="first"))
        second = await blog_db.create(blog.Profile(bio="second"))
        await author.set_profile(first)
        await author.set_profile(second)
        profile = await author.get_profile()
        assert profile.id == second.id
        previous = await blog_db.find_by_pk(blog.Profile, first.id)
        assert previous.user_id is None

    async def test_set_none_detaches(self, blog, blog_db, author) -> None:
        """Setting None leaves the source without a target."""
        profile = await blog_db.create(blog.Profile(bio="bio"))
        await author.set_profile(profile)
        await author.set_profile(None)
        assert await author.get_profile() is None

    async def test_create_replaces(self, author) -> None:
        """create_profile() detaches the previous target."""
        old = await author.create_profile({"bio": "old"})
        new = await author.create_profile({"bio": "new"})
        profile = await author.get_profile()
        assert profile.id == new.id
        assert profile.id != old.id


class TestBelongsTo:
    """Test belongs_to accessors."""

    async def test_set_and_get(self, blog, blog_db, author) -> None:
        """set_author() stores the key; get_author() loads the target."""
        post = await blog_db.create(blog.Post(title="Hello"))
        await post.set_author(author)
        reloaded = await blog_db.find_by_pk(blog.Post, post.id)
        assert reloaded.author_id == author.id
        found = await reloaded.get_author()
        assert found.name == "Alice"

    async def test_get_without_key(self, blog, blog_db) -> None:
        """A NULL key reads as no target without querying."""
        post = await blog_db.create(blog.Post(title="Orphan"))
        assert await post.get_author() is None

    async def test_set_without_saving(self, blog, blog_db, author) -> None:
        """save=False only changes the instance."""
        post = await blog_db.create(blog.Post(title="Hello"))
        await post.set_author(author, save=False)
        assert post.author_id == author.id
        reloaded = await blog_db.find_by_pk(blog.Post, post.id)
        assert reloaded.author_id is None

    async def test_create(self, blog, blog_db) -> None:
        """create_author() inserts the target and points the source at it."""
        post = await blog_db.create(blog.Post(title="Hello"))
        user = await post.create_author({"name": "Bob"})
        assert user.id is not None
        reloaded = await blog_db.find_by_pk(blog.Post, post.id)
        assert reloaded.author_id == user.id
