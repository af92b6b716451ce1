"""Tests for Database model operations, scopes and soft deletes."""

from __future__ import annotations

import pytest

from relkit import (
    ConfigurationError,
    DatabaseError,
    Mapped,
    Q,
    SoftDeleteMixin,
    UniqueConstraintError,
    database_context,
    mapped_column,
)


@pytest.fixture
def models(Model):
    class Person(Model):
        __tablename__ = "people"
        __default_scope__ = {"active": True}
        __scopes__ = {"adults": {"age__gte": 18}}

        id: Mapped[int] = mapped_column(primary_key=True)
        email: Mapped[str] = mapped_column(unique=True)
        name: Mapped[str]
        age: Mapped[int] = mapped_column(default=0)
        active: Mapped[bool] = mapped_column(default=True)

    class Article(Model, SoftDeleteMixin):
        __tablename__ = "articles"

        id: Mapped[int] = mapped_column(primary_key=True)
        title: Mapped[str]

    return Person, Article


@pytest.fixture
async def people(models, db):
    Person, _ = models
    await db.sync()
    await db.bulk_create(
        Person,
        [
            {"email": "ann@example.com", "name": "Ann", "age": 34},
            {"email": "bo@example.com", "name": "Bo", "age": 12},
            {"email": "cy@example.com", "name": "Cy", "age": 51, "active": False},
        ],
    )
    return Person


class TestCrud:
    """Test create, save, find and delete."""

    async def test_create_and_find(self, people, db) -> None:
        person = await db.create(people(email="di@example.com", name="Di", age=20))
        found = await db.find_by_pk(people, person.id)
        assert found.name == "Di"
        assert found.active is True

    async def test_save_updates_loaded_instance(self, people, db) -> None:
        person = await db.find_one(people, {"name": "Ann"})
        person.age = 35
        await db.save(person)
        reloaded = await db.find_by_pk(people, person.id)
        assert reloaded.age == 35

    async def test_remove(self, people, db) -> None:
        person = await db.find_one(people, {"name": "Bo"})
        assert await db.remove(person) == 1
        assert await db.find_by_pk(people, person.id) is None

    async def test_find_all_order_limit(self, people, db) -> None:
        found = await db.find_all(people, order=["-age"], limit=1)
        assert [person.name for person in found] == ["Ann"]

    async def test_raw_rows(self, people, db) -> None:
        rows = await db.find_all(people, {"name": "Ann"}, attributes=["name", "age"], raw=True)
        assert rows == [{"name": "Ann", "age": 34}]

    async def test_unique_violation(self, people, db) -> None:
        """Driver integrity errors surface as UniqueConstraintError."""
        with pytest.raises(UniqueConstraintError) as info:
            await db.create(people(email="ann@example.com", name="Ann again"))
        assert isinstance(info.value, DatabaseError)
        assert "INSERT INTO" in info.value.sql

    async def test_sync_is_repeatable(self, people, db) -> None:
        """A second sync leaves existing tables and rows alone."""
        await db.sync()
        assert await db.count(people, scope=False) == 3

    async def test_find_by_pk_without_key(self, Model, db) -> None:
        class Event(Model):
            __auto_pk__ = False

            name: Mapped[str]

        with pytest.raises(ConfigurationError, match="no primary key"):
            await db.find_by_pk(Event, 1)


class TestScopes:
    """Test default and named scopes."""

    async def test_default_scope(self, people, db) -> None:
        """The default scope applies unless scope=False."""
        assert await db.count(people) == 2
        assert await db.count(people, scope=False) == 3

    async def test_named_scope(self, people, db) -> None:
        adults = await db.find_all(people, scope="adults", order=["name"])
        assert [person.name for person in adults] == ["Ann", "Cy"]

    async def test_unknown_scope(self, people, db) -> None:
        with pytest.raises(ConfigurationError, match="no scope named"):
            await db.find_all(people, scope="children")

    async def test_update(self, people, db) -> None:
        """Bulk updates respect the default scope."""
        assert await db.update(people, {"age": 1}) == 2
        assert await db.count(people, {"age": 1}, scope=False) == 2


class TestQuery:
    """Test the fluent query builder."""

    async def test_filter_order(self, people, db) -> None:
        found = await db.find(people).filter(age__lt=40).order_by("name").all()
        assert [person.name for person in found] == ["Ann", "Bo"]

    async def test_q_objects(self, people, db) -> None:
        query = db.find(people).unscoped().filter(Q(name="Bo") | Q(age__gt=50))
        assert await query.count() == 2

    async def test_first_and_exists(self, people, db) -> None:
        first = await db.find(people).order_by("age", desc=True).first()
        assert first.name == "Ann"
        assert await db.find(people).filter(name="Nobody").exists() is False

    async def test_values(self, people, db) -> None:
        rows = await db.find(people).order_by("name").limit(2).values("name")
        assert rows == [{"name": "Ann"}, {"name": "Bo"}]

    async def test_update_and_delete(self, people, db) -> None:
        assert await db.find(people).filter(name="Bo").update(age=13) == 1
        assert await db.find(people).filter(age=13).delete() == 1
        assert await db.count(people, scope=False) == 2


class TestSoftDelete:
    """Paranoid models are soft-deleted."""

    @pytest.fixture
    async def articles(self, models, db):
        _, Article = models
        await db.sync()
        await db.bulk_create(Article, [{"title": "one"}, {"title": "two"}])
        return Article

    def test_deleted_at_column(self, models) -> None:
        _, Article = models
        column = Article.__columns__["deleted_at"]
        assert column.nullable is True
        assert column.index is True

    async def test_destroy_hides_rows(self, articles, db) -> None:
        assert await db.destroy(articles, {"title": "one"}) == 1
        assert [article.title for article in await db.find_all(articles)] == ["two"]
        assert await db.count(articles, paranoid=False) == 2

    async def test_only_deleted(self, articles, db) -> None:
        await db.destroy(articles, {"title": "one"})
        (deleted,) = await db.find(articles).only_deleted().all()
        assert deleted.title == "one"
        assert deleted.is_deleted is True
        assert len(await db.find(articles).with_deleted().all()) == 2

    async def test_remove_instance(self, articles, db) -> None:
        article = await db.find_one(articles, {"title": "two"})
        await db.remove(article)
        assert article.is_deleted is True
        assert await db.count(articles) == 1

    async def test_force(self, articles, db) -> None:
        """force=True deletes the rows."""
        assert await db.destroy(articles, {"title": "one"}, force=True) == 1
        assert await db.count(articles, paranoid=False) == 1


async def test_database_context(registry) -> None:
    """The context manager yields an open database and closes it on exit."""
    async with database_context("sqlite::memory:", registry=registry) as db:
        rows, _ = await db.query("SELECT 1 AS one")
        assert rows == [{"one": 1}]
    assert db.connection_manager.connections == {}
