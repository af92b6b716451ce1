"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
from types import SimpleNamespace

import pytest
import pytest_asyncio

from relkit import Database, Mapped, Registry, declarative_base, mapped_column


@pytest.fixture
def registry() -> Registry:
    """A fresh model registry, so every test defines its own models."""
    return Registry()


@pytest.fixture
def Model(registry):
    """Declarative base bound to the test registry."""
    return declarative_base(registry)


@pytest_asyncio.fixture
async def db(registry):
    """Create an in-memory SQLite database bound to the test registry."""
    database = Database("sqlite::memory:", registry=registry)
    yield database
    await database.close()


@pytest_asyncio.fixture
async def postgres_db(registry):
    """Create a PostgreSQL database bound to the test registry.

    Set DATABASE_URL environment variable to use a real PostgreSQL database.
    Otherwise, this fixture is skipped.
    """
    url = os.environ.get("DATABASE_URL")
    if not url or not url.startswith(("postgresql:", "postgres:")):
        pytest.skip("DATABASE_URL not set to a PostgreSQL database")

    database = Database(url, registry=registry)
    await database.query_interface.drop_all_tables()
    yield database
    await database.query_interface.drop_all_tables()
    await database.query_interface.drop_all_enums()
    await database.close()


@pytest.fixture
def blog(Model) -> SimpleNamespace:
    """Users writing posts that are tagged through PostTag rows."""

    class User(Model):
        __tablename__ = "users"

        id: Mapped[int] = mapped_column(primary_key=True)
        name: Mapped[str] = mapped_column(max_length=100)

    class Profile(Model):
        __tablename__ = "profiles"

        id: Mapped[int] = mapped_column(primary_key=True)
        bio: Mapped[str | None] = mapped_column(nullable=True)

    class Post(Model):
        __tablename__ = "posts"

        id: Mapped[int] = mapped_column(primary_key=True)
        title: Mapped[str] = mapped_column(max_length=200)

    class Tag(Model):
        __tablename__ = "tags"

        id: Mapped[int] = mapped_column(primary_key=True)
        name: Mapped[str] = mapped_column(max_length=50)

    class PostTag(Model):
        __tablename__ = "post_tags"

        priority: Mapped[int | None] = mapped_column(nullable=True)

    Post.belongs_to_many(Tag, through=PostTag)
    Tag.belongs_to_many(Post, through=PostTag)
    Post.belongs_to(User, as_="author")
    User.has_many(Post, foreign_key="author_id")
    User.has_one(Profile)

    return SimpleNamespace(User=User, Profile=Profile, Post=Post, Tag=Tag, PostTag=PostTag)


@pytest_asyncio.fixture
async def blog_db(blog, db) -> Database:
    """The blog models with their tables created."""
    await db.sync()
    return db
