"""Tests for transactions and savepoints on SQLite."""

from __future__ import annotations

import pytest

from relkit import IsolationLevel, RelkitError, Transaction


class TestTransactions:
    """Test commit, rollback and connection state."""

    async def test_commit_on_exit(self, blog, blog_db) -> None:
        async with blog_db.transaction() as tx:
            await blog_db.create(blog.User(name="Alice"), transaction=tx)
        assert tx.finished == "commit"
        assert await blog_db.count(blog.User) == 1

    async def test_rollback_on_error(self, blog, blog_db) -> None:
        with pytest.raises(ValueError):
            async with blog_db.transaction() as tx:
                await blog_db.create(blog.User(name="Alice"), transaction=tx)
                raise ValueError("nope")
        assert tx.finished == "rollback"
        assert await blog_db.count(blog.User) == 0

    async def test_explicit_rollback_inside_block(self, blog, blog_db) -> None:
        """A transaction finished inside the block is left alone on exit."""
        async with blog_db.transaction() as tx:
            await blog_db.create(blog.User(name="Alice"), transaction=tx)
            await tx.rollback()
        assert tx.finished == "rollback"
        assert await blog_db.count(blog.User) == 0

    async def test_connection_state(self, blog_db) -> None:
        """State is set when the transaction starts and reset when it ends."""
        tx = await blog_db.begin(isolation_level=IsolationLevel.READ_UNCOMMITTED)
        connection = tx.connection
        assert connection.state.in_transaction is True
        assert connection.state.autocommit is False
        assert connection.state.isolation_level == "READ UNCOMMITTED"

        await tx.commit()
        assert connection.state.in_transaction is False
        assert connection.state.isolation_level is None
        assert tx.connection is None

    async def test_double_commit(self, blog_db) -> None:
        tx = await blog_db.begin()
        await tx.commit()
        with pytest.raises(RelkitError, match="finished with state: commit"):
            await tx.commit()

    async def test_commit_without_start(self, blog_db) -> None:
        with pytest.raises(RelkitError, match="never started"):
            await Transaction(blog_db).commit()

    async def test_query_after_finish(self, blog_db) -> None:
        """A finished transaction can no longer run statements."""
        tx = await blog_db.begin()
        await tx.rollback()
        with pytest.raises(RelkitError, match="already finished"):
            await blog_db.query("SELECT 1", transaction=tx)


class TestSavepoints:
    """Nested transactions run as savepoints on the parent's connection."""

    async def test_savepoint_rollback_keeps_outer_work(self, blog, blog_db) -> None:
        async with blog_db.transaction() as tx:
            await blog_db.create(blog.User(name="kept"), transaction=tx)
            with pytest.raises(RuntimeError):
                async with tx.transaction() as savepoint:
                    assert savepoint.connection is tx.connection
                    await blog_db.create(blog.User(name="discarded"), transaction=savepoint)
                    raise RuntimeError("undo")

        users = await blog_db.find_all(blog.User)
        assert [user.name for user in users] == ["kept"]

    async def test_savepoint_commit(self, blog, blog_db) -> None:
        async with blog_db.transaction() as tx:
            async with tx.transaction() as savepoint:
                await blog_db.create(blog.User(name="inner"), transaction=savepoint)
            assert savepoint.finished == "commit"
            assert tx.connection is not None
        assert await blog_db.count(blog.User) == 1

    async def test_savepoint_leaves_connection_state(self, blog_db) -> None:
        """Finishing a savepoint does not reset the outer transaction's state."""
        tx = await blog_db.begin()
        savepoint = await tx.transaction().prepare()
        await savepoint.rollback()
        assert tx.connection.state.in_transaction is True
        await tx.rollback()

    def test_savepoint_names(self) -> None:
        tx = Transaction(database=None)
        first = tx.transaction()
        second = tx.transaction()
        assert first.id == tx.id
        assert first.name == f"{tx.id}-sp-0"
        assert second.name == f"{tx.id}-sp-1"
        assert tx.savepoints == [first, second]
