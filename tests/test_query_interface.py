"""Tests for the QueryInterface schema, DML and transaction operations."""

from __future__ import annotations

import pytest

from relkit import (
    ENUM,
    ConfigurationError,
    EmptyResultError,
    ForeignKey,
    Mapped,
    Registry,
    Transaction,
    ValidationError,
    declarative_base,
    mapped_column,
)
from relkit.dialects import get_dialect
from relkit.dialects.abstract import Connection
from relkit.fields import ColumnInfo
from relkit.query_interface import QueryInterface
from relkit.query_types import QueryType


class RecordingDatabase:
    """Stands in for a PostgreSQL Database and records every statement.

    SELECT statements are answered from ``responses`` in order; a statement
    containing ``fail_on`` raises.
    """

    def __init__(self, responses: list | None = None, fail_on: str | None = None) -> None:
        self.dialect = get_dialect("postgresql")
        self.generator = self.dialect.generator()
        self.registry = Registry()
        self.responses = list(responses or [])
        self.fail_on = fail_on
        self.statements: list[str] = []

    async def query(self, sql, options=None, **kwargs):
        text = sql if isinstance(sql, str) else sql[0]
        if self.fail_on and self.fail_on in text:
            raise RuntimeError(f"failed: {text}")
        self.statements.append(text)
        if kwargs.get("type") is QueryType.SELECT:
            return self.responses.pop(0) if self.responses else []
        return None


def pk_column() -> ColumnInfo:
    return ColumnInfo(python_type=int, primary_key=True, autoincrement=True)


@pytest.fixture
def qi(db) -> QueryInterface:
    return db.query_interface


class TestTables:
    """Test table creation, description and removal on SQLite."""

    async def test_create_and_describe(self, qi) -> None:
        """Plain Python types and ColumnInfo records both define columns."""
        await qi.create_table(
            "people",
            {"id": pk_column(), "name": ColumnInfo(python_type=str, max_length=80), "age": int},
        )
        columns = await qi.describe_table("people")
        assert set(columns) == {"id", "name", "age"}
        assert columns["id"]["primary_key"] is True
        assert columns["name"]["type"] == "VARCHAR(80)"
        assert columns["name"]["allow_null"] is False
        assert columns["age"]["allow_null"] is True

    async def test_describe_missing_table(self, qi) -> None:
        """Describing a table that does not exist is an empty result."""
        with pytest.raises(EmptyResultError, match="case sensitive"):
            await qi.describe_table("nowhere")

    async def test_show_and_rename(self, qi) -> None:
        """Renamed tables show up under their new name."""
        await qi.create_table("drafts", {"id": pk_column()})
        await qi.rename_table("drafts", "articles")
        tables = await qi.show_all_tables()
        assert "articles" in tables
        assert "drafts" not in tables

    async def test_drop_all_tables(self, qi) -> None:
        """Every table goes, even ones other tables reference."""
        await qi.create_table("parents", {"id": pk_column()})
        await qi.create_table(
            "children",
            {
                "id": pk_column(),
                "parent_id": ColumnInfo(
                    python_type=int, nullable=True, foreign_key=ForeignKey("parents.id", ondelete="CASCADE")
                ),
            },
        )
        await qi.drop_all_tables()
        assert await qi.show_all_tables() == []

    async def test_drop_all_tables_skip(self, qi) -> None:
        """Tables named in skip survive."""
        await qi.create_table("keep", {"id": pk_column()})
        await qi.create_table("lose", {"id": pk_column()})
        await qi.drop_all_tables(skip=["keep"])
        assert await qi.show_all_tables() == ["keep"]

    async def test_enum_without_values(self, qi) -> None:
        """An ENUM with no labels is rejected before any SQL."""
        with pytest.raises(ValidationError, match="ENUM"):
            await qi.create_table("tickets", {"status": ENUM()})

    async def test_database_version(self, qi) -> None:
        """The SQLite library version is reported."""
        version = await qi.database_version()
        assert version.count(".") >= 1


class TestColumns:
    """Test column changes, which SQLite performs by rebuilding the table."""

    @pytest.fixture
    async def people(self, qi, db):
        await qi.create_table("people", {"id": pk_column(), "name": str, "nickname": str})
        await qi.bulk_insert("people", [{"name": "Alice", "nickname": "Al"}, {"name": "Bob", "nickname": None}])
        return qi

    async def test_add_column(self, people) -> None:
        await people.add_column("people", "email", ColumnInfo(python_type=str, nullable=True))
        assert "email" in await people.describe_table("people")

    async def test_remove_column_keeps_rows(self, people, db) -> None:
        """Dropping a column keeps the remaining data."""
        await people.remove_column("people", "nickname")
        assert set(await people.describe_table("people")) == {"id", "name"}
        rows, _ = await db.query("SELECT name FROM people ORDER BY id", type=QueryType.RAW)
        assert [row["name"] for row in rows] == ["Alice", "Bob"]

    async def test_rename_column_keeps_rows(self, people, db) -> None:
        """Renaming copies the values into the new column."""
        await people.rename_column("people", "nickname", "alias")
        assert "alias" in await people.describe_table("people")
        rows, _ = await db.query("SELECT alias FROM people ORDER BY id", type=QueryType.RAW)
        assert [row["alias"] for row in rows] == ["Al", None]

    async def test_change_column(self, people) -> None:
        """A changed column takes its new definition."""
        await people.change_column("people", "name", ColumnInfo(python_type=str, max_length=20))
        columns = await people.describe_table("people")
        assert columns["name"]["type"] == "VARCHAR(20)"
        assert columns["name"]["allow_null"] is False


class TestIndexes:
    """Test index creation and removal."""

    async def test_add_show_remove(self, qi) -> None:
        await qi.create_table("people", {"id": pk_column(), "email": str})
        await qi.add_index("people", ["email"], unique=True)
        indexes = await qi.show_index("people")
        (index,) = [index for index in indexes if index["name"] == "people_email"]
        assert index["unique"] is True
        assert index["fields"] == [{"attribute": "email"}]

        await qi.remove_index("people", ["email"])
        assert all(index["name"] != "people_email" for index in await qi.show_index("people"))

    async def test_name_indexes(self, qi) -> None:
        """Indexes without a name are named after table and fields."""
        named = qi.name_indexes([{"fields": ["first_name", {"attribute": "lastName"}]}], "People")
        assert named[0]["name"] == "people_first_name_last_name"


class TestDml:
    """Test inserts, upserts, updates and deletes."""

    @pytest.fixture
    async def account(self, Model, db):
        class Account(Model):
            __tablename__ = "accounts"

            id: Mapped[int] = mapped_column(primary_key=True)
            email: Mapped[str] = mapped_column(unique=True)
            name: Mapped[str]
            visits: Mapped[int] = mapped_column(default=0)

        await db.sync()
        return Account

    async def test_insert_assigns_key(self, account, db) -> None:
        instance = account(email="a@example.com", name="A")
        result = await db.query_interface.insert(instance, "accounts", {"email": "a@example.com", "name": "A"})
        assert result is instance
        assert instance.id is not None
        assert instance.is_new_record is False

    async def test_upsert(self, account, db) -> None:
        """True when inserted, False when the unique key matched an existing row."""
        assert await db.upsert(account, {"email": "a@example.com", "name": "First"}) is True
        assert await db.upsert(account, {"email": "a@example.com", "name": "Second"}) is False
        (row,) = await db.find_all(account)
        assert row.name == "Second"

    async def test_conflict_keys(self, account, db) -> None:
        """Only keys whose columns are all present can conflict."""
        qi = db.query_interface
        assert qi.conflict_keys(account, {"email": "a@example.com", "name": "A"}) == [["email"]]
        assert qi.conflict_keys(account, {"id": 1, "email": "a@example.com"}) == [["id"], ["email"]]

    async def test_increment(self, account, db) -> None:
        user = await db.create(account(email="a@example.com", name="A"))
        await db.query_interface.increment(account, "accounts", {"visits": 2}, {"id": user.id})
        reloaded = await db.find_by_pk(account, user.id)
        assert reloaded.visits == 2

    async def test_bulk_update_and_delete(self, account, db) -> None:
        qi = db.query_interface
        await db.bulk_create(account, [{"email": f"{n}@example.com", "name": n} for n in "abc"])
        assert await qi.bulk_update("accounts", {"name": "x"}, {"email__in": ["a@example.com", "b@example.com"]}) == 2
        assert await qi.bulk_delete("accounts", {"name": "x"}, model=account, limit=1) == 1
        assert await db.count(account) == 2

    async def test_raw_select(self, account, db) -> None:
        """raw_select returns one cast value."""
        await db.bulk_create(account, [{"email": f"{n}@example.com", "name": n} for n in "ab"])
        total = await db.query_interface.raw_select(
            "accounts", "total", int, attributes=[("COUNT(*)", "total")]
        )
        assert total == 2

    async def test_raw_select_needs_attribute(self, qi) -> None:
        with pytest.raises(ValidationError):
            await qi.raw_select("accounts", "")

    async def test_triggers_are_noops_on_sqlite(self, qi) -> None:
        """Dialects without trigger support skip the call."""
        assert await qi.create_trigger("accounts", "touch", "after", ["update"], "touch_fn") is None
        assert await qi.drop_function("touch_fn") is None


class TestEnumSync:
    """PostgreSQL enum types are synced before the table is created."""

    async def test_creates_missing_type(self) -> None:
        database = RecordingDatabase(responses=[[]])
        qi = QueryInterface(database)
        await qi.create_table("events", {"name": str, "status": ENUM("a", "b", "c")})

        assert database.statements[0].startswith("SELECT t.typname enum_name")
        assert database.statements[1] == "CREATE TYPE \"enum_events_status\" AS ENUM('a', 'b', 'c');"
        assert database.statements[2].startswith('CREATE TABLE IF NOT EXISTS "events"')
        assert '"status" "enum_events_status"' in database.statements[2]

    async def test_adds_label_before_following_label(self) -> None:
        """A missing label is added before the next declared label that exists."""
        rows = [{"enum_name": "enum_events_status", "enum_value": ["a", "c"]}]
        database = RecordingDatabase(responses=[rows])
        await QueryInterface(database).create_table("events", {"status": ENUM("a", "b", "c")})

        assert len(database.statements) == 3
        assert database.statements[1] == "ALTER TYPE \"enum_events_status\" ADD VALUE 'b' BEFORE 'c';"
        assert database.statements[2].startswith("CREATE TABLE")

    async def test_adds_labels_after_preceding_label(self) -> None:
        """Trailing labels are appended in declared order."""
        rows = [{"enum_name": "enum_events_status", "enum_value": ["a"]}]
        database = RecordingDatabase(responses=[rows])
        await QueryInterface(database).create_table("events", {"status": ENUM("a", "b", "c")})

        assert database.statements[1:3] == [
            "ALTER TYPE \"enum_events_status\" ADD VALUE 'b' AFTER 'a';",
            "ALTER TYPE \"enum_events_status\" ADD VALUE 'c' AFTER 'b';",
        ]

    async def test_prepends_leading_labels(self) -> None:
        rows = [{"enum_name": "enum_events_status", "enum_value": ["c"]}]
        database = RecordingDatabase(responses=[rows])
        await QueryInterface(database).create_table("events", {"status": ENUM("a", "b", "c")})

        assert database.statements[1:3] == [
            "ALTER TYPE \"enum_events_status\" ADD VALUE 'a' BEFORE 'c';",
            "ALTER TYPE \"enum_events_status\" ADD VALUE 'b' BEFORE 'c';",
        ]

    async def test_up_to_date_type(self) -> None:
        """Nothing is altered when every label exists."""
        rows = [{"enum_name": "enum_events_status", "enum_value": ["a", "b"]}]
        database = RecordingDatabase(responses=[rows])
        await QueryInterface(database).create_table("events", {"status": ENUM("a", "b")})
        assert len(database.statements) == 2

    async def test_drop_table_drops_model_enums(self) -> None:
        """Dropping a model's table drops the enum types of its columns."""
        database = RecordingDatabase()
        Model = declarative_base(database.registry)

        class Ticket(Model):
            status: Mapped[str] = mapped_column(ENUM("open", "closed"))

        await QueryInterface(database).drop_table("tickets")
        assert database.statements == [
            'DROP TABLE IF EXISTS "tickets";',
            'DROP TYPE IF EXISTS "enum_tickets_status";',
        ]


class TestTransactionState:
    """Transaction operations update connection state after their SQL succeeds."""

    @pytest.fixture
    def root(self) -> Transaction:
        database = RecordingDatabase()
        database.query_interface = QueryInterface(database)
        transaction = Transaction(database)
        transaction.connection = Connection(raw=None)
        return transaction

    async def test_missing_transaction_fails_synchronously(self, db) -> None:
        """The error is raised by the call itself, before anything is awaited."""
        with pytest.raises(ConfigurationError, match="without a transaction object"):
            db.query_interface.commit_transaction(None)
        with pytest.raises(ConfigurationError):
            db.query_interface.rollback_transaction(None)
        with pytest.raises(ConfigurationError):
            db.query_interface.start_transaction(None)

    async def test_transaction_without_connection(self, db) -> None:
        with pytest.raises(ConfigurationError, match="no connection"):
            db.query_interface.set_autocommit(Transaction(db), False)

    async def test_start_commit(self, root) -> None:
        qi = root.database.query_interface
        await qi.start_transaction(root)
        assert root.connection.state.in_transaction is True
        assert root.connection.state.autocommit is False

        await qi.commit_transaction(root)
        assert root.connection.state.in_transaction is False
        assert root.database.statements == ["START TRANSACTION;", "COMMIT;"]

    async def test_isolation_level(self, root) -> None:
        qi = root.database.query_interface
        await qi.set_isolation_level(root, "SERIALIZABLE")
        assert root.connection.state.isolation_level == "SERIALIZABLE"
        assert root.database.statements == ["SET TRANSACTION ISOLATION LEVEL SERIALIZABLE;"]

    async def test_savepoint_leaves_state(self, root) -> None:
        """Nested transactions use savepoints and never touch connection state."""
        qi = root.database.query_interface
        child = root.transaction()
        child.connection = root.connection

        await qi.start_transaction(child)
        assert root.connection.state.in_transaction is False
        await qi.rollback_transaction(child)
        assert root.database.statements == [
            f'SAVEPOINT "{child.name}";',
            f'ROLLBACK TO SAVEPOINT "{child.name}";',
        ]

    async def test_failed_statement_keeps_state(self, root) -> None:
        root.database.fail_on = "START"
        with pytest.raises(RuntimeError):
            await root.database.query_interface.start_transaction(root)
        assert root.connection.state.in_transaction is False

    async def test_defer_constraints(self, root) -> None:
        await root.database.query_interface.defer_constraints(root)
        assert root.database.statements == ["SET CONSTRAINTS ALL DEFERRED;"]
