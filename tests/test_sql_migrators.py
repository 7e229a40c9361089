"""
End-to-end tests for the SQL migration handlers against real SQLite databases.
"""

import asyncio
import sqlite3
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from dbmigrator.core.error_handler import ErrorCategory
from dbmigrator.core.exceptions import (
    CancelledOperationError,
    DuplicateMigrationError,
    PermanentOperationError,
    ValidationError,
)
from dbmigrator.database.base import MigrationIdGenerator, MigrationRequest
from dbmigrator.database.config import ProviderType
from dbmigrator.database.guard import GuardedHandler
from dbmigrator.database.migrators import HISTORY_TABLE, SQLiteMigrationHandler, SqlServerMigrationHandler
from dbmigrator.database.scripts import discover_scripts, scan_scripts, split_statements


def tables(path):
    with sqlite3.connect(path) as conn:
        return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}


@pytest.fixture
def fixed_clock():
    return lambda: datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def handler(fixed_clock):
    return SQLiteMigrationHandler(id_generator=MigrationIdGenerator(clock=fixed_clock))


@pytest.fixture
def make_request(sqlite_descriptor, migrations_dir, tmp_path):
    def _make(**kwargs):
        kwargs.setdefault("migrations_directory", migrations_dir)
        return MigrationRequest(connection=sqlite_descriptor, **kwargs)
    return _make


@pytest.fixture
def three_migrations(make_script):
    make_script("20240101000001", "CreateUsers", "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT);")
    make_script("20240101000002", "AddEmail", "ALTER TABLE users ADD COLUMN email TEXT;")
    make_script(
        "20240101000003", "CreateOrders",
        "CREATE TABLE orders (id INTEGER PRIMARY KEY);\nINSERT INTO missing_table VALUES (1);",
    )


class TestCreateMigration:
    """Test cases for creating migration scripts."""

    @pytest.mark.asyncio
    async def test_writes_template_file(self, handler, make_request, migrations_dir):
        result = await handler.create_migration(make_request(migration_name="AddUserTable"))

        assert result.success
        info = result.applied_migrations[0]
        assert info.id == "20240301120000"
        assert info.script == migrations_dir / "20240301120000_AddUserTable.sql"
        content = info.script.read_text()
        assert "-- Migration: AddUserTable" in content
        assert "-- Provider: SQLite" in content
        assert result.additional_info["migration_id"] == info.id

    @pytest.mark.asyncio
    async def test_ids_strictly_increase_within_one_second(self, handler, make_request):
        first = await handler.create_migration(make_request(migration_name="First"))
        second = await handler.create_migration(make_request(migration_name="Second"))

        assert second.applied_migrations[0].id > first.applied_migrations[0].id
        assert second.applied_migrations[0].id == "20240301120001"

    @pytest.mark.asyncio
    async def test_id_is_newer_than_existing_scripts(self, handler, make_request, make_script):
        make_script("20990101000000", "FromTheFuture")

        result = await handler.create_migration(make_request(migration_name="Next"))

        assert result.applied_migrations[0].id == "20990101000001"

    @pytest.mark.asyncio
    async def test_output_directory_is_honoured(self, handler, make_request, tmp_path):
        output = tmp_path / "elsewhere"

        result = await handler.create_migration(make_request(migration_name="Moved", output_directory=output))

        assert result.applied_migrations[0].script.parent == output

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "1Bad", "has space", "semi;colon"])
    async def test_invalid_name_is_rejected(self, handler, make_request, name):
        with pytest.raises(ValidationError):
            await handler.create_migration(make_request(migration_name=name))

    @pytest.mark.asyncio
    async def test_existing_file_is_not_overwritten(self, make_request, make_script):
        existing = make_script("20240101000000", "AddUsers", "-- keep me")
        ids = Mock(next_id=Mock(return_value="20240101000000"))
        handler = SQLiteMigrationHandler(id_generator=ids)

        with pytest.raises(DuplicateMigrationError):
            await handler.create_migration(make_request(migration_name="AddUsers"))
        assert existing.read_text() == "-- keep me"


class TestMigrate:
    """Test cases for applying migrations."""

    @pytest.mark.asyncio
    async def test_status_of_missing_database_does_not_create_it(self, handler, make_request, make_script, sqlite_path):
        make_script("20240101000001", "CreateUsers", "CREATE TABLE users (id INTEGER);")

        status = await handler.get_status(make_request())

        assert status.pending_migrations_count == 1
        assert status.has_pending_migrations
        assert status.database_name == "app.db"
        assert not sqlite_path.exists()

    @pytest.mark.asyncio
    async def test_applies_all_in_order(self, handler, make_request, make_script, sqlite_path):
        make_script("20240101000002", "AddEmail", "ALTER TABLE users ADD COLUMN email TEXT;")
        make_script("20240101000001", "CreateUsers", "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT);")

        result = await handler.migrate(make_request())

        assert result.success
        assert [m.name for m in result.applied_migrations] == ["CreateUsers", "AddEmail"]
        assert result.additional_info["pending_before"] == "2"
        assert {"users", HISTORY_TABLE} <= tables(sqlite_path)

        status = await handler.get_status(make_request())
        assert status.pending_migrations_count == 0
        assert not status.has_pending_migrations
        assert status.last_migration_name == "AddEmail"
        assert status.last_migration_date is not None
        assert status.database_version

    @pytest.mark.asyncio
    async def test_second_run_applies_nothing(self, handler, make_request, make_script):
        make_script("20240101000001", "CreateUsers", "CREATE TABLE users (id INTEGER);")
        await handler.migrate(make_request())

        result = await handler.migrate(make_request())

        assert result.success
        assert result.applied_migrations == []

    @pytest.mark.asyncio
    async def test_partial_failure_reports_committed_migrations(self, handler, make_request, three_migrations, sqlite_path):
        result = await handler.migrate(make_request())

        assert result.success is False
        assert result.error_category == ErrorCategory.PARTIAL_MIGRATION
        assert [m.name for m in result.applied_migrations] == ["CreateUsers", "AddEmail"]
        assert "orders" not in tables(sqlite_path)

        status = await handler.get_status(make_request())
        assert status.pending_migrations_count == 1
        assert status.pending_migrations[0].name == "CreateOrders"

    @pytest.mark.asyncio
    async def test_first_migration_failure_raises_permanent(self, handler, make_request, make_script):
        make_script("20240101000001", "Broken", "CREATE TABLE;")

        with pytest.raises(PermanentOperationError):
            await handler.migrate(make_request())

    @pytest.mark.asyncio
    async def test_cancellation_before_first_migration_raises(self, handler, make_request, three_migrations, sqlite_path):
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(CancelledOperationError):
            await handler.migrate(make_request(), cancel)
        assert "users" not in tables(sqlite_path)

    @pytest.mark.asyncio
    async def test_cancellation_between_migrations_keeps_committed(self, handler, make_request, three_migrations, sqlite_path):
        cancel = asyncio.Event()
        apply_script = handler._apply_script

        def apply_then_cancel(*args):
            info = apply_script(*args)
            cancel.set()
            return info

        with patch.object(handler, "_apply_script", side_effect=apply_then_cancel):
            result = await handler.migrate(make_request(), cancel)

        assert result.error_category == ErrorCategory.CANCELLED
        assert [m.name for m in result.applied_migrations] == ["CreateUsers"]
        assert "users" in tables(sqlite_path)

    @pytest.mark.asyncio
    async def test_guarded_cancellation_is_a_result(self, make_request, three_migrations):
        cancel = asyncio.Event()
        cancel.set()
        guarded = GuardedHandler(SQLiteMigrationHandler(), "sqlite", ProviderType.SQLITE)

        result = await guarded.migrate(make_request(), cancel)

        assert result.error_category == ErrorCategory.CANCELLED
        assert result.applied_migrations == []
        assert result.additional_info["error_type"] == "CancelledOperationError"

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_refused(self, handler, make_request, make_script):
        make_script("20240101000001", "One")
        make_script("20240101000001", "Other")

        with pytest.raises(DuplicateMigrationError):
            await handler.migrate(make_request())

    @pytest.mark.asyncio
    async def test_without_transaction(self, handler, make_request, make_script, sqlite_descriptor, migrations_dir):
        make_script("20240101000001", "CreateUsers", "CREATE TABLE users (id INTEGER);")
        descriptor = sqlite_descriptor.model_copy(update={"use_transaction": False})

        result = await handler.migrate(MigrationRequest(connection=descriptor, migrations_directory=migrations_dir))

        assert result.success
        assert len(result.applied_migrations) == 1


class TestGenerateScripts:
    """Test cases for script generation."""

    @pytest.mark.asyncio
    async def test_writes_pending_without_touching_database(self, handler, make_request, make_script, tmp_path, sqlite_path):
        make_script("20240101000001", "CreateUsers", "CREATE TABLE users (id INTEGER);")
        make_script("20240101000002", "AddEmail", "ALTER TABLE users ADD COLUMN email TEXT;")
        output = tmp_path / "Scripts"

        result = await handler.generate_scripts(make_request(output_directory=output))

        assert result.success
        assert result.scripts_path.parent == output
        content = result.scripts_path.read_text()
        assert "CREATE TABLE users" in content
        assert "VALUES ('20240101000002', 'AddEmail', CURRENT_TIMESTAMP)" in content
        assert HISTORY_TABLE in content
        assert result.additional_info["migration_count"] == "2"
        assert not sqlite_path.exists()

    @pytest.mark.asyncio
    async def test_skips_applied_migrations(self, handler, make_request, make_script, tmp_path):
        make_script("20240101000001", "CreateUsers", "CREATE TABLE users (id INTEGER);")
        await handler.migrate(make_request())
        make_script("20240101000002", "AddEmail", "ALTER TABLE users ADD COLUMN email TEXT;")

        result = await handler.generate_scripts(make_request(output_directory=tmp_path / "Scripts"))

        assert result.additional_info["migrations"] == "20240101000002_AddEmail"

    @pytest.mark.asyncio
    async def test_refuses_migrations_directory_as_output(self, handler, make_request, migrations_dir):
        with pytest.raises(ValidationError):
            await handler.generate_scripts(make_request(output_directory=migrations_dir))


class TestConnectivity:

    @pytest.mark.asyncio
    async def test_sqlite_connection(self, handler, make_request):
        assert await handler.test_connection(make_request()) is True

    def test_handler_providers(self):
        assert SQLiteMigrationHandler().provider_type is ProviderType.SQLITE
        assert SqlServerMigrationHandler().provider_type is ProviderType.SQLSERVER


class TestScripts:
    """Test cases for script discovery and statement splitting."""

    def test_scan_ignores_foreign_files(self, migrations_dir, make_script):
        make_script("20240101000001", "Good")
        (migrations_dir / "notes.txt").write_text("x")
        (migrations_dir / "2024_Bad.sql").write_text("x")

        assert [s.name for s in scan_scripts(migrations_dir)] == ["Good"]
        assert discover_scripts(migrations_dir / "missing") == []

    def test_split_respects_quotes_and_comments(self):
        script = (
            "-- leading comment; not a statement\n"
            "INSERT INTO t VALUES ('a;b');\n"
            "/* block; comment */\n"
            "UPDATE t SET v = 'it''s';\n"
            "-- trailing comment only\n"
        )
        statements = split_statements(script, ProviderType.SQLITE)
        assert len(statements) == 2
        assert statements[0].endswith("VALUES ('a;b')")
        assert statements[1].endswith("SET v = 'it''s'")

    def test_split_sql_server_batches(self):
        script = "CREATE TABLE a (id INT);\nGO\nCREATE PROCEDURE p AS SELECT 1; SELECT 2;\ngo\n-- done\n"
        batches = split_statements(script, ProviderType.SQLSERVER)
        assert batches == ["CREATE TABLE a (id INT);", "CREATE PROCEDURE p AS SELECT 1; SELECT 2;"]
