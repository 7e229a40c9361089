"""
Unit tests for the backup manager.

Tests backup creation, retention and the provider strategies.
"""

import sqlite3
from unittest.mock import AsyncMock, Mock, patch

import pytest

from dbmigrator.backup.manager import BackupManager
from dbmigrator.backup.strategies import PostgreSQLBackupStrategy
from dbmigrator.core.exceptions import BackupError
from dbmigrator.database.config import ConnectionDescriptor


class TestBackupManager:
    """Test cases for BackupManager."""

    @pytest.fixture
    def backup_dir(self, tmp_path):
        return tmp_path / "Backups"

    @pytest.fixture
    def manager(self, backup_dir):
        return BackupManager(backup_dir, backups_to_keep=2)

    @pytest.mark.asyncio
    async def test_sqlite_backup(self, manager, backup_dir, sqlite_descriptor, seeded_sqlite):
        info = await manager.create_backup(sqlite_descriptor, "Acme", "Staging")

        assert info.location.parent == backup_dir / "Acme"
        assert info.location.name.startswith("app_")
        assert info.location.suffix == ".db"
        assert info.size == info.location.stat().st_size
        assert len(info.checksum) == 64
        assert info.metadata["environment"] == "Staging"

        with sqlite3.connect(info.location) as conn:
            assert conn.execute("SELECT label FROM seed").fetchall() == [("first",)]

    @pytest.mark.asyncio
    async def test_missing_database_fails(self, manager, sqlite_descriptor):
        with pytest.raises(BackupError) as exc_info:
            await manager.create_backup(sqlite_descriptor)

        assert "not found" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_retention_keeps_newest(self, manager, sqlite_descriptor, seeded_sqlite):
        for _ in range(3):
            await manager.create_backup(sqlite_descriptor)

        backups = manager.list_backups("Default")
        assert len(backups) == 2
        assert manager.list_backups() == backups

    @pytest.mark.asyncio
    async def test_zero_retention_keeps_everything(self, backup_dir, sqlite_descriptor, seeded_sqlite):
        manager = BackupManager(backup_dir, backups_to_keep=0)
        for _ in range(3):
            await manager.create_backup(sqlite_descriptor)

        assert len(manager.list_backups()) == 3

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, backup_dir, sqlite_descriptor):
        manager = BackupManager(backup_dir, strategies={})

        with pytest.raises(BackupError) as exc_info:
            await manager.create_backup(sqlite_descriptor)

        assert "Unsupported" in exc_info.value.message

    def test_list_backups_without_directory(self, manager):
        assert manager.list_backups() == []
        assert manager.list_backups("Nobody") == []


class TestPostgreSQLBackupStrategy:
    """Test cases for the pg_dump strategy."""

    @pytest.fixture
    def strategy(self):
        return PostgreSQLBackupStrategy(ConnectionDescriptor(
            connection_string="Host=pg.local;Port=5433;Database=app;Username=svc;Password=secret",
            provider_name="PostgreSQL",
        ))

    @pytest.mark.asyncio
    async def test_runs_pg_dump(self, strategy, tmp_path):
        process = Mock(returncode=0)
        process.communicate = AsyncMock(return_value=(b"", b""))
        destination = tmp_path / "app.sql"

        with patch("dbmigrator.backup.strategies.asyncio.create_subprocess_exec",
                   new=AsyncMock(return_value=process)) as run:
            assert await strategy.create_backup(destination) == destination

        args = run.call_args.args
        assert args[0] == "pg_dump"
        assert f"--file={destination}" in args
        assert "--host=pg.local" in args and "--port=5433" in args and "--username=svc" in args
        assert args[-1] == "app"
        assert run.call_args.kwargs["env"]["PGPASSWORD"] == "secret"

    @pytest.mark.asyncio
    async def test_pg_dump_failure(self, strategy, tmp_path):
        process = Mock(returncode=1)
        process.communicate = AsyncMock(return_value=(b"", b"FATAL: role does not exist"))

        with patch("dbmigrator.backup.strategies.asyncio.create_subprocess_exec",
                   new=AsyncMock(return_value=process)):
            with pytest.raises(BackupError) as exc_info:
                await strategy.create_backup(tmp_path / "app.sql")

        assert "role does not exist" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_pg_dump_missing(self, strategy, tmp_path):
        with patch("dbmigrator.backup.strategies.asyncio.create_subprocess_exec",
                   new=AsyncMock(side_effect=FileNotFoundError())):
            with pytest.raises(BackupError):
                await strategy.create_backup(tmp_path / "app.sql")
