"""
Backup strategies, one per provider family.

Each strategy writes a full backup of the target database to a given
file path and raises ``BackupError`` when it cannot.
"""

import asyncio
import os
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Type

from pydantic import BaseModel, Field
from sqlalchemy import create_engine
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from dbmigrator.core.exceptions import BackupError, ConfigurationError
from dbmigrator.database.config import ConnectionDescriptor, ProviderType
from dbmigrator.database.connection import build_url
from dbmigrator.utils.helpers import utc_now


class BackupInfo(BaseModel):
    """A backup artifact."""
    id: str
    provider: ProviderType
    tenant_id: str
    database_name: str
    location: Path
    size: Optional[int] = None
    checksum: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, str] = Field(default_factory=dict)


class BackupStrategy(ABC):
    """Abstract base class for backup strategies."""

    extension = "bak"
    # False when the file is written on the database server, not locally
    writes_locally = True

    def __init__(self, descriptor: ConnectionDescriptor):
        self.descriptor = descriptor
        try:
            self.url: URL = build_url(descriptor)
        except ConfigurationError as e:
            raise BackupError(f"Cannot back up: {e.message}") from e

    @property
    def database_name(self) -> str:
        return self.url.database or "database"

    @abstractmethod
    async def create_backup(self, destination: Path) -> Path:
        """Write a backup to ``destination`` and return its path."""
        pass


class SQLiteBackupStrategy(BackupStrategy):
    """Copies the database file with SQLite's online backup API."""

    extension = "db"

    @property
    def database_name(self) -> str:
        return Path(self.url.database or "database").stem

    async def create_backup(self, destination: Path) -> Path:
        source = self.url.database
        if not source or source == ":memory:":
            raise BackupError("In-memory SQLite databases cannot be backed up")
        if not Path(source).exists():
            raise BackupError(f"SQLite database file not found: {source}")
        await asyncio.to_thread(self._copy, Path(source), destination)
        return destination

    def _copy(self, source: Path, destination: Path) -> None:
        try:
            src = sqlite3.connect(f"{source.resolve().as_uri()}?mode=ro", uri=True,
                                  timeout=self.descriptor.timeout_seconds)
            try:
                dst = sqlite3.connect(destination)
                try:
                    src.backup(dst)
                finally:
                    dst.close()
            finally:
                src.close()
        except sqlite3.Error as e:
            raise BackupError(f"SQLite backup failed: {e}") from e


class PostgreSQLBackupStrategy(BackupStrategy):
    """Dumps the database with pg_dump."""

    extension = "sql"

    async def create_backup(self, destination: Path) -> Path:
        env = os.environ.copy()
        if self.url.password:
            env["PGPASSWORD"] = self.url.password

        cmd = ["pg_dump", "--no-password", "--format=plain", f"--file={destination}"]
        if self.url.host:
            cmd.append(f"--host={self.url.host}")
        if self.url.port:
            cmd.append(f"--port={self.url.port}")
        if self.url.username:
            cmd.append(f"--username={self.url.username}")
        cmd.append(self.database_name)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=env
            )
        except FileNotFoundError as e:
            raise BackupError("pg_dump was not found on PATH") from e

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            raise

        if process.returncode != 0:
            raise BackupError(f"pg_dump failed: {stderr.decode(errors='replace').strip()}")
        return destination


class SqlServerBackupStrategy(BackupStrategy):
    """Runs BACKUP DATABASE; the path is on the database server's file system."""

    extension = "bak"
    writes_locally = False

    async def create_backup(self, destination: Path) -> Path:
        await asyncio.to_thread(self._backup, destination)
        return destination

    def _backup(self, destination: Path) -> None:
        database = self.database_name.replace("]", "]]")
        disk = str(destination).replace("'", "''")
        try:
            engine = create_engine(
                self.url,
                poolclass=NullPool,
                connect_args={"timeout": self.descriptor.timeout_seconds},
            )
        except ImportError as e:
            raise BackupError(f"SQL Server driver is not available: {e}") from e
        try:
            with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
                conn.exec_driver_sql(f"BACKUP DATABASE [{database}] TO DISK = N'{disk}' WITH INIT, COPY_ONLY")
        except SQLAlchemyError as e:
            raise BackupError(f"SQL Server backup failed: {e}") from e
        finally:
            engine.dispose()


DEFAULT_STRATEGIES: Dict[ProviderType, Type[BackupStrategy]] = {
    ProviderType.SQLITE: SQLiteBackupStrategy,
    ProviderType.POSTGRESQL: PostgreSQLBackupStrategy,
    ProviderType.SQLSERVER: SqlServerBackupStrategy,
}
