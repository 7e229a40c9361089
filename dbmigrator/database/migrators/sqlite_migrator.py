"""SQLite migration plugin."""

from pathlib import Path
from typing import Dict

from sqlalchemy import event
from sqlalchemy.engine import URL, Engine

from ..base import ALL_CAPABILITIES, MigrationHandler, MigrationPlugin
from ..config import ConnectionDescriptor, ProviderType
from .sql_handler import SqlMigrationHandler


class SQLiteMigrationHandler(SqlMigrationHandler):
    """SQLite handler.

    pysqlite's own transaction handling does not wrap DDL, so the engine
    is switched to explicit BEGIN/COMMIT to make each migration atomic.
    """

    provider = ProviderType.SQLITE
    script_begin = "BEGIN TRANSACTION;"

    def connect_args(self, descriptor: ConnectionDescriptor) -> Dict[str, object]:
        return {"timeout": descriptor.timeout_seconds, "check_same_thread": False}

    def configure_engine(self, engine: Engine) -> None:
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

    def database_missing(self, url: URL) -> bool:
        database = url.database
        if not database or database == ":memory:" or database.startswith("file:"):
            return False
        return not Path(database).exists()


class SQLitePlugin(MigrationPlugin):
    name = "sqlite"
    provider_type = ProviderType.SQLITE
    version = "1.0.0"
    description = "SQLite migrations from .sql files"
    capabilities = ALL_CAPABILITIES

    def create_handler(self) -> MigrationHandler:
        return SQLiteMigrationHandler()
