"""Built-in provider plugins."""

from .sql_handler import HISTORY_TABLE, SqlMigrationHandler
from .sqlite_migrator import SQLiteMigrationHandler, SQLitePlugin
from .postgresql_migrator import PostgreSQLMigrationHandler, PostgreSQLPlugin
from .sqlserver_migrator import SqlServerMigrationHandler, SqlServerPlugin

BUILTIN_PLUGINS = (SqlServerPlugin, PostgreSQLPlugin, SQLitePlugin)

__all__ = [
    'HISTORY_TABLE',
    'SqlMigrationHandler',
    'SQLiteMigrationHandler',
    'SQLitePlugin',
    'PostgreSQLMigrationHandler',
    'PostgreSQLPlugin',
    'SqlServerMigrationHandler',
    'SqlServerPlugin',
    'BUILTIN_PLUGINS',
]
