"""SQL Server migration plugin using pyodbc."""

from typing import Dict

from ..base import ALL_CAPABILITIES, MigrationHandler, MigrationPlugin
from ..config import ConnectionDescriptor, ProviderType
from .sql_handler import SqlMigrationHandler


class SqlServerMigrationHandler(SqlMigrationHandler):
    """SQL Server handler. Scripts are split into batches at ``GO`` lines."""

    provider = ProviderType.SQLSERVER
    driver_package = "pyodbc"
    script_begin = "BEGIN TRANSACTION;"
    script_commit = "COMMIT TRANSACTION;"
    batch_separator = "GO"

    def connect_args(self, descriptor: ConnectionDescriptor) -> Dict[str, object]:
        return {"timeout": descriptor.timeout_seconds}


class SqlServerPlugin(MigrationPlugin):
    name = "sqlserver"
    provider_type = ProviderType.SQLSERVER
    version = "1.0.0"
    description = "SQL Server migrations from .sql files (pyodbc)"
    capabilities = ALL_CAPABILITIES

    def create_handler(self) -> MigrationHandler:
        return SqlServerMigrationHandler()
