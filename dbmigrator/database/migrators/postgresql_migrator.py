"""PostgreSQL migration plugin using psycopg2."""

from typing import Dict

from ..base import ALL_CAPABILITIES, MigrationHandler, MigrationPlugin
from ..config import ConnectionDescriptor, ProviderType
from .sql_handler import SqlMigrationHandler


class PostgreSQLMigrationHandler(SqlMigrationHandler):
    provider = ProviderType.POSTGRESQL
    driver_package = "psycopg2-binary"

    def connect_args(self, descriptor: ConnectionDescriptor) -> Dict[str, object]:
        return {
            "connect_timeout": descriptor.timeout_seconds,
            "application_name": "dbmigrator",
        }


class PostgreSQLPlugin(MigrationPlugin):
    name = "postgresql"
    provider_type = ProviderType.POSTGRESQL
    version = "1.0.0"
    description = "PostgreSQL migrations from .sql files (psycopg2)"
    capabilities = ALL_CAPABILITIES

    def create_handler(self) -> MigrationHandler:
        return PostgreSQLMigrationHandler()
