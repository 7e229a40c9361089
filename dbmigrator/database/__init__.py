"""Migration contract, provider plugins, plugin registry and connection resolution."""

from .config import ConnectionDescriptor, ProviderType
from .base import (
    ALL_CAPABILITIES,
    Capability,
    MigrationHandler,
    MigrationIdGenerator,
    MigrationInfo,
    MigrationPlugin,
    MigrationRequest,
    MigrationResult,
    MigrationStatus,
    PluginDescriptor,
    default_migration_name,
    migration_ids,
)
from .connection import ConnectionResolver, build_url, parse_connection_string
from .guard import GuardedHandler
from .registry import PluginLoadFailure, PluginRegistry

__all__ = [
    'ConnectionDescriptor',
    'ProviderType',
    'ALL_CAPABILITIES',
    'Capability',
    'MigrationHandler',
    'MigrationIdGenerator',
    'MigrationInfo',
    'MigrationPlugin',
    'MigrationRequest',
    'MigrationResult',
    'MigrationStatus',
    'PluginDescriptor',
    'default_migration_name',
    'migration_ids',
    'ConnectionResolver',
    'build_url',
    'parse_connection_string',
    'GuardedHandler',
    'PluginLoadFailure',
    'PluginRegistry',
]
