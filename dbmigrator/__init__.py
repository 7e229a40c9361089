"""
Database Migrator

A plugin-based tool for creating, inspecting and applying SQL schema
migrations across several database providers and tenants.
"""

__version__ = "0.1.0"

from dbmigrator.database.base import MigrationInfo, MigrationRequest, MigrationResult, MigrationStatus
from dbmigrator.database.config import ConnectionDescriptor, ProviderType
from dbmigrator.orchestrator import MigrationOrchestrator

__all__ = [
    "ConnectionDescriptor",
    "MigrationInfo",
    "MigrationOrchestrator",
    "MigrationRequest",
    "MigrationResult",
    "MigrationStatus",
    "ProviderType",
]
