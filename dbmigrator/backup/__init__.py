"""
Pre-migration backups.

This module provides the backup manager and the per-provider strategies
it chooses from.
"""

from dbmigrator.backup.manager import BackupManager
from dbmigrator.backup.strategies import (
    BackupInfo,
    BackupStrategy,
    PostgreSQLBackupStrategy,
    SQLiteBackupStrategy,
    SqlServerBackupStrategy,
)

__all__ = [
    "BackupManager",
    "BackupInfo",
    "BackupStrategy",
    "PostgreSQLBackupStrategy",
    "SQLiteBackupStrategy",
    "SqlServerBackupStrategy",
]
