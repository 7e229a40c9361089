"""
Backup manager for pre-migration backups.

This module provides the BackupManager class that picks a strategy for
the target provider, places the backup file, verifies it and prunes old
backups beyond the retention count.
"""

import logging
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Type, Union

from dbmigrator.core.exceptions import BackupError
from dbmigrator.database.config import ConnectionDescriptor, ProviderType
from dbmigrator.utils.helpers import calculate_file_checksum, safe_filename, utc_now

from .strategies import DEFAULT_STRATEGIES, BackupInfo, BackupStrategy

logger = logging.getLogger(__name__)


class BackupManager:
    """Creates database backups and enforces retention."""

    def __init__(
        self,
        backup_directory: Union[str, Path],
        backups_to_keep: int = 5,
        strategies: Optional[Dict[ProviderType, Type[BackupStrategy]]] = None,
    ):
        self.backup_directory = Path(backup_directory)
        self.backups_to_keep = backups_to_keep
        self._strategies = dict(strategies or DEFAULT_STRATEGIES)

    def _create_backup_strategy(self, descriptor: ConnectionDescriptor) -> BackupStrategy:
        strategy_class = self._strategies.get(descriptor.provider_name)
        if strategy_class is None:
            raise BackupError(f"Unsupported database provider for backup: {descriptor.provider_name.value}")
        return strategy_class(descriptor)

    def _tenant_directory(self, tenant_id: str) -> Path:
        return self.backup_directory / safe_filename(tenant_id)

    async def create_backup(
        self,
        descriptor: ConnectionDescriptor,
        tenant_id: str = "Default",
        environment: Optional[str] = None,
    ) -> BackupInfo:
        """Back up the database behind ``descriptor``.

        Raises:
            BackupError: the backup could not be written or verified
        """
        backup_id = str(uuid.uuid4())
        try:
            strategy = self._create_backup_strategy(descriptor)
            database = safe_filename(strategy.database_name)
            directory = self._tenant_directory(tenant_id)
            directory.mkdir(parents=True, exist_ok=True)

            timestamp = utc_now().strftime("%Y%m%d_%H%M%S")
            destination = directory / f"{database}_{timestamp}.{strategy.extension}"
            suffix = 1
            while destination.exists():
                destination = directory / f"{database}_{timestamp}_{suffix}.{strategy.extension}"
                suffix += 1

            logger.info(f"Backing up {descriptor.provider_name.value} database '{database}' to {destination}")
            location = await strategy.create_backup(destination)

            size = checksum = None
            if strategy.writes_locally:
                if not location.exists() or location.stat().st_size == 0:
                    raise BackupError(f"Backup file {location} is missing or empty")
                size = location.stat().st_size
                checksum = calculate_file_checksum(location)

            info = BackupInfo(
                id=backup_id,
                provider=descriptor.provider_name,
                tenant_id=tenant_id,
                database_name=database,
                location=location,
                size=size,
                checksum=checksum,
                metadata={"environment": environment or ""},
            )
        except BackupError as e:
            logger.error(f"Backup failed: {e.message}")
            raise
        except Exception as e:
            logger.error(f"Backup failed: {e}")
            raise BackupError(f"Failed to create database backup: {e}") from e

        if strategy.writes_locally:
            self.apply_retention(tenant_id, database, strategy.extension)
        logger.info(f"Backup created: {info.location}")
        return info

    def list_backups(self, tenant_id: Optional[str] = None) -> List[Path]:
        """Backup files, newest first."""
        if tenant_id is not None:
            directories = [self._tenant_directory(tenant_id)]
        elif self.backup_directory.exists():
            directories = [d for d in self.backup_directory.iterdir() if d.is_dir()]
        else:
            directories = []
        files = [f for d in directories if d.exists() for f in d.iterdir() if f.is_file()]
        return sorted(files, key=lambda f: (f.stat().st_mtime, f.name), reverse=True)

    def apply_retention(self, tenant_id: str, database_name: str, extension: str) -> List[Path]:
        """Delete all but the newest ``backups_to_keep`` backups of one database."""
        if self.backups_to_keep <= 0:
            return []
        directory = self._tenant_directory(tenant_id)
        backups = sorted(
            directory.glob(f"{database_name}_*.{extension}"),
            key=lambda f: (f.stat().st_mtime, f.name),
            reverse=True,
        )
        removed = []
        for old in backups[self.backups_to_keep:]:
            try:
                old.unlink()
                removed.append(old)
            except OSError as e:
                logger.warning(f"Could not delete old backup {old}: {e}")
        if removed:
            logger.info(f"Removed {len(removed)} old backup(s) of '{database_name}'")
        return removed
