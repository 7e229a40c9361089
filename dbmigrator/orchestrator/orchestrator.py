"""
Migration orchestrator.

This module provides the MigrationOrchestrator class, the single entry
point used by the CLI. It resolves a connection, picks the plugin for
the provider, runs the backup and retry policy around the plugin call,
and keeps the session's cached migration summary up to date.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Set, Tuple, Union

from dbmigrator.backup.manager import BackupManager
from dbmigrator.core.error_handler import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    RetryHandler,
    RetryPolicy,
)
from dbmigrator.core.exceptions import MigratorError, UnknownProviderError
from dbmigrator.database.base import (
    Capability,
    MigrationIdGenerator,
    MigrationInfo,
    MigrationRequest,
    MigrationResult,
    MigrationStatus,
    PluginDescriptor,
    default_migration_name,
    migration_ids,
)
from dbmigrator.database.config import ConnectionDescriptor, ProviderType
from dbmigrator.database.connection import ConnectionResolver
from dbmigrator.database.registry import PluginRegistry
from dbmigrator.database.scripts import render_placeholder, scan_scripts, script_filename
from dbmigrator.models.session import Session, SessionState
from dbmigrator.utils.helpers import utc_now

logger = logging.getLogger(__name__)

TargetKey = Tuple[str, ProviderType]


class OrchestrationPhase(str, Enum):
    """Phases of a single orchestrated operation."""
    IDLE = "idle"
    RESOLVING_CONNECTION = "resolving_connection"
    SELECTING_PLUGIN = "selecting_plugin"
    BACKING_UP = "backing_up"
    INVOKING = "invoking"
    UPDATING_STATE = "updating_state"
    FAILED = "failed"


class _StepFailure(Exception):
    """Stops an operation before or around the plugin call."""

    def __init__(self, message: str, category: ErrorCategory):
        super().__init__(message)
        self.message = message
        self.category = category


def _is_retryable(result: MigrationResult) -> bool:
    return (
        not result.success
        and result.error_category == ErrorCategory.TRANSIENT
        and not result.applied_migrations
    )


class MigrationOrchestrator:
    """
    Entry point for migration operations.

    Operations against the same (tenant, provider) pair are serialized by
    a per-pair lock; different pairs run independently. Every failure is
    returned as a result with ``error_message`` and ``error_category``.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        resolver: ConnectionResolver,
        session: Optional[Session] = None,
        backup_manager: Optional[BackupManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        migrations_directory: Optional[Union[str, Path]] = None,
        scripts_directory: Optional[Union[str, Path]] = None,
        migrations_enabled: Optional[Callable[[str], bool]] = None,
        error_handler: Optional[ErrorHandler] = None,
        id_generator: Optional[MigrationIdGenerator] = None,
        verbose: bool = False,
    ):
        """
        Initialize the migration orchestrator.

        Args:
            registry: Loaded plugin registry
            resolver: Connection resolver
            session: Session state owner (a fresh one when omitted)
            backup_manager: Backup manager used before migrations
            retry_policy: Retry policy for transient migrate failures
            migrations_directory: Where migration scripts live
            scripts_directory: Default output for generated scripts
            migrations_enabled: Tenant predicate; False refuses migrate
            error_handler: Error classifier used for logging
            id_generator: Id source for placeholder scripts
            verbose: Passed through to plugins
        """
        self.registry = registry
        self.resolver = resolver
        self.session = session or Session(SessionState(current_provider=resolver.default_provider))
        self.backup_manager = backup_manager
        self.retry_policy = retry_policy or RetryPolicy()
        self.migrations_directory = Path(migrations_directory or Path.cwd() / "Migrations")
        self.scripts_directory = Path(scripts_directory or Path.cwd() / "Scripts")
        self._migrations_enabled = migrations_enabled or (lambda tenant: True)
        self.error_handler = error_handler or ErrorHandler(logger)
        self.retry_handler = RetryHandler(self.error_handler)
        self._ids = id_generator or migration_ids
        self.verbose = verbose

        self._locks: Dict[TargetKey, asyncio.Lock] = {}
        self._phases: Dict[TargetKey, OrchestrationPhase] = {}
        self._created_ids: Set[str] = set()

    @classmethod
    def from_settings(cls, settings, session: Optional[Session] = None,
                      registry: Optional[PluginRegistry] = None, verbose: bool = False) -> "MigrationOrchestrator":
        """Wire an orchestrator from ``MigratorSettings``.

        Raises:
            PluginConfigurationError: the plugin set is contradictory
        """
        if registry is None:
            registry = PluginRegistry(settings.plugin_directory, load_builtin=settings.plugins.load_builtin).load()
        if session is None:
            session = Session(
                SessionState(
                    current_environment=settings.environment,
                    current_provider=settings.database_provider,
                    auto_backup_enabled=settings.backup.backup_before_migration,
                ),
                available_tenants=settings.available_tenants,
            )
        return cls(
            registry=registry,
            resolver=ConnectionResolver.from_settings(settings),
            session=session,
            backup_manager=BackupManager(settings.backups_directory, settings.backup.backups_to_keep),
            retry_policy=settings.retry,
            migrations_directory=settings.migrations_directory,
            scripts_directory=settings.scripts_directory,
            migrations_enabled=settings.migrations_enabled_for,
            verbose=verbose,
        )

    # -- bookkeeping -----------------------------------------------------

    def _target(self, tenant: Optional[str], provider: Optional[Union[str, ProviderType]]) -> TargetKey:
        tenant = tenant or self.session.current_tenant
        provider_type = ProviderType.normalize(provider) if provider is not None else self.session.current_provider
        return tenant, provider_type

    @staticmethod
    def _key(target: TargetKey) -> TargetKey:
        return target[0].lower(), target[1]

    def _lock_for(self, target: TargetKey) -> asyncio.Lock:
        return self._locks.setdefault(self._key(target), asyncio.Lock())

    def _enter(self, target: TargetKey, phase: OrchestrationPhase) -> None:
        self._phases[self._key(target)] = phase
        logger.debug(f"[{target[0]}/{target[1].value}] {phase.value}")

    def phase(self, tenant: Optional[str] = None, provider: Optional[Union[str, ProviderType]] = None) -> OrchestrationPhase:
        """Current phase of the operation running against a target."""
        return self._phases.get(self._key(self._target(tenant, provider)), OrchestrationPhase.IDLE)

    def _failed(self, target: TargetKey) -> Dict[str, str]:
        failed_phase = self._phases.get(self._key(target), OrchestrationPhase.IDLE)
        self._enter(target, OrchestrationPhase.FAILED)
        return {"failed_phase": failed_phase.value}

    def _request(self, target: TargetKey, descriptor: ConnectionDescriptor, **kwargs) -> MigrationRequest:
        return MigrationRequest(
            connection=descriptor,
            migrations_directory=self.migrations_directory,
            tenant_id=target[0],
            environment=self.session.current_environment,
            verbose=self.verbose,
            **kwargs
        )

    def _prepare(self, target: TargetKey, capability: Capability) -> Tuple[ConnectionDescriptor, PluginDescriptor]:
        tenant, provider = target
        self._enter(target, OrchestrationPhase.RESOLVING_CONNECTION)
        try:
            descriptor = self.resolver.resolve(provider, tenant)
        except MigratorError as e:
            category = self.error_handler.categorize_error(e).category
            raise _StepFailure(e.message, category) from e

        self._enter(target, OrchestrationPhase.SELECTING_PLUGIN)
        try:
            plugin = self.registry.get_plugin(provider)
        except MigratorError as e:
            raise _StepFailure(e.message, ErrorCategory.PROVIDER_NOT_FOUND) from e
        if not plugin.supports(capability):
            raise _StepFailure(
                f"Plugin '{plugin.name}' for {provider.value} does not support {capability.value}",
                ErrorCategory.PERMANENT,
            )
        logger.debug(f"Using plugin '{plugin.name}' v{plugin.version} with {descriptor}")
        return descriptor, plugin

    async def _with_timeout(self, coro, descriptor: ConnectionDescriptor, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=descriptor.timeout_seconds)
        except asyncio.TimeoutError:
            raise _StepFailure(
                f"{what} timed out after {descriptor.timeout_seconds} seconds", ErrorCategory.TRANSIENT
            ) from None

    # -- operations ------------------------------------------------------

    async def check_status(
        self,
        tenant: Optional[str] = None,
        provider: Optional[Union[str, ProviderType]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MigrationStatus:
        """Fetch migration status and mirror it into the session."""
        try:
            target = self._target(tenant, provider)
        except UnknownProviderError as e:
            return MigrationStatus.failed(e.message, ErrorCategory.PROVIDER_NOT_FOUND)

        async with self._lock_for(target):
            try:
                descriptor, plugin = self._prepare(target, Capability.STATUS)
                self._enter(target, OrchestrationPhase.INVOKING)
                status = await self._status(target, descriptor, plugin, cancel_event)
                if status.error_message is None:
                    self._enter(target, OrchestrationPhase.UPDATING_STATE)
                    self.session.record_status(status, *target)
                else:
                    self._failed(target)
                return status
            except _StepFailure as f:
                self._failed(target)
                return MigrationStatus.failed(f.message, f.category, provider_name=target[1])
            finally:
                self._enter(target, OrchestrationPhase.IDLE)

    async def _status(self, target, descriptor, plugin, cancel_event) -> MigrationStatus:
        request = self._request(target, descriptor)
        return await self._with_timeout(
            plugin.handler.get_status(request, cancel_event), descriptor, "Status check"
        )

    async def create_migration(
        self,
        name: Optional[str] = None,
        output_dir: Optional[Union[str, Path]] = None,
        tenant: Optional[str] = None,
        provider: Optional[Union[str, ProviderType]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MigrationResult:
        """Create a migration script, named ``Migration_{UTC timestamp}`` by default."""
        try:
            target = self._target(tenant, provider)
        except UnknownProviderError as e:
            return MigrationResult.failed(e.message, ErrorCategory.PROVIDER_NOT_FOUND)

        name = name or default_migration_name()
        output_directory = Path(output_dir) if output_dir else self.migrations_directory

        async with self._lock_for(target):
            try:
                descriptor, plugin = self._prepare(target, Capability.CREATE_MIGRATION)
                self._enter(target, OrchestrationPhase.INVOKING)
                request = self._request(target, descriptor, migration_name=name, output_directory=output_directory)
                result = await self._with_timeout(
                    plugin.handler.create_migration(request, cancel_event), descriptor, "Create migration"
                )
                if not result.success:
                    return result.model_copy(update={"additional_info": {**result.additional_info, **self._failed(target)}})

                self._enter(target, OrchestrationPhase.UPDATING_STATE)
                return self._settle_created(result, name, output_directory)
            except _StepFailure as f:
                return MigrationResult.failed(f.message, f.category, additional_info=self._failed(target))
            finally:
                self._enter(target, OrchestrationPhase.IDLE)

    def _settle_created(self, result: MigrationResult, name: str, output_directory: Path) -> MigrationResult:
        """Check the new id against this session and make sure its script exists."""
        info = result.applied_migrations[0] if result.applied_migrations else None
        if info is None:
            existing = [s.id for s in scan_scripts(output_directory)] + list(self._created_ids)
            info = MigrationInfo(id=self._ids.next_id(existing), name=name)

        comparable = [i for i in self._created_ids if MigrationIdGenerator.is_migration_id(i)]
        if info.id in self._created_ids or (
            comparable and MigrationIdGenerator.is_migration_id(info.id) and info.id <= max(comparable)
        ):
            raise _StepFailure(
                f"Plugin returned migration id {info.id}, which is not newer than a migration "
                "already created in this session",
                ErrorCategory.PERMANENT,
            )

        expected = info.script or output_directory / script_filename(info.id, info.name)
        clashes = [s for s in scan_scripts(expected.parent) if s.id == info.id and s.path.resolve() != Path(expected).resolve()]
        if clashes:
            raise _StepFailure(
                f"Migration id {info.id} collides with existing script {clashes[0].path.name}",
                ErrorCategory.PERMANENT,
            )

        additional = dict(result.additional_info)
        if not Path(expected).exists():
            Path(expected).parent.mkdir(parents=True, exist_ok=True)
            Path(expected).write_text(render_placeholder(info.name, utc_now()), encoding="utf-8")
            logger.warning(f"Plugin did not write {Path(expected).name}; created an empty placeholder script")
            additional["placeholder_script"] = "true"

        self._created_ids.add(info.id)
        info = info.model_copy(update={"script": Path(expected)})
        applied = [info] + list(result.applied_migrations[1:])
        additional.setdefault("migration_id", info.id)
        additional["script"] = str(expected)
        return result.model_copy(update={"applied_migrations": applied, "additional_info": additional})

    async def run_migrations(
        self,
        create_backup: bool = True,
        tenant: Optional[str] = None,
        provider: Optional[Union[str, ProviderType]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MigrationResult:
        """
        Apply pending migrations.

        A backup runs first when ``create_backup`` is set and the session
        has auto-backup enabled; if it fails, nothing is migrated. After
        any migration committed, the session status is refreshed.
        """
        try:
            target = self._target(tenant, provider)
        except UnknownProviderError as e:
            return MigrationResult.failed(e.message, ErrorCategory.PROVIDER_NOT_FOUND)

        async with self._lock_for(target):
            backup_path = None
            try:
                descriptor, plugin = self._prepare(target, Capability.MIGRATE)
                if not self._migrations_enabled(target[0]):
                    raise _StepFailure(f"Migrations are disabled for tenant '{target[0]}'", ErrorCategory.PERMANENT)

                if create_backup and self.session.auto_backup_enabled:
                    self._enter(target, OrchestrationPhase.BACKING_UP)
                    backup_path = await self._backup(target, descriptor)

                self._enter(target, OrchestrationPhase.INVOKING)
                request = self._request(target, descriptor, create_backup=backup_path is not None)
                result = await self.retry_handler.retry_with_backoff(
                    plugin.handler.migrate,
                    request,
                    cancel_event,
                    retry_policy=self.retry_policy,
                    context=ErrorContext(operation="migrate", provider=target[1].value, tenant_id=target[0]),
                    retry_if=_is_retryable,
                )
                additional = dict(result.additional_info)
                if not result.success:
                    additional.update(self._failed(target))

                if result.success or result.applied_migrations:
                    if result.success:
                        self._enter(target, OrchestrationPhase.UPDATING_STATE)
                    additional.update(await self._refresh(target, descriptor, plugin, cancel_event))

                if result.success:
                    logger.info(f"Applied {len(result.applied_migrations)} migration(s) for tenant '{target[0]}'")
                else:
                    logger.error(f"Migration failed for tenant '{target[0]}': {result.error_message}")
                return result.model_copy(update={"backup_path": backup_path, "additional_info": additional})
            except _StepFailure as f:
                return MigrationResult.failed(
                    f.message, f.category, backup_path=backup_path, additional_info=self._failed(target)
                )
            finally:
                self._enter(target, OrchestrationPhase.IDLE)

    async def _backup(self, target: TargetKey, descriptor: ConnectionDescriptor) -> Path:
        if self.backup_manager is None:
            raise _StepFailure("Backup requested but no backup manager is configured", ErrorCategory.BACKUP)
        try:
            info = await asyncio.wait_for(
                self.backup_manager.create_backup(descriptor, target[0], self.session.current_environment),
                timeout=descriptor.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise _StepFailure(
                f"Backup timed out after {descriptor.timeout_seconds} seconds; no migrations were applied",
                ErrorCategory.BACKUP,
            ) from None
        except Exception as e:
            await self.error_handler.handle_error(
                e, ErrorContext(operation="backup", provider=target[1].value, tenant_id=target[0])
            )
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            raise _StepFailure(f"Backup failed; no migrations were applied: {message}", ErrorCategory.BACKUP) from e
        return info.location

    async def _refresh(self, target, descriptor, plugin, cancel_event) -> Dict[str, str]:
        try:
            status = await self._status(target, descriptor, plugin, cancel_event)
        except _StepFailure as f:
            status = MigrationStatus.failed(f.message, f.category)
        if status.error_message is not None:
            logger.warning(f"Could not refresh migration status: {status.error_message}")
            return {"status_refresh_error": status.error_message}
        self.session.record_status(status, *target)
        return {"pending_after": str(status.pending_migrations_count)}

    async def generate_scripts(
        self,
        output_dir: Optional[Union[str, Path]] = None,
        tenant: Optional[str] = None,
        provider: Optional[Union[str, ProviderType]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MigrationResult:
        """Write SQL for pending migrations without applying them."""
        try:
            target = self._target(tenant, provider)
        except UnknownProviderError as e:
            return MigrationResult.failed(e.message, ErrorCategory.PROVIDER_NOT_FOUND)

        async with self._lock_for(target):
            try:
                descriptor, plugin = self._prepare(target, Capability.GENERATE_SCRIPTS)
                self._enter(target, OrchestrationPhase.INVOKING)
                request = self._request(
                    target, descriptor, output_directory=Path(output_dir) if output_dir else self.scripts_directory
                )
                result = await self._with_timeout(
                    plugin.handler.generate_scripts(request, cancel_event), descriptor, "Script generation"
                )
                if result.success and result.scripts_path is None:
                    raise _StepFailure(
                        f"Plugin '{plugin.name}' reported success without a scripts path", ErrorCategory.PERMANENT
                    )
                if not result.success:
                    return result.model_copy(update={"additional_info": {**result.additional_info, **self._failed(target)}})
                return result
            except _StepFailure as f:
                return MigrationResult.failed(f.message, f.category, additional_info=self._failed(target))
            finally:
                self._enter(target, OrchestrationPhase.IDLE)

    async def test_connection(
        self,
        tenant: Optional[str] = None,
        provider: Optional[Union[str, ProviderType]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """Probe connectivity of the resolved connection."""
        try:
            target = self._target(tenant, provider)
        except UnknownProviderError as e:
            logger.warning(f"Connection test failed: {e.message}")
            return False

        try:
            descriptor, plugin = self._prepare(target, Capability.TEST_CONNECTION)
            self._enter(target, OrchestrationPhase.INVOKING)
            request = self._request(target, descriptor)
            return await self._with_timeout(
                plugin.handler.test_connection(request, cancel_event), descriptor, "Connection test"
            )
        except _StepFailure as f:
            logger.warning(f"Connection test failed: {f.message}")
            return False
        finally:
            self._enter(target, OrchestrationPhase.IDLE)

    # -- session operations ----------------------------------------------

    def switch_provider(self, name: Union[str, ProviderType]) -> bool:
        """Switch the session's provider if a connection string exists for it."""
        provider = self.resolver.switchable_provider(name)
        if provider is None:
            logger.warning(f"Cannot switch to provider '{name}': no connection string configured")
            return False
        self.session.switch_provider(provider)
        return True

    def switch_tenant(self, tenant: str) -> bool:
        return self.session.switch_tenant(tenant)

    def available_providers(self):
        return self.registry.providers()
