"""
Pytest configuration and fixtures for the database migrator tests.

Provides temporary migration directories, SQLite connection descriptors,
an in-memory handler double and a helper to register it as a plugin.
"""

import asyncio
import sqlite3
from pathlib import Path
from typing import List, Optional

import pytest

from dbmigrator.core.error_handler import ErrorCategory
from dbmigrator.database.base import (
    ALL_CAPABILITIES,
    MigrationHandler,
    MigrationInfo,
    MigrationResult,
    MigrationStatus,
    PluginDescriptor,
)
from dbmigrator.database.config import ConnectionDescriptor, ProviderType
from dbmigrator.database.connection import ConnectionResolver
from dbmigrator.database.guard import GuardedHandler
from dbmigrator.database.registry import PluginRegistry
from dbmigrator.models.session import Session, SessionState


class FakeMigrationHandler(MigrationHandler):
    """In-memory handler: a list of pending migrations and a history."""

    def __init__(self, provider: ProviderType = ProviderType.SQLITE, pending: Optional[List[str]] = None):
        self._provider = provider
        self.pending: List[MigrationInfo] = [
            MigrationInfo(id=f"2024010100000{i}", name=name) for i, name in enumerate(pending or [])
        ]
        self.applied: List[MigrationInfo] = []
        self.calls: List[str] = []
        self.fail_at: Optional[int] = None
        self.migrate_results: List[MigrationResult] = []
        self.migrate_delay = 0.0
        self.write_scripts = True

    @property
    def provider_type(self) -> ProviderType:
        return self._provider

    async def create_migration(self, request, cancel_event=None) -> MigrationResult:
        self.calls.append("create_migration")
        migration_id = f"20240201{len(self.calls):06d}"
        path = Path(request.output_directory) / f"{migration_id}_{request.migration_name}.sql"
        if self.write_scripts:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("-- fake\n", encoding="utf-8")
        info = MigrationInfo(id=migration_id, name=request.migration_name, script=path)
        self.pending.append(info)
        return MigrationResult.succeeded(applied_migrations=[info])

    async def migrate(self, request, cancel_event=None) -> MigrationResult:
        self.calls.append("migrate")
        if self.migrate_results:
            return self.migrate_results.pop(0)
        applied = []
        for index, info in enumerate(list(self.pending)):
            if cancel_event is not None and cancel_event.is_set():
                return MigrationResult.failed(
                    "cancelled", ErrorCategory.CANCELLED, applied_migrations=applied
                )
            if self.fail_at is not None and index == self.fail_at:
                return MigrationResult.failed(
                    f"{info.name} failed", ErrorCategory.PARTIAL_MIGRATION, applied_migrations=applied
                )
            if self.migrate_delay:
                await asyncio.sleep(self.migrate_delay)
            self.pending.remove(info)
            self.applied.append(info)
            applied.append(info)
        return MigrationResult.succeeded(applied_migrations=applied)

    async def get_status(self, request, cancel_event=None) -> MigrationStatus:
        self.calls.append("get_status")
        return MigrationStatus(
            pending_migrations=list(self.pending),
            applied_migrations=list(self.applied),
            last_migration_name=self.applied[-1].name if self.applied else None,
            provider_name=self._provider,
        )

    async def generate_scripts(self, request, cancel_event=None) -> MigrationResult:
        self.calls.append("generate_scripts")
        path = Path(request.output_directory) / "pending.sql"
        return MigrationResult.succeeded(scripts_path=path)

    async def test_connection(self, request, cancel_event=None) -> bool:
        self.calls.append("test_connection")
        return True


def register_handler(registry: PluginRegistry, handler: MigrationHandler, name: str = "fake",
                     is_default: bool = False, capabilities=ALL_CAPABILITIES) -> PluginDescriptor:
    descriptor = PluginDescriptor(
        name=name,
        provider_type=handler.provider_type,
        version="1.0.0",
        description="test double",
        capabilities=frozenset(capabilities),
        is_default=is_default,
        handler=GuardedHandler(handler, name, handler.provider_type),
        source="test",
    )
    registry.register(descriptor)
    return descriptor


@pytest.fixture
def migrations_dir(tmp_path) -> Path:
    directory = tmp_path / "Migrations"
    directory.mkdir()
    return directory


@pytest.fixture
def make_script(migrations_dir):
    """Write ``{id}_{name}.sql`` into the migrations directory."""
    def _make(migration_id: str, name: str, sql: str = "SELECT 1;", directory: Optional[Path] = None) -> Path:
        path = Path(directory or migrations_dir) / f"{migration_id}_{name}.sql"
        path.write_text(sql, encoding="utf-8")
        return path
    return _make


@pytest.fixture
def sqlite_path(tmp_path) -> Path:
    return tmp_path / "app.db"


@pytest.fixture
def seeded_sqlite(sqlite_path) -> Path:
    """A SQLite database file that already holds data."""
    with sqlite3.connect(sqlite_path) as conn:
        conn.execute("CREATE TABLE seed (id INTEGER PRIMARY KEY, label TEXT)")
        conn.execute("INSERT INTO seed (label) VALUES ('first')")
    return sqlite_path


@pytest.fixture
def sqlite_connection_string(sqlite_path) -> str:
    return f"Data Source={sqlite_path}"


@pytest.fixture
def sqlite_descriptor(sqlite_connection_string) -> ConnectionDescriptor:
    return ConnectionDescriptor(
        connection_string=sqlite_connection_string,
        provider_name="SQLite",
        timeout_seconds=5,
    )


@pytest.fixture
def fake_handler() -> FakeMigrationHandler:
    return FakeMigrationHandler(pending=["CreateUsers", "AddEmail", "CreateOrders"])


@pytest.fixture
def fake_registry(fake_handler) -> PluginRegistry:
    registry = PluginRegistry(load_builtin=False)
    register_handler(registry, fake_handler)
    return registry


@pytest.fixture
def sqlite_resolver(sqlite_connection_string) -> ConnectionResolver:
    return ConnectionResolver(
        connection_strings={"SQLite": sqlite_connection_string},
        default_provider=ProviderType.SQLITE,
        timeout_seconds=5,
        allow_local_fallback=False,
    )


@pytest.fixture
def sqlite_session() -> Session:
    return Session(SessionState(current_provider=ProviderType.SQLITE), available_tenants=["Default", "Acme"])
