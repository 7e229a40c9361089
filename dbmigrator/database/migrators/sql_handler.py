"""SQL migration handler shared by the built-in provider plugins.

Migrations are ``.sql`` files in a migrations directory; the ones that
have been applied are recorded in a history table inside the target
database. All database work goes through SQLAlchemy and runs in a worker
thread so the event loop stays responsive.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sqlalchemy import Column, DateTime, MetaData, String, Table, create_engine, inspect, select
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import NullPool
from sqlalchemy.schema import CreateTable

from dbmigrator.core.error_handler import ErrorCategory
from dbmigrator.core.exceptions import (
    CancelledOperationError,
    DuplicateMigrationError,
    MigratorError,
    PermanentOperationError,
    TransientOperationError,
    ValidationError,
)
from dbmigrator.utils.helpers import utc_now

from ..base import (
    MigrationHandler,
    MigrationIdGenerator,
    MigrationInfo,
    MigrationRequest,
    MigrationResult,
    MigrationStatus,
    migration_ids,
)
from ..config import ConnectionDescriptor, ProviderType
from ..connection import build_url
from ..scripts import (
    MigrationScript,
    discover_scripts,
    render_template,
    scan_scripts,
    script_filename,
    split_statements,
    validate_migration_name,
)

logger = logging.getLogger(__name__)

HISTORY_TABLE = "__migrations_history"
DEFAULT_MIGRATIONS_DIRECTORY = "Migrations"
DEFAULT_SCRIPTS_DIRECTORY = "Scripts"


class SqlMigrationHandler(MigrationHandler):
    """Applies ``{id}_{Name}.sql`` files and tracks them in ``__migrations_history``.

    Subclasses set ``provider`` and ``driver_package`` and may override
    ``connect_args``, ``configure_engine`` and the script wrappers.
    """

    provider: ProviderType
    driver_package: Optional[str] = None
    script_begin = "BEGIN;"
    script_commit = "COMMIT;"
    batch_separator: Optional[str] = None

    def __init__(self, id_generator: Optional[MigrationIdGenerator] = None):
        self._ids = id_generator or migration_ids
        self._metadata = MetaData()
        self._history = Table(
            HISTORY_TABLE,
            self._metadata,
            Column("migration_id", String(32), primary_key=True),
            Column("name", String(255), nullable=False),
            Column("applied_on", DateTime(timezone=True), nullable=False),
        )

    @property
    def provider_type(self) -> ProviderType:
        return self.provider

    # -- engine plumbing -------------------------------------------------

    def connect_args(self, descriptor: ConnectionDescriptor) -> Dict[str, object]:
        return {}

    def configure_engine(self, engine: Engine) -> None:
        pass

    def database_missing(self, url: URL) -> bool:
        """True when the target database certainly does not exist yet."""
        return False

    def _create_engine(self, descriptor: ConnectionDescriptor) -> Engine:
        url = build_url(descriptor)
        try:
            engine = create_engine(
                url,
                poolclass=NullPool,
                connect_args=self.connect_args(descriptor),
            )
        except ImportError as e:
            hint = f" (install '{self.driver_package}')" if self.driver_package else ""
            raise PermanentOperationError(
                f"Database driver for {self.provider.value} is not available{hint}: {e}"
            ) from e
        self.configure_engine(engine)
        return engine

    def _connect(self, engine: Engine) -> Connection:
        try:
            return engine.connect()
        except (OperationalError, InterfaceError) as e:
            raise TransientOperationError(f"Could not connect to {self.provider.value} database: {e.orig or e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientOperationError(f"Connection to {self.provider.value} database was lost: {e}") from e
            raise PermanentOperationError(f"Could not connect to {self.provider.value} database: {e}") from e
        except (TimeoutError, OSError) as e:
            raise TransientOperationError(f"Could not connect to {self.provider.value} database: {e}") from e

    # -- directories -----------------------------------------------------

    @staticmethod
    def migrations_directory(request: MigrationRequest) -> Path:
        return Path(request.migrations_directory or Path.cwd() / DEFAULT_MIGRATIONS_DIRECTORY)

    # -- history ---------------------------------------------------------

    def _load_applied(self, conn: Connection) -> List[Tuple[str, str, datetime]]:
        if not inspect(conn).has_table(HISTORY_TABLE):
            return []
        rows = conn.execute(
            select(self._history.c.migration_id, self._history.c.name, self._history.c.applied_on)
            .order_by(self._history.c.migration_id)
        ).all()
        return [(row[0], row[1], _as_utc(row[2])) for row in rows]

    def _ensure_history(self, engine: Engine) -> Dict[str, MigrationInfo]:
        with self._connect(engine) as conn:
            self._metadata.create_all(conn, tables=[self._history])
            applied = self._load_applied(conn)
            conn.commit()
        return {mid: MigrationInfo(id=mid, name=name, applied_on=on) for mid, name, on in applied}

    def _apply_script(self, engine: Engine, script: MigrationScript, use_transaction: bool) -> MigrationInfo:
        statements = split_statements(script.read(), self.provider)
        applied_on = utc_now()
        insert = self._history.insert().values(migration_id=script.id, name=script.name, applied_on=applied_on)

        with self._connect(engine) as conn:
            if use_transaction:
                with conn.begin():
                    for statement in statements:
                        conn.exec_driver_sql(statement)
                    conn.execute(insert)
            else:
                for statement in statements:
                    conn.exec_driver_sql(statement)
                    conn.commit()
                conn.execute(insert)
                conn.commit()

        logger.info(f"Applied migration {script.id}_{script.name} ({len(statements)} statements)")
        return MigrationInfo(id=script.id, name=script.name, applied_on=applied_on, script=script.path)

    # -- contract --------------------------------------------------------

    async def create_migration(self, request, cancel_event=None) -> MigrationResult:
        name = validate_migration_name(request.migration_name or "")
        migrations_dir = self.migrations_directory(request)
        output_dir = Path(request.output_directory or migrations_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        existing = scan_scripts(output_dir)
        if output_dir.resolve() != migrations_dir.resolve():
            existing += scan_scripts(migrations_dir)

        created = utc_now()
        migration_id = self._ids.next_id(s.id for s in existing)
        path = output_dir / script_filename(migration_id, name)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(render_template(name, self.provider, created))
        except FileExistsError:
            raise DuplicateMigrationError(migration_id, f"Migration file already exists: {path.name}") from None

        logger.info(f"Created migration {path.name} in {output_dir}")
        return MigrationResult.succeeded(
            applied_migrations=[MigrationInfo(id=migration_id, name=name, script=path)],
            additional_info={"migration_id": migration_id, "script": str(path)},
        )

    async def migrate(self, request, cancel_event=None) -> MigrationResult:
        scripts = discover_scripts(self.migrations_directory(request))
        engine = await asyncio.to_thread(self._create_engine, request.connection)
        try:
            history = await asyncio.to_thread(self._ensure_history, engine)
            pending = [s for s in scripts if s.id not in history]
            applied: List[MigrationInfo] = []
            logger.info(f"{len(pending)} pending migration(s) for {self.provider.value}")

            for script in pending:
                if cancel_event is not None and cancel_event.is_set():
                    message = f"Cancelled after applying {len(applied)} of {len(pending)} migration(s)"
                    if not applied:
                        raise CancelledOperationError(message)
                    return MigrationResult.failed(
                        message,
                        ErrorCategory.CANCELLED,
                        applied_migrations=applied,
                    )
                try:
                    info = await asyncio.to_thread(
                        self._apply_script, engine, script, request.connection.use_transaction
                    )
                except TransientOperationError as e:
                    if not applied:
                        raise
                    return MigrationResult.failed(
                        f"Migration {script.id}_{script.name} could not run after {len(applied)} applied: {e}",
                        ErrorCategory.PARTIAL_MIGRATION,
                        applied_migrations=applied,
                    )
                except (SQLAlchemyError, OSError, MigratorError) as e:
                    detail = getattr(e, "orig", None) or e
                    message = f"Migration {script.id}_{script.name} failed: {detail}"
                    if not applied:
                        raise PermanentOperationError(message) from e
                    return MigrationResult.failed(
                        f"{message} ({len(applied)} of {len(pending)} applied before the failure)",
                        ErrorCategory.PARTIAL_MIGRATION,
                        applied_migrations=applied,
                    )
                applied.append(info)

            return MigrationResult.succeeded(
                applied_migrations=applied,
                additional_info={"pending_before": str(len(pending))},
            )
        finally:
            engine.dispose()

    def _read_status(self, request: MigrationRequest, scripts: List[MigrationScript]) -> MigrationStatus:
        engine = self._create_engine(request.connection)
        try:
            database_name = _database_name(engine.url)
            if self.database_missing(engine.url):
                applied_rows: List[Tuple[str, str, datetime]] = []
                version = None
            else:
                with self._connect(engine) as conn:
                    applied_rows = self._load_applied(conn)
                    version = ".".join(str(part) for part in (conn.dialect.server_version_info or ())) or None
        finally:
            engine.dispose()

        by_id = {s.id: s for s in scripts}
        applied = [
            MigrationInfo(id=mid, name=name, applied_on=on, script=by_id[mid].path if mid in by_id else None)
            for mid, name, on in applied_rows
        ]
        applied_ids = {info.id for info in applied}
        pending = [s.to_info() for s in scripts if s.id not in applied_ids]
        last = max(applied, key=lambda i: (i.applied_on, i.id)) if applied else None

        return MigrationStatus(
            pending_migrations_count=len(pending),
            pending_migrations=pending,
            applied_migrations=applied,
            last_migration_date=last.applied_on if last else None,
            last_migration_name=last.name if last else None,
            provider_name=self.provider,
            database_name=database_name,
            database_version=version,
        )

    async def get_status(self, request, cancel_event=None) -> MigrationStatus:
        scripts = discover_scripts(self.migrations_directory(request))
        return await asyncio.to_thread(self._read_status, request, scripts)

    def _render_scripts(self, request: MigrationRequest, output_dir: Path) -> Tuple[Path, List[MigrationInfo]]:
        scripts = discover_scripts(self.migrations_directory(request))
        engine = self._create_engine(request.connection)
        try:
            if self.database_missing(engine.url):
                applied_ids, has_history = set(), False
            else:
                with self._connect(engine) as conn:
                    has_history = inspect(conn).has_table(HISTORY_TABLE)
                    applied_ids = {row[0] for row in self._load_applied(conn)}
            create_history = str(CreateTable(self._history).compile(dialect=engine.dialect)).strip()
        finally:
            engine.dispose()

        pending = [s for s in scripts if s.id not in applied_ids]
        generated = utc_now()
        lines = [
            f"-- Pending migrations for {self.provider.value}",
            f"-- Generated: {generated.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            f"-- Migrations: {len(pending)}",
            "",
        ]
        if not has_history and pending:
            lines += [create_history + ";", ""]
            if self.batch_separator:
                lines += [self.batch_separator, ""]
        for script in pending:
            lines += [
                f"-- {script.id}_{script.name}",
                self.script_begin,
                script.read().rstrip(),
                f"INSERT INTO {HISTORY_TABLE} (migration_id, name, applied_on) "
                f"VALUES ('{script.id}', '{script.name}', CURRENT_TIMESTAMP);",
                self.script_commit,
                "",
            ]
            if self.batch_separator:
                lines += [self.batch_separator, ""]
        if not pending:
            lines.append("-- No pending migrations")

        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / f"{generated.strftime('%Y%m%d%H%M%S')}_pending_{self.provider.value.lower()}.sql"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path, [s.to_info() for s in pending]

    async def generate_scripts(self, request, cancel_event=None) -> MigrationResult:
        migrations_dir = self.migrations_directory(request)
        output_dir = Path(request.output_directory or Path.cwd() / DEFAULT_SCRIPTS_DIRECTORY)
        if output_dir.resolve() == migrations_dir.resolve():
            raise ValidationError(
                "Script output directory must differ from the migrations directory",
                failed_checks=["output_directory"],
            )
        path, included = await asyncio.to_thread(self._render_scripts, request, output_dir)
        logger.info(f"Wrote script for {len(included)} pending migration(s) to {path}")
        return MigrationResult.succeeded(
            scripts_path=path,
            additional_info={
                "migration_count": str(len(included)),
                "migrations": ",".join(f"{i.id}_{i.name}" for i in included),
            },
        )

    def _probe(self, descriptor: ConnectionDescriptor) -> bool:
        engine = self._create_engine(descriptor)
        try:
            with self._connect(engine) as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        finally:
            engine.dispose()

    async def test_connection(self, request, cancel_event=None) -> bool:
        try:
            return await asyncio.to_thread(self._probe, request.connection)
        except (MigratorError, SQLAlchemyError) as e:
            logger.warning(f"Connection test failed for {self.provider.value}: {e}")
            return False


def _as_utc(value) -> Optional[datetime]:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value is not None and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _database_name(url: URL) -> Optional[str]:
    if url.get_backend_name() == "sqlite" and url.database:
        return Path(url.database).name
    return url.database
