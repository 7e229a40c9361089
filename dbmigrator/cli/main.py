"""
Main CLI entry point for the database migrator.

This module provides the command-line interface using Click with Rich
formatting. Every command goes through the MigrationOrchestrator and
exits with status 1 when the orchestrator reports a failure.
"""

import asyncio
import logging
import sys
from typing import List, Optional

import click
from rich import box
from rich.console import Console
from rich.table import Table

from dbmigrator import __version__
from dbmigrator.core.error_handler import ErrorHandler
from dbmigrator.core.exceptions import MigratorError
from dbmigrator.database.base import MigrationResult, MigrationStatus
from dbmigrator.models.session import Session, SessionState, SessionStore
from dbmigrator.models.settings import MigratorSettings, load_settings
from dbmigrator.orchestrator import MigrationOrchestrator
from dbmigrator.utils.logging import setup_logging

console = Console()
logger = logging.getLogger(__name__)


class CliApp:
    """Settings, session and orchestrator for one CLI invocation."""

    def __init__(self, config_path: Optional[str], verbose: bool):
        self.config_path = config_path
        self.verbose = verbose
        self.settings: Optional[MigratorSettings] = None
        self.session: Optional[Session] = None
        self.store: Optional[SessionStore] = None
        self._orchestrator: Optional[MigrationOrchestrator] = None

    def orchestrator(self) -> MigrationOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = self._build()
        return self._orchestrator

    def _build(self) -> MigrationOrchestrator:
        settings = load_settings(self.config_path)
        log_file = settings.resolve(settings.logging.file) if settings.logging.file else None
        setup_logging(
            level="DEBUG" if self.verbose else settings.logging.level,
            log_file=str(log_file) if log_file else None,
            structured_logging=settings.logging.structured,
        )

        self.store = SessionStore(settings.state_file)
        state = self.store.load()
        if state is None:
            state = SessionState(
                current_environment=settings.environment,
                current_provider=settings.database_provider,
            )
        session = Session(state, available_tenants=settings.available_tenants)
        if not session.switch_tenant(session.current_tenant):
            session.switch_tenant("Default")
        session.set_auto_backup(settings.backup.backup_before_migration)
        session.detect_batch_mode()

        self.settings = settings
        self.session = session
        return MigrationOrchestrator.from_settings(settings, session=session, verbose=self.verbose)

    def save(self) -> None:
        if self.store is None or self.session is None:
            return
        try:
            self.store.save(self.session.state)
        except OSError as e:
            logger.warning(f"Could not save session state to {self.store.path}: {e}")


def _app(ctx: click.Context) -> CliApp:
    return ctx.find_root().obj['app']


def _prepare(ctx: click.Context, environment: Optional[str] = None,
             tenant: Optional[str] = None) -> MigrationOrchestrator:
    """Build the orchestrator and apply per-command session switches."""
    app = _app(ctx)
    try:
        orchestrator = app.orchestrator()
    except MigratorError as e:
        _fail(ctx, f"Startup failed: {e.message}")

    if environment:
        orchestrator.session.set_environment(environment)
    if tenant and not orchestrator.switch_tenant(tenant):
        known = ", ".join(orchestrator.session.available_tenants)
        _fail(ctx, f"Unknown tenant '{tenant}' (known: {known})")
    return orchestrator


def _fail(ctx: click.Context, message: str, details: Optional[dict] = None,
          hints: Optional[List[str]] = None) -> None:
    console.print(f"[red]✗ {message}[/red]")
    for hint in hints or []:
        console.print(f"[yellow]  • {hint}[/yellow]")
    if details and _app(ctx).verbose:
        for key, value in details.items():
            console.print(f"[dim]  {key}: {value}[/dim]")
    sys.exit(1)


def _print_migrations(title: str, migrations, show_applied_on: bool = False) -> None:
    table = Table(title=title, box=box.ROUNDED, show_header=True, header_style="bold magenta")
    table.add_column("Id", style="cyan")
    table.add_column("Name", style="green")
    if show_applied_on:
        table.add_column("Applied on", style="dim")
    for info in migrations:
        row = [info.id, info.name]
        if show_applied_on:
            row.append(info.applied_on.strftime("%Y-%m-%d %H:%M:%S") if info.applied_on else "-")
        table.add_row(*row)
    console.print(table)


def _print_result_failure(ctx: click.Context, result: MigrationResult) -> None:
    if result.applied_migrations:
        _print_migrations("Applied before the failure", result.applied_migrations)
    details = dict(result.additional_info)
    if result.error_category:
        details["category"] = result.error_category.value
    hints = ErrorHandler().remediation_for(result.error_category) if result.error_category else []
    _fail(ctx, result.error_message, details, hints)


@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version information')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.option('--config', '-c', type=click.Path(dir_okay=False), help='Settings file path')
@click.pass_context
def main(ctx: click.Context, version: bool, verbose: bool, config: Optional[str]):
    """
    Database Migrator

    Creates, inspects and applies SQL schema migrations across SQL Server,
    PostgreSQL and SQLite databases, for one or more tenants.
    """
    ctx.ensure_object(dict)
    app = CliApp(config, verbose)
    ctx.obj['app'] = app
    ctx.call_on_close(app.save)

    if version:
        console.print(f"dbmigrator version {__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@main.command()
@click.option('--environment', '-e', help='Target environment (e.g. Development, Production)')
@click.option('--tenant', '-t', help='Tenant to target')
@click.option('--provider', '-p', help='Database provider to target')
@click.option('--verbose', '-v', is_flag=True, help='Also list applied migrations')
@click.pass_context
def status(ctx: click.Context, environment: Optional[str], tenant: Optional[str], provider: Optional[str],
           verbose: bool):
    """Show applied and pending migrations."""
    if verbose:
        _app(ctx).verbose = True
    orchestrator = _prepare(ctx, environment, tenant)
    result: MigrationStatus = asyncio.run(orchestrator.check_status(provider=provider))
    if not result.success:
        _fail(ctx, result.error_message, {"category": result.error_category.value if result.error_category else None})

    session = orchestrator.session
    console.print(f"[bold]Tenant:[/bold] {session.current_tenant}   "
                  f"[bold]Environment:[/bold] {session.current_environment}   "
                  f"[bold]Provider:[/bold] {(result.provider_name or session.current_provider).value}")
    if result.database_name:
        console.print(f"[bold]Database:[/bold] {result.database_name}"
                      + (f" ({result.database_version})" if result.database_version else ""))

    if _app(ctx).verbose and result.applied_migrations:
        _print_migrations("Applied migrations", result.applied_migrations, show_applied_on=True)
    if result.last_migration_name:
        console.print(f"Last migration: [cyan]{result.last_migration_name}[/cyan]")

    if result.has_pending_migrations:
        _print_migrations("Pending migrations", result.pending_migrations)
        console.print(f"[yellow]{result.pending_migrations_count} pending migration(s)[/yellow]")
    else:
        console.print("[green]✓ Database is up to date[/green]")


@main.command()
@click.option('--environment', '-e', help='Target environment (e.g. Development, Production)')
@click.option('--tenant', '-t', help='Tenant to target')
@click.option('--backup/--no-backup', default=True, help='Back up the database before migrating')
@click.option('--script', is_flag=True, help='Generate SQL scripts without applying migrations')
@click.option('--output', '-o', type=click.Path(file_okay=False), help='Directory for generated SQL scripts')
@click.option('--no-prompt', is_flag=True, help='Skip confirmation prompts')
@click.pass_context
def migrate(ctx: click.Context, environment: Optional[str], tenant: Optional[str], backup: bool,
            script: bool, output: Optional[str], no_prompt: bool):
    """Apply pending migrations, or write them out as SQL."""
    orchestrator = _prepare(ctx, environment, tenant)
    session = orchestrator.session

    current = asyncio.run(orchestrator.check_status())
    if not current.success:
        _fail(ctx, current.error_message)
    if not current.has_pending_migrations:
        console.print("[green]✓ Database is already up to date. No migrations to apply.[/green]")
        return
    console.print(f"Found [yellow]{current.pending_migrations_count}[/yellow] pending migration(s).")

    if script:
        result = asyncio.run(orchestrator.generate_scripts(output))
        if not result.success:
            _print_result_failure(ctx, result)
        console.print(f"[green]✓ Migration scripts written to {result.scripts_path}[/green]")
        return

    if not (no_prompt or session.is_batch_mode):
        question = (f"Apply {current.pending_migrations_count} migration(s) to the "
                    f"{session.current_tenant} database?")
        if not click.confirm(question, default=False):
            console.print("[yellow]Migration cancelled by user[/yellow]")
            return

    result = asyncio.run(orchestrator.run_migrations(create_backup=backup))
    if result.backup_path:
        console.print(f"[green]✓ Backup created at {result.backup_path}[/green]")
    if not result.success:
        _print_result_failure(ctx, result)

    _print_migrations("Applied migrations", result.applied_migrations)
    console.print(f"[green]✓ Applied {len(result.applied_migrations)} migration(s)[/green]")


@main.command()
@click.argument('name', required=False)
@click.option('--tenant', '-t', help='Tenant to target')
@click.option('--provider', '-p', help='Database provider (SqlServer, PostgreSQL or SQLite)')
@click.option('--output-dir', '--output', '-o', type=click.Path(file_okay=False),
              help='Directory for the new migration script')
@click.pass_context
def create(ctx: click.Context, name: Optional[str], tenant: Optional[str], provider: Optional[str],
           output_dir: Optional[str]):
    """Create a new migration script."""
    orchestrator = _prepare(ctx, tenant=tenant)
    result = asyncio.run(orchestrator.create_migration(name, output_dir, provider=provider))
    if not result.success:
        _print_result_failure(ctx, result)

    info = result.applied_migrations[0]
    console.print(f"[green]✓ Created migration {info.id} ({info.name})[/green]")
    if info.script:
        console.print(f"  Script: {info.script}")
    if result.additional_info.get("placeholder_script"):
        console.print("[yellow]  The provider wrote no script; an empty placeholder was created[/yellow]")


@main.command('test-connection')
@click.option('--tenant', '-t', help='Tenant to target')
@click.option('--provider', '-p', help='Database provider to target')
@click.pass_context
def test_connection(ctx: click.Context, tenant: Optional[str], provider: Optional[str]):
    """Check that the configured database is reachable."""
    orchestrator = _prepare(ctx, tenant=tenant)
    if not asyncio.run(orchestrator.test_connection(provider=provider)):
        _fail(ctx, "Connection failed")
    console.print("[green]✓ Connection succeeded[/green]")


@main.command()
@click.pass_context
def providers(ctx: click.Context):
    """List registered provider plugins."""
    orchestrator = _prepare(ctx)
    registry = orchestrator.registry

    table = Table(title="Migration Plugins", box=box.ROUNDED, show_header=True, header_style="bold magenta")
    table.add_column("Provider", style="cyan")
    table.add_column("Plugin", style="green")
    table.add_column("Version")
    table.add_column("Default")
    table.add_column("Connection")
    table.add_column("Source", style="dim")
    for plugin in sorted(registry.plugins(), key=lambda p: (p.provider_type.value, p.name)):
        configured = orchestrator.resolver.has_provider_connection(plugin.provider_type)
        table.add_row(
            plugin.provider_type.value,
            plugin.name,
            plugin.version,
            "yes" if plugin.is_default else "",
            "configured" if configured else "-",
            plugin.source,
        )
    console.print(table)
    console.print(f"Current provider: [cyan]{orchestrator.session.current_provider.value}[/cyan]")

    for failure in registry.warnings:
        console.print(f"[yellow]⚠ Skipped {failure.source}: {failure.reason}[/yellow]")


@main.command('switch-provider')
@click.argument('name')
@click.pass_context
def switch_provider(ctx: click.Context, name: str):
    """Make NAME the current database provider."""
    orchestrator = _prepare(ctx)
    if not orchestrator.switch_provider(name):
        _fail(ctx, f"No connection string is configured for provider '{name}'")
    console.print(f"[green]✓ Current provider is now {orchestrator.session.current_provider.value}[/green]")


@main.command('switch-tenant')
@click.argument('name')
@click.pass_context
def switch_tenant(ctx: click.Context, name: str):
    """Make NAME the current tenant."""
    _prepare(ctx, tenant=name)
    console.print(f"[green]✓ Current tenant is now {_app(ctx).session.current_tenant}[/green]")


if __name__ == '__main__':
    main()
