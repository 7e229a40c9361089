"""
Settings models for the database migrator.

This module defines the Pydantic models read from ``dbmigrator.yaml``
(or ``.toml``) and the loader that applies environment overrides.
"""

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

import toml
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from dbmigrator.core.error_handler import RetryPolicy
from dbmigrator.core.exceptions import ConfigurationError
from dbmigrator.database.config import ProviderType
from dbmigrator.utils.helpers import load_config_file

DEFAULT_CONFIG_FILES = ("dbmigrator.yaml", "dbmigrator.yml", "dbmigrator.toml")
CONFIG_ENV_VAR = "DBMIGRATOR_CONFIG"
ENVIRONMENT_ENV_VAR = "DBMIGRATOR_ENVIRONMENT"
PROVIDER_ENV_VAR = "DBMIGRATOR_PROVIDER"
PLUGIN_DIR_ENV_VAR = "DBMIGRATOR_PLUGIN_DIR"
DEFAULT_TENANT = "Default"


class TenantSettings(BaseModel):
    """A tenant with its own database."""
    identifier: str
    name: Optional[str] = None
    connection_string: Optional[str] = None
    enable_migrations: bool = True

    @field_validator('identifier')
    @classmethod
    def identifier_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('Tenant identifier cannot be empty')
        return v.strip()


class PathSettings(BaseModel):
    """Working directories; relative paths resolve against ``working_directory``."""
    working_directory: Path = Path(".")
    migrations: Path = Path("Migrations")
    scripts: Path = Path("Scripts")
    state_file: Path = Path(".dbmigrator/session.yaml")


class BackupSettings(BaseModel):
    directory: Path = Path("Backups")
    backups_to_keep: int = Field(default=5, ge=0)
    backup_before_migration: bool = True


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[Path] = None
    structured: bool = False

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level


class PluginSettings(BaseModel):
    directory: Path = Path("Plugins")
    load_builtin: bool = True


class MigratorSettings(BaseModel):
    """Top-level settings."""

    model_config = ConfigDict(extra='forbid')

    environment: str = "Development"
    database_provider: ProviderType = ProviderType.SQLSERVER
    default_connection_string: Optional[str] = None
    connection_strings: Dict[str, str] = Field(default_factory=dict)
    tenants: List[TenantSettings] = Field(default_factory=list)
    command_timeout: int = Field(default=30, ge=5, le=300)
    use_transaction: bool = True
    allow_local_fallback: bool = True
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    paths: PathSettings = Field(default_factory=PathSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    plugins: PluginSettings = Field(default_factory=PluginSettings)

    @field_validator('database_provider', mode='before')
    @classmethod
    def normalize_provider(cls, v):
        provider = ProviderType.try_normalize(v)
        if provider is None:
            raise ValueError(f"Unknown database provider: {v}")
        return provider

    @field_validator('tenants')
    @classmethod
    def tenants_must_be_unique(cls, v):
        seen = set()
        for tenant in v:
            key = tenant.identifier.lower()
            if key in seen:
                raise ValueError(f"Tenant '{tenant.identifier}' is listed more than once")
            seen.add(key)
        return v

    def resolve(self, path: Union[str, Path]) -> Path:
        """Absolute form of a configured path."""
        path = Path(path).expanduser()
        if path.is_absolute():
            return path
        return (Path(self.paths.working_directory).expanduser() / path).resolve()

    @property
    def migrations_directory(self) -> Path:
        return self.resolve(self.paths.migrations)

    @property
    def scripts_directory(self) -> Path:
        return self.resolve(self.paths.scripts)

    @property
    def backups_directory(self) -> Path:
        return self.resolve(self.backup.directory)

    @property
    def plugin_directory(self) -> Path:
        return self.resolve(self.plugins.directory)

    @property
    def state_file(self) -> Path:
        return self.resolve(self.paths.state_file)

    @property
    def available_tenants(self) -> List[str]:
        return [DEFAULT_TENANT] + [t.identifier for t in self.tenants if t.identifier.lower() != DEFAULT_TENANT.lower()]

    def tenant(self, identifier: str) -> Optional[TenantSettings]:
        for t in self.tenants:
            if t.identifier.lower() == identifier.lower():
                return t
        return None

    def migrations_enabled_for(self, identifier: str) -> bool:
        tenant = self.tenant(identifier)
        return tenant is None or tenant.enable_migrations


def find_config_file(
    directory: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[Path]:
    """Config file named by the environment, else one of the defaults in ``directory``."""
    environ = os.environ if environ is None else environ
    if environ.get(CONFIG_ENV_VAR):
        return Path(environ[CONFIG_ENV_VAR])
    directory = directory or Path.cwd()
    for name in DEFAULT_CONFIG_FILES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def load_settings(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MigratorSettings:
    """
    Load settings from a file and apply environment overrides.

    Args:
        path: Settings file; when None the file is looked up with
            ``find_config_file`` and defaults are used if there is none
        environ: Environment mapping (defaults to ``os.environ``)

    Raises:
        ConfigurationError: the file is missing, unreadable or invalid
    """
    environ = os.environ if environ is None else environ
    config_path = Path(path) if path else find_config_file(environ=environ)

    data: Dict = {}
    if config_path is not None:
        try:
            data = load_config_file(config_path)
        except FileNotFoundError as e:
            raise ConfigurationError(str(e)) from e
        except (yaml.YAMLError, toml.TomlDecodeError, ValueError, OSError) as e:
            raise ConfigurationError(f"Cannot read settings file {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file {config_path} must contain a mapping")
        paths = data.setdefault("paths", {}) or {}
        data["paths"] = paths
        paths.setdefault("working_directory", str(config_path.resolve().parent))

    if environ.get(ENVIRONMENT_ENV_VAR):
        data["environment"] = environ[ENVIRONMENT_ENV_VAR]
    if environ.get(PROVIDER_ENV_VAR):
        data["database_provider"] = environ[PROVIDER_ENV_VAR]
    if environ.get(PLUGIN_DIR_ENV_VAR):
        plugins = data.setdefault("plugins", {}) or {}
        data["plugins"] = plugins
        plugins["directory"] = environ[PLUGIN_DIR_ENV_VAR]

    try:
        return MigratorSettings.model_validate(data)
    except PydanticValidationError as e:
        source = f" in {config_path}" if config_path else ""
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid settings{source}: {problems}") from e
