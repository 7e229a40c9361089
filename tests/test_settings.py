"""
Tests for settings models and loading.
"""

import textwrap

import pytest

from dbmigrator.core.exceptions import ConfigurationError
from dbmigrator.database.config import ProviderType
from dbmigrator.models.settings import MigratorSettings, find_config_file, load_settings

YAML_SETTINGS = textwrap.dedent("""\
    environment: Staging
    database_provider: postgres
    connection_strings:
      Npgsql: Host=pg;Database=app
    tenants:
      - identifier: Acme
        connection_string: Host=acme;Database=acme
      - identifier: Beta
        enable_migrations: false
    command_timeout: 60
    retry:
      max_retry_count: 1
      delay_seconds: 2
      exponential: false
    backup:
      backups_to_keep: 3
    logging:
      level: debug
""")

TOML_SETTINGS = textwrap.dedent("""\
    database_provider = "SQLite"

    [connection_strings]
    SQLite = "Data Source=app.db"

    [paths]
    migrations = "db/migrations"
""")


class TestLoadSettings:
    """Test cases for load_settings."""

    def test_yaml(self, tmp_path):
        path = tmp_path / "dbmigrator.yaml"
        path.write_text(YAML_SETTINGS)

        settings = load_settings(path, environ={})

        assert settings.environment == "Staging"
        assert settings.database_provider is ProviderType.POSTGRESQL
        assert settings.command_timeout == 60
        assert settings.retry.max_retry_count == 1
        assert settings.retry.exponential is False
        assert settings.backup.backups_to_keep == 3
        assert settings.logging.level == "DEBUG"
        assert settings.available_tenants == ["Default", "Acme", "Beta"]
        assert settings.migrations_enabled_for("beta") is False
        assert settings.migrations_enabled_for("Acme") is True
        assert settings.migrations_enabled_for("Default") is True

    def test_toml_paths_resolve_against_file(self, tmp_path):
        path = tmp_path / "dbmigrator.toml"
        path.write_text(TOML_SETTINGS)

        settings = load_settings(path, environ={})

        base = tmp_path.resolve()
        assert settings.database_provider is ProviderType.SQLITE
        assert settings.migrations_directory == base / "db" / "migrations"
        assert settings.scripts_directory == base / "Scripts"
        assert settings.backups_directory == base / "Backups"
        assert settings.plugin_directory == base / "Plugins"
        assert settings.state_file == base / ".dbmigrator" / "session.yaml"

    def test_environment_overrides(self, tmp_path):
        path = tmp_path / "dbmigrator.yaml"
        path.write_text(YAML_SETTINGS)
        environ = {
            "DBMIGRATOR_ENVIRONMENT": "Production",
            "DBMIGRATOR_PROVIDER": "mssql",
            "DBMIGRATOR_PLUGIN_DIR": str(tmp_path / "custom"),
        }

        settings = load_settings(path, environ=environ)

        assert settings.environment == "Production"
        assert settings.database_provider is ProviderType.SQLSERVER
        assert settings.plugin_directory == tmp_path / "custom"

    def test_config_path_from_environment(self, tmp_path):
        path = tmp_path / "elsewhere.yaml"
        path.write_text("environment: Test\n")

        assert find_config_file(tmp_path, environ={"DBMIGRATOR_CONFIG": str(path)}) == path
        assert load_settings(environ={"DBMIGRATOR_CONFIG": str(path)}).environment == "Test"

    def test_default_file_lookup(self, tmp_path):
        assert find_config_file(tmp_path, environ={}) is None
        (tmp_path / "dbmigrator.yml").write_text("environment: Test\n")
        assert find_config_file(tmp_path, environ={}) == tmp_path / "dbmigrator.yml"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "missing.yaml", environ={})

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "settings.ini"
        path.write_text("[x]\n")
        with pytest.raises(ConfigurationError):
            load_settings(path, environ={})

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "dbmigrator.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(path, environ={})
        assert "mapping" in exc_info.value.message

    @pytest.mark.parametrize("content,field", [
        ("database_provider: Oracle\n", "database_provider"),
        ("command_timeout: 1\n", "command_timeout"),
        ("logging:\n  level: LOUD\n", "logging.level"),
        ("unknown_key: 1\n", "unknown_key"),
        ("tenants:\n  - identifier: Acme\n  - identifier: acme\n", "tenants"),
    ])
    def test_invalid_settings(self, tmp_path, content, field):
        path = tmp_path / "dbmigrator.yaml"
        path.write_text(content)

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(path, environ={})

        assert field in exc_info.value.message


class TestMigratorSettings:

    def test_defaults(self):
        settings = MigratorSettings()
        assert settings.database_provider is ProviderType.SQLSERVER
        assert settings.command_timeout == 30
        assert settings.backup.backup_before_migration is True
        assert settings.available_tenants == ["Default"]

    def test_tenant_lookup_is_case_insensitive(self):
        settings = MigratorSettings(tenants=[{"identifier": " Acme "}])
        assert settings.tenant("ACME").identifier == "Acme"
        assert settings.tenant("Other") is None
