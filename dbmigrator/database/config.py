"""Provider identifiers and connection descriptors using Pydantic."""

from enum import Enum
from typing import Dict, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from dbmigrator.core.exceptions import UnknownProviderError
from dbmigrator.utils.helpers import mask_connection_string


class ProviderType(str, Enum):
    """Supported database provider families, in canonical spelling."""
    SQLSERVER = "SqlServer"
    POSTGRESQL = "PostgreSQL"
    SQLITE = "SQLite"

    @classmethod
    def normalize(cls, name: Union[str, "ProviderType"]) -> "ProviderType":
        """
        Map a provider name or one of its synonyms to its canonical member.

        Matching ignores case, surrounding whitespace, spaces, dashes and
        underscores. Unknown names raise ``UnknownProviderError``.
        """
        if isinstance(name, ProviderType):
            return name
        if not isinstance(name, str):
            raise UnknownProviderError(repr(name))
        key = name.strip().lower().replace(" ", "").replace("-", "").replace("_", "")
        try:
            return _PROVIDER_SYNONYMS[key]
        except KeyError:
            raise UnknownProviderError(name) from None

    @classmethod
    def try_normalize(cls, name: Union[str, "ProviderType"]):
        """Like ``normalize`` but returns None for unknown names."""
        try:
            return cls.normalize(name)
        except UnknownProviderError:
            return None


_PROVIDER_SYNONYMS: Dict[str, ProviderType] = {
    "sqlserver": ProviderType.SQLSERVER,
    "mssql": ProviderType.SQLSERVER,
    "mssqlserver": ProviderType.SQLSERVER,
    "microsoftsqlserver": ProviderType.SQLSERVER,
    "tsql": ProviderType.SQLSERVER,
    "postgresql": ProviderType.POSTGRESQL,
    "postgres": ProviderType.POSTGRESQL,
    "npgsql": ProviderType.POSTGRESQL,
    "pgsql": ProviderType.POSTGRESQL,
    "pg": ProviderType.POSTGRESQL,
    "sqlite": ProviderType.SQLITE,
    "sqlite3": ProviderType.SQLITE,
}


class ConnectionDescriptor(BaseModel):
    """Everything a plugin needs to reach one database.

    Immutable; the connection string is held as a secret and only ever
    rendered through ``masked_connection_string``.
    """

    model_config = ConfigDict(frozen=True)

    connection_string: SecretStr
    provider_name: ProviderType
    timeout_seconds: int = Field(default=30, ge=5, le=300)
    use_transaction: bool = True

    @field_validator('provider_name', mode='before')
    @classmethod
    def normalize_provider(cls, v):
        return ProviderType.normalize(v)

    @field_validator('connection_string')
    @classmethod
    def validate_connection_string(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("Connection string must not be empty")
        return v

    @property
    def masked_connection_string(self) -> str:
        return mask_connection_string(self.connection_string.get_secret_value())

    def __str__(self) -> str:
        return f"{self.provider_name.value}: {self.masked_connection_string}"
