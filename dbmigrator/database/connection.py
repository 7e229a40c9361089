"""
Connection resolution.

Turns configuration plus a (provider, tenant) pair into a
``ConnectionDescriptor``, and turns a descriptor into a SQLAlchemy URL.
"""

import logging
from typing import Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from dbmigrator.core.exceptions import ConfigurationError, ConnectionNotConfiguredError

from .config import ConnectionDescriptor, ProviderType

logger = logging.getLogger(__name__)

DEFAULT_KEYS = ("default", "defaultconnection")
TENANT_KEY_PREFIX = "Tenant_"
DEFAULT_TENANT = "Default"

LOCAL_DEVELOPMENT_FALLBACKS: Dict[ProviderType, str] = {
    ProviderType.SQLSERVER: "Server=localhost;Database=dbmigrator;Trusted_Connection=True;TrustServerCertificate=True",
    ProviderType.POSTGRESQL: "Host=localhost;Port=5432;Database=dbmigrator;Username=postgres",
    ProviderType.SQLITE: "Data Source=dbmigrator.db",
}

_SQLALCHEMY_BACKENDS = {
    ProviderType.SQLSERVER: "mssql",
    ProviderType.POSTGRESQL: "postgresql",
    ProviderType.SQLITE: "sqlite",
}

_NAME_HINTS = (
    ("sqlserver", ProviderType.SQLSERVER),
    ("mssql", ProviderType.SQLSERVER),
    ("postgres", ProviderType.POSTGRESQL),
    ("npgsql", ProviderType.POSTGRESQL),
    ("sqlite", ProviderType.SQLITE),
)


def tenant_key(tenant_id: str) -> str:
    return f"{TENANT_KEY_PREFIX}{tenant_id}"


def provider_from_key(key: str) -> Optional[ProviderType]:
    """Infer the provider a connection-string entry is meant for from its name."""
    provider = ProviderType.try_normalize(key)
    if provider is not None:
        return provider
    lowered = key.lower()
    for hint, hinted in _NAME_HINTS:
        if hint in lowered:
            return hinted
    return None


class ConnectionResolver:
    """
    Resolves connection descriptors for a provider and tenant.

    Lookup order, first match wins:

    1. ``Tenant_{id}`` entry for the tenant
    2. entry for the provider
    3. the default connection string
    4. a local-development fallback, when allowed
    """

    def __init__(
        self,
        connection_strings: Optional[Dict[str, str]] = None,
        default_provider: Union[str, ProviderType] = ProviderType.SQLSERVER,
        default_connection_string: Optional[str] = None,
        tenant_connection_strings: Optional[Dict[str, str]] = None,
        timeout_seconds: int = 30,
        use_transaction: bool = True,
        allow_local_fallback: bool = True,
    ):
        self.default_provider = ProviderType.normalize(default_provider)
        self.timeout_seconds = timeout_seconds
        self.use_transaction = use_transaction
        self.allow_local_fallback = allow_local_fallback
        self._default: Optional[str] = default_connection_string if _configured(default_connection_string) else None
        self._providers: Dict[ProviderType, str] = {}
        self._tenants: Dict[str, str] = {}

        for key, value in (connection_strings or {}).items():
            self._register(key, value)
        for tenant_id, value in (tenant_connection_strings or {}).items():
            if _configured(value):
                self._tenants[tenant_id.lower()] = value
        # the default string belongs to the default provider unless it has its own
        if self._default is not None:
            self._providers.setdefault(self.default_provider, self._default)

    @classmethod
    def from_settings(cls, settings) -> "ConnectionResolver":
        """Build a resolver from ``MigratorSettings``."""
        return cls(
            connection_strings=settings.connection_strings,
            default_provider=settings.database_provider,
            default_connection_string=settings.default_connection_string,
            tenant_connection_strings={
                t.identifier: t.connection_string
                for t in settings.tenants if t.connection_string
            },
            timeout_seconds=settings.command_timeout,
            use_transaction=settings.use_transaction,
            allow_local_fallback=settings.allow_local_fallback,
        )

    def _register(self, key: str, value: Optional[str]) -> None:
        if not _configured(value):
            logger.debug(f"Skipping empty connection string '{key}'")
            return
        if key.startswith(TENANT_KEY_PREFIX):
            self._tenants[key[len(TENANT_KEY_PREFIX):].lower()] = value
        elif key.lower() in DEFAULT_KEYS:
            if self._default is None:
                self._default = value
        else:
            provider = provider_from_key(key)
            if provider is None:
                logger.warning(f"Ignoring connection string '{key}': cannot tell which provider it is for")
                return
            self._providers[provider] = value

    def resolve(
        self,
        provider: Optional[Union[str, ProviderType]] = None,
        tenant_id: Optional[str] = None,
    ) -> ConnectionDescriptor:
        """
        Resolve a descriptor for ``provider`` (default provider when None)
        and ``tenant_id``.

        Raises:
            UnknownProviderError: provider name is not recognised
            ConnectionNotConfiguredError: nothing matched and the local
                fallback is disabled
        """
        provider_type = ProviderType.normalize(provider) if provider is not None else self.default_provider
        connection_string, source = self._lookup(provider_type, tenant_id)
        if connection_string is None:
            raise ConnectionNotConfiguredError(
                f"No connection string configured for provider {provider_type.value}"
                + (f" and tenant '{tenant_id}'" if tenant_id and tenant_id != DEFAULT_TENANT else ""),
                details={"provider": provider_type.value, "tenant_id": tenant_id},
            )

        try:
            descriptor = ConnectionDescriptor(
                connection_string=connection_string,
                provider_name=provider_type,
                timeout_seconds=self.timeout_seconds,
                use_transaction=self.use_transaction,
            )
        except PydanticValidationError as e:
            reasons = "; ".join(error["msg"] for error in e.errors(include_input=False))
            raise ConfigurationError(
                f"Invalid {source} connection for provider {provider_type.value}: {reasons}",
                details={"provider": provider_type.value, "tenant_id": tenant_id},
            ) from None
        logger.debug(f"Resolved {source} connection: {descriptor}")
        return descriptor

    def _lookup(self, provider: ProviderType, tenant_id: Optional[str]):
        if tenant_id:
            tenant_value = self._tenants.get(tenant_id.lower())
            if tenant_value:
                return tenant_value, tenant_key(tenant_id)
        if provider in self._providers:
            return self._providers[provider], provider.value
        if self._default:
            return self._default, "default"
        if self.allow_local_fallback:
            logger.warning(f"No connection string configured; using local development fallback for {provider.value}")
            return LOCAL_DEVELOPMENT_FALLBACKS[provider], "fallback"
        return None, None

    def has_provider_connection(self, provider: Union[str, ProviderType]) -> bool:
        provider_type = ProviderType.try_normalize(provider)
        return provider_type is not None and provider_type in self._providers

    def switchable_provider(self, name: Union[str, ProviderType]) -> Optional[ProviderType]:
        """The canonical provider for ``name`` if a switch to it may commit, else None."""
        provider_type = ProviderType.try_normalize(name)
        if provider_type is None or provider_type not in self._providers:
            return None
        return provider_type

    def available_providers(self) -> List[ProviderType]:
        """Providers with their own configured connection string."""
        return sorted(self._providers, key=lambda p: p.value)

    def configured_tenants(self) -> List[str]:
        return sorted(self._tenants)


def _configured(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def parse_connection_string(connection_string: str) -> Dict[str, str]:
    """Split an ADO-style ``key=value;`` string into a dict with lower-cased keys."""
    params: Dict[str, str] = {}
    for part in connection_string.split(";"):
        if not part.strip():
            continue
        if "=" not in part:
            raise ConfigurationError("Malformed connection string: every segment must be key=value")
        key, value = part.split("=", 1)
        params[key.strip().lower()] = value.strip()
    return params


def _first(params: Dict[str, str], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        if params.get(key):
            return params[key]
    return None


def _is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("true", "yes", "sspi", "1")


def build_url(descriptor: ConnectionDescriptor) -> URL:
    """
    Convert a descriptor's connection string into a SQLAlchemy URL.

    Accepts either a SQLAlchemy URL (``scheme://...``) whose backend must
    match the descriptor's provider, or an ADO-style key/value string.
    """
    raw = descriptor.connection_string.get_secret_value().strip()
    provider = descriptor.provider_name

    if "://" in raw:
        try:
            url = make_url(raw)
        except ArgumentError as e:
            raise ConfigurationError(f"Invalid database URL for {provider.value}: {e}") from None
        if url.get_backend_name() != _SQLALCHEMY_BACKENDS[provider]:
            raise ConfigurationError(
                f"Database URL backend '{url.get_backend_name()}' does not match provider {provider.value}"
            )
        return url

    params = parse_connection_string(raw)
    if provider == ProviderType.SQLITE:
        return _sqlite_url(params)
    if provider == ProviderType.POSTGRESQL:
        return _postgresql_url(params)
    return _sqlserver_url(params)


def _sqlite_url(params: Dict[str, str]) -> URL:
    database = _first(params, ("data source", "datasource", "filename", "database"))
    if not database:
        raise ConfigurationError("SQLite connection string needs a 'Data Source'")
    return URL.create("sqlite", database=database)


def _postgresql_url(params: Dict[str, str]) -> URL:
    host = _first(params, ("host", "server", "address"))
    port = _first(params, ("port",))
    query = {}
    if params.get("sslmode"):
        query["sslmode"] = params["sslmode"]
    return URL.create(
        "postgresql+psycopg2",
        username=_first(params, ("username", "user id", "userid", "user", "uid")),
        password=_first(params, ("password", "pwd")),
        host=host,
        port=int(port) if port else None,
        database=_first(params, ("database", "initial catalog", "db")),
        query=query,
    )


def _sqlserver_url(params: Dict[str, str]) -> URL:
    server = _first(params, ("server", "data source", "address", "addr", "network address")) or "localhost"
    if server.lower().startswith("tcp:"):
        server = server[4:]
    host, _, port = server.partition(",")
    query = {"driver": params.get("driver", "ODBC Driver 18 for SQL Server").strip("{}")}
    if _is_true(_first(params, ("trusted_connection", "integrated security"))):
        query["Trusted_Connection"] = "yes"
    if _is_true(params.get("trustservercertificate")):
        query["TrustServerCertificate"] = "yes"
    if params.get("encrypt"):
        query["Encrypt"] = "yes" if _is_true(params["encrypt"]) else "no"
    return URL.create(
        "mssql+pyodbc",
        username=_first(params, ("user id", "userid", "uid", "user", "username")),
        password=_first(params, ("password", "pwd")),
        host=host.strip() or "localhost",
        port=int(port) if port.strip() else None,
        database=_first(params, ("database", "initial catalog")),
        query=query,
    )
