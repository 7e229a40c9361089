"""Migration contract: request/result models and the plugin/handler base classes."""

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dbmigrator.core.error_handler import ErrorCategory
from dbmigrator.utils.helpers import utc_now

from .config import ConnectionDescriptor, ProviderType

MIGRATION_ID_FORMAT = "%Y%m%d%H%M%S"
MIGRATION_ID_LENGTH = 14


class Capability(str, Enum):
    """Operations a plugin declares it supports."""
    CREATE_MIGRATION = "create_migration"
    MIGRATE = "migrate"
    STATUS = "status"
    GENERATE_SCRIPTS = "generate_scripts"
    TEST_CONNECTION = "test_connection"


ALL_CAPABILITIES: FrozenSet[str] = frozenset(c.value for c in Capability)


class MigrationRequest(BaseModel):
    """Input to every handler operation."""

    model_config = ConfigDict(frozen=True)

    connection: ConnectionDescriptor
    migration_name: Optional[str] = None
    output_directory: Optional[Path] = None
    migrations_directory: Optional[Path] = None
    create_backup: bool = False
    tenant_id: str = "Default"
    environment: str = "Development"
    verbose: bool = False


class MigrationInfo(BaseModel):
    """A single migration, applied or pending."""
    id: str = Field(min_length=1)
    name: str
    applied_on: Optional[datetime] = None
    script: Optional[Path] = None


class MigrationResult(BaseModel):
    """Outcome of a create, migrate or script-generation operation."""
    success: bool
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    applied_migrations: List[MigrationInfo] = Field(default_factory=list)
    scripts_path: Optional[Path] = None
    backup_path: Optional[Path] = None
    additional_info: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_error_message(self) -> "MigrationResult":
        if self.success and (self.error_message is not None or self.error_category is not None):
            raise ValueError("A successful result cannot carry an error")
        if not self.success and not self.error_message:
            raise ValueError("A failed result must carry an error message")
        return self

    @classmethod
    def succeeded(cls, **kwargs) -> "MigrationResult":
        return cls(success=True, **kwargs)

    @classmethod
    def failed(
        cls,
        message: str,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        **kwargs
    ) -> "MigrationResult":
        return cls(success=False, error_message=message or "Unknown error", error_category=category, **kwargs)


class MigrationStatus(BaseModel):
    """Read-only snapshot of a database's migration state."""
    has_pending_migrations: bool = False
    pending_migrations_count: int = Field(default=0, ge=0)
    pending_migrations: List[MigrationInfo] = Field(default_factory=list)
    applied_migrations: List[MigrationInfo] = Field(default_factory=list)
    last_migration_date: Optional[datetime] = None
    last_migration_name: Optional[str] = None
    provider_name: Optional[ProviderType] = None
    database_name: Optional[str] = None
    database_version: Optional[str] = None
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None

    @model_validator(mode="after")
    def derive_pending_flag(self) -> "MigrationStatus":
        if self.pending_migrations and self.pending_migrations_count == 0:
            self.pending_migrations_count = len(self.pending_migrations)
        self.has_pending_migrations = self.pending_migrations_count > 0
        return self

    @property
    def success(self) -> bool:
        return self.error_message is None

    @classmethod
    def failed(
        cls,
        message: str,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        **kwargs
    ) -> "MigrationStatus":
        return cls(error_message=message or "Unknown error", error_category=category, **kwargs)


class MigrationHandler(ABC):
    """The object inside a plugin that executes migration operations.

    Every operation takes an optional ``cancel_event``; handlers check it
    between units of work and stop early once it is set.
    """

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Provider family this handler talks to."""
        pass

    @abstractmethod
    async def create_migration(
        self, request: MigrationRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> MigrationResult:
        """Allocate a migration id and write its script file."""
        pass

    @abstractmethod
    async def migrate(
        self, request: MigrationRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> MigrationResult:
        """Apply all pending migrations in ascending id order."""
        pass

    @abstractmethod
    async def get_status(
        self, request: MigrationRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> MigrationStatus:
        """Report applied and pending migrations without changing the database."""
        pass

    @abstractmethod
    async def generate_scripts(
        self, request: MigrationRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> MigrationResult:
        """Write SQL for pending migrations without applying them."""
        pass

    @abstractmethod
    async def test_connection(
        self, request: MigrationRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """Probe connectivity within the request's timeout."""
        pass


class MigrationPlugin(ABC):
    """Base class every provider plugin module subclasses exactly once.

    Plugin metadata lives in class attributes; the registry reads them,
    validates them and calls ``create_handler`` once at load time.
    """

    name: str = ""
    provider_type: Union[str, ProviderType] = ""
    version: str = "1.0.0"
    description: str = ""
    capabilities: FrozenSet[str] = ALL_CAPABILITIES
    is_default: bool = False

    @abstractmethod
    def create_handler(self) -> MigrationHandler:
        """Build the handler that serves this plugin's operations."""
        pass


@dataclass(frozen=True)
class PluginDescriptor:
    """A validated, registered plugin."""
    name: str
    provider_type: ProviderType
    version: str
    description: str
    capabilities: FrozenSet[str]
    is_default: bool
    handler: MigrationHandler = field(compare=False, repr=False)
    source: str = "builtin"

    def supports(self, capability: Union[str, Capability]) -> bool:
        value = capability.value if isinstance(capability, Capability) else capability
        return value in self.capabilities


class MigrationIdGenerator:
    """Allocates 14-digit UTC timestamp ids that strictly increase.

    If the clock has not moved past the last id handed out (or past any
    id passed in as existing), the next id is that id plus one second.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._last_id: Optional[str] = None
        self._lock = threading.Lock()

    @staticmethod
    def is_migration_id(value: str) -> bool:
        return len(value) == MIGRATION_ID_LENGTH and value.isdigit()

    def next_id(self, existing_ids: Iterable[str] = ()) -> str:
        with self._lock:
            candidate = self._clock().strftime(MIGRATION_ID_FORMAT)
            known = [i for i in existing_ids if self.is_migration_id(i)]
            if self._last_id:
                known.append(self._last_id)
            floor = max(known) if known else None
            if floor is not None and candidate <= floor:
                bumped = datetime.strptime(floor, MIGRATION_ID_FORMAT) + timedelta(seconds=1)
                candidate = bumped.strftime(MIGRATION_ID_FORMAT)
            self._last_id = candidate
            return candidate


migration_ids = MigrationIdGenerator()


def default_migration_name(now: Optional[datetime] = None) -> str:
    """Name used when the caller does not supply one."""
    return f"Migration_{(now or utc_now()).strftime('%Y%m%d_%H%M%S')}"
