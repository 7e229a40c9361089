"""
Session state for the database migrator.

``SessionState`` is the process-wide operational state: environment,
tenant, provider and the last known migration summary. ``Session`` owns
it and only changes it through named operations; ``SessionStore``
persists it between runs.
"""

import logging
import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from dbmigrator.database.base import MigrationStatus
from dbmigrator.database.config import ProviderType
from dbmigrator.utils.helpers import utc_now

logger = logging.getLogger(__name__)

BATCH_ENV_VARS = ("CI", "BATCH_MODE")


class SessionState(BaseModel):
    """Snapshot of session state. Never holds connection strings."""
    current_environment: str = "Development"
    current_tenant: str = "Default"
    current_provider: ProviderType = ProviderType.SQLSERVER
    is_batch_mode: bool = False
    auto_backup_enabled: bool = True
    has_pending_migrations: bool = False
    pending_migrations_count: int = Field(default=0, ge=0)
    last_migration_date: Optional[datetime] = None
    last_migration_name: Optional[str] = None
    last_status_check: Optional[datetime] = None

    @model_validator(mode="after")
    def derive_pending_flag(self) -> "SessionState":
        self.has_pending_migrations = self.pending_migrations_count > 0
        return self


class Session:
    """Owner of the process's ``SessionState``.

    Reads go through ``state`` (a copy); writes go through the named
    operations below, each applied under a lock.
    """

    def __init__(
        self,
        state: Optional[SessionState] = None,
        available_tenants: Optional[Iterable[str]] = None,
    ):
        self._state = state or SessionState()
        self._lock = threading.RLock()
        self._tenants: List[str] = list(available_tenants or ["Default"])
        if not any(t.lower() == "default" for t in self._tenants):
            self._tenants.insert(0, "Default")

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state.model_copy()

    @property
    def current_tenant(self) -> str:
        with self._lock:
            return self._state.current_tenant

    @property
    def current_provider(self) -> ProviderType:
        with self._lock:
            return self._state.current_provider

    @property
    def current_environment(self) -> str:
        with self._lock:
            return self._state.current_environment

    @property
    def auto_backup_enabled(self) -> bool:
        with self._lock:
            return self._state.auto_backup_enabled

    @property
    def is_batch_mode(self) -> bool:
        with self._lock:
            return self._state.is_batch_mode

    @property
    def available_tenants(self) -> List[str]:
        return list(self._tenants)

    def _clear_status(self) -> None:
        self._state.pending_migrations_count = 0
        self._state.has_pending_migrations = False
        self._state.last_migration_date = None
        self._state.last_migration_name = None
        self._state.last_status_check = None

    def set_environment(self, environment: str) -> None:
        if not environment or not environment.strip():
            raise ValueError("Environment name cannot be empty")
        with self._lock:
            self._state.current_environment = environment.strip()

    def switch_tenant(self, tenant: str) -> bool:
        """Switch to a known tenant; unknown tenants leave state untouched."""
        match = next((t for t in self._tenants if t.lower() == (tenant or "").lower()), None)
        if match is None:
            logger.warning(f"Unknown tenant '{tenant}'")
            return False
        with self._lock:
            if self._state.current_tenant != match:
                self._state.current_tenant = match
                self._clear_status()
        logger.info(f"Switched to tenant '{match}'")
        return True

    def switch_provider(self, provider: ProviderType) -> None:
        """Commit a provider switch the caller has already validated."""
        with self._lock:
            if self._state.current_provider != provider:
                self._state.current_provider = provider
                self._clear_status()
        logger.info(f"Switched to provider {provider.value}")

    def set_batch_mode(self, enabled: bool) -> None:
        with self._lock:
            self._state.is_batch_mode = enabled

    def detect_batch_mode(self, environ: Optional[Mapping[str, str]] = None, stdin=None) -> bool:
        """Batch mode when CI/BATCH_MODE is set or stdin is not a terminal."""
        environ = os.environ if environ is None else environ
        stdin = sys.stdin if stdin is None else stdin
        flagged = any(
            environ.get(var, "").strip().lower() not in ("", "0", "false", "no")
            for var in BATCH_ENV_VARS
        )
        try:
            interactive = stdin.isatty()
        except (AttributeError, ValueError):
            interactive = False
        batch = flagged or not interactive
        self.set_batch_mode(batch)
        return batch

    def set_auto_backup(self, enabled: bool) -> None:
        with self._lock:
            self._state.auto_backup_enabled = enabled

    def record_status(self, status: MigrationStatus, tenant: str, provider: ProviderType) -> bool:
        """Mirror a status into the session when it is for the current target."""
        if status.error_message is not None:
            return False
        with self._lock:
            if (tenant.lower() != self._state.current_tenant.lower()
                    or provider != self._state.current_provider):
                return False
            self._state.pending_migrations_count = status.pending_migrations_count
            self._state.has_pending_migrations = status.has_pending_migrations
            self._state.last_migration_date = status.last_migration_date
            self._state.last_migration_name = status.last_migration_name
            self._state.last_status_check = utc_now()
        return True


class SessionStore:
    """Saves and restores ``SessionState`` as YAML."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[SessionState]:
        """The saved state, or None when there is none or it is unreadable."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            return SessionState.model_validate(data)
        except (OSError, yaml.YAMLError, PydanticValidationError) as e:
            logger.warning(f"Ignoring unreadable session state {self.path}: {e}")
            return None

    def save(self, state: SessionState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, 'w', encoding='utf-8') as f:
            yaml.safe_dump(state.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
        os.replace(tmp, self.path)
