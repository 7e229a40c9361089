"""
Plugin registry and loader.

Built-in plugins are registered first, then every ``*.py`` module in the
plugin directory (non-recursive) is imported and searched for a single
``MigrationPlugin`` subclass. A module that fails to import, defines no
plugin, defines several, or yields an invalid plugin is skipped with a
warning; the remaining plugins still register.
"""

import importlib.util
import inspect
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Dict, Iterator, List, Optional, Type, Union

from dbmigrator.core.exceptions import (
    PluginConfigurationError,
    PluginLoadError,
    ProviderNotFoundError,
    UnknownProviderError,
)

from .base import Capability, MigrationHandler, MigrationPlugin, PluginDescriptor
from .config import ProviderType
from .guard import GuardedHandler

logger = logging.getLogger(__name__)

SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
PLUGIN_MODULE_PREFIX = "dbmigrator_plugins"


@dataclass(frozen=True)
class PluginLoadFailure:
    """A plugin module that was skipped, and why."""
    source: str
    reason: str


class PluginRegistry:
    """Registered plugins indexed by provider type.

    Read-only once ``load`` has returned.
    """

    def __init__(
        self,
        plugin_directory: Optional[Union[str, Path]] = None,
        load_builtin: bool = True,
    ):
        self.plugin_directory = Path(plugin_directory) if plugin_directory else None
        self.load_builtin = load_builtin
        self._plugins: Dict[ProviderType, List[PluginDescriptor]] = {}
        self._failures: List[PluginLoadFailure] = []

    # -- loading ---------------------------------------------------------

    def load(self) -> "PluginRegistry":
        """
        Register built-in and directory plugins.

        Raises:
            PluginConfigurationError: two plugins claim to be the default
                for one provider, or the plugin directory cannot be created.
                Nothing stays registered in that case.
        """
        self._plugins = {}
        self._failures = []

        if self.load_builtin:
            from .migrators import BUILTIN_PLUGINS
            for plugin_class in BUILTIN_PLUGINS:
                self._try_register(plugin_class, source="builtin")

        if self.plugin_directory is not None:
            self._load_directory(self.plugin_directory)

        try:
            self._check_defaults()
        except PluginConfigurationError:
            self._plugins = {}
            raise

        logger.info(
            f"Registered {len(self.plugins())} plugin(s) for {len(self._plugins)} provider(s)"
            + (f"; {len(self._failures)} skipped" if self._failures else "")
        )
        return self

    def _load_directory(self, directory: Path) -> None:
        if not directory.exists():
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PluginConfigurationError(
                    f"Cannot create plugin directory {directory}: {e}"
                ) from e
            logger.info(f"Created plugin directory {directory}")
            return
        if not directory.is_dir():
            raise PluginConfigurationError(f"Plugin path {directory} is not a directory")

        for path in sorted(directory.glob("*.py")):
            if path.name.startswith("_"):
                continue
            try:
                plugin_class = self._plugin_class_from(self._import_module(path), path)
            except PluginLoadError as e:
                self._record_failure(str(path), e.message)
                continue
            self._try_register(plugin_class, source=str(path))

    @staticmethod
    def _import_module(path: Path) -> ModuleType:
        module_name = f"{PLUGIN_MODULE_PREFIX}.{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise PluginLoadError(f"Cannot load {path.name} as a module", path=str(path))
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise PluginLoadError(
                f"Import of {path.name} failed: {type(e).__name__}: {e}", path=str(path)
            ) from e
        return module

    @staticmethod
    def _plugin_class_from(module: ModuleType, path: Path) -> Type[MigrationPlugin]:
        candidates = [
            obj for _, obj in inspect.getmembers(module, inspect.isclass)
            if issubclass(obj, MigrationPlugin)
            and obj.__module__ == module.__name__
            and not inspect.isabstract(obj)
        ]
        if not candidates:
            raise PluginLoadError(f"{path.name} defines no MigrationPlugin implementation", path=str(path))
        if len(candidates) > 1:
            names = ", ".join(sorted(c.__name__ for c in candidates))
            raise PluginLoadError(
                f"{path.name} defines {len(candidates)} MigrationPlugin implementations ({names}); expected one",
                path=str(path),
            )
        return candidates[0]

    def _try_register(self, plugin_class: Type[MigrationPlugin], source: str) -> None:
        try:
            descriptor = self._describe(plugin_class, source)
        except PluginLoadError as e:
            self._record_failure(source, e.message)
            return
        self.register(descriptor)

    @staticmethod
    def _describe(plugin_class: Type[MigrationPlugin], source: str) -> PluginDescriptor:
        """Instantiate and validate a plugin class."""
        label = plugin_class.__name__
        try:
            plugin = plugin_class()
            handler = plugin.create_handler()
        except Exception as e:
            raise PluginLoadError(f"{label} could not be initialised: {type(e).__name__}: {e}") from e

        if not isinstance(plugin.name, str) or not plugin.name.strip():
            raise PluginLoadError(f"{label} has no name")
        try:
            provider = ProviderType.normalize(plugin.provider_type)
        except UnknownProviderError as e:
            raise PluginLoadError(f"{label}: {e.message}") from e
        if not isinstance(plugin.version, str) or not SEMVER_PATTERN.match(plugin.version):
            raise PluginLoadError(f"{label} has invalid version '{plugin.version}'; expected semver")
        if not isinstance(handler, MigrationHandler):
            raise PluginLoadError(
                f"{label}.create_handler() returned {type(handler).__name__}, not a MigrationHandler"
            )
        try:
            handler_provider = ProviderType.normalize(handler.provider_type)
        except Exception as e:
            raise PluginLoadError(f"{label} handler reports no valid provider: {e}") from e
        if handler_provider != provider:
            raise PluginLoadError(
                f"{label} declares provider {provider.value} but its handler serves {handler_provider.value}"
            )

        name = plugin.name.strip()
        return PluginDescriptor(
            name=name,
            provider_type=provider,
            version=plugin.version,
            description=plugin.description or "",
            capabilities=frozenset(
                c.value if isinstance(c, Capability) else str(c) for c in (plugin.capabilities or ())
            ),
            is_default=bool(plugin.is_default),
            handler=GuardedHandler(handler, name, provider),
            source=source,
        )

    def register(self, descriptor: PluginDescriptor) -> None:
        """Add a validated descriptor. A second plugin with the same name for
        the same provider is rejected as a load failure."""
        group = self._plugins.setdefault(descriptor.provider_type, [])
        if any(p.name.lower() == descriptor.name.lower() for p in group):
            self._record_failure(
                descriptor.source,
                f"plugin '{descriptor.name}' is already registered for {descriptor.provider_type.value}",
            )
            return
        group.append(descriptor)
        logger.debug(
            f"Registered plugin '{descriptor.name}' v{descriptor.version} for "
            f"{descriptor.provider_type.value} from {descriptor.source}"
        )

    def _record_failure(self, source: str, reason: str) -> None:
        logger.warning(f"Skipping plugin {source}: {reason}")
        self._failures.append(PluginLoadFailure(source=source, reason=reason))

    def _check_defaults(self) -> None:
        for provider, group in self._plugins.items():
            defaults = [p for p in group if p.is_default]
            if len(defaults) > 1:
                names = ", ".join(f"'{p.name}'" for p in defaults)
                raise PluginConfigurationError(
                    f"Plugins {names} are all marked default for provider {provider.value}",
                    details={"provider": provider.value, "plugins": [p.name for p in defaults]},
                )

    # -- lookup ----------------------------------------------------------

    @property
    def warnings(self) -> List[PluginLoadFailure]:
        return list(self._failures)

    def providers(self) -> List[ProviderType]:
        return sorted((p for p, group in self._plugins.items() if group), key=lambda p: p.value)

    def plugins(self, provider: Optional[Union[str, ProviderType]] = None) -> List[PluginDescriptor]:
        if provider is not None:
            return list(self._plugins.get(ProviderType.normalize(provider), []))
        return [p for group in self._plugins.values() for p in group]

    def is_available(self, provider: Union[str, ProviderType]) -> bool:
        provider_type = ProviderType.try_normalize(provider)
        return provider_type is not None and bool(self._plugins.get(provider_type))

    def get_plugin(
        self,
        provider: Union[str, ProviderType],
        name: Optional[str] = None,
    ) -> PluginDescriptor:
        """
        Look up the plugin serving ``provider``.

        With ``name``, returns that plugin. Without, returns the plugin
        marked default, or the only plugin when the provider has exactly
        one. Several plugins and no default is an error.

        Raises:
            ProviderNotFoundError: no matching plugin
        """
        if not self._plugins:
            raise ProviderNotFoundError(
                "No provider available: no migration plugins are registered"
            )
        try:
            provider_type = ProviderType.normalize(provider)
        except UnknownProviderError as e:
            raise ProviderNotFoundError(e.message) from e

        group = self._plugins.get(provider_type, [])
        if not group:
            available = ", ".join(p.value for p in self.providers()) or "none"
            raise ProviderNotFoundError(
                f"No plugin registered for provider {provider_type.value} (available: {available})",
                details={"provider": provider_type.value},
            )

        if name is not None:
            for plugin in group:
                if plugin.name.lower() == name.lower():
                    return plugin
            raise ProviderNotFoundError(
                f"No plugin named '{name}' for provider {provider_type.value}",
                details={"provider": provider_type.value, "plugin": name},
            )

        defaults = [p for p in group if p.is_default]
        if defaults:
            return defaults[0]
        if len(group) == 1:
            return group[0]
        names = ", ".join(sorted(p.name for p in group))
        raise ProviderNotFoundError(
            f"Provider {provider_type.value} has {len(group)} plugins ({names}) and none is marked default",
            details={"provider": provider_type.value},
        )

    def __len__(self) -> int:
        return len(self.plugins())

    def __iter__(self) -> Iterator[PluginDescriptor]:
        return iter(self.plugins())
