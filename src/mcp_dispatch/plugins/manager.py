"""Plugin lifecycle management.

Tracks which plugins are registered and which are loaded (loaded is a
subset of registered, by name). Loading follows descending priority;
teardown runs in reverse load order. Failures are fail-fast and never
rolled back: a plugin is marked loaded only when initialize() succeeds,
and unloaded only when cleanup() succeeds.

Plugins can also be installed from a JSON manifest. Installing validates
the manifest and its entry file; activation imports the entry, loads the
plugin's dependencies first and then the plugin itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path

from mcp_dispatch.errors import PluginLifecycleError, PluginNotFoundError, PluginNotLoadedError
from mcp_dispatch.plugins.base import Plugin, ServerHandle
from mcp_dispatch.plugins.loader import load_plugin_file
from mcp_dispatch.plugins.manifest import (
    RUNTIME_ENTRY,
    InstalledPlugin,
    InstallStatus,
    PluginManifest,
    read_manifest,
    verify_integrity,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PluginInfo:
    """Summary row returned by PluginManager.list_plugins()."""

    name: str
    version: str
    priority: int
    loaded: bool


@dataclass(frozen=True)
class PluginAuditRecord:
    """One lifecycle event in the plugin audit log.

    Args:
        timestamp: When the action happened (UTC).
        plugin: Plugin name.
        action: ``install``, ``register``, ``activate`` or ``deactivate``.
        version: Plugin version at the time.
        success: False when the action raised.
        error: Exception text for failed actions.
    """

    timestamp: datetime
    plugin: str
    action: str
    version: str
    success: bool = True
    error: str | None = None


class PluginManager:
    """Registers, loads and unloads plugins.

    Example:
        manager = PluginManager()
        manager.register(MetricsPlugin())
        await manager.load_all(server)
        ...
        await manager.unload_all()
    """

    def __init__(self) -> None:
        self._plugins: dict[str, Plugin] = {}
        # Insertion order is load order
        self._loaded: dict[str, Plugin] = {}
        self._audit: list[PluginAuditRecord] = []
        self._installed: dict[str, InstalledPlugin] = {}

    def register(self, plugin: Plugin) -> None:
        """Make a plugin known to the manager without loading it.

        Raises:
            PluginLifecycleError: If the plugin has no name.
        """
        name = getattr(plugin, "name", None)
        if not isinstance(name, str) or not name:
            raise PluginLifecycleError(f"Plugin {type(plugin).__name__} has no name")
        if name in self._plugins:
            logger.warning("Plugin %r is already registered, overwriting it", name)
        self._plugins[name] = plugin
        if name not in self._installed:
            self._installed[name] = InstalledPlugin(
                manifest=PluginManifest(name=name, version=plugin.version, entry=RUNTIME_ENTRY),
                entry_path=None,
                installed_at=datetime.now(tz=UTC),
                status=InstallStatus.ACTIVATED if name in self._loaded else InstallStatus.INSTALLED,
            )
        self._record(name, plugin.version, "register")
        logger.info("Plugin registered: %s v%s", name, plugin.version)

    async def load(self, name: str, server: ServerHandle) -> None:
        """Initialize one plugin against a server.

        Raises:
            PluginNotFoundError: If ``name`` was never registered.
            Exception: Whatever initialize() raised; the plugin stays unloaded.
        """
        plugin = self._plugins.get(name)
        if plugin is None:
            raise PluginNotFoundError(name)
        if name in self._loaded:
            logger.warning("Plugin %r is already loaded", name)
            return

        logger.info("Loading plugin: %s", name)
        try:
            await plugin.initialize(server)
        except Exception as exc:
            logger.error("Failed to load plugin %s: %s", name, exc, exc_info=True)
            self._record(name, plugin.version, "activate", exc)
            raise
        self._loaded[name] = plugin
        self._set_status(name, InstallStatus.ACTIVATED)
        self._record(name, plugin.version, "activate")
        logger.info("Plugin loaded: %s", name)

    async def load_all(self, server: ServerHandle) -> None:
        """Load every registered plugin, highest priority first.

        Stops at the first failure; plugins loaded before it stay loaded.
        """
        for plugin in self.ordered():
            await self.load(plugin.name, server)

    async def unload(self, name: str) -> None:
        """Run a loaded plugin's cleanup().

        Raises:
            PluginNotFoundError: If ``name`` was never registered.
            PluginNotLoadedError: If the plugin is not loaded.
            Exception: Whatever cleanup() raised; the plugin stays loaded
                so the unload can be retried.
        """
        plugin = self._plugins.get(name)
        if plugin is None:
            raise PluginNotFoundError(name)
        if name not in self._loaded:
            raise PluginNotLoadedError(name)

        logger.info("Unloading plugin: %s", name)
        try:
            await plugin.cleanup()
        except Exception as exc:
            logger.error("Failed to unload plugin %s: %s", name, exc, exc_info=True)
            self._record(name, plugin.version, "deactivate", exc)
            raise
        del self._loaded[name]
        self._set_status(name, InstallStatus.DEACTIVATED)
        self._record(name, plugin.version, "deactivate")
        logger.info("Plugin unloaded: %s", name)

    async def unload_all(self) -> None:
        """Unload loaded plugins in reverse load order, stopping at the first failure."""
        for name in reversed(list(self._loaded)):
            await self.unload(name)

    # --- Manifest installation ---

    def install_from_manifest(self, path: str | Path) -> InstalledPlugin:
        """Install a plugin described by a JSON manifest without importing it.

        The entry path is resolved relative to the manifest's directory and,
        when the manifest pins a sha256 digest, checked against it.

        Args:
            path: Path of the manifest file.

        Returns:
            A copy of the new install record.

        Raises:
            PluginLifecycleError: If the manifest is unreadable or invalid,
                the entry file is missing or fails its integrity check, or a
                plugin of the same name is currently loaded.
        """
        manifest_path = Path(path).resolve()
        manifest = read_manifest(manifest_path)
        if manifest.name in self._loaded:
            raise PluginLifecycleError(
                f"Plugin {manifest.name} is active; deactivate it before reinstalling",
                {"plugin": manifest.name},
            )
        entry_path = (manifest_path.parent / manifest.entry).resolve()
        if not entry_path.is_file():
            raise PluginLifecycleError(
                f"Plugin entry file not found: {entry_path}",
                {"plugin": manifest.name, "entry": str(entry_path)},
            )
        checksum_verified = verify_integrity(manifest, entry_path)

        record = InstalledPlugin(
            manifest=manifest,
            entry_path=entry_path,
            installed_at=datetime.now(tz=UTC),
            checksum_verified=checksum_verified,
        )
        self._installed[manifest.name] = record
        self._record(manifest.name, manifest.version, "install")
        logger.info("Plugin manifest installed: %s v%s", manifest.name, manifest.version)
        return replace(record)

    def restore_installed(self, record: InstalledPlugin) -> None:
        """Re-add an install record saved from an earlier installed_plugins() call."""
        self._installed[record.manifest.name] = replace(record)

    def installed_plugins(self) -> list[InstalledPlugin]:
        return [replace(record) for record in self._installed.values()]

    async def activate(self, name: str, server: ServerHandle) -> None:
        """Load an installed plugin, activating its dependencies first.

        A manifest-installed plugin is imported from its entry file the first
        time it is activated. Already loaded plugins are left alone.

        Raises:
            PluginLifecycleError: If the plugin or one of its dependencies is
                not installed, the dependencies form a cycle, or the entry
                file defines a plugin with a different name.
            Exception: Whatever initialize() raised.
        """
        await self._activate(name, server, [])

    async def _activate(self, name: str, server: ServerHandle, chain: list[str]) -> None:
        if name in self._loaded:
            return
        record = self._installed.get(name)
        if record is None:
            raise PluginLifecycleError(f"Plugin not installed: {name}", {"plugin": name})
        if name in chain:
            cycle = [*chain[chain.index(name) :], name]
            raise PluginLifecycleError(
                f"Circular plugin dependency: {' -> '.join(cycle)}", {"cycle": cycle}
            )

        for dependency in record.manifest.dependencies:
            await self._activate(dependency, server, [*chain, name])

        if name not in self._plugins:
            if record.entry_path is None:
                raise PluginNotFoundError(name)
            plugin = load_plugin_file(record.entry_path, record.manifest.attribute)
            if plugin.name != name:
                raise PluginLifecycleError(
                    f"Plugin name mismatch: manifest expects {name!r} "
                    f"but {record.entry_path.name} defines {plugin.name!r}",
                    {"plugin": name, "found": plugin.name},
                )
            self.register(plugin)
        await self.load(name, server)

    async def deactivate(self, name: str) -> None:
        """Unload a plugin if it is loaded; otherwise log and do nothing."""
        if name not in self._loaded:
            logger.warning("Plugin %r is not active", name)
            return
        await self.unload(name)

    def is_loaded(self, name: str) -> bool:
        return name in self._loaded

    def get(self, name: str) -> Plugin | None:
        return self._plugins.get(name)

    def ordered(self) -> list[Plugin]:
        """Registered plugins in load order: descending priority, then registration."""
        return sorted(self._plugins.values(), key=lambda plugin: -plugin.priority)

    def list_plugins(self) -> list[PluginInfo]:
        return [
            PluginInfo(
                name=plugin.name,
                version=plugin.version,
                priority=plugin.priority,
                loaded=plugin.name in self._loaded,
            )
            for plugin in self._plugins.values()
        ]

    def audit_log(self) -> list[PluginAuditRecord]:
        return list(self._audit)

    def clear(self) -> None:
        """Forget every plugin without running cleanup()."""
        if self._loaded:
            logger.warning(
                "Clearing plugin manager with loaded plugins: %s", ", ".join(self._loaded)
            )
        self._plugins.clear()
        self._loaded.clear()
        self._audit.clear()
        self._installed.clear()

    def _set_status(self, name: str, status: InstallStatus) -> None:
        record = self._installed.get(name)
        if record is None:
            return
        record.status = status
        if status is InstallStatus.ACTIVATED:
            record.activated_at = datetime.now(tz=UTC)

    def _record(
        self, name: str, version: str, action: str, exc: BaseException | None = None
    ) -> None:
        self._audit.append(
            PluginAuditRecord(
                timestamp=datetime.now(tz=UTC),
                plugin=name,
                action=action,
                version=version,
                success=exc is None,
                error=None if exc is None else (str(exc) or type(exc).__name__),
            )
        )
