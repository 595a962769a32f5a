"""Plugin contract, lifecycle manager, loaders and built-in plugins."""

from mcp_dispatch.plugins.base import Plugin, ServerHandle
from mcp_dispatch.plugins.builtin import LoggingPlugin, MetricsPlugin, MetricsSnapshot
from mcp_dispatch.plugins.loader import (
    ENTRY_POINT_GROUP,
    discover_plugins,
    load_plugin_file,
    load_plugin_reference,
)
from mcp_dispatch.plugins.manager import PluginAuditRecord, PluginInfo, PluginManager
from mcp_dispatch.plugins.manifest import (
    InstalledPlugin,
    InstallStatus,
    PluginIntegrity,
    PluginManifest,
)

__all__ = [
    "ENTRY_POINT_GROUP",
    "InstallStatus",
    "InstalledPlugin",
    "LoggingPlugin",
    "MetricsPlugin",
    "MetricsSnapshot",
    "Plugin",
    "PluginAuditRecord",
    "PluginInfo",
    "PluginIntegrity",
    "PluginManager",
    "PluginManifest",
    "ServerHandle",
    "discover_plugins",
    "load_plugin_file",
    "load_plugin_reference",
]
