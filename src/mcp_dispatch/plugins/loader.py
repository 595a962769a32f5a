"""Locate plugins by import reference or entry point.

A reference has the form ``package.module:attribute``. The attribute may
be a Plugin subclass (instantiated with no arguments) or a Plugin
instance. Installed distributions advertise plugins under the
``mcp_dispatch.plugins`` entry-point group. Manifest-installed plugins
are imported straight from their source file.
"""

from __future__ import annotations

import hashlib
import importlib.util
import logging
import sys
from importlib import import_module
from importlib.metadata import entry_points
from pathlib import Path
from typing import Any

from mcp_dispatch.errors import PluginLifecycleError
from mcp_dispatch.plugins.base import Plugin

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "mcp_dispatch.plugins"


def _as_plugin(obj: Any, origin: str) -> Plugin:
    if isinstance(obj, type) and issubclass(obj, Plugin):
        try:
            obj = obj()
        except Exception as exc:
            raise PluginLifecycleError(f"Cannot instantiate plugin {origin}: {exc}") from exc
    if not isinstance(obj, Plugin):
        raise PluginLifecycleError(
            f"{origin} is not a Plugin (got {type(obj).__name__})", {"reference": origin}
        )
    return obj


def load_plugin_reference(reference: str) -> Plugin:
    """Import and instantiate the plugin named by ``module:attribute``.

    Args:
        reference: e.g. ``mcp_dispatch.plugins.builtin:MetricsPlugin``.

    Returns:
        The plugin instance.

    Raises:
        PluginLifecycleError: If the reference is malformed, cannot be
            imported, or does not name a plugin.
    """
    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise PluginLifecycleError(
            f"Invalid plugin reference {reference!r}, expected 'module:attribute'",
            {"reference": reference},
        )
    logger.debug("Loading plugin from: %s", reference)
    try:
        obj: Any = import_module(module_name)
    except ImportError as exc:
        raise PluginLifecycleError(
            f"Cannot import plugin module {module_name!r}: {exc}", {"reference": reference}
        ) from exc
    try:
        for attr in attr_path.split("."):
            obj = getattr(obj, attr)
    except AttributeError as exc:
        raise PluginLifecycleError(
            f"Module {module_name!r} has no attribute {attr_path!r}", {"reference": reference}
        ) from exc
    return _as_plugin(obj, reference)


def discover_plugins(group: str = ENTRY_POINT_GROUP) -> list[Plugin]:
    """Load every plugin advertised under an entry-point group.

    A plugin that fails to import or instantiate is logged and skipped.

    Args:
        group: Entry-point group to scan.

    Returns:
        The plugins that loaded, in entry-point order.
    """
    plugins: list[Plugin] = []
    for entry_point in entry_points(group=group):
        try:
            plugin = _as_plugin(entry_point.load(), entry_point.value)
        except Exception:
            logger.warning("Skipping plugin entry point %r", entry_point.name, exc_info=True)
            continue
        logger.debug("Discovered plugin %s from %s", plugin.name, entry_point.value)
        plugins.append(plugin)
    return plugins


def load_plugin_file(path: Path, attribute: str | None = None) -> Plugin:
    """Import a plugin from a Python source file.

    The file is executed as a fresh module named after its resolved path.

    Args:
        path: The ``.py`` file defining the plugin.
        attribute: Plugin class or instance to take from the module. When
            omitted, a module-level ``plugin`` is used, else the only Plugin
            subclass the module defines.

    Returns:
        The plugin instance.

    Raises:
        PluginLifecycleError: If the file cannot be imported or does not
            define exactly one plugin.
    """
    path = path.resolve()
    digest = hashlib.sha256(str(path).encode("utf-8")).hexdigest()[:16]
    module_name = f"_mcp_dispatch_plugin_{digest}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise PluginLifecycleError(f"Cannot load plugin entry {path}", {"entry": str(path)})

    logger.debug("Loading plugin from file: %s", path)
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        raise PluginLifecycleError(
            f"Cannot import plugin entry {path}: {exc}", {"entry": str(path)}
        ) from exc

    if attribute is not None:
        obj = getattr(module, attribute, None)
        if obj is None:
            raise PluginLifecycleError(
                f"Plugin entry {path} has no attribute {attribute!r}", {"entry": str(path)}
            )
        return _as_plugin(obj, f"{path}:{attribute}")
    if hasattr(module, "plugin"):
        return _as_plugin(module.plugin, f"{path}:plugin")

    candidates = [
        value
        for value in vars(module).values()
        if isinstance(value, type) and issubclass(value, Plugin) and value.__module__ == module_name
    ]
    if len(candidates) != 1:
        raise PluginLifecycleError(
            f"Plugin entry {path} must define one Plugin subclass or a 'plugin' attribute, "
            f"found {len(candidates)}",
            {"entry": str(path)},
        )
    return _as_plugin(candidates[0], f"{path}:{candidates[0].__name__}")
