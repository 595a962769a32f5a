"""CLI entry point for mcp-dispatch."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

import click

from mcp_dispatch.adapters.base import BaseTransport
from mcp_dispatch.adapters.stdio import StdioTransport
from mcp_dispatch.errors import DispatchError
from mcp_dispatch.models import ServerConfig
from mcp_dispatch.plugins import Plugin, PluginManager, discover_plugins, load_plugin_reference
from mcp_dispatch.server import DispatchServer

TRANSPORTS: dict[str, type[BaseTransport]] = {"stdio": StdioTransport}

LOG_LEVEL_CHOICES = ["debug", "info", "warning", "error", "critical"]

_plugin_option = click.option(
    "--plugin",
    "plugin_refs",
    multiple=True,
    metavar="MODULE:ATTR",
    help="Plugin class or instance to load (repeatable).",
)
_discover_option = click.option(
    "--discover/--no-discover",
    default=True,
    show_default=True,
    help="Load plugins advertised under the mcp_dispatch.plugins entry point.",
)
_manifest_option = click.option(
    "--manifest",
    "manifest_paths",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Plugin manifest (JSON) to install and activate (repeatable).",
)


def _configure_logging(level: str) -> None:
    """Send diagnostics to stderr; stdout is reserved for protocol frames."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _collect_plugins(plugin_refs: tuple[str, ...], discover: bool) -> list[Plugin]:
    plugins = discover_plugins() if discover else []
    try:
        plugins.extend(load_plugin_reference(ref) for ref in plugin_refs)
    except DispatchError as exc:
        raise click.ClickException(exc.message) from exc
    return plugins


def _install_manifests(manager: PluginManager, manifest_paths: tuple[Path, ...]) -> list[str]:
    try:
        return [manager.install_from_manifest(path).manifest.name for path in manifest_paths]
    except DispatchError as exc:
        raise click.ClickException(exc.message) from exc


@click.group()
@click.version_option(package_name="mcp-dispatch")
def main() -> None:
    """MCP-style JSON-RPC tool server with middleware, hooks and plugins."""


@main.command()
@click.option(
    "--transport",
    type=click.Choice(sorted(TRANSPORTS), case_sensitive=False),
    default="stdio",
    show_default=True,
    help="Transport to serve on.",
)
@_plugin_option
@_discover_option
@_manifest_option
@click.option("--name", default="mcp-dispatch", show_default=True, help="Server name.")
@click.option("--server-version", default="0.1.0", show_default=True, help="Server version.")
@click.option(
    "--request-timeout",
    type=click.FloatRange(min=0, min_open=True),
    envvar="MCP_DISPATCH_REQUEST_TIMEOUT",
    help="Fail requests that take longer than this many seconds.",
)
@click.option(
    "--strict-protocol",
    is_flag=True,
    default=False,
    help="Reject initialize for unsupported protocol versions.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    default="warning",
    show_default=True,
    envvar="MCP_DISPATCH_LOG_LEVEL",
    help="Diagnostic log level (written to stderr).",
)
def serve(
    transport: str,
    plugin_refs: tuple[str, ...],
    discover: bool,
    manifest_paths: tuple[Path, ...],
    name: str,
    server_version: str,
    request_timeout: float | None,
    strict_protocol: bool,
    log_level: str,
) -> None:
    """Serve registered tools until the client closes the connection."""
    from mcp_dispatch.middleware import timeout_middleware

    _configure_logging(log_level)
    server = DispatchServer(
        ServerConfig(name=name, version=server_version, strict_protocol=strict_protocol)
    )
    for plugin in _collect_plugins(plugin_refs, discover):
        server.plugins.register(plugin)
    installed = _install_manifests(server.plugins, manifest_paths)
    if request_timeout is not None:
        server.register_middleware(timeout_middleware(request_timeout))

    try:
        asyncio.run(_serve(server, transport, installed))
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        raise click.ClickException(f"Server failed: {exc}") from exc


async def _serve(
    server: DispatchServer, transport_name: str, installed: Sequence[str] = ()
) -> None:
    """Run the server until its transport reaches end of input.

    Args:
        server: Configured server with plugins registered.
        transport_name: Name of the transport to build.
        installed: Manifest-installed plugins to activate after the
            registered ones.
    """
    transport = TRANSPORTS[transport_name.lower()]()
    await server.set_transport(transport)
    try:
        await server.plugins.load_all(server)
        for name in installed:
            await server.plugins.activate(name, server)
        async with server:
            await transport.wait_closed()
    finally:
        await server.plugins.unload_all()


@main.command()
@_plugin_option
@_discover_option
@_manifest_option
def plugins(
    plugin_refs: tuple[str, ...], discover: bool, manifest_paths: tuple[Path, ...]
) -> None:
    """List the plugins serve would load, in load order.

    Manifests are validated and integrity-checked but not imported.
    """
    manager = PluginManager()
    for plugin in _collect_plugins(plugin_refs, discover):
        manager.register(plugin)
    installed = _install_manifests(manager, manifest_paths)

    ordered = manager.ordered()
    if not ordered and not installed:
        click.echo("No plugins found.")
        return
    for plugin in ordered:
        click.echo(f"{plugin.name} {plugin.version} (priority {plugin.priority})")
    records = {record.manifest.name: record for record in manager.installed_plugins()}
    for name in installed:
        record = records[name]
        verified = ", checksum verified" if record.checksum_verified else ""
        click.echo(f"{name} {record.manifest.version} (manifest{verified})")
