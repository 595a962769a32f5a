"""mcp-dispatch: MCP-style JSON-RPC tool server with pluggable transports."""

from mcp_dispatch.adapters import MemoryTransport, StdioTransport, Transport
from mcp_dispatch.errors import DispatchError
from mcp_dispatch.hooks import Hook, HookRegistry
from mcp_dispatch.middleware import timeout_middleware
from mcp_dispatch.models import (
    DispatchContext,
    Envelope,
    EnvelopeType,
    HookContext,
    HookPhase,
    ServerConfig,
)
from mcp_dispatch.pipeline import Middleware, MiddlewarePipeline
from mcp_dispatch.plugins import Plugin, PluginManager
from mcp_dispatch.server import DispatchServer
from mcp_dispatch.tools import ToolDefinition, ToolRegistry

__all__ = [
    "DispatchContext",
    "DispatchError",
    "DispatchServer",
    "Envelope",
    "EnvelopeType",
    "Hook",
    "HookContext",
    "HookPhase",
    "HookRegistry",
    "MemoryTransport",
    "Middleware",
    "MiddlewarePipeline",
    "Plugin",
    "PluginManager",
    "ServerConfig",
    "StdioTransport",
    "ToolDefinition",
    "ToolRegistry",
    "Transport",
    "timeout_middleware",
]
