"""Plugin contract for mcp-dispatch."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from mcp_dispatch.adapters.base import Transport
    from mcp_dispatch.hooks import Hook
    from mcp_dispatch.pipeline import Middleware
    from mcp_dispatch.tools import ToolDefinition


class ServerHandle(Protocol):
    """The part of DispatchServer a plugin may use."""

    def register_tool(self, tool: ToolDefinition) -> None: ...

    def unregister_tool(self, name: str) -> bool: ...

    def list_tools(self) -> list[ToolDefinition]: ...

    def register_middleware(self, middleware: Middleware) -> None: ...

    def unregister_middleware(self, name: str) -> bool: ...

    def register_hook(self, hook: Hook) -> None: ...

    def unregister_hook(self, name: str) -> int: ...

    def get_transport(self) -> Transport | None: ...

    async def broadcast_event(self, method: str, params: Any = None) -> None: ...


class Plugin(ABC):
    """Base class for plugins.

    Subclasses set ``name`` and ``version`` and implement initialize(),
    registering their tools, middleware and hooks on the server handle.
    Override cleanup() to undo anything initialize() did.

    Attributes:
        name: Unique plugin name.
        version: Plugin version string.
        priority: Higher loads earlier in PluginManager.load_all().

    Example:
        class AuditPlugin(Plugin):
            name = "audit"
            version = "1.0.0"

            async def initialize(self, server: ServerHandle) -> None:
                server.register_hook(Hook("audit", HookPhase.AFTER_TOOL_EXECUTION, record))
    """

    name: str
    version: str = "0.0.0"
    priority: int = 0

    @abstractmethod
    async def initialize(self, server: ServerHandle) -> None:
        """Attach the plugin to a server."""

    async def cleanup(self) -> None:
        """Release what initialize() acquired. Default: nothing to do."""
        return None
