"""Transport adapters: turn channel activity into client-scoped Envelope events."""

from mcp_dispatch.adapters.base import BaseTransport, Transport
from mcp_dispatch.adapters.memory import MemoryConnection, MemoryTransport
from mcp_dispatch.adapters.stdio import STDIO_CLIENT_ID, StdioTransport

__all__ = [
    "STDIO_CLIENT_ID",
    "BaseTransport",
    "MemoryConnection",
    "MemoryTransport",
    "StdioTransport",
    "Transport",
]
