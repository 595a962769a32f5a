"""Plugins shipped with mcp-dispatch."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from mcp_dispatch.hooks import Hook
from mcp_dispatch.models import HookContext, HookPhase
from mcp_dispatch.plugins.base import Plugin, ServerHandle

logger = logging.getLogger(__name__)


class LoggingPlugin(Plugin):
    """Logs client connections and failed tool calls."""

    name = "logging"
    version = "1.0.0"

    HOOK_NAME = "logging-plugin"

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level
        self._server: ServerHandle | None = None

    async def initialize(self, server: ServerHandle) -> None:
        self._server = server
        server.register_hook(Hook(self.HOOK_NAME, HookPhase.ON_CLIENT_CONNECT, self._on_connect))
        server.register_hook(
            Hook(self.HOOK_NAME, HookPhase.ON_CLIENT_DISCONNECT, self._on_disconnect)
        )
        server.register_hook(Hook(self.HOOK_NAME, HookPhase.AFTER_TOOL_EXECUTION, self._on_tool))

    async def cleanup(self) -> None:
        if self._server is not None:
            self._server.unregister_hook(self.HOOK_NAME)
            self._server = None

    async def _on_connect(self, context: HookContext) -> None:
        logger.log(self.level, "Client connected: %s", context.client_id)

    async def _on_disconnect(self, context: HookContext) -> None:
        logger.log(self.level, "Client disconnected: %s", context.client_id)

    async def _on_tool(self, context: HookContext) -> None:
        error = context.data.get("error")
        if error is not None:
            logger.error(
                "Tool %s failed for %s: %s", context.tool_name, context.client_id, error
            )


@dataclass
class MetricsSnapshot:
    """Point-in-time copy of MetricsPlugin counters."""

    total_calls: int = 0
    total_errors: int = 0
    total_duration_ms: float = 0.0
    tool_calls: dict[str, int] = field(default_factory=dict)

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.total_calls if self.total_calls else 0.0


class MetricsPlugin(Plugin):
    """Counts tool calls, failures and time spent in tool handlers."""

    name = "metrics"
    version = "1.0.0"

    HOOK_NAME = "metrics-plugin"

    def __init__(self) -> None:
        self._server: ServerHandle | None = None
        self._reset()

    def _reset(self) -> None:
        self._calls: Counter[str] = Counter()
        self._errors = 0
        self._duration_ms = 0.0

    async def initialize(self, server: ServerHandle) -> None:
        self._server = server
        server.register_hook(
            Hook(self.HOOK_NAME, HookPhase.BEFORE_TOOL_EXECUTION, self._before_tool)
        )
        server.register_hook(Hook(self.HOOK_NAME, HookPhase.AFTER_TOOL_EXECUTION, self._after_tool))

    async def cleanup(self) -> None:
        if self._server is not None:
            self._server.unregister_hook(self.HOOK_NAME)
            self._server = None
        self._reset()

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            total_calls=sum(self._calls.values()),
            total_errors=self._errors,
            total_duration_ms=self._duration_ms,
            tool_calls=dict(self._calls),
        )

    async def _before_tool(self, context: HookContext) -> None:
        if context.tool_name:
            self._calls[context.tool_name] += 1

    async def _after_tool(self, context: HookContext) -> None:
        self._duration_ms += context.data.get("duration_ms", 0.0)
        if context.data.get("error") is not None:
            self._errors += 1
