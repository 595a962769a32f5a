"""Built-in middleware for mcp-dispatch."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from mcp_dispatch.errors import DispatchTimeoutError
from mcp_dispatch.models import DispatchContext, Envelope
from mcp_dispatch.pipeline import Middleware, NextFn

TIMEOUT_PRIORITY = 95


def _target_name(message: Envelope) -> str | None:
    """Tool a message will reach: the ``tools/call`` name, else the method."""
    if message.method == "tools/call" and isinstance(message.params, dict):
        name = message.params.get("name")
        if isinstance(name, str):
            return name
    return message.method


def timeout_middleware(
    timeout: float | None = 30.0,
    *,
    tool_timeouts: Mapping[str, float | None] | None = None,
    name: str = "timeout",
    priority: int = TIMEOUT_PRIORITY,
) -> Middleware:
    """Bound the time the downstream chain may take.

    On expiry the downstream continuation is cancelled, ``timeout`` and
    ``timeout_seconds`` are recorded in the context metadata, and
    DispatchTimeoutError is raised.

    Args:
        timeout: Default limit in seconds; ``None`` disables it.
        tool_timeouts: Per-tool limits overriding the default.
        name: Middleware name.
        priority: Runs early by default so the limit covers later middleware.

    Returns:
        A Middleware ready for DispatchServer.register_middleware().
    """
    overrides = dict(tool_timeouts or {})

    async def handler(message: Envelope, context: DispatchContext, next_: NextFn) -> Any:
        limit = overrides.get(_target_name(message) or "", timeout)
        if limit is None:
            return await next_()
        try:
            async with asyncio.timeout(limit) as deadline:
                return await next_()
        except TimeoutError as exc:
            if not deadline.expired():
                raise
            context.metadata["timeout"] = True
            context.metadata["timeout_seconds"] = limit
            context.logger.warning("%s timed out after %ss", message.method, limit)
            raise DispatchTimeoutError(
                f"Request timed out after {limit}s",
                {"method": message.method, "timeoutSeconds": limit},
            ) from exc

    return Middleware(name=name, handler=handler, priority=priority)
