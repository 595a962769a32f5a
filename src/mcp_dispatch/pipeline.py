"""Middleware pipeline for mcp-dispatch.

Every inbound message runs through an ordered chain of middleware before
it reaches the terminal dispatch step. Each middleware receives the
message, the per-message context and a ``next`` continuation; it may act
before or after calling ``next()``, or return without calling it to
short-circuit everything downstream, the tool included.

Errors are fail-fast: an exception from any handler aborts the chain and
propagates unchanged to the caller of run().
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from mcp_dispatch.models import DispatchContext, Envelope

logger = logging.getLogger(__name__)

DEFAULT_MAX_MIDDLEWARE = 128

NextFn = Callable[[], Awaitable[Any]]
MiddlewareHandler = Callable[[Envelope, DispatchContext, NextFn], Awaitable[Any]]
TerminalHandler = Callable[[Envelope, DispatchContext], Awaitable[Any]]


@dataclass
class Middleware:
    """A named, prioritized middleware handler.

    Args:
        name: Unique key; registering the same name again replaces the entry.
        handler: ``async handler(message, context, next)``.
        priority: Higher runs earlier. Ties keep registration order.
    """

    name: str
    handler: MiddlewareHandler
    priority: int = 0


class MiddlewarePipeline:
    """Priority-ordered, fail-fast middleware chain.

    Args:
        max_depth: Maximum number of registered middleware.

    Example:
        pipeline = MiddlewarePipeline()
        pipeline.register(Middleware("auth", check_token, priority=100))
        result = await pipeline.run(message, context, dispatch_tool)
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_MIDDLEWARE) -> None:
        self.max_depth = max_depth
        self._entries: list[Middleware] = []
        self._ordered: list[Middleware] | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, middleware: Middleware) -> None:
        """Add a middleware, or replace the one registered under its name.

        A replacement keeps the original registration slot for tie-breaking.

        Raises:
            ValueError: If the chain is already at max_depth.
        """
        for index, existing in enumerate(self._entries):
            if existing.name == middleware.name:
                logger.warning("Middleware %r re-registered, replacing it", middleware.name)
                self._entries[index] = middleware
                self._ordered = None
                return
        if len(self._entries) >= self.max_depth:
            raise ValueError(
                f"Cannot register middleware {middleware.name!r}: "
                f"chain is limited to {self.max_depth} entries"
            )
        self._entries.append(middleware)
        self._ordered = None

    def unregister(self, name: str) -> bool:
        """Remove a middleware by name.

        Returns:
            True if an entry was removed.
        """
        remaining = [entry for entry in self._entries if entry.name != name]
        removed = len(remaining) != len(self._entries)
        self._entries = remaining
        if removed:
            self._ordered = None
        return removed

    def entries(self) -> list[Middleware]:
        """Return the middleware in execution order."""
        if self._ordered is None:
            # sorted() is stable: equal priorities keep registration order
            self._ordered = sorted(self._entries, key=lambda entry: -entry.priority)
        return list(self._ordered)

    def clear(self) -> None:
        self._entries.clear()
        self._ordered = None

    async def run(
        self,
        message: Envelope,
        context: DispatchContext,
        terminal: TerminalHandler,
    ) -> Any:
        """Run the chain for one message.

        The chain is a snapshot: registrations made while it runs take
        effect for the next message.

        Args:
            message: The inbound envelope.
            context: The context allocated for this message.
            terminal: Step invoked by the last middleware's ``next()``.

        Returns:
            Whatever the first middleware (or the terminal step) returns.

        Raises:
            RuntimeError: If a middleware calls ``next()`` more than once.
        """
        chain = self.entries()

        async def invoke(index: int) -> Any:
            if index == len(chain):
                return await terminal(message, context)
            entry = chain[index]
            called = False

            async def next_() -> Any:
                nonlocal called
                if called:
                    raise RuntimeError(f"Middleware {entry.name!r} called next() more than once")
                called = True
                return await invoke(index + 1)

            return await entry.handler(message, context, next_)

        return await invoke(0)
