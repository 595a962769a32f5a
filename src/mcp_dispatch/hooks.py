"""Lifecycle hook registry for mcp-dispatch.

Hooks are side-channel observers. A hook that raises is logged and
skipped; it never stops sibling hooks or the operation that fired it.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from mcp_dispatch.models import HookContext, HookPhase

logger = logging.getLogger(__name__)

HookHandler = Callable[[HookContext], Awaitable[None]]


@dataclass
class Hook:
    """A named handler for one lifecycle phase.

    Args:
        name: Key used by unregister().
        phase: The phase the handler observes.
        handler: ``async handler(context)``.
    """

    name: str
    phase: HookPhase
    handler: HookHandler


class HookRegistry:
    """Hooks grouped by phase, kept in registration order."""

    def __init__(self) -> None:
        self._hooks: dict[HookPhase, list[Hook]] = {phase: [] for phase in HookPhase}

    def register(self, hook: Hook) -> None:
        self._hooks[hook.phase].append(hook)

    def unregister(self, name: str) -> int:
        """Remove every hook registered under ``name``, in all phases.

        Returns:
            Number of hooks removed.
        """
        removed = 0
        for phase, hooks in self._hooks.items():
            kept = [hook for hook in hooks if hook.name != name]
            removed += len(hooks) - len(kept)
            self._hooks[phase] = kept
        return removed

    def hooks_for(self, phase: HookPhase) -> list[Hook]:
        return list(self._hooks[phase])

    def clear(self) -> None:
        for hooks in self._hooks.values():
            hooks.clear()

    async def fire(self, phase: HookPhase, context: HookContext) -> list[str]:
        """Run the phase's hooks sequentially, isolating failures.

        Args:
            phase: The phase to fire.
            context: Passed unchanged to every hook.

        Returns:
            Names of the hooks that raised, in execution order.
        """
        failed: list[str] = []
        for hook in self.hooks_for(phase):
            try:
                await hook.handler(context)
            except Exception:
                logger.exception("Hook %r failed during %s", hook.name, phase.value)
                failed.append(hook.name)
        return failed
