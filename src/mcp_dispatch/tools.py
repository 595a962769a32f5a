"""Tool registry for mcp-dispatch.

A tool is a named async handler with an optional pydantic input model.
The dispatcher validates params against the model before the handler
runs, so handlers receive a typed instance instead of raw JSON.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from mcp.types import Tool
from pydantic import BaseModel, ValidationError

from mcp_dispatch.errors import InputValidationError
from mcp_dispatch.models import DispatchContext

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any, DispatchContext], Awaitable[Any]]


@dataclass
class ToolDefinition:
    """A callable tool.

    Args:
        name: Unique tool name, also callable directly as a method name.
        handler: ``async handler(input, context)``.
        description: Human-readable description for ``tools/list``.
        input_model: Pydantic model validating the tool's input.
        metadata: Free-form values for plugins and middleware.
    """

    name: str
    handler: ToolHandler
    description: str = ""
    input_model: type[BaseModel] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def input_schema(self) -> dict[str, Any]:
        """JSON schema of the accepted input."""
        if self.input_model is None:
            return {"type": "object"}
        return self.input_model.model_json_schema()

    def validate_input(self, params: Any) -> Any:
        """Validate raw params against the input model.

        Args:
            params: Raw params from the request (``None`` means no arguments).

        Returns:
            A model instance, or ``params`` unchanged when there is no model.

        Raises:
            InputValidationError: If the params do not satisfy the model.
        """
        if self.input_model is None:
            return params
        try:
            return self.input_model.model_validate({} if params is None else params)
        except ValidationError as exc:
            raise InputValidationError(
                f"Invalid input for tool {self.name!r}",
                json.loads(exc.json(include_url=False)),
            ) from exc

    def describe(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description or None,
            inputSchema=self.input_schema(),
        )


class ToolRegistry:
    """Name-to-tool mapping; the last registration of a name wins."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            logger.warning("Tool %r re-registered, replacing it", tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def clear(self) -> None:
        self._tools.clear()
