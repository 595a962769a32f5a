"""Fixture plugin for integration tests.

Registers three small tools (echo, add, fail) and a middleware that tags
the context metadata of every request. ``add`` reports that tag back, so a
subprocess test can observe tools, middleware and plugin loading through
real stdin/stdout.

Usage:
    PYTHONPATH=fixtures python -m mcp_dispatch serve --plugin echo_plugin:EchoPlugin
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from mcp_dispatch import DispatchContext, Envelope, Middleware, Plugin, ToolDefinition
from mcp_dispatch.plugins import ServerHandle


class EchoInput(BaseModel):
    message: str


class AddInput(BaseModel):
    a: int
    b: int


async def echo(params: EchoInput, context: DispatchContext) -> str:
    return params.message


async def add(params: AddInput, context: DispatchContext) -> dict[str, Any]:
    return {"sum": params.a + params.b, "tagged": context.metadata.get("tagged", False)}


async def fail(params: Any, context: DispatchContext) -> None:
    raise RuntimeError("fixture failure")


async def tag_client(message: Envelope, context: DispatchContext, next_: Any) -> Any:
    context.metadata["tagged"] = True
    return await next_()


class EchoPlugin(Plugin):
    name = "echo"
    version = "1.0.0"

    async def initialize(self, server: ServerHandle) -> None:
        server.register_tool(
            ToolDefinition("echo", echo, description="Echo a message back.", input_model=EchoInput)
        )
        server.register_tool(
            ToolDefinition("add", add, description="Add two integers.", input_model=AddInput)
        )
        server.register_tool(ToolDefinition("fail", fail, description="Always raises."))
        server.register_middleware(Middleware("tag-client", tag_client, priority=10))
