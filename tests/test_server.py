"""Tests for mcp_dispatch.server — dispatch, built-ins, hooks and lifecycle.

All tests drive a DispatchServer through the in-process MemoryTransport.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import pytest
from mcp.types import CallToolResult, TextContent
from pydantic import BaseModel

from mcp_dispatch.adapters.memory import MemoryConnection, MemoryTransport
from mcp_dispatch.errors import AuthorizationError, TransportError
from mcp_dispatch.hooks import Hook
from mcp_dispatch.middleware import timeout_middleware
from mcp_dispatch.models import (
    DispatchContext,
    Envelope,
    EnvelopeType,
    HookContext,
    HookPhase,
    ServerConfig,
)
from mcp_dispatch.pipeline import Middleware, NextFn
from mcp_dispatch.plugins import Plugin, ServerHandle
from mcp_dispatch.server import DispatchServer
from mcp_dispatch.tools import ToolDefinition

VERSIONS = ["2024-11-05", "2025-06-18"]

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class EchoInput(BaseModel):
    message: str


class AddInput(BaseModel):
    a: int
    b: int


class Weather(BaseModel):
    city: str
    celsius: float


class Harness:
    """A running server on a MemoryTransport with a small tool set."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.server = DispatchServer(
            ServerConfig(
                name="test-server",
                version="9.9.9",
                protocol_versions=VERSIONS,
                instructions="Be nice.",
            )
        )
        self.transport = MemoryTransport()
        self.server.attach(self.transport)
        for tool in (
            ToolDefinition("echo", self._echo, description="Echo", input_model=EchoInput),
            ToolDefinition("add", self._add, input_model=AddInput),
            ToolDefinition("fail", self._fail),
            ToolDefinition("deny", self._deny),
            ToolDefinition("slow", self._slow),
            ToolDefinition("whoami", self._whoami),
            ToolDefinition("weather", self._weather),
            ToolDefinition("rich", self._rich),
        ):
            self.server.register_tool(tool)

    async def _echo(self, data: EchoInput, ctx: DispatchContext) -> str:
        self.calls.append("echo")
        return data.message

    async def _add(self, data: AddInput, ctx: DispatchContext) -> dict[str, int]:
        self.calls.append("add")
        return {"sum": data.a + data.b}

    async def _fail(self, data: Any, ctx: DispatchContext) -> None:
        self.calls.append("fail")
        raise RuntimeError("tool broke")

    async def _deny(self, data: Any, ctx: DispatchContext) -> None:
        raise AuthorizationError("not for you", {"reason": "test"})

    async def _slow(self, data: Any, ctx: DispatchContext) -> str:
        await asyncio.sleep(5)
        return "late"

    async def _whoami(self, data: Any, ctx: DispatchContext) -> dict[str, Any]:
        return {"client": ctx.client_id, "metadata": ctx.metadata}

    async def _weather(self, data: Any, ctx: DispatchContext) -> Weather:
        return Weather(city="Oslo", celsius=-3.5)

    async def _rich(self, data: Any, ctx: DispatchContext) -> CallToolResult:
        return CallToolResult(content=[TextContent(type="text", text="custom")], isError=True)


@pytest.fixture
async def harness() -> AsyncIterator[Harness]:
    h = Harness()
    async with h.server:
        yield h


@pytest.fixture
async def conn(harness: Harness) -> MemoryConnection:
    return await harness.transport.connect()


async def _call(conn: MemoryConnection, tool: str, arguments: Any = None) -> Envelope:
    params: dict[str, Any] = {"name": tool}
    if arguments is not None:
        params["arguments"] = arguments
    return await conn.request("tools/call", params)


def _error_code(reply: Envelope) -> int:
    assert reply.type == EnvelopeType.ERROR, reply
    assert reply.error is not None
    return reply.error["code"]


# ---------------------------------------------------------------------------
# Built-in methods
# ---------------------------------------------------------------------------


class TestInitialize:
    """initialize negotiates a version and describes the server."""

    async def test_result(self, harness: Harness, conn: MemoryConnection) -> None:
        reply = await conn.request(
            "initialize",
            {
                "protocolVersion": "2025-06-18",
                "capabilities": {},
                "clientInfo": {"name": "pytest", "version": "1"},
            },
        )
        assert reply.type == EnvelopeType.RESPONSE
        result = reply.result
        assert result["protocolVersion"] == "2025-06-18"
        assert result["serverInfo"] == {"name": "test-server", "version": "9.9.9"}
        assert result["capabilities"]["tools"] == {"listChanged": True}
        assert "logging" in result["capabilities"]
        assert result["instructions"] == "Be nice."
        assert harness.server.get_status()["sessions"] == {conn.client_id: "2025-06-18"}

    async def test_fallback_version(self, conn: MemoryConnection) -> None:
        reply = await conn.request("initialize", {"protocolVersion": "2099-01-01"})
        assert reply.result["protocolVersion"] == "2025-06-18"

    async def test_missing_protocol_version(self, conn: MemoryConnection) -> None:
        reply = await conn.request("initialize", {"capabilities": {}})
        assert _error_code(reply) == -32602
        assert reply.error["message"] == "Missing protocolVersion"

    async def test_strict_protocol(self) -> None:
        server = DispatchServer(ServerConfig(protocol_versions=VERSIONS, strict_protocol=True))
        transport = MemoryTransport()
        server.attach(transport)
        async with server:
            client = await transport.connect()
            reply = await client.request("initialize", {"protocolVersion": "2099-01-01"})
        assert _error_code(reply) == -32602
        assert reply.error["data"]["supported"] == VERSIONS

    async def test_session_dropped_on_disconnect(
        self, harness: Harness, conn: MemoryConnection
    ) -> None:
        await conn.request("initialize", {"protocolVersion": "2024-11-05"})
        await conn.close()
        assert harness.server.get_status()["sessions"] == {}


class TestBuiltins:
    """ping, tools/list, logging/setLevel and notifications."""

    async def test_ping(self, conn: MemoryConnection) -> None:
        reply = await conn.request("ping")
        assert reply.result == {}

    async def test_list_tools(self, conn: MemoryConnection) -> None:
        reply = await conn.request("tools/list")
        tools = {tool["name"]: tool for tool in reply.result["tools"]}
        assert set(tools) >= {"echo", "add", "fail"}
        assert tools["echo"]["description"] == "Echo"
        assert tools["echo"]["inputSchema"]["required"] == ["message"]
        assert tools["fail"]["inputSchema"] == {"type": "object"}

    async def test_set_level(self, conn: MemoryConnection) -> None:
        package_logger = logging.getLogger("mcp_dispatch")
        original = package_logger.level
        try:
            reply = await conn.request("logging/setLevel", {"level": "error"})
            assert reply.result == {}
            assert package_logger.level == logging.ERROR
        finally:
            package_logger.setLevel(original)

    async def test_set_level_invalid(self, conn: MemoryConnection) -> None:
        reply = await conn.request("logging/setLevel", {"level": "loud"})
        assert _error_code(reply) == -32602

    async def test_initialized_notification_gets_no_reply(self, conn: MemoryConnection) -> None:
        await conn.send(Envelope.event("notifications/initialized"))
        reply = await conn.request("ping")
        assert reply.id == 1
        assert conn.inbox.empty()

    async def test_unknown_notification_ignored(self, conn: MemoryConnection) -> None:
        await conn.send(Envelope.event("notifications/cancelled", {"requestId": 9}))
        await conn.request("ping")
        assert conn.inbox.empty()

    async def test_unknown_method(self, conn: MemoryConnection) -> None:
        reply = await conn.request("resources/list")
        assert _error_code(reply) == -32601
        assert reply.error["data"] == {"method": "resources/list"}

    async def test_unknown_event_logged_not_answered(
        self, conn: MemoryConnection, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="mcp_dispatch.server"):
            await conn.send(Envelope.event("custom/thing"))
            await conn.request("ping")
        assert conn.inbox.empty()
        assert "custom/thing from memory-1 failed: Method not found: custom/thing" in caplog.text

    async def test_inbound_response_ignored(self, conn: MemoryConnection) -> None:
        await conn.send(Envelope.response(99, {"x": 1}))
        await conn.request("ping")
        assert conn.inbox.empty()


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    """tools/call results and errors."""

    async def test_string_result(self, conn: MemoryConnection) -> None:
        reply = await _call(conn, "echo", {"message": "hello"})
        assert reply.result == {
            "content": [{"type": "text", "text": "hello"}],
            "isError": False,
        }

    async def test_dict_result_is_structured(self, conn: MemoryConnection) -> None:
        reply = await _call(conn, "add", {"a": 2, "b": 3})
        assert reply.result["structuredContent"] == {"sum": 5}
        assert reply.result["content"][0]["text"] == json.dumps({"sum": 5}, indent=2)

    async def test_model_result(self, conn: MemoryConnection) -> None:
        reply = await _call(conn, "weather")
        assert reply.result["structuredContent"] == {"city": "Oslo", "celsius": -3.5}

    async def test_call_tool_result_passthrough(self, conn: MemoryConnection) -> None:
        reply = await _call(conn, "rich")
        assert reply.result["content"] == [{"type": "text", "text": "custom"}]
        assert reply.result["isError"] is True

    async def test_tool_callable_by_method_name(self, conn: MemoryConnection) -> None:
        reply = await conn.request("echo", {"message": "direct"})
        assert reply.result == "direct"

    async def test_unknown_tool(self, conn: MemoryConnection) -> None:
        reply = await _call(conn, "nope")
        assert _error_code(reply) == -32001
        assert reply.error["message"] == 'Tool "nope" not found'

    async def test_missing_tool_name(self, conn: MemoryConnection) -> None:
        reply = await conn.request("tools/call", {"arguments": {}})
        assert _error_code(reply) == -32602

    async def test_invalid_arguments(self, harness: Harness, conn: MemoryConnection) -> None:
        reply = await _call(conn, "add", {"a": "two"})
        assert _error_code(reply) == -32003
        assert isinstance(reply.error["data"], list)
        assert harness.calls == []

    async def test_tool_exception(self, harness: Harness, conn: MemoryConnection) -> None:
        reply = await _call(conn, "fail")
        assert _error_code(reply) == -32002
        assert reply.error["message"] == 'Tool "fail" failed: tool broke'
        assert reply.error["data"] == {"tool": "fail"}
        assert harness.calls == ["fail"]

    async def test_tool_dispatch_error_kept(self, conn: MemoryConnection) -> None:
        reply = await _call(conn, "deny")
        assert _error_code(reply) == -32005
        assert reply.error["data"] == {"reason": "test"}

    async def test_context_reaches_tool(self, conn: MemoryConnection) -> None:
        reply = await _call(conn, "whoami")
        assert reply.result["structuredContent"]["client"] == conn.client_id

    async def test_replies_go_to_the_caller(self, harness: Harness) -> None:
        first = await harness.transport.connect()
        second = await harness.transport.connect()
        a, b = await asyncio.gather(
            _call(first, "echo", {"message": "one"}),
            _call(second, "echo", {"message": "two"}),
        )
        assert a.result["content"][0]["text"] == "one"
        assert b.result["content"][0]["text"] == "two"

    async def test_clients_interleave_with_separate_contexts(self, harness: Harness) -> None:
        entered = asyncio.Event()
        gate = asyncio.Event()
        contexts: dict[str, DispatchContext] = {}

        async def wait(data: Any, ctx: DispatchContext) -> str:
            contexts[ctx.client_id] = ctx
            ctx.metadata["caller"] = ctx.client_id
            if ctx.client_id == blocked.client_id:
                entered.set()
                await gate.wait()
            return ctx.client_id

        harness.server.register_tool(ToolDefinition("wait", wait))
        blocked = await harness.transport.connect()
        free = await harness.transport.connect()

        pending = asyncio.create_task(_call(blocked, "wait"))
        await asyncio.wait_for(entered.wait(), timeout=1)
        reply = await _call(free, "wait")
        assert reply.result["content"][0]["text"] == free.client_id
        assert not pending.done()

        gate.set()
        held = await asyncio.wait_for(pending, timeout=1)
        assert held.result["content"][0]["text"] == blocked.client_id
        assert contexts[blocked.client_id] is not contexts[free.client_id]
        assert contexts[blocked.client_id].metadata == {"caller": blocked.client_id}
        assert contexts[free.client_id].metadata == {"caller": free.client_id}


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class TestMiddleware:
    """Middleware wraps every message before the terminal step."""

    async def test_metadata_visible_to_tool(
        self, harness: Harness, conn: MemoryConnection
    ) -> None:
        async def tag(message: Envelope, ctx: DispatchContext, next_: NextFn) -> Any:
            ctx.metadata["user"] = "alice"
            return await next_()

        harness.server.register_middleware(Middleware("tag", tag))
        reply = await _call(conn, "whoami")
        assert reply.result["structuredContent"]["metadata"] == {"user": "alice"}

    async def test_short_circuit_prevents_tool(
        self, harness: Harness, conn: MemoryConnection
    ) -> None:
        async def block(message: Envelope, ctx: DispatchContext, next_: NextFn) -> Any:
            if message.method == "tools/call":
                await harness.transport.send(
                    ctx.client_id, Envelope.response(message.id, {"blocked": True})
                )
                return None
            return await next_()

        harness.server.register_middleware(Middleware("block", block, priority=100))
        reply = await _call(conn, "echo", {"message": "hi"})
        assert reply.result == {"blocked": True}
        assert harness.calls == []

    async def test_middleware_error_becomes_reply(
        self, harness: Harness, conn: MemoryConnection
    ) -> None:
        async def auth(message: Envelope, ctx: DispatchContext, next_: NextFn) -> Any:
            raise AuthorizationError("Missing token")

        harness.server.register_middleware(Middleware("auth", auth))
        reply = await conn.request("ping")
        assert _error_code(reply) == -32005
        assert reply.error["message"] == "Missing token"

    async def test_unexpected_middleware_error(
        self, harness: Harness, conn: MemoryConnection, caplog: pytest.LogCaptureFixture
    ) -> None:
        async def broken(message: Envelope, ctx: DispatchContext, next_: NextFn) -> Any:
            raise ZeroDivisionError("division by zero")

        harness.server.register_middleware(Middleware("broken", broken))
        with caplog.at_level(logging.ERROR, logger="mcp_dispatch.server"):
            reply = await conn.request("ping")
        assert _error_code(reply) == -32603
        assert reply.error["message"] == "division by zero"
        assert "Unhandled error in ping" in caplog.text

    async def test_failure_after_reply_is_logged_not_sent(
        self, harness: Harness, conn: MemoryConnection, caplog: pytest.LogCaptureFixture
    ) -> None:
        async def post_process(message: Envelope, ctx: DispatchContext, next_: NextFn) -> Any:
            result = await next_()
            if message.method == "ping":
                raise RuntimeError("post-processing failed")
            return result

        harness.server.register_middleware(Middleware("post", post_process))
        with caplog.at_level(logging.ERROR, logger="mcp_dispatch.server"):
            reply = await conn.request("ping")
            follow_up = await _call(conn, "echo", {"message": "next"})
        assert reply.type == EnvelopeType.RESPONSE
        assert reply.result == {}
        assert follow_up.result["content"][0]["text"] == "next"
        assert conn.inbox.empty()
        late = [r for r in caplog.records if "after its reply was sent" in r.getMessage()]
        assert len(late) == 1
        assert str(late[0].exc_info[1]) == "post-processing failed"

    async def test_timeout(self, harness: Harness, conn: MemoryConnection) -> None:
        harness.server.register_middleware(timeout_middleware(0.05))
        reply = await _call(conn, "slow")
        assert _error_code(reply) == -32006


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


class TestHooks:
    """Lifecycle hooks observe without interfering."""

    async def test_before_hook_failure_is_isolated(
        self, harness: Harness, conn: MemoryConnection
    ) -> None:
        seen: list[str] = []

        async def explode(ctx: HookContext) -> None:
            raise RuntimeError("hook broke")

        async def record(ctx: HookContext) -> None:
            seen.append(f"{ctx.tool_name}:{ctx.data['arguments']}")

        harness.server.register_hook(Hook("explode", HookPhase.BEFORE_TOOL_EXECUTION, explode))
        harness.server.register_hook(Hook("record", HookPhase.BEFORE_TOOL_EXECUTION, record))
        reply = await _call(conn, "echo", {"message": "still works"})
        assert reply.result["content"][0]["text"] == "still works"
        assert seen == ["echo:{'message': 'still works'}"]
        assert harness.calls == ["echo"]

    async def test_after_hook_data(self, harness: Harness, conn: MemoryConnection) -> None:
        contexts: list[HookContext] = []

        async def record(ctx: HookContext) -> None:
            contexts.append(ctx)

        harness.server.register_hook(Hook("record", HookPhase.AFTER_TOOL_EXECUTION, record))
        await _call(conn, "add", {"a": 1, "b": 1})
        await _call(conn, "fail")

        ok, failed = contexts
        assert ok.tool_name == "add"
        assert ok.client_id == conn.client_id
        assert ok.data["result"] == {"sum": 2}
        assert ok.data["duration_ms"] >= 0
        assert isinstance(failed.data["error"], RuntimeError)
        assert "result" not in failed.data

    async def test_connection_hooks(self, harness: Harness) -> None:
        events: list[tuple[HookPhase, str | None]] = []

        async def record(ctx: HookContext) -> None:
            events.append((ctx.phase, ctx.client_id))

        harness.server.register_hook(Hook("c", HookPhase.ON_CLIENT_CONNECT, record))
        harness.server.register_hook(Hook("d", HookPhase.ON_CLIENT_DISCONNECT, record))
        client = await harness.transport.connect("watched")
        await client.close()
        assert events == [
            (HookPhase.ON_CLIENT_CONNECT, "watched"),
            (HookPhase.ON_CLIENT_DISCONNECT, "watched"),
        ]

    async def test_start_and_stop_hooks(self) -> None:
        server = DispatchServer()
        transport = MemoryTransport()
        server.attach(transport)
        journal: list[str] = []

        async def on_start(ctx: HookContext) -> None:
            journal.append(f"start hook, transport started={transport.is_started}")

        async def on_stop(ctx: HookContext) -> None:
            journal.append(f"stop hook, transport started={transport.is_started}")

        server.register_hook(Hook("s", HookPhase.ON_START, on_start))
        server.register_hook(Hook("t", HookPhase.ON_STOP, on_stop))
        await server.start()
        await server.stop()
        assert journal == [
            "start hook, transport started=False",
            "stop hook, transport started=False",
        ]


# ---------------------------------------------------------------------------
# Lifecycle and transports
# ---------------------------------------------------------------------------


class TestLifecycle:
    """start/stop, attach and set_transport."""

    async def test_start_without_transport(self) -> None:
        with pytest.raises(TransportError):
            await DispatchServer().start()

    async def test_start_twice_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        server = DispatchServer(transport=MemoryTransport())
        await server.start()
        with caplog.at_level(logging.WARNING, logger="mcp_dispatch.server"):
            await server.start()
        await server.stop()
        assert "already running" in caplog.text

    async def test_stop_when_not_running(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="mcp_dispatch.server"):
            await DispatchServer().stop()
        assert "not running" in caplog.text

    async def test_attach_while_running(self, harness: Harness) -> None:
        with pytest.raises(RuntimeError, match="set_transport"):
            harness.server.attach(MemoryTransport())

    async def test_set_transport_swaps_live(self, harness: Harness) -> None:
        old = harness.transport
        client = await old.connect()
        new = MemoryTransport()
        await harness.server.set_transport(new)
        assert not old.is_started
        assert client.closed
        assert new.is_started
        assert harness.server.get_transport() is new
        assert harness.server.is_running
        fresh = await new.connect()
        assert (await fresh.request("ping")).result == {}

    async def test_set_transport_same_is_noop(self, harness: Harness) -> None:
        await harness.server.set_transport(harness.transport)
        assert harness.transport.is_started

    async def test_set_transport_when_stopped(self) -> None:
        server = DispatchServer()
        transport = MemoryTransport()
        await server.set_transport(transport)
        assert server.get_transport() is transport
        assert not transport.is_started

    async def test_reattach_does_not_duplicate_handlers(self) -> None:
        server = DispatchServer()
        first, second = MemoryTransport(), MemoryTransport()
        server.attach(first)
        server.attach(second)
        server.attach(first)
        async with server:
            client = await first.connect()
            await client.request("ping")
            assert client.inbox.empty()

    async def test_status(self, harness: Harness, conn: MemoryConnection) -> None:
        status = harness.server.get_status()
        assert status["name"] == "test-server"
        assert status["running"] is True
        assert status["transport"] == "memory"
        assert status["clients"] == [conn.client_id]
        assert status["tools"] == 8


class TestBroadcast:
    """Server-initiated events."""

    async def test_broadcast_event(self, harness: Harness) -> None:
        a = await harness.transport.connect()
        b = await harness.transport.connect()
        await harness.server.broadcast_event("notifications/message", {"level": "info"})
        for client in (a, b):
            event = await client.receive(timeout=1)
            assert event.type == EnvelopeType.EVENT
            assert event.params == {"level": "info"}

    async def test_notify_tools_changed(self, harness: Harness, conn: MemoryConnection) -> None:
        await harness.server.notify_tools_changed()
        event = await conn.receive(timeout=1)
        assert event.method == "notifications/tools/list_changed"

    async def test_notify_tools_changed_when_stopped(self) -> None:
        server = DispatchServer(transport=MemoryTransport())
        await server.notify_tools_changed()

    async def test_broadcast_without_transport(self) -> None:
        with pytest.raises(TransportError):
            await DispatchServer().broadcast_event("x")


# ---------------------------------------------------------------------------
# Plugins against a live server
# ---------------------------------------------------------------------------


class GreeterPlugin(Plugin):
    name = "greeter"
    version = "2.0.0"

    async def initialize(self, server: ServerHandle) -> None:
        async def greet(data: Any, ctx: DispatchContext) -> str:
            return "hello from plugin"

        server.register_tool(ToolDefinition("greet", greet))

    async def cleanup(self) -> None:
        return None


class TestPlugins:
    """Plugins register capabilities through the server handle."""

    async def test_plugin_tool_served(self, harness: Harness, conn: MemoryConnection) -> None:
        harness.server.plugins.register(GreeterPlugin())
        await harness.server.plugins.load_all(harness.server)
        reply = await _call(conn, "greet")
        assert reply.result["content"][0]["text"] == "hello from plugin"
        assert harness.server.get_status()["plugins"] == ["greeter"]
