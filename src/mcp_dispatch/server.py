"""Server core for mcp-dispatch.

DispatchServer owns the tool, middleware, hook and plugin registries and
at most one active transport. Every inbound message runs through the
middleware pipeline into a terminal step that answers built-in MCP
methods or invokes a registered tool, then replies on the transport.

Errors from that path are caught once, here, and turned into a
correlated error envelope; id-less messages only get a log line.
"""

from __future__ import annotations

import json
import logging
import time
import weakref
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any, Self

from mcp.types import (
    CallToolRequestParams,
    CallToolResult,
    Implementation,
    InitializeResult,
    ListToolsResult,
    LoggingCapability,
    ServerCapabilities,
    SetLevelRequestParams,
    TextContent,
    ToolsCapability,
)
from pydantic import BaseModel, ValidationError

from mcp_dispatch.adapters.base import Transport
from mcp_dispatch.errors import (
    DispatchError,
    InvalidParamsError,
    InvalidRequestError,
    ToolExecutionError,
    ToolNotFoundError,
    TransportError,
    UnknownMethodError,
    to_error_data,
)
from mcp_dispatch.hooks import Hook, HookRegistry
from mcp_dispatch.models import (
    DispatchContext,
    Envelope,
    EnvelopeType,
    HookContext,
    HookPhase,
    ServerConfig,
)
from mcp_dispatch.pipeline import Middleware, MiddlewarePipeline
from mcp_dispatch.plugins.manager import PluginManager
from mcp_dispatch.protocol import negotiate_protocol_version
from mcp_dispatch.tools import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "mcp_dispatch"

# MCP logging levels onto stdlib levels
LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}

JSONObject = dict[str, Any]
BuiltinHandler = Callable[[Envelope, DispatchContext], Awaitable[Any]]


def _dump(model: BaseModel) -> JSONObject:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _invalid_params(method: str, exc: ValidationError) -> InvalidParamsError:
    return InvalidParamsError(
        f"Invalid params for {method}", json.loads(exc.json(include_url=False))
    )


class DispatchServer:
    """Protocol server: transport events in, correlated replies out.

    Args:
        config: Server name, version and protocol settings.
        transport: Optional transport to attach immediately.

    Example:
        server = DispatchServer(ServerConfig(name="demo"))
        server.register_tool(ToolDefinition("echo", echo, input_model=EchoInput))
        server.attach(StdioTransport())
        async with server:
            await server.get_transport().wait_closed()
    """

    def __init__(
        self, config: ServerConfig | None = None, transport: Transport | None = None
    ) -> None:
        self.config = config or ServerConfig()
        self.tools = ToolRegistry()
        self.middleware = MiddlewarePipeline(max_depth=self.config.max_middleware)
        self.hooks = HookRegistry()
        self.plugins = PluginManager()
        self._transport: Transport | None = None
        self._wired: weakref.WeakSet[Any] = weakref.WeakSet()
        self._running = False
        self._sessions: dict[str, str] = {}
        self._builtins: dict[str, BuiltinHandler] = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "tools/list": self._handle_list_tools,
            "tools/call": self._handle_call_tool,
            "logging/setLevel": self._handle_set_level,
            "notifications/initialized": self._handle_initialized,
        }
        if transport is not None:
            self.attach(transport)

    @property
    def is_running(self) -> bool:
        return self._running

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # --- Server handle used by plugins ---

    def register_tool(self, tool: ToolDefinition) -> None:
        self.tools.register(tool)

    def unregister_tool(self, name: str) -> bool:
        return self.tools.unregister(name)

    def list_tools(self) -> list[ToolDefinition]:
        return self.tools.list()

    def register_middleware(self, middleware: Middleware) -> None:
        self.middleware.register(middleware)

    def unregister_middleware(self, name: str) -> bool:
        return self.middleware.unregister(name)

    def register_hook(self, hook: Hook) -> None:
        self.hooks.register(hook)

    def unregister_hook(self, name: str) -> int:
        return self.hooks.unregister(name)

    def get_transport(self) -> Transport | None:
        return self._transport

    # --- Transport ownership ---

    def attach(self, transport: Transport) -> None:
        """Make ``transport`` the active transport without starting it.

        Raises:
            RuntimeError: If the server is running; use set_transport().
        """
        if self._running:
            raise RuntimeError("Cannot attach a transport to a running server, use set_transport()")
        self._transport = transport
        if transport not in self._wired:
            transport.on_connect(self._on_connect)
            transport.on_disconnect(self._on_disconnect)
            transport.on_message(self._on_message)
            self._wired.add(transport)

    async def set_transport(self, transport: Transport) -> None:
        """Swap the active transport.

        The current transport is stopped before the new one is attached,
        so two transports are never live at once. If the server is running
        the new transport is started.
        """
        previous = self._transport
        if previous is transport:
            return
        was_running = self._running
        if previous is not None and was_running:
            logger.info("Stopping %s transport before switching", previous.name)
            await previous.stop()
        self._running = False
        self.attach(transport)
        if was_running:
            try:
                await transport.start()
            except BaseException:
                await transport.stop()
                raise
            self._running = True

    async def start(self) -> None:
        """Fire OnStart hooks, then start the transport.

        Raises:
            TransportError: If no transport is attached or it fails to start.
        """
        if self._running:
            logger.warning("Server is already running")
            return
        transport = self._transport
        if transport is None:
            raise TransportError("No transport configured")

        logger.info("Starting %s v%s on %s", self.config.name, self.config.version, transport.name)
        await self.hooks.fire(HookPhase.ON_START, HookContext(phase=HookPhase.ON_START))
        try:
            await transport.start()
        except BaseException:
            await transport.stop()
            raise
        self._running = True

    async def stop(self) -> None:
        """Stop the transport, then fire OnStop hooks."""
        if not self._running:
            logger.warning("Server is not running")
            return
        self._running = False
        logger.info("Stopping %s", self.config.name)
        if self._transport is not None:
            await self._transport.stop()
        await self.hooks.fire(HookPhase.ON_STOP, HookContext(phase=HookPhase.ON_STOP))

    # --- Outbound helpers ---

    async def broadcast_event(self, method: str, params: Any = None) -> None:
        """Send an event to every connected client.

        Raises:
            TransportError: If no transport is attached.
        """
        if self._transport is None:
            raise TransportError("No transport configured")
        await self._transport.broadcast(Envelope.event(method, params))

    async def notify_tools_changed(self) -> None:
        """Tell clients the tool list changed (``notifications/tools/list_changed``)."""
        if self._running:
            await self.broadcast_event("notifications/tools/list_changed")

    def get_status(self) -> dict[str, Any]:
        transport = self._transport
        return {
            "name": self.config.name,
            "version": self.config.version,
            "running": self._running,
            "transport": transport.name if transport is not None else None,
            "clients": transport.connected_clients() if transport is not None else [],
            "sessions": dict(self._sessions),
            "tools": len(self.tools),
            "middleware": [entry.name for entry in self.middleware.entries()],
            "plugins": [info.name for info in self.plugins.list_plugins() if info.loaded],
        }

    # --- Transport events ---

    async def _on_connect(self, client_id: str) -> None:
        logger.info("Client connected: %s", client_id)
        await self.hooks.fire(
            HookPhase.ON_CLIENT_CONNECT,
            HookContext(phase=HookPhase.ON_CLIENT_CONNECT, client_id=client_id),
        )

    async def _on_disconnect(self, client_id: str) -> None:
        logger.info("Client disconnected: %s", client_id)
        self._sessions.pop(client_id, None)
        await self.hooks.fire(
            HookPhase.ON_CLIENT_DISCONNECT,
            HookContext(phase=HookPhase.ON_CLIENT_DISCONNECT, client_id=client_id),
        )

    async def _on_message(self, client_id: str, message: Envelope) -> None:
        await self.dispatch(client_id, message)

    # --- Dispatch ---

    async def dispatch(self, client_id: str, message: Envelope) -> None:
        """Run one inbound message through the pipeline and reply.

        Never raises: failures become an error envelope for requests, or a
        log record for everything else.
        A request gets exactly one reply: a failure raised after the
        response went out is only logged.
        """
        context = DispatchContext(
            client_id=client_id,
            logger=logging.LoggerAdapter(logger, {"client_id": client_id}),
        )
        try:
            await self.middleware.run(message, context, self._execute)
        except Exception as exc:
            if context.replied:
                logger.error(
                    "%s (id=%r) from %s failed after its reply was sent",
                    message.method,
                    message.id,
                    client_id,
                    exc_info=exc,
                )
                return
            await self._report_failure(client_id, message, exc)

    async def _execute(self, message: Envelope, context: DispatchContext) -> Any:
        if message.type in (EnvelopeType.RESPONSE, EnvelopeType.ERROR):
            logger.debug(
                "Ignoring inbound %s for id %r from %s", message.type, message.id, context.client_id
            )
            return None
        if not message.method:
            raise InvalidRequestError("Missing method")

        builtin = self._builtins.get(message.method)
        if builtin is not None:
            result = await builtin(message, context)
        else:
            tool = self.tools.get(message.method)
            if tool is None:
                if not message.expects_reply and message.method.startswith("notifications/"):
                    logger.debug("Ignoring notification %s", message.method)
                    return None
                raise UnknownMethodError(message.method)
            result = await self._call_tool(tool, message.params, context)

        if message.expects_reply:
            transport = self._require_transport()
            await transport.send(context.client_id, Envelope.response(message.id, result))
            context.replied = True
        return result

    async def _call_tool(self, tool: ToolDefinition, params: Any, context: DispatchContext) -> Any:
        arguments = tool.validate_input(params)
        await self.hooks.fire(
            HookPhase.BEFORE_TOOL_EXECUTION,
            HookContext(
                phase=HookPhase.BEFORE_TOOL_EXECUTION,
                client_id=context.client_id,
                tool_name=tool.name,
                data={"arguments": params},
            ),
        )

        started = time.perf_counter()
        try:
            result = await tool.handler(arguments, context)
        except Exception as exc:
            await self._fire_after(tool, params, context, started, error=exc)
            if isinstance(exc, DispatchError):
                raise
            raise ToolExecutionError(
                f'Tool "{tool.name}" failed: {exc}', {"tool": tool.name}
            ) from exc
        await self._fire_after(tool, params, context, started, result=result)
        return result

    async def _fire_after(
        self,
        tool: ToolDefinition,
        params: Any,
        context: DispatchContext,
        started: float,
        **outcome: Any,
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        data = {"arguments": params, "duration_ms": duration_ms, **outcome}
        await self.hooks.fire(
            HookPhase.AFTER_TOOL_EXECUTION,
            HookContext(
                phase=HookPhase.AFTER_TOOL_EXECUTION,
                client_id=context.client_id,
                tool_name=tool.name,
                data=data,
            ),
        )

    async def _report_failure(self, client_id: str, message: Envelope, exc: Exception) -> None:
        error = to_error_data(exc)
        label = message.method or message.type.value
        if not isinstance(exc, DispatchError):
            logger.error("Unhandled error in %s from %s", label, client_id, exc_info=exc)
        if not message.expects_reply:
            logger.warning("%s from %s failed: %s", label, client_id, error.message)
            return

        logger.info("%s (id=%r) from %s failed: %s", label, message.id, client_id, error.message)
        try:
            transport = self._require_transport()
            await transport.send(client_id, Envelope.failure(message.id, error))
        except Exception:
            logger.error(
                "Could not deliver error for id %r to %s", message.id, client_id, exc_info=True
            )

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise TransportError("No transport configured")
        return self._transport

    # --- Built-in methods ---

    async def _handle_initialize(self, message: Envelope, context: DispatchContext) -> JSONObject:
        params = message.params if isinstance(message.params, dict) else {}
        requested = params.get("protocolVersion")
        if not isinstance(requested, str):
            raise InvalidParamsError("Missing protocolVersion")

        version = negotiate_protocol_version(
            requested, self.config.protocol_versions, strict=self.config.strict_protocol
        )
        self._sessions[context.client_id] = version
        client_info = params.get("clientInfo")
        if not isinstance(client_info, dict):
            client_info = {}
        logger.info(
            "Client %s initialized: %s %s (protocol %s)",
            context.client_id,
            client_info.get("name", "unknown"),
            client_info.get("version", "unknown"),
            version,
        )
        return _dump(
            InitializeResult(
                protocolVersion=version,
                capabilities=ServerCapabilities(
                    tools=ToolsCapability(listChanged=True),
                    logging=LoggingCapability(),
                ),
                serverInfo=Implementation(name=self.config.name, version=self.config.version),
                instructions=self.config.instructions,
            )
        )

    async def _handle_initialized(self, message: Envelope, context: DispatchContext) -> JSONObject:
        logger.debug("Client %s finished initialization", context.client_id)
        return {}

    async def _handle_ping(self, message: Envelope, context: DispatchContext) -> JSONObject:
        return {}

    async def _handle_list_tools(self, message: Envelope, context: DispatchContext) -> JSONObject:
        return _dump(ListToolsResult(tools=[tool.describe() for tool in self.tools.list()]))

    async def _handle_call_tool(self, message: Envelope, context: DispatchContext) -> JSONObject:
        try:
            params = CallToolRequestParams.model_validate(message.params)
        except ValidationError as exc:
            raise _invalid_params("tools/call", exc) from exc
        tool = self.tools.get(params.name)
        if tool is None:
            raise ToolNotFoundError(params.name)

        result = await self._call_tool(tool, params.arguments or {}, context)
        if isinstance(result, CallToolResult):
            return _dump(result)
        if isinstance(result, BaseModel):
            result = result.model_dump(mode="json")
        if isinstance(result, str):
            text = result
        else:
            text = json.dumps(result, indent=2, ensure_ascii=False)
        return _dump(
            CallToolResult(
                content=[TextContent(type="text", text=text)],
                structuredContent=result if isinstance(result, dict) else None,
            )
        )

    async def _handle_set_level(self, message: Envelope, context: DispatchContext) -> JSONObject:
        try:
            params = SetLevelRequestParams.model_validate(message.params)
        except ValidationError as exc:
            raise _invalid_params("logging/setLevel", exc) from exc
        logging.getLogger(PACKAGE_LOGGER).setLevel(LOG_LEVELS[params.level])
        logger.info("Log level set to %s by %s", params.level, context.client_id)
        return {}
