"""Error taxonomy for mcp-dispatch.

Every error the dispatch path can surface carries a JSON-RPC error code so
the dispatcher can turn it into a correlated error envelope in one place.
"""

from __future__ import annotations

from typing import Any

from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    ErrorData,
)

# Server-defined codes, in the JSON-RPC implementation-defined range
TOOL_NOT_FOUND = -32001
TOOL_EXECUTION_ERROR = -32002
VALIDATION_ERROR = -32003
TRANSPORT_ERROR = -32004
AUTHORIZATION_ERROR = -32005
TIMEOUT_ERROR = -32006


class DispatchError(Exception):
    """Base class for errors that map onto a JSON-RPC error object.

    Args:
        message: Human-readable description, sent as ``error.message``.
        data: Optional JSON-serializable detail, sent as ``error.data``.
    """

    code: int = INTERNAL_ERROR

    def __init__(self, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data

    def to_error_data(self) -> ErrorData:
        """Build the wire error object for this exception."""
        return ErrorData(code=self.code, message=self.message, data=self.data)


class TransportError(DispatchError):
    """I/O failure on a transport, or a transport used while stopped."""

    code = TRANSPORT_ERROR


class ClientNotFoundError(TransportError):
    """A send targeted a client id the transport does not know (anymore)."""

    def __init__(self, client_id: str) -> None:
        super().__init__(f"Client not found: {client_id}", {"clientId": client_id})
        self.client_id = client_id


class ProtocolFramingError(DispatchError):
    """A frame violated the wire format (malformed JSON, embedded newline)."""

    code = PARSE_ERROR


class InvalidRequestError(DispatchError):
    """The envelope is not a valid request (e.g. missing method)."""

    code = INVALID_REQUEST


class InvalidParamsError(DispatchError):
    """Parameters of a built-in method are missing or malformed."""

    code = INVALID_PARAMS


class UnknownMethodError(DispatchError):
    """No built-in method or registered tool answers to the method name."""

    code = METHOD_NOT_FOUND

    def __init__(self, method: str) -> None:
        super().__init__(f"Method not found: {method}", {"method": method})
        self.method = method


class ToolNotFoundError(UnknownMethodError):
    """``tools/call`` named a tool that is not registered."""

    code = TOOL_NOT_FOUND

    def __init__(self, tool_name: str) -> None:
        DispatchError.__init__(self, f'Tool "{tool_name}" not found', {"tool": tool_name})
        self.method = tool_name


class ToolExecutionError(DispatchError):
    """A tool handler raised."""

    code = TOOL_EXECUTION_ERROR


class InputValidationError(DispatchError):
    """Tool input was rejected by its schema."""

    code = VALIDATION_ERROR


class AuthorizationError(DispatchError):
    """Raised by authentication/authorization middleware to reject a message."""

    code = AUTHORIZATION_ERROR


class DispatchTimeoutError(DispatchError):
    """Raised by timing middleware when the downstream chain ran too long."""

    code = TIMEOUT_ERROR


class PluginLifecycleError(DispatchError):
    """A plugin could not be loaded or unloaded."""


class PluginNotFoundError(PluginLifecycleError):
    """The plugin name was never registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Plugin not found: {name}", {"plugin": name})
        self.name = name


class PluginNotLoadedError(PluginLifecycleError):
    """Unload was requested for a plugin that is not loaded."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Plugin is not loaded: {name}", {"plugin": name})
        self.name = name


def to_error_data(exc: BaseException) -> ErrorData:
    """Convert any exception into a JSON-RPC error object.

    Args:
        exc: The exception caught at the dispatcher boundary.

    Returns:
        The exception's own ErrorData for DispatchError subclasses,
        otherwise an internal error carrying the exception message.
    """
    if isinstance(exc, DispatchError):
        return exc.to_error_data()
    return ErrorData(code=INTERNAL_ERROR, message=str(exc) or type(exc).__name__)
