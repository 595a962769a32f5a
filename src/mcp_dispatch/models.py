"""Core data models for mcp-dispatch.

Defines the envelope exchanged over every transport, the per-message
dispatch context, lifecycle hook phases and the server configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import ErrorData
from pydantic import BaseModel, ConfigDict, Field, model_validator


class EnvelopeType(StrEnum):
    """Kind of message carried by an Envelope.

    Attributes:
        REQUEST: Expects a correlated response or error.
        RESPONSE: Successful answer to a request.
        ERROR: Failed answer to a request.
        EVENT: Fire-and-forget notification, never answered.
    """

    REQUEST = "request"
    RESPONSE = "response"
    ERROR = "error"
    EVENT = "event"


class HookPhase(StrEnum):
    """Lifecycle extension points fired by the server.

    Attributes:
        ON_START: Before the transport starts.
        ON_STOP: After the transport stops.
        ON_CLIENT_CONNECT: A transport reported a new client.
        ON_CLIENT_DISCONNECT: A transport reported a client going away.
        BEFORE_TOOL_EXECUTION: Input validated, tool handler about to run.
        AFTER_TOOL_EXECUTION: Tool handler returned or raised.
    """

    ON_START = "on_start"
    ON_STOP = "on_stop"
    ON_CLIENT_CONNECT = "on_client_connect"
    ON_CLIENT_DISCONNECT = "on_client_disconnect"
    BEFORE_TOOL_EXECUTION = "before_tool_execution"
    AFTER_TOOL_EXECUTION = "after_tool_execution"


class Envelope(BaseModel):
    """A single message exchanged between a client and the server.

    Args:
        type: REQUEST, RESPONSE, ERROR or EVENT.
        id: Correlates a request with its response or error. Events carry none.
        method: Method name for requests and events (e.g. ``tools/call``).
        params: Opaque request or event payload.
        result: Opaque response payload.
        error: Error object (``code``, ``message``, optional ``data``).
    """

    model_config = ConfigDict(extra="forbid")

    type: EnvelopeType
    id: str | int | None = None
    method: str | None = None
    params: Any = None
    result: Any = None
    error: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> Envelope:
        if self.type == EnvelopeType.EVENT and self.id is not None:
            raise ValueError("event envelopes must not carry an id")
        if self.type in (EnvelopeType.REQUEST, EnvelopeType.EVENT) and not self.method:
            raise ValueError(f"{self.type.value} envelopes require a method")
        return self

    @property
    def expects_reply(self) -> bool:
        """True for requests that carry an id to correlate a reply with."""
        return self.type == EnvelopeType.REQUEST and self.id is not None

    @classmethod
    def request(cls, method: str, params: Any = None, id: str | int | None = None) -> Envelope:
        return cls(type=EnvelopeType.REQUEST, id=id, method=method, params=params)

    @classmethod
    def response(cls, id: str | int | None, result: Any) -> Envelope:
        return cls(type=EnvelopeType.RESPONSE, id=id, result=result)

    @classmethod
    def failure(cls, id: str | int | None, error: ErrorData | dict[str, Any]) -> Envelope:
        if isinstance(error, ErrorData):
            error = error.model_dump(exclude_none=True)
        return cls(type=EnvelopeType.ERROR, id=id, error=error)

    @classmethod
    def event(cls, method: str, params: Any = None) -> Envelope:
        return cls(type=EnvelopeType.EVENT, method=method, params=params)


@dataclass
class DispatchContext:
    """State shared by every middleware and the tool handler for one message.

    A fresh instance is allocated per inbound message; concurrent dispatches
    never share one.

    Args:
        client_id: Transport-scoped id of the client that sent the message.
        logger: Logger carrying the client id as ``extra``.
        metadata: Free-form values middleware can record (auth, timing, ...).
        replied: Set once the reply for this message has gone out. Later
            failures are logged, never sent as a second reply.
    """

    client_id: str
    logger: logging.Logger | logging.LoggerAdapter[logging.Logger]
    metadata: dict[str, Any] = field(default_factory=dict)
    replied: bool = False


@dataclass
class HookContext:
    """Data handed to a lifecycle hook.

    Args:
        phase: The phase being fired.
        client_id: Client concerned, for connection and tool phases.
        tool_name: Tool concerned, for tool execution phases.
        data: Phase-specific values (arguments, result, error, duration_ms).
    """

    phase: HookPhase
    client_id: str | None = None
    tool_name: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class ServerConfig(BaseModel):
    """Static configuration for a DispatchServer.

    Args:
        name: Server name reported by ``initialize``.
        version: Server version reported by ``initialize``.
        protocol_versions: Protocol versions the server accepts.
        strict_protocol: Reject ``initialize`` for unknown protocol versions
            instead of falling back to the default.
        max_middleware: Upper bound on the middleware chain length.
        instructions: Optional usage instructions returned by ``initialize``.
    """

    name: str = "mcp-dispatch"
    version: str = "0.1.0"
    protocol_versions: list[str] = Field(
        default_factory=lambda: list(SUPPORTED_PROTOCOL_VERSIONS)
    )
    strict_protocol: bool = False
    max_middleware: int = Field(default=128, ge=1)
    instructions: str | None = None
