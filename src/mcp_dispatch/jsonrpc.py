"""JSON-RPC conversion helpers.

Insulates the rest of the codebase from the MCP SDK's JSONRPCMessage
structure. Transports use these helpers to turn wire objects into
Envelopes and back, and to build parse-error replies.
"""

from __future__ import annotations

import json
import re
from typing import Any

from mcp.types import (
    PARSE_ERROR,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)

from mcp_dispatch.models import Envelope, EnvelopeType

_STRING_ID = re.compile(r'"id"\s*:\s*"([^"\\]+)"')
_NUMBER_ID = re.compile(r'"id"\s*:\s*(-?\d+)')


def decode_message(payload: Any) -> Envelope:
    """Classify a parsed JSON-RPC object and wrap it in an Envelope.

    Args:
        payload: The object produced by ``json.loads`` for one frame.

    Returns:
        An Envelope whose type mirrors the JSON-RPC message kind.

    Raises:
        pydantic.ValidationError: If the object is not a JSON-RPC 2.0 message.
    """
    root = JSONRPCMessage.model_validate(payload).root
    if isinstance(root, JSONRPCRequest):
        return Envelope(
            type=EnvelopeType.REQUEST, id=root.id, method=root.method, params=root.params
        )
    if isinstance(root, JSONRPCNotification):
        return Envelope(type=EnvelopeType.EVENT, method=root.method, params=root.params)
    if isinstance(root, JSONRPCResponse):
        return Envelope(type=EnvelopeType.RESPONSE, id=root.id, result=root.result)
    if isinstance(root, JSONRPCError):
        return Envelope(
            type=EnvelopeType.ERROR,
            id=root.id,
            error=root.error.model_dump(exclude_none=True),
        )
    raise TypeError(f"Unexpected JSON-RPC message type: {type(root).__name__}")


def encode_message(envelope: Envelope) -> dict[str, Any]:
    """Convert an Envelope into a JSON-RPC 2.0 object.

    Args:
        envelope: The envelope to send.

    Returns:
        A dict ready for JSON serialization. Optional members that are
        unset (``params``) are omitted.
    """
    frame: dict[str, Any] = {"jsonrpc": "2.0"}
    if envelope.type in (EnvelopeType.REQUEST, EnvelopeType.EVENT):
        frame["method"] = envelope.method
        if envelope.params is not None:
            frame["params"] = envelope.params
        if envelope.type == EnvelopeType.REQUEST:
            frame["id"] = envelope.id
    elif envelope.type == EnvelopeType.RESPONSE:
        frame["id"] = envelope.id
        frame["result"] = envelope.result
    else:
        frame["id"] = envelope.id
        frame["error"] = envelope.error
    return frame


def recover_request_id(raw: str) -> str | int | None:
    """Recover the request id from a frame that could not be dispatched.

    Valid JSON is inspected directly. Otherwise a lightweight pattern match
    takes the first string or integer id that appears in the text.

    Args:
        raw: The raw line as received.

    Returns:
        The id, or None if none can be recovered.
    """
    try:
        payload = json.loads(raw)
    except ValueError:
        string_match = _STRING_ID.search(raw)
        number_match = _NUMBER_ID.search(raw)
        if number_match and (string_match is None or number_match.start() < string_match.start()):
            return int(number_match.group(1))
        if string_match:
            return string_match.group(1)
        return None
    if isinstance(payload, dict):
        request_id = payload.get("id")
        if isinstance(request_id, str) and request_id:
            return request_id
        if isinstance(request_id, int) and not isinstance(request_id, bool):
            return request_id
    return None


def parse_error_frame(request_id: str | int) -> dict[str, Any]:
    """Build the reply sent for an unparseable frame with a recoverable id."""
    return {"id": request_id, "error": {"code": PARSE_ERROR, "message": "Parse error"}}


def has_embedded_newline(envelope: Envelope) -> bool:
    """Check whether the method or string id would break line framing."""
    if envelope.method is not None and "\n" in envelope.method:
        return True
    return isinstance(envelope.id, str) and "\n" in envelope.id
