"""stdio transport adapter for mcp-dispatch.

The server IS the subprocess: a client spawns it and exchanges
newline-delimited JSON-RPC 2.0 objects over its stdin/stdout. stdout
carries protocol frames only; diagnostics go through logging.

There is exactly one logical client per process, identified as
``stdio-client``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Callable
from typing import Any, BinaryIO

from pydantic import ValidationError

from mcp_dispatch.adapters.base import BaseTransport
from mcp_dispatch.errors import ClientNotFoundError, ProtocolFramingError, TransportError
from mcp_dispatch.jsonrpc import (
    decode_message,
    encode_message,
    has_embedded_newline,
    parse_error_frame,
    recover_request_id,
)
from mcp_dispatch.models import Envelope

logger = logging.getLogger(__name__)

STDIO_CLIENT_ID = "stdio-client"

# Longest accepted line, in bytes
STDIO_READ_LIMIT = 16 * 1024 * 1024

Serializer = Callable[[dict[str, Any]], str]


def compact_json(frame: dict[str, Any]) -> str:
    """Default frame serializer: compact separators, non-ASCII kept as is."""
    return json.dumps(frame, separators=(",", ":"), ensure_ascii=False)


class StdioTransport(BaseTransport):
    """Newline-delimited JSON-RPC over the process's stdin and stdout.

    Args:
        stdin: Reader to consume frames from. When omitted, start() attaches
            a reader to ``sys.stdin`` with ``loop.connect_read_pipe``.
        stdout: Binary stream frames are written to (default
            ``sys.stdout.buffer``).
        serializer: Turns an outbound JSON-RPC object into one line of text.

    Example:
        transport = StdioTransport()
        transport.on_message(handle)
        async with transport:
            await transport.wait_closed()
    """

    name = "stdio"

    def __init__(
        self,
        stdin: asyncio.StreamReader | None = None,
        stdout: BinaryIO | None = None,
        serializer: Serializer | None = None,
    ) -> None:
        super().__init__()
        self._stdin = stdin
        self._stdout = stdout
        self._serialize = serializer or compact_json
        self._reader: asyncio.StreamReader | None = None
        self._pipe: asyncio.ReadTransport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._accepting = False
        self._idle = asyncio.Event()
        self._idle.set()

    async def start(self) -> None:
        """Attach to stdin, report the single client and begin reading.

        Raises:
            TransportError: If already started or stdin cannot be attached.
        """
        if self._started:
            raise TransportError("stdio transport is already started")

        if self._stdin is not None:
            self._reader = self._stdin
        else:
            loop = asyncio.get_running_loop()
            reader = asyncio.StreamReader(limit=STDIO_READ_LIMIT)
            protocol = asyncio.StreamReaderProtocol(reader)
            try:
                self._pipe, _ = await loop.connect_read_pipe(lambda: protocol, sys.stdin)
            except (OSError, ValueError) as exc:
                raise TransportError(f"Cannot attach to stdin: {exc}") from exc
            self._reader = reader
        if self._stdout is None:
            self._stdout = sys.stdout.buffer

        self._closed.clear()
        self._accepting = True
        self._started = True
        self._add_client(STDIO_CLIENT_ID)
        logger.debug("stdio transport started")
        await self._emit_connect(STDIO_CLIENT_ID)
        self._reader_task = asyncio.create_task(self._reader_loop(), name="stdio-reader")

    async def stop(self) -> None:
        """Stop reading, let the in-flight message finish, then release stdin.

        Safe to call multiple times, from inside a message handler, and
        after a failed start().
        """
        self._accepting = False
        task = self._reader_task
        self._reader_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            await self._idle.wait()
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._pipe is not None:
            self._pipe.close()
            self._pipe = None
        self._started = False
        self._closed.set()
        await self._disconnect()

    async def send(self, client_id: str, message: Envelope) -> None:
        """Write one frame to stdout.

        Args:
            client_id: Must be ``stdio-client`` while connected.
            message: The envelope to send.

        Raises:
            TransportError: If the transport is stopped or stdout fails.
            ClientNotFoundError: If the client id is unknown or disconnected.
            ProtocolFramingError: If the serialized frame contains a newline.
        """
        if not self._started:
            raise TransportError("stdio transport is not started")
        if client_id not in self._clients:
            raise ClientNotFoundError(client_id)
        self._write_frame(self._serialize(encode_message(message)))

    def _write_frame(self, frame: str) -> None:
        # write + flush with no await in between: frames never interleave
        if "\n" in frame:
            raise ProtocolFramingError(
                "Serialized frame contains a newline", {"length": len(frame)}
            )
        try:
            data = (frame + "\n").encode("utf-8")
        except UnicodeEncodeError as exc:
            raise ProtocolFramingError(f"Frame is not valid UTF-8: {exc}") from exc
        assert self._stdout is not None
        try:
            self._stdout.write(data)
            self._stdout.flush()
        except (OSError, ValueError) as exc:
            raise TransportError(f"stdout write failed: {exc}") from exc

    async def _reader_loop(self) -> None:
        """Read lines until EOF, a stream error, or stop().

        Every exit other than cancellation by stop() disconnects the client
        and releases wait_closed().
        """
        reader = self._reader
        assert reader is not None
        try:
            while self._accepting:
                at_eof = False
                try:
                    raw = await reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as exc:
                    raw = exc.partial
                    at_eof = True
                except asyncio.LimitOverrunError:
                    logger.warning("stdio: discarded a frame longer than the read limit")
                    await self._skip_line(reader)
                    continue

                if raw:
                    self._idle.clear()
                    try:
                        await self._handle_line(raw)
                    finally:
                        self._idle.set()
                if at_eof:
                    logger.debug("stdio: end of input")
                    break
        except Exception:
            logger.exception("stdio: reading stdin failed")

        try:
            await self._disconnect()
        except Exception:
            logger.exception("stdio: disconnect handler failed")
        finally:
            self._closed.set()

    @staticmethod
    async def _skip_line(reader: asyncio.StreamReader) -> None:
        """Drop buffered input up to and including the next newline."""
        while True:
            try:
                await reader.readuntil(b"\n")
                return
            except asyncio.LimitOverrunError as exc:
                await reader.readexactly(exc.consumed)
            except asyncio.IncompleteReadError:
                return

    async def _handle_line(self, raw: bytes) -> None:
        try:
            line = raw.decode("utf-8").rstrip("\r\n")
        except UnicodeDecodeError:
            self._reject_line(raw.decode("utf-8", errors="replace"), "invalid UTF-8")
            return
        if not line.strip():
            return

        try:
            payload = json.loads(line)
        except ValueError:
            self._reject_line(line, "malformed JSON")
            return
        try:
            message = decode_message(payload)
        except ValidationError:
            self._reject_line(line, "not a JSON-RPC 2.0 message")
            return

        if has_embedded_newline(message):
            logger.warning(
                "stdio: rejected frame with a newline in its method or id (id=%r)", message.id
            )
            return

        try:
            await self._emit_message(STDIO_CLIENT_ID, message)
        except Exception:
            logger.exception("stdio: message handler failed")

    def _reject_line(self, line: str, reason: str) -> None:
        request_id = recover_request_id(line)
        logger.warning("stdio: rejected frame (%s), recovered id=%r", reason, request_id)
        if request_id is None or not self._started:
            return
        try:
            self._write_frame(self._serialize(parse_error_frame(request_id)))
        except (ProtocolFramingError, TransportError):
            logger.error("stdio: could not send parse error reply", exc_info=True)

    async def _disconnect(self) -> None:
        if STDIO_CLIENT_ID not in self._clients:
            return
        self._remove_client(STDIO_CLIENT_ID)
        logger.debug("stdio client disconnected")
        await self._emit_disconnect(STDIO_CLIENT_ID)
