"""In-process transport adapter for mcp-dispatch.

Connects any number of in-process peers to a server without sockets or
pipes. Each peer gets a MemoryConnection; messages it sends are pumped to
the transport's handlers one at a time, and replies land in its inbox.
Used by embedding applications and by the test suite.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

from mcp_dispatch.adapters.base import BaseTransport
from mcp_dispatch.errors import ClientNotFoundError, TransportError
from mcp_dispatch.models import Envelope

logger = logging.getLogger(__name__)


class MemoryConnection:
    """Client side of one in-process connection.

    Created by MemoryTransport.connect(); not instantiated directly.

    Example:
        conn = await transport.connect()
        reply = await conn.request("ping")
    """

    def __init__(self, transport: MemoryTransport, client_id: str) -> None:
        self.client_id = client_id
        self.inbox: asyncio.Queue[Envelope] = asyncio.Queue()
        self.closed = False
        self._transport = transport
        self._outbox: asyncio.Queue[Envelope | None] = asyncio.Queue()
        self._pump: asyncio.Task[None] | None = None
        self._ids = itertools.count(1)

    async def send(self, message: Envelope) -> None:
        """Queue a message for the server.

        Raises:
            TransportError: If this connection or its transport is closed.
        """
        if self.closed or not self._transport.accepting:
            raise TransportError(f"Connection {self.client_id} is closed")
        await self._outbox.put(message)

    async def receive(self, timeout: float | None = None) -> Envelope:
        """Wait for the next message delivered to this client.

        Raises:
            TimeoutError: If nothing arrives within ``timeout`` seconds.
        """
        return await asyncio.wait_for(self.inbox.get(), timeout)

    async def request(
        self, method: str, params: Any = None, timeout: float | None = 5.0
    ) -> Envelope:
        """Send a request with a fresh id and wait for the reply to it.

        Messages for other ids (e.g. broadcast events) that arrive first
        are kept in the inbox in their original order.
        """
        request_id = next(self._ids)
        await self.send(Envelope.request(method, params, id=request_id))
        skipped: list[Envelope] = []
        try:
            while True:
                reply = await self.receive(timeout)
                if reply.id == request_id and reply.type != "request":
                    return reply
                skipped.append(reply)
        finally:
            # Put unrelated messages back ahead of anything received since
            pending = skipped + [self.inbox.get_nowait() for _ in range(self.inbox.qsize())]
            for item in pending:
                self.inbox.put_nowait(item)

    async def close(self) -> None:
        """Disconnect from the transport. Safe to call multiple times."""
        await self._transport.disconnect(self.client_id)


class MemoryTransport(BaseTransport):
    """Multi-peer transport backed by asyncio queues.

    Messages from one connection are handled sequentially; different
    connections interleave freely.

    Example:
        transport = MemoryTransport()
        server.set_transport(transport)
        async with server:
            conn = await transport.connect()
    """

    name = "memory"

    def __init__(self) -> None:
        super().__init__()
        self._accepting = False
        self._counter = itertools.count(1)

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def start(self) -> None:
        if self._started:
            raise TransportError("memory transport is already started")
        self._closed.clear()
        self._started = True
        self._accepting = True
        logger.debug("memory transport started")

    async def stop(self) -> None:
        """Refuse new input, let in-flight messages finish, drop every peer."""
        self._accepting = False
        for client_id in list(self._clients):
            await self.disconnect(client_id)
        self._started = False
        self._closed.set()

    async def connect(self, client_id: str | None = None) -> MemoryConnection:
        """Open a new in-process connection.

        Args:
            client_id: Id to report to handlers (default ``memory-<n>``).

        Returns:
            The client side of the connection.

        Raises:
            TransportError: If the transport is not accepting connections or
                the id is already connected.
        """
        if not self._accepting:
            raise TransportError("memory transport is not started")
        client_id = client_id or f"memory-{next(self._counter)}"
        if client_id in self._clients:
            raise TransportError(f"Client already connected: {client_id}")

        connection = MemoryConnection(self, client_id)
        self._add_client(client_id, connection)
        logger.debug("memory client connected: %s", client_id)
        await self._emit_connect(client_id)
        connection._pump = asyncio.create_task(
            self._pump(connection), name=f"memory-pump-{client_id}"
        )
        return connection

    async def disconnect(self, client_id: str) -> None:
        """Close one connection after its in-flight message finishes.

        Messages queued but not yet started are dropped. Unknown ids are
        ignored.
        """
        connection: MemoryConnection | None = self._clients.get(client_id)
        if connection is None or connection.closed:
            return
        connection.closed = True
        connection._outbox.put_nowait(None)
        pump = connection._pump
        if pump is not None and pump is not asyncio.current_task():
            await pump
        self._remove_client(client_id)
        logger.debug("memory client disconnected: %s", client_id)
        await self._emit_disconnect(client_id)

    async def send(self, client_id: str, message: Envelope) -> None:
        if not self._started:
            raise TransportError("memory transport is not started")
        connection: MemoryConnection | None = self._clients.get(client_id)
        if connection is None:
            raise ClientNotFoundError(client_id)
        connection.inbox.put_nowait(message)

    async def _pump(self, connection: MemoryConnection) -> None:
        while True:
            message = await connection._outbox.get()
            if message is None or connection.closed:
                return
            try:
                await self._emit_message(connection.client_id, message)
            except Exception:
                logger.exception("memory: message handler failed for %s", connection.client_id)
