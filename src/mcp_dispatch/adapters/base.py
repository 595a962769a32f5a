"""Transport adapter protocol for mcp-dispatch.

All transports (stdio, in-process memory, and any socket-based channel a
deployment adds) implement this protocol. The dispatcher interacts only
with this interface and never sees transport-specific details.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any, Protocol, Self

from mcp_dispatch.models import Envelope

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, Envelope], Awaitable[None]]
ConnectionHandler = Callable[[str], Awaitable[None]]


class Transport(Protocol):
    """Interface for transport adapters.

    A transport normalizes its channel's connect, message and disconnect
    activity into uniform events keyed by a transport-scoped client id.
    Registered handlers of one kind run sequentially, each awaited before
    the next and before the transport resumes reading that connection.
    """

    name: str

    async def start(self) -> None:
        """Acquire the underlying I/O resource and begin accepting input."""
        ...

    async def stop(self) -> None:
        """Stop accepting input and release the I/O resource.

        Safe to call multiple times, and after a failed start().
        """
        ...

    async def send(self, client_id: str, message: Envelope) -> None:
        """Deliver a message to one connected client.

        Raises:
            ClientNotFoundError: If the client is unknown or disconnected.
            TransportError: If the transport is not started or I/O fails.
        """
        ...

    async def broadcast(self, message: Envelope) -> None:
        """Deliver a message to every client connected at call time."""
        ...

    def on_message(self, handler: MessageHandler) -> None: ...

    def on_connect(self, handler: ConnectionHandler) -> None: ...

    def on_disconnect(self, handler: ConnectionHandler) -> None: ...

    def connected_clients(self) -> list[str]: ...

    async def wait_closed(self) -> None:
        """Wait until the transport will produce no further input."""
        ...


class BaseTransport(ABC):
    """Shared handler registration, client bookkeeping and broadcast.

    Subclasses implement start(), stop() and send(), and record their
    peers with _add_client() / _remove_client().

    Example:
        async with StdioTransport() as transport:
            transport.on_message(handle)
            await transport.wait_closed()
    """

    name = "base"

    def __init__(self) -> None:
        self._message_handlers: list[MessageHandler] = []
        self._connect_handlers: list[ConnectionHandler] = []
        self._disconnect_handlers: list[ConnectionHandler] = []
        self._clients: dict[str, Any] = {}
        self._started = False
        self._closed = asyncio.Event()

    @property
    def is_started(self) -> bool:
        """True between a successful start() and stop()."""
        return self._started

    async def __aenter__(self) -> Self:
        """Start the transport; release anything acquired if start fails."""
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def send(self, client_id: str, message: Envelope) -> None: ...

    async def broadcast(self, message: Envelope) -> None:
        """Send to a snapshot of the connected clients, best effort.

        A failed delivery is logged and does not stop delivery to the
        remaining clients.

        Args:
            message: The envelope to deliver.
        """
        for client_id in list(self._clients):
            try:
                await self.send(client_id, message)
            except Exception:
                logger.warning(
                    "%s transport: broadcast to %s failed", self.name, client_id, exc_info=True
                )

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_connect(self, handler: ConnectionHandler) -> None:
        self._connect_handlers.append(handler)

    def on_disconnect(self, handler: ConnectionHandler) -> None:
        self._disconnect_handlers.append(handler)

    def connected_clients(self) -> list[str]:
        return list(self._clients)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _add_client(self, client_id: str, connection: Any = None) -> None:
        self._clients[client_id] = connection

    def _remove_client(self, client_id: str) -> Any:
        return self._clients.pop(client_id, None)

    async def _emit_message(self, client_id: str, message: Envelope) -> None:
        for handler in list(self._message_handlers):
            await handler(client_id, message)

    async def _emit_connect(self, client_id: str) -> None:
        for handler in list(self._connect_handlers):
            await handler(client_id)

    async def _emit_disconnect(self, client_id: str) -> None:
        for handler in list(self._disconnect_handlers):
            await handler(client_id)
