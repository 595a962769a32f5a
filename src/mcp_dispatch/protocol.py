"""Protocol version negotiation.

Versions are ISO dates (``2025-06-18``), so lexical order is
chronological order.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from mcp.types import LATEST_PROTOCOL_VERSION

from mcp_dispatch.errors import InvalidParamsError

logger = logging.getLogger(__name__)


class UnsupportedProtocolVersionError(InvalidParamsError):
    """Strict negotiation rejected the client's protocol version."""


def default_protocol_version(supported: Sequence[str]) -> str:
    """The version offered when the client's request cannot be honoured."""
    if not supported:
        raise ValueError("At least one protocol version must be supported")
    if LATEST_PROTOCOL_VERSION in supported:
        return LATEST_PROTOCOL_VERSION
    return max(supported)


def negotiate_protocol_version(
    requested: str | None,
    supported: Sequence[str],
    strict: bool = False,
) -> str:
    """Pick the protocol version to answer ``initialize`` with.

    An exact match wins. Otherwise the newest supported version older
    than the requested one is chosen, so an older server still talks to a
    newer client. In strict mode anything but an exact match is rejected.

    Args:
        requested: ``protocolVersion`` from the client, if any.
        supported: Versions this server accepts.
        strict: Reject instead of falling back.

    Returns:
        The negotiated version.

    Raises:
        UnsupportedProtocolVersionError: In strict mode, when ``requested``
            is missing or not supported.
    """
    if requested is not None and requested in supported:
        return requested
    if strict:
        raise UnsupportedProtocolVersionError(
            f"Unsupported protocol version: {requested}",
            {"supported": list(supported), "requested": requested},
        )

    if requested is not None:
        older = [version for version in supported if version <= requested]
        if older:
            chosen = max(older)
            logger.info("Client requested protocol %s, falling back to %s", requested, chosen)
            return chosen

    chosen = default_protocol_version(supported)
    logger.info("Client requested protocol %s, answering with %s", requested, chosen)
    return chosen
