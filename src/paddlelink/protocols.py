"""Protocols and enums shared across paddlelink."""

from enum import Enum
from typing import Protocol

from paddlelink.messages import Message


class NegotiationState(Enum):
    """State of one peer link's negotiation.

    ANSWER_AWAITED means the description exchange is done on this side and
    the link is waiting for the direct channel to open.
    """

    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    ANSWER_AWAITED = "answer_awaited"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class Route(Enum):
    """Transport that carried an outgoing control message."""

    DIRECT = "direct"
    RELAY = "relay"


# ============================================================================
# Collaborator Protocols
# ============================================================================


class GameLoopProtocol(Protocol):
    """The game consuming controller input.

    Implemented outside this package (rendering, physics, scoring).
    """

    def move_paddle(self, side: str, direction: str) -> None:
        """Start moving the paddle on ``side`` up or down."""
        ...

    def stop_paddle(self, side: str) -> None:
        """Stop the paddle on ``side``."""
        ...


class RelaySenderProtocol(Protocol):
    """Anything that can push a message to the relay (DI for testing)."""

    @property
    def connection_id(self) -> str | None:
        """Connection id assigned by the relay, once connected."""
        ...

    @property
    def is_connected(self) -> bool:
        """True while the relay session is open."""
        ...

    async def send(self, message: Message) -> None:
        """Send a message to the relay."""
        ...
