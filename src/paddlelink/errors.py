"""Base exceptions for paddlelink."""


class PaddleLinkError(Exception):
    """Base exception for all paddlelink errors."""

    pass


class MessageError(PaddleLinkError):
    """Wire message could not be parsed or validated."""

    pass


class NegotiationError(PaddleLinkError):
    """Peer negotiation error (invalid transition, missing link, etc.)."""

    pass


class TransportError(PaddleLinkError):
    """Control message could not be sent on any transport."""

    pass


class RelayError(PaddleLinkError):
    """Signaling relay error."""

    pass


class RelayBindError(RelayError):
    """Relay could not bind its listening socket."""

    pass


class RelayConnectionError(RelayError):
    """Client could not reach the relay or lost its connection."""

    pass
