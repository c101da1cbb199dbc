"""Wire messages exchanged through the relay and the direct channel.

Every message is a JSON object with a ``type`` field naming its kind. The
remaining fields are kept as the message payload:

- Relay control: ``connected``, ``join-room``, ``peer-joined``, ``peer-left``,
  ``error``
- Negotiation (always targeted): ``offer``, ``answer``, ``ice-candidate``
- Game control (relay broadcast or direct channel): ``paddle-move``,
  ``player-info``

The relay stamps ``from`` (sender connection id) on everything it forwards.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from paddlelink.errors import MessageError

__all__ = [
    "DIRECTIONS",
    "SIDES",
    "Message",
    "MessageError",
    "MessageType",
    "decode",
    "paddle_move",
    "player_info",
]

SIDES = ("left", "right")
DIRECTIONS = ("up", "down", "stop")


class MessageType(str, Enum):
    """Kinds of wire messages."""

    CONNECTED = "connected"
    JOIN_ROOM = "join-room"
    PEER_JOINED = "peer-joined"
    PEER_LEFT = "peer-left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    PADDLE_MOVE = "paddle-move"
    PLAYER_INFO = "player-info"
    ERROR = "error"


# Kinds that must name a target connection
TARGETED_TYPES = frozenset(
    {MessageType.OFFER, MessageType.ANSWER, MessageType.ICE_CANDIDATE}
)

# Kinds that may travel over the direct channel
CONTROL_TYPES = frozenset({MessageType.PADDLE_MOVE, MessageType.PLAYER_INFO})

# Kinds a client may submit to the relay
CLIENT_TYPES = frozenset({MessageType.JOIN_ROOM}) | TARGETED_TYPES | CONTROL_TYPES


@dataclass
class Message:
    """A typed wire message.

    Attributes:
        type: Message kind.
        payload: All other JSON fields, keyed by their wire names.
    """

    type: MessageType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def room_id(self) -> str | None:
        return self.payload.get("roomId")

    @property
    def target_id(self) -> str | None:
        return self.payload.get("targetId")

    @property
    def sender(self) -> str | None:
        """Connection id stamped by the relay."""
        return self.payload.get("from")

    @property
    def player_id(self) -> str | None:
        return self.payload.get("playerId")

    @property
    def side(self) -> str | None:
        return self.payload.get("playerSide")

    @property
    def direction(self) -> str | None:
        return self.payload.get("direction")

    def with_fields(self, **fields: Any) -> "Message":
        """Return a copy with extra payload fields set."""
        return Message(type=self.type, payload={**self.payload, **fields})

    def to_dict(self) -> dict[str, Any]:
        """Convert message to dict for JSON serialization."""
        return {"type": self.type.value, **self.payload}

    def encode(self) -> str:
        """Serialize to a JSON text frame."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Message":
        """Create and validate a message from a decoded JSON object.

        A direct-channel object without ``type`` but with ``direction`` is
        read as ``paddle-move``, which is how browser controllers send moves.

        Raises:
            MessageError: If the object is not a valid message.
        """
        if not isinstance(d, dict):
            raise MessageError("Message must be a JSON object")

        raw_type = d.get("type")
        if raw_type is None and "direction" in d:
            raw_type = MessageType.PADDLE_MOVE.value
        try:
            msg_type = MessageType(raw_type)
        except ValueError:
            raise MessageError(f"Unknown message type: {raw_type!r}") from None

        payload = {k: v for k, v in d.items() if k != "type"}
        message = cls(type=msg_type, payload=payload)
        _validate(message)
        return message


def decode(raw: str | bytes) -> Message:
    """Decode a JSON text frame into a validated message.

    Raises:
        MessageError: If the frame is not JSON or fails validation.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MessageError(f"Invalid UTF-8: {e}") from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MessageError(f"Invalid JSON: {e}") from e
    return Message.from_dict(data)


def paddle_move(direction: str, side: str | None, player_id: str) -> Message:
    """Build a paddle-move control message."""
    payload: dict[str, Any] = {"direction": direction, "playerId": player_id}
    if side is not None:
        payload["playerSide"] = side
    message = Message(type=MessageType.PADDLE_MOVE, payload=payload)
    _validate(message)
    return message


def player_info(side: str, player_id: str) -> Message:
    """Build a player-info control message."""
    message = Message(
        type=MessageType.PLAYER_INFO,
        payload={"playerSide": side, "playerId": player_id},
    )
    _validate(message)
    return message


def _require_str(message: Message, key: str) -> None:
    value = message.payload.get(key)
    if not isinstance(value, str) or not value:
        raise MessageError(f"{message.type.value}: '{key}' must be a non-empty string")


def _optional_str(message: Message, key: str) -> None:
    value = message.payload.get(key)
    if value is not None and not isinstance(value, str):
        raise MessageError(f"{message.type.value}: '{key}' must be a string")


def _validate(message: Message) -> None:
    """Check the fields each message kind requires."""
    t = message.type
    payload = message.payload

    _optional_str(message, "roomId")
    _optional_str(message, "targetId")

    if t == MessageType.CONNECTED:
        _require_str(message, "connectionId")
    elif t == MessageType.JOIN_ROOM:
        _require_str(message, "roomId")
    elif t in (MessageType.PEER_JOINED, MessageType.PEER_LEFT):
        _require_str(message, "peerId")
    elif t in (MessageType.OFFER, MessageType.ANSWER):
        _require_str(message, "targetId")
        description = payload.get("description")
        if not isinstance(description, dict):
            raise MessageError(f"{t.value}: 'description' must be an object")
        if not isinstance(description.get("sdp"), str):
            raise MessageError(f"{t.value}: description has no sdp")
        if description.get("type", t.value) != t.value:
            raise MessageError(
                f"{t.value}: description type is {description.get('type')!r}"
            )
    elif t == MessageType.ICE_CANDIDATE:
        _require_str(message, "targetId")
        candidate = payload.get("candidate")
        if not isinstance(candidate, dict):
            raise MessageError("ice-candidate: 'candidate' must be an object")
        if not isinstance(candidate.get("candidate", ""), str):
            raise MessageError("ice-candidate: candidate line must be a string")
    elif t == MessageType.PADDLE_MOVE:
        if payload.get("direction") not in DIRECTIONS:
            raise MessageError(
                f"paddle-move: direction must be one of {DIRECTIONS}, "
                f"got {payload.get('direction')!r}"
            )
        side = payload.get("playerSide")
        if side is not None and side not in SIDES:
            raise MessageError(f"paddle-move: invalid side {side!r}")
        _optional_str(message, "playerId")
    elif t == MessageType.PLAYER_INFO:
        if payload.get("playerSide") not in SIDES:
            raise MessageError(
                f"player-info: invalid side {payload.get('playerSide')!r}"
            )
        _require_str(message, "playerId")
    elif t == MessageType.ERROR:
        _optional_str(message, "reason")
