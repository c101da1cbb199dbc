"""Registry of which remote player controls which side."""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable

from paddlelink.messages import DIRECTIONS, SIDES
from paddlelink.protocols import GameLoopProtocol

logger = logging.getLogger(__name__)


@dataclass
class PlayerSlot:
    """A remote player's claim on a side.

    Attributes:
        player_id: Client-generated identity (survives transport reconnects).
        side: "left" or "right".
        connected: Whether this player currently holds the side.
        connection_id: Relay connection that last carried this player's messages.
    """

    player_id: str
    side: str
    connected: bool = True
    connection_id: str | None = None


class PlayerRegistry:
    """Host-side map from player identity to side.

    Announcements may repeat, arrive out of order or race each other; the
    last one for a side wins and the previous holder is kept, marked
    disconnected. Control messages are never gated on this bookkeeping.
    """

    def __init__(
        self,
        game: GameLoopProtocol | None = None,
        on_player_connected: Callable[[str], None] | None = None,
    ):
        """Initialize registry.

        Args:
            game: Game loop receiving paddle commands.
            on_player_connected: Called with the side a player took.
        """
        self._game = game
        self._on_player_connected = on_player_connected
        # Insertion order is first-announcement order
        self._slots: dict[str, PlayerSlot] = {}

    def announce(
        self, player_id: str, side: str, connection_id: str | None = None
    ) -> PlayerSlot:
        """Record that a player took a side.

        Raises:
            ValueError: If side is not "left" or "right".
        """
        if side not in SIDES:
            raise ValueError(f"Invalid side: {side!r}")

        for other in self._slots.values():
            if other.player_id != player_id and other.side == side and other.connected:
                other.connected = False
                logger.info(f"Player {other.player_id} displaced from {side}")

        slot = self._slots.get(player_id)
        if slot is None:
            slot = PlayerSlot(player_id=player_id, side=side)
            self._slots[player_id] = slot
        slot.side = side
        slot.connected = True
        if connection_id is not None:
            slot.connection_id = connection_id

        logger.info(f"Player {player_id} connected on {side}")
        if self._on_player_connected:
            self._on_player_connected(side)
        return dataclasses.replace(slot)

    def on_control_message(
        self,
        player_id: str | None,
        side: str | None,
        direction: str,
        connection_id: str | None = None,
    ) -> bool:
        """Hand a paddle command to the game.

        The side comes from the message. Only when the message has none is
        the sender's announced side used.

        Returns:
            True if the command reached the game.
        """
        if direction not in DIRECTIONS:
            logger.debug(f"Ignoring unknown direction {direction!r}")
            return False

        slot = self._slots.get(player_id) if player_id is not None else None
        if slot is not None and connection_id is not None:
            slot.connection_id = connection_id
        if side is None and slot is not None:
            side = slot.side
        if side not in SIDES:
            logger.debug(f"Dropping {direction} from {player_id}: no side")
            return False

        if self._game is None:
            return False
        if direction == "stop":
            self._game.stop_paddle(side)
        else:
            self._game.move_paddle(side, direction)
        return True

    def disconnect(self, player_id: str) -> bool:
        """Mark a player as no longer holding its side.

        Returns:
            True if the player was connected.
        """
        slot = self._slots.get(player_id)
        if slot is None or not slot.connected:
            return False
        slot.connected = False
        logger.info(f"Player {player_id} disconnected from {slot.side}")
        return True

    def disconnect_connection(self, connection_id: str) -> list[str]:
        """Disconnect every player whose messages came over a connection.

        Returns:
            The player ids that were disconnected.
        """
        return [
            slot.player_id
            for slot in list(self._slots.values())
            if slot.connection_id == connection_id and self.disconnect(slot.player_id)
        ]

    def get(self, player_id: str) -> PlayerSlot | None:
        slot = self._slots.get(player_id)
        return dataclasses.replace(slot) if slot is not None else None

    def holder(self, side: str) -> PlayerSlot | None:
        """The player currently connected on a side, if any."""
        for slot in self._slots.values():
            if slot.side == side and slot.connected:
                return dataclasses.replace(slot)
        return None

    def connected_sides(self) -> list[str]:
        return [side for side in SIDES if self.holder(side) is not None]

    def snapshot(self) -> list[PlayerSlot]:
        """All known slots, in order of first announcement."""
        return [dataclasses.replace(slot) for slot in self._slots.values()]

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, player_id: str) -> bool:
        return player_id in self._slots
