"""Choose between the direct channel and the relay for control messages."""

import logging

from aiortc.exceptions import InvalidStateError

from paddlelink.errors import RelayConnectionError, TransportError
from paddlelink.messages import Message
from paddlelink.negotiation import Negotiator, PeerLink
from paddlelink.protocols import RelaySenderProtocol, Route

logger = logging.getLogger(__name__)


class TransportSelector:
    """Sends control messages over the best transport available right now.

    The choice is made again for every message, so a channel that opens
    later takes over and one that closes falls back to the relay, without
    the caller noticing. A message goes over exactly one transport per
    receiver.
    """

    def __init__(
        self,
        negotiator: Negotiator,
        relay: RelaySenderProtocol,
        player_id: str | None = None,
    ):
        """Initialize transport selector.

        Args:
            negotiator: Owner of the peer links whose channels may be used.
            relay: Relay session used when no channel is open.
            player_id: Identity stamped on every outgoing message.
        """
        self._negotiator = negotiator
        self._relay = relay
        self.player_id = player_id

    def _tag(self, message: Message) -> Message:
        if self.player_id is None or message.player_id is not None:
            return message
        return message.with_fields(playerId=self.player_id)

    @staticmethod
    def _send_direct(link: PeerLink, message: Message) -> bool:
        if not link.is_open:
            return False
        try:
            link.channel.send(message.encode())
        except InvalidStateError as e:
            logger.warning(f"Channel to {link.remote_id} refused message: {e}")
            return False
        return True

    async def _send_relay(self, message: Message) -> None:
        try:
            await self._relay.send(message)
        except RelayConnectionError as e:
            raise TransportError(f"No transport for {message.type.value}: {e}") from e

    async def send(self, room_id: str, message: Message) -> Route:
        """Send a control message to the room.

        Every peer with an open channel gets it directly. If no channel is
        open it is broadcast through the relay instead.

        Returns:
            DIRECT if at least one channel carried it, otherwise RELAY.

        Raises:
            TransportError: If neither a channel nor the relay is available.
        """
        message = self._tag(message)
        links = [
            link
            for link in self._negotiator.links()
            if link.room_id == room_id and link.is_open
        ]
        if not links:
            await self._send_relay(message.with_fields(roomId=room_id))
            return Route.RELAY

        missed = [link for link in links if not self._send_direct(link, message)]
        if len(missed) == len(links):
            await self._send_relay(message.with_fields(roomId=room_id))
            return Route.RELAY
        # Peers whose channel just failed still get it once, through the relay
        for link in missed:
            await self._send_relay(
                message.with_fields(roomId=room_id, targetId=link.remote_id)
            )
        return Route.DIRECT

    async def send_to(self, room_id: str, target_id: str, message: Message) -> Route:
        """Send a control message to one connection of the room.

        Returns:
            The transport that carried it.

        Raises:
            TransportError: If neither a channel nor the relay is available.
        """
        message = self._tag(message)
        link = self._negotiator.get(target_id)
        if link is not None and link.room_id == room_id and self._send_direct(link, message):
            return Route.DIRECT
        await self._send_relay(message.with_fields(roomId=room_id, targetId=target_id))
        return Route.RELAY
