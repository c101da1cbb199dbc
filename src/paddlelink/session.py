"""Host and controller sessions.

A session owns everything one endpoint needs in a room: the relay
connection, the peer links and, on the host, the player registry. Use it
as an async context manager; leaving the block (normally or not) closes
every link and the relay connection.

    async with HostSession("abc123", game) as host:
        ...

    async with ControllerSession("abc123") as controller:
        await controller.select_side("left")
        await controller.move("up")
"""

import asyncio
import logging
import secrets
from typing import Any, Awaitable, Callable

from aiortc import RTCConfiguration, RTCPeerConnection

from paddlelink.config import Config
from paddlelink.messages import (
    Message,
    MessageType,
    TARGETED_TYPES,
    paddle_move,
    player_info,
)
from paddlelink.negotiation import Negotiator, PeerLink
from paddlelink.players import PlayerRegistry, PlayerSlot
from paddlelink.protocols import GameLoopProtocol, NegotiationState, Route
from paddlelink.relay_client import RelayClient
from paddlelink.transport import TransportSelector

logger = logging.getLogger(__name__)


class _Session:
    """Plumbing shared by host and controller sessions."""

    def __init__(
        self,
        room_id: str,
        url: str | None = None,
        config: Config | None = None,
        relay: Any = None,
        pc_factory: Callable[[RTCConfiguration], RTCPeerConnection] | None = None,
    ):
        """Initialize session.

        Args:
            room_id: Room to join.
            url: Relay WebSocket URL. Defaults to the configured relay.
            config: Configuration. Defaults are used if None.
            relay: Relay client (for testing). Built from url if None.
            pc_factory: Factory to create RTCPeerConnection (for testing).
        """
        self.room_id = room_id
        self.config = config or Config()
        self.relay = relay or RelayClient(
            url or self.config.relay_url,
            room_id,
            heartbeat=self.config.relay.heartbeat_interval,
            reconnect_attempts=self.config.relay.reconnect_attempts,
            reconnect_delay=self.config.relay.reconnect_delay,
            reconnect_delay_max=self.config.relay.reconnect_delay_max,
        )
        self.relay.on_message(self._on_relay_message)
        self.relay.on_close(self._on_relay_closed)
        self.relay.on_reconnect(self._on_relay_reconnected)
        self.negotiator = Negotiator(
            room_id,
            signal=self.relay.send,
            on_channel_message=self._on_channel_message,
            on_state_change=self._on_link_state,
            stun_servers=self.config.stun_servers,
            channel_label=self.config.negotiation.channel_label,
            timeout=self.config.negotiation.timeout,
            pc_factory=pc_factory,
        )
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def connection_id(self) -> str | None:
        return self.relay.connection_id

    @property
    def is_connected(self) -> bool:
        """True if the relay or any direct channel is open."""
        return self.relay.is_connected or bool(self.negotiator.open_links())

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session task failed", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until every negotiation step started so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def start(self) -> None:
        """Connect to the relay and join the room."""
        await self.relay.connect()
        logger.info(f"{type(self).__name__} joined room {self.room_id} as {self.connection_id}")

    async def close(self) -> None:
        """Close every peer link and the relay connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.negotiator.close_all()
        await self.relay.close()

    async def __aenter__(self):
        """Enter async context."""
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context."""
        await self.close()

    # =========================================================================
    # Inbound dispatch
    # =========================================================================

    async def _on_relay_message(self, message: Message) -> None:
        if message.type in TARGETED_TYPES:
            if message.target_id != self.connection_id:
                return
            # Steps for one remote stay ordered through the negotiator's
            # per-remote lock; different remotes proceed concurrently
            self._spawn(self.negotiator.handle_signal(message))
        elif message.type == MessageType.PEER_JOINED:
            await self._peer_joined(message.payload["peerId"])
        elif message.type == MessageType.PEER_LEFT:
            await self._peer_left(message.payload["peerId"])
        elif message.type in (MessageType.PADDLE_MOVE, MessageType.PLAYER_INFO):
            if message.target_id not in (None, self.connection_id):
                return
            self._handle_control(message, message.sender)
        elif message.type == MessageType.ERROR:
            logger.warning(f"Relay rejected a message: {message.payload.get('reason')}")

    async def _peer_joined(self, peer_id: str) -> None:
        logger.debug(f"Peer {peer_id} joined")

    async def _peer_left(self, peer_id: str) -> None:
        await self.negotiator.close_peer(peer_id)

    async def _on_channel_message(self, link: PeerLink, message: Message) -> None:
        self._handle_control(message, link.remote_id)

    def _handle_control(self, message: Message, connection_id: str | None) -> None:
        pass

    def _on_link_state(self, link: PeerLink) -> None:
        pass

    def _on_relay_closed(self) -> None:
        if self._closed:
            return
        # Open channels keep working, new peers cannot negotiate
        logger.warning(
            f"Lost relay connection in room {self.room_id} "
            f"({len(self.negotiator.open_links())} direct links open)"
        )

    async def _on_relay_reconnected(self, old_id: str | None, new_id: str) -> None:
        # The room saw the old connection leave; links made under it are gone
        logger.info(f"Rejoined room {self.room_id} as {new_id} (was {old_id})")
        await self.negotiator.close_all()


class HostSession(_Session):
    """The game's side of a room.

    Starts negotiation with every controller that joins and feeds their
    paddle commands to the game, whichever transport carried them.
    """

    def __init__(
        self,
        room_id: str,
        game: GameLoopProtocol,
        on_player_connected: Callable[[str], None] | None = None,
        **kwargs: Any,
    ):
        super().__init__(room_id, **kwargs)
        self.registry = PlayerRegistry(game, on_player_connected=on_player_connected)

    @property
    def players(self) -> list[PlayerSlot]:
        return self.registry.snapshot()

    async def _peer_joined(self, peer_id: str) -> None:
        logger.info(f"Controller {peer_id} joined, negotiating")
        self._spawn(self.negotiator.start(peer_id))

    async def _peer_left(self, peer_id: str) -> None:
        await super()._peer_left(peer_id)
        for player_id in self.registry.disconnect_connection(peer_id):
            logger.info(f"Player {player_id} left with connection {peer_id}")

    def _handle_control(self, message: Message, connection_id: str | None) -> None:
        if message.type == MessageType.PLAYER_INFO:
            self.registry.announce(message.player_id, message.side, connection_id)
        elif message.type == MessageType.PADDLE_MOVE:
            self.registry.on_control_message(
                message.player_id, message.side, message.direction, connection_id
            )


class ControllerSession(_Session):
    """A phone's side of a room.

    Answers the host's offer and sends paddle commands over the direct
    channel once it is open, through the relay until then.
    """

    def __init__(self, room_id: str, player_id: str | None = None, **kwargs: Any):
        super().__init__(room_id, **kwargs)
        self.player_id = player_id or secrets.token_hex(6)
        self.side: str | None = None
        self.transport = TransportSelector(self.negotiator, self.relay, self.player_id)

    async def select_side(self, side: str) -> Route:
        """Claim a side and tell the host."""
        message = player_info(side, self.player_id)
        self.side = side
        return await self.transport.send(self.room_id, message)

    async def move(self, direction: str) -> Route | None:
        """Send a paddle command for the selected side.

        Returns:
            The transport used, or None if no side is selected yet.
        """
        if self.side is None:
            logger.debug(f"Ignoring {direction}: no side selected")
            return None
        return await self.transport.send(
            self.room_id, paddle_move(direction, self.side, self.player_id)
        )

    async def _on_relay_reconnected(self, old_id: str | None, new_id: str) -> None:
        await super()._on_relay_reconnected(old_id, new_id)
        if self.side is not None:
            # The host dropped our slot when the old connection left
            await self.transport.send(self.room_id, player_info(self.side, self.player_id))

    def _on_link_state(self, link: PeerLink) -> None:
        if link.state == NegotiationState.CONNECTED and self.side is not None:
            # Let the host see this identity on the new transport
            self._spawn(
                self.transport.send_to(
                    self.room_id, link.remote_id, player_info(self.side, self.player_id)
                )
            )
