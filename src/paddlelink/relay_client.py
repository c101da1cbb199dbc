"""WebSocket client for the signaling relay."""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable

import aiohttp

from paddlelink.errors import MessageError, RelayConnectionError
from paddlelink.messages import Message, MessageType, decode

logger = logging.getLogger(__name__)


class RelayClient:
    """One session with the relay, joined to a single room.

    Messages from the relay are handed to ``on_message`` one at a time, in
    the order the relay sent them. If the socket drops, the client
    reconnects with exponential backoff, takes the new connection id and
    joins the room again before reading on.
    """

    def __init__(
        self,
        url: str,
        room_id: str,
        on_message: Callable[[Message], Awaitable[None]] | None = None,
        on_close: Callable[[], None] | None = None,
        heartbeat: float | None = 25.0,
        connect_timeout: float = 20.0,
        reconnect_attempts: int = 3,
        reconnect_delay: float = 2.0,
        reconnect_delay_max: float = 10.0,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
    ):
        """Initialize relay client.

        Args:
            url: WebSocket URL of the relay (``ws://host:port/api/socket/ws``).
            room_id: Room to join once connected.
            on_message: Async callback for every message from the relay.
            on_close: Callback when the relay session ends for good.
            heartbeat: WebSocket ping interval in seconds.
            connect_timeout: Timeout for the handshake and the id assignment.
            reconnect_attempts: Reconnects tried after the socket drops.
                0 disables reconnecting.
            reconnect_delay: Delay before the first reconnect, doubled for
                each further attempt.
            reconnect_delay_max: Upper bound for the reconnect delay.
            session_factory: Factory for the aiohttp session (for testing).
        """
        self.url = url
        self.room_id = room_id
        self._on_message = on_message
        self._on_close = on_close
        self._on_reconnect: Callable[[str | None, str], Awaitable[None]] | None = None
        self._heartbeat = heartbeat
        self._connect_timeout = connect_timeout
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._reconnect_delay_max = reconnect_delay_max
        self._session_factory = session_factory or aiohttp.ClientSession
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._connection_id: str | None = None
        self._closing = False

    @property
    def connection_id(self) -> str | None:
        """Connection id assigned by the relay (changes on reconnect)."""
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def on_message(self, callback: Callable[[Message], Awaitable[None]]) -> None:
        """Register callback for messages from the relay."""
        self._on_message = callback

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register callback for the end of the relay session."""
        self._on_close = callback

    def on_reconnect(self, callback: Callable[[str | None, str], Awaitable[None]]) -> None:
        """Register async callback run with (old id, new id) after a reconnect.

        It runs after the room is joined again and before any message of
        the new session is dispatched.
        """
        self._on_reconnect = callback

    async def connect(self) -> str:
        """Open the session, wait for the connection id and join the room.

        Returns:
            The connection id assigned by the relay.

        Raises:
            RelayConnectionError: If the relay cannot be reached.
        """
        self._closing = False
        self._session = self._session_factory()
        try:
            await self._open()
        except RelayConnectionError:
            await self.close()
            raise
        self._reader_task = asyncio.create_task(self._read_loop())
        return self._connection_id

    async def _open(self) -> None:
        """Open a socket, take the assigned connection id and join the room."""
        try:
            ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=self._heartbeat),
                timeout=self._connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RelayConnectionError(f"Cannot connect to relay at {self.url}: {e}") from e

        try:
            welcome = await asyncio.wait_for(ws.receive_str(), timeout=self._connect_timeout)
            message = decode(welcome)
            if message.type != MessageType.CONNECTED:
                raise MessageError(f"Expected connected, got {message.type.value}")
        except (asyncio.TimeoutError, MessageError, TypeError) as e:
            await ws.close()
            raise RelayConnectionError(f"Cannot connect to relay at {self.url}: {e}") from e

        self._ws = ws
        self._connection_id = message.payload["connectionId"]
        logger.info(f"Connected to relay as {self._connection_id}")
        await self.send(Message(MessageType.JOIN_ROOM, {"roomId": self.room_id}))

    async def send(self, message: Message) -> None:
        """Send a message to the relay.

        Raises:
            RelayConnectionError: If the session is not open.
        """
        if not self.is_connected:
            raise RelayConnectionError("Relay connection is not open")
        try:
            await self._ws.send_str(message.encode())
        except ConnectionResetError as e:
            raise RelayConnectionError(f"Relay connection lost: {e}") from e

    async def _read_loop(self) -> None:
        """Dispatch relay messages, reconnecting while attempts remain."""
        try:
            while True:
                await self._dispatch()
                if self._closing or not await self._reconnect():
                    return
        finally:
            logger.info("Relay connection closed")
            if self._on_close:
                self._on_close()

    async def _dispatch(self) -> None:
        """Hand every message of the current socket to on_message."""
        async for msg in self._ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                if msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Relay socket error: {self._ws.exception()}")
                    break
                continue
            try:
                message = decode(msg.data)
            except MessageError as e:
                logger.warning(f"Discarding malformed relay message: {e}")
                continue
            if self._on_message:
                try:
                    await self._on_message(message)
                except Exception:
                    logger.exception(f"Error handling relay {message.type.value}")

    async def _reconnect(self) -> bool:
        """Try to get a new relay session after the socket dropped.

        Returns:
            True once reconnected and joined, False after the last attempt.
        """
        old_id = self._connection_id
        for attempt in range(1, self._reconnect_attempts + 1):
            delay = min(
                self._reconnect_delay * 2 ** (attempt - 1), self._reconnect_delay_max
            )
            logger.info(
                f"Relay connection lost, reconnecting in {delay:.1f}s "
                f"(attempt {attempt}/{self._reconnect_attempts})"
            )
            await asyncio.sleep(delay)
            if self._closing:
                return False
            try:
                await self._open()
            except RelayConnectionError as e:
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                continue

            if self._on_reconnect:
                try:
                    await self._on_reconnect(old_id, self._connection_id)
                except Exception:
                    logger.exception("Error handling relay reconnect")
            return True

        if self._reconnect_attempts:
            logger.error(f"Giving up on relay after {self._reconnect_attempts} attempts")
        return False

    async def close(self) -> None:
        """Close the session without reconnecting. Idempotent."""
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader_task is not None:
            if self._reader_task is not asyncio.current_task():
                # May be sleeping between reconnect attempts
                self._reader_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        """Enter async context."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context."""
        await self.close()
