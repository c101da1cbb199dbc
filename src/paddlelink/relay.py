"""Room-scoped signaling relay.

Routes negotiation and control messages between the members of a room.
Clients reach it over a WebSocket (streaming) or over HTTP long polling,
both mounted under one sub-path of the process (``/api/socket`` by default):

    GET    {path}/ws                  WebSocket session
    POST   {path}/poll                open a polling session
    POST   {path}/poll/{connection}   submit one message
    GET    {path}/poll/{connection}   long-poll queued messages
    DELETE {path}/poll/{connection}   disconnect

The relay knows rooms and connections only. It never looks inside the
negotiation or control payloads beyond validating their shape.
"""

import asyncio
import contextlib
import logging
import secrets
import time
from typing import Iterator

from aiohttp import WSMsgType, web

from paddlelink.config import Config
from paddlelink.errors import MessageError, RelayBindError, RelayError
from paddlelink.messages import (
    CLIENT_TYPES,
    TARGETED_TYPES,
    Message,
    MessageType,
    decode,
)

logger = logging.getLogger(__name__)

# Target value meaning "every other member of the room"
BROADCAST = None


class RelayConnection:
    """One client session with the relay.

    Outbound frames go through a FIFO queue so that a slow client never
    blocks delivery to the others. A ``None`` frame marks the end of the
    session.
    """

    def __init__(self, connection_id: str, transport: str):
        self.connection_id = connection_id
        self.transport = transport  # "websocket" or "polling"
        self.room_id: str | None = None
        self.outbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.last_seen = time.monotonic()
        self.polling = False
        self.closed = False

    def deliver(self, message: Message) -> None:
        """Queue a message for this client."""
        if self.closed:
            return
        self.outbox.put_nowait(message.encode())

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.outbox.put_nowait(None)

    async def drain(self, wait: float) -> list[str]:
        """Wait up to ``wait`` seconds for frames, then take all queued ones."""
        frames: list[str] = []
        try:
            frame = await asyncio.wait_for(self.outbox.get(), timeout=wait)
        except asyncio.TimeoutError:
            return frames
        while frame is not None:
            frames.append(frame)
            try:
                frame = self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
        return frames


class RoomTable:
    """Room membership and message routing.

    Every operation runs to completion without awaiting, so on a single
    event loop each one is applied atomically.
    """

    def __init__(self):
        self._connections: dict[str, RelayConnection] = {}
        # room_id -> insertion-ordered set of connection ids
        self._rooms: dict[str, dict[str, None]] = {}

    def add_connection(self, conn: RelayConnection) -> None:
        self._connections[conn.connection_id] = conn

    def get_connection(self, connection_id: str) -> RelayConnection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[RelayConnection]:
        return list(self._connections.values())

    def members(self, room_id: str) -> list[str]:
        """Members of a room in join order (empty if the room is unknown)."""
        return list(self._rooms.get(room_id, {}))

    def room_count(self) -> int:
        return len(self._rooms)

    def join(self, connection_id: str, room_id: str) -> list[str]:
        """Add a connection to a room, creating the room if needed.

        Returns:
            The other members that must be told about the joiner. Empty when
            the connection was already a member (joining twice is a no-op).

        Raises:
            RelayError: If the connection is unknown or already in another room.
        """
        conn = self._connections.get(connection_id)
        if conn is None:
            raise RelayError(f"Unknown connection {connection_id}")
        if conn.room_id == room_id:
            return []
        if conn.room_id is not None:
            raise RelayError(
                f"Connection {connection_id} is already in room {conn.room_id}"
            )

        members = self._rooms.setdefault(room_id, {})
        others = list(members)
        members[connection_id] = None
        conn.room_id = room_id
        return others

    def leave(self, connection_id: str) -> tuple[str | None, list[str]]:
        """Remove a connection from its room.

        Returns:
            (room_id, remaining members). room_id is None if it was in no room.
        """
        conn = self._connections.get(connection_id)
        if conn is None or conn.room_id is None:
            return None, []
        room_id = conn.room_id
        conn.room_id = None

        members = self._rooms.get(room_id, {})
        members.pop(connection_id, None)
        if not members:
            self._rooms.pop(room_id, None)
            return room_id, []
        return room_id, list(members)

    def remove_connection(
        self, connection_id: str
    ) -> tuple[RelayConnection | None, str | None, list[str]]:
        """Forget a connection entirely, leaving its room first."""
        room_id, remaining = self.leave(connection_id)
        conn = self._connections.pop(connection_id, None)
        return conn, room_id, remaining

    def forward(
        self,
        from_id: str,
        room_id: str,
        target_id: str | None,
        message: Message,
    ) -> int:
        """Deliver a message within a room.

        A missing target or a sender outside the room is a silent drop: the
        message races a disconnect and the sender is not told.

        Returns:
            Number of connections the message was queued for.
        """
        members = self._rooms.get(room_id)
        if not members or from_id not in members:
            logger.debug(f"Drop {message.type.value} from {from_id}: not in room {room_id}")
            return 0

        stamped = message.with_fields(**{"from": from_id})

        if target_id is BROADCAST:
            delivered = 0
            for member_id in members:
                if member_id == from_id:
                    continue
                self._connections[member_id].deliver(stamped)
                delivered += 1
            return delivered

        if target_id not in members:
            logger.debug(
                f"Drop {message.type.value} from {from_id}: "
                f"target {target_id} not in room {room_id}"
            )
            return 0
        self._connections[target_id].deliver(stamped)
        return 1

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[str]:
        return iter(self._rooms)


class RelayServer:
    """aiohttp server exposing the room relay over WebSocket and polling."""

    def __init__(self, config: Config | None = None):
        """Initialize relay server.

        Args:
            config: Relay configuration. Defaults are used if None.
        """
        self.config = config or Config()
        self.table = RoomTable()
        self._reaper_task: asyncio.Task | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

        self._app = web.Application(middlewares=[self._cors_middleware])
        self._setup_routes()
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)

    @property
    def app(self) -> web.Application:
        """Get the aiohttp application for testing."""
        return self._app

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        path = self.config.path.rstrip("/")
        self._app.router.add_get("/health", self._health)
        self._app.router.add_get(f"{path}/ws", self._handle_websocket)
        self._app.router.add_post(f"{path}/poll", self._handle_poll_open)
        self._app.router.add_post(f"{path}/poll/{{connection_id}}", self._handle_poll_send)
        self._app.router.add_get(f"{path}/poll/{{connection_id}}", self._handle_poll_receive)
        self._app.router.add_delete(f"{path}/poll/{{connection_id}}", self._handle_poll_close)

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=204)
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        else:
            response = await handler(request)
        if not isinstance(response, web.WebSocketResponse):
            response.headers["Access-Control-Allow-Origin"] = self.config.cors_origin
        return response

    # =========================================================================
    # Routing core
    # =========================================================================

    def open_connection(self, transport: str) -> RelayConnection:
        """Accept a new client session and assign its connection id."""
        conn = RelayConnection(secrets.token_hex(8), transport)
        self.table.add_connection(conn)
        logger.info(f"Connection {conn.connection_id} opened ({transport})")
        return conn

    def handle_message(self, conn: RelayConnection, raw: str | bytes) -> bool:
        """Process one inbound frame from a client.

        Runs to completion before the next frame of the same connection is
        read, so a join is fully applied (and ``peer-joined`` queued) before
        anything else the joiner sends.

        Returns:
            True if the message was accepted, False if it was discarded.
        """
        conn.touch()
        size = len(raw) if isinstance(raw, bytes) else len(raw.encode("utf-8"))
        if size > self.config.relay.max_message_size:
            logger.warning(f"Discarding {size} byte message from {conn.connection_id}")
            conn.deliver(Message(MessageType.ERROR, {"reason": "Message too large"}))
            return False
        try:
            message = decode(raw)
            if message.type not in CLIENT_TYPES:
                raise MessageError(f"Clients may not send {message.type.value}")
        except MessageError as e:
            logger.warning(f"Discarding message from {conn.connection_id}: {e}")
            conn.deliver(Message(MessageType.ERROR, {"reason": str(e)}))
            return False

        if message.type == MessageType.JOIN_ROOM:
            return self._join(conn, message.room_id)

        room_id = message.room_id or conn.room_id
        if room_id is None:
            logger.warning(
                f"Discarding {message.type.value} from {conn.connection_id}: no room"
            )
            conn.deliver(Message(MessageType.ERROR, {"reason": "Not in a room"}))
            return False

        if message.type in TARGETED_TYPES:
            target = message.target_id
        else:
            target = message.target_id or BROADCAST

        self.table.forward(conn.connection_id, room_id, target, message)
        return True

    def _join(self, conn: RelayConnection, room_id: str) -> bool:
        if conn.room_id == room_id:
            logger.debug(f"Connection {conn.connection_id} already in room {room_id}")
            return True
        try:
            others = self.table.join(conn.connection_id, room_id)
        except RelayError as e:
            logger.warning(f"Join rejected: {e}")
            conn.deliver(Message(MessageType.ERROR, {"reason": str(e)}))
            return False

        logger.info(
            f"Connection {conn.connection_id} joined room {room_id} "
            f"({len(others) + 1} members)"
        )
        notice = Message(MessageType.PEER_JOINED, {"peerId": conn.connection_id})
        for member_id in others:
            member = self.table.get_connection(member_id)
            if member is not None:
                member.deliver(notice)
        return True

    def disconnect(self, connection_id: str, reason: str = "transport closed") -> None:
        """Tear down a connection: leave its room and tell the remaining members."""
        conn, room_id, remaining = self.table.remove_connection(connection_id)
        if conn is None:
            return
        conn.close()

        notice = Message(MessageType.PEER_LEFT, {"peerId": connection_id})
        for member_id in remaining:
            member = self.table.get_connection(member_id)
            if member is not None:
                member.deliver(notice)

        if room_id is not None:
            logger.info(f"Connection {connection_id} left room {room_id} ({reason})")
        else:
            logger.info(f"Connection {connection_id} closed ({reason})")

    # =========================================================================
    # HTTP handlers
    # =========================================================================

    async def _health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response(
            {
                "status": "ok",
                "rooms": self.table.room_count(),
                "connections": len(self.table),
            }
        )

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Run one streaming session until the socket closes."""
        ws = web.WebSocketResponse(
            heartbeat=self.config.relay.heartbeat_interval,
            # Oversized messages are answered in handle_message; only frames
            # beyond this cap close the socket
            max_msg_size=max(
                self.config.relay.max_frame_size, self.config.relay.max_message_size
            ),
        )
        await ws.prepare(request)

        conn = self.open_connection("websocket")
        conn.deliver(Message(MessageType.CONNECTED, {"connectionId": conn.connection_id}))
        writer = asyncio.create_task(self._websocket_writer(ws, conn))
        reason = "transport closed"

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    self.handle_message(conn, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    reason = f"transport error: {ws.exception()}"
                    break
        except Exception as e:
            # One broken session must never take the relay down
            logger.exception(f"WebSocket error for {conn.connection_id}: {e}")
            reason = "internal error"
        finally:
            self.disconnect(conn.connection_id, reason)
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer

        return ws

    async def _websocket_writer(self, ws: web.WebSocketResponse, conn: RelayConnection) -> None:
        """Drain a connection's outbox onto its socket in order."""
        while True:
            frame = await conn.outbox.get()
            if ws.closed:
                return
            if frame is None:
                # Disconnected by the relay itself; the reader loop ends
                # once the close handshake completes
                await ws.close()
                return
            try:
                await ws.send_str(frame)
            except ConnectionResetError:
                logger.debug(f"Write to {conn.connection_id} failed, socket reset")
                return

    async def _handle_poll_open(self, request: web.Request) -> web.Response:
        conn = self.open_connection("polling")
        return web.json_response(
            {"type": MessageType.CONNECTED.value, "connectionId": conn.connection_id}
        )

    def _polling_connection(self, request: web.Request) -> RelayConnection:
        connection_id = request.match_info["connection_id"]
        conn = self.table.get_connection(connection_id)
        if conn is None or conn.transport != "polling":
            raise web.HTTPNotFound(
                text='{"error": "Unknown connection"}', content_type="application/json"
            )
        return conn

    async def _handle_poll_send(self, request: web.Request) -> web.Response:
        conn = self._polling_connection(request)
        body = await request.read()
        if len(body) > self.config.relay.max_message_size:
            return web.json_response({"error": "Message too large"}, status=413)
        if not self.handle_message(conn, body):
            return web.json_response({"error": "Message discarded"}, status=400)
        return web.json_response({"status": "accepted"}, status=202)

    async def _handle_poll_receive(self, request: web.Request) -> web.Response:
        conn = self._polling_connection(request)
        conn.touch()
        conn.polling = True
        try:
            frames = await conn.drain(self.config.relay.long_poll_wait)
        finally:
            conn.polling = False
            conn.touch()
        return web.Response(
            text="[" + ",".join(frames) + "]", content_type="application/json"
        )

    async def _handle_poll_close(self, request: web.Request) -> web.Response:
        conn = self._polling_connection(request)
        self.disconnect(conn.connection_id, "client disconnect")
        return web.Response(status=204)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def expire_idle_polls(self, now: float | None = None) -> list[str]:
        """Disconnect polling sessions that stopped polling.

        Returns:
            Connection ids that were expired.
        """
        now = time.monotonic() if now is None else now
        timeout = self.config.relay.poll_timeout
        expired = [
            conn.connection_id
            for conn in self.table.connections()
            if conn.transport == "polling"
            and not conn.polling
            and now - conn.last_seen > timeout
        ]
        for connection_id in expired:
            self.disconnect(connection_id, "poll timeout")
        return expired

    async def _reap_idle_polls(self) -> None:
        interval = max(self.config.relay.poll_timeout / 2, 0.1)
        while True:
            await asyncio.sleep(interval)
            self.expire_idle_polls()

    async def _on_startup(self, app: web.Application) -> None:
        self._reaper_task = asyncio.create_task(self._reap_idle_polls())

    async def _on_cleanup(self, app: web.Application) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper_task
            self._reaper_task = None
        for conn in self.table.connections():
            self.disconnect(conn.connection_id, "relay shutdown")

    @property
    def actual_port(self) -> int:
        """Get the actual bound port (useful when port=0)."""
        if self._site and self._site._server:
            sockets = self._site._server.sockets
            if sockets:
                return sockets[0].getsockname()[1]
        return self.config.port

    async def start(self) -> None:
        """Bind and start serving.

        Raises:
            RelayBindError: If the listening socket cannot be bound.
        """
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.config.host, self.config.port)
        try:
            await self._site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            raise RelayBindError(
                f"Cannot listen on {self.config.host}:{self.config.port}: {e}"
            ) from e
        logger.info(
            f"Relay listening on {self.config.host}:{self.actual_port}{self.config.path}"
        )

    async def close(self) -> None:
        """Disconnect every client and stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Relay closed")
