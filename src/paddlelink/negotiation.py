"""Per-peer WebRTC negotiation through the relay.

A ``Negotiator`` owns one ``PeerLink`` per remote connection of its room,
keyed by ``(room_id, remote_connection_id)``. Offers, answers and ICE
candidates travel through the relay; the link is connected only once the
data channel reports open. A link that never opens simply stays
unconnected and control traffic keeps using the relay.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from paddlelink.config import DEFAULT_STUN_SERVERS
from paddlelink.errors import MessageError, NegotiationError
from paddlelink.messages import Message, MessageType, decode
from paddlelink.protocols import NegotiationState

logger = logging.getLogger(__name__)

# How many departed remotes are remembered to ignore their late messages
DEPARTED_MEMORY = 256

VALID_TRANSITIONS = {
    NegotiationState.IDLE: {
        NegotiationState.OFFER_SENT,
        NegotiationState.ANSWER_AWAITED,
        NegotiationState.FAILED,
        NegotiationState.CLOSED,
    },
    NegotiationState.OFFER_SENT: {
        NegotiationState.ANSWER_AWAITED,
        NegotiationState.FAILED,
        NegotiationState.CLOSED,
    },
    NegotiationState.ANSWER_AWAITED: {
        NegotiationState.CONNECTED,
        NegotiationState.FAILED,
        NegotiationState.CLOSED,
    },
    NegotiationState.CONNECTED: {NegotiationState.FAILED, NegotiationState.CLOSED},
    NegotiationState.FAILED: {NegotiationState.CLOSED},
    NegotiationState.CLOSED: set(),
}


@dataclass
class PeerLink:
    """Negotiation state with exactly one remote connection.

    Attributes:
        room_id: Room both ends are in.
        remote_id: Relay connection id of the remote end.
        pc: Underlying RTCPeerConnection.
        initiator: True on the side that sent the offer.
        state: Current negotiation state.
        pending_candidates: Remote candidates received before the remote
            description was applied, in arrival order.
        channel: Data channel, once one exists.
        remote_description_set: Whether the remote description is applied.
    """

    room_id: str
    remote_id: str
    pc: Any  # RTCPeerConnection
    initiator: bool
    state: NegotiationState = NegotiationState.IDLE
    pending_candidates: list[dict[str, Any]] = field(default_factory=list)
    channel: Any = None  # RTCDataChannel
    remote_description_set: bool = False
    created_at: float = field(default_factory=time.monotonic)
    timeout_handle: asyncio.TimerHandle | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.room_id, self.remote_id)

    @property
    def is_open(self) -> bool:
        """True if the direct channel can carry messages right now."""
        return (
            self.state == NegotiationState.CONNECTED
            and self.channel is not None
            and self.channel.readyState == "open"
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in (NegotiationState.FAILED, NegotiationState.CLOSED)

    def transition_to(self, new_state: NegotiationState) -> None:
        """Transition to a new state with validation.

        Raises:
            NegotiationError: If transition is not valid from current state.
        """
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise NegotiationError(
                f"Invalid transition for {self.remote_id}: {self.state} -> {new_state}"
            )
        logger.debug(f"Link {self.remote_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state


def parse_candidate(data: dict[str, Any]) -> RTCIceCandidate | None:
    """Build an aiortc candidate from its browser JSON form.

    Returns:
        The candidate, or None for an end-of-candidates marker.

    Raises:
        MessageError: If the candidate line cannot be parsed.
    """
    line = data.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    # foundation component protocol priority ip port "typ" type
    if len(line.split()) < 8:
        raise MessageError(f"Malformed ICE candidate {line!r}: too few fields")
    try:
        candidate = candidate_from_sdp(line)
    except (ValueError, IndexError) as e:
        raise MessageError(f"Malformed ICE candidate {line!r}: {e}") from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def serialize_candidate(candidate: Any) -> dict[str, Any]:
    """Convert a local candidate to the browser JSON form."""
    if isinstance(candidate, dict):
        return candidate
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class Negotiator:
    """Owns and drives the peer links of one local endpoint in one room."""

    def __init__(
        self,
        room_id: str,
        signal: Callable[[Message], Awaitable[None]],
        on_channel_message: Callable[[PeerLink, Message], Awaitable[None]] | None = None,
        on_state_change: Callable[[PeerLink], None] | None = None,
        stun_servers: list[str] | None = None,
        channel_label: str = "paddle-control",
        timeout: float | None = None,
        pc_factory: Callable[[RTCConfiguration], RTCPeerConnection] | None = None,
    ):
        """Initialize negotiator.

        Args:
            room_id: Room this endpoint is in.
            signal: Sends a negotiation message through the relay.
            on_channel_message: Async callback for messages on a direct channel.
            on_state_change: Callback after every link state change.
            stun_servers: STUN servers for peer connections.
            channel_label: Label of the data channel the initiator creates.
            timeout: Seconds before an unconnected link is marked failed.
                None keeps waiting forever.
            pc_factory: Factory to create RTCPeerConnection (for testing).
        """
        self.room_id = room_id
        self._signal = signal
        self._on_channel_message = on_channel_message
        self._on_state_change = on_state_change
        self.stun_servers = DEFAULT_STUN_SERVERS if stun_servers is None else stun_servers
        self.channel_label = channel_label
        self.timeout = timeout
        self._pc_factory = pc_factory or self._default_pc_factory

        self._links: dict[tuple[str, str], PeerLink] = {}
        # Candidates that arrived before any link existed for their sender
        self._orphan_candidates: dict[str, list[dict[str, Any]]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Recently departed remotes, oldest first; their late messages are ignored
        self._departed: dict[str, None] = {}
        self._tasks: set[asyncio.Task] = set()

    def _default_pc_factory(self, config: RTCConfiguration) -> RTCPeerConnection:
        """Create default RTCPeerConnection."""
        return RTCPeerConnection(configuration=config)

    # =========================================================================
    # Link table
    # =========================================================================

    def get(self, remote_id: str) -> PeerLink | None:
        return self._links.get((self.room_id, remote_id))

    def links(self) -> list[PeerLink]:
        return list(self._links.values())

    def open_links(self) -> list[PeerLink]:
        return [link for link in self._links.values() if link.is_open]

    def orphan_candidates(self, remote_id: str) -> list[dict[str, Any]]:
        return list(self._orphan_candidates.get(remote_id, []))

    def _lock_for(self, remote_id: str) -> asyncio.Lock:
        lock = self._locks.get(remote_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[remote_id] = lock
        return lock

    def _create_link(self, remote_id: str, initiator: bool) -> PeerLink:
        if self.stun_servers:
            config = RTCConfiguration(iceServers=[RTCIceServer(urls=self.stun_servers)])
        else:
            config = RTCConfiguration(iceServers=[])
        pc = self._pc_factory(config)
        link = PeerLink(room_id=self.room_id, remote_id=remote_id, pc=pc, initiator=initiator)
        self._links[link.key] = link

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = pc.connectionState
            logger.info(f"Link {remote_id}: connection {state}")
            if state == "failed":
                self._fail(link, "peer connection failed")

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            # aiortc puts gathered candidates in the description itself,
            # this only fires for connections that trickle
            if candidate is None or link.state == NegotiationState.CLOSED:
                return
            await self._send_signal(
                MessageType.ICE_CANDIDATE,
                remote_id,
                {"candidate": serialize_candidate(candidate)},
            )

        if not initiator:

            @pc.on("datachannel")
            def on_datachannel(channel):
                logger.info(f"Link {remote_id}: data channel {channel.label!r} received")
                self._attach_channel(link, channel)

        if self.timeout is not None:
            loop = asyncio.get_running_loop()
            link.timeout_handle = loop.call_later(self.timeout, self._on_timeout, link)

        return link

    def _set_state(self, link: PeerLink, new_state: NegotiationState) -> None:
        link.transition_to(new_state)
        if new_state in (
            NegotiationState.CONNECTED,
            NegotiationState.FAILED,
            NegotiationState.CLOSED,
        ) and link.timeout_handle is not None:
            link.timeout_handle.cancel()
            link.timeout_handle = None
        if self._on_state_change:
            self._on_state_change(link)

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
            logger.error("Negotiator task failed", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until every pending release of a failed link has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _fail(self, link: PeerLink, reason: str) -> None:
        """Mark a link failed and release its channel and peer connection.

        The failed link stays in the table, so repeated offers or joins for
        it are still recognised, until the remote leaves or renegotiates.
        """
        if link.is_terminal:
            return
        logger.warning(f"Link {link.remote_id} failed: {reason}")
        self._set_state(link, NegotiationState.FAILED)
        self._spawn(self._release(link))

    async def _release(self, link: PeerLink) -> None:
        channel, link.channel = link.channel, None
        if channel is not None:
            channel.close()
        await link.pc.close()

    def _on_timeout(self, link: PeerLink) -> None:
        link.timeout_handle = None
        if link.state in (NegotiationState.CONNECTED, NegotiationState.CLOSED):
            return
        self._fail(link, f"not connected after {self.timeout}s")

    # =========================================================================
    # Data channel
    # =========================================================================

    def _attach_channel(self, link: PeerLink, channel: Any) -> None:
        link.channel = channel

        @channel.on("open")
        def on_open():
            self._channel_opened(link)

        @channel.on("message")
        async def on_message(data):
            try:
                message = decode(data)
            except MessageError as e:
                logger.warning(f"Discarding malformed channel message from {link.remote_id}: {e}")
                return
            if self._on_channel_message:
                await self._on_channel_message(link, message)

        @channel.on("close")
        def on_close():
            logger.info(f"Link {link.remote_id}: data channel closed")
            if link.state == NegotiationState.CONNECTED:
                self._fail(link, "data channel closed")

        # The answerer's channel can already be open when it is announced
        if channel.readyState == "open":
            self._channel_opened(link)

    def _channel_opened(self, link: PeerLink) -> None:
        if link.is_terminal or link.state == NegotiationState.CONNECTED:
            return
        if link.state in (NegotiationState.IDLE, NegotiationState.OFFER_SENT):
            self._set_state(link, NegotiationState.ANSWER_AWAITED)
        self._set_state(link, NegotiationState.CONNECTED)
        elapsed_ms = (time.monotonic() - link.created_at) * 1000
        logger.info(f"Link {link.remote_id}: direct channel open after {elapsed_ms:.0f}ms")

    # =========================================================================
    # Negotiation steps
    # =========================================================================

    async def _send_signal(
        self, kind: MessageType, remote_id: str, fields: dict[str, Any]
    ) -> None:
        payload = {"roomId": self.room_id, "targetId": remote_id, **fields}
        await self._signal(Message(kind, payload))

    async def start(self, remote_id: str) -> PeerLink | None:
        """Initiate a link to a newly joined remote (host side).

        A second call for a remote that already has a link is a no-op.

        Returns:
            The link for this remote, or None if the remote already left.
        """
        async with self._lock_for(remote_id):
            if remote_id in self._departed:
                return None
            existing = self.get(remote_id)
            if existing is not None:
                logger.debug(f"Link {remote_id} already exists ({existing.state.value})")
                return existing

            link = self._create_link(remote_id, initiator=True)
            channel = link.pc.createDataChannel(self.channel_label, ordered=True)
            self._attach_channel(link, channel)

            try:
                offer = await link.pc.createOffer()
                await link.pc.setLocalDescription(offer)
            except Exception as e:
                self._fail(link, f"cannot create offer: {e}")
                return link
            if link.state != NegotiationState.IDLE:
                return link

            description = link.pc.localDescription
            self._set_state(link, NegotiationState.OFFER_SENT)
            await self._send_signal(
                MessageType.OFFER,
                remote_id,
                {"description": {"type": description.type, "sdp": description.sdp}},
            )
            logger.info(f"Link {remote_id}: offer sent")
            return link

    async def handle_offer(self, remote_id: str, description: dict[str, Any]) -> PeerLink | None:
        """Answer an offer from a remote (controller side).

        Offers from a remote that already has a live link are ignored. A
        failed link is replaced, since the remote is starting over.

        Returns:
            The new link, or None if the offer was ignored.
        """
        async with self._lock_for(remote_id):
            if remote_id in self._departed:
                return None
            existing = self.get(remote_id)
            if existing is not None and not existing.is_terminal:
                logger.debug(f"Ignoring offer from {remote_id}: link exists")
                return None
            if existing is not None:
                logger.info(f"Link {remote_id}: renegotiating after failure")
                self._links.pop(existing.key, None)

            link = self._create_link(remote_id, initiator=False)
            link.pending_candidates.extend(self._orphan_candidates.pop(remote_id, []))

            try:
                await link.pc.setRemoteDescription(
                    RTCSessionDescription(sdp=description["sdp"], type="offer")
                )
                await self._remote_description_applied(link)
                answer = await link.pc.createAnswer()
                await link.pc.setLocalDescription(answer)
            except Exception as e:
                self._fail(link, f"cannot answer offer: {e}")
                return link
            if link.state != NegotiationState.IDLE:
                return link

            local = link.pc.localDescription
            self._set_state(link, NegotiationState.ANSWER_AWAITED)
            await self._send_signal(
                MessageType.ANSWER,
                remote_id,
                {"description": {"type": local.type, "sdp": local.sdp}},
            )
            logger.info(f"Link {remote_id}: answer sent")
            return link

    async def handle_answer(self, remote_id: str, description: dict[str, Any]) -> None:
        """Apply the answer to an offer this side sent."""
        async with self._lock_for(remote_id):
            link = self.get(remote_id)
            if link is None or link.state != NegotiationState.OFFER_SENT:
                logger.debug(f"Ignoring answer from {remote_id}: no offer outstanding")
                return
            try:
                await link.pc.setRemoteDescription(
                    RTCSessionDescription(sdp=description["sdp"], type="answer")
                )
                await self._remote_description_applied(link)
            except Exception as e:
                self._fail(link, f"cannot apply answer: {e}")
                return
            if link.state == NegotiationState.OFFER_SENT:
                self._set_state(link, NegotiationState.ANSWER_AWAITED)
            logger.info(f"Link {remote_id}: answer applied")

    async def handle_candidate(self, remote_id: str, candidate: dict[str, Any]) -> None:
        """Apply a remote candidate now, or buffer it until it can be."""
        async with self._lock_for(remote_id):
            link = self.get(remote_id)
            if link is None:
                if remote_id not in self._departed:
                    self._orphan_candidates.setdefault(remote_id, []).append(candidate)
                return
            if link.is_terminal:
                return
            if not link.remote_description_set:
                link.pending_candidates.append(candidate)
                return
            await self._apply_candidate(link, candidate)

    async def _remote_description_applied(self, link: PeerLink) -> None:
        link.remote_description_set = True
        pending, link.pending_candidates = link.pending_candidates, []
        if pending:
            logger.debug(f"Link {link.remote_id}: flushing {len(pending)} buffered candidates")
        for candidate in pending:
            await self._apply_candidate(link, candidate)

    async def _apply_candidate(self, link: PeerLink, data: dict[str, Any]) -> None:
        try:
            candidate = parse_candidate(data)
        except MessageError as e:
            logger.warning(f"Link {link.remote_id}: {e}")
            return
        if candidate is None:
            return
        await link.pc.addIceCandidate(candidate)

    async def handle_signal(self, message: Message) -> None:
        """Dispatch a negotiation message received from the relay."""
        remote_id = message.sender
        if remote_id is None:
            logger.warning(f"Discarding {message.type.value} without sender")
            return
        if message.type == MessageType.OFFER:
            await self.handle_offer(remote_id, message.payload["description"])
        elif message.type == MessageType.ANSWER:
            await self.handle_answer(remote_id, message.payload["description"])
        elif message.type == MessageType.ICE_CANDIDATE:
            await self.handle_candidate(remote_id, message.payload["candidate"])
        else:
            raise NegotiationError(f"Not a negotiation message: {message.type.value}")

    # =========================================================================
    # Teardown
    # =========================================================================

    async def close_peer(self, remote_id: str) -> PeerLink | None:
        """Tear down everything held for a remote.

        The link leaves the table and is marked closed before the first
        await, so nothing can use it once this is called.

        Returns:
            The closed link, or None if there was none.
        """
        self._departed.pop(remote_id, None)
        self._departed[remote_id] = None
        while len(self._departed) > DEPARTED_MEMORY:
            del self._departed[next(iter(self._departed))]
        self._orphan_candidates.pop(remote_id, None)
        self._locks.pop(remote_id, None)
        link = self._links.pop((self.room_id, remote_id), None)
        if link is None:
            return None

        link.pending_candidates.clear()
        if link.state != NegotiationState.CLOSED:
            self._set_state(link, NegotiationState.CLOSED)
        await self._release(link)
        logger.info(f"Link {remote_id} closed")
        return link

    async def close_all(self) -> None:
        """Close every link and drop all buffered candidates.

        Also forgets which remotes departed, so a later session in the same
        room (after a relay reconnect) can negotiate with them again.
        """
        remote_ids = [remote_id for _, remote_id in self._links]
        remote_ids += [r for r in self._orphan_candidates if r not in remote_ids]
        for remote_id in remote_ids:
            await self.close_peer(remote_id)
        await self.wait_idle()
        self._departed.clear()

    def __len__(self) -> int:
        return len(self._links)
