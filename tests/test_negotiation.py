"""Tests for per-peer negotiation."""

import asyncio

import pytest

from paddlelink.errors import MessageError, NegotiationError
from paddlelink.messages import Message, MessageType, paddle_move
from paddlelink.negotiation import (
    DEPARTED_MEMORY,
    Negotiator,
    PeerLink,
    parse_candidate,
    serialize_candidate,
)
from paddlelink.protocols import NegotiationState

HOST_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2130706431 192.168.1.10 54321 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}
SRFLX_CANDIDATE = {
    "candidate": "candidate:2 1 udp 1694498815 203.0.113.5 40000 typ srflx "
    "raddr 192.168.1.10 rport 54321",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


class SignalPipe:
    """Carries negotiation messages between negotiators as the relay would.

    Messages are queued and only delivered by ``deliver_all``, so tests
    decide the interleaving.
    """

    def __init__(self):
        self.negotiators: dict[str, Negotiator] = {}
        self.pending: list[Message] = []
        self.sent: list[Message] = []

    def signal_for(self, sender_id: str):
        async def signal(message: Message) -> None:
            stamped = message.with_fields(**{"from": sender_id})
            self.sent.append(stamped)
            self.pending.append(stamped)

        return signal

    async def deliver_all(self) -> None:
        while self.pending:
            message = self.pending.pop(0)
            target = self.negotiators.get(message.target_id)
            if target is not None:
                await target.handle_signal(message)


def candidate_message(sender: str, target: str, candidate: dict) -> Message:
    return Message(
        MessageType.ICE_CANDIDATE,
        {"roomId": "abc123", "targetId": target, "from": sender, "candidate": candidate},
    )


@pytest.fixture
def pipe():
    return SignalPipe()


@pytest.fixture
def state_log():
    return []


def make_negotiator(pipe, network, local_id, state_log=None, received=None, **kwargs):
    async def on_channel_message(link, message):
        if received is not None:
            received.append((link.remote_id, message))

    def on_state_change(link):
        if state_log is not None:
            state_log.append((local_id, link.remote_id, link.state))

    negotiator = Negotiator(
        "abc123",
        signal=pipe.signal_for(local_id),
        on_channel_message=on_channel_message,
        on_state_change=on_state_change,
        stun_servers=[],
        pc_factory=network.factory,
        **kwargs,
    )
    pipe.negotiators[local_id] = negotiator
    return negotiator


class TestPeerLink:
    """Test link state transitions."""

    def test_valid_path(self):
        link = PeerLink(room_id="r", remote_id="x", pc=None, initiator=True)

        link.transition_to(NegotiationState.OFFER_SENT)
        link.transition_to(NegotiationState.ANSWER_AWAITED)
        link.transition_to(NegotiationState.CONNECTED)

        assert link.state == NegotiationState.CONNECTED
        assert link.key == ("r", "x")

    def test_cannot_connect_from_idle(self):
        link = PeerLink(room_id="r", remote_id="x", pc=None, initiator=True)

        with pytest.raises(NegotiationError, match="Invalid transition"):
            link.transition_to(NegotiationState.CONNECTED)

    def test_closed_is_final(self):
        link = PeerLink(room_id="r", remote_id="x", pc=None, initiator=False)
        link.transition_to(NegotiationState.CLOSED)

        with pytest.raises(NegotiationError):
            link.transition_to(NegotiationState.FAILED)

    def test_not_open_without_channel(self):
        link = PeerLink(
            room_id="r", remote_id="x", pc=None, initiator=True,
            state=NegotiationState.CONNECTED,
        )
        assert not link.is_open


class TestCandidates:
    """Test ICE candidate conversion."""

    def test_parse_host_candidate(self):
        candidate = parse_candidate(HOST_CANDIDATE)

        assert candidate.ip == "192.168.1.10"
        assert candidate.port == 54321
        assert candidate.type == "host"
        assert candidate.sdpMid == "0"
        assert candidate.sdpMLineIndex == 0

    def test_parse_without_prefix(self):
        candidate = parse_candidate({"candidate": HOST_CANDIDATE["candidate"][len("candidate:"):]})
        assert candidate.foundation == "1"

    def test_end_of_candidates(self):
        assert parse_candidate({"candidate": ""}) is None
        assert parse_candidate({}) is None

    def test_malformed_line_raises(self):
        with pytest.raises(MessageError):
            parse_candidate({"candidate": "candidate:garbage"})

    def test_serialize_round_trip(self):
        candidate = parse_candidate(SRFLX_CANDIDATE)

        data = serialize_candidate(candidate)

        assert data["candidate"].startswith("candidate:2 1 udp")
        assert data["sdpMid"] == "0"
        assert parse_candidate(data).relatedAddress == "192.168.1.10"


class TestNegotiation:
    """Test the offer/answer exchange over fake peer connections."""

    async def test_start_sends_offer(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")

        link = await host.start("ctrl")

        assert link.state == NegotiationState.OFFER_SENT
        assert link.initiator
        offer = pipe.sent[0]
        assert offer.type == MessageType.OFFER
        assert offer.target_id == "ctrl"
        assert offer.room_id == "abc123"
        assert offer.payload["description"]["type"] == "offer"

    async def test_both_sides_connect_once_channel_opens(self, pipe, fake_network, state_log):
        host = make_negotiator(pipe, fake_network, "host", state_log)
        controller = make_negotiator(pipe, fake_network, "ctrl", state_log)

        await host.start("ctrl")
        await pipe.deliver_all()
        await fake_network.settle()

        assert host.get("ctrl").is_open
        assert controller.get("host").is_open
        assert [s for local, _, s in state_log if local == "host"] == [
            NegotiationState.OFFER_SENT,
            NegotiationState.ANSWER_AWAITED,
            NegotiationState.CONNECTED,
        ]
        assert [s for local, _, s in state_log if local == "ctrl"] == [
            NegotiationState.ANSWER_AWAITED,
            NegotiationState.CONNECTED,
        ]

    async def test_stalled_channel_never_connects(self, pipe, stalled_network):
        host = make_negotiator(pipe, stalled_network, "host")
        controller = make_negotiator(pipe, stalled_network, "ctrl")

        await host.start("ctrl")
        await pipe.deliver_all()
        await asyncio.sleep(0.05)

        assert host.get("ctrl").state == NegotiationState.ANSWER_AWAITED
        assert controller.get("host").state == NegotiationState.ANSWER_AWAITED
        assert host.open_links() == []

    async def test_channel_messages_delivered(self, pipe, fake_network):
        received = []
        host = make_negotiator(pipe, fake_network, "host")
        make_negotiator(pipe, fake_network, "ctrl", received=received)
        await host.start("ctrl")
        await pipe.deliver_all()

        host.get("ctrl").channel.send(paddle_move("up", "left", "p1").encode())
        await fake_network.settle()

        assert received == [("host", paddle_move("up", "left", "p1"))]

    async def test_malformed_channel_message_dropped(self, pipe, fake_network):
        received = []
        host = make_negotiator(pipe, fake_network, "host")
        make_negotiator(pipe, fake_network, "ctrl", received=received)
        await host.start("ctrl")
        await pipe.deliver_all()

        host.get("ctrl").channel.send("{not json")
        host.get("ctrl").channel.send('{"direction": "down"}')
        await fake_network.settle()

        assert [m.direction for _, m in received] == ["down"]

    async def test_duplicate_start_is_noop(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")

        first = await host.start("ctrl")
        second = await host.start("ctrl")

        assert first is second
        assert len(pipe.sent) == 1
        assert len(host) == 1

    async def test_duplicate_offer_ignored(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        controller = make_negotiator(pipe, fake_network, "ctrl")
        await host.start("ctrl")
        offer = pipe.pending[0]

        await pipe.deliver_all()
        await controller.handle_signal(offer)

        answers = [m for m in pipe.sent if m.type == MessageType.ANSWER]
        assert len(answers) == 1
        assert len(controller) == 1

    async def test_answer_without_offer_ignored(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")

        await host.handle_answer("ctrl", {"type": "answer", "sdp": "fake:99"})

        assert host.get("ctrl") is None

    async def test_channel_close_marks_failed(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        controller = make_negotiator(pipe, fake_network, "ctrl")
        await host.start("ctrl")
        await pipe.deliver_all()

        host.get("ctrl").channel.close()

        assert host.get("ctrl").state == NegotiationState.FAILED
        assert controller.get("host").state == NegotiationState.FAILED
        assert host.open_links() == []

    async def test_channel_close_releases_peer_connection(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        make_negotiator(pipe, fake_network, "ctrl")
        link = await host.start("ctrl")
        await pipe.deliver_all()

        link.channel.close()
        await host.wait_idle()

        assert link.pc.closed
        assert link.channel is None
        # Kept until the remote leaves or sends a new offer
        assert host.get("ctrl") is link
        assert link.state == NegotiationState.FAILED

    async def test_connection_failure_releases_peer_connection(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        make_negotiator(pipe, fake_network, "ctrl")
        link = await host.start("ctrl")
        await pipe.deliver_all()

        link.pc.connectionState = "failed"
        link.pc.emit("connectionstatechange")
        await fake_network.settle()
        await host.wait_idle()

        assert link.state == NegotiationState.FAILED
        assert link.pc.closed
        assert link.channel is None

    async def test_offer_after_failure_renegotiates(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        controller = make_negotiator(pipe, fake_network, "ctrl")
        await host.start("ctrl")
        await pipe.deliver_all()
        failed = controller.get("host")
        failed.channel.close()
        await controller.wait_idle()

        # The host starts over with a fresh negotiator
        restarted = make_negotiator(pipe, fake_network, "host")
        await restarted.start("ctrl")
        await pipe.deliver_all()
        await fake_network.settle()

        assert controller.get("host") is not failed
        assert controller.get("host").is_open
        assert restarted.get("ctrl").is_open
        assert failed.pc.closed

    async def test_timeout_marks_failed(self, pipe, stalled_network):
        host = make_negotiator(pipe, stalled_network, "host", timeout=0.05)
        make_negotiator(pipe, stalled_network, "ctrl")
        link = await host.start("ctrl")
        await pipe.deliver_all()

        await asyncio.sleep(0.15)
        await host.wait_idle()

        assert link.state == NegotiationState.FAILED
        assert link.pc.closed
        assert not host._tasks

    async def test_timeout_cancelled_on_connect(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host", timeout=0.05)
        make_negotiator(pipe, fake_network, "ctrl")
        link = await host.start("ctrl")
        await pipe.deliver_all()

        await asyncio.sleep(0.1)

        assert link.state == NegotiationState.CONNECTED
        assert link.timeout_handle is None

    async def test_signal_without_sender_ignored(self, pipe, fake_network):
        controller = make_negotiator(pipe, fake_network, "ctrl")

        await controller.handle_signal(
            Message(
                MessageType.OFFER,
                {"targetId": "ctrl", "description": {"type": "offer", "sdp": "fake:1"}},
            )
        )

        assert len(controller) == 0

    async def test_non_negotiation_message_rejected(self, pipe, fake_network):
        controller = make_negotiator(pipe, fake_network, "ctrl")

        with pytest.raises(NegotiationError):
            await controller.handle_signal(
                paddle_move("up", "left", "p1").with_fields(**{"from": "host"})
            )


class TestCandidateBuffering:
    """Remote candidates apply in arrival order once the description is set."""

    async def test_candidates_before_offer_applied_in_order(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        controller = make_negotiator(pipe, fake_network, "ctrl")
        await host.start("ctrl")
        offer = pipe.pending.pop(0)

        await controller.handle_signal(candidate_message("host", "ctrl", HOST_CANDIDATE))
        await controller.handle_signal(candidate_message("host", "ctrl", SRFLX_CANDIDATE))
        assert len(controller.orphan_candidates("host")) == 2

        await controller.handle_signal(offer)

        pc = controller.get("host").pc
        assert [c.ip for c in pc.added_candidates] == ["192.168.1.10", "203.0.113.5"]
        assert controller.orphan_candidates("host") == []
        assert controller.get("host").pending_candidates == []

    @pytest.mark.parametrize("candidates_first", [True, False])
    async def test_answer_and_candidates_commute(self, pipe, fake_network, candidates_first):
        host = make_negotiator(pipe, fake_network, "host")
        controller = make_negotiator(pipe, fake_network, "ctrl")
        await host.start("ctrl")
        await controller.handle_signal(pipe.pending.pop(0))
        answer = pipe.pending.pop(0)
        candidates = [
            candidate_message("ctrl", "host", HOST_CANDIDATE),
            candidate_message("ctrl", "host", SRFLX_CANDIDATE),
        ]

        if candidates_first:
            for message in candidates:
                await host.handle_signal(message)
            await host.handle_signal(answer)
        else:
            await host.handle_signal(answer)
            for message in candidates:
                await host.handle_signal(message)

        link = host.get("ctrl")
        assert [c.ip for c in link.pc.added_candidates] == ["192.168.1.10", "203.0.113.5"]
        assert link.state == NegotiationState.CONNECTED

    async def test_end_of_candidates_not_applied(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        controller = make_negotiator(pipe, fake_network, "ctrl")
        await host.start("ctrl")
        await pipe.deliver_all()

        await controller.handle_signal(candidate_message("host", "ctrl", {"candidate": ""}))
        await controller.handle_signal(
            candidate_message("host", "ctrl", {"candidate": "candidate:garbage"})
        )

        assert controller.get("host").pc.added_candidates == []


class TestTeardown:
    """Test closing links."""

    async def test_close_peer_removes_link(self, pipe, fake_network, state_log):
        host = make_negotiator(pipe, fake_network, "host", state_log)
        make_negotiator(pipe, fake_network, "ctrl")
        await host.start("ctrl")
        await pipe.deliver_all()

        link = await host.close_peer("ctrl")

        assert link.state == NegotiationState.CLOSED
        assert link.pc.closed
        assert link.channel is None
        assert host.get("ctrl") is None
        assert state_log[-1] == ("host", "ctrl", NegotiationState.CLOSED)

    async def test_close_peer_drops_buffered_candidates(self, pipe, fake_network):
        controller = make_negotiator(pipe, fake_network, "ctrl")
        await controller.handle_signal(candidate_message("host", "ctrl", HOST_CANDIDATE))

        assert await controller.close_peer("host") is None
        assert controller.orphan_candidates("host") == []

    async def test_messages_after_close_ignored(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        controller = make_negotiator(pipe, fake_network, "ctrl")
        await host.start("ctrl")
        offer = pipe.pending.pop(0)
        await controller.close_peer("host")

        await controller.handle_signal(offer)
        await controller.handle_signal(candidate_message("host", "ctrl", HOST_CANDIDATE))

        assert controller.get("host") is None
        assert controller.orphan_candidates("host") == []

    async def test_start_after_departure_returns_none(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        await host.close_peer("ctrl")

        assert await host.start("ctrl") is None
        assert pipe.sent == []

    async def test_close_all(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        for remote_id in ("a", "b"):
            await host.start(remote_id)

        await host.close_all()

        assert len(host) == 0
        assert all(pc.closed for pc in fake_network.pcs.values())

    async def test_departed_memory_bounded(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")

        for i in range(DEPARTED_MEMORY + 10):
            await host.close_peer(f"c{i}")

        assert len(host._departed) == DEPARTED_MEMORY
        assert await host.start(f"c{DEPARTED_MEMORY + 9}") is None
        # The oldest departures are forgotten
        assert await host.start("c0") is not None

    async def test_close_all_forgets_departed(self, pipe, fake_network):
        host = make_negotiator(pipe, fake_network, "host")
        await host.close_peer("ctrl")

        await host.close_all()

        assert not host._departed
        assert await host.start("ctrl") is not None
