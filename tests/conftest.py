"""Pytest configuration and shared fixtures."""

import asyncio
import itertools

import pytest
import pytest_asyncio
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from paddlelink.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors."""
    yield
    await asyncio.sleep(0)


# ============================================================================
# Fake WebRTC stack
# ============================================================================


class FakeEmitter:
    """Minimal stand-in for aiortc's event emitter.

    Coroutine handlers are scheduled as tasks, as aiortc does.
    """

    def __init__(self, network: "FakeNetwork"):
        self._network = network
        self._handlers: dict[str, list] = {}

    def on(self, event):
        def decorator(fn):
            self._handlers.setdefault(event, []).append(fn)
            return fn

        return decorator

    def emit(self, event, *args):
        for fn in list(self._handlers.get(event, [])):
            result = fn(*args)
            if asyncio.iscoroutine(result):
                self._network.track(asyncio.ensure_future(result))


class FakeChannel(FakeEmitter):
    """In-memory data channel delivering to its paired channel."""

    def __init__(self, network: "FakeNetwork", label: str):
        super().__init__(network)
        self.label = label
        self.readyState = "connecting"
        self.peer: "FakeChannel | None" = None
        self.sent: list[str] = []
        self.fail_sends = False

    def send(self, data):
        if self.readyState != "open" or self.fail_sends:
            raise InvalidStateError("RTCDataChannel is not open")
        self.sent.append(data)
        if self.peer is not None:
            self.peer.emit("message", data)

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.peer is not None:
            self.peer.close()


class FakePeerConnection(FakeEmitter):
    """RTCPeerConnection stand-in wired through a FakeNetwork."""

    def __init__(self, network: "FakeNetwork", pc_id: int, configuration=None):
        super().__init__(network)
        self.pc_id = pc_id
        self.configuration = configuration
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.channel: FakeChannel | None = None
        self.remote: "FakePeerConnection | None" = None
        self.added_candidates: list = []
        self.closed = False

    def createDataChannel(self, label, **kwargs):
        self.channel = FakeChannel(self._network, label)
        return self.channel

    async def createOffer(self):
        return RTCSessionDescription(sdp=f"fake:{self.pc_id}", type="offer")

    async def createAnswer(self):
        if self.remoteDescription is None:
            raise InvalidStateError("No remote description")
        return RTCSessionDescription(sdp=f"fake:{self.pc_id}", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        pc_id = int(description.sdp.split(":", 1)[1])
        self.remote = self._network.pcs[pc_id]
        if description.type == "answer" and self._network.auto_open:
            self._network.connect(self, self.remote)

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise InvalidStateError("addIceCandidate before setRemoteDescription")
        self.added_candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class FakeNetwork:
    """Creates fake peer connections and opens channels between them.

    With ``auto_open`` the offerer's channel opens as soon as it applies
    the answer; otherwise negotiation completes but no channel ever opens.
    """

    def __init__(self, auto_open: bool = True):
        self.auto_open = auto_open
        self.pcs: dict[int, FakePeerConnection] = {}
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Future] = set()

    def factory(self, configuration):
        pc = FakePeerConnection(self, next(self._ids), configuration)
        self.pcs[pc.pc_id] = pc
        return pc

    def track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def connect(self, offerer: FakePeerConnection, answerer: FakePeerConnection) -> None:
        remote_channel = FakeChannel(self, offerer.channel.label)
        offerer.channel.peer = remote_channel
        remote_channel.peer = offerer.channel
        offerer.connectionState = answerer.connectionState = "connected"
        remote_channel.readyState = "open"
        offerer.channel.open()
        answerer.emit("datachannel", remote_channel)

    async def settle(self) -> None:
        """Wait for every scheduled event handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class RecordingGame:
    """Game loop stand-in recording paddle commands."""

    def __init__(self):
        self.calls: list[tuple] = []

    def move_paddle(self, side, direction):
        self.calls.append((direction, side))

    def stop_paddle(self, side):
        self.calls.append(("stop", side))


@pytest.fixture
def fake_network():
    """Fake WebRTC network whose channels open after the answer."""
    return FakeNetwork(auto_open=True)


@pytest.fixture
def stalled_network():
    """Fake WebRTC network where no channel ever opens."""
    return FakeNetwork(auto_open=False)


@pytest.fixture
def game():
    return RecordingGame()


@pytest.fixture
def eventually():
    """Poll a condition until it holds or a timeout expires."""

    async def _eventually(predicate, timeout: float = 3.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return _eventually
