import asyncio

import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.exceptions import InvalidStateError
from aiortc.mediastreams import MediaStreamError
from pyee.asyncio import AsyncIOEventEmitter

import ice_servers
from agent import CallAgent
from call_state import CallRole, CallSession
from peer import PeerConnectionManager
from signaling import ICE_CANDIDATE, IDENTIFY, ROUTES, SignalingChannel

MINIMAL_SDP = "v=0\r\no=- 0 0 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\n"

AUDIO_SDP = (
    "v=0\r\n"
    "o=- 3856000000 3856000000 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "a=group:BUNDLE 0\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=recvonly\r\n"
    "a=mid:0\r\n"
    "a=rtcp-mux\r\n"
    "a=rtpmap:111 opus/48000/2\r\n"
    "a=candidate:1 1 udp 2130706431 192.168.1.20 50000 typ host\r\n"
    "a=candidate:2 1 udp 2130706431 169.254.10.1 50001 typ host\r\n"
    "a=end-of-candidates\r\n"
    "a=ice-ufrag:abcd\r\n"
    "a=ice-pwd:abcdefghijklmnopqrstuvwx\r\n"
    "a=setup:actpass\r\n"
)


# --- fake connection ---

class FakePeerConnection(AsyncIOEventEmitter):
    """RTCPeerConnection stand-in: aiortc's signaling-state rules, no ICE, no DTLS."""

    instances = []

    def __init__(self, configuration=None):
        super().__init__()
        self.configuration = configuration
        self.signalingState = "stable"
        self.iceConnectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.transceivers = []
        self.tracks = []
        self.candidates = []
        self.offers = 0
        self.closed = False
        self.local_sdp = MINIMAL_SDP
        # set to an unset asyncio.Event to hold createOffer()
        self.gate = None
        FakePeerConnection.instances.append(self)

    def getTransceivers(self):
        return list(self.transceivers)

    def addTransceiver(self, kind, direction="sendrecv"):
        self.transceivers.append((kind, direction))

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        if self.gate is not None:
            await self.gate.wait()
        self.offers += 1
        return RTCSessionDescription(sdp=self.local_sdp, type="offer")

    async def createAnswer(self):
        if self.signalingState != "have-remote-offer":
            raise InvalidStateError(f"Cannot create answer in signaling state {self.signalingState}")
        return RTCSessionDescription(sdp=self.local_sdp, type="answer")

    async def setLocalDescription(self, desc):
        await asyncio.sleep(0)
        if desc.type == "offer":
            expected, after = "stable", "have-local-offer"
        else:
            expected, after = "have-remote-offer", "stable"
        if self.signalingState != expected:
            raise InvalidStateError(f"Cannot handle {desc.type} in signaling state {self.signalingState}")
        self.signalingState = after
        self.localDescription = desc

    async def setRemoteDescription(self, desc):
        await asyncio.sleep(0)
        if desc.type == "offer":
            expected, after = "stable", "have-remote-offer"
        else:
            expected, after = "have-local-offer", "stable"
        if self.signalingState != expected:
            raise InvalidStateError(f"Cannot handle {desc.type} in signaling state {self.signalingState}")
        self.signalingState = after
        self.remoteDescription = desc

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.signalingState = "closed"
        self.set_ice("closed")

    def set_ice(self, state):
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")


class FakeTrack(MediaStreamTrack):
    def __init__(self, kind="audio"):
        super().__init__()
        self.kind = kind
        self.stops = 0

    async def recv(self):
        raise MediaStreamError

    def stop(self):
        self.stops += 1
        super().stop()


# --- loopback signaling ---

class LoopbackHub:
    """In-process broker with the same forwarding rules as server.py."""

    def __init__(self):
        self.channels = {}
        self.sent = []

    def channel(self):
        return LoopbackChannel(self)

    def events_from(self, user_id):
        return [event for sender, event, _ in self.sent if sender == user_id]

    async def deliver(self, sender, event, data):
        if event == IDENTIFY:
            self.channels[str(data)] = sender
            return
        if event not in ROUTES or sender.user_id is None:
            return
        self.sent.append((sender.user_id, event, data))
        target = self.channels.get(str(data.get("toUserId")))
        if target is None or not target.online:
            return
        if event == ICE_CANDIDATE and not isinstance(data.get("candidate"), dict):
            return
        forwarded = {k: v for k, v in data.items() if k not in ("toUserId", "ts")}
        forwarded["from"] = sender.user_id
        await target.dispatch(ROUTES[event], forwarded)


class LoopbackChannel(SignalingChannel):
    def __init__(self, hub):
        super().__init__(url="ws://loopback/ws", token="")
        self.hub = hub
        self.online = True

    @property
    def connected(self):
        return self.online

    async def _emit(self, event, data):
        if not self.online:
            return False
        await self.hub.deliver(self, event, data)
        return True


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class MediaFactory:
    """Hands out fake tracks and remembers them; ``error`` makes it fail."""

    def __init__(self, error=None):
        self.error = error
        self.calls = 0
        self.tracks = []

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        tracks = [FakeTrack("audio"), FakeTrack("video")]
        self.tracks.extend(tracks)
        return tracks


# --- fixtures ---

@pytest.fixture(autouse=True)
def _fresh_state():
    FakePeerConnection.instances.clear()
    ice_servers.clear_cache()
    yield
    ice_servers.clear_cache()


@pytest.fixture
def session():
    return CallSession("apt-1", "doctor-1", "patient-1", CallRole.INITIATOR)


@pytest.fixture
def manager(session):
    peer = PeerConnectionManager(session.ice, factory=FakePeerConnection)
    peer.create()
    return peer


@pytest.fixture
def hub():
    return LoopbackHub()


@pytest.fixture
async def make_agent(hub):
    agents = []

    async def factory(user_id, media=None, accept_call=None, grace=0.05):
        agent = CallAgent(
            user_id,
            hub.channel(),
            pc_factory=FakePeerConnection,
            media_factory=media or MediaFactory(),
            accept_call=accept_call,
            grace=grace,
        )
        await agent.identify()
        agents.append(agent)
        return agent

    yield factory
    for agent in agents:
        await agent.close()
