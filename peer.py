# peer.py
# ────────────────────────────────────────────────────────────────────
# The one RTCPeerConnection of a call session
# • explicit create()/close(): never rebuilt behind the caller's back
# • offer/answer/remote-answer/candidates mapped onto aiortc calls
# • results of awaits that finish after close() are thrown away
# • events: "icecandidate", "connectivity", "negotiationneeded", "track"
#   (aiortc has no trickle ICE and no negotiationneeded, so both are
#   produced here)
# ────────────────────────────────────────────────────────────────────

from typing import Callable, Iterable, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import SessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from config import log
from ice_buffer import END_OF_CANDIDATES, NOT_QUEUED, IceCandidateBuffer


def is_relayable(candidate: RTCIceCandidate) -> bool:
    """Loopback, link-local and mDNS candidates never leave this host."""
    ip = candidate.ip or ""
    return not (
        ip.startswith("127.")
        or ip.startswith("169.254.")
        or ip == "::1"
        or ip.lower().startswith("fe80:")
        or ip.endswith(".local")
    )


class PeerConnectionManager(AsyncIOEventEmitter):
    def __init__(
        self,
        ice: IceCandidateBuffer,
        ice_servers: Optional[List[RTCIceServer]] = None,
        factory: Callable[..., RTCPeerConnection] = RTCPeerConnection,
    ) -> None:
        super().__init__()
        self.ice = ice
        self.state = ice.state
        self._ice_servers = list(ice_servers or [])
        self._factory = factory
        self._pc: Optional[RTCPeerConnection] = None
        self._closed = False
        self._making_offer = False
        self._candidates_sent = False
        self._tracks: List[MediaStreamTrack] = []

    # ─── State ──────────────────────────────────────────────────────
    @property
    def pc(self) -> Optional[RTCPeerConnection]:
        return self._pc

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState if self._pc is not None else "closed"

    @property
    def connectivity(self) -> str:
        return self._pc.iceConnectionState if self._pc is not None else "closed"

    @property
    def local_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def _require(self) -> RTCPeerConnection:
        if self._pc is None:
            raise InvalidStateError("no peer connection")
        return self._pc

    def _stale(self, pc: RTCPeerConnection) -> bool:
        return self._closed or pc is not self._pc

    # ─── Lifecycle ──────────────────────────────────────────────────
    def create(self) -> RTCPeerConnection:
        if self._closed:
            raise InvalidStateError("peer connection manager is closed")
        if self._pc is not None:
            raise InvalidStateError("peer connection already exists, close it first")

        pc = self._factory(configuration=RTCConfiguration(iceServers=self._ice_servers))

        @pc.on("iceconnectionstatechange")
        def on_ice_state():
            if pc is self._pc:
                log.info("[PC] ICE state=%s", pc.iceConnectionState)
                self.emit("connectivity", pc.iceConnectionState)

        @pc.on("track")
        def on_track(track):
            if pc is self._pc:
                log.info("[PC] on_track: %s", track.kind)
                self.emit("track", track)

        self._pc = pc
        self._candidates_sent = False
        log.info("[PC] created with %d ICE server(s)", len(self._ice_servers))
        return pc

    async def reset(self) -> RTCPeerConnection:
        """Close the current connection completely, then start a fresh one."""
        await self._close_connection()
        self._tracks.clear()
        self.state.reset()
        self.ice.reset()
        return self.create()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._close_connection()
        for track in self._tracks:
            track.stop()
        self._tracks.clear()
        log.info("[PC] Closed")

    async def _close_connection(self) -> None:
        pc, self._pc = self._pc, None
        self._making_offer = False
        if pc is not None:
            await pc.close()

    # ─── SDP ────────────────────────────────────────────────────────
    async def create_offer(self) -> Optional[RTCSessionDescription]:
        pc = self._require()
        if self._making_offer or pc.signalingState != "stable":
            raise InvalidStateError(f"cannot create offer in signaling state {pc.signalingState}")

        self._making_offer = True
        try:
            if not pc.getTransceivers():
                # aiortc needs at least one m-line; tracks come after the first round
                pc.addTransceiver("audio", direction="recvonly")
                pc.addTransceiver("video", direction="recvonly")
            offer = await pc.createOffer()
            if self._stale(pc):
                return None
            await pc.setLocalDescription(offer)
            if self._stale(pc):
                log.info("[PC] offer discarded: connection closed")
                return None
        finally:
            if pc is self._pc:
                self._making_offer = False

        self.state.local_description_set = True
        self._emit_local_candidates(pc)
        log.info("[PC] Offer created")
        return pc.localDescription

    async def create_answer(self, offer: RTCSessionDescription) -> Optional[RTCSessionDescription]:
        pc = self._require()
        await pc.setRemoteDescription(offer)
        if self._stale(pc):
            return None
        await self._remote_description_applied(pc)
        if self._stale(pc):
            return None

        answer = await pc.createAnswer()
        if self._stale(pc):
            return None
        await pc.setLocalDescription(answer)
        if self._stale(pc):
            log.info("[PC] answer discarded: connection closed")
            return None

        self.state.local_description_set = True
        self._emit_local_candidates(pc)
        log.info("[PC] Answer created")
        return pc.localDescription

    async def set_remote_description(self, answer: RTCSessionDescription) -> bool:
        """Apply an answer to our outstanding offer; anything else is logged and ignored."""
        pc = self._pc
        if pc is None or pc.signalingState != "have-local-offer":
            log.warning("[PC] ignoring answer in signaling state %s", self.signaling_state)
            return False
        await pc.setRemoteDescription(answer)
        if self._stale(pc):
            return False
        await self._remote_description_applied(pc)
        log.info("[PC] Answer applied")
        return True

    async def _remote_description_applied(self, pc: RTCPeerConnection) -> None:
        self.state.remote_description_set = True
        await self.ice.flush(self._apply_candidate)

    # ─── Media ──────────────────────────────────────────────────────
    def add_local_tracks(self, tracks: Iterable[MediaStreamTrack]) -> int:
        pc = self._require()
        added = 0
        for track in tracks:
            if track in self._tracks:
                continue
            pc.addTrack(track)
            self._tracks.append(track)
            added += 1
            log.info("[PC] local %s track attached", track.kind)
        if added:
            self.emit("negotiationneeded")
        return added

    # ─── ICE ────────────────────────────────────────────────────────
    async def add_remote_candidate(self, candidate: Optional[RTCIceCandidate]) -> str:
        outcome = self.ice.enqueue_if_not_ready(candidate)
        if outcome == END_OF_CANDIDATES:
            log.info("[ICE] remote end-of-candidates")
        elif outcome == NOT_QUEUED:
            await self._apply_candidate(candidate)
        return outcome

    async def _apply_candidate(self, candidate: RTCIceCandidate) -> None:
        pc = self._pc
        if pc is None:
            return
        try:
            await pc.addIceCandidate(candidate)
        except Exception as e:
            log.info("[ICE] addIceCandidate error: %s", e)

    def _emit_local_candidates(self, pc: RTCPeerConnection) -> None:
        # gathering runs once per connection; later descriptions repeat the same candidates
        if self._candidates_sent or pc.localDescription is None:
            return
        self._candidates_sent = True
        desc = SessionDescription.parse(pc.localDescription.sdp)
        for index, media in enumerate(desc.media):
            for candidate in media.ice_candidates:
                candidate.sdpMid = media.rtp.muxId
                candidate.sdpMLineIndex = index
                if not is_relayable(candidate):
                    log.info("[ICE] drop local candidate (%s)", candidate.type)
                    continue
                self.emit("icecandidate", candidate)
        self.emit("icecandidate", None)
