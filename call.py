# call.py
# ────────────────────────────────────────────────────────────────────
# One call session from the local peer's side
# • every input (signaling event, local candidate, negotiationneeded,
#   connectivity change) goes through one inbox and is handled in order
#   by a single worker task; end, reject and the watchdog verdict skip the
#   queue and cancel whatever the worker is waiting on
# • initiator: media -> first offer -> user:call -> answer -> tracks
# • responder: incoming:call -> accept? -> media -> answer -> tracks
# • ending is idempotent and releases the connection, media and timer
# ────────────────────────────────────────────────────────────────────

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCSessionDescription
from aiortc.exceptions import InvalidStateError

from call_state import CallSession, CallStateMachine, CallStatus
from config import ICE_DISCONNECT_GRACE_SEC, log
from ice_buffer import is_end_of_candidates
from media import MediaPermissionError, RemoteMediaSink, open_local_media
from negotiation import NegotiationGuard
from peer import PeerConnectionManager
from signaling import (
    CALL_ACCEPTED,
    CALL_ENDED,
    CALL_PREPARE,
    CALL_REJECTED,
    ICE_CANDIDATE,
    INCOMING_CALL,
    NEGO_DONE,
    NEGO_FINAL,
    NEGO_NEEDED,
    USER_CALL,
    SignalingChannel,
    candidate_from_wire,
    candidate_to_wire,
    description_from_wire,
    description_to_wire,
)
from watchdog import HEALTHY_STATES, ReconnectionWatchdog

# local inputs, queued next to the signaling events
LOCAL_CANDIDATE = "local:candidate"
LOCAL_NEGOTIATION = "local:negotiationneeded"
CONNECTIVITY = "local:connectivity"
TERMINAL = "local:terminal"

# handled as soon as they arrive, never behind an accept prompt or a device open
ENDING_EVENTS = (CALL_ENDED, CALL_REJECTED, TERMINAL)

MediaFactory = Callable[[], Awaitable[List[MediaStreamTrack]]]
AcceptPolicy = Callable[[CallSession], Union[bool, Awaitable[bool]]]


class Call:
    def __init__(
        self,
        session: CallSession,
        channel: SignalingChannel,
        peer: PeerConnectionManager,
        media_factory: MediaFactory = open_local_media,
        accept_call: Optional[AcceptPolicy] = None,
        on_closed: Optional[Callable[["Call"], None]] = None,
        sink: Optional[RemoteMediaSink] = None,
        grace: float = ICE_DISCONNECT_GRACE_SEC,
    ) -> None:
        self.session = session
        self.channel = channel
        self.peer = peer
        self.machine = CallStateMachine(session)
        self.guard = NegotiationGuard(session.negotiation)
        self.watchdog = ReconnectionWatchdog(self._on_terminal, grace=grace)
        self.sink = sink if sink is not None else RemoteMediaSink()
        self.closed = asyncio.Event()

        self._media_factory = media_factory
        self._accept_call = accept_call
        self._on_closed = on_closed
        self._local_tracks: List[MediaStreamTrack] = []
        self._link_up = False
        self._released = False
        # offers carry an epoch so an answer to a superseded offer can be told apart
        self._offer_epoch = 0
        self._answered_epoch: Optional[int] = None
        self._ending: Optional[asyncio.Future] = None

        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            INCOMING_CALL: self._handle_incoming_call,
            CALL_ACCEPTED: self._handle_call_accepted,
            CALL_PREPARE: self._handle_call_prepare,
            NEGO_NEEDED: self._handle_renegotiation_offer,
            NEGO_FINAL: self._handle_renegotiation_answer,
            ICE_CANDIDATE: self._handle_remote_candidate,
            CALL_ENDED: self._handle_remote_end,
            CALL_REJECTED: self._handle_remote_reject,
            LOCAL_CANDIDATE: self._handle_local_candidate,
            LOCAL_NEGOTIATION: self._handle_negotiation_needed,
            CONNECTIVITY: self._handle_connectivity,
            TERMINAL: self._handle_terminal,
        }
        self._inbox: "asyncio.Queue[Optional[tuple]]" = asyncio.Queue()
        self._worker = asyncio.ensure_future(self._run())

        peer.on("icecandidate", lambda c: self.post(LOCAL_CANDIDATE, c))
        peer.on("negotiationneeded", lambda: self.post(LOCAL_NEGOTIATION, None))
        peer.on("connectivity", self._on_connectivity)
        peer.on("track", self.sink.add_track)

    def __repr__(self) -> str:
        s = self.session
        return f"<Call {s.appointment_id} {s.role.value} {s.status.value}>"

    def matches(self, appointment_id: Any, sender: Any) -> bool:
        return (
            not self.session.is_ended
            and str(appointment_id) == self.session.appointment_id
            and str(sender) == self.session.remote_user_id
        )

    # ─── Inbox ──────────────────────────────────────────────────────
    def post(self, event: str, data: Any) -> None:
        if self._released or self.session.is_ended:
            log.info("[CALL] %s after end dropped", event)
            return
        if event in ENDING_EVENTS:
            if self._ending is None:
                self._ending = asyncio.ensure_future(self._end_now(event, data))
            return
        self._inbox.put_nowait((event, data))

    async def _end_now(self, event: str, data: Any) -> None:
        try:
            await self._handlers[event](data)
        except Exception:
            log.exception("[CALL] %s handling failed", event)
            await self._release()

    async def _run(self) -> None:
        while True:
            item = await self._inbox.get()
            if item is None or self.session.is_ended:
                break
            event, data = item
            handler = self._handlers.get(event)
            if handler is None:
                continue
            try:
                await handler(data)
            except (InvalidStateError, ValueError) as e:
                log.warning("[CALL] %s discarded: %s", event, e)
            except Exception:
                log.exception("[CALL] %s handling failed", event)
                await self.end("error")

    # ─── Local actions ──────────────────────────────────────────────
    async def start(self) -> None:
        """Place the call: acquire media, send the first offer. Raises MediaPermissionError."""
        if not self.session.is_initiator or self.session.status is not CallStatus.IDLE:
            raise InvalidStateError("only an idle initiator session can be started")
        try:
            self._local_tracks = await self._media_factory()
        except MediaPermissionError:
            log.warning("[CALL] %s: media unavailable, call not placed", self.session.appointment_id)
            await self._release()
            raise
        if self.session.is_ended:
            self._stop_local_tracks()
            return

        self.peer.create()
        await self._send_offer(USER_CALL)

    async def prepare(self) -> None:
        """Responder side: ask the initiator to (re)send its offer."""
        await self._send(CALL_PREPARE)
        log.info("[CALL] %s: ready, offer requested", self.session.appointment_id)

    async def hangup(self) -> None:
        await self.end("hangup")

    async def reject(self, reason: str = "declined") -> None:
        await self.end(reason, notify=CALL_REJECTED)

    async def end(self, reason: str, notify: Optional[str] = CALL_ENDED) -> None:
        if not self.machine.end(reason):
            return
        self.watchdog.cancel()
        if notify:
            await self._send(notify, reason=reason)
        await self._release()
        duration = self.session.duration
        if duration is not None:
            log.warning("[CALL] %s ended (%s) after %.0fs", self.session.appointment_id, reason, duration)
        else:
            log.warning("[CALL] %s ended (%s)", self.session.appointment_id, reason)

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self.watchdog.cancel()
        await self.peer.close()
        self._stop_local_tracks()
        await self.sink.close()
        self._inbox.put_nowait(None)
        if self._worker is not asyncio.current_task():
            # a handler may be parked on the accept prompt or a device
            self._worker.cancel()
        self.closed.set()
        if self._on_closed is not None:
            self._on_closed(self)

    def _stop_local_tracks(self) -> None:
        for track in self._local_tracks:
            track.stop()
        self._local_tracks = []

    # ─── Handshake ──────────────────────────────────────────────────
    async def _send_offer(self, event: str) -> None:
        offer = await self.guard.negotiate(self.peer)
        if self.session.is_ended:
            return
        if offer is None:
            await self.end("error", notify=None)
            return
        # ringing before the send: the answer may come back while we are still in send()
        self.machine.ring()
        self._offer_epoch += 1
        await self._send(event, offer=description_to_wire(offer), epoch=self._offer_epoch)
        await self.session.ice.release_local(self._send_candidate)

    async def _handle_incoming_call(self, data: Dict[str, Any]) -> None:
        if self.session.is_initiator:
            return
        epoch = data.get("epoch")
        if self.session.status is CallStatus.CONNECTING and self._is_newer_offer(epoch):
            await self._answer_resent_offer(data, epoch)
            return
        if self.session.status is not CallStatus.IDLE:
            log.info("[CALL] %s: duplicate incoming call dropped", self.session.appointment_id)
            return
        offer = description_from_wire(data.get("offer"), "offer")
        self.machine.ring()

        if not self.session.accepted:
            if not await self._ask_accept():
                await self.reject("declined")
                return
            self.session.accepted = True
        if self.session.is_ended:
            return

        try:
            tracks = await self._media_factory()
        except MediaPermissionError as e:
            log.warning("[CALL] %s: media unavailable: %s", self.session.appointment_id, e)
            await self.end("media-unavailable", notify=CALL_REJECTED)
            return
        self._local_tracks = tracks
        if self.session.is_ended:
            self._stop_local_tracks()
            return

        if self.peer.pc is None:
            self.peer.create()
        answer = await self.peer.create_answer(offer)
        if answer is None or self.session.is_ended:
            return
        await self._send_answer(answer, epoch)
        self._enter_connecting()
        await self.session.ice.release_local(self._send_candidate)
        self.peer.add_local_tracks(self._local_tracks)

    def _is_newer_offer(self, epoch: Any) -> bool:
        return isinstance(epoch, int) and self._answered_epoch is not None and epoch > self._answered_epoch

    async def _answer_resent_offer(self, data: Dict[str, Any], epoch: int) -> None:
        # the initiator re-offered on a fresh connection (call:prepare); our first answer is void
        offer = description_from_wire(data.get("offer"), "offer")
        log.info("[CALL] %s: offer %d supersedes %d, answering again", self.session.appointment_id, epoch, self._answered_epoch)
        await self.peer.reset()
        self._link_up = False
        answer = await self.peer.create_answer(offer)
        if answer is None or self.session.is_ended:
            return
        await self._send_answer(answer, epoch)
        await self.session.ice.release_local(self._send_candidate)
        self.peer.add_local_tracks(self._local_tracks)

    async def _send_answer(self, answer: RTCSessionDescription, epoch: Any) -> None:
        fields: Dict[str, Any] = {"ans": description_to_wire(answer)}
        if isinstance(epoch, int):
            self._answered_epoch = epoch
            fields["epoch"] = epoch
        await self._send(CALL_ACCEPTED, **fields)

    async def _ask_accept(self) -> bool:
        if self._accept_call is None:
            return True
        result = self._accept_call(self.session)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    async def _handle_call_accepted(self, data: Dict[str, Any]) -> None:
        if not self.session.is_initiator or self.session.status is not CallStatus.RINGING:
            log.info("[CALL] %s: stray call:accepted dropped", self.session.appointment_id)
            return
        epoch = data.get("epoch")
        if isinstance(epoch, int) and epoch != self._offer_epoch:
            log.info("[CALL] %s: answer to superseded offer %d dropped", self.session.appointment_id, epoch)
            return
        answer = description_from_wire(data.get("ans"), "answer")
        if not await self.guard.apply_answer(self.peer, answer):
            return
        self._enter_connecting()
        if not self.peer.add_local_tracks(self._local_tracks):
            # no media of our own: still renegotiate to pick up the responder's tracks
            self.post(LOCAL_NEGOTIATION, None)

    async def _handle_call_prepare(self, data: Dict[str, Any]) -> None:
        if not self.session.is_initiator:
            return
        if self.session.status is not CallStatus.RINGING:
            log.info("[CALL] %s: call:prepare in %s dropped", self.session.appointment_id, self.session.status.value)
            return
        log.info("[CALL] %s: remote is ready, resending offer", self.session.appointment_id)
        await self.peer.reset()
        self.guard.reset()
        offer = await self.guard.negotiate(self.peer)
        if offer is None or self.session.is_ended:
            return
        self._offer_epoch += 1
        await self._send(USER_CALL, offer=description_to_wire(offer), epoch=self._offer_epoch)
        await self.session.ice.release_local(self._send_candidate)

    def _enter_connecting(self) -> None:
        self.machine.connecting()
        if self._link_up:
            self.machine.connected()

    # ─── Renegotiation ──────────────────────────────────────────────
    async def _handle_negotiation_needed(self, _: Any) -> None:
        status = self.session.status
        if not self.session.is_initiator and status is not CallStatus.CONNECTED:
            log.info("[NEGO] responder renegotiation deferred until connected")
            return
        if status not in (CallStatus.CONNECTING, CallStatus.CONNECTED):
            return
        offer = await self.guard.negotiate(self.peer)
        if offer is None or self.session.is_ended:
            return
        await self._send(NEGO_NEEDED, offer=description_to_wire(offer))
        log.info("[NEGO] renegotiation offer sent")

    async def _handle_renegotiation_offer(self, data: Dict[str, Any]) -> None:
        if self.session.status not in (CallStatus.CONNECTING, CallStatus.CONNECTED):
            log.info("[NEGO] renegotiation offer in %s dropped", self.session.status.value)
            return
        if self.peer.signaling_state != "stable":
            log.warning("[NEGO] renegotiation offer in %s dropped", self.peer.signaling_state)
            return
        offer = description_from_wire(data.get("offer"), "offer")
        answer = await self.peer.create_answer(offer)
        if answer is None or self.session.is_ended:
            return
        await self._send(NEGO_DONE, ans=description_to_wire(answer))
        log.info("[NEGO] renegotiation answer sent")

    async def _handle_renegotiation_answer(self, data: Dict[str, Any]) -> None:
        answer = description_from_wire(data.get("ans"), "answer")
        await self.guard.apply_answer(self.peer, answer)

    # ─── ICE ────────────────────────────────────────────────────────
    async def _handle_remote_candidate(self, data: Dict[str, Any]) -> None:
        raw = data.get("candidate")
        if is_end_of_candidates(raw):
            return
        try:
            candidate = candidate_from_wire(raw)
        except (AttributeError, IndexError, ValueError) as e:
            log.info("[ICE] malformed remote candidate dropped: %s", e)
            return
        await self.peer.add_remote_candidate(candidate)

    async def _handle_local_candidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        if candidate is None:
            log.info("[ICE] local gathering complete")
            return
        if self.session.ice.hold_local(candidate):
            return
        await self._send_candidate(candidate)

    async def _send_candidate(self, candidate: RTCIceCandidate) -> None:
        await self._send(ICE_CANDIDATE, candidate=candidate_to_wire(candidate))

    # ─── Connectivity ───────────────────────────────────────────────
    def _on_connectivity(self, state: str) -> None:
        # the grace timer starts now, even if the worker is busy
        if not self._released:
            self.watchdog.observe(state)
        self.post(CONNECTIVITY, state)

    async def _handle_connectivity(self, state: str) -> None:
        self._link_up = state in HEALTHY_STATES
        if self._link_up and self.session.status is CallStatus.CONNECTING:
            self.machine.connected()

    def _on_terminal(self, reason: str) -> None:
        self.post(TERMINAL, reason)

    async def _handle_terminal(self, reason: str) -> None:
        await self.end(reason)

    async def _handle_remote_end(self, data: Dict[str, Any]) -> None:
        await self.end("remote-ended", notify=None)

    async def _handle_remote_reject(self, data: Dict[str, Any]) -> None:
        # "busy", "declined", "media-unavailable" or nothing
        await self.end(str(data.get("reason") or "rejected"), notify=None)

    # ─── Signaling ──────────────────────────────────────────────────
    async def _send(self, event: str, **fields: Any) -> bool:
        fields["appointmentId"] = self.session.appointment_id
        return await self.channel.send(event, fields, self.session.remote_user_id)
