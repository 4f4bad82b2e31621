# agent.py
# ────────────────────────────────────────────────────────────────────
# Per-user front door over the signaling channel
# • one handler per inbound event, routed to the active call by
#   appointmentId + sender; everything else is dropped
# • one active call at a time: a second incoming call gets call:rejected
#   with reason "busy", a second local call raises CallBusyError
# • signaling loss is fatal to the active call
# ────────────────────────────────────────────────────────────────────

from functools import partial
from typing import Any, Callable, Dict, List, Optional

from aiortc import RTCIceServer, RTCPeerConnection

from call import AcceptPolicy, Call, MediaFactory
from call_state import CallRole, CallSession
from config import ICE_DISCONNECT_GRACE_SEC, log
from media import open_local_media
from peer import PeerConnectionManager
from signaling import CALL_REJECTED, DISCONNECT, INBOUND_EVENTS, INCOMING_CALL, SignalingChannel


class CallBusyError(Exception):
    """A call is already active for this user."""


class CallAgent:
    def __init__(
        self,
        user_id: str,
        channel: SignalingChannel,
        ice_servers: Optional[List[RTCIceServer]] = None,
        pc_factory: Callable[..., RTCPeerConnection] = RTCPeerConnection,
        media_factory: MediaFactory = open_local_media,
        accept_call: Optional[AcceptPolicy] = None,
        grace: float = ICE_DISCONNECT_GRACE_SEC,
        on_call_ended: Optional[Callable[[CallSession], None]] = None,
    ) -> None:
        self.user_id = str(user_id)
        self.channel = channel
        self.ice_servers = list(ice_servers or [])
        self.pc_factory = pc_factory
        self.media_factory = media_factory
        self.accept_call = accept_call
        self.grace = grace
        self.on_call_ended = on_call_ended
        self.active: Optional[Call] = None
        self.history: List[CallSession] = []

        self._subscriptions = [(event, partial(self._route, event)) for event in INBOUND_EVENTS]
        self._subscriptions.append((DISCONNECT, self._on_disconnect))
        for event, handler in self._subscriptions:
            channel.on(event, handler)

    @property
    def busy(self) -> bool:
        return self.active is not None and not self.active.session.is_ended

    async def identify(self) -> None:
        await self.channel.identify(self.user_id)

    def detach(self) -> None:
        for event, handler in self._subscriptions:
            self.channel.off(event, handler)

    # ─── Local actions ──────────────────────────────────────────────
    async def call(self, appointment_id: str, remote_user_id: str) -> Call:
        """Start a call as initiator. Raises CallBusyError or MediaPermissionError."""
        if self.busy:
            raise CallBusyError(f"call {self.active.session.appointment_id} is still active")
        session = CallSession(str(appointment_id), self.user_id, str(remote_user_id), CallRole.INITIATOR)
        call = self._open(session)
        await call.start()
        return call

    async def join(self, appointment_id: str, remote_user_id: str) -> Call:
        """Accept ahead of the offer and ask the initiator to (re)send it."""
        if self.busy:
            raise CallBusyError(f"call {self.active.session.appointment_id} is still active")
        session = CallSession(
            str(appointment_id), self.user_id, str(remote_user_id), CallRole.RESPONDER, accepted=True
        )
        call = self._open(session)
        await call.prepare()
        return call

    async def hangup(self) -> None:
        if self.active is not None:
            await self.active.hangup()

    async def close(self) -> None:
        await self.hangup()
        self.detach()

    def _open(self, session: CallSession) -> Call:
        peer = PeerConnectionManager(session.ice, self.ice_servers, factory=self.pc_factory)
        call = Call(
            session,
            self.channel,
            peer,
            media_factory=self.media_factory,
            accept_call=self.accept_call,
            on_closed=self._on_closed,
            grace=self.grace,
        )
        self.active = call
        log.info("[CALL] %s: new %s session with %s", session.appointment_id, session.role.value, session.remote_user_id)
        return call

    def _on_closed(self, call: Call) -> None:
        if self.active is call:
            self.active = None
        self.history.append(call.session)
        if self.on_call_ended is not None:
            self.on_call_ended(call.session)

    # ─── Inbound ────────────────────────────────────────────────────
    async def _route(self, event: str, data: Dict[str, Any]) -> None:
        appointment_id = data.get("appointmentId")
        sender = data.get("from")
        call = self.active
        if call is not None and call.matches(appointment_id, sender):
            call.post(event, data)
            return
        if event == INCOMING_CALL:
            await self._on_incoming_call(appointment_id, sender, data)
            return
        log.info("[CALL] %s for unknown call %s dropped", event, appointment_id)

    async def _on_incoming_call(self, appointment_id: Any, sender: Any, data: Dict[str, Any]) -> None:
        if not appointment_id or not sender:
            log.info("[CALL] incoming call without appointment or sender dropped")
            return
        if self.busy:
            log.warning("[CALL] %s: busy, rejecting call from %s", appointment_id, sender)
            await self.channel.send(
                CALL_REJECTED, {"appointmentId": appointment_id, "reason": "busy"}, str(sender)
            )
            return
        session = CallSession(str(appointment_id), self.user_id, str(sender), CallRole.RESPONDER)
        self._open(session).post(INCOMING_CALL, data)

    async def _on_disconnect(self, _: Dict[str, Any]) -> None:
        if self.busy:
            await self.active.end("signaling-lost", notify=None)
