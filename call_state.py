from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from config import log
from ice_buffer import IceCandidateBuffer
from negotiation import NegotiationState


class CallStatus(str, Enum):
    IDLE = "idle"
    RINGING = "ringing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDED = "ended"


class CallRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


TRANSITIONS = {
    CallStatus.IDLE: {CallStatus.RINGING, CallStatus.ENDED},
    CallStatus.RINGING: {CallStatus.CONNECTING, CallStatus.ENDED},
    CallStatus.CONNECTING: {CallStatus.CONNECTED, CallStatus.ENDED},
    CallStatus.CONNECTED: {CallStatus.ENDED},
    CallStatus.ENDED: set(),
}


@dataclass
class CallSession:
    """One pending or ongoing call, owned by the local peer for its lifetime.

    The negotiation flags and candidate queues live here so they are dropped
    together with the session; an ended session is never reused.
    """

    appointment_id: str
    local_user_id: str
    remote_user_id: str
    role: CallRole
    status: CallStatus = CallStatus.IDLE
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    end_reason: Optional[str] = None
    # responder already agreed (e.g. joined from a notification)
    accepted: bool = False
    negotiation: NegotiationState = field(default_factory=NegotiationState)
    ice: IceCandidateBuffer = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.ice = IceCandidateBuffer(self.negotiation)

    @property
    def is_initiator(self) -> bool:
        return self.role is CallRole.INITIATOR

    @property
    def is_active(self) -> bool:
        return self.status in (CallStatus.RINGING, CallStatus.CONNECTING, CallStatus.CONNECTED)

    @property
    def is_ended(self) -> bool:
        return self.status is CallStatus.ENDED

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.ended_at if self.ended_at is not None else time.time()
        return max(0.0, end - self.started_at)


class CallStateMachine:
    """
    idle -> ringing -> connecting -> connected, any -> ended.
    Pure state: no networking. Out-of-order requests are refused with False
    so stale signaling can be dropped by the caller.
    """

    def __init__(
        self,
        session: CallSession,
        on_state_changed: Optional[Callable[[CallSession], None]] = None,
    ) -> None:
        self.session = session
        self.on_state_changed = on_state_changed

    @property
    def status(self) -> CallStatus:
        return self.session.status

    def _advance(self, target: CallStatus) -> bool:
        current = self.session.status
        if target not in TRANSITIONS[current]:
            if current is not target:
                log.info("[CALL] %s: refusing %s -> %s", self.session.appointment_id, current.value, target.value)
            return False
        self.session.status = target
        log.info("[CALL] %s: %s -> %s", self.session.appointment_id, current.value, target.value)
        if self.on_state_changed:
            self.on_state_changed(self.session)
        return True

    def ring(self) -> bool:
        """Offer sent (initiator) or offer received (responder)."""
        return self._advance(CallStatus.RINGING)

    def connecting(self) -> bool:
        """Answer sent (responder) or answer applied (initiator)."""
        return self._advance(CallStatus.CONNECTING)

    def connected(self) -> bool:
        if self.session.status is not CallStatus.CONNECTING:
            return False
        self.session.started_at = time.time()
        return self._advance(CallStatus.CONNECTED)

    def end(self, reason: str) -> bool:
        if self.session.status is CallStatus.ENDED:
            return False
        self.session.ended_at = time.time()
        self.session.end_reason = reason
        return self._advance(CallStatus.ENDED)
