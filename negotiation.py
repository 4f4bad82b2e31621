"""Local guard against racing SDP offers on one connection.

A renegotiation offer is only produced when the connection is ``stable`` and
nothing is marked in flight; the flag is raised before the first await so two
rapid triggers cannot both pass. The flag drops when the matching answer is
applied, and also when a stale answer is discarded.

There is no cross-peer lock: the call topology is two parties with a fixed
initiator, and only one side renegotiates at a time by contract.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError

from config import log

if TYPE_CHECKING:
    from peer import PeerConnectionManager


@dataclass
class NegotiationState:
    in_progress: bool = False
    local_description_set: bool = False
    remote_description_set: bool = False

    def reset(self) -> None:
        self.in_progress = False
        self.local_description_set = False
        self.remote_description_set = False


class NegotiationGuard:
    def __init__(self, state: NegotiationState) -> None:
        self.state = state

    def can_offer(self, signaling_state: str) -> bool:
        return not self.state.in_progress and signaling_state == "stable"

    async def negotiate(self, peer: "PeerConnectionManager") -> Optional[RTCSessionDescription]:
        """Create an offer if the guard allows it; None when skipped or discarded."""
        if not self.can_offer(peer.signaling_state):
            log.info(
                "[NEGO] skipping offer (in progress=%s, signaling state %s)",
                self.state.in_progress,
                peer.signaling_state,
            )
            return None

        self.state.in_progress = True
        try:
            offer = await peer.create_offer()
        except InvalidStateError as e:
            self.state.in_progress = False
            log.warning("[NEGO] offer refused: %s", e)
            return None
        except Exception:
            self.state.in_progress = False
            raise
        if offer is None:
            # connection closed while the offer was being made
            self.state.in_progress = False
        return offer

    async def apply_answer(self, peer: "PeerConnectionManager", answer: RTCSessionDescription) -> bool:
        """Apply the answer to our outstanding offer; stale answers are dropped."""
        if peer.signaling_state != "have-local-offer":
            log.warning("[NEGO] ignoring answer in signaling state %s", peer.signaling_state)
            self.state.in_progress = False
            return False
        try:
            return await peer.set_remote_description(answer)
        finally:
            self.state.in_progress = False

    def reset(self) -> None:
        self.state.in_progress = False
