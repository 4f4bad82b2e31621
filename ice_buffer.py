"""Ordering buffer between ICE candidate discovery and the SDP exchange.

Remote candidates that arrive before the remote description is applied are
held and flushed in arrival order right after it is; local candidates are
held until our own description exists and has been sent to the other side.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Awaitable, Callable, Deque

from config import log
from negotiation import NegotiationState

QUEUED = "queued"
NOT_QUEUED = "not-queued"
END_OF_CANDIDATES = "end-of-candidates"


def is_end_of_candidates(candidate: Any) -> bool:
    if candidate is None:
        return True
    if isinstance(candidate, dict):
        return not (candidate.get("candidate") or "").strip()
    if isinstance(candidate, str):
        return not candidate.strip()
    return False


class IceCandidateBuffer:
    def __init__(self, state: NegotiationState) -> None:
        self.state = state
        self._remote: Deque[Any] = deque()
        self._local: Deque[Any] = deque()
        self._local_ready = False

    # ─── Remote candidates ──────────────────────────────────────────
    def enqueue_if_not_ready(self, candidate: Any) -> str:
        if is_end_of_candidates(candidate):
            return END_OF_CANDIDATES
        if self.state.remote_description_set:
            return NOT_QUEUED
        self._remote.append(candidate)
        log.info("[ICE] queued remote candidate (%d pending)", len(self._remote))
        return QUEUED

    async def flush(self, apply_fn: Callable[[Any], Awaitable[None]]) -> int:
        """Apply queued candidates FIFO through ``apply_fn``; safe on an empty queue."""
        applied = 0
        # popleft before applying: a candidate is never handed out twice,
        # even if apply_fn suspends and another flush runs meanwhile
        while self._remote:
            await apply_fn(self._remote.popleft())
            applied += 1
        if applied:
            log.info("[ICE] flushed %d queued remote candidate(s)", applied)
        return applied

    @property
    def pending_remote(self) -> int:
        return len(self._remote)

    # ─── Local candidates ───────────────────────────────────────────
    def hold_local(self, candidate: Any) -> bool:
        """True if the candidate was held back; False means send it now."""
        if self._local_ready and self.state.local_description_set:
            return False
        self._local.append(candidate)
        return True

    async def release_local(self, send_fn: Callable[[Any], Awaitable[None]]) -> int:
        if not self.state.local_description_set:
            # a candidate means nothing to the other side before our description does
            return 0
        self._local_ready = True
        sent = 0
        while self._local:
            await send_fn(self._local.popleft())
            sent += 1
        return sent

    @property
    def pending_local(self) -> int:
        return len(self._local)

    def reset(self) -> None:
        self._remote.clear()
        self._local.clear()
        self._local_ready = False
