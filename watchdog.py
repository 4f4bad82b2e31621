"""Grace-period watchdog over ICE connectivity."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from config import ICE_DISCONNECT_GRACE_SEC, log

CONNECTIVITY_STATES = ("new", "checking", "connected", "completed", "disconnected", "failed", "closed")
HEALTHY_STATES = ("connected", "completed")


class ReconnectionWatchdog:
    """Tell a transient ``disconnected`` blip apart from a dead link.

    ``disconnected`` arms one timer; recovery to ``connected``/``completed``
    disarms it. Expiry while still disconnected, or any ``failed``, calls
    ``on_terminal(reason)`` exactly once.
    """

    def __init__(self, on_terminal: Callable[[str], None], grace: float = ICE_DISCONNECT_GRACE_SEC) -> None:
        self.grace = grace
        self.state = "new"
        self._on_terminal = on_terminal
        self._timer: Optional[asyncio.TimerHandle] = None
        self._fired = False

    @property
    def waiting(self) -> bool:
        return self._timer is not None

    @property
    def fired(self) -> bool:
        return self._fired

    def observe(self, state: str) -> None:
        if self._fired:
            return
        self.state = state

        if state == "failed":
            log.warning("[WATCHDOG] connectivity failed")
            self.cancel()
            self._fire("connection-failed")
        elif state == "disconnected":
            if self._timer is None:
                log.info("[WATCHDOG] disconnected, waiting %.0fs for recovery", self.grace)
                loop = asyncio.get_running_loop()
                self._timer = loop.call_later(self.grace, self._expire)
        elif state in HEALTHY_STATES:
            if self._timer is not None:
                log.info("[WATCHDOG] connectivity recovered (%s)", state)
            self.cancel()
        elif state == "closed":
            self.cancel()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self) -> None:
        self._timer = None
        if self.state == "disconnected":
            log.warning("[WATCHDOG] still disconnected after %.0fs", self.grace)
            self._fire("connection-lost")

    def _fire(self, reason: str) -> None:
        if self._fired:
            return
        self._fired = True
        self._on_terminal(reason)
