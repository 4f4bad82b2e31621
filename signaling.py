# signaling.py
# ────────────────────────────────────────────────────────────────────
# Peer side of the signaling channel
# • one WS connection to the broker, re-identified after every reconnect
# • at-most-once delivery: nothing is queued while the transport is down
# • inbound events are dispatched one at a time, in arrival order
# • wire helpers for SDP and ICE candidates (browser JSON shapes)
# ────────────────────────────────────────────────────────────────────

import asyncio
import inspect
import json
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import websockets
from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from config import MAX_MSG_SIZE, SIGNALING_RECONNECT_DELAY, SIGNALING_TOKEN, SIGNALING_URL, log

# ─── Events ─────────────────────────────────────────────────────────
IDENTIFY = "identify"
USER_CALL = "user:call"
INCOMING_CALL = "incoming:call"
CALL_ACCEPTED = "call:accepted"
CALL_PREPARE = "call:prepare"
NEGO_NEEDED = "peer:nego:needed"
NEGO_DONE = "peer:nego:done"
NEGO_FINAL = "peer:nego:final"
ICE_CANDIDATE = "peer:ice-candidate"
CALL_ENDED = "call:ended"
CALL_REJECTED = "call:rejected"
DISCONNECT = "disconnect"

# what the broker delivers for each event a peer sends
ROUTES = {
    USER_CALL: INCOMING_CALL,
    CALL_ACCEPTED: CALL_ACCEPTED,
    CALL_PREPARE: CALL_PREPARE,
    NEGO_NEEDED: NEGO_NEEDED,
    NEGO_DONE: NEGO_FINAL,
    ICE_CANDIDATE: ICE_CANDIDATE,
    CALL_ENDED: CALL_ENDED,
    CALL_REJECTED: CALL_REJECTED,
}

INBOUND_EVENTS = tuple(sorted(set(ROUTES.values())))

Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


# ─── Wire helpers ───────────────────────────────────────────────────
def description_to_wire(desc: RTCSessionDescription) -> Dict[str, str]:
    return {"type": desc.type, "sdp": desc.sdp}


def description_from_wire(raw: Any, expected_type: Optional[str] = None) -> RTCSessionDescription:
    if not isinstance(raw, dict) or not raw.get("sdp"):
        raise ValueError("session description without sdp")
    sdp_type = raw.get("type") or expected_type
    if expected_type and sdp_type != expected_type:
        raise ValueError(f"expected {expected_type}, got {sdp_type}")
    return RTCSessionDescription(sdp=raw["sdp"], type=sdp_type)


def candidate_to_wire(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_wire(raw: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = (raw.get("candidate") or "").strip()
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp.split(":", 1)[1]
    parsed = candidate_from_sdp(cand_sdp)
    parsed.sdpMid = raw.get("sdpMid")
    parsed.sdpMLineIndex = raw.get("sdpMLineIndex")
    return parsed


# ─── Channel ────────────────────────────────────────────────────────
class SignalingChannel:
    """Addressed JSON events between logical user ids, brokered by ``server.py``."""

    def __init__(self, url: str = SIGNALING_URL, token: str = SIGNALING_TOKEN) -> None:
        self.url = url
        self.token = token
        self.user_id: Optional[str] = None
        self._ws = None
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._last_ts = 0
        self._closing = False
        self._up = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        subprotocols = [f"token.{self.token}"] if self.token else None
        self._ws = await websockets.connect(self.url, subprotocols=subprotocols, max_size=MAX_MSG_SIZE)
        self._up.set()
        log.info("[SIG] connected to %s", self.url)
        if self.user_id:
            # fresh transport session, same logical identity
            await self._emit(IDENTIFY, self.user_id)

    async def wait_connected(self) -> None:
        await self._up.wait()

    async def identify(self, user_id: str) -> None:
        self.user_id = user_id
        if self.connected:
            await self._emit(IDENTIFY, user_id)
            log.info("[SIG] identified as %s", user_id)

    async def send(self, event: str, payload: Dict[str, Any], to_user_id: str) -> bool:
        if not self.connected:
            log.info("[SIG] not connected, dropping %s", event)
            return False
        data = dict(payload)
        data["toUserId"] = to_user_id
        data["ts"] = self._next_ts()
        return await self._emit(event, data)

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        try:
            self._handlers[event].remove(handler)
        except ValueError:
            pass

    async def run(self) -> None:
        """Read until the transport closes, then dispatch ``disconnect``."""
        ws = self._ws
        if ws is None:
            raise RuntimeError("SignalingChannel.run() before connect()")
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(msg, dict) or not isinstance(msg.get("event"), str):
                    continue
                data = msg.get("data")
                await self.dispatch(msg["event"], data if isinstance(data, dict) else {})
        except websockets.ConnectionClosed as e:
            log.warning("[SIG] connection closed: %s", e)
        finally:
            self._ws = None
            self._up.clear()
            log.info("[SIG] disconnected")
            await self.dispatch(DISCONNECT, {})

    async def serve_forever(self) -> None:
        while not self._closing:
            try:
                await self.connect()
            except (OSError, websockets.InvalidHandshake) as e:
                log.warning("[SIG] connect to %s failed: %s", self.url, e)
            else:
                await self.run()
            if not self._closing:
                await asyncio.sleep(SIGNALING_RECONNECT_DELAY)

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None:
            await ws.close()

    async def dispatch(self, event: str, data: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("[SIG] handler for %s failed", event)

    async def _emit(self, event: str, data: Any) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps({"event": event, "data": data}))
        except websockets.ConnectionClosed:
            log.info("[SIG] send %s failed: connection closed", event)
            return False
        return True

    def _next_ts(self) -> int:
        # strictly increasing per sender, in ms (checked by the broker's replay guard)
        self._last_ts = max(int(time.time() * 1000), self._last_ts + 1)
        return self._last_ts
