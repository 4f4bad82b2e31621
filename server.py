# server.py
# ────────────────────────────────────────────────────────────────────
# Signaling broker for one-to-one calls
# • WS on /ws: "identify" binds the connection to a logical user id,
#   addressed events are forwarded to that user's current connection
# • offline target => message dropped (stale call signaling is worse than silence)
# • security: Origin whitelist, token via WS subprotocol, anti-flood,
#   clean logs (no SDP/ICE/tokens), strict security headers
# ────────────────────────────────────────────────────────────────────

import json
import os
import time
from collections import defaultdict, deque
from typing import Dict, Optional

from aiohttp import WSMsgType, web

from config import (
    ALLOWED_ORIGINS,
    HTTP_HOST,
    HTTP_PORT,
    MAX_MSG_SIZE,
    MAX_MSGS_PER_SEC,
    MAX_USER_ID_LEN,
    REPLAY_GUARD,
    REPLAY_WINDOW,
    RL_MAX_REQ,
    RL_WINDOW_SEC,
    SIGNALING_TOKEN,
    TS_SKEW_SEC,
    log,
)
from signaling import ICE_CANDIDATE, IDENTIFY, ROUTES


# ─── Registry ───────────────────────────────────────────────────────
class UserRegistry:
    """user id -> live WS. Reconnects replace the entry; a stale close never evicts the new one."""

    def __init__(self) -> None:
        self._by_user: Dict[str, web.WebSocketResponse] = {}

    def bind(self, user_id: str, ws: web.WebSocketResponse) -> None:
        self._by_user[user_id] = ws

    def get(self, user_id: str) -> Optional[web.WebSocketResponse]:
        return self._by_user.get(user_id)

    def release(self, user_id: Optional[str], ws: web.WebSocketResponse) -> None:
        if user_id and self._by_user.get(user_id) is ws:
            self._by_user.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._by_user)


class ReplayGuard:
    """Monotonic ts per sender plus a short window of recent values."""

    def __init__(self) -> None:
        self._seen = defaultdict(lambda: {"last": 0.0, "recent": deque(maxlen=REPLAY_WINDOW)})

    def validate(self, sender_id: str, ts) -> bool:
        try:
            t_client = float(ts) / (1000.0 if float(ts) > 10_000_000_000 else 1.0)  # ms and sec
        except (TypeError, ValueError):
            return False

        if abs(time.time() - t_client) > TS_SKEW_SEC:
            return False

        st = self._seen[sender_id]
        if t_client <= st["last"]:
            return False
        if any(abs(t_client - x) < 1e-6 for x in st["recent"]):
            return False

        st["last"] = t_client
        st["recent"].append(t_client)
        return True

    def forget(self, sender_id: Optional[str]) -> None:
        if sender_id:
            self._seen.pop(sender_id, None)


REGISTRY = web.AppKey("registry", UserRegistry)
REPLAY = web.AppKey("replay", ReplayGuard)
HTTP_RL = web.AppKey("http_rl", dict)


# ─── HTTP ───────────────────────────────────────────────────────────
async def http_healthz(request):
    return web.Response(text="ok")


async def http_status(request):
    if os.environ.get("ADMIN_STATUS") == "1":
        secret = os.environ.get("STATUS_SECRET", "")
        if secret and request.headers.get("X-Status-Secret") == secret:
            return web.json_response({"ok": True, "users": len(request.app[REGISTRY])})
    return web.json_response({"ok": True})


@web.middleware
async def security_headers_mw(request, handler):
    resp = await handler(request)
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("Strict-Transport-Security", "max-age=15552000")
    resp.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return resp


@web.middleware
async def rate_limit_mw(request, handler):
    if request.path not in ("/status", "/healthz"):
        return await handler(request)

    ip = request.headers.get("X-Forwarded-For", request.remote or "unknown").split(",")[0].strip()
    now = time.time()
    dq = request.app[HTTP_RL].setdefault(ip, deque())

    while dq and now - dq[0] > RL_WINDOW_SEC:
        dq.popleft()

    if len(dq) >= RL_MAX_REQ:
        return web.Response(status=429, text="Too Many Requests")

    dq.append(now)
    return await handler(request)


# ─── WS signaling ───────────────────────────────────────────────────
def _offered_subprotocols(request) -> list:
    offered = request.headers.get("Sec-WebSocket-Protocol") or ""
    return [x.strip() for x in offered.split(",") if x.strip()]


def _match_token(items: list, expected: str) -> Optional[str]:
    for item in items:
        if item == expected or (item.startswith("token.") and item.split("token.", 1)[1] == expected):
            return item
    return None


def _parse_identity(data) -> Optional[str]:
    if isinstance(data, dict):
        data = data.get("userId")
    if isinstance(data, (str, int)) and str(data).strip():
        return str(data).strip()[:MAX_USER_ID_LEN]
    return None


async def http_ws(request):
    origin = request.headers.get("Origin")
    if ALLOWED_ORIGINS and origin not in ALLOWED_ORIGINS:
        log.warning("[WS] forbidden Origin: %s", origin)
        return web.Response(status=403, text="Forbidden")

    offered_items = _offered_subprotocols(request)
    matched_item = None
    if SIGNALING_TOKEN:
        matched_item = _match_token(offered_items, SIGNALING_TOKEN)
        if matched_item is None and request.query.get("t", "") != SIGNALING_TOKEN:
            log.warning("[WS] unauthorized token from %s", request.remote)
            return web.Response(status=401, text="Unauthorized")

    # echo the chosen subprotocol back (Chrome drops the socket otherwise)
    protocols = [matched_item] if matched_item else offered_items[:1]
    ws = web.WebSocketResponse(heartbeat=20, max_msg_size=MAX_MSG_SIZE, protocols=protocols)
    await ws.prepare(request)

    registry = request.app[REGISTRY]
    replay = request.app[REPLAY]
    user_id: Optional[str] = None

    last_ts = 0
    msg_count = 0

    try:
        async for msg in ws:
            now_sec = int(time.time())
            if now_sec != last_ts:
                last_ts = now_sec
                msg_count = 0
            if msg_count >= MAX_MSGS_PER_SEC:
                if msg_count == MAX_MSGS_PER_SEC:
                    log.warning("[WS] rate limit exceeded for %s", (user_id or "?")[:6])
                    msg_count += 1
                continue
            msg_count += 1

            if msg.type != WSMsgType.TEXT:
                if msg.type in (WSMsgType.ERROR, WSMsgType.CLOSE):
                    break
                continue

            try:
                payload = json.loads(msg.data)
            except ValueError:
                continue
            if not isinstance(payload, dict):
                continue

            event = payload.get("event")
            data = payload.get("data")

            if event == IDENTIFY:
                new_id = _parse_identity(data)
                if not new_id:
                    continue
                if user_id and user_id != new_id:
                    registry.release(user_id, ws)
                user_id = new_id
                registry.bind(user_id, ws)
                log.info("[WS] identified: %s (online=%d)", user_id[:6], len(registry))
                continue

            if event not in ROUTES or not isinstance(data, dict):
                continue
            if user_id is None:
                log.info("[WS] %s from unidentified connection dropped", event)
                continue

            to_id = data.get("toUserId")
            target = registry.get(str(to_id)) if to_id is not None else None
            if target is None:
                log.info("[WS] %s to %s dropped: not connected", event, str(to_id)[:6])
                continue

            if REPLAY_GUARD and not replay.validate(user_id, data.get("ts", 0)):
                continue

            if event == ICE_CANDIDATE:
                cand = data.get("candidate")
                if not isinstance(cand, dict):
                    # end-of-candidates stays with the sender
                    continue

            forwarded = {k: v for k, v in data.items() if k not in ("toUserId", "ts")}
            forwarded["from"] = user_id
            try:
                await target.send_json({"event": ROUTES[event], "data": forwarded})
                log.info("[WS→%s] %s (from=%s)", str(to_id)[:6], ROUTES[event], user_id[:6])
            except (ConnectionError, RuntimeError) as e:
                log.warning("[WS] forward %s to %s failed: %s", event, str(to_id)[:6], e)

    finally:
        registry.release(user_id, ws)
        if registry.get(user_id or "") is None:
            replay.forget(user_id)
        if not ws.closed:
            await ws.close()
        log.info("[WS] connection closed: %s (online=%d)", (user_id or "?")[:6], len(registry))

    return ws


# ─── HTTP server ────────────────────────────────────────────────────
def create_app() -> web.Application:
    app = web.Application(middlewares=[security_headers_mw, rate_limit_mw])
    app[REGISTRY] = UserRegistry()
    app[REPLAY] = ReplayGuard()
    app[HTTP_RL] = {}
    app.add_routes([
        web.get("/ws", http_ws),
        web.get("/healthz", http_healthz),
        web.get("/status", http_status),
    ])
    return app


async def start_signaling_server(host: str = HTTP_HOST, port: int = HTTP_PORT) -> web.AppRunner:
    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("[HTTP] ws://%s:%d/ws (/healthz, /status)", host, port)
    return runner


__all__ = ["create_app", "start_signaling_server", "UserRegistry", "ReplayGuard"]
