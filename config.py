# config.py
# ────────────────────────────────────────────────────────────────────
# Shared settings for the telecall broker and peers
# • every value comes from the environment once, at import time
# • one named logger for the whole project (clean logs: no SDP/ICE/tokens)
# ────────────────────────────────────────────────────────────────────

import logging
import os


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


# ─── Broker ─────────────────────────────────────────────────────────
HTTP_HOST = os.environ.get("HTTP_HOST", "0.0.0.0")
HTTP_PORT = _env_int("HTTP_PORT", 8090)

MAX_MSG_SIZE = 64 * 1024                            # 64 KB per WS frame
MAX_MSGS_PER_SEC = _env_int("MAX_MSGS_PER_SEC", 50)  # candidates arrive in bursts
MAX_USER_ID_LEN = 128

RL_MAX_REQ = _env_int("RL_MAX_REQ", 30)
RL_WINDOW_SEC = _env_int("RL_WINDOW_SEC", 60)

# CSV: "https://site1,https://site2"
ALLOWED_ORIGINS = [o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "").split(",") if o.strip()]
# empty => no token check
SIGNALING_TOKEN = os.environ.get("SIGNALING_TOKEN", "")

# Opt-in anti-replay for addressed messages (monotonic ts per sender)
REPLAY_GUARD = os.environ.get("REPLAY_GUARD") == "1"
TS_SKEW_SEC = 20
REPLAY_WINDOW = 64

# ─── Peer ───────────────────────────────────────────────────────────
SIGNALING_URL = os.environ.get("SIGNALING_URL", f"ws://127.0.0.1:{HTTP_PORT}/ws")
SIGNALING_RECONNECT_DELAY = _env_float("SIGNALING_RECONNECT_DELAY", 2.0)

ICE_URLS = os.environ.get("ICE_URLS", "")
TURN_API_URL = os.environ.get("TURN_API_URL", "")
TURN_API_TIMEOUT = _env_float("TURN_API_TIMEOUT", 3.0)
FALLBACK_STUN_URL = os.environ.get("FALLBACK_STUN_URL", "stun:stun.l.google.com:19302")

ICE_DISCONNECT_GRACE_SEC = _env_float("ICE_DISCONNECT_GRACE_SEC", 15.0)

BACKEND_URL = os.environ.get("BACKEND_URL", "http://127.0.0.1:8080")
BACKEND_TOKEN = os.environ.get("BACKEND_TOKEN", "")

VIDEO_DEVICE = os.environ.get("VIDEO_DEVICE", "")   # e.g. /dev/video0
VIDEO_FORMAT = os.environ.get("VIDEO_FORMAT", "")   # e.g. v4l2, avfoundation, dshow

# ─── Audio ──────────────────────────────────────────────────────────
SAMPLE_RATE = 48000
CHANNELS = 1
SAMPLE_WIDTH = 2     # int16
FRAME_SAMPLES = 960  # 20 ms @ 48k

# ─── Logger ─────────────────────────────────────────────────────────
LOG_FILE = os.environ.get("LOG_FILE", "telecall.log")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

log = logging.getLogger("telecall")
if not log.handlers:
    # WARNING by default, DEBUG=1 for the full negotiation trace
    log.setLevel(logging.INFO if os.environ.get("DEBUG") == "1" else logging.WARNING)
    fh = logging.FileHandler(LOG_FILE, encoding="utf-8", delay=True)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    log.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(logging.Formatter(LOG_FORMAT))
    log.addHandler(sh)
logging.getLogger("aioice").setLevel(logging.WARNING)
