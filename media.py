# media.py
# ────────────────────────────────────────────────────────────────────
# Local media capture and remote audio playback
# • microphone: 48 kHz mono int16 via sounddevice, as an aiortc track
# • camera (optional): aiortc MediaPlayer on VIDEO_DEVICE/VIDEO_FORMAT
# • remote audio: resample -> small jitter buffer -> default output
# Codecs are aiortc/av business; nothing here encodes or decodes.
# ────────────────────────────────────────────────────────────────────

import asyncio
import collections
import queue
import threading
from fractions import Fraction
from typing import List, Optional

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError
from av.audio.resampler import AudioResampler
from av.error import FFmpegError

from config import CHANNELS, FRAME_SAMPLES, SAMPLE_RATE, SAMPLE_WIDTH, VIDEO_DEVICE, VIDEO_FORMAT, log


class MediaPermissionError(Exception):
    """Camera or microphone could not be opened (denied, missing or busy)."""


def _sounddevice():
    # loads PortAudio, so only on first device use
    import sounddevice
    return sounddevice


# ─── Capture ────────────────────────────────────────────────────────
class MicTrack(MediaStreamTrack):
    kind = "audio"

    def __init__(self):
        super().__init__()
        self._sd = _sounddevice()
        self.q: "queue.Queue[bytes]" = queue.Queue(maxsize=120)
        self._pts = 0
        self._time_base = Fraction(1, SAMPLE_RATE)
        self.stream = self._sd.RawInputStream(
            samplerate=SAMPLE_RATE,
            channels=CHANNELS,
            dtype="int16",
            blocksize=FRAME_SAMPLES,
            callback=self._callback,
        )
        self.stream.start()
        log.info("[AUDIO] Input started")

    def _callback(self, indata, frames, time_info, status):
        try:
            self.q.put_nowait(bytes(indata))
        except queue.Full:
            pass

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        loop = asyncio.get_running_loop()
        pcm = await loop.run_in_executor(None, self.q.get)
        if not pcm:
            raise MediaStreamError
        n = len(pcm) // SAMPLE_WIDTH
        frame = av.AudioFrame(format="s16", layout="mono", samples=n)
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self._pts
        frame.time_base = self._time_base
        frame.planes[0].update(pcm)
        self._pts += n
        return frame

    def stop(self):
        if self.readyState == "ended":
            return
        try:
            self.stream.stop()
            self.stream.close()
        except self._sd.PortAudioError:
            pass
        # wake a recv() blocked in the executor
        try:
            self.q.put_nowait(b"")
        except queue.Full:
            pass
        log.info("[AUDIO] Input stopped")
        super().stop()


async def open_local_media(audio: bool = True, video: bool = True) -> List[MediaStreamTrack]:
    """Open the microphone (and camera when configured). Raises MediaPermissionError."""
    tracks: List[MediaStreamTrack] = []
    try:
        sd = _sounddevice()
    except OSError as e:
        raise MediaPermissionError(f"audio backend unavailable: {e}") from e
    try:
        if audio:
            tracks.append(MicTrack())
        if video and VIDEO_DEVICE:
            player = MediaPlayer(VIDEO_DEVICE, format=VIDEO_FORMAT or None, options={"framerate": "30"})
            if player.video is not None:
                tracks.append(player.video)
    except (sd.PortAudioError, FFmpegError, OSError) as e:
        for t in tracks:
            t.stop()
        raise MediaPermissionError(str(e)) from e
    log.info("[AUDIO] local media ready: %s", ", ".join(t.kind for t in tracks) or "none")
    return tracks


# ─── Playback ───────────────────────────────────────────────────────
class JitterBuffer:
    """Holds packets back until ``target`` are queued, then plays them out until it runs dry."""

    def __init__(self, target_packets=4, max_packets=200):
        self.target = target_packets
        self._packets: "collections.deque[bytes]" = collections.deque(maxlen=max_packets)
        self.primed = False
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._packets)

    def push(self, pcm: bytes):
        if len(self._packets) == self._packets.maxlen:
            self.dropped += 1
        self._packets.append(pcm)

    def pop(self) -> Optional[bytes]:
        if not self.primed:
            if len(self._packets) < self.target:
                return None
            self.primed = True
        if not self._packets:
            # underrun: build the cushion up again
            self.primed = False
            return None
        return self._packets.popleft()

    def drain(self) -> bytes:
        pcm = b"".join(self._packets)
        self._packets.clear()
        self.primed = False
        return pcm


class AudioPlayer:
    """Default output device fed from a byte FIFO; an underrun plays silence."""

    max_buffered = SAMPLE_RATE * SAMPLE_WIDTH * CHANNELS  # 1 s

    def __init__(self):
        self._sd = _sounddevice()
        self._pcm = bytearray()
        self._lock = threading.Lock()
        self.underruns = 0
        self.stream = self._sd.RawOutputStream(
            samplerate=SAMPLE_RATE,
            channels=CHANNELS,
            dtype="int16",
            blocksize=FRAME_SAMPLES,
            callback=self._callback,
        )
        self.stream.start()
        log.info("[AUDIO] Output started")

    def _callback(self, outdata, frames, time_info, status):
        need = frames * SAMPLE_WIDTH * CHANNELS
        with self._lock:
            chunk = bytes(self._pcm[:need])
            del self._pcm[:need]
        if len(chunk) < need:
            self.underruns += 1
            chunk += b"\x00" * (need - len(chunk))
        outdata[:] = chunk

    def put(self, pcm: bytes):
        with self._lock:
            self._pcm += pcm
            # too far behind the remote: keep the newest second only
            excess = len(self._pcm) - self.max_buffered
            if excess > 0:
                del self._pcm[:excess]

    @property
    def buffered(self) -> int:
        return len(self._pcm)

    def close(self):
        try:
            self.stream.stop()
            self.stream.close()
        except self._sd.PortAudioError:
            pass
        log.info("[AUDIO] Output stopped (%d underruns)", self.underruns)


class RemoteMediaSink:
    """Consumes remote tracks: audio is played, video is drained."""

    def __init__(self) -> None:
        self._player: Optional[AudioPlayer] = None
        self._tasks: List[asyncio.Task] = []

    def add_track(self, track: MediaStreamTrack) -> None:
        log.info("[AUDIO] remote track: %s", track.kind)
        if track.kind == "audio":
            self._tasks.append(asyncio.ensure_future(self._pump_audio(track)))
        else:
            self._tasks.append(asyncio.ensure_future(self._drain(track)))

    async def _pump_audio(self, track: MediaStreamTrack) -> None:
        if self._player is None:
            try:
                self._player = AudioPlayer()
            except Exception as e:  # PortAudioError or missing PortAudio
                log.warning("[AUDIO] no output device: %s", e)
                await self._drain(track)
                return
        resampler = AudioResampler(format="s16", layout="mono", rate=SAMPLE_RATE)
        jb = JitterBuffer(target_packets=4, max_packets=200)
        try:
            while True:
                frame = await track.recv()
                for f in resampler.resample(frame):
                    jb.push(f.to_ndarray().tobytes())
                    ready = jb.pop()
                    if ready is not None:
                        self._player.put(ready)
        except MediaStreamError:
            # remote track ended: play what is still cushioned
            tail = jb.drain()
            if tail and self._player is not None:
                self._player.put(tail)
        if jb.dropped:
            log.info("[AUDIO] jitter buffer dropped %d packet(s)", jb.dropped)

    async def _drain(self, track: MediaStreamTrack) -> None:
        try:
            while True:
                await track.recv()
        except MediaStreamError:
            pass

    async def close(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._player is not None:
            self._player.close()
            self._player = None
