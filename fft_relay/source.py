"""
Source-side integration for the relay.

Used by the music bot to publish frequency frames. Connects with a bot
User-Agent so the hub classifies it as the source, reconnects with
exponential backoff, and drops frames while disconnected (no buffering).

Band levels use a cheap RMS-per-slice estimate, not a real FFT; good enough
to drive a visualizer.
"""

import asyncio
import logging
import math
from typing import List, Optional, Sequence, Union

import numpy as np
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .protocol import DEFAULT_BAND_COUNT, build_frame

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "MusicBot/1.0"


def rms_band_levels(
    samples: Union[bytes, Sequence[int], np.ndarray],
    bands: int = DEFAULT_BAND_COUNT,
) -> List[int]:
    """Estimate ``bands`` amplitude levels (0-255) from signed 16-bit PCM.

    The samples are split into equal consecutive slices; each level is the
    RMS of its slice (normalized to [-1, 1]) scaled by 1000 and clamped.
    """
    if isinstance(samples, (bytes, bytearray, memoryview)):
        pcm = np.frombuffer(samples, dtype="<i2")
    else:
        pcm = np.asarray(samples)

    per_band = len(pcm) // bands
    if per_band == 0:
        return [0] * bands

    normalized = pcm[: per_band * bands].astype(np.float64) / 32768.0
    rms = np.sqrt(np.mean(normalized.reshape(bands, per_band) ** 2, axis=1))
    return np.minimum(255, np.floor(rms * 1000)).astype(int).tolist()


def synthetic_levels(t: float, bands: int = DEFAULT_BAND_COUNT, bpm: float = 120.0) -> List[int]:
    """Generate a moving test spectrum: a decaying kick plus a drifting sweep."""
    beat_phase = (t * bpm / 60.0) % 1.0
    kick = math.exp(-6.0 * beat_phase)

    index = np.arange(bands) / max(1, bands - 1)
    low_end = kick * np.exp(-index * 8.0)
    sweep_center = 0.5 + 0.4 * math.sin(t * 0.7)
    sweep = 0.6 * np.exp(-((index - sweep_center) ** 2) / 0.01)
    floor = 0.1 * (1.0 - index)

    levels = np.clip((low_end + sweep + floor) * 255.0, 0, 255)
    return levels.astype(int).tolist()


class SourceClient:
    """Publishes frequency frames to a relay hub as its source."""

    def __init__(
        self,
        url: str,
        user_agent: str = DEFAULT_USER_AGENT,
        reconnect_delay: float = 5.0,
        max_reconnect_delay: float = 30.0,
    ):
        self.url = url
        self.user_agent = user_agent
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay

        self.ws = None
        self._running = False

    @property
    def connected(self) -> bool:
        return self.ws is not None and self.ws.state is State.OPEN

    async def run(self) -> None:
        """Connect and stay connected until ``stop`` is called or the task is cancelled."""
        self._running = True
        backoff = self.reconnect_delay

        while self._running:
            try:
                async with connect(
                    self.url,
                    user_agent_header=self.user_agent,
                    compression=None,
                ) as ws:
                    self.ws = ws
                    backoff = self.reconnect_delay
                    logger.info(f"Connected to relay at {self.url}")
                    await ws.wait_closed()
                    if ws.close_code is not None:
                        logger.info(
                            f"Relay closed connection: {ws.close_code} {ws.close_reason or ''}"
                        )
            except Exception as e:
                logger.warning(f"Relay connection lost: {e}")
            finally:
                self.ws = None

            if not self._running:
                break
            logger.info(f"Reconnecting to relay in {backoff:.0f}s...")
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_reconnect_delay)

    async def send_frame(
        self, frequencies: Sequence[int], timestamp: Optional[float] = None
    ) -> bool:
        """Send one frame if connected. Returns False if the frame was dropped."""
        if not self.connected:
            return False
        try:
            await self.ws.send(build_frame(list(frequencies), timestamp))
        except ConnectionClosed:
            return False
        return True

    async def stop(self) -> None:
        self._running = False
        if self.ws is not None:
            await self.ws.close()
