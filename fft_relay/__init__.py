"""
FFT Relay - real-time frequency data relay for music visualizers.

Accepts one source connection (a music bot streaming frequency-band
amplitudes) and fans its frames out to many visualizer connections.
"""

from .config import RelayConfig
from .hub import Delivery, Peer, RelayHub, RelayStats
from .protocol import MalformedFrameError, Role, build_frame, classify_role, parse_frame
from .source import SourceClient, rms_band_levels

__all__ = [
    "RelayHub",
    "RelayConfig",
    "RelayStats",
    "Peer",
    "Delivery",
    "Role",
    "MalformedFrameError",
    "SourceClient",
    "build_frame",
    "classify_role",
    "parse_frame",
    "rms_band_levels",
]
