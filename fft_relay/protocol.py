"""
Wire protocol for the FFT relay.

Message formats (JSON, both directions):

    Frame  (source -> hub -> viewers):
        {"type": "fft", "frequencies": [0-255, ...], "timestamp": 1234567890}

    Status (hub -> viewer):
        {"type": "status", "message": "...", "connected": true, "viewers": 3}
"""

import json
import time
from enum import Enum
from typing import Iterable, List, Optional, Union

from .config import DEFAULT_SOURCE_MARKERS

FRAME_TYPE = "fft"
STATUS_TYPE = "status"

# Number of frequency bands a source is expected to send
DEFAULT_BAND_COUNT = 64

# Close codes
CLOSE_GOING_AWAY = 1001
CLOSE_SERVER_FULL = 1008
CLOSE_SUPERSEDED = 4001

REASON_SHUTDOWN = "Server shutting down"
REASON_SERVER_FULL = "Server full"
REASON_SUPERSEDED = "Superseded by new source"


class Role(str, Enum):
    """Role assigned to a connection once, at accept time."""

    SOURCE = "source"
    VIEWER = "viewer"


class MalformedFrameError(ValueError):
    """A source message that does not match the frame schema."""


def classify_role(
    user_agent: Optional[str],
    markers: Iterable[str] = DEFAULT_SOURCE_MARKERS,
) -> Role:
    """Classify a connection from its User-Agent hint.

    Any hint containing one of ``markers`` (case-sensitive substring) is the
    source; everything else, including a missing header, is a viewer.
    """
    if not user_agent:
        return Role.VIEWER
    if any(marker in user_agent for marker in markers):
        return Role.SOURCE
    return Role.VIEWER


def parse_frame(message: Union[str, bytes]) -> dict:
    """Decode and validate a source message.

    Only the frame kind and the shape of ``frequencies`` are checked; values
    are forwarded as-is.

    Raises:
        MalformedFrameError: if the message is not a frame.
    """
    try:
        data = json.loads(message)
    except (ValueError, TypeError) as e:
        raise MalformedFrameError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedFrameError(f"expected object, got {type(data).__name__}")
    if data.get("type") != FRAME_TYPE:
        raise MalformedFrameError(f"unexpected message type: {data.get('type')!r}")
    if not isinstance(data.get("frequencies"), list):
        raise MalformedFrameError("frequencies must be an array")
    return data


def build_frame(frequencies: List[int], timestamp: Optional[float] = None) -> str:
    """Serialize a frame; timestamp defaults to now, in epoch milliseconds."""
    if timestamp is None:
        timestamp = int(time.time() * 1000)
    return json.dumps(
        {"type": FRAME_TYPE, "frequencies": list(frequencies), "timestamp": timestamp}
    )


def status_message(message: str, connected: bool, viewers: Optional[int] = None) -> str:
    """Serialize a status message for viewers."""
    data = {"type": STATUS_TYPE, "message": message, "connected": connected}
    if viewers is not None:
        data["viewers"] = viewers
    return json.dumps(data)
