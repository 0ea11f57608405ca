"""
Relay configuration.

Provides:
- Type-safe configuration dataclass with startup defaults
- Loading from environment variables and JSON files
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional, Tuple

DEFAULT_SOURCE_MARKERS: Tuple[str, ...] = ("MusicBot", "Discord-Bot")

_FIELD_TYPES = {
    "host": str,
    "port": int,
    "max_viewers": int,
    "viewer_backlog": int,
    "heartbeat_interval": float,
    "stats_interval": float,
}


@dataclass
class RelayConfig:
    """Relay hub configuration, fixed for the lifetime of the process."""

    host: str = "0.0.0.0"
    port: int = 8080

    # Capacity
    max_viewers: int = 100
    # Frames queued per viewer before further frames are skipped
    viewer_backlog: int = 32

    # Periodic tasks (seconds)
    heartbeat_interval: float = 30.0
    stats_interval: float = 60.0

    # User-Agent substrings that mark a connection as the source
    source_markers: Tuple[str, ...] = field(default_factory=lambda: DEFAULT_SOURCE_MARKERS)

    def validate(self) -> "RelayConfig":
        """Raise ValueError if any field is out of range."""
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port must be between 1 and 65535, got: {self.port}")
        if self.max_viewers < 0:
            raise ValueError(f"max_viewers must be >= 0, got: {self.max_viewers}")
        if self.viewer_backlog < 1:
            raise ValueError(f"viewer_backlog must be >= 1, got: {self.viewer_backlog}")
        if self.heartbeat_interval <= 0:
            raise ValueError(f"heartbeat_interval must be positive, got: {self.heartbeat_interval}")
        if self.stats_interval <= 0:
            raise ValueError(f"stats_interval must be positive, got: {self.stats_interval}")
        if not self.source_markers or not all(self.source_markers):
            raise ValueError("source_markers must contain at least one non-empty marker")
        return self

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["source_markers"] = list(self.source_markers)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RelayConfig":
        """Create from dictionary, ignoring unknown keys.

        Values are coerced to the field types; ValueError if one cannot be.
        """
        kwargs = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for name, convert in _FIELD_TYPES.items():
            if name not in kwargs:
                continue
            value = kwargs[name]
            error = ValueError(f"{name} must be {convert.__name__}, got: {value!r}")
            # bool is an int, and str() accepts anything
            if value is None or isinstance(value, (bool, list, dict)):
                raise error
            try:
                kwargs[name] = convert(value)
            except ValueError:
                raise error from None
        if "source_markers" in kwargs:
            markers = kwargs["source_markers"]
            if not isinstance(markers, (list, tuple)) or not all(
                isinstance(m, str) for m in markers
            ):
                raise ValueError(f"source_markers must be a list of strings, got: {markers!r}")
            kwargs["source_markers"] = tuple(markers)
        return cls(**kwargs)

    @classmethod
    def from_env(cls, base: Optional["RelayConfig"] = None) -> "RelayConfig":
        """Load configuration from environment variables on top of ``base``."""
        config = base or cls()
        env = os.environ

        markers = env.get("FFT_RELAY_SOURCE_MARKERS")
        # PORT is what hosting platforms inject; the prefixed name wins if both are set
        port = env.get("FFT_RELAY_PORT", env.get("PORT"))

        return cls(
            host=env.get("FFT_RELAY_HOST", config.host),
            port=int(port) if port else config.port,
            max_viewers=int(env.get("FFT_RELAY_MAX_VIEWERS", config.max_viewers)),
            viewer_backlog=int(env.get("FFT_RELAY_VIEWER_BACKLOG", config.viewer_backlog)),
            heartbeat_interval=float(
                env.get("FFT_RELAY_HEARTBEAT_INTERVAL", config.heartbeat_interval)
            ),
            stats_interval=float(env.get("FFT_RELAY_STATS_INTERVAL", config.stats_interval)),
            source_markers=(
                tuple(m.strip() for m in markers.split(",") if m.strip())
                if markers
                else config.source_markers
            ),
        )

    @classmethod
    def load(cls, path: Path) -> "RelayConfig":
        """Load configuration from a JSON file, or defaults if it does not exist."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object")

        return cls.from_dict(data)
