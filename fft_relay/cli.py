"""
FFT Relay CLI - Command-line interface for the relay hub.

Entry points:
    fft-relay            - Run the relay hub
    fft-relay-simulate   - Publish a synthetic spectrum as the source (for testing displays)
"""

import argparse
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

from .config import RelayConfig
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def validate_port(value: str) -> int:
    """Validate port number is in valid range."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")

    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"Port must be between 1 and 65535, got: {port}")
    return port


def validate_non_negative_int(value: str) -> int:
    """Validate non-negative integer."""
    try:
        num = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer: {value}")
    if num < 0:
        raise argparse.ArgumentTypeError(f"Value must be >= 0, got: {num}")
    return num


def validate_interval(value: str) -> float:
    """Validate a positive interval in seconds."""
    try:
        seconds = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid interval: {value}")
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"Interval must be positive, got: {seconds}")
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fft-relay",
        description="FFT Relay - stream frequency data from a music bot to visualizers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fft-relay                          # Start on $PORT or 8080
  fft-relay --port 9000              # Custom port
  fft-relay --max-viewers 500        # Allow more visualizers
  fft-relay --config relay.json      # Load settings from a JSON file
        """,
    )
    parser.add_argument("--config", type=Path, help="JSON config file (applied before env/flags)")
    parser.add_argument("--host", type=str, help="Bind address (default: 0.0.0.0)")
    parser.add_argument(
        "--port", "-p", type=validate_port, help="Listening port (default: 8080 or $PORT)"
    )
    parser.add_argument(
        "--max-viewers",
        type=validate_non_negative_int,
        help="Maximum concurrent viewer connections (default: 100)",
    )
    parser.add_argument(
        "--viewer-backlog",
        type=validate_non_negative_int,
        help="Frames queued per viewer before frames are skipped (default: 32)",
    )
    parser.add_argument(
        "--heartbeat-interval",
        type=validate_interval,
        help="Seconds between liveness probes (default: 30)",
    )
    parser.add_argument(
        "--stats-interval",
        type=validate_interval,
        help="Seconds between statistics reports (default: 60)",
    )
    parser.add_argument("--log-level", type=str, help="Log level (default: INFO)")
    return parser


def resolve_config(args: argparse.Namespace) -> RelayConfig:
    """Merge defaults, config file, environment and flags, in that order."""
    base = RelayConfig.load(args.config) if args.config else RelayConfig()
    config = RelayConfig.from_env(base)

    overrides = {
        "host": args.host,
        "port": args.port,
        "max_viewers": args.max_viewers,
        "viewer_backlog": args.viewer_backlog,
        "heartbeat_interval": args.heartbeat_interval,
        "stats_interval": args.stats_interval,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    return config.validate()


def relay_server(argv=None) -> int:
    """Run the relay hub until SIGINT/SIGTERM."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        configure_logging(args.log_level)
        config = resolve_config(args)
    except ValueError as e:
        parser.error(str(e))

    from .hub import RelayHub

    hub = RelayHub(config)

    async def _run():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _on_signal, hub, sig)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(hub.stop))
        await hub.run()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    return 0


def _on_signal(hub, sig) -> None:
    logger.info(f"{signal.Signals(sig).name} received, shutting down gracefully")
    hub.stop()


def simulate_source(argv=None) -> int:
    """Connect as the source and publish a synthetic spectrum."""
    parser = argparse.ArgumentParser(
        prog="fft-relay-simulate",
        description="Publish a synthetic spectrum to a relay hub as the source",
    )
    parser.add_argument("--url", default="ws://localhost:8080", help="Relay WebSocket URL")
    parser.add_argument("--fps", type=validate_interval, default=60.0, help="Frames per second")
    parser.add_argument("--bpm", type=validate_interval, default=120.0, help="Simulated tempo")
    parser.add_argument("--log-level", type=str, help="Log level (default: INFO)")
    args = parser.parse_args(argv)

    try:
        configure_logging(args.log_level)
    except ValueError as e:
        parser.error(str(e))

    from .source import SourceClient, synthetic_levels

    client = SourceClient(args.url)

    async def _publish():
        start = time.monotonic()
        interval = 1.0 / args.fps
        sent = 0
        while True:
            levels = synthetic_levels(time.monotonic() - start, bpm=args.bpm)
            if await client.send_frame(levels):
                sent += 1
                if sent % 600 == 0:
                    logger.info(f"Sent {sent} frames")
            await asyncio.sleep(interval)

    async def _run():
        connection = asyncio.create_task(client.run())
        publisher = asyncio.create_task(_publish())
        try:
            await asyncio.gather(connection, publisher)
        finally:
            publisher.cancel()
            await client.stop()
            connection.cancel()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(relay_server())
