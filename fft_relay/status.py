"""
Health and metrics HTTP endpoints for relay monitoring.

Served on the WebSocket port through the ``process_request`` hook; requests
that ask for a WebSocket upgrade pass through to the handshake.

- GET /         - HTML info page
- GET /health   - JSON health check
- GET /metrics  - Prometheus-compatible text format metrics
"""

import email.utils
import html
import json
import logging
from http import HTTPStatus
from typing import TYPE_CHECKING, Optional

from websockets.datastructures import Headers
from websockets.http11 import Request, Response

if TYPE_CHECKING:
    from fft_relay.hub import RelayHub

logger = logging.getLogger(__name__)


def _response(status: HTTPStatus, body: str, content_type: str) -> Response:
    data = body.encode("utf-8")
    headers = Headers(
        [
            ("Date", email.utils.formatdate(usegmt=True)),
            ("Connection", "close"),
            ("Content-Type", content_type),
            ("Content-Length", str(len(data))),
            ("Access-Control-Allow-Origin", "*"),
            ("Cache-Control", "no-cache"),
        ]
    )
    return Response(status.value, status.phrase, headers, data)


def health_payload(snapshot: dict) -> dict:
    return {
        "status": "ok",
        "clients": snapshot["viewers"],
        "botConnected": snapshot["source_connected"],
        "uptime": round(snapshot["uptime_seconds"], 2),
    }


def metrics_text(snapshot: dict) -> str:
    """Render a stats snapshot in Prometheus text format."""
    # name -> (type, help, snapshot key)
    metrics = {
        "uptime_seconds": ("gauge", "Server uptime in seconds", "uptime_seconds"),
        "source_connected": ("gauge", "1 if a source is connected", "source_connected"),
        "viewers": ("gauge", "Number of currently connected viewers", "viewers"),
        "connections_total": ("counter", "Total connections accepted", "total_connections"),
        "messages_total": ("counter", "Total frames relayed", "total_messages"),
        "bytes_total": ("counter", "Total frame bytes relayed", "total_bytes"),
        "dropped_frames_total": ("counter", "Malformed source messages", "dropped_frames"),
        "skipped_deliveries_total": (
            "counter",
            "Frames skipped for busy viewers",
            "skipped_deliveries",
        ),
        "rejected_viewers_total": ("counter", "Viewers refused while full", "rejected_viewers"),
        "source_takeovers_total": ("counter", "Superseded sources", "source_takeovers"),
        "liveness_evictions_total": ("counter", "Heartbeat evictions", "liveness_evictions"),
    }

    # Format: metric_name value
    lines = []
    for suffix, (kind, help_text, key) in metrics.items():
        name = f"fft_relay_{suffix}"
        value = snapshot[key]
        if isinstance(value, bool):
            value = int(value)
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {kind}")
        lines.append(f"{name} {value:.2f}" if isinstance(value, float) else f"{name} {value}")
        lines.append("")
    return "\n".join(lines)


def info_page(snapshot: dict, host: str) -> str:
    """Render the root HTML page."""
    connected = snapshot["source_connected"]
    bot_class = "connected" if connected else "disconnected"
    bot_label = "Connected" if connected else "Disconnected"
    host = html.escape(host)

    return f"""<!DOCTYPE html>
<html>
<head>
  <title>Audio Streaming Server</title>
  <style>
    body {{ font-family: Arial, sans-serif; max-width: 800px; margin: 50px auto;
           padding: 20px; background: #1a1a1a; color: #fff; }}
    h1 {{ color: #00ff88; }}
    .status {{ background: #2a2a2a; padding: 20px; border-radius: 10px; margin: 20px 0; }}
    .connected {{ color: #00ff88; }}
    .disconnected {{ color: #ff0088; }}
    code {{ background: #000; padding: 2px 5px; border-radius: 3px; }}
  </style>
</head>
<body>
  <h1>Audio Streaming Server</h1>

  <div class="status">
    <h2>Status</h2>
    <p>Server: <span class="connected">Running</span></p>
    <p>Bot: <span class="{bot_class}">{bot_label}</span></p>
    <p>Viewers: <strong>{snapshot["viewers"]}</strong></p>
    <p>Uptime: <strong>{int(snapshot["uptime_seconds"])}s</strong></p>
  </div>

  <div class="status">
    <h2>WebSocket Connection</h2>
    <p>Connect to: <code>ws://{host}</code></p>
    <p>Protocol: WebSocket</p>
    <p>Format: JSON</p>
  </div>

  <div class="status">
    <h2>Documentation</h2>
    <p>Bot connection: Include <code>User-Agent: MusicBot/1.0</code> header</p>
    <p>Viewer connection: Any other User-Agent</p>
    <p>Message format:</p>
    <pre><code>{{
  "type": "fft",
  "frequencies": [0-255, ...],
  "timestamp": 1234567890
}}</code></pre>
  </div>
</body>
</html>
"""


def make_process_request(hub: "RelayHub"):
    """Build the ``process_request`` hook for ``websockets.asyncio.server.serve``."""

    async def process_request(connection, request: Request) -> Optional[Response]:
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None

        path = request.path.split("?", 1)[0]
        snapshot = await hub.stats_snapshot()

        if path == "/health":
            body = json.dumps(health_payload(snapshot))
            return _response(HTTPStatus.OK, body, "application/json")
        if path == "/metrics":
            return _response(HTTPStatus.OK, metrics_text(snapshot), "text/plain; version=0.0.4")
        if path == "/":
            host = request.headers.get("Host", f"localhost:{hub.config.port}")
            return _response(HTTPStatus.OK, info_page(snapshot, host), "text/html; charset=utf-8")

        logger.debug(f"HTTP 404 for {path}")
        return _response(HTTPStatus.NOT_FOUND, "Not Found", "text/plain")

    return process_request
