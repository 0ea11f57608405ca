"""
Relay Hub - fan-out server for real-time FFT frames.

Accepts one privileged source connection (the music bot) and many viewer
connections (visualizer displays), and forwards every source frame verbatim
to every ready viewer.

Architecture:
    Music bot (source) ──> Relay Hub ──┬──> Viewer 1
                                       ├──> Viewer 2
                                       └──> Viewer N

Shared state (source slot, viewer set, statistics) is guarded by a single
asyncio.Lock. Critical sections only touch membership and counters; sends,
pings and closes happen after the lock is released, on snapshots.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Union

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .config import DEFAULT_SOURCE_MARKERS, RelayConfig
from .protocol import (
    CLOSE_GOING_AWAY,
    CLOSE_SERVER_FULL,
    CLOSE_SUPERSEDED,
    REASON_SERVER_FULL,
    REASON_SHUTDOWN,
    REASON_SUPERSEDED,
    MalformedFrameError,
    Role,
    classify_role,
    parse_frame,
    status_message,
)
from .status import make_process_request

logger = logging.getLogger(__name__)

Payload = Union[str, bytes]

# Frames are a few hundred bytes; anything near this is not a frame
MAX_MESSAGE_SIZE = 65_536


class Delivery(str, Enum):
    """Outcome of handing one payload to one viewer."""

    SENT = "sent"
    SKIPPED = "skipped"


def _format_address(address) -> str:
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address) if address else "unknown"


class Peer:
    """One accepted connection and its relay bookkeeping."""

    def __init__(self, websocket, role: Role, user_agent: str = "", remote: str = "unknown"):
        self.websocket = websocket
        self.role = role
        self.user_agent = user_agent
        self.remote = remote
        self.connected_at = time.time()

        # Cleared before each probe, set again by the matching pong
        self.alive = True

        # Drained in order by a single writer task; None stops the writer
        self.outbox: "asyncio.Queue[Optional[Payload]]" = asyncio.Queue()
        self.writer_task: Optional[asyncio.Task] = None

    @classmethod
    def from_websocket(cls, websocket, markers=DEFAULT_SOURCE_MARKERS) -> "Peer":
        """Build a peer from an accepted connection, classifying it by User-Agent."""
        headers = websocket.request.headers
        user_agent = headers.get("User-Agent", "")
        forwarded = headers.get("X-Forwarded-For")
        remote = forwarded.split(",")[0].strip() if forwarded else None
        return cls(
            websocket,
            classify_role(user_agent, markers),
            user_agent=user_agent,
            remote=remote or _format_address(websocket.remote_address),
        )

    @property
    def is_open(self) -> bool:
        return self.websocket.state is State.OPEN

    @property
    def pending(self) -> int:
        """Payloads queued but not yet handed to the transport."""
        return self.outbox.qsize()

    def on_pong(self, waiter: asyncio.Future) -> None:
        if not waiter.cancelled() and waiter.exception() is None:
            self.alive = True

    async def close(self, code: int, reason: str) -> None:
        await self.websocket.close(code, reason)

    def abort(self) -> None:
        """Drop the transport without a closing handshake."""
        self.websocket.transport.abort()

    @property
    def log_context(self) -> dict:
        return {"remote": self.remote, "role": self.role.value}

    def __repr__(self) -> str:
        return f"<Peer {self.role.value} {self.remote}>"


@dataclass
class RelayStats:
    """Process-wide counters. Never reset while the process runs."""

    total_connections: int = 0
    total_messages: int = 0
    total_bytes: int = 0
    start_time: float = field(default_factory=time.time)

    rejected_viewers: int = 0
    dropped_frames: int = 0
    skipped_deliveries: int = 0
    source_takeovers: int = 0
    liveness_evictions: int = 0

    @property
    def uptime(self) -> float:
        return max(0.0, time.time() - self.start_time)


class RelayHub:
    """
    Single-source, multi-viewer relay.

    Responsibilities:
    - Classify each connection as source or viewer (once, at accept time)
    - Keep at most one source; a new source supersedes the old one
    - Cap the viewer set at ``max_viewers``
    - Forward source frames to every ready viewer without blocking on any of them
    - Evict connections that stop answering heartbeat pings
    - Log aggregate statistics periodically
    """

    def __init__(self, config: Optional[RelayConfig] = None):
        self.config = config or RelayConfig()

        self._lock = asyncio.Lock()
        self._source: Optional[Peer] = None
        self._viewers: Set[Peer] = set()
        self.stats = RelayStats()

        self._tasks: Set[asyncio.Task] = set()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def source(self) -> Optional[Peer]:
        return self._source

    @property
    def viewers(self) -> frozenset:
        return frozenset(self._viewers)

    async def stats_snapshot(self) -> dict:
        """Current connectivity plus averages since process start."""
        async with self._lock:
            source_connected = self._source is not None
            viewer_count = len(self._viewers)
            stats = RelayStats(**vars(self.stats))

        uptime = stats.uptime
        return {
            "source_connected": source_connected,
            "viewers": viewer_count,
            "total_connections": stats.total_connections,
            "total_messages": stats.total_messages,
            "total_bytes": stats.total_bytes,
            "avg_messages_per_sec": stats.total_messages / uptime if uptime > 0 else 0.0,
            "avg_bytes_per_sec": stats.total_bytes / uptime if uptime > 0 else 0.0,
            "uptime_seconds": uptime,
            "rejected_viewers": stats.rejected_viewers,
            "dropped_frames": stats.dropped_frames,
            "skipped_deliveries": stats.skipped_deliveries,
            "source_takeovers": stats.source_takeovers,
            "liveness_evictions": stats.liveness_evictions,
        }

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def handle_connection(self, websocket) -> None:
        """Serve one connection from accept to close."""
        peer = Peer.from_websocket(websocket, self.config.source_markers)
        async with self._lock:
            self.stats.total_connections += 1
        logger.info(
            f"New connection from {peer.remote} as {peer.role.value} "
            f"(User-Agent: {peer.user_agent!r})",
            extra=peer.log_context,
        )

        if peer.role is Role.SOURCE:
            await self.admit_source(peer)
        elif not await self.admit_viewer(peer):
            return

        try:
            async for message in websocket:
                if peer.role is Role.SOURCE:
                    await self.relay_frame(peer, message)
                else:
                    logger.debug(f"Received message from viewer {peer.remote} (ignored)")
        except ConnectionClosed:
            pass
        except Exception:
            logger.exception(f"Error handling {peer.role.value} connection from {peer.remote}")
        finally:
            await self.release(peer)

    async def admit_source(self, peer: Peer) -> Optional[Peer]:
        """Install ``peer`` as the source. Returns the superseded source, if any."""
        async with self._lock:
            previous = self._source
            self._source = peer
            if previous is not None:
                self.stats.source_takeovers += 1
            viewer_count = len(self._viewers)

        if previous is not None:
            logger.info(f"Source already connected ({previous.remote}), closing old connection")
            self._spawn(previous.close(CLOSE_SUPERSEDED, REASON_SUPERSEDED))

        logger.info(f"Music bot connected from {peer.remote} ({viewer_count} viewers)")
        return previous

    async def admit_viewer(self, peer: Peer) -> bool:
        """Add ``peer`` to the viewer set, or reject it if the set is full."""
        async with self._lock:
            full = len(self._viewers) >= self.config.max_viewers
            if full:
                self.stats.rejected_viewers += 1
            else:
                self._viewers.add(peer)
                viewer_count = len(self._viewers)
                source_connected = self._source is not None

                greeting = [
                    status_message("Connected to audio stream", source_connected, viewer_count)
                ]
                if source_connected:
                    greeting.append(status_message("Bot is streaming", True))
                # Queued under the lock, so every frame lands behind it
                for message in greeting:
                    peer.outbox.put_nowait(message)
                peer.writer_task = self._spawn(self._write_loop(peer))

        if full:
            logger.warning(
                f"Max viewers reached ({self.config.max_viewers}), "
                f"rejecting connection from {peer.remote}"
            )
            await peer.close(CLOSE_SERVER_FULL, REASON_SERVER_FULL)
            return False

        logger.info(f"Viewer connected from {peer.remote} ({viewer_count} total)")
        return True

    async def release(self, peer: Peer) -> None:
        """Remove ``peer`` from shared state. Safe to call more than once."""
        async with self._lock:
            if peer.role is Role.SOURCE:
                if self._source is not peer:
                    return
                self._source = None
                viewers = list(self._viewers)
            else:
                if peer not in self._viewers:
                    return
                self._viewers.discard(peer)
                remaining = len(self._viewers)

        if peer.role is Role.SOURCE:
            logger.info("Music bot disconnected")
            notification = status_message("Bot disconnected", False)
            for viewer in viewers:
                self._deliver(viewer, notification, skippable=False)
        else:
            peer.outbox.put_nowait(None)
            logger.info(f"Viewer {peer.remote} disconnected ({remaining} remaining)")

    async def _terminate(self, peer: Peer) -> None:
        await self.release(peer)
        peer.abort()

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    async def relay_frame(
        self, peer: Peer, message: Payload
    ) -> Optional[Dict[Peer, Delivery]]:
        """Validate a source message and forward it. Malformed messages are dropped."""
        try:
            parse_frame(message)
        except MalformedFrameError as e:
            async with self._lock:
                self.stats.dropped_frames += 1
            logger.warning(f"Invalid message format from source {peer.remote}: {e}")
            return None
        return await self.forward(peer, message)

    async def forward(self, sender: Peer, payload: Payload) -> Optional[Dict[Peer, Delivery]]:
        """Hand ``payload`` to every ready viewer.

        Returns the per-viewer outcome, or None if ``sender`` no longer holds
        the source slot. Sends complete in the background; a failed send
        releases that viewer.
        """
        size = len(payload.encode("utf-8")) if isinstance(payload, str) else len(payload)

        async with self._lock:
            if self._source is not sender:
                return None
            viewers = list(self._viewers)
            self.stats.total_messages += 1
            self.stats.total_bytes += size
            total = self.stats.total_messages

        results = {viewer: self._deliver(viewer, payload) for viewer in viewers}

        skipped = sum(1 for r in results.values() if r is Delivery.SKIPPED)
        if skipped:
            async with self._lock:
                self.stats.skipped_deliveries += skipped

        if total % 100 == 0:
            logger.debug(f"Broadcasted {total} messages to {len(viewers) - skipped} viewers")
        return results

    def _deliver(self, peer: Peer, payload: Payload, skippable: bool = True) -> Delivery:
        """Queue ``payload`` for ``peer`` without waiting for the send.

        Skippable payloads (frames) are dropped for a viewer whose outbox
        already holds ``viewer_backlog`` payloads; others are always queued.
        """
        if not peer.is_open:
            return Delivery.SKIPPED
        if skippable and peer.pending >= self.config.viewer_backlog:
            return Delivery.SKIPPED
        peer.outbox.put_nowait(payload)
        return Delivery.SENT

    async def _write_loop(self, peer: Peer) -> None:
        """Send ``peer``'s queued payloads in order until it is released."""
        while True:
            payload = await peer.outbox.get()
            if payload is None or not peer.is_open:
                return
            try:
                await peer.websocket.send(payload)
            except ConnectionClosed:
                logger.debug(f"Send to {peer} failed: connection closed")
                await self._terminate(peer)
                return
            except Exception as e:
                logger.warning(f"Send to {peer} failed: {e}")
                await self._terminate(peer)
                return

    # ------------------------------------------------------------------
    # Periodic tasks
    # ------------------------------------------------------------------

    async def check_liveness(self) -> List[Peer]:
        """Probe every connection; evict those that missed the previous probe."""
        async with self._lock:
            peers = list(self._viewers)
            if self._source is not None:
                peers.append(self._source)

        evicted = [peer for peer in peers if not peer.alive]
        for peer in peers:
            if peer.alive:
                peer.alive = False
                self._spawn(self._probe(peer))

        for peer in evicted:
            logger.info(
                f"Connection from {peer.remote} timed out, terminating", extra=peer.log_context
            )
            await self._terminate(peer)

        if evicted:
            async with self._lock:
                self.stats.liveness_evictions += len(evicted)
        return evicted

    async def _probe(self, peer: Peer) -> None:
        try:
            waiter = await peer.websocket.ping()
        except ConnectionClosed:
            # Handler cleanup takes it from here
            return
        waiter.add_done_callback(peer.on_pong)

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_liveness()
            except Exception as e:
                logger.error(f"[HEARTBEAT] Loop error: {e}")

    async def log_stats(self) -> dict:
        snapshot = await self.stats_snapshot()
        logger.info(
            "[STATS] bot=%s viewers=%d messages=%d avg_msg/s=%.2f avg_KB/s=%.2f uptime=%ds",
            "connected" if snapshot["source_connected"] else "disconnected",
            snapshot["viewers"],
            snapshot["total_messages"],
            snapshot["avg_messages_per_sec"],
            snapshot["avg_bytes_per_sec"] / 1024,
            int(snapshot["uptime_seconds"]),
        )
        return snapshot

    async def _stats_loop(self) -> None:
        interval = self.config.stats_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.log_stats()
            except Exception as e:
                logger.error(f"[STATS] Loop error: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------

    def start_background_tasks(self) -> None:
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self._stats_task = asyncio.create_task(self._stats_loop())

    def stop(self) -> None:
        """Request shutdown; ``run`` returns once connections are closed."""
        self._stop_event.set()

    async def shutdown(self) -> None:
        """Stop periodic tasks and close every connection with a clean-close code."""
        for task in (self._heartbeat_task, self._stats_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        async with self._lock:
            peers = list(self._viewers)
            if self._source is not None:
                peers.append(self._source)

        logger.info(f"Shutting down, closing {len(peers)} connections")
        results = await asyncio.gather(
            *(peer.close(CLOSE_GOING_AWAY, REASON_SHUTDOWN) for peer in peers),
            return_exceptions=True,
        )
        for peer, result in zip(peers, results):
            if isinstance(result, Exception):
                logger.debug(f"Error closing {peer}: {result}")

        # Handlers release on their own; this covers peers whose handler is gone
        for peer in peers:
            await self.release(peer)

    async def run(self) -> None:
        """Serve WebSocket and HTTP status requests until ``stop`` is called."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(_log_loop_exception)

        async with serve(
            self.handle_connection,
            self.config.host,
            self.config.port,
            process_request=make_process_request(self),
            ping_interval=None,  # liveness is driven by _heartbeat_loop
            compression=None,  # lower latency
            max_size=MAX_MESSAGE_SIZE,
        ):
            self.start_background_tasks()
            logger.info(f"HTTP server: http://localhost:{self.config.port}")
            logger.info(f"WebSocket: ws://localhost:{self.config.port}")
            logger.info(
                f"Max viewers: {self.config.max_viewers}, "
                f"heartbeat: {self.config.heartbeat_interval:g}s. Waiting for connections..."
            )
            try:
                await self._stop_event.wait()
            finally:
                await self.shutdown()
        logger.info("Server closed")


def _log_loop_exception(loop, context) -> None:
    logger.error(
        f"Unhandled error: {context.get('message')}", exc_info=context.get("exception")
    )
