"""Shared fixtures for the relay test suite.

Connections are in-memory fakes that mimic the parts of
``websockets.asyncio.server.ServerConnection`` the hub uses, so the hub can be
exercised without sockets.
"""

import asyncio
import json
from typing import Optional

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from fft_relay.config import RelayConfig
from fft_relay.hub import RelayHub

BOT_USER_AGENT = "MusicBot/1.0"
BROWSER_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64)"

_CLOSED = object()


class FakeTransport:
    def __init__(self, websocket: "FakeWebSocket"):
        self.websocket = websocket
        self.aborted = False

    def abort(self):
        self.aborted = True
        self.websocket._mark_closed(1006, "")


class FakeRequest:
    def __init__(self, headers: Headers):
        self.headers = headers
        self.path = "/"


class FakeWebSocket:
    """Mock server-side WebSocket connection."""

    def __init__(
        self,
        user_agent: Optional[str] = BROWSER_USER_AGENT,
        remote_address=("127.0.0.1", 50000),
        forwarded_for: Optional[str] = None,
    ):
        headers = Headers()
        if user_agent is not None:
            headers["User-Agent"] = user_agent
        if forwarded_for is not None:
            headers["X-Forwarded-For"] = forwarded_for
        self.request = FakeRequest(headers)
        self.remote_address = remote_address
        self.transport = FakeTransport(self)

        self.state = State.OPEN
        self.sent = []
        self.pings = []
        self.close_code = None
        self.close_reason = None

        # Set to simulate a broken transport
        self.fail_sends = False
        # Set to an unset Event to simulate a slow viewer
        self.send_gate: Optional[asyncio.Event] = None

        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, message):
        if self.state is not State.OPEN:
            raise ConnectionClosed(None, None)
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.fail_sends:
            raise ConnectionResetError("Connection reset by peer")
        self.sent.append(message)

    async def ping(self):
        if self.state is not State.OPEN:
            raise ConnectionClosed(None, None)
        waiter = asyncio.get_running_loop().create_future()
        self.pings.append(waiter)
        return waiter

    def pong(self):
        """Answer every outstanding ping."""
        for waiter in self.pings:
            if not waiter.done():
                waiter.set_result(0.001)

    async def close(self, code=1000, reason=""):
        self._mark_closed(code, reason)

    def feed(self, message):
        """Queue a message as if the remote peer had sent it."""
        self._inbox.put_nowait(message)

    def disconnect(self):
        """Simulate the remote peer closing the connection."""
        self._mark_closed(1000, "")

    def _mark_closed(self, code, reason):
        if self.state is State.CLOSED:
            return
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(_CLOSED)

    def sent_json(self):
        return [json.loads(m) for m in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


async def _settle(delay: float = 0.02):
    """Let spawned send/probe tasks run to completion."""
    await asyncio.sleep(delay)


@pytest.fixture
def config():
    return RelayConfig(max_viewers=3, heartbeat_interval=30.0, stats_interval=60.0)


@pytest.fixture
def hub(config):
    return RelayHub(config)


@pytest.fixture
def settle():
    return _settle


@pytest.fixture
def make_ws():
    return FakeWebSocket


@pytest.fixture
def connect(hub):
    """Start the hub's handler for a fake connection and let it settle."""
    tasks = []

    async def _connect(websocket):
        task = asyncio.create_task(hub.handle_connection(websocket))
        tasks.append(task)
        await _settle()
        return task

    yield _connect

    for task in tasks:
        task.cancel()


@pytest.fixture
def frame():
    """A well-formed 64-band frame as sent by the bot."""
    frequencies = [i * 255 // 63 for i in range(64)]
    return json.dumps({"type": "fft", "frequencies": frequencies, "timestamp": 1000})
