"""
LiveSync - Test Configuration and Fixtures

The channel is replaced by an in-memory transport driven by a scripted fake
server, so every test runs without sockets.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from livesync.config import SessionConfig
from livesync.connection import ConnectionManager, ConnectionState, Identity
from livesync.correlator import RequestCorrelator
from livesync.exceptions import TransportError
from livesync.transport import Frame, Transport


_CLOSED = object()


class FakeTransport(Transport):
    """In-memory transport; the server side is FakeServer"""

    def __init__(self, server: "FakeServer"):
        self.server = server
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, url: str, timeout: float) -> None:
        self.server.open_calls += 1
        if self.server.fail_open:
            raise TransportError(f"Connection refused: {url}")
        self._open = True

    async def send(self, event: str, data: Any = None, request_id: Optional[str] = None) -> None:
        if not self._open:
            raise TransportError("Channel closed")
        frame = {"event": event, "data": data, "request_id": request_id}
        self.sent.append(frame)
        self.server.sent.append(frame)
        self.server.handle(self, frame)
        delay = self.server.send_delay.get(event)
        if delay:
            await asyncio.sleep(delay)

    async def receive(self) -> Frame:
        frame = await self.inbound.get()
        if frame is _CLOSED:
            self._open = False
            raise TransportError("Channel closed by server")
        return frame

    async def close(self) -> None:
        if self._open:
            self._open = False
            self.inbound.put_nowait(_CLOSED)

    def deliver(self, frame: Frame) -> None:
        self.inbound.put_nowait(frame)


class FakeServer:
    """
    Scripted generation service.

    Answers the auth handshake, optionally acks correlated requests and
    answers pings. Tests push arbitrary frames with push().
    """

    def __init__(self):
        self.transports: List[FakeTransport] = []
        self.sent: List[Dict[str, Any]] = []
        self.open_calls = 0
        self.fail_open = False
        self.auth_error: Optional[str] = None
        self.silent_handshake = False
        self.answer_pings = True
        # event -> ack data, or callable(data) -> (data, error)
        self.auto_ack: Dict[str, Any] = {}
        # event -> seconds send() stays suspended after the frame is written
        self.send_delay: Dict[str, float] = {}

    def factory(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]

    def handle(self, transport: FakeTransport, frame: Dict[str, Any]) -> None:
        event = frame["event"]
        if event == "auth":
            if self.silent_handshake:
                return
            if self.auth_error:
                transport.deliver({"event": "auth_error", "data": {"error": self.auth_error}})
            else:
                transport.deliver({"event": "connect", "data": {"sid": f"sid-{len(self.transports)}"}})
        elif event == "ping":
            if self.answer_pings:
                transport.deliver({"event": "pong", "data": frame["data"]})
        elif event in self.auto_ack and frame.get("request_id"):
            reply = self.auto_ack[event]
            error = None
            if callable(reply):
                reply, error = reply(frame["data"])
            ack = {"event": "ack", "request_id": frame["request_id"], "data": reply}
            if error:
                ack["error"] = error
            transport.deliver(ack)

    async def push(self, event: str, data: Any = None, **extra) -> None:
        """Deliver a server frame and let handlers run"""
        self.current.deliver({"event": event, "data": data, **extra})
        await settle()

    async def drop(self) -> None:
        """Server-side close of the current channel"""
        self.current.inbound.put_nowait(_CLOSED)
        await settle()

    def sent_events(self, event: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f["event"] == event]


async def settle(rounds: int = 20) -> None:
    """Let queued callbacks and tasks run"""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def config(tmp_path) -> SessionConfig:
    """Fast timings for tests"""
    return SessionConfig(
        ws_url="ws://test",
        api_base_url="http://test/api",
        config_dir=str(tmp_path),
        connect_timeout=0.5,
        request_timeout=0.2,
        heartbeat_interval=60.0,
        reconnect_base_delay=0.01,
        max_reconnect_attempts=3,
        auth_token="test-token",
    )


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def identity() -> Identity:
    return Identity(user_id="u1", token="test-token", user_name="Test User")


@pytest_asyncio.fixture
async def connection(config, server):
    """Connection manager wired to the fake server (not yet connected)"""
    manager = ConnectionManager(config, transport_factory=server.factory)
    yield manager
    await manager.disconnect()


@pytest_asyncio.fixture
async def connected(connection, identity):
    """Connected connection manager"""
    await connection.connect(identity)
    assert connection.state == ConnectionState.CONNECTED
    return connection


@pytest_asyncio.fixture
async def correlator(connection):
    return RequestCorrelator(connection)
