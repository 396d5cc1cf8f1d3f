"""Pytest configuration and shared fixtures."""

import asyncio
import logging
from typing import Any, List, Optional

import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.protocol import State

from backpack_poller.services.poller.clients.backpack_ws import BackpackWSClient
from backpack_poller.services.poller.config.settings import BackpackConfig, ReconnectConfig


CLIENT_LOGGER = "backpack_poller.services.poller.clients.backpack_ws"

_CLEAN_CLOSE = object()
_DROPPED = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.state = State.OPEN
        self.sent: List[str] = []
        self.close_calls: List[tuple] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.fail_close = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def feed(self, message: Any):
        """Deliver an inbound frame."""
        self._incoming.put_nowait(message)

    def drop(self, code: int = 1006, reason: str = ""):
        """Simulate the far end going away without a clean close."""
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_DROPPED)

    def fail(self, error: Exception):
        """Make the read loop raise ``error`` while the socket stays open."""
        self._incoming.put_nowait(error)

    async def send(self, data: str):
        if self.state is not State.OPEN:
            raise ConnectionClosedError(None, None)
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = ""):
        self.close_calls.append((code, reason))
        if self.fail_close:
            raise RuntimeError("close failed")
        if self.state is State.CLOSED:
            return
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLEAN_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLEAN_CLOSE:
            raise StopAsyncIteration
        if item is _DROPPED:
            raise ConnectionClosedError(None, None)
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Records connection attempts and hands out FakeWebSocket instances."""

    def __init__(self):
        self.calls: List[str] = []
        self.kwargs: List[dict] = []
        self.sockets: List[FakeWebSocket] = []
        self.failures: List[Exception] = []
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, url: str, **kwargs):
        self.calls.append(url)
        self.kwargs.append(kwargs)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        websocket = FakeWebSocket()
        self.sockets.append(websocket)
        return websocket


class FakeBlob:
    """Blob-like payload whose bytes are only available asynchronously."""

    def __init__(self, data: bytes, ready: Optional[asyncio.Event] = None):
        self.data = data
        self.ready = ready

    async def read(self) -> bytes:
        if self.ready is not None:
            await self.ready.wait()
        return self.data


@pytest.fixture
def backpack_config() -> BackpackConfig:
    """Backpack config pointing at an address that is never dialed."""
    return BackpackConfig(
        ws_url="wss://ws.backpack.test/",
        channels=["bookTicker.SOL_USDC"]
    )


@pytest.fixture
def slow_reconnect() -> ReconnectConfig:
    """Production backoff; timers stay pending for the length of a test."""
    return ReconnectConfig()


@pytest.fixture
def fast_reconnect() -> ReconnectConfig:
    """Millisecond backoff without jitter so reconnects fire quickly."""
    return ReconnectConfig(base_delay_ms=1, max_delay_ms=4, jitter_ms=0)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
async def make_client(backpack_config, slow_reconnect, connector):
    """Factory for clients wired to the fake connector; tears them down afterwards."""
    clients: List[BackpackWSClient] = []

    def _make(reconnect_config: Optional[ReconnectConfig] = None) -> BackpackWSClient:
        client = BackpackWSClient(
            backpack_config,
            reconnect_config or slow_reconnect,
            connector=connector
        )
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.stop()
        tasks = list(client._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@pytest.fixture
def wait_until():
    """Poll a predicate on the running loop until it holds or the timeout expires."""

    async def _wait_until(predicate, timeout: float = 1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.001)

    return _wait_until


@pytest.fixture
def client_logs(caplog):
    """Capture the client's log lines down to DEBUG."""
    caplog.set_level(logging.DEBUG, logger=CLIENT_LOGGER)
    return caplog


@pytest.fixture
def restore_root_logger(monkeypatch):
    """Give setup_logging() a scratch handler list and put the root logger back afterwards."""
    root = logging.getLogger()
    level = root.level
    monkeypatch.setattr(root, "handlers", [])
    yield root
    for handler in root.handlers:
        handler.close()
    root.setLevel(level)


@pytest.fixture
def make_blob():
    return FakeBlob
