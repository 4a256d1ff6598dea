"""
Pytest configuration and fixtures for SparkChat tests.

Provides common fixtures and test utilities for unit and scenario tests,
including an in-memory broker that routes publishes between sessions on
the same event loop.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from sparkchat.config import ServerConfig, SessionSettings
from sparkchat.crypto import KeyPair, generate_key_pair
from sparkchat.errors import ErrorCode, RaceAbort, TransportError
from sparkchat.session import ChatSession, Identity, build_identity
from sparkchat.transport import ConnectOptions, Transport


class InMemoryBroker:
    """Routes publishes to every subscribed FakeTransport, like a broker would."""

    def __init__(self):
        self.subscriptions: Dict["FakeTransport", Set[str]] = {}
        self.clients: Dict[str, "FakeTransport"] = {}
        self.published: List[Tuple[str, bytes]] = []

    def route(self, topic: str, payload: bytes) -> None:
        self.published.append((topic, payload))
        for transport, topics in list(self.subscriptions.items()):
            if topic in topics:
                transport.deliver(topic, payload)

    def published_on(self, topic: str) -> List[bytes]:
        return [payload for t, payload in self.published if t == topic]


class FakeTransport(Transport):
    """Transport that talks to an InMemoryBroker."""

    def __init__(self, broker: InMemoryBroker, auto_connect: bool = True):
        super().__init__()
        self.broker = broker
        self.auto_connect = auto_connect
        self.connect_calls: List[Tuple[str, str, Optional[ConnectOptions]]] = []
        self.closed = False
        self._connected = False

    async def connect(self, broker_address, client_id, options=None):
        self.connect_calls.append((broker_address, client_id, options))
        self.broker.clients[client_id] = self
        self.broker.subscriptions[self] = set()
        if self.auto_connect:
            asyncio.get_running_loop().call_soon(self.simulate_connect)

    async def subscribe(self, topics):
        if self.closed or self not in self.broker.subscriptions:
            raise TransportError(ErrorCode.E302_SUBSCRIBE_FAILED, "not connected")
        self.broker.subscriptions[self].update(topics)

    def publish(self, topic, payload, qos=0, callback=None):
        if self.closed:
            raise RaceAbort()
        self.broker.route(topic, payload)
        if callback:
            callback(None)

    async def disconnect(self):
        self.closed = True
        self._connected = False
        self.broker.subscriptions.pop(self, None)

    def is_connected(self):
        return self._connected

    def deliver(self, topic: str, payload: bytes) -> None:
        asyncio.get_running_loop().call_soon(self._deliver_now, topic, payload)

    def _deliver_now(self, topic: str, payload: bytes) -> None:
        if not self.closed:
            self._emit(self.on_message_callback, topic, payload)

    def simulate_connect(self) -> None:
        if not self.closed:
            self._connected = True
            self._emit(self.on_connect_callback)

    def simulate_drop(self) -> None:
        """Connection lost; the library starts retrying on its own."""
        self._connected = False
        self._emit(self.on_offline_callback)
        self._emit(self.on_reconnecting_callback)

    def simulate_error(self, error: Exception) -> None:
        self._connected = False
        self._emit(self.on_error_callback, error)


async def _settle(*sessions: ChatSession, rounds: int = 20) -> None:
    """Let published envelopes propagate until every session is idle."""
    for _ in range(rounds):
        await asyncio.sleep(0.005)
        for session in sessions:
            await session.wait_until_idle()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="sparkchat_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def key_pair() -> KeyPair:
    return generate_key_pair()


@pytest.fixture
def peer_key_pair() -> KeyPair:
    return generate_key_pair()


@pytest.fixture
def identity() -> Identity:
    return build_identity("alice")


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def settle():
    """Async helper: await settle(session, ...) to drain all traffic."""
    return _settle


@pytest.fixture
def server_config() -> ServerConfig:
    return ServerConfig(broker_url="ws://broker.test", port=8080, topic_prefix="test-room")


@pytest_asyncio.fixture
async def make_session(broker, server_config):
    """
    Factory for sessions attached to the in-memory broker.

    Usage: session = await make_session("alice")
    Sessions are connected and settled unless connect=False; all are closed
    at teardown.
    """
    sessions: List[ChatSession] = []

    async def factory(
        name: str,
        connect: bool = True,
        settings: Optional[SessionSettings] = None,
        clock=None,
        identity: Optional[Identity] = None,
    ) -> ChatSession:
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        session = ChatSession(
            identity or build_identity(name),
            server_config,
            transport_factory=lambda: FakeTransport(broker),
            settings=settings,
            **kwargs,
        )
        sessions.append(session)
        if connect:
            await session.connect()
            await _settle(*sessions)
        return session

    yield factory

    for session in sessions:
        await session.close()


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "scenario: mark test as a multi-session scenario test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
