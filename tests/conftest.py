"""
Shared pytest fixtures for sharedrop tests.

Provides:
- Loopback transport: in-memory stand-in for WebRTC that pairs transports
  through a shared registry, so peers can connect inside one event loop
- Mailbox store and settings fixtures
- Client factory with automatic teardown
- wait_until helper for asynchronous conditions
"""

import asyncio
import uuid
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from sharedrop.client import ShareDropClient
from sharedrop.config import Settings
from sharedrop.errors import ChannelNotReady
from sharedrop.mailbox import MemoryMailboxStore
from sharedrop.transport import Transport, TransportFactory

SDP_PREFIX = "loopback:"


# ============================================================================
# Loopback transport
# ============================================================================

class LoopbackNetwork:
    """Registry through which loopback transports find each other"""

    def __init__(self):
        self.transports: Dict[str, "LoopbackTransport"] = {}
        self.created: List["LoopbackTransport"] = []
        self.gather_candidates = True

    def factory(self, owner_id: str) -> "LoopbackTransportFactory":
        return LoopbackTransportFactory(self, owner_id)

    def find(self, owner_id: str, peer_id: str) -> "LoopbackTransport":
        """Most recent transport ``owner_id`` created towards ``peer_id``"""
        for transport in reversed(self.created):
            if transport.owner_id == owner_id and transport.peer_id == peer_id:
                return transport
        raise LookupError(f"{owner_id} has no transport to {peer_id}")


class LoopbackTransportFactory(TransportFactory):
    def __init__(self, network: LoopbackNetwork, owner_id: str):
        self.network = network
        self.owner_id = owner_id

    def create(self, peer_id: str) -> "LoopbackTransport":
        transport = LoopbackTransport(peer_id, self.network, self.owner_id)
        self.network.created.append(transport)
        return transport


class LoopbackTransport(Transport):
    def __init__(self, peer_id: str, network: LoopbackNetwork, owner_id: str):
        super().__init__(peer_id)
        self.network = network
        self.owner_id = owner_id
        self.token = uuid.uuid4().hex
        self.remote: "LoopbackTransport" = None
        self.remote_description = None
        self.remote_candidates: List[Dict[str, Any]] = []
        self.sent: List[str] = []
        self.closed = False
        # Number of sends that succeed before send() starts raising
        self.fail_after = None
        self._open = False
        network.transports[self.token] = self

    def _description(self, type: str) -> Dict[str, Any]:
        return {"type": type, "sdp": f"{SDP_PREFIX}{self.token}"}

    def _lookup(self, description: Dict[str, Any], expected_type: str) -> "LoopbackTransport":
        sdp = description.get("sdp", "")
        if description.get("type") != expected_type or not sdp.startswith(SDP_PREFIX):
            raise ValueError(f"not a loopback {expected_type}: {description!r}")
        peer = self.network.transports.get(sdp[len(SDP_PREFIX):])
        if peer is None:
            raise ValueError(f"unknown loopback {expected_type}")
        return peer

    def _gather(self) -> None:
        if self.network.gather_candidates:
            candidate = {
                "candidate": f"candidate:{self.token[:8]} 1 udp 2122260223 127.0.0.1 9 typ host",
                "sdpMid": "0",
                "sdpMLineIndex": 0,
            }
            asyncio.get_running_loop().call_soon(self._emit_candidate, candidate)

    async def create_offer(self) -> Dict[str, Any]:
        self._gather()
        return self._description("offer")

    async def create_answer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        self.remote = self._lookup(offer, "offer")
        self.remote_description = offer
        self._gather()
        return self._description("answer")

    async def apply_answer(self, answer: Dict[str, Any]) -> None:
        answerer = self._lookup(answer, "answer")
        if answerer.remote is not self:
            raise ValueError("answer belongs to another offer")
        self.remote = answerer
        self.remote_description = answer
        loop = asyncio.get_running_loop()
        loop.call_soon(self._connect)
        loop.call_soon(answerer._connect)

    def _connect(self) -> None:
        if self.closed:
            return
        self._open = True
        self._emit_channel_open()
        self._emit_state("connected")

    async def add_remote_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.remote_description is None:
            raise RuntimeError("remote description not set")
        self.remote_candidates.append(candidate)

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    @property
    def channel_open(self) -> bool:
        return self._open and not self.closed

    async def send(self, data: str) -> None:
        if not self.channel_open:
            raise ChannelNotReady(self.peer_id)
        if self.fail_after is not None:
            if self.fail_after <= 0:
                raise ConnectionError("loopback send failed")
            self.fail_after -= 1
        self.sent.append(data)
        asyncio.get_running_loop().call_soon(self.remote._receive, data)
        await asyncio.sleep(0)

    def _receive(self, data: str) -> None:
        if self.channel_open:
            self._emit_message(data)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._open = False
        self._emit_state("closed")
        if self.remote is not None and not self.remote.closed:
            asyncio.get_running_loop().call_soon(self.remote._remote_closed)

    def _remote_closed(self) -> None:
        if self.closed:
            return
        self._open = False
        # Browsers report both; consumers must react only once
        self._emit_state("disconnected")
        self._emit_state("failed")


async def link(a: LoopbackTransport, b: LoopbackTransport) -> None:
    """Connect two loopback transports directly, without signaling"""
    offer = await a.create_offer()
    answer = await b.create_answer(offer)
    await a.apply_answer(answer)
    for _ in range(3):
        await asyncio.sleep(0)


async def _wait_until(predicate, timeout: float = 3.0, interval: float = 0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def network():
    return LoopbackNetwork()


@pytest.fixture
def settings(tmp_path):
    return Settings(poll_interval=0.01, download_dir=tmp_path / "downloads")


@pytest.fixture
def store():
    return MemoryMailboxStore()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def linked():
    return link


@pytest_asyncio.fixture
async def make_client(store, network, settings):
    """Create ShareDropClients sharing one mailbox and loopback network"""
    clients = []
    yield _ClientFactory(store, network, settings, clients)

    for client in clients:
        await client.close()


class _ClientFactory:
    def __init__(self, store, network, settings, clients):
        self.store = store
        self.network = network
        self.settings = settings
        self.clients = clients

    def __call__(self, name=None) -> ShareDropClient:
        factory = _DeferredFactory(self.network)
        client = ShareDropClient(store=self.store, transport_factory=factory, settings=self.settings, name=name)
        factory.owner_id = client.local_id
        self.clients.append(client)
        return client


class _DeferredFactory(TransportFactory):
    """Binds to the client's local id once the client has generated it"""

    def __init__(self, network: LoopbackNetwork):
        self.network = network
        self.owner_id = None

    def create(self, peer_id: str) -> LoopbackTransport:
        return self.network.factory(self.owner_id).create(peer_id)
