import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shared.crypto.keys import Ed25519Keypair
from shared.crypto.signer import Ed25519PayloadSigner
from lobby.directory import NameDirectory, did_record_name
from lobby.identity import IdentityResolver
from lobby.session import LobbySession
from lobby.storage import LocalStorage
from lobby.transport import Frame, FrameHandler, PubSubTransport

DOMAIN = "fissionuser.net"


class MemoryNode(PubSubTransport):
    """In-process pub/sub node; publications reach every subscriber, self included."""

    def __init__(self, bus: "MemoryPubSub", peer_id: str) -> None:
        self.bus = bus
        self.peer_id = peer_id
        self.handlers: Dict[str, FrameHandler] = {}
        self.published: List[Tuple[str, bytes]] = []
        self.inbox: "asyncio.Queue[Frame]" = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None

    async def local_peer_id(self) -> str:
        return self.peer_id

    async def subscribe(self, topic: str, handler: FrameHandler) -> None:
        self.handlers[topic] = handler
        if self._pump is None:
            self._pump = asyncio.create_task(self._run())

    async def unsubscribe(self, topic: str) -> None:
        self.handlers.pop(topic, None)

    async def publish(self, topic: str, data: bytes) -> None:
        self.published.append((topic, data))
        for node in self.bus.nodes:
            if topic in node.handlers:
                node.inbox.put_nowait(Frame(topic=topic, sender=self.peer_id, data=data))

    async def deliver(self, sender: str, data: bytes, topic: Optional[str] = None) -> None:
        """Hand a frame straight to the subscription handler."""
        topic = topic or next(iter(self.handlers))
        await self.handlers[topic](Frame(topic=topic, sender=sender, data=data))

    def sent(self, data: bytes) -> int:
        return sum(1 for _, d in self.published if d == data)

    async def _run(self) -> None:
        while True:
            frame = await self.inbox.get()
            handler = self.handlers.get(frame.topic)
            if handler:
                await handler(frame)

    async def close(self) -> None:
        if self._pump is not None:
            self._pump.cancel()
            self._pump = None


class MemoryPubSub:
    def __init__(self) -> None:
        self.nodes: List[MemoryNode] = []

    def node(self, peer_id: str) -> MemoryNode:
        node = MemoryNode(self, peer_id)
        self.nodes.append(node)
        return node


async def wait_until(predicate, timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while loop.time() < end:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


@pytest.fixture
def bus():
    return MemoryPubSub()


@pytest.fixture
def directory(tmp_path):
    return NameDirectory(tmp_path / "directory.json")


@pytest.fixture
def signer():
    return Ed25519PayloadSigner(Ed25519Keypair.generate())


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "home")


@pytest.fixture
def register(directory):
    """Point a username at a DID in the shared directory."""
    def _register(username: str, did: str) -> None:
        directory.set(did_record_name(username, DOMAIN), did)
    return _register


@pytest.fixture
def make_session(tmp_path, bus, directory):
    """One device: own storage, own key, shared directory and bus."""
    def _make(name: str, **kwargs) -> LobbySession:
        storage = LocalStorage(tmp_path / name)
        device_signer = Ed25519PayloadSigner(Ed25519Keypair.generate())
        resolver = IdentityResolver(directory, storage, device_signer, DOMAIN)
        kwargs.setdefault("heartbeat_interval", 0.02)
        return LobbySession(bus.node(f"peer-{name}"), resolver, device_signer, **kwargs)
    return _make
