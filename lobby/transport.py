from __future__ import annotations
import asyncio
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import websockets

from shared.envelope import BadFrameError, LobbyError, RelayFrame, RelayMessageType, create_frame
from shared.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Frame:
    """Raw pub/sub message as delivered by the transport."""
    topic: str
    sender: str
    data: bytes


FrameHandler = Callable[[Frame], Awaitable[None]]


class PubSubTransport(ABC):
    """
    Best-effort publish/subscribe node.

    Implementations deliver a node's own publications back to its own
    subscriptions, and make no ordering or delivery promises across peers.
    Frames for one subscription are handed to its handler one at a time.
    """

    @abstractmethod
    async def local_peer_id(self) -> str:
        ...

    @abstractmethod
    async def subscribe(self, topic: str, handler: FrameHandler) -> None:
        ...

    @abstractmethod
    async def unsubscribe(self, topic: str) -> None:
        ...

    @abstractmethod
    async def publish(self, topic: str, data: bytes) -> None:
        ...

    async def close(self) -> None:
        return None


class WebSocketTransport(PubSubTransport):
    """
    Pub/sub node backed by a relay (see relay.server) over one WebSocket.

    The relay assigns the peer id in its WELCOME frame; every publish
    comes back as a MESSAGE frame to all subscribers, this node included.
    """

    def __init__(self, relay_url: str, welcome_timeout: float = 5.0) -> None:
        self.relay_url = relay_url
        self.welcome_timeout = welcome_timeout
        self.websocket: Optional[websockets.ClientConnection] = None
        self.peer_id: Optional[str] = None
        self.handlers: Dict[str, FrameHandler] = {}
        self._recv_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the relay and wait for its WELCOME"""
        async with self._connect_lock:
            if self.websocket is not None:
                return
            websocket = await websockets.connect(self.relay_url, ping_interval=15, ping_timeout=45)
            try:
                raw = await asyncio.wait_for(websocket.recv(), timeout=self.welcome_timeout)
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                welcome = RelayFrame.from_json(raw)
                if welcome.type != RelayMessageType.WELCOME or not welcome.from_:
                    raise BadFrameError(f"Expected WELCOME, got {welcome.type.value}")
            except BaseException:
                await websocket.close()
                raise
            self.websocket = websocket
            self.peer_id = welcome.from_
            self._recv_task = asyncio.create_task(self.recv_loop())
            logger.info("Connected to relay %s as peer %s", self.relay_url, self.peer_id)

    async def local_peer_id(self) -> str:
        await self.connect()
        assert self.peer_id is not None
        return self.peer_id

    async def subscribe(self, topic: str, handler: FrameHandler) -> None:
        await self.connect()
        self.handlers[topic] = handler
        await self._send(create_frame(RelayMessageType.SUBSCRIBE, topic=topic))
        logger.debug("Subscribed to %s", topic)

    async def unsubscribe(self, topic: str) -> None:
        if self.handlers.pop(topic, None) is None or self.websocket is None:
            return
        await self._send(create_frame(RelayMessageType.UNSUBSCRIBE, topic=topic))
        logger.debug("Unsubscribed from %s", topic)

    async def publish(self, topic: str, data: bytes) -> None:
        await self.connect()
        await self._send(create_frame(RelayMessageType.PUBLISH, topic=topic, payload=data))

    async def _send(self, frame: RelayFrame) -> None:
        if self.websocket is None:
            raise LobbyError("Transport is not connected")
        await self.websocket.send(frame.to_json())

    async def recv_loop(self) -> None:
        assert self.websocket is not None
        try:
            async for raw in self.websocket:
                try:
                    if isinstance(raw, bytes):
                        raw = raw.decode('utf-8')
                    frame = RelayFrame.from_json(raw)
                    if frame.type == RelayMessageType.ERROR:
                        logger.warning("Relay error: %s", frame.payload_bytes().decode("utf-8", "replace"))
                        continue
                    if frame.type != RelayMessageType.MESSAGE:
                        logger.debug("Ignoring relay frame %s", frame.type.value)
                        continue
                    handler = self.handlers.get(frame.topic or "")
                    if handler:
                        await handler(Frame(topic=frame.topic, sender=frame.from_ or "", data=frame.payload_bytes()))
                except Exception as e:
                    logger.error("Failed to parse/process inbound frame: %s", e)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Relay connection closed: %s", e)

    async def close(self) -> None:
        if self._recv_task is not None:
            self._recv_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._recv_task
            self._recv_task = None
        if self.websocket is not None:
            await self.websocket.close(code=1000)
            self.websocket = None
        self.handlers.clear()
