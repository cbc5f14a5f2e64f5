#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import uuid
from typing import Dict, Optional, Set, Any

import typer
import websockets

from shared.envelope import BadFrameError, RelayFrame, RelayMessageType, create_frame
from shared.log import configure_root_logging, get_logger

logger = get_logger(__name__)


class RelayLink:
    """One connected pub/sub peer"""

    def __init__(self, websocket: websockets.ServerConnection, peer_id: str):
        self.websocket = websocket
        self.peer_id = peer_id
        self.topics: Set[str] = set()

    async def send_frame(self, frame: RelayFrame) -> None:
        try:
            await self.websocket.send(frame.to_json())
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"Connection to {self.peer_id} closed while sending {frame.type.value}")

    async def send_error(self, detail: str) -> None:
        await self.send_frame(create_frame(RelayMessageType.ERROR, payload=detail.encode("utf-8")))


class PubSubRelay:
    """
    Best-effort publish/subscribe hub.

    Every PUBLISH on a topic is forwarded as MESSAGE to all current
    subscribers of that topic, the publisher included. Nothing is stored
    or retried; peers that are not subscribed at publish time miss it.
    """

    def __init__(self, host: str = "localhost", port: int = 8766):
        self.host = host
        self.port = port
        self.links: Dict[str, RelayLink] = {}
        self.subscriptions: Dict[str, Set[str]] = {}
        self.ready = asyncio.Event()
        self.bound_port: Optional[int] = None

    async def start_server(self) -> None:
        """Start the WebSocket server and run until cancelled"""
        logger.info(f"Starting relay on {self.host}:{self.port}")
        async with websockets.serve(
            self.handle_connection,
            self.host,
            self.port,
            ping_interval=15,
            ping_timeout=45,
        ) as server:
            self.bound_port = next(iter(server.sockets)).getsockname()[1]
            self.ready.set()
            logger.info(f"Relay listening on ws://{self.host}:{self.bound_port}")
            try:
                await asyncio.Future()  # Run forever
            finally:
                self.ready.clear()

    async def handle_connection(self, websocket: websockets.ServerConnection) -> None:
        peer_id = str(uuid.uuid4())
        link = RelayLink(websocket, peer_id)
        self.links[peer_id] = link
        logger.info(f"Peer {peer_id} connected from {websocket.remote_address}")

        try:
            await link.send_frame(create_frame(RelayMessageType.WELCOME, from_id=peer_id))
            async for message in websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                try:
                    await self.process_message(link, message)
                except BadFrameError as e:
                    logger.warning(f"Bad frame from {peer_id}: {e}")
                    await link.send_error(str(e))
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Peer {peer_id} closed")
        finally:
            self.cleanup_connection(link)

    async def process_message(self, link: RelayLink, message: str) -> None:
        frame = RelayFrame.from_json(message)
        topic = frame.topic or ""

        if frame.type == RelayMessageType.SUBSCRIBE:
            link.topics.add(topic)
            self.subscriptions.setdefault(topic, set()).add(link.peer_id)
            logger.debug(f"{link.peer_id} subscribed to {topic}")

        elif frame.type == RelayMessageType.UNSUBSCRIBE:
            self._unsubscribe(link, topic)

        elif frame.type == RelayMessageType.PUBLISH:
            await self.broadcast(link.peer_id, topic, frame.payload_bytes())

        else:
            raise BadFrameError(f"Unexpected frame type from client: {frame.type.value}")

    async def broadcast(self, sender: str, topic: str, data: bytes) -> int:
        """Deliver to every subscriber of `topic`; returns the number of recipients"""
        delivered = create_frame(RelayMessageType.MESSAGE, topic=topic, payload=data, from_id=sender)
        recipients = [self.links[p] for p in self.subscriptions.get(topic, set()) if p in self.links]
        for link in recipients:
            await link.send_frame(delivered)
        logger.debug(f"Relayed {len(data)} bytes on {topic} to {len(recipients)} peers")
        return len(recipients)

    def _unsubscribe(self, link: RelayLink, topic: str) -> None:
        link.topics.discard(topic)
        peers = self.subscriptions.get(topic)
        if peers is not None:
            peers.discard(link.peer_id)
            if not peers:
                del self.subscriptions[topic]

    def cleanup_connection(self, link: RelayLink) -> None:
        for topic in list(link.topics):
            self._unsubscribe(link, topic)
        self.links.pop(link.peer_id, None)
        logger.info(f"Peer {link.peer_id} removed")

    def get_status(self) -> Dict[str, Any]:
        return {
            "peers": len(self.links),
            "topics": {topic: len(peers) for topic, peers in self.subscriptions.items()},
        }


app = typer.Typer(help="Pub/sub relay for the lobby secure channel")


@app.command()
def serve(
    host: str = typer.Option("localhost", help="Interface to listen on"),
    port: int = typer.Option(8766, help="TCP port to listen on"),
    log_level: str = typer.Option("INFO", help="Root log level"),
):
    """Run the relay until interrupted."""
    configure_root_logging(log_level)
    relay = PubSubRelay(host=host, port=port)
    try:
        asyncio.run(relay.start_server())
    except KeyboardInterrupt:
        logger.info("Relay stopped")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
