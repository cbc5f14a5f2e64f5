from __future__ import annotations
from typing import Any, Mapping, Optional

from shared.crypto.signer import Signer
from shared.log import get_logger
from lobby.channel import Heartbeat, SecureChannel
from lobby.events import EventStream
from lobby.identity import IdentityResolver
from lobby.payload import encrypt, prepare_outgoing
from lobby.transport import PubSubTransport

logger = get_logger(__name__)


class LobbySession:
    """
    Everything one lobby process shares between channel operations:
    the transport, the resolver (and with it the cached root DID), the
    signing key, the event stream and the single heartbeat slot.
    """

    def __init__(
        self,
        transport: PubSubTransport,
        resolver: IdentityResolver,
        signer: Signer,
        events: Optional[EventStream] = None,
        *,
        heartbeat_interval: float = 0.5,
        handshake_timeout: Optional[float] = None,
        max_ping_attempts: Optional[int] = None,
    ) -> None:
        self.transport = transport
        self.resolver = resolver
        self.signer = signer
        self.events = events or EventStream()
        self.heartbeat_interval = heartbeat_interval
        self.handshake_timeout = handshake_timeout
        self.max_ping_attempts = max_ping_attempts
        self.heartbeat: Optional[Heartbeat] = None
        self.channel: Optional[SecureChannel] = None

    def claim_heartbeat(self, heartbeat: Heartbeat) -> None:
        """Make `heartbeat` the live one, cancelling any earlier heartbeat."""
        if self.heartbeat is not None and self.heartbeat is not heartbeat and self.heartbeat.active:
            logger.warning("Cancelling previous heartbeat (%d pings sent)", self.heartbeat.attempts)
            self.heartbeat.cancel()
        self.heartbeat = heartbeat

    def release_heartbeat(self, heartbeat: Optional[Heartbeat]) -> None:
        if heartbeat is not None and self.heartbeat is heartbeat:
            self.heartbeat = None

    async def open_channel(self, username: Optional[str] = None) -> SecureChannel:
        """Open the secure channel, replacing the one opened before (if any)."""
        if self.channel is not None:
            await self.channel.close()
        channel = SecureChannel(self)
        self.channel = channel
        await channel.open(username)
        return channel

    async def publish(self, payload: Mapping[str, Any], username: Optional[str] = None) -> None:
        """Publish on the root-identity topic, whether or not a channel is open."""
        topic = await self.resolver.resolve(username)
        data = prepare_outgoing(payload, self.signer)
        await self.transport.publish(topic, data.encode("utf-8"))

    async def publish_encrypted(self, payload: Mapping[str, Any], passphrase: str,
                                username: Optional[str] = None) -> None:
        topic = await self.resolver.resolve(username)
        data = prepare_outgoing(payload, self.signer)
        await self.transport.publish(topic, encrypt(data, passphrase).encode("utf-8"))

    async def close(self) -> None:
        if self.channel is not None:
            await self.channel.close()
            self.channel = None
        await self.transport.close()
