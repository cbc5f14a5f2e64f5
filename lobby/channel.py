from __future__ import annotations
import asyncio
from contextlib import suppress
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional

from shared.envelope import ChannelStateError, HandshakeTimeout
from shared.log import get_logger, log_frame
from shared.utils import now_ms
from lobby.events import ApplicationMessage, ChannelOpened, HandshakeTimedOut
from lobby.payload import (
    PING,
    PONG,
    FrameKind,
    as_fields,
    classify_frame,
    encrypt,
    open_encrypted,
    prepare_outgoing,
)
from lobby.transport import Frame

if TYPE_CHECKING:
    from lobby.session import LobbySession

logger = get_logger(__name__)


class ChannelState(str, Enum):
    CLOSED = "CLOSED"
    OPENING = "OPENING"
    AWAITING_PONG = "AWAITING_PONG"
    OPEN = "OPEN"


class Heartbeat:
    """
    Publishes PING every `interval` seconds until cancelled.

    With neither `timeout` nor `max_attempts` set it never gives up;
    otherwise `on_expired(attempts)` is awaited once the limit is hit
    and the loop ends.
    """

    def __init__(
        self,
        ping: Callable[[], Awaitable[None]],
        interval: float = 0.5,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        on_expired: Optional[Callable[[int], Awaitable[None]]] = None,
    ) -> None:
        self.ping = ping
        self.interval = interval
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.on_expired = on_expired
        self.attempts = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def wait_stopped(self) -> None:
        if self._task is not None:
            with suppress(asyncio.CancelledError):
                await self._task

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout if self.timeout is not None else None
        while True:
            await asyncio.sleep(self.interval)
            if deadline is not None and loop.time() >= deadline:
                break
            if self.max_attempts is not None and self.attempts >= self.max_attempts:
                break
            try:
                await self.ping()
            except Exception as e:
                logger.warning("Heartbeat ping failed: %s", e)
            self.attempts += 1
        logger.info("Heartbeat gave up after %d pings", self.attempts)
        if self.on_expired is not None:
            await self.on_expired(self.attempts)


class SecureChannel:
    """
    One subscription on the root-identity topic plus the PING/PONG handshake.

    The side that knows its counterpart's username is the initiator: it
    sits in AWAITING_PONG, pinging, until a PONG from another peer arrives.
    The side without a username owns the topic and is OPEN as soon as it
    is subscribed. Both sides answer every foreign PING with PONG.
    """

    def __init__(self, session: "LobbySession") -> None:
        self.session = session
        self.transport = session.transport
        self.topic: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.state = ChannelState.CLOSED
        self.heartbeat: Optional[Heartbeat] = None
        self._opened = asyncio.Event()
        self._failure: Optional[Exception] = None

    async def open(self, username: Optional[str] = None) -> str:
        """Subscribe to the root-identity topic; returns the topic."""
        if self.state != ChannelState.CLOSED:
            raise ChannelStateError(f"Channel is already {self.state.value}")

        topic = await self.session.resolver.resolve(username)
        peer_id = await self.transport.local_peer_id()

        self.topic, self.peer_id = topic, peer_id
        self._opened.clear()
        self._failure = None
        self.state = ChannelState.OPENING
        try:
            await self.transport.subscribe(topic, self._on_frame)
        except Exception:
            self.state = ChannelState.CLOSED
            raise

        if username:
            self.state = ChannelState.AWAITING_PONG
            self._start_heartbeat()
        else:
            self.state = ChannelState.OPEN
            self._opened.set()
        logger.info("Channel on %s is %s", topic, self.state.value)
        return topic

    def _start_heartbeat(self) -> None:
        heartbeat = Heartbeat(
            self._ping,
            self.session.heartbeat_interval,
            timeout=self.session.handshake_timeout,
            max_attempts=self.session.max_ping_attempts,
            on_expired=self._on_handshake_expired,
        )
        self.session.claim_heartbeat(heartbeat)
        self.heartbeat = heartbeat
        heartbeat.start()

    async def _ping(self) -> None:
        assert self.topic is not None
        await self.transport.publish(self.topic, PING.encode())

    async def _on_handshake_expired(self, attempts: int) -> None:
        assert self.topic is not None
        self.session.release_heartbeat(self.heartbeat)
        self.heartbeat = None
        self._failure = HandshakeTimeout(f"No PONG on {self.topic} after {attempts} pings")
        self.state = ChannelState.CLOSED
        try:
            await self.transport.unsubscribe(self.topic)
        except Exception as e:
            logger.warning("Unsubscribe from %s after handshake timeout failed: %s", self.topic, e)
        finally:
            self.session.events.emit(HandshakeTimedOut(topic=self.topic, attempts=attempts))
            self._opened.set()

    async def _on_frame(self, frame: Frame) -> None:
        # pub/sub echoes our own publications back to us
        if frame.sender == self.peer_id:
            return

        classified = classify_frame(frame.data)
        log_frame(logger, "debug", "Got frame", topic=self.topic, peer_id=frame.sender,
                  frame_kind=classified.kind.value)

        if classified.kind == FrameKind.PING:
            assert self.topic is not None
            await self.transport.publish(self.topic, PONG.encode())

        elif classified.kind == FrameKind.PONG:
            self._on_pong()

        elif classified.kind == FrameKind.PLAIN_PAYLOAD:
            self._deliver(frame.sender, as_fields(classified.value), encrypted=False)

        else:
            assert self.topic is not None
            # PBKDF2 is slow enough to stall the loop
            result = await asyncio.to_thread(open_encrypted, classified.text, self.topic)
            if result.ok:
                self._deliver(frame.sender, result.payload, encrypted=True)
            else:
                log_frame(logger, "warning", f"Dropping frame: {result.error}", topic=self.topic,
                          peer_id=frame.sender, frame_kind=classified.kind.value)

    def _on_pong(self) -> None:
        if self.heartbeat is None or not self.heartbeat.active:
            logger.debug("Ignoring PONG with no handshake in progress")
            return
        self.heartbeat.cancel()
        self.session.release_heartbeat(self.heartbeat)
        self.heartbeat = None
        self.state = ChannelState.OPEN
        self._opened.set()
        assert self.topic is not None
        self.session.events.emit(ChannelOpened(topic=self.topic))

    def _deliver(self, sender: str, fields: Any, encrypted: bool) -> None:
        self.session.events.emit(
            ApplicationMessage(payload=fields, from_=sender, timestamp=now_ms(), encrypted=encrypted)
        )

    async def wait_opened(self, timeout: Optional[float] = None) -> str:
        """
        Wait until the channel is OPEN.

        Raises HandshakeTimeout if the heartbeat gave up, ChannelStateError
        if the channel was closed first, asyncio.TimeoutError after `timeout`.
        """
        if self.state == ChannelState.CLOSED and not self._opened.is_set():
            raise ChannelStateError("Channel is not open")
        await asyncio.wait_for(self._opened.wait(), timeout)
        if self._failure is not None:
            raise self._failure
        assert self.topic is not None
        return self.topic

    async def publish(self, payload: Mapping[str, Any]) -> None:
        """Publish a payload as plain JSON, placeholders expanded."""
        data = prepare_outgoing(payload, self.session.signer)
        await self._publish_text(data)

    async def publish_encrypted(self, payload: Mapping[str, Any], passphrase: Optional[str] = None) -> None:
        """
        Publish a payload encrypted under `passphrase`.

        Receivers decrypt with the topic as passphrase, so that is the default.
        """
        data = prepare_outgoing(payload, self.session.signer)
        await self._publish_text(encrypt(data, passphrase or self._require_topic()))

    async def _publish_text(self, text: str) -> None:
        await self.transport.publish(self._require_topic(), text.encode("utf-8"))

    def _require_topic(self) -> str:
        if self.state == ChannelState.CLOSED or self.topic is None:
            raise ChannelStateError("Channel is not open")
        return self.topic

    async def close(self) -> None:
        """Stop the handshake, unsubscribe, and fail any pending wait_opened."""
        if self.state == ChannelState.CLOSED:
            return
        if self.heartbeat is not None:
            self.heartbeat.cancel()
            self.session.release_heartbeat(self.heartbeat)
            await self.heartbeat.wait_stopped()
            self.heartbeat = None
        self.state = ChannelState.CLOSED
        if not self._opened.is_set():
            self._failure = ChannelStateError("Channel closed before it opened")
            self._opened.set()
        assert self.topic is not None
        await self.transport.unsubscribe(self.topic)
        logger.info("Closed channel on %s", self.topic)
