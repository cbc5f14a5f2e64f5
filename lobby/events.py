from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type, TypeVar, Union


@dataclass(frozen=True)
class UsernameAvailability:
    available: bool
    valid: bool


@dataclass(frozen=True)
class AccountCreated:
    username: str


@dataclass(frozen=True)
class AccountCreationFailed:
    message: str


@dataclass(frozen=True)
class ChannelOpened:
    topic: str


@dataclass(frozen=True)
class HandshakeTimedOut:
    topic: str
    attempts: int


@dataclass(frozen=True)
class ApplicationMessage:
    """Decoded payload plus the sender's peer id and the receive time (unix ms)."""
    payload: Dict[str, Any]
    from_: str
    timestamp: int
    encrypted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        # flat shape handed to UIs: payload fields, then `from` and `timestamp`
        return {**self.payload, "from": self.from_, "timestamp": self.timestamp}


@dataclass(frozen=True)
class UcanIssued:
    token: str


Event = Union[
    UsernameAvailability,
    AccountCreated,
    AccountCreationFailed,
    ChannelOpened,
    HandshakeTimedOut,
    ApplicationMessage,
    UcanIssued,
]

E = TypeVar("E")


@dataclass
class EventStream:
    """
    Ordered queue of caller-facing events.

    Producers call `emit`; a UI or test consumes with `get` / `next_of`.
    """
    queue: "asyncio.Queue[Event]" = field(default_factory=asyncio.Queue)

    def emit(self, event: Event) -> None:
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Event:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    async def next_of(self, kind: Type[E], timeout: Optional[float] = None) -> E:
        """Skip events until one of type `kind` arrives."""
        async def _wait() -> E:
            while True:
                event = await self.queue.get()
                if isinstance(event, kind):
                    return event
        if timeout is None:
            return await _wait()
        return await asyncio.wait_for(_wait(), timeout)

    def drain(self) -> List[Event]:
        """Pop everything currently queued without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events
