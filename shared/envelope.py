from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import json

from shared.utils import b64decode, b64encode, now_ms


class LobbyError(Exception):
    """Base class for errors raised by the lobby and relay."""
    pass
class ResolutionError(LobbyError):
    """Raised when a root identity cannot be resolved (directory miss or lookup failure)."""
    pass
class DecryptionError(LobbyError):
    """Raised when an encrypted envelope is malformed or fails authentication."""
    pass
class HandshakeTimeout(LobbyError):
    """Raised when no PONG arrives within the configured handshake timeout."""
    pass
class ChannelStateError(LobbyError):
    """Raised when an operation is not valid in the channel's current state."""
    pass
class BadFrameError(LobbyError):
    """Raised when a relay frame is not valid JSON or misses required fields."""
    pass
class InvalidTokenError(LobbyError):
    """Raised when a capability token cannot be decoded."""
    pass


class RelayMessageType(str, Enum):
    """Frame types spoken between WebSocketTransport and the pub/sub relay."""

    WELCOME = "WELCOME"          # relay -> client, carries the assigned peer id
    SUBSCRIBE = "SUBSCRIBE"      # client -> relay
    UNSUBSCRIBE = "UNSUBSCRIBE"  # client -> relay
    PUBLISH = "PUBLISH"          # client -> relay
    MESSAGE = "MESSAGE"          # relay -> every subscriber, publisher included
    ERROR = "ERROR"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        try:
            cls(value)
            return True
        except ValueError:
            return False


# types that must name a topic
_TOPIC_TYPES = {
    RelayMessageType.SUBSCRIBE,
    RelayMessageType.UNSUBSCRIBE,
    RelayMessageType.PUBLISH,
    RelayMessageType.MESSAGE,
}


@dataclass
class RelayFrame:
    """
    One JSON text frame on the relay websocket:
    {
    "type":  "WELCOME | SUBSCRIBE | UNSUBSCRIBE | PUBLISH | MESSAGE | ERROR",
    "topic": "STRING (root identity), absent for WELCOME/ERROR",
    "from":  "peer id of the publisher (MESSAGE) or the assigned id (WELCOME)",
    "data":  "BASE64 of the raw pub/sub payload bytes",
    "ts":    "INT (unix ms)"
    }
    """
    type: RelayMessageType
    topic: Optional[str] = None
    from_: Optional[str] = None   # renamed to avoid keyword collision
    data: Optional[str] = None
    ts: int = 0

    @classmethod
    def from_json(cls, json_str: str) -> 'RelayFrame':
        """Parse JSON string into RelayFrame, validating structure"""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise BadFrameError(f"Invalid JSON: {e}")
        if not isinstance(data, dict):
            raise BadFrameError("Frame must be a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RelayFrame':
        msg_type = data.get('type')
        if not isinstance(msg_type, str) or not RelayMessageType.is_valid(msg_type):
            raise BadFrameError(f"Unknown frame type: {msg_type!r}")
        msg_type = RelayMessageType(msg_type)

        topic = data.get('topic')
        if msg_type in _TOPIC_TYPES and (not isinstance(topic, str) or not topic):
            raise BadFrameError(f"{msg_type.value} requires a topic")

        payload = data.get('data')
        if msg_type in (RelayMessageType.PUBLISH, RelayMessageType.MESSAGE) and not isinstance(payload, str):
            raise BadFrameError(f"{msg_type.value} requires base64 'data'")

        sender = data.get('from')
        if sender is not None and not isinstance(sender, str):
            raise BadFrameError("'from' must be a string")

        ts = data.get('ts', 0)
        if not isinstance(ts, int):
            raise BadFrameError("'ts' must be an integer")

        return cls(type=msg_type, topic=topic, from_=sender, data=payload, ts=ts)

    def payload_bytes(self) -> bytes:
        """Decode the base64 `data` field."""
        if self.data is None:
            return b""
        try:
            return b64decode(self.data)
        except ValueError as e:
            raise BadFrameError(str(e)) from e

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'type': self.type.value, 'ts': self.ts}
        if self.topic is not None:
            result['topic'] = self.topic
        if self.from_ is not None:
            result['from'] = self.from_
        if self.data is not None:
            result['data'] = self.data
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'), sort_keys=True)


def create_frame(msg_type: RelayMessageType, topic: Optional[str] = None,
                 payload: Optional[bytes] = None, from_id: Optional[str] = None,
                 ts: Optional[int] = None) -> RelayFrame:
    """Helper to create a new relay frame with timestamp (now if not provided)"""
    return RelayFrame(
        type=msg_type,
        topic=topic,
        from_=from_id,
        data=b64encode(payload) if payload is not None else None,
        ts=now_ms() if ts is None else ts,
    )
