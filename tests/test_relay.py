import asyncio
import json
from contextlib import suppress

import pytest
import pytest_asyncio
import websockets

from shared.crypto.keys import Ed25519Keypair
from shared.crypto.signer import Ed25519PayloadSigner
from shared.envelope import BadFrameError, RelayFrame, RelayMessageType, create_frame
from shared.utils import b64encode
from lobby.channel import ChannelState
from lobby.events import ApplicationMessage, ChannelOpened
from lobby.identity import IdentityResolver
from lobby.session import LobbySession
from lobby.storage import LocalStorage
from lobby.transport import WebSocketTransport
from relay.server import PubSubRelay, RelayLink

from conftest import DOMAIN, wait_until


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent_messages: list[str] = []

    async def send(self, data: str) -> None:
        self.sent_messages.append(data)

    def frames(self) -> list[dict]:
        return [json.loads(m) for m in self.sent_messages]


@pytest_asyncio.fixture
async def relay_url():
    relay = PubSubRelay(host="127.0.0.1", port=0)
    task = asyncio.create_task(relay.start_server())
    await asyncio.wait_for(relay.ready.wait(), timeout=5)
    yield f"ws://127.0.0.1:{relay.bound_port}"
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


# Frame validation
# ----------------

@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    '{"type": "NOPE"}',
    '{"type": "SUBSCRIBE"}',
    '{"type": "PUBLISH", "topic": "t"}',
    '{"type": "PUBLISH", "topic": "t", "data": "AA==", "ts": "yesterday"}',
    '{"type": "MESSAGE", "topic": "t", "data": "AA==", "from": 7}',
])
def test_invalid_frames_are_rejected(raw):
    with pytest.raises(BadFrameError):
        RelayFrame.from_json(raw)


def test_frame_json_round_trip():
    frame = create_frame(RelayMessageType.PUBLISH, topic="did:key:z6MkTopic", payload=b"PING", ts=5)
    parsed = RelayFrame.from_json(frame.to_json())
    assert parsed == frame
    assert parsed.payload_bytes() == b"PING"
    assert json.loads(frame.to_json()) == {"type": "PUBLISH", "topic": "did:key:z6MkTopic",
                                           "data": b64encode(b"PING"), "ts": 5}


def test_bad_base64_payload():
    frame = RelayFrame(type=RelayMessageType.MESSAGE, topic="t", data="@@@")
    with pytest.raises(BadFrameError):
        frame.payload_bytes()


# Relay routing
# -------------

@pytest.mark.asyncio
async def test_publish_reaches_subscribers_and_publisher():
    relay = PubSubRelay()
    alice, bob, carol = DummyWebSocket(), DummyWebSocket(), DummyWebSocket()
    links = {name: RelayLink(ws, name) for name, ws in (("alice", alice), ("bob", bob), ("carol", carol))}
    relay.links.update(links)

    subscribe = create_frame(RelayMessageType.SUBSCRIBE, topic="room").to_json()
    await relay.process_message(links["alice"], subscribe)
    await relay.process_message(links["bob"], subscribe)

    publish = create_frame(RelayMessageType.PUBLISH, topic="room", payload=b"hello").to_json()
    await relay.process_message(links["alice"], publish)

    for ws in (alice, bob):
        (message,) = ws.frames()
        assert message["type"] == "MESSAGE"
        assert message["from"] == "alice"
        assert message["topic"] == "room"
        assert message["data"] == b64encode(b"hello")
    assert carol.sent_messages == []
    assert relay.get_status() == {"peers": 3, "topics": {"room": 2}}


@pytest.mark.asyncio
async def test_unsubscribe_and_cleanup():
    relay = PubSubRelay()
    link = RelayLink(DummyWebSocket(), "alice")
    relay.links["alice"] = link
    await relay.process_message(link, create_frame(RelayMessageType.SUBSCRIBE, topic="a").to_json())
    await relay.process_message(link, create_frame(RelayMessageType.SUBSCRIBE, topic="b").to_json())
    await relay.process_message(link, create_frame(RelayMessageType.UNSUBSCRIBE, topic="a").to_json())

    assert relay.subscriptions == {"b": {"alice"}}
    assert await relay.broadcast("x", "a", b"gone") == 0

    relay.cleanup_connection(link)
    assert relay.subscriptions == {}
    assert relay.links == {}


@pytest.mark.asyncio
async def test_client_cannot_send_relay_frames():
    relay = PubSubRelay()
    link = RelayLink(DummyWebSocket(), "alice")
    with pytest.raises(BadFrameError):
        await relay.process_message(link, create_frame(RelayMessageType.WELCOME, from_id="alice").to_json())


# Over the network
# ----------------

@pytest.mark.asyncio
async def test_welcome_and_error_frames(relay_url):
    async with websockets.connect(relay_url) as ws:
        welcome = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
        assert welcome["type"] == "WELCOME"
        assert welcome["from"]

        await ws.send("this is not a frame")
        error = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
        assert error["type"] == "ERROR"


@pytest.mark.asyncio
async def test_transport_receives_its_own_publications(relay_url):
    transport = WebSocketTransport(relay_url)
    received = []

    async def handler(frame):
        received.append(frame)

    peer_id = await transport.local_peer_id()
    await transport.subscribe("did:key:z6MkTopic", handler)
    await transport.publish("did:key:z6MkTopic", b"PING")

    assert await wait_until(lambda: len(received) == 1)
    assert received[0].sender == peer_id
    assert received[0].data == b"PING"
    await transport.close()


@pytest.mark.asyncio
async def test_handshake_over_relay(relay_url, tmp_path, directory, register):
    def device(name):
        signer = Ed25519PayloadSigner(Ed25519Keypair.generate())
        resolver = IdentityResolver(directory, LocalStorage(tmp_path / name), signer, DOMAIN)
        return LobbySession(WebSocketTransport(relay_url), resolver, signer, heartbeat_interval=0.05)

    owner, initiator = device("owner"), device("initiator")
    register("alice", owner.signer.did())

    owner_side = await owner.open_channel()
    initiator_side = await initiator.open_channel("alice")
    assert await initiator_side.wait_opened(timeout=5) == owner.signer.did()
    assert await initiator.events.next_of(ChannelOpened, timeout=1) == ChannelOpened(topic=owner.signer.did())
    assert initiator_side.state == ChannelState.OPEN

    await owner_side.publish_encrypted({"welcome": True})
    message = await initiator.events.next_of(ApplicationMessage, timeout=5)
    assert message.payload == {"welcome": True}
    assert message.encrypted
    assert message.from_ == owner.transport.peer_id

    await initiator.close()
    await owner.close()
