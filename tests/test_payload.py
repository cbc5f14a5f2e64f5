import json

from shared.crypto.signer import verify_payload
from lobby.payload import (
    FrameKind,
    as_fields,
    classify_frame,
    encrypt,
    open_encrypted,
    prepare_outgoing,
    verify_signed_payload,
)


def test_signature_placeholder_is_filled(signer):
    out = prepare_outgoing({"a": 1, "signature": None}, signer)
    data = json.loads(out)
    assert list(data) == ["a", "signature"]
    assert data["a"] == 1
    assert isinstance(data["signature"], str)
    assert verify_payload(signer.did(), {"a": 1}, data["signature"])


def test_did_placeholder_is_filled(signer):
    data = json.loads(prepare_outgoing({"did": "compute me", "msg": "hi"}, signer))
    assert data == {"did": signer.did(), "msg": "hi"}


def test_signature_covers_did_placeholder(signer):
    data = json.loads(prepare_outgoing({"did": None, "signature": None, "n": 2}, signer))
    assert list(data) == ["did", "signature", "n"]
    assert data["did"] == signer.did()
    assert verify_payload(signer.did(), {"did": None, "n": 2}, data["signature"])
    assert not verify_payload(signer.did(), {"did": signer.did(), "n": 2}, data["signature"])
    assert verify_signed_payload(data)


def test_signature_covers_custom_did_placeholder(signer):
    data = json.loads(prepare_outgoing({"did": "fill me", "signature": "later", "n": 2}, signer))
    assert verify_payload(signer.did(), {"did": "fill me", "n": 2}, data["signature"])
    assert verify_signed_payload(data, did_placeholder="fill me")
    assert not verify_signed_payload(data)


def test_no_placeholders_adds_nothing(signer):
    out = prepare_outgoing({"a": 1, "b": None}, signer)
    assert json.loads(out) == {"a": 1, "b": None}


def test_tampered_signed_payload_fails_verification(signer):
    data = json.loads(prepare_outgoing({"did": None, "signature": None, "n": 2}, signer))
    data["n"] = 3
    assert not verify_signed_payload(data)


def test_verify_without_identity_fails():
    assert not verify_signed_payload({"a": 1, "signature": "AAAA"})
    assert not verify_signed_payload({"a": 1, "did": "did:key:zNope", "signature": "AAAA"})


def test_classify_control_frames():
    assert classify_frame(b"PING").kind == FrameKind.PING
    assert classify_frame(b"PONG").kind == FrameKind.PONG
    # only the exact words are control frames
    assert classify_frame(b"PING ").kind == FrameKind.ENCRYPTED_PAYLOAD
    assert classify_frame(b"ping").kind == FrameKind.ENCRYPTED_PAYLOAD


def test_classify_json_as_plain_payload():
    classified = classify_frame(b'{"type":"hello"}')
    assert classified.kind == FrameKind.PLAIN_PAYLOAD
    assert classified.value == {"type": "hello"}


def test_classify_non_json_as_encrypted():
    envelope = encrypt("{}", "pw")
    classified = classify_frame(envelope.encode())
    assert classified.kind == FrameKind.ENCRYPTED_PAYLOAD
    assert classified.text == envelope


def test_non_object_json_is_wrapped():
    assert as_fields([1, 2]) == {"data": [1, 2]}
    assert as_fields({"a": 1}) == {"a": 1}


def test_open_encrypted():
    ok = open_encrypted(encrypt('{"x":1}', "topic"), "topic")
    assert ok.ok and ok.payload == {"x": 1}

    wrong = open_encrypted(encrypt('{"x":1}', "topic"), "other")
    assert not wrong.ok and wrong.payload is None

    not_json = open_encrypted(encrypt("plain words", "topic"), "topic")
    assert not not_json.ok
