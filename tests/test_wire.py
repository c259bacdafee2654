import json
import pytest
from ipyv.wire import DELIM, AuthenticationError, MalformedMessageError, Message, WireCodec, decode, encode

KEY = b"secret-key"


def _msg(**kw)->Message:
    header = dict(msg_id="abc123", session="s1", username="u", msg_type="execute_request", version="5.3", date="2026-01-01T00:00:00Z")
    return Message(header, content=dict(code="println(1)"), **kw)


def test_round_trip():
    msg = _msg(metadata={"k": [1, 2]}, buffers=[b"\x00\x01"], idents=[b"client-1"])
    assert decode(encode(msg, KEY), KEY) == msg


def test_frame_layout():
    frames = encode(_msg(idents=[b"a", b"b"]), KEY)
    assert frames[:3] == [b"a", b"b", DELIM]
    assert json.loads(frames[4])["msg_type"] == "execute_request"
    assert json.loads(frames[5]) == {}
    assert len(frames) == 8


def test_signature_is_lowercase_hex_hmac():
    import hashlib, hmac
    frames = encode(_msg(), KEY)
    expected = hmac.new(KEY, b"".join(frames[2:6]), hashlib.sha256).hexdigest().encode()
    assert frames[1] == expected


@pytest.mark.parametrize("pos", [0, 10, -1])
def test_tampered_signature(pos):
    frames = encode(_msg(), KEY)
    sig = bytearray(frames[1])
    sig[pos] = ord("0") if sig[pos] != ord("0") else ord("1")
    frames[1] = bytes(sig)
    with pytest.raises(AuthenticationError): decode(frames, KEY)


def test_tampered_content():
    frames = encode(_msg(), KEY)
    frames[5] = b'{"code": "evil()"}'
    with pytest.raises(AuthenticationError): decode(frames, KEY)


def test_wrong_key():
    with pytest.raises(AuthenticationError): decode(encode(_msg(), KEY), b"other")


def test_unsigned_rejected_when_key_set():
    frames = encode(_msg(), b"")
    assert frames[1] == b""
    with pytest.raises(AuthenticationError): decode(frames, KEY)


def test_empty_key_skips_verification():
    frames = encode(_msg(), b"")
    frames[1] = b"whatever"
    assert decode(frames, b"").content == {"code": "println(1)"}


def test_replay_rejected_by_same_codec():
    codec = WireCodec(KEY)
    frames = codec.encode(_msg())
    codec.decode(frames)
    with pytest.raises(AuthenticationError, match="duplicate"): codec.decode(frames)


def test_missing_delimiter():
    frames = encode(_msg(), KEY)
    with pytest.raises(MalformedMessageError): decode([f for f in frames if f != DELIM], KEY)


def test_too_few_frames():
    frames = encode(_msg(), KEY)
    with pytest.raises(MalformedMessageError): decode(frames[:4], KEY)


def test_invalid_json_part():
    codec = WireCodec(KEY)
    frames = codec.encode(_msg())
    frames[5] = b"{not json"
    frames[1] = codec.sign(frames[2:6])
    with pytest.raises(MalformedMessageError): codec.decode(frames)


def test_non_object_part():
    codec = WireCodec(KEY)
    frames = codec.encode(_msg())
    frames[5] = b"[1, 2]"
    frames[1] = codec.sign(frames[2:6])
    with pytest.raises(MalformedMessageError): codec.decode(frames)


def test_reply_carries_parent_header_and_idents():
    codec = WireCodec(KEY)
    parent = _msg(idents=[b"router-id"])
    reply = codec.reply(parent, "execute_reply", dict(status="ok"))
    assert reply.parent_header == parent.header
    assert reply.idents == [b"router-id"]
    assert reply.msg_type == "execute_reply"
    assert reply.header["session"] == codec.session_id
    assert reply.msg_id != parent.msg_id
    assert isinstance(reply.header["date"], str)


def test_unsolicited_broadcast_has_empty_parent():
    msg = WireCodec(KEY).broadcast("status", dict(execution_state="starting"))
    assert msg.parent_header == {}
    assert msg.idents == []


@pytest.mark.parametrize("msg_type", [5, ["execute_request"], None, ""])
def test_signed_header_with_bad_msg_type(msg_type):
    codec = WireCodec(KEY)
    msg = _msg()
    msg.header["msg_type"] = msg_type
    with pytest.raises(MalformedMessageError, match="msg_type"): codec.decode(codec.encode(msg))
