"Multipart wire codec: frame layout, HMAC signing and verification of kernel messages."
import logging, threading
from dataclasses import dataclass, field
from hmac import compare_digest
from jupyter_client.jsonutil import json_default
from jupyter_client.session import DELIM, Session

log = logging.getLogger("ipyv.wire")

__all__ = ["DELIM", "WireError", "AuthenticationError", "MalformedMessageError", "Message", "WireCodec", "encode", "decode"]


class WireError(ValueError):
    "Base for messages that are dropped at the transport level."

class AuthenticationError(WireError):
    "Signature missing, mismatched, or replayed."

class MalformedMessageError(WireError):
    "Frame layout or JSON parts are invalid."


@dataclass
class Message:
    header: dict
    parent_header: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    content: dict = field(default_factory=dict)
    buffers: list = field(default_factory=list)
    idents: list = field(default_factory=list)

    @property
    def msg_type(self)->str: return self.header.get("msg_type", "")

    @property
    def msg_id(self)->str: return self.header.get("msg_id", "")

    def short_id(self)->str: return (self.msg_id or "?")[:8]


def _as_bytes(part)->bytes:
    if isinstance(part, bytes): return part
    if isinstance(part, memoryview): return part.tobytes()
    if hasattr(part, "bytes"): return part.bytes  # zmq.Frame
    return bytes(part)


class WireCodec:
    "Encode and decode `Message`s for one connection key; remembers accepted signatures to reject replays."

    def __init__(self, key:bytes|str=b"", signature_scheme:str="hmac-sha256", username:str="ipyv"):
        if isinstance(key, str): key = key.encode()
        self.session = Session(key=key, signature_scheme=signature_scheme, username=username)
        self.lock = threading.Lock()

    @property
    def session_id(self)->str: return self.session.session

    def sign(self, parts: list[bytes])->bytes: return self.session.sign(parts)

    def new_header(self, msg_type:str)->dict:
        "Fresh header for an outbound `msg_type` message, with the date rendered as ISO text."
        header = self.session.msg_header(msg_type)
        header["date"] = json_default(header["date"])
        return header

    def reply(self, parent: Message, msg_type:str, content: dict|None=None, metadata: dict|None=None)->Message:
        "Message caused by `parent`, routed back to the parent's identities."
        return Message(self.new_header(msg_type), dict(parent.header), metadata or {}, content or {}, idents=list(parent.idents))

    def broadcast(self, msg_type:str, content: dict|None=None, parent: Message|None=None)->Message:
        "IOPub message; unsolicited when `parent` is None."
        parent_header = dict(parent.header) if parent is not None else {}
        return Message(self.new_header(msg_type), parent_header, {}, content or {})

    def _verify(self, signature:bytes, parts: list[bytes]):
        if not signature: raise AuthenticationError("unsigned message")
        if not compare_digest(signature, self.sign(parts)): raise AuthenticationError("invalid signature")
        with self.lock:
            if signature in self.session.digest_history: raise AuthenticationError("duplicate signature")
            self.session._add_digest(signature)

    def encode(self, msg: Message)->list[bytes]:
        "Serialize `msg` to frames: idents, delimiter, signature, four JSON parts, buffers."
        parts = [self.session.pack(o) for o in (msg.header, msg.parent_header, msg.metadata, msg.content)]
        return [*(_as_bytes(i) for i in msg.idents), DELIM, self.sign(parts), *parts, *(_as_bytes(b) for b in msg.buffers)]

    def decode(self, frames: list)->Message:
        "Parse and verify `frames`; raises `AuthenticationError` or `MalformedMessageError`."
        frames = [_as_bytes(f) for f in frames]
        try: idents, rest = self.session.feed_identities(frames)
        except ValueError as e: raise MalformedMessageError("missing delimiter frame") from e
        if len(rest) < 5: raise MalformedMessageError(f"expected at least 5 frames after delimiter, got {len(rest)}")
        signature, parts = rest[0], rest[1:5]
        if self.session.auth is not None: self._verify(signature, parts)
        try: header, parent_header, metadata, content = (self.session.unpack(p) for p in parts)
        except ValueError as e: raise MalformedMessageError(f"invalid JSON part: {e}") from e
        for name, obj in (("header", header), ("parent_header", parent_header), ("metadata", metadata), ("content", content)):
            if not isinstance(obj, dict): raise MalformedMessageError(f"{name} is not a JSON object")
        msg_type = header.get("msg_type")
        if not msg_type or not isinstance(msg_type, str): raise MalformedMessageError("header msg_type must be a non-empty string")
        return Message(header, parent_header, metadata, content, buffers=rest[5:], idents=idents)


def encode(msg: Message, key:bytes|str, signature_scheme:str="hmac-sha256")->list[bytes]:
    "Encode `msg` with `key`."
    return WireCodec(key, signature_scheme).encode(msg)

def decode(frames: list, key:bytes|str, signature_scheme:str="hmac-sha256")->Message:
    "Decode `frames` with `key`, without replay history."
    return WireCodec(key, signature_scheme).decode(frames)
