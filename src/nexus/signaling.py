"""
Nexus - Signaling codec for manually exchanged connection codes.

A direct session has no signaling server: each side copies an opaque code and
pastes it into the other side. A code is a ``SignalingEnvelope`` serialized
as compact JSON, zlib-compressed and encoded with the URL-safe base64
alphabet (padding stripped), so it is plain ASCII and survives being pasted
into a text field. Whitespace inside a pasted code is ignored.
"""

import base64
import binascii
import json
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from .constants import MAX_SIGNALING_CODE_SIZE
from .errors import MalformedCodeError


class EnvelopeKind(str, Enum):
    """Which half of the handshake an envelope carries."""

    OFFER = "OFFER"
    ANSWER = "ANSWER"


@dataclass(frozen=True)
class SessionDescription:
    """A session description as produced by the transport (``offer``/``answer`` + SDP)."""

    type: str
    sdp: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "sdp": self.sdp}


@dataclass(frozen=True)
class SignalingEnvelope:
    """Envelope exchanged out of band; always built after gathering completed."""

    kind: EnvelopeKind
    description: SessionDescription

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "description": self.description.to_dict()}


_EXPECTED_TYPE = {EnvelopeKind.OFFER: "offer", EnvelopeKind.ANSWER: "answer"}


class SignalingCodec:
    """Serializes envelopes to opaque, copy-pasteable strings and back."""

    @staticmethod
    def encode(envelope: SignalingEnvelope) -> str:
        """Encode an envelope into an ASCII connection code."""
        payload = json.dumps(envelope.to_dict(), separators=(",", ":")).encode("utf-8")
        compressed = zlib.compress(payload, 9)
        return base64.urlsafe_b64encode(compressed).decode("ascii").rstrip("=")

    @staticmethod
    def decode(code: Any) -> SignalingEnvelope:
        """
        Decode a connection code.

        Raises:
            MalformedCodeError: For any input that is not a well-formed code
        """
        if not isinstance(code, str):
            raise MalformedCodeError(details={"reason": "code must be a string"})

        compact = "".join(code.split())
        if not compact:
            raise MalformedCodeError(details={"reason": "empty code"})

        try:
            raw = base64.urlsafe_b64decode(compact + "=" * (-len(compact) % 4))
        except (binascii.Error, ValueError) as e:
            raise MalformedCodeError(details={"reason": f"not base64: {e}"}) from None

        try:
            inflater = zlib.decompressobj()
            payload = inflater.decompress(raw, MAX_SIGNALING_CODE_SIZE)
            if inflater.unconsumed_tail:
                raise MalformedCodeError(details={"reason": "code too large"})
            if not inflater.eof:
                raise MalformedCodeError(details={"reason": "truncated code"})
            data = json.loads(payload.decode("utf-8"))
        except MalformedCodeError:
            raise
        except (zlib.error, UnicodeDecodeError, ValueError, RecursionError) as e:
            raise MalformedCodeError(details={"reason": str(e)}) from None

        return SignalingCodec._envelope_from_dict(data)

    @staticmethod
    def _envelope_from_dict(data: Any) -> SignalingEnvelope:
        if not isinstance(data, dict):
            raise MalformedCodeError(details={"reason": "envelope must be an object"})

        try:
            kind = EnvelopeKind(data.get("kind"))
        except ValueError:
            raise MalformedCodeError(details={"reason": "unknown envelope kind"}) from None

        description = data.get("description")
        if not isinstance(description, dict):
            raise MalformedCodeError(details={"reason": "missing description"})

        desc_type = description.get("type")
        sdp = description.get("sdp")
        if not isinstance(desc_type, str) or not isinstance(sdp, str) or not sdp:
            raise MalformedCodeError(details={"reason": "invalid description"})
        if desc_type != _EXPECTED_TYPE[kind]:
            raise MalformedCodeError(
                details={"reason": f"{kind.value} envelope carries a {desc_type!r} description"}
            )

        return SignalingEnvelope(kind=kind, description=SessionDescription(type=desc_type, sdp=sdp))
