"""
Nexus - Identifier generation and session verification helpers.

Direct sessions are encrypted by the DTLS layer of the data channel. The DTLS
certificate fingerprints travel inside the exchanged session descriptions, so
both peers can derive the same short verification code from them and compare
it out of band (read it aloud, paste it in another app). A mismatch means the
codes were tampered with in transit.

Identifiers are generated from the `secrets` module; hashing uses the
`cryptography` primitives.
"""

import hmac
import re
import secrets
from typing import List

from cryptography.hazmat.primitives import hashes

from .constants import FRIEND_CODE_ALPHABET, FRIEND_CODE_LENGTH

_FINGERPRINT_LINE = re.compile(r"^a=fingerprint:(\S+)\s+([0-9A-Fa-f:]+)\s*$", re.MULTILINE)


def generate_uid() -> str:
    """
    Generate a unique identifier using cryptographically secure random bytes.

    Format: 32 lowercase hexadecimal characters (128 bits).
    """
    return secrets.token_hex(16)


def generate_message_id() -> str:
    """Generate a message identifier (64 bits of randomness, hex encoded)."""
    return secrets.token_hex(8)


def generate_friend_code(length: int = FRIEND_CODE_LENGTH) -> str:
    """
    Generate a short, human-shareable friend code.

    Codes are drawn from upper-case letters and digits. Uniqueness is not
    guaranteed here; the relay server checks for collisions before issuing.
    """
    return "".join(secrets.choice(FRIEND_CODE_ALPHABET) for _ in range(length))


def generate_fingerprint(data: bytes) -> str:
    """Return the SHA-256 digest of ``data`` as 64 hexadecimal characters."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize().hex()


def extract_dtls_fingerprints(sdp: str) -> List[str]:
    """
    Extract the DTLS certificate fingerprints announced in an SDP blob.

    Returns normalized ``"<algorithm> <HEX:HEX:...>"`` strings, deduplicated
    and in order of appearance.
    """
    found: List[str] = []
    for algorithm, value in _FINGERPRINT_LINE.findall(sdp or ""):
        normalized = f"{algorithm.lower()} {value.upper()}"
        if normalized not in found:
            found.append(normalized)
    return found


def session_fingerprint(local_sdp: str, remote_sdp: str, groups: int = 4) -> str:
    """
    Derive a short verification code for a negotiated direct session.

    The code is symmetric: both peers compute the same value because the
    fingerprints of both descriptions are sorted before hashing.

    Args:
        local_sdp: Local session description
        remote_sdp: Remote session description
        groups: Number of four-character groups in the result

    Returns:
        Code such as ``"3F2A 91C0 7DE4 0B55"``, or an empty string when either
        description carries no fingerprint.
    """
    local = extract_dtls_fingerprints(local_sdp)
    remote = extract_dtls_fingerprints(remote_sdp)
    if not local or not remote:
        return ""

    material = "\n".join(sorted(local + remote)).encode("utf-8")
    digest = generate_fingerprint(material).upper()
    return " ".join(digest[i : i + 4] for i in range(0, groups * 4, 4))


def constant_time_equals(left: str, right: str) -> bool:
    """Compare two secrets without leaking timing information."""
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
