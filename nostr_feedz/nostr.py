"""Nostr key handling, event signing and NIP-98 HTTP authentication."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from bech32 import bech32_decode, bech32_encode, convertbits
from coincurve import PrivateKey, PublicKeyXOnly

logger = logging.getLogger(__name__)

NPUB_PREFIX = "npub"
NSEC_PREFIX = "nsec"
HTTP_AUTH_KIND = 27235
AUTH_SCHEME = "Nostr"

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")

Event = Dict[str, Any]


class NoSigningMethodError(RuntimeError):
    """Raised when neither a local key nor a delegated signer is available."""

    def __init__(self, message: str = "No signing method available"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Key encoding
# ---------------------------------------------------------------------------


def is_valid_hex_key(value: str) -> bool:
    return isinstance(value, str) and bool(_HEX_KEY_RE.match(value))


def _decode_bech32_key(encoded: str, prefix: str) -> Optional[str]:
    if not isinstance(encoded, str) or not encoded.startswith(prefix + "1"):
        return None
    hrp, words = bech32_decode(encoded)
    if hrp != prefix or words is None:
        return None
    data = convertbits(words, 5, 8, False)
    if data is None or len(data) != 32:
        return None
    return bytes(data).hex()


def _encode_bech32_key(key_hex: str, prefix: str) -> str:
    if not is_valid_hex_key(key_hex):
        raise ValueError(f"Expected a 32-byte hex key, got {key_hex!r}")
    words = convertbits(bytes.fromhex(key_hex), 8, 5, True)
    return bech32_encode(prefix, words)


def decode_npub(npub: str) -> Optional[str]:
    """Return the hex public key for ``npub``, or ``None`` if malformed."""
    return _decode_bech32_key(npub, NPUB_PREFIX)


def decode_nsec(nsec: str) -> Optional[str]:
    """Return the hex private key for ``nsec``, or ``None`` if malformed."""
    return _decode_bech32_key(nsec, NSEC_PREFIX)


def encode_npub(pubkey_hex: str) -> str:
    return _encode_bech32_key(pubkey_hex.lower(), NPUB_PREFIX)


def encode_nsec(privkey_hex: str) -> str:
    return _encode_bech32_key(privkey_hex.lower(), NSEC_PREFIX)


def is_valid_npub(npub: str) -> bool:
    return decode_npub(npub) is not None


def is_valid_nsec(nsec: str) -> bool:
    return decode_nsec(nsec) is not None


def normalize_public_key(value: str) -> Optional[str]:
    """Return the canonical (lower-case hex) form of an npub or hex key."""
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if is_valid_hex_key(candidate):
        return candidate.lower()
    return decode_npub(candidate.lower())


def public_key_from_private(privkey_hex: str) -> str:
    """Derive the x-only public key for a hex private key."""
    compressed = PrivateKey(bytes.fromhex(privkey_hex)).public_key.format(
        compressed=True
    )
    return compressed[1:].hex()


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def serialize_event(event: Event) -> bytes:
    """Serialize the fields covered by the event id, in protocol order."""
    payload = [
        0,
        event["pubkey"],
        event["created_at"],
        event["kind"],
        event["tags"],
        event["content"],
    ]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def event_id(event: Event) -> str:
    return hashlib.sha256(serialize_event(event)).hexdigest()


def sign_event(event: Event, privkey_hex: str) -> Event:
    """Return a copy of ``event`` carrying ``id`` and a Schnorr ``sig``."""
    digest = event_id(event)
    signature = PrivateKey(bytes.fromhex(privkey_hex)).sign_schnorr(
        bytes.fromhex(digest)
    )
    signed = dict(event)
    signed["id"] = digest
    signed["sig"] = signature.hex()
    return signed


def verify_event(event: Event) -> bool:
    """Check the id and signature of a signed event."""
    try:
        digest = event_id(event)
        if digest != event.get("id"):
            return False
        public_key = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return bool(
            public_key.verify(bytes.fromhex(event["sig"]), bytes.fromhex(digest))
        )
    except (KeyError, TypeError, ValueError):
        return False


def tag_value(event: Event, name: str) -> Optional[str]:
    for tag in event.get("tags") or []:
        if isinstance(tag, list) and len(tag) > 1 and tag[0] == name:
            return tag[1]
    return None


# ---------------------------------------------------------------------------
# Signers
# ---------------------------------------------------------------------------


class DelegatedSigner(Protocol):
    """Signing agent holding the key outside this process (NIP-07/NIP-46)."""

    def get_public_key(self) -> str:
        ...

    def sign_event(self, event: Event) -> Event:
        ...


class SignerKind(str, Enum):
    LOCAL = "local"
    DELEGATED = "delegated"


@dataclass(frozen=True)
class Signer:
    """Either a locally held private key or a handle to a delegated signer."""

    kind: SignerKind
    private_key_hex: Optional[str] = None
    handle: Optional[DelegatedSigner] = None

    @classmethod
    def local(cls, private_key_hex: str) -> "Signer":
        return cls(kind=SignerKind.LOCAL, private_key_hex=private_key_hex)

    @classmethod
    def delegated(cls, handle: DelegatedSigner) -> "Signer":
        return cls(kind=SignerKind.DELEGATED, handle=handle)

    def get_public_key(self) -> str:
        if self.kind is SignerKind.LOCAL:
            return public_key_from_private(self.private_key_hex)
        return self.handle.get_public_key()

    def sign(self, event: Event) -> Event:
        if self.kind is SignerKind.LOCAL:
            return sign_event(event, self.private_key_hex)
        return self.handle.sign_event(event)


_delegated_signer: Optional[DelegatedSigner] = None


def register_delegated_signer(handle: Optional[DelegatedSigner]) -> None:
    global _delegated_signer
    _delegated_signer = handle


def clear_delegated_signer() -> None:
    register_delegated_signer(None)


def get_delegated_signer() -> Optional[DelegatedSigner]:
    return _delegated_signer


def resolve_signer(private_key_hex: Optional[str] = None) -> Signer:
    """Prefer the local key, fall back to the registered delegated signer."""
    if private_key_hex:
        return Signer.local(private_key_hex)
    handle = get_delegated_signer()
    if handle is not None:
        return Signer.delegated(handle)
    raise NoSigningMethodError()


# ---------------------------------------------------------------------------
# NIP-98 HTTP auth
# ---------------------------------------------------------------------------


def build_auth_event(
    url: str,
    method: str,
    pubkey: str,
    private_key_hex: Optional[str] = None,
    *,
    now: Optional[int] = None,
) -> Event:
    """Create and sign a single-use HTTP auth event for ``method url``."""
    unsigned: Event = {
        "pubkey": pubkey,
        "created_at": int(now if now is not None else time.time()),
        "kind": HTTP_AUTH_KIND,
        "tags": [["u", url], ["method", method.upper()]],
        "content": "",
    }
    return resolve_signer(private_key_hex).sign(unsigned)


def encode_auth_header(event: Event) -> str:
    encoded = base64.b64encode(json.dumps(event).encode("utf-8")).decode("ascii")
    return f"{AUTH_SCHEME} {encoded}"


def generate_auth_header(
    url: str, method: str, pubkey: str, private_key_hex: Optional[str] = None
) -> str:
    return encode_auth_header(build_auth_event(url, method, pubkey, private_key_hex))


def verify_auth_header(
    header: str,
    url: str,
    method: str,
    *,
    max_age: int = 60,
    now: Optional[int] = None,
) -> Optional[str]:
    """Return the authenticated pubkey for a NIP-98 header, or ``None``."""
    if not header or not header.startswith(AUTH_SCHEME + " "):
        return None
    try:
        raw = base64.b64decode(header[len(AUTH_SCHEME) + 1 :], validate=True)
        event = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError):
        logger.debug("Rejecting auth header that is not base64 JSON")
        return None

    if not isinstance(event, dict) or event.get("kind") != HTTP_AUTH_KIND:
        return None

    current = int(now if now is not None else time.time())
    created_at = event.get("created_at")
    if not isinstance(created_at, int) or abs(current - created_at) > max_age:
        logger.debug("Rejecting stale auth event created at %s", created_at)
        return None
    if tag_value(event, "u") != url:
        return None
    if (tag_value(event, "method") or "").upper() != method.upper():
        return None
    if not verify_event(event):
        return None
    return event["pubkey"]
