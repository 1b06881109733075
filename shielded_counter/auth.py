"""Request authorization.

Accounts are ``did:key`` identifiers for Ed25519 public keys. A request is
authorized when its signature is a valid Ed25519 signature (raw, base64url)
by the account's key over the exact signing message for the action.

Profile:
- `did:key:z...` with the ed25519-pub multicodec prefix (0xed01)
- signature = base64url(Ed25519.sign(utf8(message))), no padding
- message text comes from ``build_signing_message``
"""

from __future__ import annotations

import base64
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from shielded_counter.errors import AuthError
from shielded_counter.observability import CounterLayer, get_logger

logger = get_logger("auth", CounterLayer.AUTH)

APP_NAME = "Anoma Counter dApp"
ED25519_MULTICODEC = bytes([0xED, 0x01])

B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii")
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = len(s_bytes) - len(s_bytes.lstrip(B58_ALPHABET[:1]))
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = len(b) - len(b.lstrip(b"\x00"))
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def signature_bytes(signature: str) -> bytes:
    """
    Decode a base64url signature, accepting only its canonical spelling.

    The decoder drops characters outside the alphabet and the unused low bits
    of the final character, so several strings can decode to one signature.
    """
    try:
        sig = b64url_decode(signature)
    except ValueError as e:
        raise AuthError("signature is not base64url") from e
    if b64url_encode(sig) != signature:
        raise AuthError("signature is not canonical base64url")
    return sig


# ---------------------------------------------------------------------------
# did:key (Ed25519)
# ---------------------------------------------------------------------------


def did_key_from_public_key(pub: Ed25519PublicKey) -> str:
    raw = pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return "did:key:z" + b58encode(ED25519_MULTICODEC + raw)


def public_key_from_did_key(did: str) -> Ed25519PublicKey:
    """Parse a `did:key` (Ed25519) and return a cryptography public key."""
    if not isinstance(did, str) or not did.startswith("did:key:z"):
        raise ValueError("Only did:key:z... supported")
    decoded = b58decode(did[len("did:key:z"):].split("#", 1)[0])
    if not decoded.startswith(ED25519_MULTICODEC):
        raise ValueError("did:key multicodec prefix not recognized for Ed25519")
    raw = decoded[len(ED25519_MULTICODEC):]
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def build_signing_message(action: str, account: str, timestamp: str) -> str:
    """The text an account signs to authorize ``action``."""
    return (
        "Anoma Counter Authorization\n"
        "\n"
        f"Action: {action.upper()}\n"
        f"Account: {account}\n"
        f"Timestamp: {timestamp}\n"
        f"App: {APP_NAME}\n"
        "\n"
        "By signing this message, I authorize the execution of this action on the Anoma network."
    )


class AccountSigner:
    """Holds an account's Ed25519 private key and signs messages for it."""

    def __init__(self, private_key: Optional[Ed25519PrivateKey] = None):
        self._private_key = private_key or Ed25519PrivateKey.generate()
        self.account_id = did_key_from_public_key(self._private_key.public_key())

    def __repr__(self) -> str:
        return f"AccountSigner(account_id={self.account_id!r})"

    def sign(self, message: str) -> str:
        return b64url_encode(self._private_key.sign(message.encode("utf-8")))

    def authorize(self, action: str, timestamp: Optional[str] = None) -> dict:
        """Build a signed request body for ``action``."""
        timestamp = timestamp or datetime.now(timezone.utc).isoformat()
        message = build_signing_message(action, self.account_id, timestamp)
        return {
            "action": action,
            "user_account": self.account_id,
            "signature": self.sign(message),
            "signed_message": message,
            "timestamp": timestamp,
        }


class AuthorizationChecker(Protocol):
    def verify(self, account_id: str, message: str, signature: str) -> None:
        """Return None when authorized; raise AuthError otherwise."""
        ...


class Ed25519AuthorizationChecker:
    """Verifies Ed25519 signatures by ``did:key`` accounts."""

    def verify(self, account_id: str, message: str, signature: str) -> None:
        try:
            public_key = public_key_from_did_key(account_id)
        except ValueError as e:
            raise AuthError(f"account is not an Ed25519 did:key: {e}") from e
        sig = signature_bytes(signature)
        try:
            public_key.verify(sig, message.encode("utf-8"))
        except InvalidSignature as e:
            logger.warning("Signature verification failed", account_id=account_id)
            raise AuthError("signature does not verify for account") from e


class ReplayRegistry:
    """
    Registry of signatures already accepted.

    Signatures are keyed by their decoded bytes. Entries older than
    ``max_age_seconds`` are dropped; requests that old are rejected by
    timestamp before reaching the registry.
    """

    def __init__(self, max_age_seconds: float = 300.0):
        self._seen: Dict[bytes, datetime] = {}
        self._lock = threading.Lock()
        self._max_age = timedelta(seconds=max_age_seconds)

    def check_and_register(self, signature: str) -> bool:
        """Register ``signature``; False if it was already used."""
        key = signature_bytes(signature)
        with self._lock:
            self._cleanup()
            if key in self._seen:
                return False
            self._seen[key] = datetime.now(timezone.utc)
            return True

    def _cleanup(self) -> None:
        cutoff = datetime.now(timezone.utc) - self._max_age
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for key in expired:
            del self._seen[key]
