"""Shielded resources, spending keys and the counter value codec.

A resource is an opaque, content-addressed record. Its commitment is a
domain-separated SHA-256 over the canonical encoding of every field, so two
resources with identical fields share a commitment. Transitions therefore draw
a fresh random nonce every time a resource is created.

Hashing:
- commitment    = SHA256("resource.commitment.v1" || 0x00 || canonical_json(fields))
- nullifier     = SHA256("resource.nullifier.v1" || 0x00 || nk_secret || commitment)
- nk_commitment = SHA256("resource.nk.v1" || 0x00 || nk_secret)

The counter value lives in the first 16 bytes of ``value`` as a little-endian
u128. The remaining bytes are zero padding.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass, field, replace
from typing import Any, Dict

from shielded_counter.errors import ProofGenerationError


NONCE_BYTES = 32
NK_SECRET_BYTES = 32
VALUE_BYTES = 32
COUNTER_VALUE_BYTES = 16
MAX_COUNTER_VALUE = (1 << (8 * COUNTER_VALUE_BYTES)) - 1

COUNTER_LOGIC_ID = "counter.logic.v1"


def _tagged_sha256(tag: str, *parts: bytes) -> str:
    h = hashlib.sha256(tag.encode("ascii") + b"\x00")
    for part in parts:
        h.update(part)
    return h.hexdigest()


def kind_ref_for(logic_id: str) -> str:
    """Kind reference for resources governed by the named logic."""
    return _tagged_sha256("resource.kind.v1", logic_id.encode("utf-8"))


COUNTER_KIND_REF = kind_ref_for(COUNTER_LOGIC_ID)


# ---------------------------------------------------------------------------
# Counter value codec
# ---------------------------------------------------------------------------


def encode_counter_value(n: int) -> bytes:
    """Encode a counter value as a 32-byte payload (16-byte LE u128 + padding)."""
    if isinstance(n, bool) or not isinstance(n, int):
        raise ValueError(f"counter value must be an int, got {type(n).__name__}")
    if n < 0 or n > MAX_COUNTER_VALUE:
        raise ValueError(f"counter value {n} outside u128 range")
    return n.to_bytes(COUNTER_VALUE_BYTES, "little") + b"\x00" * (VALUE_BYTES - COUNTER_VALUE_BYTES)


def decode_counter_value(value: bytes) -> int:
    """Read the u128 counter value from the first 16 bytes of a payload."""
    if len(value) < COUNTER_VALUE_BYTES:
        raise ValueError(
            f"counter payload must be at least {COUNTER_VALUE_BYTES} bytes, got {len(value)}"
        )
    return int.from_bytes(value[:COUNTER_VALUE_BYTES], "little")


# ---------------------------------------------------------------------------
# Spending key material
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NullifierKey:
    """
    Spending key material bound to a resource at creation time.

    The secret is required to derive the resource's nullifier and to
    authorize consuming it. It never leaves process memory: the repr is
    redacted and there is no serialization helper.
    """
    secret: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.secret) != NK_SECRET_BYTES:
            raise ValueError(f"nullifier key must be {NK_SECRET_BYTES} bytes")

    @classmethod
    def generate(cls) -> "NullifierKey":
        return cls(secrets.token_bytes(NK_SECRET_BYTES))

    @property
    def commitment(self) -> str:
        """Public commitment to the key, stored in the resources it controls."""
        return _tagged_sha256("resource.nk.v1", self.secret)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Resource:
    """
    One version of a shielded record.

    Attributes:
        kind_ref: Hex reference to the logic that governs the resource
        quantity: Amount carried by the resource (balance accounting)
        nonce: Caller-chosen uniqueness nonce
        value: Arbitrary payload; counters keep their value in bytes 0..16
        nk_commitment: Commitment to the spending key that may consume it
        ephemeral: Ephemeral resources need no membership proof when consumed
    """
    kind_ref: str
    quantity: int
    nonce: bytes
    value: bytes
    nk_commitment: str
    ephemeral: bool = False

    def __post_init__(self):
        if self.quantity < 0:
            raise ValueError("quantity must be non-negative")
        if len(self.nonce) != NONCE_BYTES:
            raise ValueError(f"nonce must be {NONCE_BYTES} bytes")

    def canonical_bytes(self) -> bytes:
        content = {
            "ephemeral": self.ephemeral,
            "kind_ref": self.kind_ref,
            "nk_commitment": self.nk_commitment,
            "nonce": self.nonce.hex(),
            "quantity": self.quantity,
            "value": self.value.hex(),
        }
        return json.dumps(content, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @property
    def commitment(self) -> str:
        return _tagged_sha256("resource.commitment.v1", self.canonical_bytes())

    def nullifier(self, key: NullifierKey) -> str:
        return _tagged_sha256(
            "resource.nullifier.v1", key.secret, bytes.fromhex(self.commitment)
        )

    def is_controlled_by(self, key: NullifierKey) -> bool:
        return key.commitment == self.nk_commitment

    @property
    def counter_value(self) -> int:
        return decode_counter_value(self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind_ref": self.kind_ref,
            "quantity": self.quantity,
            "nonce": self.nonce.hex(),
            "value": self.value.hex(),
            "nk_commitment": self.nk_commitment,
            "ephemeral": self.ephemeral,
            "commitment": self.commitment,
        }


def new_counter_resource(
    counter_value: int,
    key: NullifierKey,
    ephemeral: bool = False,
    kind_ref: str = COUNTER_KIND_REF,
    quantity: int = 1,
) -> Resource:
    """Create a counter resource with a fresh random nonce."""
    return Resource(
        kind_ref=kind_ref,
        quantity=quantity,
        nonce=secrets.token_bytes(NONCE_BYTES),
        value=encode_counter_value(counter_value),
        nk_commitment=key.commitment,
        ephemeral=ephemeral,
    )


def next_counter_resource(current: Resource) -> Resource:
    """The successor of a counter: value + 1, same owner, fresh nonce."""
    value = current.counter_value
    if value >= MAX_COUNTER_VALUE:
        raise ProofGenerationError(f"counter value {value} is the u128 maximum and has no successor")
    return replace(
        current,
        nonce=secrets.token_bytes(NONCE_BYTES),
        value=encode_counter_value(value + 1),
        ephemeral=False,
    )
