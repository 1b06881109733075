"""Tests for resources, nullifier keys and the counter value codec."""
import pytest

from shielded_counter.errors import ProofGenerationError
from shielded_counter.resource import (
    COUNTER_KIND_REF,
    MAX_COUNTER_VALUE,
    NullifierKey,
    Resource,
    decode_counter_value,
    encode_counter_value,
    new_counter_resource,
    next_counter_resource,
)


class TestCounterValueCodec:

    def test_layout_is_little_endian_with_padding(self):
        payload = encode_counter_value(0x0102)
        assert len(payload) == 32
        assert payload[:2] == b"\x02\x01"
        assert payload[16:] == b"\x00" * 16

    @pytest.mark.parametrize("n", [0, 1, 255, 2**64, MAX_COUNTER_VALUE])
    def test_decode_reads_encoded_value(self, n):
        assert decode_counter_value(encode_counter_value(n)) == n

    def test_decode_ignores_trailing_bytes(self):
        payload = (7).to_bytes(16, "little") + b"\xff" * 16
        assert decode_counter_value(payload) == 7

    @pytest.mark.parametrize("bad", [-1, MAX_COUNTER_VALUE + 1])
    def test_out_of_range_rejected(self, bad):
        with pytest.raises(ValueError):
            encode_counter_value(bad)

    def test_non_int_rejected(self):
        with pytest.raises(ValueError):
            encode_counter_value(True)
        with pytest.raises(ValueError):
            encode_counter_value("3")

    def test_short_payload_rejected(self):
        with pytest.raises(ValueError):
            decode_counter_value(b"\x00" * 15)


def test_commitment_is_deterministic_over_fields():
    key = NullifierKey.generate()
    a = new_counter_resource(4, key)
    b = Resource(
        kind_ref=a.kind_ref,
        quantity=a.quantity,
        nonce=a.nonce,
        value=a.value,
        nk_commitment=a.nk_commitment,
    )
    assert a.commitment == b.commitment


def test_fresh_nonce_changes_commitment():
    key = NullifierKey.generate()
    a = new_counter_resource(0, key)
    b = new_counter_resource(0, key)
    assert a.nonce != b.nonce
    assert a.commitment != b.commitment


def test_next_counter_resource():
    key = NullifierKey.generate()
    current = new_counter_resource(41, key)
    nxt = next_counter_resource(current)
    assert nxt.counter_value == 42
    assert nxt.kind_ref == current.kind_ref == COUNTER_KIND_REF
    assert nxt.quantity == current.quantity
    assert nxt.nk_commitment == current.nk_commitment
    assert nxt.nonce != current.nonce
    assert not nxt.ephemeral


def test_counter_at_maximum_has_no_successor():
    current = new_counter_resource(MAX_COUNTER_VALUE, NullifierKey.generate())
    with pytest.raises(ProofGenerationError, match="u128 maximum") as exc:
        next_counter_resource(current)
    assert exc.value.kind == "ProofGenerationError"
    assert exc.value.retryable is False


def test_nullifier_depends_on_key():
    key = NullifierKey.generate()
    other = NullifierKey.generate()
    res = new_counter_resource(0, key)
    assert res.nullifier(key) == res.nullifier(key)
    assert res.nullifier(key) != res.nullifier(other)
    assert res.is_controlled_by(key)
    assert not res.is_controlled_by(other)


def test_nullifier_key_repr_is_redacted():
    key = NullifierKey.generate()
    assert key.secret.hex() not in repr(key)


def test_nullifier_key_length_enforced():
    with pytest.raises(ValueError):
        NullifierKey(b"\x01" * 16)


def test_resource_validation():
    key = NullifierKey.generate()
    with pytest.raises(ValueError):
        Resource(COUNTER_KIND_REF, 1, b"\x00" * 31, encode_counter_value(0), key.commitment)
    with pytest.raises(ValueError):
        Resource(COUNTER_KIND_REF, -1, b"\x00" * 32, encode_counter_value(0), key.commitment)


def test_to_dict_has_no_key_material():
    key = NullifierKey.generate()
    d = new_counter_resource(3, key).to_dict()
    assert d["nk_commitment"] == key.commitment
    assert key.secret.hex() not in str(d)
    assert d["ephemeral"] is False
