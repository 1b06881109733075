"""
Tests for the proof infrastructure: field arithmetic, balance commitments,
circuit registry and the local proof backend.
"""
import dataclasses

import pytest

from shielded_counter.resource import (
    NullifierKey,
    kind_ref_for,
    new_counter_resource,
    next_counter_resource,
)
from shielded_counter.zkp import (
    BLINDING_GENERATOR,
    COMPLIANCE_CIRCUIT_ID,
    COUNTER_LOGIC_CIRCUIT_ID,
    DELTA_CIRCUIT_ID,
    CircuitRegistry,
    FieldElement,
    LocalProofBackend,
    Proof,
    ProofError,
    ProofSystem,
    Witness,
    balance_commitment,
    build_compliance_circuit,
    build_delta_circuit,
    counter_rule_violation,
    create_standard_registry,
    sum_field,
    verification_key_for,
)


class TestFieldElement:

    def test_arithmetic_wraps_modulus(self):
        p = FieldElement.FIELD_MODULUS
        a = FieldElement.from_int(p - 1)
        assert (a + FieldElement.from_int(2)).to_int() == 1
        assert (FieldElement.zero() - FieldElement.from_int(1)).to_int() == p - 1
        assert (-FieldElement.from_int(5) + FieldElement.from_int(5)) == FieldElement.zero()

    def test_multiplication(self):
        assert FieldElement.from_int(6) * FieldElement.from_int(7) == FieldElement.from_int(42)

    def test_random_in_range(self):
        for _ in range(10):
            assert FieldElement.random().to_int() < FieldElement.FIELD_MODULUS

    def test_rejects_non_hex(self):
        with pytest.raises(ValueError):
            FieldElement("xyz")

    def test_sum_field(self):
        elems = [FieldElement.from_int(i) for i in range(5)]
        assert sum_field(elems) == FieldElement.from_int(10)
        assert sum_field([]) == FieldElement.zero()


def test_same_kind_same_quantity_commits_to_blinding_only():
    kind = kind_ref_for("counter.logic.v1")
    rcv = FieldElement.random()
    cv = balance_commitment(kind, 1, kind, 1, rcv)
    assert cv == rcv * BLINDING_GENERATOR


def test_different_kinds_do_not_balance():
    rcv = FieldElement.random()
    cv = balance_commitment(kind_ref_for("a"), 1, kind_ref_for("b"), 1, rcv)
    assert cv != rcv * BLINDING_GENERATOR


def test_standard_registry_has_three_circuits():
    registry = create_standard_registry()
    for circuit_id in (COMPLIANCE_CIRCUIT_ID, COUNTER_LOGIC_CIRCUIT_ID, DELTA_CIRCUIT_ID):
        circuit = registry.get_circuit_by_id(circuit_id)
        vk = registry.get_verification_key(circuit_id)
        assert circuit.proof_system == vk.proof_system == ProofSystem.LOCAL
        assert vk.public_input_count == len(circuit.public_input_names)
    assert registry.get_circuit_by_id("unknown.v1") is None
    assert registry.get_verification_key("unknown.v1") is None


def test_registry_rejects_mismatched_verification_key():
    registry = CircuitRegistry()
    delta = build_delta_circuit()
    with pytest.raises(ValueError, match="cannot verify"):
        registry.register(delta, verification_key_for(build_compliance_circuit()))
    with pytest.raises(ValueError, match="public input count"):
        registry.register(delta, dataclasses.replace(verification_key_for(delta), public_input_count=5))


class TestCounterRule:

    def setup_method(self):
        self.key = NullifierKey.generate()

    def test_increment_by_one_holds(self):
        consumed = new_counter_resource(3, self.key)
        assert counter_rule_violation(consumed, next_counter_resource(consumed)) is None

    def test_ephemeral_padding_creates_zero(self):
        pad = new_counter_resource(0, self.key, ephemeral=True)
        assert counter_rule_violation(pad, new_counter_resource(0, self.key)) is None
        assert "expected 0" in counter_rule_violation(pad, new_counter_resource(1, self.key))

    @pytest.mark.parametrize("delta", [0, 2])
    def test_wrong_step_rejected(self, delta):
        consumed = new_counter_resource(3, self.key)
        created = new_counter_resource(3 + delta, self.key)
        assert "expected 4" in counter_rule_violation(consumed, created)

    def test_kind_change_rejected(self):
        consumed = new_counter_resource(0, self.key)
        created = new_counter_resource(1, self.key, kind_ref=kind_ref_for("other"))
        assert "kind" in counter_rule_violation(consumed, created)

    def test_foreign_kind_rejected(self):
        other = kind_ref_for("other")
        consumed = new_counter_resource(0, self.key, kind_ref=other)
        created = new_counter_resource(1, self.key, kind_ref=other)
        assert "counter logic" in counter_rule_violation(consumed, created)

    def test_quantity_change_rejected(self):
        consumed = new_counter_resource(0, self.key)
        created = new_counter_resource(1, self.key, quantity=2)
        assert "quantity" in counter_rule_violation(consumed, created)

    def test_ephemeral_output_rejected(self):
        consumed = new_counter_resource(0, self.key)
        created = new_counter_resource(1, self.key, ephemeral=True)
        assert "ephemeral" in counter_rule_violation(consumed, created)


def _delta_witness(rcv_sum: FieldElement, cv_sum: FieldElement, count: int = 1) -> Witness:
    return Witness(
        circuit_id=DELTA_CIRCUIT_ID,
        private_inputs={"rcv_sum": rcv_sum},
        public_inputs={"cv_sum": cv_sum.value, "action_count": count},
    )


class TestLocalBackend:

    def test_balanced_delta_proves_and_verifies(self):
        backend = LocalProofBackend()
        rcv = FieldElement.random()
        proof = backend.aggregate_balance(_delta_witness(rcv, rcv * BLINDING_GENERATOR))
        assert proof.proof_system == ProofSystem.LOCAL
        assert backend.verify(proof)

    def test_unbalanced_delta_rejected(self):
        backend = LocalProofBackend()
        rcv = FieldElement.random()
        with pytest.raises(ProofError) as exc:
            backend.aggregate_balance(_delta_witness(rcv, rcv * BLINDING_GENERATOR + FieldElement.from_int(1)))
        assert exc.value.circuit_id == DELTA_CIRCUIT_ID

    def test_empty_delta_rejected(self):
        backend = LocalProofBackend()
        zero = FieldElement.zero()
        with pytest.raises(ProofError, match="no actions"):
            backend.aggregate_balance(_delta_witness(zero, zero, count=0))

    def test_missing_inputs_rejected(self):
        backend = LocalProofBackend()
        with pytest.raises(ProofError, match="missing witness inputs"):
            backend.aggregate_balance(Witness(DELTA_CIRCUIT_ID, {}, {"action_count": 1}))

    def test_proofs_bind_to_backend_key(self):
        key = b"\x11" * 32
        rcv = FieldElement.random()
        proof = LocalProofBackend(key=key).aggregate_balance(_delta_witness(rcv, rcv * BLINDING_GENERATOR))
        assert LocalProofBackend(key=key).verify(proof)
        assert not LocalProofBackend().verify(proof)

    def test_tampered_public_inputs_fail(self):
        backend = LocalProofBackend()
        rcv = FieldElement.random()
        proof = backend.aggregate_balance(_delta_witness(rcv, rcv * BLINDING_GENERATOR))
        forged = dataclasses.replace(proof, public_inputs=dict(proof.public_inputs, action_count=2))
        assert not backend.verify(forged)

    def test_proofs_bind_to_verification_key(self):
        key = b"\x22" * 32
        rcv = FieldElement.random()
        proof = LocalProofBackend(key=key).aggregate_balance(_delta_witness(rcv, rcv * BLINDING_GENERATOR))

        rotated = create_standard_registry()
        delta = build_delta_circuit()
        rotated.register(delta, dataclasses.replace(
            verification_key_for(delta), key_data=b"\x33" * 32, digest="",
        ))
        assert LocalProofBackend(key=key).verify(proof)
        assert not LocalProofBackend(key=key, registry=rotated).verify(proof)

    def test_unregistered_circuit_cannot_prove(self):
        backend = LocalProofBackend(registry=CircuitRegistry())
        rcv = FieldElement.random()
        with pytest.raises(ProofError, match="not registered"):
            backend.aggregate_balance(_delta_witness(rcv, rcv * BLINDING_GENERATOR))

    def test_unknown_circuit_does_not_verify(self):
        backend = LocalProofBackend()
        proof = Proof("unknown.v1", ProofSystem.LOCAL, {}, b"\x00" * 32)
        assert backend.verify(proof) is False

    def test_logic_rejects_bad_step(self):
        backend = LocalProofBackend()
        key = NullifierKey.generate()
        consumed = new_counter_resource(1, key)
        created = new_counter_resource(3, key)
        witness = Witness(
            circuit_id=COUNTER_LOGIC_CIRCUIT_ID,
            private_inputs={"consumed": consumed, "created": created},
            public_inputs={"tag": created.commitment, "is_consumed": False, "kind_ref": created.kind_ref},
        )
        with pytest.raises(ProofError, match="expected 2"):
            backend.prove_logic(witness)
