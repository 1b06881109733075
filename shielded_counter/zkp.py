"""
Shielded Counter Proof Infrastructure

Circuits, witnesses, proofs and the proof backend used to turn a counter
transition into a verifiable transaction.

    ┌──────────────────────────────────────────────────────────────────┐
    │  Action                                                           │
    │  ├─ Compliance proof   nullifier, commitment, kind refs, cv, root │
    │  ├─ Logic proof        consumed side (counter rule)               │
    │  └─ Logic proof        created side (counter rule)                │
    │                                                                   │
    │  Transaction                                                      │
    │  └─ Delta proof        Σcv == (Σrcv)·H                            │
    └──────────────────────────────────────────────────────────────────┘

Circuit Types:
    - Compliance: consumed resource is owned by the key, its nullifier is
      correct, it is a member of the tree under ``root`` (unless ephemeral),
      the created commitment is correct and ``cv`` opens to ``rcv``
    - Counter Logic: created value is consumed value + 1 (or 0 when the
      consumed side is ephemeral padding); kind and quantity unchanged
    - Delta: the action balance commitments sum to a commitment to zero

Balance commitments live in the BN254 scalar field:

    cv = q_created·G(kind_created) - q_consumed·G(kind_consumed) + rcv·H

where ``G(kind)`` and ``H`` are hash-derived field generators.

``LocalProofBackend`` evaluates every constraint in the clear and emits a
keyed-hash tag over the public inputs. It is a reference backend for tests
and local runs: proofs are binding to the backend key but are not
zero-knowledge.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from shielded_counter.resource import COUNTER_KIND_REF, NullifierKey, Resource


class ProofError(Exception):
    """A witness does not satisfy its circuit, or a proof is malformed."""

    def __init__(self, circuit_id: str, message: str):
        self.circuit_id = circuit_id
        super().__init__(f"{circuit_id}: {message}")


# =============================================================================
# PROOF SYSTEMS
# =============================================================================

class ProofSystem(Enum):
    """Proof systems this package produces. LOCAL: keyed-hash reference proofs."""
    LOCAL = "local"


class CircuitType(Enum):
    COMPLIANCE = "compliance"
    COUNTER_LOGIC = "counter_logic"
    DELTA = "delta"


# =============================================================================
# FIELD ARITHMETIC
# =============================================================================

@dataclass(frozen=True)
class FieldElement:
    """
    Element of the BN254 scalar field.

    Represented as a 64-char hex string for serialization. All arithmetic is
    performed modulo the field prime.
    """
    value: str

    FIELD_MODULUS: int = 0x30644e72e131a029b85045b68181585d2833e84879b9709143e1f593f0000001

    def __post_init__(self):
        if not self.value or not all(c in "0123456789abcdef" for c in self.value.lower()):
            raise ValueError("Field element must be hex string")

    @classmethod
    def zero(cls) -> "FieldElement":
        return cls("0" * 64)

    @classmethod
    def random(cls) -> "FieldElement":
        val = int.from_bytes(secrets.token_bytes(32), "big") % cls.FIELD_MODULUS
        return cls(format(val, "064x"))

    @classmethod
    def from_int(cls, n: int) -> "FieldElement":
        """Create a field element from an integer, reducing modulo FIELD_MODULUS."""
        return cls(format(n % cls.FIELD_MODULUS, "064x"))

    def to_int(self) -> int:
        return int(self.value, 16)

    def __add__(self, other: "FieldElement") -> "FieldElement":
        return FieldElement.from_int(self.to_int() + other.to_int())

    def __sub__(self, other: "FieldElement") -> "FieldElement":
        return FieldElement.from_int(self.to_int() - other.to_int())

    def __mul__(self, other: "FieldElement") -> "FieldElement":
        return FieldElement.from_int(self.to_int() * other.to_int())

    def __neg__(self) -> "FieldElement":
        return FieldElement.from_int(-self.to_int())

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FieldElement):
            return self.to_int() % self.FIELD_MODULUS == other.to_int() % self.FIELD_MODULUS
        return False

    def __hash__(self) -> int:
        return hash(self.to_int() % self.FIELD_MODULUS)


def hash_to_field(tag: str, *parts: bytes) -> FieldElement:
    h = hashlib.sha256(tag.encode("ascii") + b"\x00")
    for part in parts:
        h.update(part)
    return FieldElement.from_int(int.from_bytes(h.digest(), "big"))


BLINDING_GENERATOR = hash_to_field("balance.blinding.v1")


def kind_generator(kind_ref: str) -> FieldElement:
    """Value generator G(kind) for one resource kind."""
    return hash_to_field("balance.kind.v1", bytes.fromhex(kind_ref))


def balance_commitment(
    created_kind: str,
    created_quantity: int,
    consumed_kind: str,
    consumed_quantity: int,
    rcv: FieldElement,
) -> FieldElement:
    """Per-action balance commitment ``cv``."""
    created = FieldElement.from_int(created_quantity) * kind_generator(created_kind)
    consumed = FieldElement.from_int(consumed_quantity) * kind_generator(consumed_kind)
    return created - consumed + rcv * BLINDING_GENERATOR


def sum_field(elements: Sequence[FieldElement]) -> FieldElement:
    total = FieldElement.zero()
    for e in elements:
        total = total + e
    return total


# =============================================================================
# KEYS
# =============================================================================

@dataclass
class VerificationKey:
    """
    Verification key for a specific circuit.

    The key digest is bound into every proof tag, so a proof verifies only
    while its circuit is registered with the same key.
    """
    circuit_id: str
    proof_system: ProofSystem
    public_input_count: int
    key_data: bytes
    digest: str = ""

    def __post_init__(self):
        if not self.digest:
            self.digest = hashlib.sha256(self.key_data).hexdigest()


# =============================================================================
# WITNESS AND PROOF
# =============================================================================

@dataclass
class Witness:
    """
    Inputs for proof generation.

    ``private_inputs`` may hold resources, keys and paths; they are consumed
    by the backend and never copied into the proof.
    """
    circuit_id: str
    private_inputs: Dict[str, Any]
    public_inputs: Dict[str, Any]


def _canonical(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass
class Proof:
    """A proof over a circuit's public inputs."""
    circuit_id: str
    proof_system: ProofSystem
    public_inputs: Dict[str, Any]
    proof_data: bytes
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def digest(self) -> str:
        """Content-addressed identifier for the proof."""
        content = {
            "circuit_id": self.circuit_id,
            "proof_system": self.proof_system.value,
            "public_inputs": self.public_inputs,
            "proof_data": self.proof_data.hex(),
        }
        return hashlib.sha256(_canonical(content)).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "circuit_id": self.circuit_id,
            "proof_system": self.proof_system.value,
            "public_inputs": dict(self.public_inputs),
            "proof_data": self.proof_data.hex(),
            "generated_at": self.generated_at,
            "digest": self.digest,
        }


# =============================================================================
# CIRCUIT DEFINITION
# =============================================================================

@dataclass
class Circuit:
    """A circuit definition: named public and private inputs."""
    circuit_id: str
    circuit_type: CircuitType
    proof_system: ProofSystem
    public_input_names: List[str]
    private_input_names: List[str]
    constraint_count: int
    description: str = ""
    version: str = "1.0.0"

    @property
    def digest(self) -> str:
        """Content-addressed identifier for the circuit."""
        content = {
            "circuit_id": self.circuit_id,
            "circuit_type": self.circuit_type.value,
            "proof_system": self.proof_system.value,
            "public_input_names": self.public_input_names,
            "private_input_names": self.private_input_names,
            "constraint_count": self.constraint_count,
            "version": self.version,
        }
        return hashlib.sha256(_canonical(content)).hexdigest()


COMPLIANCE_CIRCUIT_ID = "counter.compliance.v1"
COUNTER_LOGIC_CIRCUIT_ID = "counter.logic.v1"
DELTA_CIRCUIT_ID = "counter.delta.v1"


def build_compliance_circuit(proof_system: ProofSystem = ProofSystem.LOCAL) -> Circuit:
    """
    Build the compliance circuit.

    Proves: the consumed resource exists under ``root`` (or is ephemeral),
    its nullifier is derived with the owning key, and ``cv`` commits to the
    action's balance with blinding ``rcv``.
    """
    return Circuit(
        circuit_id=COMPLIANCE_CIRCUIT_ID,
        circuit_type=CircuitType.COMPLIANCE,
        proof_system=proof_system,
        public_input_names=[
            "nullifier",
            "consumed_kind_ref",
            "commitment",
            "created_kind_ref",
            "cv",
            "root",
        ],
        private_input_names=["consumed", "created", "nf_key", "path", "rcv"],
        constraint_count=4096,
        description="Resource membership, nullifier derivation and balance commitment",
    )


def build_counter_logic_circuit(proof_system: ProofSystem = ProofSystem.LOCAL) -> Circuit:
    """
    Build the counter logic circuit.

    Proves: created value = consumed value + 1, or 0 when the consumed side is
    ephemeral padding. Kind and quantity are preserved.
    """
    return Circuit(
        circuit_id=COUNTER_LOGIC_CIRCUIT_ID,
        circuit_type=CircuitType.COUNTER_LOGIC,
        proof_system=proof_system,
        public_input_names=["tag", "is_consumed", "kind_ref"],
        private_input_names=["consumed", "created"],
        constraint_count=512,
        description="Counter increment rule evaluated on one side of an action",
    )


def build_delta_circuit(proof_system: ProofSystem = ProofSystem.LOCAL) -> Circuit:
    """
    Build the delta circuit.

    Proves: Σcv == (Σrcv)·H, so the transaction creates and consumes the
    same quantity of every kind.
    """
    return Circuit(
        circuit_id=DELTA_CIRCUIT_ID,
        circuit_type=CircuitType.DELTA,
        proof_system=proof_system,
        public_input_names=["cv_sum", "action_count"],
        private_input_names=["rcv_sum"],
        constraint_count=128,
        description="Aggregate balance of a transaction",
    )


# =============================================================================
# CIRCUIT REGISTRY
# =============================================================================

class CircuitRegistry:
    """Registry of circuits, by id, with their verification keys."""

    def __init__(self):
        self._circuits: Dict[str, Circuit] = {}
        self._verification_keys: Dict[str, VerificationKey] = {}

    def register(self, circuit: Circuit, verification_key: VerificationKey) -> str:
        """Register a circuit with its key. Returns the circuit digest."""
        if verification_key.circuit_id != circuit.circuit_id:
            raise ValueError(
                f"verification key for {verification_key.circuit_id} cannot verify {circuit.circuit_id}"
            )
        if verification_key.public_input_count != len(circuit.public_input_names):
            raise ValueError(f"verification key public input count does not match {circuit.circuit_id}")
        self._circuits[circuit.circuit_id] = circuit
        self._verification_keys[circuit.circuit_id] = verification_key
        return circuit.digest

    def get_circuit_by_id(self, circuit_id: str) -> Optional[Circuit]:
        return self._circuits.get(circuit_id)

    def get_verification_key(self, circuit_id: str) -> Optional[VerificationKey]:
        return self._verification_keys.get(circuit_id)


def verification_key_for(circuit: Circuit) -> VerificationKey:
    return VerificationKey(
        circuit_id=circuit.circuit_id,
        proof_system=circuit.proof_system,
        public_input_count=len(circuit.public_input_names),
        key_data=hashlib.sha256(f"{circuit.digest}_vk".encode()).digest(),
    )


def create_standard_registry(proof_system: ProofSystem = ProofSystem.LOCAL) -> CircuitRegistry:
    """Create a registry with the compliance, counter logic and delta circuits."""
    registry = CircuitRegistry()
    for circuit in (
        build_compliance_circuit(proof_system),
        build_counter_logic_circuit(proof_system),
        build_delta_circuit(proof_system),
    ):
        registry.register(circuit, verification_key_for(circuit))
    return registry


# =============================================================================
# BACKEND INTERFACE
# =============================================================================

class ProofBackend(Protocol):
    """Protocol for proof generation and verification."""

    def prove_compliance(self, witness: Witness) -> Proof:
        ...

    def prove_logic(self, witness: Witness) -> Proof:
        ...

    def aggregate_balance(self, witness: Witness) -> Proof:
        ...

    def verify(self, proof: Proof) -> bool:
        ...


# =============================================================================
# CONSTRAINTS
# =============================================================================

def counter_rule_violation(consumed: Resource, created: Resource) -> Optional[str]:
    """Describe why ``consumed -> created`` breaks the counter rule, or None."""
    if created.kind_ref != consumed.kind_ref:
        return "kind changed across the transition"
    if created.kind_ref != COUNTER_KIND_REF:
        return "resource is not governed by the counter logic"
    if created.quantity != consumed.quantity:
        return "quantity changed across the transition"
    if created.ephemeral:
        return "created counter must not be ephemeral"
    expected = 0 if consumed.ephemeral else consumed.counter_value + 1
    if created.counter_value != expected:
        return f"created value {created.counter_value} != expected {expected}"
    return None


def _require(circuit_id: str, cond: bool, message: str) -> None:
    if not cond:
        raise ProofError(circuit_id, message)


def _require_inputs(circuit: Circuit, witness: Witness) -> None:
    missing = [n for n in circuit.public_input_names if n not in witness.public_inputs]
    missing += [n for n in circuit.private_input_names if n not in witness.private_inputs]
    if missing:
        raise ProofError(circuit.circuit_id, f"missing witness inputs: {', '.join(missing)}")


# =============================================================================
# LOCAL BACKEND
# =============================================================================

class LocalProofBackend:
    """
    Constraint-evaluating reference backend.

    Each ``prove_*`` call checks the witness against its circuit and, on
    success, tags the public inputs with HMAC-SHA256 under the backend key.
    ``verify`` recomputes the tag. Proofs verify only against the backend
    instance (or key) that produced them.

    ``root_oracle`` tells the compliance circuit which tree roots are
    trusted; without one any root that the path hashes to is accepted.

    NOT ZERO-KNOWLEDGE - for testing and local runs only.
    """

    def __init__(
        self,
        key: Optional[bytes] = None,
        root_oracle: Optional[Callable[[str], bool]] = None,
        registry: Optional[CircuitRegistry] = None,
        max_workers: Optional[int] = None,
    ):
        self._key = key or secrets.token_bytes(32)
        self._root_oracle = root_oracle
        self.registry = registry or create_standard_registry(ProofSystem.LOCAL)
        self.max_workers = max_workers

    def set_root_oracle(self, oracle: Callable[[str], bool]) -> None:
        self._root_oracle = oracle

    def _circuit(self, circuit_id: str) -> Circuit:
        circuit = self.registry.get_circuit_by_id(circuit_id)
        if circuit is None:
            raise ProofError(circuit_id, "circuit is not registered")
        return circuit

    def _tag(self, circuit: Circuit, vk: VerificationKey, public_inputs: Dict[str, Any]) -> bytes:
        message = b"\x00".join([
            circuit.digest.encode("ascii"),
            vk.digest.encode("ascii"),
            _canonical(public_inputs),
        ])
        return hmac.new(self._key, message, hashlib.sha256).digest()

    def _emit(self, circuit: Circuit, witness: Witness) -> Proof:
        vk = self.registry.get_verification_key(circuit.circuit_id)
        if vk is None:
            raise ProofError(circuit.circuit_id, "circuit has no verification key")
        public = {name: witness.public_inputs[name] for name in circuit.public_input_names}
        return Proof(
            circuit_id=circuit.circuit_id,
            proof_system=circuit.proof_system,
            public_inputs=public,
            proof_data=self._tag(circuit, vk, public),
        )

    def prove_compliance(self, witness: Witness) -> Proof:
        circuit = self._circuit(COMPLIANCE_CIRCUIT_ID)
        _require_inputs(circuit, witness)
        cid = circuit.circuit_id
        pub = witness.public_inputs
        consumed: Resource = witness.private_inputs["consumed"]
        created: Resource = witness.private_inputs["created"]
        nf_key: NullifierKey = witness.private_inputs["nf_key"]
        path = witness.private_inputs["path"]
        rcv: FieldElement = witness.private_inputs["rcv"]

        _require(cid, consumed.is_controlled_by(nf_key), "nullifier key does not control the consumed resource")
        _require(cid, pub["nullifier"] == consumed.nullifier(nf_key), "nullifier mismatch")
        _require(cid, pub["consumed_kind_ref"] == consumed.kind_ref, "consumed kind mismatch")
        _require(cid, pub["commitment"] == created.commitment, "created commitment mismatch")
        _require(cid, pub["created_kind_ref"] == created.kind_ref, "created kind mismatch")

        if not consumed.ephemeral:
            _require(cid, path is not None, "non-ephemeral resource requires an authentication path")
            _require(cid, path.root == pub["root"], "path root differs from public root")
            _require(
                cid,
                path.authenticates(consumed.commitment),
                "consumed commitment is not a member of the tree under root",
            )
        if self._root_oracle is not None:
            _require(cid, self._root_oracle(pub["root"]), f"root {pub['root']} is not trusted")

        expected_cv = balance_commitment(
            created.kind_ref, created.quantity, consumed.kind_ref, consumed.quantity, rcv,
        )
        _require(cid, pub["cv"] == expected_cv.value, "balance commitment does not open to rcv")
        return self._emit(circuit, witness)

    def prove_logic(self, witness: Witness) -> Proof:
        circuit = self._circuit(COUNTER_LOGIC_CIRCUIT_ID)
        _require_inputs(circuit, witness)
        cid = circuit.circuit_id
        pub = witness.public_inputs
        consumed: Resource = witness.private_inputs["consumed"]
        created: Resource = witness.private_inputs["created"]

        if pub["is_consumed"]:
            _require(cid, pub["kind_ref"] == consumed.kind_ref, "kind_ref does not match consumed resource")
        else:
            _require(cid, pub["tag"] == created.commitment, "tag is not the created commitment")
            _require(cid, pub["kind_ref"] == created.kind_ref, "kind_ref does not match created resource")

        violation = counter_rule_violation(consumed, created)
        _require(cid, violation is None, violation or "")
        return self._emit(circuit, witness)

    def aggregate_balance(self, witness: Witness) -> Proof:
        circuit = self._circuit(DELTA_CIRCUIT_ID)
        _require_inputs(circuit, witness)
        cid = circuit.circuit_id
        _require(cid, witness.public_inputs["action_count"] > 0, "transaction has no actions")
        rcv_sum: FieldElement = witness.private_inputs["rcv_sum"]
        expected = rcv_sum * BLINDING_GENERATOR
        _require(
            cid,
            witness.public_inputs["cv_sum"] == expected.value,
            "transaction is not balanced",
        )
        return self._emit(circuit, witness)

    def verify(self, proof: Proof) -> bool:
        circuit = self.registry.get_circuit_by_id(proof.circuit_id)
        vk = self.registry.get_verification_key(proof.circuit_id)
        if circuit is None or vk is None:
            return False
        if proof.proof_system != circuit.proof_system or vk.proof_system != circuit.proof_system:
            return False
        if set(proof.public_inputs) != set(circuit.public_input_names):
            return False
        if len(proof.public_inputs) != vk.public_input_count:
            return False
        return hmac.compare_digest(self._tag(circuit, vk, proof.public_inputs), proof.proof_data)
