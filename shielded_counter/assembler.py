"""
Shielded Counter Proof Assembler

Turns one counter transition into an Action, and a list of Actions into a
Transaction carrying one aggregate balance proof.

    consumed ─┐                         ┌─ compliance proof
    key      ─┼─► assemble() ─► Action ─┼─ logic proof (consumed side)
    path     ─┤                         ├─ logic proof (created side)
    created  ─┘                         └─ cv, rcv

    [Action, ...] ─► finalize() ─► Transaction(actions, balance proof)

Initialization has nothing to consume. The consumed side is then padded with
an ephemeral counter resource of the same kind and quantity, which needs no
membership proof; its compliance root is the empty-tree root.

The assembler never catches errors on behalf of its callers: backend
rejections surface as ProofGenerationError.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shielded_counter.errors import ProofGenerationError
from shielded_counter.merkle import DEFAULT_DEPTH, empty_root
from shielded_counter.observability import CounterLayer, get_logger, get_tracer
from shielded_counter.path import InternalPath
from shielded_counter.resource import NullifierKey, Resource, new_counter_resource
from shielded_counter.zkp import (
    COMPLIANCE_CIRCUIT_ID,
    COUNTER_LOGIC_CIRCUIT_ID,
    DELTA_CIRCUIT_ID,
    FieldElement,
    Proof,
    ProofBackend,
    ProofError,
    Witness,
    balance_commitment,
    sum_field,
)

logger = get_logger("assembler", CounterLayer.ASSEMBLER)


@dataclass(frozen=True)
class Action:
    """
    One consumed/created resource pair with its proofs.

    ``rcv`` is the blinding witness for ``cv``; it is needed to finalize the
    transaction and is never serialized.
    """
    consumed: Resource = field(repr=False)
    created: Resource = field(repr=False)
    nullifier: str
    commitment: str
    root: str
    cv: FieldElement
    compliance_proof: Proof
    consumed_logic_proof: Proof
    created_logic_proof: Proof
    rcv: FieldElement = field(repr=False, compare=False)

    @property
    def logic_proofs(self) -> Tuple[Proof, Proof]:
        return (self.consumed_logic_proof, self.created_logic_proof)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nullifier": self.nullifier,
            "commitment": self.commitment,
            "root": self.root,
            "cv": self.cv.value,
            "compliance_proof": self.compliance_proof.to_dict(),
            "logic_proofs": [p.to_dict() for p in self.logic_proofs],
        }


@dataclass(frozen=True)
class Transaction:
    """Ordered actions plus one aggregate balance proof."""
    actions: Tuple[Action, ...]
    balance_proof: Proof
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def nullifiers(self) -> List[str]:
        return [a.nullifier for a in self.actions]

    @property
    def commitments(self) -> List[str]:
        return [a.commitment for a in self.actions]

    @property
    def roots(self) -> List[str]:
        return [a.root for a in self.actions]

    @property
    def digest(self) -> str:
        """Content-addressed identifier over public data and proof digests."""
        content = {
            "actions": [
                {
                    "nullifier": a.nullifier,
                    "commitment": a.commitment,
                    "root": a.root,
                    "cv": a.cv.value,
                    "proofs": [a.compliance_proof.digest] + [p.digest for p in a.logic_proofs],
                }
                for a in self.actions
            ],
            "balance_proof": self.balance_proof.digest,
        }
        canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "digest": self.digest,
            "actions": [a.to_dict() for a in self.actions],
            "balance_proof": self.balance_proof.to_dict(),
            "created_at": self.created_at,
        }


def padding_resource(created: Resource) -> Tuple[Resource, NullifierKey]:
    """Ephemeral stand-in for the consumed side of an initialization."""
    key = NullifierKey.generate()
    resource = new_counter_resource(
        0,
        key,
        ephemeral=True,
        kind_ref=created.kind_ref,
        quantity=created.quantity,
    )
    return resource, key


class ProofAssembler:
    """
    Builds Actions and Transactions through a proof backend.

    Example:
        assembler = ProofAssembler(LocalProofBackend())
        action = assembler.assemble(None, None, None, genesis)
        tx = assembler.finalize([action])
    """

    def __init__(self, backend: ProofBackend, depth: int = DEFAULT_DEPTH):
        self.backend = backend
        self.depth = depth
        self._empty_root = empty_root(depth)

    def _prove(self, circuit_id: str, prove: Any, witness: Witness) -> Proof:
        try:
            return prove(witness)
        except ProofError as e:
            raise ProofGenerationError(f"{circuit_id} proof rejected: {e}") from e

    def assemble(
        self,
        consumed: Optional[Resource],
        consumed_key: Optional[NullifierKey],
        path: Optional[InternalPath],
        created: Resource,
    ) -> Action:
        """
        Build the proofs for ``consumed -> created``.

        Pass ``consumed=None`` (with no key and no path) for initialization.

        Raises:
            ProofGenerationError: inputs are inconsistent or the backend
                rejected a witness.
        """
        if consumed is None:
            if consumed_key is not None or path is not None:
                raise ProofGenerationError("initialization takes no consumed key or path")
            consumed, consumed_key = padding_resource(created)
        elif consumed_key is None:
            raise ProofGenerationError("consumed resource requires its nullifier key")
        elif not consumed.ephemeral and path is None:
            raise ProofGenerationError("consumed resource requires an authentication path")

        if path is not None and path.depth != self.depth:
            raise ProofGenerationError(
                f"authentication path has {path.depth} levels, tree depth is {self.depth}"
            )

        root = path.root if path is not None else self._empty_root
        nullifier = consumed.nullifier(consumed_key)
        commitment = created.commitment
        rcv = FieldElement.random()
        cv = balance_commitment(
            created.kind_ref, created.quantity, consumed.kind_ref, consumed.quantity, rcv,
        )

        with get_tracer().span("assemble_action", CounterLayer.ASSEMBLER, commitment=commitment):
            compliance = self._prove(
                COMPLIANCE_CIRCUIT_ID,
                self.backend.prove_compliance,
                Witness(
                    circuit_id=COMPLIANCE_CIRCUIT_ID,
                    private_inputs={
                        "consumed": consumed,
                        "created": created,
                        "nf_key": consumed_key,
                        "path": path,
                        "rcv": rcv,
                    },
                    public_inputs={
                        "nullifier": nullifier,
                        "consumed_kind_ref": consumed.kind_ref,
                        "commitment": commitment,
                        "created_kind_ref": created.kind_ref,
                        "cv": cv.value,
                        "root": root,
                    },
                ),
            )
            logic = [
                self._prove(
                    COUNTER_LOGIC_CIRCUIT_ID,
                    self.backend.prove_logic,
                    Witness(
                        circuit_id=COUNTER_LOGIC_CIRCUIT_ID,
                        private_inputs={"consumed": consumed, "created": created},
                        public_inputs={
                            "tag": tag,
                            "is_consumed": is_consumed,
                            "kind_ref": resource.kind_ref,
                        },
                    ),
                )
                for tag, is_consumed, resource in (
                    (nullifier, True, consumed),
                    (commitment, False, created),
                )
            ]

        logger.debug(
            "Action assembled",
            commitment=commitment,
            nullifier=nullifier,
            root=root,
            padded=consumed.ephemeral,
        )
        return Action(
            consumed=consumed,
            created=created,
            nullifier=nullifier,
            commitment=commitment,
            root=root,
            cv=cv,
            compliance_proof=compliance,
            consumed_logic_proof=logic[0],
            created_logic_proof=logic[1],
            rcv=rcv,
        )

    def finalize(self, actions: Sequence[Action]) -> Transaction:
        """
        Aggregate balance over ``actions`` and return the Transaction.

        Raises:
            ProofGenerationError: no actions, or the backend rejected the
                balance witness.
        """
        if not actions:
            raise ProofGenerationError("cannot finalize a transaction with no actions")

        rcv_sum = sum_field([a.rcv for a in actions])
        cv_sum = sum_field([a.cv for a in actions])
        balance = self._prove(
            DELTA_CIRCUIT_ID,
            self.backend.aggregate_balance,
            Witness(
                circuit_id=DELTA_CIRCUIT_ID,
                private_inputs={"rcv_sum": rcv_sum},
                public_inputs={"cv_sum": cv_sum.value, "action_count": len(actions)},
            ),
        )
        tx = Transaction(actions=tuple(actions), balance_proof=balance)
        logger.debug("Transaction finalized", digest=tx.digest, actions=len(actions))
        return tx
