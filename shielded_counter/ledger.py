"""
Shielded Counter Ledger Service

The ledger is the protocol adapter contract that owns the commitment tree,
the nullifier set and the history of accepted roots. The engine talks to it
through the ``LedgerService`` protocol:

    fetch_path(commitment)   authentication path in the ledger bit convention
    submit(tx)               execute a transaction, return its hash
    is_known_root(root)      whether proofs against ``root`` are accepted

``InMemoryLedger`` is the reference implementation used by tests, the CLI
demo and local runs. It verifies every proof, rejects stale roots and spent
nullifiers terminally, and can be told to fail on purpose.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
import hashlib
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Set

from shielded_counter.assembler import Transaction
from shielded_counter.errors import NotFoundError, SubmissionError
from shielded_counter.merkle import DEFAULT_DEPTH, CommitmentTree
from shielded_counter.observability import CounterLayer, get_logger
from shielded_counter.path import RawAuthenticationPath
from shielded_counter.zkp import Proof, sum_field

logger = get_logger("ledger", CounterLayer.LEDGER)

PROTOCOL_ADAPTER_ADDRESS = "0xFE29D4D43aB82544A32BbF3045Edc4689829Ec59"
SEPOLIA_CHAIN_ID = 11155111


class LedgerService(Protocol):
    """Protocol for the ledger contract."""

    async def fetch_path(self, commitment: str) -> RawAuthenticationPath:
        """Authentication path for ``commitment``; NotFoundError if absent."""
        ...

    async def submit(self, tx: Transaction) -> str:
        """Execute ``tx``; SubmissionError(retryable) on failure."""
        ...

    async def is_known_root(self, root: str) -> bool:
        ...


class ProofVerifier(Protocol):
    def verify(self, proof: Proof) -> bool:
        ...


@dataclass
class InjectedFailure:
    """One scripted submission failure."""
    retryable: bool = True
    applied: bool = False  # execute the transaction but lose the response
    message: str = "injected ledger failure"


class InMemoryLedger:
    """
    In-memory protocol adapter.

    Submissions are idempotent per transaction digest: re-submitting a
    transaction that already executed returns the hash it executed under.
    """

    def __init__(
        self,
        verifier: ProofVerifier,
        depth: int = DEFAULT_DEPTH,
        chain_id: int = SEPOLIA_CHAIN_ID,
        address: str = PROTOCOL_ADAPTER_ADDRESS,
    ):
        self.verifier = verifier
        self.depth = depth
        self.chain_id = chain_id
        self.address = address
        self._tree = CommitmentTree(depth)
        self._roots: Set[str] = {self._tree.root()}
        self._root_history: List[str] = [self._tree.root()]
        self._nullifiers: Set[str] = set()
        self._executed: Dict[str, str] = {}
        self._failures: List[InjectedFailure] = []
        self._fail_always: Optional[InjectedFailure] = None
        self._accept_limit: Optional[int] = None
        self.fetch_latency = 0.0
        self.submit_latency = 0.0
        self.submissions = 0
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def inject_failures(
        self,
        count: int,
        retryable: bool = True,
        applied: bool = False,
        message: str = "injected ledger failure",
    ) -> None:
        """Fail the next ``count`` submissions."""
        with self._lock:
            self._failures.extend(
                InjectedFailure(retryable=retryable, applied=applied, message=message)
                for _ in range(count)
            )

    def fail_always(self, retryable: bool = True, message: str = "ledger unavailable") -> None:
        with self._lock:
            self._fail_always = InjectedFailure(retryable=retryable, message=message)

    def recover(self) -> None:
        with self._lock:
            self._failures.clear()
            self._fail_always = None

    def accept_limit(self, limit: Optional[int]) -> None:
        """Reject every transaction after ``limit`` executions (None lifts it)."""
        with self._lock:
            self._accept_limit = limit

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_root(self, root: str) -> bool:
        with self._lock:
            return root.strip().lower() in self._roots

    def latest_root(self) -> str:
        with self._lock:
            return self._root_history[-1]

    def has_nullifier(self, nullifier: str) -> bool:
        with self._lock:
            return nullifier in self._nullifiers

    def has_commitment(self, commitment: str) -> bool:
        with self._lock:
            return commitment in self._tree

    @property
    def executed_count(self) -> int:
        with self._lock:
            return len(self._executed)

    @property
    def root_history(self) -> List[str]:
        with self._lock:
            return list(self._root_history)

    async def is_known_root(self, root: str) -> bool:
        return self.has_root(root)

    async def fetch_path(self, commitment: str) -> RawAuthenticationPath:
        if self.fetch_latency:
            await asyncio.sleep(self.fetch_latency)
        with self._lock:
            index = self._tree.index_of(commitment)
            if index is None:
                raise NotFoundError(commitment)
            return RawAuthenticationPath.from_pairs(
                root=self._tree.root(),
                leaf_index=index,
                pairs=self._tree.ledger_path(index),
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _tx_hash(self, tx: Transaction) -> str:
        data = f"{self.chain_id}:{self.address}:{tx.digest}".encode()
        return "0x" + hashlib.sha256(data).hexdigest()

    def _reject(self, tx: Transaction, reason: str) -> SubmissionError:
        logger.warning("Transaction rejected", digest=tx.digest, reason=reason)
        return SubmissionError(f"ledger rejected transaction: {reason}", retryable=False)

    def _verify_proof(self, tx: Transaction, proof: Proof, what: str) -> None:
        if not self.verifier.verify(proof):
            raise self._reject(tx, f"invalid {what} proof")

    def _check(self, tx: Transaction) -> None:
        if not tx.actions:
            raise self._reject(tx, "transaction has no actions")

        seen_nullifiers: Set[str] = set()
        seen_commitments: Set[str] = set()
        for i, action in enumerate(tx.actions):
            compliance = action.compliance_proof
            self._verify_proof(tx, compliance, f"action {i} compliance")
            public = compliance.public_inputs
            if (
                public["nullifier"] != action.nullifier
                or public["commitment"] != action.commitment
                or public["root"] != action.root
                or public["cv"] != action.cv.value
            ):
                raise self._reject(tx, f"action {i} compliance instance mismatch")

            consumed_logic, created_logic = action.logic_proofs
            self._verify_proof(tx, consumed_logic, f"action {i} consumed logic")
            self._verify_proof(tx, created_logic, f"action {i} created logic")
            if (
                consumed_logic.public_inputs["tag"] != action.nullifier
                or consumed_logic.public_inputs["is_consumed"] is not True
                or consumed_logic.public_inputs["kind_ref"] != public["consumed_kind_ref"]
            ):
                raise self._reject(tx, f"action {i} consumed logic instance mismatch")
            if (
                created_logic.public_inputs["tag"] != action.commitment
                or created_logic.public_inputs["is_consumed"] is not False
                or created_logic.public_inputs["kind_ref"] != public["created_kind_ref"]
            ):
                raise self._reject(tx, f"action {i} created logic instance mismatch")

            if action.root not in self._roots:
                raise self._reject(tx, f"non-existing root {action.root}")
            if action.nullifier in self._nullifiers or action.nullifier in seen_nullifiers:
                raise self._reject(tx, f"pre-existing nullifier {action.nullifier}")
            if action.commitment in self._tree or action.commitment in seen_commitments:
                raise self._reject(tx, f"pre-existing commitment {action.commitment}")
            seen_nullifiers.add(action.nullifier)
            seen_commitments.add(action.commitment)

        self._verify_proof(tx, tx.balance_proof, "delta")
        balance = tx.balance_proof.public_inputs
        cv_sum = sum_field([a.cv for a in tx.actions])
        if balance["cv_sum"] != cv_sum.value or balance["action_count"] != len(tx.actions):
            raise self._reject(tx, "delta mismatch")

    def _apply(self, tx: Transaction) -> str:
        for action in tx.actions:
            self._nullifiers.add(action.nullifier)
            self._tree.append(action.commitment)
        root = self._tree.root()
        self._roots.add(root)
        self._root_history.append(root)
        tx_hash = self._tx_hash(tx)
        self._executed[tx.digest] = tx_hash
        return tx_hash

    async def submit(self, tx: Transaction) -> str:
        if self.submit_latency:
            await asyncio.sleep(self.submit_latency)

        with self._lock:
            self.submissions += 1
            failure = self._fail_always or (self._failures.pop(0) if self._failures else None)

            if failure is not None and not failure.applied:
                logger.warning("Injected submission failure", retryable=failure.retryable)
                raise SubmissionError(failure.message, retryable=failure.retryable)

            existing = self._executed.get(tx.digest)
            if existing is not None:
                logger.info("Transaction already executed", digest=tx.digest, tx_hash=existing)
                return existing

            if self._accept_limit is not None and len(self._executed) >= self._accept_limit:
                raise self._reject(tx, "ledger is not accepting transactions")

            self._check(tx)
            tx_hash = self._apply(tx)

        logger.info(
            "Transaction executed",
            digest=tx.digest,
            tx_hash=tx_hash,
            actions=len(tx.actions),
            new_root=self.latest_root(),
        )
        if failure is not None:
            logger.warning("Injected lost response after execution", tx_hash=tx_hash)
            raise SubmissionError(failure.message, retryable=failure.retryable)
        return tx_hash
