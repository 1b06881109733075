"""
Shielded Counter: Resource Transition Engine

Tracks a per-account shielded counter through its lifecycle
(uninitialized → initialized → incremented-N), reconciles ledger
authentication paths with the proving layer's convention, and assembles
transactions that are submitted exactly once per resource version.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                       RESOURCE TRANSITION ENGINE                        │
    │                                                                          │
    │  EDGE                                                                    │
    │    service.py       Schema validation, authorization, responses         │
    │    auth.py          Ed25519 did:key signatures, signing message         │
    │    cli.py           Demo runs and configuration tooling                 │
    │                                                                          │
    │  CORE                                                                    │
    │    orchestrator.py  Lifecycle state machine, locking, retry, commit     │
    │    assembler.py     Actions, transactions, balance aggregation          │
    │    path.py          Ledger ↔ internal authentication path translation   │
    │    store.py         Account → (resource, key) with per-account locks    │
    │                                                                          │
    │  PRIMITIVES                                                              │
    │    resource.py      Resources, nullifier keys, counter value codec      │
    │    merkle.py        Fixed-depth commitment tree                         │
    │    zkp.py           Circuits, proofs, local proof backend               │
    │    ledger.py        Ledger protocol and in-memory protocol adapter      │
    │                                                                          │
    │  AMBIENT                                                                 │
    │    errors.py  config.py  observability.py  resilience.py                 │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Resource: Content-addressed record. Consuming it publishes its nullifier;
    creating it appends its commitment to the ledger tree.

    Transition: One Action consuming the current counter resource and
    creating its successor (value + 1, fresh nonce), plus a balance proof.
    Initialization consumes an ephemeral padding resource instead.

    Commit: The account's stored (resource, key) pair is replaced only after
    the ledger confirmed the transaction.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.3.0"


def __getattr__(name):
    """Lazy import of public names on first access."""

    if name in ("CounterError", "NotInitializedError", "AlreadyInitializedError",
                "MalformedPathError", "ProofGenerationError", "SubmissionError",
                "ConcurrencyError", "NotFoundError", "AuthError", "RequestValidationError"):
        from shielded_counter import errors
        return getattr(errors, name)

    if name in ("Resource", "NullifierKey", "encode_counter_value", "decode_counter_value",
                "new_counter_resource", "next_counter_resource"):
        from shielded_counter import resource
        return getattr(resource, name)

    if name in ("RawAuthenticationPath", "InternalPath", "PathLevel", "translate",
                "translate_inverse"):
        from shielded_counter import path
        return getattr(path, name)

    if name in ("CommitmentTree", "compute_root"):
        from shielded_counter import merkle
        return getattr(merkle, name)

    if name in ("AccountEntry", "AccountStore", "InMemoryAccountStore"):
        from shielded_counter import store
        return getattr(store, name)

    if name in ("Action", "Transaction", "ProofAssembler"):
        from shielded_counter import assembler
        return getattr(assembler, name)

    if name in ("ProofBackend", "LocalProofBackend", "Proof", "Witness", "ProofError"):
        from shielded_counter import zkp
        return getattr(zkp, name)

    if name in ("LedgerService", "InMemoryLedger"):
        from shielded_counter import ledger
        return getattr(ledger, name)

    if name in ("TransitionOrchestrator", "TransitionState", "TransitionKind",
                "TransitionAttempt", "build_local_orchestrator"):
        from shielded_counter import orchestrator
        return getattr(orchestrator, name)

    if name in ("Ed25519AuthorizationChecker", "AccountSigner", "build_signing_message"):
        from shielded_counter import auth
        return getattr(auth, name)

    if name in ("CounterService",):
        from shielded_counter import service
        return getattr(service, name)

    raise AttributeError(f"module 'shielded_counter' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Errors
    "CounterError",
    "NotInitializedError",
    "AlreadyInitializedError",
    "MalformedPathError",
    "ProofGenerationError",
    "SubmissionError",
    "ConcurrencyError",
    "NotFoundError",
    "AuthError",
    "RequestValidationError",
    # Resources
    "Resource",
    "NullifierKey",
    "encode_counter_value",
    "decode_counter_value",
    "new_counter_resource",
    "next_counter_resource",
    # Paths and tree
    "RawAuthenticationPath",
    "InternalPath",
    "PathLevel",
    "translate",
    "translate_inverse",
    "CommitmentTree",
    "compute_root",
    # Store
    "AccountEntry",
    "AccountStore",
    "InMemoryAccountStore",
    # Proofs
    "Action",
    "Transaction",
    "ProofAssembler",
    "ProofBackend",
    "LocalProofBackend",
    "Proof",
    "Witness",
    "ProofError",
    # Ledger
    "LedgerService",
    "InMemoryLedger",
    # Orchestration
    "TransitionOrchestrator",
    "TransitionState",
    "TransitionKind",
    "TransitionAttempt",
    "build_local_orchestrator",
    # Edge
    "Ed25519AuthorizationChecker",
    "AccountSigner",
    "build_signing_message",
    "CounterService",
]
