"""
Shielded Counter Error Taxonomy

Every failure surfaced to the request router is one of the kinds below. Each
error carries a stable ``kind`` string, a human-readable message and a
``retryable`` flag so callers can decide whether to re-enter from READY.

    NotInitializedError      increment before initialize
    AlreadyInitializedError  initialize on an account that already has a counter
    MalformedPathError       ledger path has the wrong shape
    ProofGenerationError     proof backend rejected a witness
    SubmissionError          ledger call failed (retryable or terminal)
    ConcurrencyError         per-account lock contention or phase timeout
    NotFoundError            ledger does not know the requested commitment
    AuthError                authorization checker rejected the request
    RequestValidationError   request body does not match the request schema

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CounterError(Exception):
    """Base class for all typed counter failures."""

    kind: str = "CounterError"
    retryable: bool = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }


class NotInitializedError(CounterError):
    """Raised when an account has no counter yet."""
    kind = "NotInitializedError"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(
            f"Account '{account_id}' has no counter; call initialize first"
        )


class AlreadyInitializedError(CounterError):
    """Raised when initialize would orphan an existing counter."""
    kind = "AlreadyInitializedError"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account '{account_id}' already has a counter")


class MalformedPathError(CounterError):
    """Ledger returned an authentication path of the wrong shape."""
    kind = "MalformedPathError"
    retryable = True


class ProofGenerationError(CounterError):
    """The proof backend rejected the witness."""
    kind = "ProofGenerationError"


class SubmissionError(CounterError):
    """
    Ledger submission failed.

    Retryable failures (network, gas, unknown outcome) may be re-submitted
    with the same candidate transaction. Terminal failures (proof or nullifier
    rejected on-chain) require discarding the candidate.
    """
    kind = "SubmissionError"

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message, retryable=retryable)


class ConcurrencyError(CounterError):
    """Per-account lock contention or a bounded phase timed out."""
    kind = "ConcurrencyError"
    retryable = True


class NotFoundError(CounterError):
    """Ledger has no leaf for the requested commitment."""
    kind = "NotFoundError"

    def __init__(self, commitment: str):
        self.commitment = commitment
        super().__init__(f"Commitment {commitment} not found in ledger tree")


class AuthError(CounterError):
    """Authorization checker rejected the request."""
    kind = "AuthError"


class RequestValidationError(CounterError):
    """Request body failed schema validation."""
    kind = "RequestValidationError"
