"""
Shielded Counter Transition Orchestrator

Drives one counter transition from the stored state to a ledger-confirmed
new state:

    ┌─────────────┐  lock   ┌───────┐  fetch path  ┌──────────┐
    │ request     │───────►│ read  │─────────────►│ translate│
    └─────────────┘         └───────┘              └────┬─────┘
                                                        │
    ┌─────────────┐ commit  ┌────────┐  submit    ┌─────▼─────┐
    │ store.put   │◄────────│ ledger │◄───────────│ assemble  │
    └─────────────┘         └────────┘  (retry)   └───────────┘

State Machine (per attempt):
    UNINITIALIZED ─┐
                   ├─► PENDING ─► COMMITTED
    READY ─────────┘      │
         │                └─────► FAILED
         └──────────────────────► FAILED

Guarantees:
    - The per-account lock is held from the read to the commit, so two
      transitions never consume the same resource version.
    - The store is written only by ``_commit`` and only after the ledger
      confirmed the transaction.
    - The transition body runs in its own task, shielded from caller
      cancellation; every phase inside it is bounded by a timeout.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
import contextvars
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from shielded_counter.assembler import ProofAssembler, Transaction
from shielded_counter.config import CounterConfig, get_config
from shielded_counter.errors import (
    AlreadyInitializedError,
    ConcurrencyError,
    CounterError,
    NotInitializedError,
    SubmissionError,
)
from shielded_counter.ledger import InMemoryLedger, LedgerService
from shielded_counter.observability import (
    AuditLogger,
    CounterLayer,
    generate_correlation_id,
    get_logger,
    get_tracer,
    set_correlation_id,
    timed_operation,
)
from shielded_counter.path import InternalPath, translate
from shielded_counter.resilience import BackoffStrategy, RetryPolicy, Timeout, describe_timeout
from shielded_counter.resource import (
    NullifierKey,
    Resource,
    new_counter_resource,
    next_counter_resource,
)
from shielded_counter.store import AccountStore, InMemoryAccountStore
from shielded_counter.zkp import LocalProofBackend, ProofBackend

logger = get_logger("orchestrator", CounterLayer.ORCHESTRATOR)


# =============================================================================
# STATE MACHINE
# =============================================================================

class TransitionKind(Enum):
    INITIALIZE = "initialize"
    INCREMENT = "increment"


class TransitionState(Enum):
    """States of one transition attempt."""
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in {TransitionState.COMMITTED, TransitionState.FAILED}


@dataclass
class StateTransition:
    """Record of a state change within an attempt."""
    from_state: TransitionState
    to_state: TransitionState
    timestamp: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


@dataclass
class TransitionAttempt:
    """
    One attempt to move an account's counter forward.

    The candidate transaction is kept for inspection; re-submissions reuse
    it unchanged.
    """
    account_id: str
    kind: TransitionKind
    initial_state: TransitionState
    attempt_id: str = field(default_factory=lambda: f"attempt-{uuid.uuid4().hex[:12]}")
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    transitions: List[StateTransition] = field(default_factory=list)
    candidate: Optional[Transaction] = None
    tx_hash: Optional[str] = None
    created: Optional[Resource] = None
    error: Optional[BaseException] = None
    submissions: int = 0

    VALID_TRANSITIONS = {
        TransitionState.UNINITIALIZED: {TransitionState.PENDING, TransitionState.FAILED},
        TransitionState.READY: {TransitionState.PENDING, TransitionState.FAILED},
        TransitionState.PENDING: {TransitionState.COMMITTED, TransitionState.FAILED},
        TransitionState.COMMITTED: set(),
        TransitionState.FAILED: set(),
    }

    @property
    def state(self) -> TransitionState:
        if self.transitions:
            return self.transitions[-1].to_state
        return self.initial_state

    def can_transition_to(self, target: TransitionState) -> bool:
        valid_targets: Set[TransitionState] = self.VALID_TRANSITIONS.get(self.state, set())
        return target in valid_targets

    def advance_to(self, target: TransitionState, reason: str = "") -> bool:
        """
        Move to ``target``.

        Returns False, leaving the attempt unchanged, if the move is not in
        VALID_TRANSITIONS.
        """
        if not self.can_transition_to(target):
            return False
        self.transitions.append(StateTransition(
            from_state=self.state,
            to_state=target,
            timestamp=datetime.now(timezone.utc).isoformat(),
            reason=reason or f"Advanced to {target.value}",
        ))
        return True

    def to_dict(self) -> Dict[str, Any]:
        error: Optional[Dict[str, Any]] = None
        if isinstance(self.error, CounterError):
            error = self.error.to_dict()
        elif self.error is not None:
            error = {"error": type(self.error).__name__, "message": str(self.error), "retryable": False}
        return {
            "attempt_id": self.attempt_id,
            "account_id": self.account_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "started_at": self.started_at,
            "transitions": [t.to_dict() for t in self.transitions],
            "candidate_digest": self.candidate.digest if self.candidate else None,
            "tx_hash": self.tx_hash,
            "submissions": self.submissions,
            "error": error,
        }


def give_back(lock: asyncio.Lock, acquisition: "asyncio.Future[bool]") -> None:
    """
    Release a lock acquisition whose caller stopped waiting.

    If the acquisition already won the lock it is released now; otherwise it
    is cancelled and released should it complete anyway.
    """
    def _release_if_acquired(f: "asyncio.Future[bool]") -> None:
        if not f.cancelled() and f.exception() is None:
            lock.release()

    if acquisition.done():
        _release_if_acquired(acquisition)
        return
    acquisition.cancel()
    acquisition.add_done_callback(_release_if_acquired)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class TransitionOrchestrator:
    """
    Runs initialize and increment transitions for accounts.

    Example:
        orchestrator = build_local_orchestrator()
        await orchestrator.initialize(account_id)   # counter = 0
        await orchestrator.increment(account_id)    # counter = 1
    """

    def __init__(
        self,
        store: AccountStore,
        ledger: LedgerService,
        backend: ProofBackend,
        config: Optional[CounterConfig] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        audit: Optional[AuditLogger] = None,
    ):
        cfg = config or get_config()
        self.store = store
        self.ledger = ledger
        self.backend = backend
        self.depth = cfg.tree.depth.get()
        self.assembler = ProofAssembler(backend, depth=self.depth)

        self.lock_timeout = cfg.orchestrator.lock_timeout_seconds.get()
        self.submit_max_attempts = cfg.orchestrator.submit_max_attempts.get()
        self.retry_base_delay = cfg.orchestrator.retry_base_delay.get()
        self._history_size = cfg.orchestrator.attempt_history.get()

        self._fetch_timeout = Timeout(
            cfg.ledger.fetch_timeout_seconds.get(),
            "fetch_path",
            lambda name, seconds: ConcurrencyError(describe_timeout(name, seconds)),
        )
        self._prove_timeout = Timeout(
            cfg.prover.timeout_seconds.get(),
            "prove",
            lambda name, seconds: ConcurrencyError(describe_timeout(name, seconds)),
        )
        self._submit_timeout = Timeout(
            cfg.ledger.submit_timeout_seconds.get(),
            "submit",
            lambda name, seconds: SubmissionError(
                f"{describe_timeout(name, seconds)}; outcome unknown", retryable=True,
            ),
        )

        self._owns_executor = executor is None
        max_workers = getattr(backend, "max_workers", None) or cfg.prover.max_workers.get()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="counter-prover",
        )
        self.audit = audit or AuditLogger(get_logger("audit", CounterLayer.ORCHESTRATOR))
        self._attempts: Dict[str, Deque[TransitionAttempt]] = {}

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Router-facing operations
    # ------------------------------------------------------------------

    async def initialize(self, account_id: str) -> str:
        """Create the account's counter at value 0. Returns the tx hash."""
        attempt = await self.transition(account_id, TransitionKind.INITIALIZE)
        return attempt.tx_hash

    async def increment(self, account_id: str) -> str:
        """Advance the account's counter by one. Returns the tx hash."""
        attempt = await self.transition(account_id, TransitionKind.INCREMENT)
        return attempt.tx_hash

    async def transition(self, account_id: str, kind: TransitionKind) -> TransitionAttempt:
        """Run one transition under the account lock and return the committed attempt."""
        lock = self.store.lock_for(account_id)
        await self._acquire(lock, account_id, kind)

        try:
            task = asyncio.ensure_future(self._run(account_id, kind))
        except BaseException:
            lock.release()
            raise

        def _finished(t: "asyncio.Future[TransitionAttempt]") -> None:
            lock.release()
            if not t.cancelled():
                t.exception()

        task.add_done_callback(_finished)
        return await asyncio.shield(task)

    async def _acquire(self, lock: asyncio.Lock, account_id: str, kind: TransitionKind) -> None:
        acquisition = asyncio.ensure_future(lock.acquire())
        try:
            done, _ = await asyncio.wait({acquisition}, timeout=self.lock_timeout)
        except asyncio.CancelledError:
            give_back(lock, acquisition)
            raise
        if not done:
            give_back(lock, acquisition)
            logger.warning("Account lock contention", account_id=account_id, kind=kind.value)
            raise ConcurrencyError(
                f"Account '{account_id}' is busy; lock not acquired within {self.lock_timeout}s"
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def state_of(self, account_id: str) -> TransitionState:
        if self.store.get(account_id) is None:
            return TransitionState.UNINITIALIZED
        return TransitionState.READY

    def counter_value(self, account_id: str) -> Optional[int]:
        entry = self.store.get(account_id)
        return entry.counter_value if entry else None

    def attempts(self, account_id: str) -> List[TransitionAttempt]:
        return list(self._attempts.get(account_id, ()))

    def _record(self, attempt: TransitionAttempt) -> None:
        history = self._attempts.get(attempt.account_id)
        if history is None:
            history = deque(maxlen=self._history_size)
            self._attempts[attempt.account_id] = history
        history.append(attempt)

    # ------------------------------------------------------------------
    # Transition body (runs with the account lock held)
    # ------------------------------------------------------------------

    async def _run(self, account_id: str, kind: TransitionKind) -> TransitionAttempt:
        set_correlation_id(generate_correlation_id())
        entry = self.store.get(account_id)
        attempt = TransitionAttempt(
            account_id=account_id,
            kind=kind,
            initial_state=TransitionState.READY if entry else TransitionState.UNINITIALIZED,
        )
        self._record(attempt)

        with get_tracer().span(f"counter.{kind.value}", CounterLayer.ORCHESTRATOR, account_id=account_id):
            try:
                consumed: Optional[Resource] = None
                consumed_key: Optional[NullifierKey] = None
                path: Optional[InternalPath] = None

                if kind == TransitionKind.INITIALIZE:
                    if entry is not None:
                        raise AlreadyInitializedError(account_id)
                    key = NullifierKey.generate()
                    created = new_counter_resource(0, key)
                else:
                    if entry is None:
                        raise NotInitializedError(account_id)
                    created = next_counter_resource(entry.resource)
                    raw_path = await self._fetch_timeout.execute(
                        self.ledger.fetch_path(entry.resource.commitment)
                    )
                    path = translate(raw_path, self.depth)
                    consumed, consumed_key, key = entry.resource, entry.key, entry.key

                tx = await self._prove(consumed, consumed_key, path, created)
                attempt.candidate = tx
                attempt.advance_to(TransitionState.PENDING, f"candidate {tx.digest} assembled")

                tx_hash = await self._submit(attempt, tx)
                self._commit(attempt, created, key, tx_hash)
                return attempt
            except Exception as e:
                attempt.error = e
                attempt.advance_to(TransitionState.FAILED, str(e))
                self.audit.log(
                    account_id,
                    kind.value,
                    "failed",
                    error_kind=getattr(e, "kind", type(e).__name__),
                    retryable=bool(getattr(e, "retryable", False)),
                    reason=str(e),
                )
                if isinstance(e, CounterError):
                    logger.warning(
                        f"{kind.value} failed",
                        account_id=account_id,
                        attempt_id=attempt.attempt_id,
                        error_kind=e.kind,
                        retryable=e.retryable,
                    )
                else:
                    logger.error(
                        f"{kind.value} failed unexpectedly",
                        error_code=type(e).__name__,
                        exc_info=True,
                        account_id=account_id,
                        attempt_id=attempt.attempt_id,
                    )
                raise

    @timed_operation(logger, "assemble_transaction")
    def _assemble(
        self,
        consumed: Optional[Resource],
        consumed_key: Optional[NullifierKey],
        path: Optional[InternalPath],
        created: Resource,
    ) -> Transaction:
        action = self.assembler.assemble(consumed, consumed_key, path, created)
        return self.assembler.finalize([action])

    async def _prove(
        self,
        consumed: Optional[Resource],
        consumed_key: Optional[NullifierKey],
        path: Optional[InternalPath],
        created: Resource,
    ) -> Transaction:
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        future = loop.run_in_executor(
            self._executor, ctx.run, self._assemble, consumed, consumed_key, path, created,
        )
        return await self._prove_timeout.execute(future)

    async def _submit(self, attempt: TransitionAttempt, tx: Transaction) -> str:
        def _on_retry(n: int, exc: BaseException, delay: float) -> None:
            logger.info(
                "Retrying submission with the same candidate",
                account_id=attempt.account_id,
                attempt_id=attempt.attempt_id,
                submission=n,
                delay_seconds=round(delay, 3),
                reason=str(exc),
            )

        retry = RetryPolicy(
            max_attempts=self.submit_max_attempts,
            base_delay_seconds=self.retry_base_delay,
            backoff_strategy=BackoffStrategy.EXPONENTIAL_JITTER,
            is_retryable=lambda exc: isinstance(exc, SubmissionError) and exc.retryable,
            on_retry=_on_retry,
        )

        async def _once() -> str:
            attempt.submissions += 1
            return await self._submit_timeout.execute(self.ledger.submit(tx))

        return await retry.execute(_once)

    def _commit(
        self,
        attempt: TransitionAttempt,
        created: Resource,
        key: NullifierKey,
        tx_hash: str,
    ) -> None:
        entry = self.store.put(attempt.account_id, created, key)
        attempt.tx_hash = tx_hash
        attempt.created = created
        attempt.advance_to(TransitionState.COMMITTED, f"confirmed in {tx_hash}")
        self.audit.log(
            attempt.account_id,
            attempt.kind.value,
            "committed",
            tx_hash=tx_hash,
            version=entry.version,
            counter_value=entry.counter_value,
            commitment=entry.resource.commitment,
        )
        logger.info(
            f"{attempt.kind.value} committed",
            account_id=attempt.account_id,
            attempt_id=attempt.attempt_id,
            tx_hash=tx_hash,
            counter_value=entry.counter_value,
            version=entry.version,
        )


def build_local_orchestrator(config: Optional[CounterConfig] = None) -> TransitionOrchestrator:
    """Wire an orchestrator to an in-memory store, ledger and local backend."""
    cfg = config or get_config()
    backend = LocalProofBackend(max_workers=cfg.prover.max_workers.get())
    ledger = InMemoryLedger(
        backend,
        depth=cfg.tree.depth.get(),
        chain_id=cfg.ledger.chain_id.get(),
    )
    backend.set_root_oracle(ledger.has_root)
    return TransitionOrchestrator(InMemoryAccountStore(), ledger, backend, config=cfg)
