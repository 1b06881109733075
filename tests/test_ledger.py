"""
Tests for the in-memory ledger service.

Verifies that:
1. Valid transactions execute once and grow the tree and nullifier set.
2. Stale roots, spent nullifiers and bad proofs are rejected terminally.
3. Scripted failures behave as configured, including lost responses.
"""
import asyncio
import re

import pytest

from shielded_counter.assembler import ProofAssembler
from shielded_counter.errors import NotFoundError, SubmissionError
from shielded_counter.ledger import PROTOCOL_ADAPTER_ADDRESS, SEPOLIA_CHAIN_ID, InMemoryLedger
from shielded_counter.merkle import CommitmentTree, empty_root
from shielded_counter.path import RawAuthenticationPath, translate
from shielded_counter.resource import NullifierKey, new_counter_resource, next_counter_resource
from shielded_counter.zkp import LocalProofBackend


DEPTH = 8


@pytest.fixture
def backend():
    return LocalProofBackend()


@pytest.fixture
def ledger(backend):
    ledger = InMemoryLedger(backend, depth=DEPTH)
    backend.set_root_oracle(ledger.has_root)
    return ledger


@pytest.fixture
def assembler(backend):
    return ProofAssembler(backend, depth=DEPTH)


def _genesis_tx(assembler):
    key = NullifierKey.generate()
    genesis = new_counter_resource(0, key)
    tx = assembler.finalize([assembler.assemble(None, None, None, genesis)])
    return tx, genesis, key


def _increment_tx(assembler, ledger, current, key):
    raw = asyncio.run(ledger.fetch_path(current.commitment))
    action = assembler.assemble(current, key, translate(raw, DEPTH), next_counter_resource(current))
    return assembler.finalize([action])


def test_initial_state(ledger):
    assert ledger.latest_root() == empty_root(DEPTH)
    assert ledger.has_root(empty_root(DEPTH))
    assert ledger.executed_count == 0
    assert ledger.address == PROTOCOL_ADAPTER_ADDRESS
    assert ledger.chain_id == SEPOLIA_CHAIN_ID
    assert asyncio.run(ledger.is_known_root(empty_root(DEPTH)))


def test_fetch_path_unknown_commitment(ledger):
    with pytest.raises(NotFoundError) as exc:
        asyncio.run(ledger.fetch_path("ab" * 32))
    assert exc.value.commitment == "ab" * 32


def test_submit_executes_transaction(ledger, assembler):
    tx, genesis, _ = _genesis_tx(assembler)
    tx_hash = asyncio.run(ledger.submit(tx))

    assert re.fullmatch(r"0x[0-9a-f]{64}", tx_hash)
    assert ledger.has_commitment(genesis.commitment)
    assert ledger.has_nullifier(tx.nullifiers[0])
    assert ledger.executed_count == 1
    assert len(ledger.root_history) == 2
    assert ledger.latest_root() != empty_root(DEPTH)


def test_fetched_path_matches_ledger_convention(ledger, assembler):
    tx, genesis, _ = _genesis_tx(assembler)
    asyncio.run(ledger.submit(tx))
    raw = asyncio.run(ledger.fetch_path(genesis.commitment))
    assert raw.leaf_index == 0
    assert raw.root == ledger.latest_root()
    assert len(raw.siblings) == DEPTH
    # leaf 0 is a left child at every level: siblings are on the right
    assert all(bit == 1 for _, bit in raw.siblings)
    assert translate(raw, DEPTH).authenticates(genesis.commitment)


def test_resubmission_is_idempotent(ledger, assembler):
    tx, _, _ = _genesis_tx(assembler)
    first = asyncio.run(ledger.submit(tx))
    second = asyncio.run(ledger.submit(tx))
    assert first == second
    assert ledger.executed_count == 1
    assert ledger.submissions == 2


def test_increment_chain(ledger, assembler):
    tx, genesis, key = _genesis_tx(assembler)
    asyncio.run(ledger.submit(tx))
    inc = _increment_tx(assembler, ledger, genesis, key)
    asyncio.run(ledger.submit(inc))
    assert ledger.executed_count == 2
    assert ledger.has_nullifier(genesis.nullifier(key))


def test_double_spend_rejected(ledger, assembler):
    tx, genesis, key = _genesis_tx(assembler)
    asyncio.run(ledger.submit(tx))
    first = _increment_tx(assembler, ledger, genesis, key)
    second = _increment_tx(assembler, ledger, genesis, key)
    asyncio.run(ledger.submit(first))

    with pytest.raises(SubmissionError, match="pre-existing nullifier") as exc:
        asyncio.run(ledger.submit(second))
    assert exc.value.retryable is False
    assert ledger.executed_count == 2


def test_unknown_root_rejected(backend):
    """A proof against a root the ledger never had is terminal."""
    ledger = InMemoryLedger(backend, depth=DEPTH)
    assembler = ProofAssembler(backend, depth=DEPTH)
    key = NullifierKey.generate()
    current = new_counter_resource(0, key)
    tree = CommitmentTree(DEPTH)
    tree.append(current.commitment)
    raw = RawAuthenticationPath.from_pairs(tree.root(), 0, tree.ledger_path(0))
    action = assembler.assemble(current, key, translate(raw, DEPTH), next_counter_resource(current))

    with pytest.raises(SubmissionError, match="non-existing root") as exc:
        asyncio.run(ledger.submit(assembler.finalize([action])))
    assert exc.value.retryable is False


def test_foreign_proofs_rejected(assembler):
    ledger = InMemoryLedger(LocalProofBackend(), depth=DEPTH)
    tx, _, _ = _genesis_tx(assembler)
    with pytest.raises(SubmissionError, match="invalid action 0 compliance proof"):
        asyncio.run(ledger.submit(tx))
    assert ledger.executed_count == 0


class TestFaultInjection:

    def test_injected_retryable_failures(self, ledger, assembler):
        tx, _, _ = _genesis_tx(assembler)
        ledger.inject_failures(2)
        for _ in range(2):
            with pytest.raises(SubmissionError) as exc:
                asyncio.run(ledger.submit(tx))
            assert exc.value.retryable is True
        assert ledger.executed_count == 0
        asyncio.run(ledger.submit(tx))
        assert ledger.executed_count == 1

    def test_injected_terminal_failure(self, ledger, assembler):
        tx, _, _ = _genesis_tx(assembler)
        ledger.inject_failures(1, retryable=False, message="gas estimation failed")
        with pytest.raises(SubmissionError, match="gas estimation failed") as exc:
            asyncio.run(ledger.submit(tx))
        assert exc.value.retryable is False

    def test_fail_always_and_recover(self, ledger, assembler):
        tx, _, _ = _genesis_tx(assembler)
        ledger.fail_always()
        for _ in range(3):
            with pytest.raises(SubmissionError):
                asyncio.run(ledger.submit(tx))
        ledger.recover()
        asyncio.run(ledger.submit(tx))
        assert ledger.executed_count == 1

    def test_applied_failure_executes_then_raises(self, ledger, assembler):
        tx, genesis, _ = _genesis_tx(assembler)
        ledger.inject_failures(1, applied=True)
        with pytest.raises(SubmissionError) as exc:
            asyncio.run(ledger.submit(tx))
        assert exc.value.retryable is True
        assert ledger.has_commitment(genesis.commitment)
        # the retry finds the executed transaction
        tx_hash = asyncio.run(ledger.submit(tx))
        assert tx_hash.startswith("0x")
        assert ledger.executed_count == 1

    def test_accept_limit(self, ledger, assembler):
        ledger.accept_limit(1)
        asyncio.run(ledger.submit(_genesis_tx(assembler)[0]))
        with pytest.raises(SubmissionError, match="not accepting") as exc:
            asyncio.run(ledger.submit(_genesis_tx(assembler)[0]))
        assert exc.value.retryable is False
        ledger.accept_limit(None)
        asyncio.run(ledger.submit(_genesis_tx(assembler)[0]))
        assert ledger.executed_count == 2
