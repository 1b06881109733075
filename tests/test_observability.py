"""
Tests for structured logging, tracing, the audit trail and the retry/timeout
helpers.
"""
import asyncio
import io
import json

import pytest

from shielded_counter.errors import ConcurrencyError, SubmissionError
from shielded_counter.observability import (
    AuditLogger,
    CounterLayer,
    Tracer,
    configure_logging,
    get_correlation_id,
    get_logger,
    get_tracer,
    set_correlation_id,
    timed_operation,
)
from shielded_counter.orchestrator import build_local_orchestrator
from shielded_counter.resilience import BackoffStrategy, RetryPolicy, Timeout, describe_timeout


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestStructuredLogging:

    def test_json_record_fields(self):
        stream = io.StringIO()
        configure_logging("debug", "json", stream=stream)
        set_correlation_id("corr-test")
        get_logger("unit", CounterLayer.LEDGER).info("Transaction executed", tx_hash="0xabc")

        (record,) = _lines(stream)
        assert record["message"] == "Transaction executed"
        assert record["layer"] == "ledger"
        assert record["logger"] == "shielded_counter.ledger.unit"
        assert record["correlation_id"] == "corr-test"
        assert record["context"] == {"tx_hash": "0xabc"}

    def test_level_filtering(self):
        stream = io.StringIO()
        configure_logging("warning", "json", stream=stream)
        logger = get_logger("unit", CounterLayer.STORE)
        logger.info("hidden")
        logger.warning("shown")
        assert [r["message"] for r in _lines(stream)] == ["shown"]

    def test_error_with_traceback(self):
        stream = io.StringIO()
        configure_logging("info", "json", stream=stream)
        try:
            raise RuntimeError("kaput")
        except RuntimeError:
            get_logger("unit", CounterLayer.SERVICE).error("failed", error_code="RuntimeError", exc_info=True)
        (record,) = _lines(stream)
        assert record["error_code"] == "RuntimeError"
        assert "kaput" in record["exception"]

    def test_text_format(self):
        stream = io.StringIO()
        configure_logging("info", "text", stream=stream)
        get_logger("unit", CounterLayer.CLI).info("hello")
        assert "INFO shielded_counter.cli.unit: hello" in stream.getvalue()

    def test_timed_operation(self):
        stream = io.StringIO()
        configure_logging("info", "json", stream=stream)
        logger = get_logger("unit", CounterLayer.PATH)

        @timed_operation(logger, "translate")
        def work():
            return 7

        assert work() == 7
        (record,) = _lines(stream)
        assert record["operation"] == "translate"
        assert "duration_ms" in record


def test_correlation_id_is_generated_once():
    cid = get_correlation_id()
    assert cid
    assert get_correlation_id() == cid


def test_tracer_nests_spans():
    tracer = Tracer()
    finished = []
    tracer.add_exporter(finished.append)
    with tracer.span("outer", CounterLayer.ORCHESTRATOR) as outer:
        with tracer.span("inner", CounterLayer.ASSEMBLER, commitment="c"):
            pass
    inner = finished[0]
    assert inner.parent_span_id == outer.span_id
    assert inner.attributes["commitment"] == "c"
    assert finished[1].name == "outer"


def test_span_records_errors():
    tracer = Tracer()
    finished = []
    tracer.add_exporter(finished.append)
    with pytest.raises(ValueError):
        with tracer.span("boom", CounterLayer.ZK):
            raise ValueError("bad witness")
    assert finished[0].status == "error"
    assert finished[0].attributes["exception_type"] == "ValueError"


class TestAuditLogger:

    def test_chain_verifies_and_detects_tampering(self):
        audit = AuditLogger(get_logger("audit", CounterLayer.ORCHESTRATOR))
        audit.log("acct", "initialize", "committed", counter_value=0)
        audit.log("acct", "increment", "failed", error_kind="SubmissionError")
        assert audit.verify_chain()

        audit.events()[0].details["counter_value"] = 9
        assert not audit.verify_chain()

    def test_retention_keeps_chain_valid(self):
        audit = AuditLogger(get_logger("audit", CounterLayer.ORCHESTRATOR), max_events=3)
        for i in range(5):
            audit.log(f"acct-{i % 2}", "increment", "committed", n=i)
        assert len(audit.events()) == 3
        assert audit.verify_chain()
        assert all(e.account_id == "acct-0" for e in audit.events("acct-0"))


class TestRetryPolicy:

    def test_retries_until_success(self):
        calls = []
        retried = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise SubmissionError("try again", retryable=True)
            return "ok"

        policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.0,
                             on_retry=lambda n, exc, delay: retried.append(n))
        assert asyncio.run(policy.execute(flaky)) == "ok"
        assert retried == [1, 2]
        assert policy.metrics.total_attempts == 3
        assert policy.metrics.successful_attempts == 1

    def test_non_retryable_raises_immediately(self):
        calls = []

        async def terminal():
            calls.append(1)
            raise SubmissionError("rejected", retryable=False)

        with pytest.raises(SubmissionError, match="rejected"):
            asyncio.run(RetryPolicy(max_attempts=5, base_delay_seconds=0.0).execute(terminal))
        assert len(calls) == 1

    def test_exhaustion_reraises_last_error(self):
        async def down():
            raise SubmissionError("down", retryable=True)

        policy = RetryPolicy(max_attempts=2, base_delay_seconds=0.0)
        with pytest.raises(SubmissionError, match="down"):
            asyncio.run(policy.execute(down))
        assert policy.metrics.retries_exhausted == 1

    def test_custom_predicate(self):
        async def down():
            raise ValueError("nope")

        policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.0, is_retryable=lambda e: False)
        with pytest.raises(ValueError):
            asyncio.run(policy.execute(down))
        assert policy.metrics.total_attempts == 1

    @pytest.mark.parametrize("strategy, attempt, expected", [
        (BackoffStrategy.FIXED, 3, 1.0),
        (BackoffStrategy.LINEAR, 3, 3.0),
        (BackoffStrategy.EXPONENTIAL, 3, 4.0),
        (BackoffStrategy.EXPONENTIAL, 10, 5.0),
    ])
    def test_backoff(self, strategy, attempt, expected):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0, backoff_strategy=strategy)
        assert policy._calculate_delay(attempt) == expected

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestTimeout:

    def test_expiry_raises_typed_error(self):
        timeout = Timeout(0.01, "fetch_path", lambda n, s: ConcurrencyError(describe_timeout(n, s)))
        with pytest.raises(ConcurrencyError, match="Operation 'fetch_path' timed out after 0.01s") as exc:
            asyncio.run(timeout.execute(asyncio.sleep(1)))
        assert isinstance(exc.value.__cause__, asyncio.TimeoutError)
        assert timeout.metrics.timed_out_calls == 1

    def test_passes_result_through(self):
        async def quick():
            return 3

        timeout = Timeout(1.0, "quick", lambda n, s: ConcurrencyError(n))
        assert asyncio.run(timeout.execute(quick())) == 3
        assert timeout.metrics.successful_calls == 1


class TestEngineInstrumentation:

    def test_configure_logging_exports_spans_once(self):
        stream = io.StringIO()
        configure_logging("debug", "json", stream=stream)
        configure_logging("debug", "json", stream=stream)
        with get_tracer().span("counter.unit", CounterLayer.ORCHESTRATOR, account_id="acct"):
            pass

        spans = [r for r in _lines(stream) if r["logger"] == "shielded_counter.tracing"]
        assert len(spans) == 1
        assert spans[0]["operation"] == "counter.unit"
        assert spans[0]["layer"] == "orchestrator"
        assert spans[0]["context"]["attributes"] == {"account_id": "acct"}
        assert "duration_ms" in spans[0]

    def test_transition_logs_assembly_timing_and_spans(self, counter_config):
        stream = io.StringIO()
        configure_logging("debug", "json", stream=stream)

        async def main():
            orch = build_local_orchestrator(counter_config)
            try:
                await orch.initialize("did:key:alice")
            finally:
                orch.close()

        asyncio.run(main())
        records = _lines(stream)
        timing = [r for r in records if r.get("operation") == "assemble_transaction"]
        assert len(timing) == 1
        assert timing[0]["message"] == "Operation assemble_transaction completed"
        assert timing[0]["duration_ms"] >= 0
        span_names = {r["operation"] for r in records if r["logger"] == "shielded_counter.tracing"}
        assert "counter.initialize" in span_names
