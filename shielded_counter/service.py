"""
Shielded Counter Request Handling

Shapes requests from the request router into orchestrator calls and turns
results into response dicts:

    request ─► schema ─► signature ─► message/timestamp ─► replay ─► orchestrator
                                                                          │
    response ◄──────────────────── CounterResult / error dict ◄───────────┘

Every failure comes back as ``{"error", "message", "retryable"}``; unexpected
exceptions are logged with their traceback and reported as ``InternalError``.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from jsonschema import Draft202012Validator

from shielded_counter.auth import (
    AuthorizationChecker,
    Ed25519AuthorizationChecker,
    ReplayRegistry,
    build_signing_message,
)
from shielded_counter.errors import AuthError, CounterError, RequestValidationError
from shielded_counter.observability import (
    CounterLayer,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from shielded_counter.orchestrator import TransitionAttempt, TransitionKind, TransitionOrchestrator

logger = get_logger("service", CounterLayer.SERVICE)

SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
EXECUTE_REQUEST_SCHEMA = SCHEMA_DIR / "execute-request.schema.json"


@lru_cache(maxsize=None)
def schema_validator(schema_path: Path = EXECUTE_REQUEST_SCHEMA) -> Draft202012Validator:
    with open(schema_path, encoding="utf-8") as f:
        schema = json.load(f)
    return Draft202012Validator(schema)


def validate_request(request: Any) -> List[str]:
    """Schema errors for ``request`` (empty if valid)."""
    validator = schema_validator()
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(request), key=str)
    ]


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise RequestValidationError(f"timestamp is not ISO-8601: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def error_response(error: CounterError) -> Dict[str, Any]:
    return error.to_dict()


class CounterService:
    """
    Request-router entry point for counter actions.

    Example:
        service = CounterService(build_local_orchestrator())
        response = await service.execute(signer.authorize("initialize"))
    """

    def __init__(
        self,
        orchestrator: TransitionOrchestrator,
        checker: Optional[AuthorizationChecker] = None,
        max_request_age_seconds: float = 300.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.orchestrator = orchestrator
        self.checker = checker or Ed25519AuthorizationChecker()
        self.max_request_age_seconds = max_request_age_seconds
        self.replay = ReplayRegistry(max_age_seconds=max_request_age_seconds * 2)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _authorize(self, request: Dict[str, Any]) -> None:
        account = request["user_account"]
        action = request["action"]
        timestamp = request["timestamp"]

        expected = build_signing_message(action, account, timestamp)
        if request["signed_message"] != expected:
            raise AuthError("signed message does not match the requested action")

        self.checker.verify(account, request["signed_message"], request["signature"])

        age = (self._clock() - parse_timestamp(timestamp)).total_seconds()
        if abs(age) > self.max_request_age_seconds:
            raise AuthError(
                f"request timestamp is {int(age)}s from now; limit is {self.max_request_age_seconds}s"
            )
        if not self.replay.check_and_register(request["signature"]):
            raise AuthError("request was already processed")

    def _result(self, request: Dict[str, Any], attempt: TransitionAttempt) -> Dict[str, Any]:
        ledger = self.orchestrator.ledger
        return {
            "inputs": {
                "action": request["action"],
                "final_value": attempt.created.counter_value if attempt.created else None,
                "user_account": request["user_account"],
            },
            "transaction": attempt.candidate.to_dict() if attempt.candidate else None,
            "message_to_sign": request["signed_message"],
            "status": attempt.state.value,
            "protocol_adapter": {
                "verification": "verified",
                "submission": {
                    "status": "submitted",
                    "tx_hash": attempt.tx_hash,
                    "pa_contract": getattr(ledger, "address", None),
                    "chain_id": getattr(ledger, "chain_id", None),
                },
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def execute(self, request: Any) -> Dict[str, Any]:
        """Validate, authorize and run one request. Never raises CounterError."""
        set_correlation_id(generate_correlation_id())
        try:
            errors = validate_request(request)
            if errors:
                raise RequestValidationError("; ".join(errors))
            self._authorize(request)
            kind = TransitionKind(request["action"])
            attempt = await self.orchestrator.transition(request["user_account"], kind)
        except CounterError as e:
            logger.info(
                "Request failed",
                error_kind=e.kind,
                retryable=e.retryable,
                action=request.get("action") if isinstance(request, dict) else None,
            )
            return error_response(e)
        except Exception as e:
            logger.error("Unexpected error handling request", error_code=type(e).__name__, exc_info=True)
            return {"error": "InternalError", "message": str(e), "retryable": False}

        logger.info("Request completed", action=request["action"], tx_hash=attempt.tx_hash)
        return self._result(request, attempt)
