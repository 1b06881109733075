"""
Shielded Counter Observability

Structured logging, tracing spans and an audit trail for state commits.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Application Code                      │
    │  logger.info("msg", account_id=x)  tracer.span(...)      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                 CounterLogger / Tracer                   │
    │  Context propagation, correlation IDs, structured data  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                  StructuredHandler                       │
    │              one JSON object per record                  │
    └─────────────────────────────────────────────────────────┘

Spending key material must never be passed as log context.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import functools
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

# Context variables for request-scoped data
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)
span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "span_id", default=""
)
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trace_id", default=""
)


class CounterLayer(Enum):
    """System layers for categorization."""
    PATH = "path"
    STORE = "store"
    ZK = "zk"
    ASSEMBLER = "assembler"
    ORCHESTRATOR = "orchestrator"
    LEDGER = "ledger"
    AUTH = "auth"
    SERVICE = "service"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    trace_id: str = ""
    span_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# =============================================================================
# TRACING
# =============================================================================

@dataclass
class Span:
    """A unit of work within a trace."""
    trace_id: str
    span_id: str
    parent_span_id: str = ""
    name: str = ""
    layer: str = ""
    start_time: float = field(default_factory=time.monotonic)
    end_time: Optional[float] = None
    status: str = "ok"
    attributes: Dict[str, Any] = field(default_factory=dict)

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def set_status(self, status: str, message: str = "") -> None:
        self.status = status
        if message:
            self.attributes["status_message"] = message

    def end(self) -> None:
        if self.end_time is None:
            self.end_time = time.monotonic()

    @property
    def duration_ms(self) -> float:
        end = self.end_time or time.monotonic()
        return (end - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "name": self.name,
            "layer": self.layer,
            "duration_ms": round(self.duration_ms, 2),
            "status": self.status,
            "attributes": self.attributes,
        }


class SpanContext:
    """Context manager for spans."""

    def __init__(self, tracer: "Tracer", name: str, layer: CounterLayer, **attributes: Any):
        self.tracer = tracer
        self.name = name
        self.layer = layer
        self.attributes = attributes
        self.span: Optional[Span] = None
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> Span:
        self.span = self.tracer.start_span(self.name, self.layer, **self.attributes)
        self._token = span_id_var.set(self.span.span_id)
        return self.span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.span:
            if exc_type:
                self.span.set_status("error", str(exc_val))
                self.span.set_attribute("exception_type", exc_type.__name__)
            self.tracer.end_span(self.span)
        if self._token:
            span_id_var.reset(self._token)


class Tracer:
    """Creates spans and hands finished ones to exporters."""

    def __init__(self, service_name: str = "shielded-counter"):
        self.service_name = service_name
        self._lock = threading.RLock()
        self._exporters: List[Callable[[Span], None]] = []

    def add_exporter(self, exporter: Callable[[Span], None]) -> None:
        """Register ``exporter``; adding the same one twice is a no-op."""
        with self._lock:
            if exporter not in self._exporters:
                self._exporters.append(exporter)

    def start_trace(self) -> str:
        trace_id = uuid.uuid4().hex
        trace_id_var.set(trace_id)
        return trace_id

    def start_span(self, name: str, layer: CounterLayer, **attributes: Any) -> Span:
        return Span(
            trace_id=trace_id_var.get() or self.start_trace(),
            span_id=uuid.uuid4().hex[:16],
            parent_span_id=span_id_var.get(),
            name=name,
            layer=layer.value,
            attributes=attributes,
        )

    def end_span(self, span: Span) -> None:
        span.end()
        with self._lock:
            exporters = list(self._exporters)
        for exporter in exporters:
            try:
                exporter(span)
            except Exception:
                # Exporter failures must not break the traced operation
                logging.getLogger("shielded_counter.tracing").debug(
                    "span exporter failed", exc_info=True
                )

    def span(self, name: str, layer: CounterLayer, **attributes: Any) -> SpanContext:
        return SpanContext(self, name, layer, **attributes)


def log_span(span: Span) -> None:
    """Exporter that writes finished spans to the ``shielded_counter.tracing`` logger at DEBUG."""
    data = span.to_dict()
    logging.getLogger("shielded_counter.tracing").debug(
        f"Span {span.name} {span.status}",
        extra={
            "layer": span.layer,
            "operation": span.name,
            "duration_ms": data.pop("duration_ms"),
            "context": data,
        },
    )


# =============================================================================
# LOGGING
# =============================================================================

class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                trace_id=trace_id_var.get(),
                span_id=span_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )
            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(logging.StreamHandler):
    """Human-readable single-line handler used when log_format is 'text'."""

    def __init__(self, stream: Any = None):
        super().__init__(stream or sys.stderr)
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Install a single handler on the package root logger and log finished spans."""
    root = logging.getLogger("shielded_counter")
    for h in list(root.handlers):
        root.removeHandler(h)
    handler: logging.Handler = StructuredHandler(stream) if fmt == "json" else TextHandler(stream)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))
    get_tracer().add_exporter(log_span)


class CounterLogger:
    """
    Structured logger for engine components.

    Records go to ``shielded_counter.<layer>.<name>`` and carry the layer,
    operation and keyword context as structured fields.
    """

    def __init__(self, name: str, layer: CounterLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"shielded_counter.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


_tracer: Optional[Tracer] = None


def get_tracer() -> Tracer:
    """Get the global tracer instance."""
    global _tracer
    if _tracer is None:
        _tracer = Tracer()
    return _tracer


def get_logger(name: str, layer: CounterLayer) -> CounterLogger:
    return CounterLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: CounterLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging synchronous operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# =============================================================================
# AUDIT
# =============================================================================

@dataclass
class AuditEvent:
    """Audit event for state-changing outcomes."""
    event_id: str
    timestamp: str
    account_id: str
    action: str
    outcome: str  # committed, failed, rejected
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    event_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Tamper-evident audit trail with hash chaining.

    Each event hash covers the event body and the previous hash, so dropping
    or reordering entries breaks the chain.
    """

    def __init__(self, logger: CounterLogger, max_events: int = 10000):
        self._logger = logger
        self._last_hash: str = "genesis"
        self._events: List[AuditEvent] = []
        self._base_hash: str = "genesis"
        self._max_events = max_events
        self._lock = threading.Lock()

    def _compute_hash(self, event: AuditEvent, previous: str) -> str:
        body = {k: v for k, v in event.to_dict().items() if k != "event_hash"}
        data = json.dumps(body, sort_keys=True, default=str) + previous
        return hashlib.sha256(data.encode()).hexdigest()

    def log(self, account_id: str, action: str, outcome: str, **details: Any) -> AuditEvent:
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            account_id=account_id,
            action=action,
            outcome=outcome,
            correlation_id=get_correlation_id(),
            details=details,
        )
        with self._lock:
            event.event_hash = self._compute_hash(event, self._last_hash)
            self._last_hash = event.event_hash
            self._events.append(event)
            if len(self._events) > self._max_events:
                dropped = self._events[: -self._max_events]
                self._base_hash = dropped[-1].event_hash
                self._events = self._events[-self._max_events:]

        self._logger.info(
            f"AUDIT: {action} {outcome} for {account_id}",
            operation="audit",
            event_id=event.event_id,
            event_hash=event.event_hash,
            **details,
        )
        return event

    def events(self, account_id: Optional[str] = None) -> List[AuditEvent]:
        with self._lock:
            if account_id is None:
                return list(self._events)
            return [e for e in self._events if e.account_id == account_id]

    def verify_chain(self) -> bool:
        """Recompute the hash chain over the retained events."""
        with self._lock:
            events = list(self._events)
            previous = self._base_hash
        for event in events:
            if self._compute_hash(event, previous) != event.event_hash:
                return False
            previous = event.event_hash
        return True
