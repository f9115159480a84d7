"""
Agreement Observability

Structured logging, tracing and audit events for proving and testing.
Every log line carries the correlation, trace and span ids of the
current context so one guarded change can be followed across replicas.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Protocol Code                         │
    │  logger.info("msg", token=t)   with tracer.span(...)    │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │               AgreementLogger / Tracer                   │
    │  Context propagation, correlation IDs, structured data  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                    Event Handlers                        │
    │        StructuredHandler (json) │ text formatter         │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, TypeVar

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)
span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "span_id", default=""
)
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trace_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(Enum):
    """Agreement components, used to tag log lines and spans."""
    SNAPSHOT = "snapshot"
    CONDITION = "condition"
    LEDGER = "ledger"
    REGISTRY = "registry"
    CONFIG = "config"


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
    component: str = ""
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

    def to_text(self) -> str:
        ctx = " ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        line = f"{self.timestamp} {self.level.upper():8} {self.logger}: {self.message}"
        return f"{line} {ctx}" if ctx else line


@dataclass
class Span:
    """
    Tracing span.

    One unit of work (a prove or a test) with timing, attributes and a
    parent link.
    """
    trace_id: str
    span_id: str
    parent_span_id: str = ""
    name: str = ""
    component: str = ""
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
            "component": self.component,
            "duration_ms": round(self.duration_ms, 2),
            "status": self.status,
            "attributes": self.attributes,
        }


class SpanContext:
    """Context manager for spans."""

    def __init__(self, tracer: "Tracer", name: str, component: Component, **attributes: Any):
        self.tracer = tracer
        self.name = name
        self.component = component
        self.attributes = attributes
        self.span: Optional[Span] = None
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> Span:
        self.span = self.tracer.start_span(self.name, self.component, **self.attributes)
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

    def __init__(self, service_name: str = "agreement"):
        self.service_name = service_name
        self.enabled = True
        self._spans: Dict[str, Span] = {}
        self._lock = threading.RLock()
        self._exporters: List[Callable[[Span], None]] = []

    def add_exporter(self, exporter: Callable[[Span], None]) -> None:
        self._exporters.append(exporter)

    def start_trace(self) -> str:
        trace_id = uuid.uuid4().hex
        trace_id_var.set(trace_id)
        return trace_id

    def start_span(self, name: str, component: Component, **attributes: Any) -> Span:
        trace_id = trace_id_var.get() or self.start_trace()
        span = Span(
            trace_id=trace_id,
            span_id=uuid.uuid4().hex[:16],
            parent_span_id=span_id_var.get(),
            name=name,
            component=component.value,
            attributes=attributes,
        )
        with self._lock:
            self._spans[span.span_id] = span
        return span

    def end_span(self, span: Span) -> None:
        span.end()
        with self._lock:
            self._spans.pop(span.span_id, None)
        if not self.enabled:
            return
        for exporter in self._exporters:
            try:
                exporter(span)
            except Exception:
                logging.getLogger("agreement.tracing").warning(
                    "span exporter failed", exc_info=True
                )

    def span(self, name: str, component: Component, **attributes: Any) -> SpanContext:
        return SpanContext(self, name, component, **attributes)


class StructuredHandler(logging.Handler):
    """Logging handler that writes one JSON (or text) event per line."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self.stream = stream
        self.fmt = fmt

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
                component=getattr(record, "component", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )
            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))
            line = event.to_text() if self.fmt == "text" else event.to_json()
            stream = self.stream or sys.stderr
            stream.write(line + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class AgreementLogger:
    """
    Structured logger for agreement components.

    Includes correlation ids, trace context and the component name in
    every event.
    """

    def __init__(
        self,
        name: str,
        component: Component,
        level: Optional[LogLevel] = None,
        fmt: Optional[str] = None,
    ):
        self.name = name
        self.component = component
        self._logger = logging.getLogger(f"agreement.{component.value}.{name}")
        if level is None or fmt is None:
            cfg_level, cfg_fmt = _configured_logging()
            level = level or cfg_level
            fmt = fmt or cfg_fmt
        self._logger.setLevel(getattr(logging, level.value.upper()))

        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler(fmt=fmt))

    @property
    def logger(self) -> logging.Logger:
        return self._logger

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
            "component": self.component.value,
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


def _configured_logging() -> Tuple[LogLevel, str]:
    from agreement.config import get_config

    obs = get_config().observability
    return LogLevel(obs.log_level.get()), obs.log_format.get()


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
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
        from agreement.config import get_config

        _tracer = Tracer()
        _tracer.enabled = get_config().observability.enable_tracing.get()
    return _tracer


def get_logger(name: str, component: Component) -> AgreementLogger:
    return AgreementLogger(name, component)


T = TypeVar("T")


def timed_operation(
    logger: AgreementLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
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


# Audit trail of proofs written and verdicts reached
@dataclass
class AuditEvent:
    """Audit event for one prove or test."""
    event_id: str
    timestamp: str
    principal_id: str
    action: str
    token: str
    outcome: str
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Hash-chained audit log.

    Each event hash covers the event and the previous hash, so removing
    or reordering entries is detectable. Every event goes to the audit
    logger; only the most recent ``max_events`` are kept in memory.
    """

    def __init__(self, logger: AgreementLogger, max_events: int = 256):
        self._logger = logger
        self._last_hash: str = "genesis"
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    @property
    def last_hash(self) -> str:
        return self._last_hash

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def _compute_hash(self, event: AuditEvent, previous: str) -> str:
        data = json.dumps(event.to_dict(), sort_keys=True, default=str) + previous
        return hashlib.sha256(data.encode()).hexdigest()

    def log(
        self,
        principal_id: str,
        action: str,
        token: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            principal_id=principal_id,
            action=action,
            token=token,
            outcome=outcome,
            correlation_id=get_correlation_id(),
            details=details,
        )

        with self._lock:
            event_hash = self._compute_hash(event, self._last_hash)
            self._last_hash = event_hash
            self._events.append(event)

        self._logger.info(
            f"AUDIT: {action} {token or '-'} {outcome}",
            operation="audit",
            event_hash=event_hash,
            **event.to_dict(),
        )
        return event
