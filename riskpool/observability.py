"""
Risk Pool Observability

Structured logging and a tamper-evident audit trail for the ledger core.
Provides correlation IDs, context propagation and JSON log events.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Ledger Core Code                      │
    │  logger.info("msg", claim_id=x)   audit.log("claim.…")   │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │              RiskPoolLogger / AuditLogger                │
    │  Context propagation, correlation IDs, hash chaining    │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                   logging handlers                       │
    │        StructuredHandler (json) │ StreamHandler (text)   │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
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
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from riskpool.core import canonical_json_bytes, sha256_bytes

ROOT_LOGGER_NAME = "riskpool"

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class RiskPoolLayer(Enum):
    """Ledger core layers for categorization."""
    STORE = "store"
    LEDGER = "ledger"
    POOLS = "pools"
    POLICIES = "policies"
    FRAUD = "fraud"
    CLAIMS = "claims"
    CONFIG = "config"
    AUDIT = "audit"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
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


_handler_lock = threading.Lock()


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> logging.Logger:
    """Install exactly one handler on the package logger."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    with _handler_lock:
        for existing in list(root.handlers):
            if getattr(existing, "_riskpool_handler", False):
                root.removeHandler(existing)

        if fmt == "json":
            handler: logging.Handler = StructuredHandler(stream)
        else:
            handler = logging.StreamHandler(stream or sys.stderr)
            handler.setFormatter(logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            ))
        handler._riskpool_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
        root.setLevel(getattr(logging, level.upper()))
    return root


class RiskPoolLogger:
    """
    Structured logger for ledger components.

    Automatically includes correlation IDs and layer information
    in all log events.
    """

    def __init__(self, name: str, layer: RiskPoolLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

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
        level = logging.DEBUG if success else logging.WARNING
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
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, minting one if absent."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: RiskPoolLayer) -> RiskPoolLogger:
    """Get a logger for a ledger component."""
    return RiskPoolLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: RiskPoolLogger,
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


# =============================================================================
# AUDIT LOGGER
# =============================================================================

@dataclass
class AuditEvent:
    """An audit log entry."""
    event_id: str
    action: str
    height: int
    actor: str
    resource_type: str
    resource_id: str
    outcome: str  # success, failure
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    correlation_id: str = ""

    # Tamper evidence
    previous_event_digest: Optional[str] = None
    event_digest: str = ""

    def __post_init__(self):
        if not self.event_digest:
            self.event_digest = self.compute_digest()

    def compute_digest(self) -> str:
        content = {
            "event_id": self.event_id,
            "action": self.action,
            "height": self.height,
            "actor": self.actor,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "outcome": self.outcome,
            "details": {k: str(v) for k, v in self.details.items()},
            "timestamp": self.timestamp,
            "previous_event_digest": self.previous_event_digest,
        }
        return sha256_bytes(canonical_json_bytes(content))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "action": self.action,
            "height": self.height,
            "actor": self.actor,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "outcome": self.outcome,
            "details": self.details,
            "timestamp": self.timestamp,
            "correlation_id": self.correlation_id,
            "event_digest": self.event_digest,
        }


class AuditLogger:
    """
    Tamper-evident audit logger.

    Each event includes a hash chain linking to the previous event,
    making it possible to detect log tampering.
    """

    def __init__(self, logger: Optional[RiskPoolLogger] = None):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()
        self._logger = logger or get_logger("audit", RiskPoolLayer.AUDIT)

    def log(
        self,
        action: str,
        height: int,
        actor: str,
        resource_type: str,
        resource_id: Any,
        outcome: str = "success",
        **details: Any,
    ) -> AuditEvent:
        """Append an audit event to the chain."""
        with self._lock:
            previous_digest = self._events[-1].event_digest if self._events else None
            event = AuditEvent(
                event_id=f"evt-{len(self._events) + 1:012d}",
                action=action,
                height=height,
                actor=actor,
                resource_type=resource_type,
                resource_id=str(resource_id),
                outcome=outcome,
                details=details,
                correlation_id=get_correlation_id(),
                previous_event_digest=previous_digest,
            )
            self._events.append(event)

        self._logger.info(
            f"AUDIT: {action} on {resource_type}/{resource_id}",
            operation="audit",
            event_id=event.event_id,
            outcome=outcome,
            event_digest=event.event_digest,
        )
        return event

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Verify the audit log chain integrity.

        Returns (valid, first_invalid_index).
        """
        with self._lock:
            for i, event in enumerate(self._events):
                if event.compute_digest() != event.event_digest:
                    return (False, i)
                if i > 0 and event.previous_event_digest != self._events[i - 1].event_digest:
                    return (False, i)
            return (True, None)

    def get_events(
        self,
        action: Optional[str] = None,
        resource_id: Optional[Any] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events."""
        with self._lock:
            events = list(self._events)

        if action:
            events = [e for e in events if e.action == action]
        if resource_id is not None:
            events = [e for e in events if e.resource_id == str(resource_id)]

        return events[-limit:]

    def count(self, action: str, resource_id: Optional[Any] = None) -> int:
        with self._lock:
            return sum(
                1 for e in self._events
                if e.action == action and (resource_id is None or e.resource_id == str(resource_id))
            )

    def export(self) -> List[Dict[str, Any]]:
        """Export all events as dicts."""
        with self._lock:
            return [e.to_dict() for e in self._events]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
