"""Domain events for the risk pool ledger.

Events are immutable facts published after an operation has committed. They
never drive state changes inside the core; subscribers (indexers, notifiers,
tests) observe them.

Example:
    bus = EventBus()

    @bus.subscribe(ClaimApproved)
    def notify(event):
        print(event.claim_id, event.amount)
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

from riskpool.core import canonical_json_bytes, sha256_bytes

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all ledger events.

    Each event has a unique ID, a wall-clock timestamp, the block height at
    which it was committed and an optional correlation ID.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    height: int = 0
    correlation_id: Optional[str] = None

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def digest(self) -> str:
        """Deterministic digest of the event content."""
        return sha256_bytes(canonical_json_bytes(self.to_dict()))


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class PoolCreated(Event):
    pool_id: int = 0
    name: str = ""
    coverage_type: str = ""
    admin: str = ""


@dataclass
class StakeDeposited(Event):
    pool_id: int = 0
    staker: str = ""
    amount: int = 0
    total_staked: int = 0


@dataclass
class CoveragePurchased(Event):
    pool_id: int = 0
    holder: str = ""
    coverage_amount: int = 0
    premium_paid: int = 0
    end_height: int = 0


@dataclass
class ClaimFiled(Event):
    claim_id: int = 0
    pool_id: int = 0
    claimer: str = ""
    amount: int = 0
    expires_at: int = 0


@dataclass
class VoteCast(Event):
    claim_id: int = 0
    voter: str = ""
    decision: bool = False
    yes_votes: int = 0
    no_votes: int = 0


@dataclass
class ClaimApproved(Event):
    """Emitted once per claim, when the payout has settled."""
    claim_id: int = 0
    claimer: str = ""
    amount: int = 0
    strategy: str = ""
    transfer_id: Optional[int] = None


@dataclass
class ClaimRejected(Event):
    claim_id: int = 0
    strategy: str = ""
    yes_votes: int = 0
    no_votes: int = 0


@dataclass
class ClaimEscalated(Event):
    """Emitted when the risk-weighted path parks a claim for manual review."""
    claim_id: int = 0
    fraud_score: int = 0
    risk_threshold: int = 0


@dataclass
class PolicyConsumed(Event):
    holder: str = ""
    pool_id: int = 0
    claim_id: int = 0


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class EventBus:
    """
    In-memory synchronous event bus.

    Handlers run in priority order (higher first). A failing handler is
    reported through ``on_error`` and never affects the publisher, because
    events are published after the ledger state has already committed.
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator to subscribe a handler to event types."""
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                r for r in self._handlers
                if any(isinstance(event, t) for t in r.event_types)
                and (r.filter_func is None or r.filter_func(event))
            ]

        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            logger.warning("%s", error)
            if self._on_error:
                self._on_error(error)

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


class EventRecorder:
    """Subscriber that keeps every event it sees, in order."""

    def __init__(self, bus: EventBus, *event_types: Type[Event]):
        self.events: List[Event] = []
        bus.subscribe(*event_types)(self.events.append)

    def of_type(self, event_type: Type[Event]) -> List[Event]:
        return [e for e in self.events if isinstance(e, event_type)]
