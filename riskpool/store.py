"""
State Store

Thread-safe key-value tables for pools, stakes, policies, claims and votes,
plus the identity allocator that hands out pool and claim ids.

The store has no implicit transactions: callers group the reads and writes of
one operation inside ``transaction()``. The block runs under the store lock.
A table is copied the first time the block writes to it; if the block raises,
those tables and every id sequence are restored, so a failed operation leaves
no trace.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Tuple

from riskpool.hardening import AtomicCounter
from riskpool.observability import RiskPoolLayer, get_logger

logger = get_logger("store", RiskPoolLayer.STORE)

POOLS = "pools"
STAKES = "stakes"
POLICIES = "policies"
CLAIMS = "claims"
VOTES = "votes"

TABLES: Tuple[str, ...] = (POOLS, STAKES, POLICIES, CLAIMS, VOTES)


class IdAllocator:
    """Named monotonically increasing id sequences starting at 1."""

    def __init__(self):
        self._sequences: Dict[str, AtomicCounter] = {}
        self._lock = threading.Lock()

    def _counter(self, sequence: str) -> AtomicCounter:
        with self._lock:
            counter = self._sequences.get(sequence)
            if counter is None:
                counter = self._sequences[sequence] = AtomicCounter(0)
            return counter

    def next_id(self, sequence: str) -> int:
        return self._counter(sequence).increment()

    def peek(self, sequence: str) -> int:
        """Last id handed out (0 if none)."""
        return self._counter(sequence).get()

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {name: c.get() for name, c in self._sequences.items()}

    def restore(self, snapshot: Dict[str, int]) -> None:
        with self._lock:
            for name in list(self._sequences):
                if name not in snapshot:
                    del self._sequences[name]
            for name, value in snapshot.items():
                self._sequences.setdefault(name, AtomicCounter(0)).reset(value)


class StateStore:
    """
    In-memory table store with get / put / merge and rollback transactions.

    Records are expected to be immutable dataclasses; ``merge`` produces a new
    record with ``dataclasses.replace`` and swaps it in atomically.
    """

    def __init__(self, ids: Optional[IdAllocator] = None):
        self._tables: Dict[str, Dict[Hashable, Any]] = {name: {} for name in TABLES}
        self._lock = threading.RLock()
        self._depth = 0
        self._undo: Optional[Dict[str, Dict[Hashable, Any]]] = None
        self._version = AtomicCounter(0)
        self.ids = ids or IdAllocator()

    def _table(self, table: str) -> Dict[Hashable, Any]:
        try:
            return self._tables[table]
        except KeyError:
            raise KeyError(f"unknown table: {table}") from None

    def _writable(self, table: str) -> Dict[Hashable, Any]:
        """Table about to be written; saved for rollback on first write in a transaction."""
        rows = self._table(table)
        if self._undo is not None and table not in self._undo:
            self._undo[table] = dict(rows)
        return rows

    # -------------------------------------------------------------------------
    # primitives
    # -------------------------------------------------------------------------

    def get(self, table: str, key: Hashable) -> Optional[Any]:
        with self._lock:
            return self._table(table).get(key)

    def contains(self, table: str, key: Hashable) -> bool:
        with self._lock:
            return key in self._table(table)

    def put(self, table: str, key: Hashable, record: Any) -> Any:
        """Full replace."""
        with self._lock:
            self._writable(table)[key] = record
            self._version.increment()
        return record

    def merge(self, table: str, key: Hashable, **fields: Any) -> Any:
        """Read-modify-write of selected fields, atomic per key."""
        with self._lock:
            current = self._table(table).get(key)
            if current is None:
                raise KeyError(f"{table}[{key!r}] does not exist")
            updated = replace(current, **fields)
            self._writable(table)[key] = updated
            self._version.increment()
            return updated

    def items(self, table: str) -> List[Tuple[Hashable, Any]]:
        with self._lock:
            return list(self._table(table).items())

    def count(self, table: str, predicate: Optional[Callable[[Hashable, Any], bool]] = None) -> int:
        with self._lock:
            if predicate is None:
                return len(self._table(table))
            return sum(1 for k, v in self._table(table).items() if predicate(k, v))

    @property
    def version(self) -> int:
        """Number of committed writes since creation."""
        return self._version.get()

    # -------------------------------------------------------------------------
    # transactions
    # -------------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @contextmanager
    def transaction(self, name: str = "") -> Iterator["StateStore"]:
        """Run a block atomically; roll back written tables and ids if it raises.

        Nested transactions join the outermost one.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            ids = self.ids.snapshot()
            version = self._version.get()
            self._undo = {}
            self._depth = 1
            try:
                yield self
            except BaseException as exc:
                self._tables.update(self._undo)
                self.ids.restore(ids)
                self._version.reset(version)
                logger.debug(
                    "Transaction rolled back",
                    operation=name or "transaction",
                    error=type(exc).__name__,
                )
                raise
            finally:
                self._undo = None
                self._depth = 0

    def snapshot(self) -> Dict[str, Dict[Hashable, Any]]:
        """Shallow copy of every table (records are immutable)."""
        with self._lock:
            return {t: dict(rows) for t, rows in self._tables.items()}

    def export(self) -> Dict[str, List[Dict[str, Any]]]:
        """Export every table as plain dicts."""
        with self._lock:
            out: Dict[str, List[Dict[str, Any]]] = {}
            for t, rows in self._tables.items():
                out[t] = [
                    {"key": list(k) if isinstance(k, tuple) else k,
                     "value": v.to_dict() if hasattr(v, "to_dict") else v}
                    for k, v in rows.items()
                ]
            return out
