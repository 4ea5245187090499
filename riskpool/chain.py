"""
Host primitives consumed by the ledger core.

The core never moves value itself. It asks a LedgerAdapter to transfer an
amount between accounts and treats the answer as all-or-nothing, and it reads
the current block height from a HeightClock. Both are supplied by the host;
InMemoryLedger and ManualClock are the reference adapters used by tests and
embedded deployments.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, runtime_checkable

from riskpool.errors import InvariantViolation, TransferFailed
from riskpool.hardening import InvariantChecker
from riskpool.observability import RiskPoolLayer, get_logger

logger = get_logger("chain", RiskPoolLayer.LEDGER)

ESCROW_PREFIX = "escrow:pool:"


def escrow_account(pool_id: int) -> str:
    """Ledger account that holds a pool's stakes and premiums."""
    return f"{ESCROW_PREFIX}{pool_id}"


# =============================================================================
# CLOCK
# =============================================================================

@runtime_checkable
class HeightClock(Protocol):
    """Monotonically non-decreasing block height supplied by the host."""

    def current_height(self) -> int:
        ...


class ManualClock:
    """Height clock advanced explicitly by the host or a test."""

    def __init__(self, height: int = 0):
        if height < 0:
            raise ValueError("height cannot be negative")
        self._height = height
        self._lock = threading.Lock()

    def current_height(self) -> int:
        with self._lock:
            return self._height

    def advance(self, blocks: int = 1) -> int:
        with self._lock:
            return self._move_to(self._height + blocks)

    def set_height(self, height: int) -> int:
        with self._lock:
            return self._move_to(height)

    def _move_to(self, height: int) -> int:
        InvariantChecker.check_monotonic_increase("block height", self._height, height)
        self._height = height
        return self._height


# =============================================================================
# LEDGER ADAPTER
# =============================================================================

@dataclass(frozen=True)
class TransferResult:
    """Outcome of a ledger transfer."""
    ok: bool
    amount: int
    source: str
    destination: str
    error: Optional[str] = None  # TransferFailed.INSUFFICIENT_FUNDS / TRANSFER_REJECTED
    transfer_id: Optional[int] = None

    def raise_for_error(self) -> "TransferResult":
        if not self.ok:
            raise TransferFailed(
                self.error or TransferFailed.TRANSFER_REJECTED,
                self.amount,
                self.source,
                self.destination,
            )
        return self


@runtime_checkable
class LedgerAdapter(Protocol):
    """
    Protocol for the surrounding account system.

    A transfer either moves the full amount or nothing at all.
    """

    def transfer(self, amount: int, source: str, destination: str) -> TransferResult:
        ...

    def balance_of(self, account: str) -> int:
        ...


@dataclass(frozen=True)
class JournalEntry:
    transfer_id: int
    amount: int
    source: str
    destination: str


@dataclass
class InMemoryLedger:
    """
    Reference ledger with integral balances and a transfer journal.

    Accounts are created on first credit. reject_next() makes the next N
    transfers fail with TRANSFER_REJECTED so callers can exercise rollback.
    """
    _balances: Dict[str, int] = field(default_factory=dict)
    _journal: List[JournalEntry] = field(default_factory=list)
    _reject_remaining: int = 0
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def credit(self, account: str, amount: int) -> int:
        """Mint funds into an account (host funding, not a transfer)."""
        if amount < 0:
            raise InvariantViolation(f"cannot credit negative amount {amount}")
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount
            return self._balances[account]

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def reject_next(self, count: int = 1) -> None:
        with self._lock:
            self._reject_remaining += count

    def transfer(self, amount: int, source: str, destination: str) -> TransferResult:
        with self._lock:
            if self._reject_remaining > 0:
                self._reject_remaining -= 1
                logger.warning(
                    "Transfer rejected by ledger",
                    operation="transfer",
                    amount=amount, source=source, destination=destination,
                )
                return TransferResult(False, amount, source, destination, TransferFailed.TRANSFER_REJECTED)

            if amount <= 0 or source == destination:
                return TransferResult(False, amount, source, destination, TransferFailed.TRANSFER_REJECTED)

            available = self._balances.get(source, 0)
            if available < amount:
                logger.warning(
                    "Transfer refused: insufficient funds",
                    operation="transfer",
                    amount=amount, source=source, available=available,
                )
                return TransferResult(False, amount, source, destination, TransferFailed.INSUFFICIENT_FUNDS)

            self._balances[source] = available - amount
            self._balances[destination] = self._balances.get(destination, 0) + amount
            entry = JournalEntry(len(self._journal) + 1, amount, source, destination)
            self._journal.append(entry)

        logger.debug(
            "Transfer settled",
            operation="transfer",
            transfer_id=entry.transfer_id, amount=amount, source=source, destination=destination,
        )
        return TransferResult(True, amount, source, destination, transfer_id=entry.transfer_id)

    @property
    def journal(self) -> List[JournalEntry]:
        with self._lock:
            return list(self._journal)

    def transfers_to(self, destination: str, source: Optional[str] = None) -> List[JournalEntry]:
        with self._lock:
            return [
                e for e in self._journal
                if e.destination == destination and (source is None or e.source == source)
            ]

    def total_supply(self) -> int:
        with self._lock:
            return sum(self._balances.values())
