"""
Ledger records.

Records are immutable. Every mutation is expressed as a function that takes a
record and returns a new one, so each transition can be checked and tested in
isolation and a half-applied update can never be observed.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Set

from riskpool.core import NO_EVIDENCE, has_evidence
from riskpool.errors import InvalidAmount
from riskpool.hardening import InvariantChecker


# =============================================================================
# POOL
# =============================================================================

@dataclass(frozen=True)
class Pool:
    """A shared escrow of staked funds for one coverage type."""
    pool_id: int
    name: str
    coverage_type: str
    premium_rate_bps: int
    min_stake: int
    admin: str
    created_at: int
    total_staked: int = 0
    active: bool = True

    def with_stake(self, amount: int) -> "Pool":
        total = self.total_staked + amount
        InvariantChecker.check_non_negative("total_staked", total)
        return replace(self, total_staked=total)

    def premium_for(self, coverage_amount: int) -> int:
        return coverage_amount * self.premium_rate_bps // 10000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "name": self.name,
            "coverage_type": self.coverage_type,
            "premium_rate_bps": self.premium_rate_bps,
            "min_stake": self.min_stake,
            "admin": self.admin,
            "created_at": self.created_at,
            "total_staked": self.total_staked,
            "active": self.active,
        }


# =============================================================================
# POLICY
# =============================================================================

@dataclass(frozen=True)
class Policy:
    """Coverage held by one holder against one pool."""
    holder: str
    pool_id: int
    premium_paid: int
    coverage_amount: int
    start_height: int
    end_height: int
    active: bool = True

    def __post_init__(self):
        if self.coverage_amount <= 0:
            raise InvalidAmount("coverage_amount", "must be positive", self.coverage_amount)

    def is_in_force(self, height: int) -> bool:
        return self.active and height < self.end_height

    def age_at(self, height: int) -> int:
        return height - self.start_height

    def deactivated(self) -> "Policy":
        return replace(self, active=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holder": self.holder,
            "pool_id": self.pool_id,
            "premium_paid": self.premium_paid,
            "coverage_amount": self.coverage_amount,
            "start_height": self.start_height,
            "end_height": self.end_height,
            "active": self.active,
        }


# =============================================================================
# CLAIM
# =============================================================================

class ClaimStatus(Enum):
    """
    States of a claim.

    pending is the only state with outgoing transitions. approved and rejected
    are terminal; manual-review waits for an external process.
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    MANUAL_REVIEW = "manual-review"

    def is_terminal(self) -> bool:
        return self in {ClaimStatus.APPROVED, ClaimStatus.REJECTED}


VALID_TRANSITIONS: Dict[ClaimStatus, Set[ClaimStatus]] = {
    ClaimStatus.PENDING: {
        ClaimStatus.APPROVED,
        ClaimStatus.REJECTED,
        ClaimStatus.MANUAL_REVIEW,
    },
    ClaimStatus.MANUAL_REVIEW: set(),
    ClaimStatus.APPROVED: set(),
    ClaimStatus.REJECTED: set(),
}


@dataclass(frozen=True)
class Claim:
    """A request for payout against a policy."""
    claim_id: int
    claimer: str
    pool_id: int
    amount: int
    description: str
    evidence: bytes
    created_at: int
    expires_at: int
    status: ClaimStatus = ClaimStatus.PENDING
    yes_votes: int = 0
    no_votes: int = 0

    @property
    def total_votes(self) -> int:
        return self.yes_votes + self.no_votes

    @property
    def has_evidence(self) -> bool:
        return has_evidence(self.evidence)

    def is_expired(self, height: int) -> bool:
        return height >= self.expires_at

    def majority_approves(self) -> bool:
        return self.yes_votes > self.no_votes

    def with_vote(self, decision: bool) -> "Claim":
        """Count one more vote."""
        if decision:
            return replace(self, yes_votes=self.yes_votes + 1)
        return replace(self, no_votes=self.no_votes + 1)

    def transition_to(self, target: ClaimStatus) -> "Claim":
        """Move to a new status, rejecting anything outside the table."""
        InvariantChecker.check_state_transition(self.status, target, VALID_TRANSITIONS)
        return replace(self, status=target)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "claimer": self.claimer,
            "pool_id": self.pool_id,
            "amount": self.amount,
            "description": self.description,
            "evidence": self.evidence.hex(),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "status": self.status.value,
            "yes_votes": self.yes_votes,
            "no_votes": self.no_votes,
        }


__all__ = [
    "NO_EVIDENCE",
    "Pool",
    "Policy",
    "Claim",
    "ClaimStatus",
    "VALID_TRANSITIONS",
]
