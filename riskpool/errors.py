"""
Risk Pool Error Taxonomy

Every failure raised by the ledger core is a RiskPoolError subclass carrying a
stable machine-readable code and a retryable flag. Caller-correctable errors
(bad input, duplicate vote, expired claim) are not retryable; systemic ones
(ledger transfer failure, invariant breach) are.

    RiskPoolError
    ├── NotFound ─── PoolNotFound │ PolicyNotFound │ ClaimNotFound
    ├── Unauthorized
    ├── InvalidInput ─── InvalidAmount │ ValidationErrors
    ├── AlreadyVoted
    ├── ClaimExpired
    ├── PoolInactive
    ├── NotPending ─── AlreadyFinalized │ ClaimNotReady
    ├── TransferFailed
    └── InvariantViolation

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class RiskPoolError(Exception):
    """Base class for all ledger core errors."""

    code: str = "riskpool_error"
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: str(v) for k, v in self.details.items()},
        }


# =============================================================================
# LOOKUP FAILURES
# =============================================================================

class NotFound(RiskPoolError):
    """A referenced pool, policy or claim does not exist."""
    code = "not_found"


class PoolNotFound(NotFound):
    code = "pool_not_found"

    def __init__(self, pool_id: int):
        self.pool_id = pool_id
        super().__init__(f"pool {pool_id} not found", pool_id=pool_id)


class PolicyNotFound(NotFound):
    code = "policy_not_found"

    def __init__(self, holder: str, pool_id: int):
        self.holder = holder
        self.pool_id = pool_id
        super().__init__(
            f"no policy for holder {holder} on pool {pool_id}",
            holder=holder,
            pool_id=pool_id,
        )


class ClaimNotFound(NotFound):
    code = "claim_not_found"

    def __init__(self, claim_id: int):
        self.claim_id = claim_id
        super().__init__(f"claim {claim_id} not found", claim_id=claim_id)


# =============================================================================
# CALLER-CORRECTABLE FAILURES
# =============================================================================

class Unauthorized(RiskPoolError):
    """Caller lacks the standing required for the operation."""
    code = "unauthorized"


class InvalidInput(RiskPoolError):
    """A single input field failed validation."""
    code = "invalid_input"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(f"{field}: {message}", field=field)
        self.reason = message


class InvalidAmount(InvalidInput):
    """Non-positive, below-minimum or over-coverage amount."""
    code = "invalid_amount"


class ValidationErrors(InvalidInput):
    """Several input fields failed validation at once."""
    code = "validation_errors"

    def __init__(self, errors: List[InvalidInput]):
        self.errors = errors
        messages = "; ".join(e.message for e in errors)
        super().__init__("input", f"Validation failed: {messages}")
        self.message = f"Validation failed: {messages}"


class AlreadyVoted(RiskPoolError):
    code = "already_voted"

    def __init__(self, claim_id: int, voter: str):
        self.claim_id = claim_id
        self.voter = voter
        super().__init__(
            f"{voter} already voted on claim {claim_id}",
            claim_id=claim_id,
            voter=voter,
        )


class ClaimExpired(RiskPoolError):
    code = "claim_expired"

    def __init__(self, claim_id: int, expires_at: int, current_height: int):
        self.claim_id = claim_id
        self.expires_at = expires_at
        self.current_height = current_height
        super().__init__(
            f"claim {claim_id} expired at height {expires_at} (now {current_height})",
            claim_id=claim_id,
            expires_at=expires_at,
            current_height=current_height,
        )


class PoolInactive(RiskPoolError):
    code = "pool_inactive"

    def __init__(self, pool_id: int):
        self.pool_id = pool_id
        super().__init__(f"pool {pool_id} is not accepting stakes or coverage", pool_id=pool_id)


class NotPending(RiskPoolError):
    """Resolution attempted on a claim that is not in a resolvable stage."""
    code = "not_pending"

    def __init__(self, claim_id: int, status: str, message: Optional[str] = None):
        self.claim_id = claim_id
        self.status = status
        super().__init__(
            message or f"claim {claim_id} is {status}, expected pending",
            claim_id=claim_id,
            status=status,
        )


class AlreadyFinalized(NotPending):
    """The claim already reached a terminal status."""
    code = "already_finalized"

    def __init__(self, claim_id: int, status: str):
        super().__init__(claim_id, status, f"claim {claim_id} already finalized as {status}")


class ClaimNotReady(NotPending):
    """The claim is neither expired nor has it reached the vote threshold."""
    code = "claim_not_ready"

    def __init__(self, claim_id: int, votes: int, required: int, expires_at: int):
        self.votes = votes
        self.required = required
        self.expires_at = expires_at
        super().__init__(
            claim_id,
            "pending",
            f"claim {claim_id} has {votes}/{required} votes and expires at {expires_at}",
        )


# =============================================================================
# SYSTEMIC FAILURES
# =============================================================================

class TransferFailed(RiskPoolError):
    """The ledger adapter refused or could not complete a transfer."""
    code = "transfer_failed"
    retryable = True

    INSUFFICIENT_FUNDS = "insufficient_funds"
    TRANSFER_REJECTED = "transfer_rejected"

    def __init__(self, reason: str, amount: int, source: str, destination: str):
        self.reason = reason
        self.amount = amount
        self.source = source
        self.destination = destination
        super().__init__(
            f"transfer of {amount} from {source} to {destination} failed: {reason}",
            reason=reason,
            amount=amount,
            source=source,
            destination=destination,
        )


class InvariantViolation(RiskPoolError):
    """A state machine or balance invariant would be broken."""
    code = "invariant_violation"
    retryable = True
