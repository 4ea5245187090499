"""
Claim Resolution Engine

The state machine at the heart of the ledger. It admits claims against
in-force policies, tallies votes, and resolves claims through one of two
strategies that share a single commit path:

    MAJORITY        yes > no once min_votes_required votes are in
    RISK_WEIGHTED   fraud score < risk_threshold -> majority decision
                    fraud score >= risk_threshold -> manual-review

State machine:

    ┌─────────┐  vote / resolve   ┌──────────┐
    │ PENDING │──────────────────▶│ APPROVED │  (pays claim.amount once)
    └────┬────┘                   └──────────┘
         │                        ┌──────────┐
         ├───────────────────────▶│ REJECTED │
         │                        └──────────┘
         │   risk >= threshold    ┌───────────────┐
         └───────────────────────▶│ MANUAL_REVIEW │  (held for review)
                                  └───────────────┘

Every operation holds the claim's lock and runs in one store transaction. The
escrow payout is the last step of the transaction: if the ledger refuses it,
the status change, the vote that triggered it and any policy consumption are
all rolled back. Audit entries and events are emitted only after commit.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from riskpool.chain import HeightClock, LedgerAdapter, escrow_account
from riskpool.config import RiskPoolConfig
from riskpool.core import NO_EVIDENCE
from riskpool.errors import (
    AlreadyFinalized,
    AlreadyVoted,
    ClaimExpired,
    ClaimNotFound,
    ClaimNotReady,
    InvalidAmount,
    InvalidInput,
    NotPending,
    PolicyNotFound,
    PoolNotFound,
    RiskPoolError,
    Unauthorized,
)
from riskpool.events import (
    ClaimApproved,
    ClaimEscalated,
    ClaimFiled,
    ClaimRejected,
    Event,
    EventBus,
    PolicyConsumed,
    VoteCast,
)
from riskpool.fraud import FraudAssessment, FraudWeights, calculate_fraud_score
from riskpool.hardening import Validators
from riskpool.models import Claim, ClaimStatus
from riskpool.observability import (
    AuditLogger,
    RiskPoolLayer,
    get_correlation_id,
    get_logger,
    timed_operation,
)
from riskpool.policies import PolicyRegistry
from riskpool.store import CLAIMS, POOLS, VOTES, StateStore

logger = get_logger("engine", RiskPoolLayer.CLAIMS)

CLAIM_SEQUENCE = "claim"


class ResolutionStrategy(Enum):
    """How a resolution call decides a pending claim."""
    MAJORITY = "majority"
    RISK_WEIGHTED = "risk-weighted"


@dataclass(frozen=True)
class ResolutionOutcome:
    """Result of one resolution attempt."""
    claim_id: int
    strategy: ResolutionStrategy
    status: ClaimStatus
    changed: bool = False
    paid_amount: int = 0
    transfer_id: Optional[int] = None
    fraud_score: Optional[int] = None
    policy_consumed: bool = False

    @property
    def finalized(self) -> bool:
        return self.status.is_terminal()

    @property
    def escalated(self) -> bool:
        return self.status == ClaimStatus.MANUAL_REVIEW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "changed": self.changed,
            "finalized": self.finalized,
            "paid_amount": self.paid_amount,
            "transfer_id": self.transfer_id,
            "fraud_score": self.fraud_score,
            "policy_consumed": self.policy_consumed,
        }


@dataclass
class _Effects:
    """Audit entries and events collected inside a transaction."""
    audits: List[Tuple[str, str, int, Dict[str, Any]]] = field(default_factory=list)
    events: List[Event] = field(default_factory=list)

    def audit(self, action: str, actor: str, claim_id: int, **details: Any) -> None:
        self.audits.append((action, actor, claim_id, details))

    def emit(self, event: Event) -> None:
        self.events.append(event)


class ClaimResolutionEngine:
    """
    Files, votes on and resolves claims.

    Lock order is claim lock, then store lock (taken by the transaction).
    """

    def __init__(
        self,
        store: StateStore,
        ledger: LedgerAdapter,
        clock: HeightClock,
        config: RiskPoolConfig,
        policies: PolicyRegistry,
        bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
        weights: Optional[FraudWeights] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._clock = clock
        self._config = config
        self._policies = policies
        self._bus = bus if bus is not None else EventBus()
        self._audit = audit if audit is not None else AuditLogger()
        self._weights = weights

        self._claim_locks: Dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # -------------------------------------------------------------------------
    # configuration
    # -------------------------------------------------------------------------

    @property
    def min_votes_required(self) -> int:
        return self._config.claims.min_votes_required.get()

    @property
    def claim_duration(self) -> int:
        return self._config.claims.claim_duration.get()

    @property
    def risk_threshold(self) -> int:
        return self._config.claims.risk_threshold.get()

    @property
    def weights(self) -> FraudWeights:
        return self._weights or FraudWeights.from_config(self._config.fraud)

    # -------------------------------------------------------------------------
    # plumbing
    # -------------------------------------------------------------------------

    def _claim_lock(self, claim_id: int) -> threading.RLock:
        """Lock for an existing claim. Unknown ids raise ClaimNotFound and get no lock."""
        with self._locks_guard:
            lock = self._claim_locks.get(claim_id)
            if lock is None:
                if not self._store.contains(CLAIMS, claim_id):
                    raise ClaimNotFound(claim_id)
                lock = self._claim_locks[claim_id] = threading.RLock()
            return lock

    @contextmanager
    def _reporting(self, operation: str, **context: Any) -> Iterator[None]:
        """Log typed failures with their error code before they propagate."""
        try:
            yield
        except RiskPoolError as exc:
            if exc.retryable:
                logger.error(f"{operation} failed: {exc.message}",
                             error_code=exc.code, operation=operation, **context)
            else:
                logger.warning(f"{operation} refused: {exc.message}",
                               error_code=exc.code, operation=operation, **context)
            raise

    def _flush(self, effects: _Effects, height: int) -> None:
        correlation_id = get_correlation_id()
        for action, actor, claim_id, details in effects.audits:
            self._audit.log(action, height, actor, "claim", claim_id, **details)
        for event in effects.events:
            event.height = height
            event.correlation_id = correlation_id
            self._bus.publish(event)

    def _require_claim(self, claim_id: int) -> Claim:
        claim = self._store.get(CLAIMS, claim_id)
        if claim is None:
            raise ClaimNotFound(claim_id)
        return claim

    # -------------------------------------------------------------------------
    # filing
    # -------------------------------------------------------------------------

    @timed_operation(logger, "file_claim")
    def file_claim(
        self,
        claimer: str,
        pool_id: int,
        amount: int,
        description: str = "",
        evidence: Any = None,
    ) -> int:
        """
        Admit a new pending claim against the claimer's in-force policy.

        The policy is checked at filing time only; later changes to it do not
        invalidate the claim.
        """
        with self._reporting("file_claim", claimer=claimer, pool_id=pool_id, amount=amount):
            claimer = Validators.validate_identity(claimer, "claimer").unwrap()
            amount = Validators.validate_amount(amount).unwrap()
            description = Validators.validate_string(
                description, "description", min_length=0,
                max_length=Validators.MAX_DESCRIPTION_LENGTH,
            ).unwrap()
            evidence = Validators.validate_evidence(evidence).unwrap()

            height = self._clock.current_height()
            with self._store.transaction("file_claim") as tx:
                policy = self._policies.get_policy(claimer, pool_id)
                if policy is None:
                    raise PolicyNotFound(claimer, pool_id)
                if not policy.is_in_force(height):
                    raise Unauthorized(
                        f"policy of {claimer} on pool {pool_id} is not in force",
                        holder=claimer, pool_id=pool_id,
                    )
                if tx.get(POOLS, pool_id) is None:
                    raise PoolNotFound(pool_id)
                if amount > policy.coverage_amount:
                    raise InvalidAmount(
                        "amount", f"Exceeds coverage ({policy.coverage_amount})", amount,
                    )

                claim_id = tx.ids.next_id(CLAIM_SEQUENCE)
                claim = tx.put(CLAIMS, claim_id, Claim(
                    claim_id=claim_id,
                    claimer=claimer,
                    pool_id=pool_id,
                    amount=amount,
                    description=description,
                    evidence=evidence,
                    created_at=height,
                    expires_at=height + self.claim_duration,
                ))

        effects = _Effects()
        effects.audit("claim.filed", claimer, claim_id, pool_id=pool_id, amount=amount,
                      expires_at=claim.expires_at, evidence=evidence != NO_EVIDENCE)
        effects.emit(ClaimFiled(claim_id=claim_id, pool_id=pool_id, claimer=claimer,
                                amount=amount, expires_at=claim.expires_at))
        self._flush(effects, height)
        logger.info("Claim filed", operation="file_claim", claim_id=claim_id,
                    claimer=claimer, pool_id=pool_id, amount=amount)
        return claim_id

    # -------------------------------------------------------------------------
    # voting
    # -------------------------------------------------------------------------

    @timed_operation(logger, "vote_on_claim")
    def vote_on_claim(self, claim_id: int, voter: str, decision: bool) -> ResolutionOutcome:
        """
        Record one vote and immediately run majority resolution.

        The vote and whatever resolution it triggers commit together; if the
        triggered payout fails the vote is not recorded either.
        """
        with self._reporting("vote_on_claim", claim_id=claim_id, voter=voter):
            voter = Validators.validate_identity(voter, "voter").unwrap()
            if not isinstance(decision, bool):
                raise InvalidInput("decision", "Expected boolean", decision)

            effects = _Effects()
            with self._claim_lock(claim_id):
                height = self._clock.current_height()
                with self._store.transaction("vote_on_claim") as tx:
                    claim = self._require_claim(claim_id)
                    if claim.is_expired(height):
                        raise ClaimExpired(claim_id, claim.expires_at, height)
                    if tx.contains(VOTES, (claim_id, voter)):
                        raise AlreadyVoted(claim_id, voter)
                    if claim.status.is_terminal():
                        raise AlreadyFinalized(claim_id, claim.status.value)
                    if claim.status != ClaimStatus.PENDING:
                        raise NotPending(claim_id, claim.status.value)

                    tx.put(VOTES, (claim_id, voter), decision)
                    claim = tx.put(CLAIMS, claim_id, claim.with_vote(decision))
                    effects.audit("claim.vote", voter, claim_id, decision=decision,
                                  yes_votes=claim.yes_votes, no_votes=claim.no_votes)
                    effects.emit(VoteCast(claim_id=claim_id, voter=voter, decision=decision,
                                          yes_votes=claim.yes_votes, no_votes=claim.no_votes))

                    outcome = self._resolve_in_transaction(
                        claim_id, ResolutionStrategy.MAJORITY, height, effects,
                    )

            self._flush(effects, height)

        logger.debug("Vote recorded", operation="vote_on_claim", claim_id=claim_id,
                     voter=voter, decision=decision, status=outcome.status.value)
        return outcome

    # -------------------------------------------------------------------------
    # resolution
    # -------------------------------------------------------------------------

    def process_claim_if_ready(self, claim_id: int) -> ResolutionOutcome:
        """Majority resolution. A no-op until enough votes are in."""
        return self.resolve(claim_id, ResolutionStrategy.MAJORITY)

    def process_claim_with_risk_assessment(self, claim_id: int) -> ResolutionOutcome:
        """Risk-weighted resolution of an expired or fully voted claim."""
        return self.resolve(claim_id, ResolutionStrategy.RISK_WEIGHTED)

    @timed_operation(logger, "resolve")
    def resolve(self, claim_id: int, strategy: ResolutionStrategy) -> ResolutionOutcome:
        """Resolve a claim with the given strategy."""
        strategy = ResolutionStrategy(strategy)
        with self._reporting("resolve", claim_id=claim_id, strategy=strategy.value):
            effects = _Effects()
            with self._claim_lock(claim_id):
                height = self._clock.current_height()
                with self._store.transaction(f"resolve:{strategy.value}"):
                    outcome = self._resolve_in_transaction(claim_id, strategy, height, effects)
            self._flush(effects, height)
        return outcome

    def _resolve_in_transaction(
        self,
        claim_id: int,
        strategy: ResolutionStrategy,
        height: int,
        effects: _Effects,
    ) -> ResolutionOutcome:
        if strategy == ResolutionStrategy.RISK_WEIGHTED:
            return self._resolve_risk_weighted(claim_id, height, effects)
        return self._resolve_majority(claim_id, effects)

    def _resolve_majority(self, claim_id: int, effects: _Effects) -> ResolutionOutcome:
        strategy = ResolutionStrategy.MAJORITY
        claim = self._require_claim(claim_id)

        # Terminal and manual-review claims are left alone; nothing is paid twice.
        if claim.status != ClaimStatus.PENDING:
            return ResolutionOutcome(claim_id, strategy, claim.status)
        if claim.total_votes < self.min_votes_required:
            return ResolutionOutcome(claim_id, strategy, claim.status)

        if claim.majority_approves():
            consume = self._config.claims.majority_consumes_policy.get()
            return self._commit_approval(claim, strategy, consume, effects)
        return self._commit_rejection(claim, strategy, effects)

    def _resolve_risk_weighted(self, claim_id: int, height: int, effects: _Effects) -> ResolutionOutcome:
        strategy = ResolutionStrategy.RISK_WEIGHTED
        claim = self._require_claim(claim_id)
        if self._store.get(POOLS, claim.pool_id) is None:
            raise PoolNotFound(claim.pool_id)
        policy = self._policies.get_policy(claim.claimer, claim.pool_id)
        if policy is None:
            raise PolicyNotFound(claim.claimer, claim.pool_id)

        if claim.status.is_terminal():
            raise AlreadyFinalized(claim_id, claim.status.value)
        if claim.status != ClaimStatus.PENDING:
            raise NotPending(claim_id, claim.status.value)
        if not claim.is_expired(height) and claim.total_votes < self.min_votes_required:
            raise ClaimNotReady(claim_id, claim.total_votes, self.min_votes_required, claim.expires_at)

        assessment = calculate_fraud_score(claim, policy, height, self.weights)
        threshold = self.risk_threshold
        if assessment.exceeds(threshold):
            return self._commit_escalation(claim, assessment, threshold, effects)
        if claim.majority_approves():
            return self._commit_approval(claim, strategy, True, effects, assessment.total)
        return self._commit_rejection(claim, strategy, effects, assessment.total)

    # -------------------------------------------------------------------------
    # commit paths
    # -------------------------------------------------------------------------

    def _commit_approval(
        self,
        claim: Claim,
        strategy: ResolutionStrategy,
        consume_policy: bool,
        effects: _Effects,
        fraud_score: Optional[int] = None,
    ) -> ResolutionOutcome:
        """Approve, optionally consume the policy, then pay from escrow.

        The transfer runs last so a refusal unwinds the whole transaction.
        """
        approved = self._store.put(CLAIMS, claim.claim_id, claim.transition_to(ClaimStatus.APPROVED))

        consumed = False
        if consume_policy and self._policies.get_policy(claim.claimer, claim.pool_id) is not None:
            self._policies.deactivate_policy(claim.claimer, claim.pool_id, announce=False)
            consumed = True

        source = escrow_account(claim.pool_id)
        result = self._ledger.transfer(claim.amount, source, claim.claimer).raise_for_error()

        effects.audit("claim.approved", claim.claimer, claim.claim_id,
                      strategy=strategy.value, yes_votes=claim.yes_votes, no_votes=claim.no_votes)
        effects.audit("claim.payout", claim.claimer, claim.claim_id,
                      amount=claim.amount, source=source, transfer_id=result.transfer_id)
        effects.emit(ClaimApproved(claim_id=claim.claim_id, claimer=claim.claimer,
                                   amount=claim.amount, strategy=strategy.value,
                                   transfer_id=result.transfer_id))
        if consumed:
            effects.audit("policy.consumed", claim.claimer, claim.claim_id, pool_id=claim.pool_id)
            effects.emit(PolicyConsumed(holder=claim.claimer, pool_id=claim.pool_id,
                                        claim_id=claim.claim_id))

        logger.info("Claim approved", operation="commit_approval", claim_id=claim.claim_id,
                    strategy=strategy.value, amount=claim.amount, policy_consumed=consumed)
        return ResolutionOutcome(
            claim_id=claim.claim_id,
            strategy=strategy,
            status=approved.status,
            changed=True,
            paid_amount=claim.amount,
            transfer_id=result.transfer_id,
            fraud_score=fraud_score,
            policy_consumed=consumed,
        )

    def _commit_rejection(
        self,
        claim: Claim,
        strategy: ResolutionStrategy,
        effects: _Effects,
        fraud_score: Optional[int] = None,
    ) -> ResolutionOutcome:
        rejected = self._store.put(CLAIMS, claim.claim_id, claim.transition_to(ClaimStatus.REJECTED))
        effects.audit("claim.rejected", claim.claimer, claim.claim_id,
                      strategy=strategy.value, yes_votes=claim.yes_votes, no_votes=claim.no_votes)
        effects.emit(ClaimRejected(claim_id=claim.claim_id, strategy=strategy.value,
                                   yes_votes=claim.yes_votes, no_votes=claim.no_votes))
        logger.info("Claim rejected", operation="commit_rejection",
                    claim_id=claim.claim_id, strategy=strategy.value)
        return ResolutionOutcome(claim.claim_id, strategy, rejected.status, changed=True,
                                 fraud_score=fraud_score)

    def _commit_escalation(
        self,
        claim: Claim,
        assessment: FraudAssessment,
        threshold: int,
        effects: _Effects,
    ) -> ResolutionOutcome:
        held = self._store.put(CLAIMS, claim.claim_id, claim.transition_to(ClaimStatus.MANUAL_REVIEW))
        effects.audit("claim.escalated", claim.claimer, claim.claim_id,
                      fraud_score=assessment.total, risk_threshold=threshold)
        effects.emit(ClaimEscalated(claim_id=claim.claim_id, fraud_score=assessment.total,
                                    risk_threshold=threshold))
        logger.info("Claim escalated to manual review", operation="commit_escalation",
                    claim_id=claim.claim_id, assessment=assessment.to_dict())
        return ResolutionOutcome(claim.claim_id, ResolutionStrategy.RISK_WEIGHTED, held.status,
                                 changed=True, fraud_score=assessment.total)

    # -------------------------------------------------------------------------
    # read-only queries
    # -------------------------------------------------------------------------

    def get_claim_info(self, claim_id: int) -> Optional[Claim]:
        return self._store.get(CLAIMS, claim_id)

    def has_voted(self, claim_id: int, voter: str) -> bool:
        voter = Validators.validate_identity(voter, "voter").unwrap()
        return self._store.contains(VOTES, (claim_id, voter))

    def get_vote(self, claim_id: int, voter: str) -> Optional[bool]:
        voter = Validators.validate_identity(voter, "voter").unwrap()
        return self._store.get(VOTES, (claim_id, voter))

    def vote_count(self, claim_id: int) -> int:
        """Number of distinct vote records for a claim."""
        return self._store.count(VOTES, lambda key, _: key[0] == claim_id)

    def calculate_fraud_score(self, claim_id: int) -> FraudAssessment:
        """Score a stored claim against the claimer's stored policy."""
        claim = self.get_claim_info(claim_id)
        policy = self._policies.get_policy(claim.claimer, claim.pool_id) if claim else None
        return calculate_fraud_score(
            claim, policy, self._clock.current_height(), self.weights, claim_id=claim_id,
        )
