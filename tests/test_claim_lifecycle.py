"""
Claim Resolution Test Suite

Covers the claim state machine end to end:
- Filing gate (policy in force, coverage limit)
- Voting (one vote per voter, expiry, tallies)
- Majority resolution (approval pays once, rejection, idempotence)
- Risk-weighted resolution (approve, reject, manual review, readiness)
- Atomicity (a refused transfer rolls back the vote and the status change)

Run with: pytest tests/test_claim_lifecycle.py -v

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading

import pytest

from riskpool.chain import escrow_account
from riskpool.claims import ResolutionStrategy
from riskpool.core import evidence_fingerprint
from riskpool.errors import (
    AlreadyFinalized,
    AlreadyVoted,
    ClaimExpired,
    ClaimNotFound,
    ClaimNotReady,
    InvalidAmount,
    InvalidInput,
    InvariantViolation,
    NotFound,
    NotPending,
    PolicyNotFound,
    TransferFailed,
    Unauthorized,
)
from riskpool.events import ClaimApproved, ClaimFiled, EventRecorder, VoteCast
from riskpool.models import ClaimStatus

# Must match the identities seeded by conftest fixtures.
ADMIN = "admin"
STAKER = "staker"
HOLDER = "alice"
VOTERS = ("v1", "v2", "v3", "v4", "v5")
COVERAGE = 100_000
EVIDENCE = evidence_fingerprint(b"police report #42")


# =============================================================================
# FILING GATE
# =============================================================================

class TestClaimFiling:
    """Admission of claims into the state machine."""

    def test_scenario_a_new_claim_is_pending(self, runtime, clock):
        """Pool, stake 10,000, coverage 100,000 for 14,400 heights, claim 50,000."""
        pool_id = runtime.pools.create_pool(ADMIN, "Storm cover", "storm", 100, 1_000)
        runtime.pools.stake(pool_id, STAKER, 10_000)
        runtime.policies.purchase_coverage(HOLDER, pool_id, 100_000, 14_400)

        claim_id = runtime.claims.file_claim(HOLDER, pool_id, 50_000, "hail", None)
        claim = runtime.claims.get_claim_info(claim_id)

        assert claim.status == ClaimStatus.PENDING
        assert claim.yes_votes == 0
        assert claim.no_votes == 0
        assert claim.created_at == clock.current_height()
        assert claim.expires_at == claim.created_at + 144
        assert claim.has_evidence is False

    def test_claim_ids_start_at_one_and_increase(self, funded):
        first = funded.file(1_000)
        second = funded.file(2_000)
        assert (first, second) == (1, 2)

    def test_amount_over_coverage_rejected(self, runtime, ledger):
        pool_id = runtime.pools.create_pool(ADMIN, "Small", "small", 100, 0)
        ledger.credit("carol", 1_000)
        runtime.policies.purchase_coverage("carol", pool_id, 300, 1_000)

        with pytest.raises(InvalidAmount):
            runtime.claims.file_claim("carol", pool_id, 500)

    def test_amount_equal_to_coverage_accepted(self, funded):
        claim_id = funded.file(COVERAGE)
        assert funded.claim(claim_id).amount == COVERAGE

    def test_non_positive_amount_rejected(self, funded):
        with pytest.raises(InvalidAmount):
            funded.file(0)
        with pytest.raises(InvalidAmount):
            funded.file(-5)

    def test_no_policy_is_not_found(self, funded):
        with pytest.raises(PolicyNotFound) as exc:
            funded.rt.claims.file_claim("mallory", funded.pool_id, 10)
        assert isinstance(exc.value, NotFound)
        assert exc.value.retryable is False

    def test_expired_policy_is_unauthorized(self, funded):
        funded.clock.advance(14_400)
        with pytest.raises(Unauthorized):
            funded.file(1_000)

    def test_consumed_policy_is_unauthorized(self, funded):
        funded.rt.policies.deactivate_policy(HOLDER, funded.pool_id)
        with pytest.raises(Unauthorized):
            funded.file(1_000)

    def test_failed_filing_allocates_no_id(self, funded):
        with pytest.raises(InvalidAmount):
            funded.file(COVERAGE + 1)
        assert funded.file(1_000) == 1

    def test_evidence_accepts_hex(self, funded):
        claim_id = funded.file(1_000, evidence=EVIDENCE.hex())
        assert funded.claim(claim_id).evidence == EVIDENCE

    def test_evidence_must_be_fixed_width(self, funded):
        with pytest.raises(InvalidInput):
            funded.file(1_000, evidence=b"short")

    def test_description_length_limited(self, funded):
        with pytest.raises(InvalidInput):
            funded.file(1_000, description="x" * 501)

    def test_filed_claim_survives_policy_change(self, funded):
        """Later policy changes do not invalidate an admitted claim."""
        claim_id = funded.file(10_000)
        funded.rt.policies.deactivate_policy(HOLDER, funded.pool_id)

        outcome = funded.vote(claim_id, True, True, True)

        assert outcome.status == ClaimStatus.APPROVED
        assert funded.payouts() == 1


# =============================================================================
# VOTING
# =============================================================================

class TestVoting:
    """Vote tally and authorization."""

    def test_vote_updates_tally(self, funded):
        claim_id = funded.file()
        outcome = funded.rt.claims.vote_on_claim(claim_id, "v1", True)

        assert outcome.changed is False
        assert outcome.status == ClaimStatus.PENDING
        claim = funded.claim(claim_id)
        assert (claim.yes_votes, claim.no_votes) == (1, 0)
        assert funded.rt.claims.has_voted(claim_id, "v1")
        assert funded.rt.claims.get_vote(claim_id, "v1") is True
        assert not funded.rt.claims.has_voted(claim_id, "v2")

    def test_second_vote_fails_without_overwrite(self, funded):
        claim_id = funded.file()
        funded.rt.claims.vote_on_claim(claim_id, "v1", True)

        with pytest.raises(AlreadyVoted):
            funded.rt.claims.vote_on_claim(claim_id, "v1", False)

        claim = funded.claim(claim_id)
        assert (claim.yes_votes, claim.no_votes) == (1, 0)
        assert funded.rt.claims.get_vote(claim_id, "v1") is True

    def test_scenario_d_vote_after_expiry(self, funded):
        claim_id = funded.file()
        funded.clock.advance(144)

        with pytest.raises(ClaimExpired) as exc:
            funded.rt.claims.vote_on_claim(claim_id, "v1", True)
        assert exc.value.retryable is False

    def test_vote_just_before_expiry_accepted(self, funded):
        claim_id = funded.file()
        funded.clock.advance(143)
        funded.rt.claims.vote_on_claim(claim_id, "v1", True)
        assert funded.claim(claim_id).yes_votes == 1

    def test_expiry_reported_before_duplicate(self, funded):
        claim_id = funded.file()
        funded.rt.claims.vote_on_claim(claim_id, "v1", True)
        funded.clock.advance(144)
        with pytest.raises(ClaimExpired):
            funded.rt.claims.vote_on_claim(claim_id, "v1", True)

    def test_unknown_claim(self, funded):
        with pytest.raises(ClaimNotFound):
            funded.rt.claims.vote_on_claim(999, "v1", True)

    def test_queries_sanitize_voter_identity(self, funded):
        claim_id = funded.file()
        funded.rt.claims.vote_on_claim(claim_id, " v1 ", True)

        assert funded.rt.claims.has_voted(claim_id, "v1")
        assert funded.rt.claims.has_voted(claim_id, " v1")
        assert funded.rt.claims.get_vote(claim_id, "v1 ") is True
        with pytest.raises(AlreadyVoted):
            funded.rt.claims.vote_on_claim(claim_id, "v1", False)

    def test_query_rejects_malformed_voter(self, funded):
        claim_id = funded.file()
        with pytest.raises(InvalidInput):
            funded.rt.claims.has_voted(claim_id, "not a voter!")

    def test_decision_must_be_boolean(self, funded):
        claim_id = funded.file()
        with pytest.raises(InvalidInput):
            funded.rt.claims.vote_on_claim(claim_id, "v1", 1)

    def test_vote_on_finalized_claim(self, funded):
        claim_id = funded.file()
        funded.vote(claim_id, True, True, False)

        with pytest.raises(AlreadyFinalized):
            funded.rt.claims.vote_on_claim(claim_id, "v4", True)
        assert funded.claim(claim_id).total_votes == 3

    def test_vote_on_manual_review_claim(self, funded, config):
        claim_id = funded.file(90_000)
        funded.vote(claim_id, True, True)
        config.claims.min_votes_required.set(2)
        funded.rt.claims.process_claim_with_risk_assessment(claim_id)

        with pytest.raises(NotPending) as exc:
            funded.rt.claims.vote_on_claim(claim_id, "v3", True)
        assert not isinstance(exc.value, AlreadyFinalized)

    def test_tally_matches_vote_records(self, funded):
        claim_id = funded.file()
        funded.vote(claim_id, True, False)
        with pytest.raises(AlreadyVoted):
            funded.rt.claims.vote_on_claim(claim_id, "v1", False)

        claim = funded.claim(claim_id)
        assert claim.total_votes == funded.rt.claims.vote_count(claim_id) == 2
        assert funded.rt.check_invariants()["ok"]


# =============================================================================
# MAJORITY RESOLUTION
# =============================================================================

class TestMajorityResolution:
    """process_claim_if_ready and the vote trigger."""

    def test_scenario_b_approval_pays_once(self, funded):
        claim_id = funded.file(50_000)
        escrow_before = funded.rt.escrow_balance(funded.pool_id)
        holder_before = funded.ledger.balance_of(HOLDER)

        outcome = funded.vote(claim_id, True, True, False)

        assert outcome.status == ClaimStatus.APPROVED
        assert outcome.changed and outcome.finalized
        assert outcome.paid_amount == 50_000
        assert funded.payouts() == 1
        assert funded.rt.escrow_balance(funded.pool_id) == escrow_before - 50_000
        assert funded.ledger.balance_of(HOLDER) == holder_before + 50_000

        again = funded.rt.claims.process_claim_if_ready(claim_id)
        assert again.status == ClaimStatus.APPROVED
        assert again.changed is False
        assert again.paid_amount == 0
        assert funded.payouts() == 1
        assert funded.rt.payout_count(claim_id) == 1

    def test_majority_no_rejects_without_transfer(self, funded):
        claim_id = funded.file()
        outcome = funded.vote(claim_id, False, False, True)

        assert outcome.status == ClaimStatus.REJECTED
        assert outcome.paid_amount == 0
        assert funded.payouts() == 0

    def test_under_threshold_is_idempotent(self, funded):
        claim_id = funded.file()
        funded.vote(claim_id, True)

        first = funded.rt.claims.process_claim_if_ready(claim_id)
        snapshot = funded.rt.store.snapshot()
        second = funded.rt.claims.process_claim_if_ready(claim_id)

        assert first == second
        assert first.status == ClaimStatus.PENDING
        assert funded.rt.store.snapshot() == snapshot

    def test_unknown_claim(self, funded):
        with pytest.raises(ClaimNotFound):
            funded.rt.claims.process_claim_if_ready(42)

    def test_unknown_ids_leave_no_locks(self, funded):
        claims = funded.rt.claims
        for bogus in range(1_000, 1_500):
            with pytest.raises(ClaimNotFound):
                claims.process_claim_if_ready(bogus)
            with pytest.raises(ClaimNotFound):
                claims.process_claim_with_risk_assessment(bogus)
            with pytest.raises(ClaimNotFound):
                claims.vote_on_claim(bogus, "v1", True)
        assert claims._claim_locks == {}

        claim_id = funded.file()
        claims.process_claim_if_ready(claim_id)
        assert list(claims._claim_locks) == [claim_id]

    def test_rejected_claim_stays_rejected(self, funded):
        claim_id = funded.file()
        funded.vote(claim_id, False, False, False)

        for _ in range(3):
            outcome = funded.rt.claims.process_claim_if_ready(claim_id)
            assert outcome.status == ClaimStatus.REJECTED
            assert outcome.changed is False
        with pytest.raises(AlreadyFinalized):
            funded.rt.claims.process_claim_with_risk_assessment(claim_id)
        assert funded.claim(claim_id).status == ClaimStatus.REJECTED

    def test_terminal_record_refuses_transition(self, funded):
        claim_id = funded.file()
        funded.vote(claim_id, True, True, True)
        claim = funded.claim(claim_id)

        with pytest.raises(InvariantViolation):
            claim.transition_to(ClaimStatus.REJECTED)

    def test_policy_kept_on_majority_approval_by_default(self, funded):
        claim_id = funded.file(10_000)
        outcome = funded.vote(claim_id, True, True, True)

        assert outcome.policy_consumed is False
        assert funded.rt.policies.is_in_force(HOLDER, funded.pool_id)

    def test_policy_consumed_when_configured(self, funded, config):
        config.claims.majority_consumes_policy.set(True)
        claim_id = funded.file(10_000)
        outcome = funded.vote(claim_id, True, True, True)

        assert outcome.policy_consumed is True
        assert not funded.rt.policies.is_in_force(HOLDER, funded.pool_id)

    def test_threshold_from_config(self, funded, config):
        config.claims.min_votes_required.set(5)
        claim_id = funded.file()
        outcome = funded.vote(claim_id, True, True, True, True)
        assert outcome.status == ClaimStatus.PENDING

        outcome = funded.rt.claims.vote_on_claim(claim_id, VOTERS[4], True)
        assert outcome.status == ClaimStatus.APPROVED

    def test_resolve_accepts_strategy_value(self, funded):
        claim_id = funded.file()
        outcome = funded.rt.claims.resolve(claim_id, "majority")
        assert outcome.strategy == ResolutionStrategy.MAJORITY


# =============================================================================
# RISK-WEIGHTED RESOLUTION
# =============================================================================

class TestRiskWeightedResolution:
    """process_claim_with_risk_assessment."""

    def test_low_risk_approval_consumes_policy(self, seasoned):
        claim_id = seasoned.file(50_000, evidence=EVIDENCE)
        seasoned.vote(claim_id, True, True)
        seasoned.clock.advance(144)

        outcome = seasoned.rt.claims.process_claim_with_risk_assessment(claim_id)

        assert outcome.status == ClaimStatus.APPROVED
        assert outcome.fraud_score == 60
        assert outcome.policy_consumed is True
        assert outcome.paid_amount == 50_000
        assert seasoned.payouts() == 1
        policy = seasoned.rt.policies.get_policy(HOLDER, seasoned.pool_id)
        assert policy.active is False

    def test_low_risk_split_vote_rejects(self, seasoned):
        claim_id = seasoned.file(50_000, evidence=EVIDENCE)
        seasoned.vote(claim_id, True, False)
        seasoned.clock.advance(144)

        outcome = seasoned.rt.claims.process_claim_with_risk_assessment(claim_id)

        assert outcome.status == ClaimStatus.REJECTED
        assert seasoned.payouts() == 0
        assert seasoned.rt.policies.is_in_force(HOLDER, seasoned.pool_id)

    def test_scenario_c_high_risk_goes_to_manual_review(self, funded):
        claim_id = funded.file(90_000)
        funded.clock.advance(144)

        assessment = funded.rt.claims.calculate_fraud_score(claim_id)
        assert assessment.total == 50 + 15 + 25 + 25 + 10 == 125

        outcome = funded.rt.claims.process_claim_with_risk_assessment(claim_id)

        assert outcome.status == ClaimStatus.MANUAL_REVIEW
        assert outcome.escalated and not outcome.finalized
        assert outcome.fraud_score == 125
        assert funded.payouts() == 0
        assert funded.rt.policies.is_in_force(HOLDER, funded.pool_id)

    def test_score_at_threshold_escalates(self, seasoned):
        claim_id = seasoned.file(50_000, evidence=EVIDENCE)
        seasoned.vote(claim_id, True, True)
        seasoned.clock.advance(144)
        seasoned.rt.config.claims.risk_threshold.set(60)

        outcome = seasoned.rt.claims.process_claim_with_risk_assessment(claim_id)
        assert outcome.status == ClaimStatus.MANUAL_REVIEW

    def test_unexpired_under_voted_not_ready(self, funded):
        claim_id = funded.file()
        funded.vote(claim_id, True)

        with pytest.raises(ClaimNotReady) as exc:
            funded.rt.claims.process_claim_with_risk_assessment(claim_id)
        assert isinstance(exc.value, NotPending)
        assert funded.claim(claim_id).status == ClaimStatus.PENDING

    def test_vote_threshold_makes_claim_ready(self, funded, config):
        claim_id = funded.file(90_000)
        funded.vote(claim_id, True, True)
        config.claims.min_votes_required.set(2)

        outcome = funded.rt.claims.process_claim_with_risk_assessment(claim_id)
        assert outcome.status == ClaimStatus.MANUAL_REVIEW

    def test_finalized_claim_refused(self, funded):
        claim_id = funded.file()
        funded.vote(claim_id, True, True, True)

        with pytest.raises(AlreadyFinalized):
            funded.rt.claims.process_claim_with_risk_assessment(claim_id)
        assert funded.payouts() == 1

    def test_manual_review_claim_refused(self, funded):
        claim_id = funded.file(90_000)
        funded.clock.advance(144)
        funded.rt.claims.process_claim_with_risk_assessment(claim_id)

        with pytest.raises(NotPending) as exc:
            funded.rt.claims.process_claim_with_risk_assessment(claim_id)
        assert not isinstance(exc.value, AlreadyFinalized)

    def test_majority_path_leaves_manual_review_alone(self, funded):
        claim_id = funded.file(90_000)
        funded.clock.advance(144)
        funded.rt.claims.process_claim_with_risk_assessment(claim_id)

        outcome = funded.rt.claims.process_claim_if_ready(claim_id)
        assert outcome.status == ClaimStatus.MANUAL_REVIEW
        assert outcome.changed is False
        assert funded.payouts() == 0

    def test_unknown_claim(self, funded):
        with pytest.raises(ClaimNotFound):
            funded.rt.claims.process_claim_with_risk_assessment(7)


# =============================================================================
# ATOMICITY
# =============================================================================

class TestPayoutAtomicity:
    """A refused transfer leaves no trace."""

    def test_rejected_transfer_rolls_back_vote_and_status(self, funded):
        claim_id = funded.file(50_000)
        funded.vote(claim_id, True, True)
        funded.ledger.reject_next()

        with pytest.raises(TransferFailed) as exc:
            funded.rt.claims.vote_on_claim(claim_id, "v3", True)

        assert exc.value.reason == TransferFailed.TRANSFER_REJECTED
        assert exc.value.retryable is True
        claim = funded.claim(claim_id)
        assert claim.status == ClaimStatus.PENDING
        assert (claim.yes_votes, claim.no_votes) == (2, 0)
        assert not funded.rt.claims.has_voted(claim_id, "v3")
        assert funded.payouts() == 0
        assert funded.rt.audit.count("claim.vote", claim_id) == 2

        outcome = funded.rt.claims.vote_on_claim(claim_id, "v3", True)
        assert outcome.status == ClaimStatus.APPROVED
        assert funded.payouts() == 1

    def test_insufficient_escrow(self, runtime, ledger):
        pool_id = runtime.pools.create_pool(ADMIN, "Thin", "thin", 0, 1_000)
        runtime.pools.stake(pool_id, STAKER, 1_000)
        runtime.policies.purchase_coverage(HOLDER, pool_id, 50_000, 10_000)
        claim_id = runtime.claims.file_claim(HOLDER, pool_id, 40_000)

        runtime.claims.vote_on_claim(claim_id, "v1", True)
        runtime.claims.vote_on_claim(claim_id, "v2", True)
        with pytest.raises(TransferFailed) as exc:
            runtime.claims.vote_on_claim(claim_id, "v3", True)

        assert exc.value.reason == TransferFailed.INSUFFICIENT_FUNDS
        assert runtime.claims.get_claim_info(claim_id).status == ClaimStatus.PENDING
        assert ledger.balance_of(escrow_account(pool_id)) == 1_000

    def test_risk_path_rollback_keeps_policy(self, seasoned):
        claim_id = seasoned.file(50_000, evidence=EVIDENCE)
        seasoned.vote(claim_id, True, True)
        seasoned.clock.advance(144)
        seasoned.ledger.reject_next()

        with pytest.raises(TransferFailed):
            seasoned.rt.claims.process_claim_with_risk_assessment(claim_id)

        assert seasoned.claim(claim_id).status == ClaimStatus.PENDING
        assert seasoned.rt.policies.get_policy(HOLDER, seasoned.pool_id).active is True

    def test_events_only_after_commit(self, funded):
        recorder = EventRecorder(funded.rt.bus)
        claim_id = funded.file(50_000)
        funded.vote(claim_id, True, True)
        funded.ledger.reject_next()
        with pytest.raises(TransferFailed):
            funded.rt.claims.vote_on_claim(claim_id, "v3", True)

        assert len(recorder.of_type(ClaimFiled)) == 1
        assert len(recorder.of_type(VoteCast)) == 2
        assert recorder.of_type(ClaimApproved) == []

        funded.rt.claims.vote_on_claim(claim_id, "v3", True)
        approved = recorder.of_type(ClaimApproved)
        assert len(approved) == 1
        assert approved[0].amount == 50_000


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestConcurrentAccess:
    """Per-claim serialization."""

    def test_concurrent_votes_all_counted(self, funded, config):
        config.claims.min_votes_required.set(100)
        claim_id = funded.file()
        errors = []

        def cast(i):
            try:
                funded.rt.claims.vote_on_claim(claim_id, f"voter-{i}", i % 2 == 0)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=cast, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        claim = funded.claim(claim_id)
        assert claim.total_votes == funded.rt.claims.vote_count(claim_id) == 20
        assert (claim.yes_votes, claim.no_votes) == (10, 10)

    def test_concurrent_resolution_pays_once(self, funded, config):
        claim_id = funded.file(50_000)
        funded.vote(claim_id, True, True)
        config.claims.min_votes_required.set(2)
        outcomes = []

        def resolve():
            outcomes.append(funded.rt.claims.process_claim_if_ready(claim_id))

        threads = [threading.Thread(target=resolve) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for o in outcomes if o.changed) == 1
        assert all(o.status == ClaimStatus.APPROVED for o in outcomes)
        assert funded.payouts() == 1
        assert funded.rt.check_invariants()["ok"]
