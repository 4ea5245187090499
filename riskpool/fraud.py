"""
Fraud Scoring Engine

Pure risk heuristic for claims. Higher scores are riskier. The score is the
sum of four factors on top of a base:

    base                      50
    policy age < 1000        +15
    claim/coverage > 80%     +25
    no evidence              +25
    voting confidence     0..25   (10 weak, 0 approve, 25 reject, 15 mixed)

With the default weights the total ranges from 50 to 140. Nothing here reads
the store or the clock; callers pass the records and the height in.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from riskpool.config import FraudConfig
from riskpool.errors import ClaimNotFound, PolicyNotFound
from riskpool.models import Claim, Policy


@dataclass(frozen=True)
class FraudWeights:
    """Constants of the scoring heuristic."""
    base_score: int = 50
    new_policy_window: int = 1000
    new_policy_risk: int = 15
    high_ratio_percent: int = 80
    high_ratio_risk: int = 25
    missing_evidence_risk: int = 25
    min_signal_votes: int = 3
    weak_signal_risk: int = 10
    approval_signal_risk: int = 0
    rejection_signal_risk: int = 25
    mixed_signal_risk: int = 15

    @classmethod
    def from_config(cls, config: FraudConfig) -> "FraudWeights":
        return cls(**{name: getattr(config, name).get() for name in cls.__dataclass_fields__})


DEFAULT_WEIGHTS = FraudWeights()


def voting_confidence_factor(yes_votes: int, no_votes: int, weights: FraudWeights = DEFAULT_WEIGHTS) -> int:
    """Risk contributed by the current vote tally."""
    total = yes_votes + no_votes
    if total < weights.min_signal_votes:
        return weights.weak_signal_risk
    if yes_votes * 2 > total:
        return weights.approval_signal_risk
    if no_votes * 2 > total:
        return weights.rejection_signal_risk
    return weights.mixed_signal_risk


@dataclass(frozen=True)
class FraudAssessment:
    """Per-factor breakdown of a fraud score."""
    claim_id: int
    height: int
    base: int
    policy_age: int
    amount_ratio: int
    evidence: int
    voting: int

    @property
    def total(self) -> int:
        return self.base + self.policy_age + self.amount_ratio + self.evidence + self.voting

    def exceeds(self, threshold: int) -> bool:
        """True when the claim must go to manual review."""
        return self.total >= threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "height": self.height,
            "base": self.base,
            "policy_age": self.policy_age,
            "amount_ratio": self.amount_ratio,
            "evidence": self.evidence,
            "voting": self.voting,
            "total": self.total,
        }


def calculate_fraud_score(
    claim: Optional[Claim],
    policy: Optional[Policy],
    current_height: int,
    weights: FraudWeights = DEFAULT_WEIGHTS,
    claim_id: Optional[int] = None,
) -> FraudAssessment:
    """
    Score a claim against the claimer's policy.

    Raises ClaimNotFound / PolicyNotFound when either record is missing;
    ``claim_id`` names the missing claim in the error.
    """
    if claim is None:
        raise ClaimNotFound(claim_id if claim_id is not None else -1)
    if policy is None:
        raise PolicyNotFound(claim.claimer, claim.pool_id)

    age_risk = weights.new_policy_risk if policy.age_at(current_height) < weights.new_policy_window else 0

    ratio_percent = claim.amount * 100 // policy.coverage_amount
    ratio_risk = weights.high_ratio_risk if ratio_percent > weights.high_ratio_percent else 0

    evidence_risk = 0 if claim.has_evidence else weights.missing_evidence_risk

    return FraudAssessment(
        claim_id=claim.claim_id,
        height=current_height,
        base=weights.base_score,
        policy_age=age_risk,
        amount_ratio=ratio_risk,
        evidence=evidence_risk,
        voting=voting_confidence_factor(claim.yes_votes, claim.no_votes, weights),
    )
