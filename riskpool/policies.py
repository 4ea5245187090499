"""
Policy Registry

Tracks coverage per (holder, pool). A purchase pays the premium into the
pool escrow and overwrites any earlier policy for the same key. The claim
engine consults the registry when a claim is filed and consumes the policy
when a payout retires its coverage.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Optional, Tuple

from riskpool.chain import HeightClock, LedgerAdapter, escrow_account
from riskpool.errors import PolicyNotFound, PoolInactive, PoolNotFound
from riskpool.events import CoveragePurchased, EventBus, PolicyConsumed
from riskpool.hardening import Validators
from riskpool.models import Policy
from riskpool.observability import (
    AuditLogger,
    RiskPoolLayer,
    get_correlation_id,
    get_logger,
    timed_operation,
)
from riskpool.store import POLICIES, POOLS, StateStore

logger = get_logger("registry", RiskPoolLayer.POLICIES)


def policy_key(holder: str, pool_id: int) -> Tuple[str, int]:
    return (holder, pool_id)


class PolicyRegistry:
    """Coverage contracts held against pools."""

    def __init__(
        self,
        store: StateStore,
        ledger: LedgerAdapter,
        clock: HeightClock,
        bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._clock = clock
        self._bus = bus if bus is not None else EventBus()
        self._audit = audit if audit is not None else AuditLogger()

    def get_policy(self, holder: str, pool_id: int) -> Optional[Policy]:
        return self._store.get(POLICIES, policy_key(holder, pool_id))

    def is_in_force(self, holder: str, pool_id: int, height: Optional[int] = None) -> bool:
        policy = self.get_policy(holder, pool_id)
        if policy is None:
            return False
        return policy.is_in_force(self._clock.current_height() if height is None else height)

    @timed_operation(logger, "purchase_coverage")
    def purchase_coverage(self, holder: str, pool_id: int, coverage_amount: int, duration: int) -> Policy:
        """Buy coverage on an active pool, replacing any previous policy."""
        holder = Validators.validate_identity(holder, "holder").unwrap()
        coverage_amount = Validators.validate_amount(coverage_amount, "coverage_amount").unwrap()
        duration = Validators.validate_amount(duration, "duration").unwrap()
        height = self._clock.current_height()

        with self._store.transaction("purchase_coverage") as tx:
            pool = tx.get(POOLS, pool_id)
            if pool is None:
                raise PoolNotFound(pool_id)
            if not pool.active:
                raise PoolInactive(pool_id)

            premium = pool.premium_for(coverage_amount)
            policy = tx.put(POLICIES, policy_key(holder, pool_id), Policy(
                holder=holder,
                pool_id=pool_id,
                premium_paid=premium,
                coverage_amount=coverage_amount,
                start_height=height,
                end_height=height + duration,
            ))
            if premium > 0:
                self._ledger.transfer(premium, holder, escrow_account(pool_id)).raise_for_error()

        self._audit.log("policy.purchased", height, holder, "policy", f"{holder}/{pool_id}",
                        coverage_amount=coverage_amount, premium_paid=premium)
        logger.info("Coverage purchased", operation="purchase_coverage",
                    holder=holder, pool_id=pool_id, coverage_amount=coverage_amount, premium=premium)
        self._bus.publish(CoveragePurchased(
            height=height, correlation_id=get_correlation_id(),
            pool_id=pool_id, holder=holder, coverage_amount=coverage_amount,
            premium_paid=premium, end_height=policy.end_height,
        ))
        return policy

    def deactivate_policy(self, holder: str, pool_id: int, announce: bool = True) -> Policy:
        """
        Mark a policy consumed.

        Joins the caller's transaction when one is open. The claim engine
        calls this from its commit path with announce=False and emits the
        audit entry and event itself once the payout has committed.
        """
        with self._store.transaction("deactivate_policy") as tx:
            policy = tx.get(POLICIES, policy_key(holder, pool_id))
            if policy is None:
                raise PolicyNotFound(holder, pool_id)
            consumed = tx.put(POLICIES, policy_key(holder, pool_id), policy.deactivated())

        if announce:
            height = self._clock.current_height()
            self._audit.log("policy.consumed", height, holder, "policy", f"{holder}/{pool_id}")
            self._bus.publish(PolicyConsumed(
                height=height, correlation_id=get_correlation_id(),
                holder=holder, pool_id=pool_id,
            ))
        return consumed
