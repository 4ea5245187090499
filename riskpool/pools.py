"""
Pool Registry

Creates pools, accepts stakes into each pool's escrow account and lets the
pool admin open or close the pool. Every mutating operation runs inside one
store transaction with the ledger transfer as its last step, so a refused
transfer leaves the pool exactly as it was.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import List, Optional

from riskpool.chain import HeightClock, LedgerAdapter, escrow_account
from riskpool.config import RiskPoolConfig
from riskpool.errors import InvalidAmount, PoolInactive, PoolNotFound, Unauthorized
from riskpool.events import Event, EventBus, PoolCreated, StakeDeposited
from riskpool.hardening import Validators
from riskpool.models import Pool
from riskpool.observability import (
    AuditLogger,
    RiskPoolLayer,
    get_correlation_id,
    get_logger,
    timed_operation,
)
from riskpool.store import POOLS, STAKES, StateStore

logger = get_logger("registry", RiskPoolLayer.POOLS)

POOL_SEQUENCE = "pool"


class PoolRegistry:
    """Pool administration and staking."""

    def __init__(
        self,
        store: StateStore,
        ledger: LedgerAdapter,
        clock: HeightClock,
        config: RiskPoolConfig,
        bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._clock = clock
        self._config = config
        self._bus = bus if bus is not None else EventBus()
        self._audit = audit if audit is not None else AuditLogger()

    # -------------------------------------------------------------------------
    # queries
    # -------------------------------------------------------------------------

    def get_pool(self, pool_id: int) -> Optional[Pool]:
        return self._store.get(POOLS, pool_id)

    def require_pool(self, pool_id: int) -> Pool:
        pool = self.get_pool(pool_id)
        if pool is None:
            raise PoolNotFound(pool_id)
        return pool

    def get_stake(self, pool_id: int, staker: str) -> int:
        return self._store.get(STAKES, (pool_id, staker)) or 0

    def list_pools(self, active_only: bool = False) -> List[Pool]:
        pools = [p for _, p in self._store.items(POOLS)]
        if active_only:
            pools = [p for p in pools if p.active]
        return sorted(pools, key=lambda p: p.pool_id)

    # -------------------------------------------------------------------------
    # mutations
    # -------------------------------------------------------------------------

    @timed_operation(logger, "create_pool")
    def create_pool(
        self,
        admin: str,
        name: str,
        coverage_type: str,
        premium_rate_bps: int,
        min_stake: int,
    ) -> int:
        """Register a new active pool and return its id."""
        admin = Validators.validate_identity(admin, "admin").unwrap()
        name = Validators.validate_string(name, "name", max_length=64).unwrap()
        coverage_type = Validators.validate_coverage_type(coverage_type).unwrap()
        premium_rate_bps = Validators.validate_rate_bps(
            premium_rate_bps, self._config.pools.max_premium_rate_bps.get()
        ).unwrap()
        min_stake = Validators.validate_amount(min_stake, "min_stake", min_value=0).unwrap()

        height = self._clock.current_height()
        with self._store.transaction("create_pool") as tx:
            pool_id = tx.ids.next_id(POOL_SEQUENCE)
            tx.put(POOLS, pool_id, Pool(
                pool_id=pool_id,
                name=name,
                coverage_type=coverage_type,
                premium_rate_bps=premium_rate_bps,
                min_stake=min_stake,
                admin=admin,
                created_at=height,
            ))

        self._audit.log("pool.created", height, admin, "pool", pool_id,
                        coverage_type=coverage_type, premium_rate_bps=premium_rate_bps)
        logger.info("Pool created", operation="create_pool", pool_id=pool_id, admin=admin)
        self._publish(PoolCreated(
            height=height, pool_id=pool_id, name=name,
            coverage_type=coverage_type, admin=admin,
        ))
        return pool_id

    @timed_operation(logger, "stake")
    def stake(self, pool_id: int, staker: str, amount: int) -> Pool:
        """Move ``amount`` from the staker into the pool escrow."""
        staker = Validators.validate_identity(staker, "staker").unwrap()
        amount = Validators.validate_amount(amount).unwrap()
        height = self._clock.current_height()

        with self._store.transaction("stake") as tx:
            pool = self.require_pool(pool_id)
            if not pool.active:
                raise PoolInactive(pool_id)
            if amount < pool.min_stake:
                raise InvalidAmount("amount", f"Below pool minimum stake ({pool.min_stake})", amount)

            updated = tx.put(POOLS, pool_id, pool.with_stake(amount))
            tx.put(STAKES, (pool_id, staker), self.get_stake(pool_id, staker) + amount)
            self._ledger.transfer(amount, staker, escrow_account(pool_id)).raise_for_error()

        self._audit.log("pool.stake", height, staker, "pool", pool_id,
                        amount=amount, total_staked=updated.total_staked)
        logger.info("Stake deposited", operation="stake", pool_id=pool_id,
                    staker=staker, amount=amount, total_staked=updated.total_staked)
        self._publish(StakeDeposited(
            height=height, pool_id=pool_id, staker=staker,
            amount=amount, total_staked=updated.total_staked,
        ))
        return updated

    def set_pool_active(self, pool_id: int, caller: str, active: bool) -> Pool:
        """Open or close a pool. Only the pool admin may do this."""
        height = self._clock.current_height()
        with self._store.transaction("set_pool_active") as tx:
            pool = self.require_pool(pool_id)
            if caller != pool.admin:
                logger.warning("Pool status change refused", operation="set_pool_active",
                               error_code=Unauthorized.code, pool_id=pool_id, caller=caller)
                raise Unauthorized(f"{caller} is not the admin of pool {pool_id}",
                                   pool_id=pool_id, caller=caller)
            updated = tx.merge(POOLS, pool_id, active=bool(active))

        self._audit.log("pool.status", height, caller, "pool", pool_id, active=updated.active)
        return updated

    def _publish(self, event: Event) -> None:
        event.correlation_id = get_correlation_id()
        self._bus.publish(event)
