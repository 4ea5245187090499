"""Risk Pool Runtime.

Composition root that wires the ledger core into a single object:

    ┌─────────────────────────────────────────────────────────────┐
    │                      RiskPoolRuntime                         │
    │  ┌─────────────┐  ┌──────────────┐  ┌──────────────────┐    │
    │  │ PoolRegistry│  │PolicyRegistry│  │ClaimResolution-  │    │
    │  │             │  │              │  │Engine            │    │
    │  └──────┬──────┘  └──────┬───────┘  └────────┬─────────┘    │
    │  ┌──────┴────────────────┴───────────────────┴─────────┐    │
    │  │ StateStore │ LedgerAdapter │ HeightClock │ EventBus │    │
    │  │ AuditLogger │ RiskPoolConfig                         │    │
    │  └─────────────────────────────────────────────────────┘    │
    └─────────────────────────────────────────────────────────────┘

Usage:
    from riskpool.runtime import create_runtime

    rt = create_runtime()
    rt.ledger.credit("alice", 1_000_000)
    pool_id = rt.pools.create_pool("admin", "Crop", "crop", 100, 1_000)

    with rt.request_scope():
        claim_id = rt.claims.file_claim("alice", pool_id, 50_000)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from riskpool.chain import HeightClock, InMemoryLedger, LedgerAdapter, ManualClock, escrow_account
from riskpool.claims import ClaimResolutionEngine
from riskpool.config import RiskPoolConfig, ValidationError, get_config
from riskpool.events import EventBus
from riskpool.observability import (
    AuditLogger,
    RiskPoolLayer,
    configure_logging,
    correlation_id_var,
    generate_correlation_id,
    get_logger,
)
from riskpool.policies import PolicyRegistry
from riskpool.pools import PoolRegistry
from riskpool.store import CLAIMS, VOTES, StateStore

logger = get_logger("runtime", RiskPoolLayer.CLAIMS)


@dataclass
class RiskPoolRuntime:
    """Every ledger component, sharing one store, ledger, clock and bus."""
    config: RiskPoolConfig
    store: StateStore
    ledger: LedgerAdapter
    clock: HeightClock
    bus: EventBus
    audit: AuditLogger
    pools: PoolRegistry
    policies: PolicyRegistry
    claims: ClaimResolutionEngine

    @contextmanager
    def request_scope(self, correlation_id: Optional[str] = None) -> Iterator[str]:
        """Run a block under one correlation id."""
        cid = correlation_id or generate_correlation_id()
        token: contextvars.Token = correlation_id_var.set(cid)
        try:
            yield cid
        finally:
            correlation_id_var.reset(token)

    def escrow_balance(self, pool_id: int) -> int:
        return self.ledger.balance_of(escrow_account(pool_id))

    def payout_count(self, claim_id: int) -> int:
        """How many payouts the audit log records for a claim."""
        return self.audit.count("claim.payout", claim_id)

    def check_invariants(self) -> Dict[str, Any]:
        """
        Recompute vote tallies and the audit chain.

        Returns a report; ``ok`` is False when any claim's tally disagrees
        with its vote records, any claim was paid more than once, or the
        audit chain is broken.
        """
        tally_mismatches = []
        double_payouts = []
        for claim_id, claim in self.store.items(CLAIMS):
            recorded = self.store.count(VOTES, lambda key, _, cid=claim_id: key[0] == cid)
            if recorded != claim.total_votes:
                tally_mismatches.append(claim_id)
            if self.payout_count(claim_id) > 1:
                double_payouts.append(claim_id)

        chain_ok, broken_at = self.audit.verify_chain()
        report = {
            "ok": not tally_mismatches and not double_payouts and chain_ok,
            "tally_mismatches": tally_mismatches,
            "double_payouts": double_payouts,
            "audit_chain_ok": chain_ok,
            "audit_chain_broken_at": broken_at,
        }
        if not report["ok"]:
            logger.error("Ledger invariants violated", error_code="invariant_violation",
                         operation="check_invariants", **report)
        return report


def create_runtime(
    config: Optional[RiskPoolConfig] = None,
    clock: Optional[HeightClock] = None,
    ledger: Optional[LedgerAdapter] = None,
    store: Optional[StateStore] = None,
    bus: Optional[EventBus] = None,
    configure_logs: bool = True,
) -> RiskPoolRuntime:
    """Build a runtime, defaulting to in-memory adapters and the global config.

    Raises ValidationError if any configuration value (environment overrides
    included) is invalid.
    """
    config = config or get_config()
    errors = config.validate()
    if errors:
        logger.error("Refusing to build runtime", error_code="invalid_config",
                     operation="create_runtime", errors=errors)
        raise ValidationError("invalid riskpool config: " + "; ".join(errors))
    if configure_logs:
        configure_logging(
            config.observability.log_level.get(),
            config.observability.log_format.get(),
        )

    store = store or StateStore()
    ledger = ledger if ledger is not None else InMemoryLedger()
    clock = clock or ManualClock()
    bus = bus or EventBus()
    audit = AuditLogger()

    pools = PoolRegistry(store, ledger, clock, config, bus, audit)
    policies = PolicyRegistry(store, ledger, clock, bus, audit)
    claims = ClaimResolutionEngine(store, ledger, clock, config, policies, bus, audit)

    logger.debug("Runtime created", operation="create_runtime",
                 ledger=type(ledger).__name__, clock=type(clock).__name__)
    return RiskPoolRuntime(
        config=config,
        store=store,
        ledger=ledger,
        clock=clock,
        bus=bus,
        audit=audit,
        pools=pools,
        policies=policies,
        claims=claims,
    )
