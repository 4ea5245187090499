"""
riskpool: Pooled-Risk Insurance Ledger

Participants stake funds into named pools, policyholders buy coverage against
a pool, and policyholders file claims that are resolved by stakeholder vote or
by an automated risk-scoring escalation path.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                         RISK POOL LEDGER CORE                            │
    │                                                                          │
    │  RESOLUTION                                                              │
    │    claims.py      Claim state machine, voting, dual resolution paths    │
    │    fraud.py       Pure fraud-risk scoring                                │
    │                                                                          │
    │  REGISTRIES                                                              │
    │    pools.py       Pool creation, staking, admin status                   │
    │    policies.py    Coverage purchase, in-force checks, consumption        │
    │                                                                          │
    │  FOUNDATION                                                              │
    │    store.py       Tables, id allocator, rollback transactions            │
    │    chain.py       Ledger adapter, escrow accounts, height clock          │
    │    models.py      Immutable records and transitions                      │
    │                                                                          │
    │  AMBIENT                                                                 │
    │    config.py  observability.py  events.py  hardening.py  errors.py       │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Guarantees
──────────

    Exactly-once payout: a claim is paid in the same transaction that moves
    it to approved, and approved is terminal.

    One vote per voter: a second vote on the same claim fails.

    Time-bounded finality: votes stop at the claim's expiry height.

    All-or-nothing: every operation commits fully or leaves no trace.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import riskpool modules on first access."""

    if name in ("RiskPoolRuntime", "create_runtime"):
        from riskpool import runtime
        return getattr(runtime, name)

    if name in ("ClaimResolutionEngine", "ResolutionStrategy", "ResolutionOutcome"):
        from riskpool import claims
        return getattr(claims, name)

    if name in ("FraudAssessment", "FraudWeights", "calculate_fraud_score"):
        from riskpool import fraud
        return getattr(fraud, name)

    if name in ("Pool", "Policy", "Claim", "ClaimStatus"):
        from riskpool import models
        return getattr(models, name)

    if name in ("InMemoryLedger", "ManualClock", "TransferResult", "escrow_account"):
        from riskpool import chain
        return getattr(chain, name)

    if name in ("StateStore", "IdAllocator"):
        from riskpool import store
        return getattr(store, name)

    if name in ("RiskPoolConfig", "ConfigManager", "get_config"):
        from riskpool import config
        return getattr(config, name)

    if name in ("RiskPoolError", "NotFound", "ClaimNotFound", "PolicyNotFound",
                "PoolNotFound", "Unauthorized", "InvalidInput", "InvalidAmount",
                "AlreadyVoted", "ClaimExpired", "NotPending", "AlreadyFinalized",
                "ClaimNotReady", "TransferFailed", "InvariantViolation"):
        from riskpool import errors
        return getattr(errors, name)

    raise AttributeError(f"module 'riskpool' has no attribute '{name}'")


__all__ = [
    "__version__",
    "RiskPoolRuntime",
    "create_runtime",
    "ClaimResolutionEngine",
    "ResolutionStrategy",
    "ResolutionOutcome",
    "FraudAssessment",
    "calculate_fraud_score",
    "ClaimStatus",
]
