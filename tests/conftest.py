import os
import pathlib
import sys
from dataclasses import dataclass

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import riskpool`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from riskpool.chain import InMemoryLedger, ManualClock  # noqa: E402
from riskpool.config import ConfigManager, RiskPoolConfig  # noqa: E402
from riskpool.core import evidence_fingerprint  # noqa: E402
from riskpool.runtime import RiskPoolRuntime, create_runtime  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless RISKPOOL_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('RISKPOOL_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set RISKPOOL_RUN_SLOW=1 to enable'))


# =============================================================================
# FIXTURES
# =============================================================================

START_HEIGHT = 100
ADMIN = "admin"
STAKER = "staker"
HOLDER = "alice"
VOTERS = ("v1", "v2", "v3", "v4", "v5")

STAKE_AMOUNT = 10_000
COVERAGE = 100_000
POLICY_DURATION = 14_400
PREMIUM_BPS = 100
MIN_STAKE = 1_000

EVIDENCE = evidence_fingerprint(b"police report #42")


@pytest.fixture(autouse=True)
def _fresh_config_manager():
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START_HEIGHT)


@pytest.fixture
def ledger() -> InMemoryLedger:
    ledger = InMemoryLedger()
    ledger.credit(STAKER, 1_000_000)
    ledger.credit(HOLDER, 1_000_000)
    return ledger


@pytest.fixture
def config() -> RiskPoolConfig:
    return RiskPoolConfig()


@pytest.fixture
def runtime(config, clock, ledger) -> RiskPoolRuntime:
    return create_runtime(config=config, clock=clock, ledger=ledger, configure_logs=False)


@dataclass
class Funded:
    """A pool with one stake and one policy, ready for claims."""
    rt: RiskPoolRuntime
    clock: ManualClock
    ledger: InMemoryLedger
    pool_id: int
    holder: str = HOLDER

    def file(self, amount: int = 50_000, evidence=None, description: str = "storm damage") -> int:
        return self.rt.claims.file_claim(self.holder, self.pool_id, amount, description, evidence)

    def vote(self, claim_id: int, *decisions: bool):
        outcome = None
        for voter, decision in zip(VOTERS, decisions):
            outcome = self.rt.claims.vote_on_claim(claim_id, voter, decision)
        return outcome

    def claim(self, claim_id: int):
        return self.rt.claims.get_claim_info(claim_id)

    def payouts(self) -> int:
        return len(self.ledger.transfers_to(self.holder, source=f"escrow:pool:{self.pool_id}"))


@pytest.fixture
def funded(runtime, clock, ledger) -> Funded:
    pool_id = runtime.pools.create_pool(ADMIN, "Storm cover", "storm", PREMIUM_BPS, MIN_STAKE)
    runtime.pools.stake(pool_id, STAKER, STAKE_AMOUNT * 10)
    runtime.policies.purchase_coverage(HOLDER, pool_id, COVERAGE, POLICY_DURATION)
    return Funded(rt=runtime, clock=clock, ledger=ledger, pool_id=pool_id)


@pytest.fixture
def seasoned(funded) -> Funded:
    """Same as ``funded`` but the policy is old enough to carry no age risk."""
    funded.clock.advance(1_000)
    return funded
