import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import agreement`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from agreement import observability  # noqa: E402
from agreement.condition import ConsensusCondition  # noqa: E402
from agreement.config import get_config_manager  # noqa: E402
from agreement.ledger import MemoryLedger  # noqa: E402
from agreement.model import Principal, PrincipalRef  # noqa: E402
from agreement.resilience import BackoffStrategy, RetryPolicy  # noqa: E402
from agreement.store import MemoryStore  # noqa: E402


DOMAIN = "test.m-ld.org"
ACCOUNT = f"clone@{DOMAIN}"


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless AGREEMENT_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('AGREEMENT_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set AGREEMENT_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def fresh_config():
    """Every test starts from default configuration."""
    get_config_manager().reset()
    yield
    get_config_manager().reset()


@pytest.fixture(autouse=True)
def fresh_tracer():
    """Exporters added by one test never see spans of the next."""
    observability._tracer = None
    yield
    observability._tracer = None


@pytest.fixture
def alice() -> PrincipalRef:
    return PrincipalRef("https://alice.example/profile#me")


@pytest.fixture
def bob() -> PrincipalRef:
    return PrincipalRef("https://bob.example/profile#me")


@pytest.fixture
def replica_a() -> Principal:
    """Signing identity of the replica that makes changes."""
    return Principal.generate("replica-a")


@pytest.fixture
def replica_b() -> Principal:
    """Signing identity of a replica that receives changes."""
    return Principal.generate("replica-b")


@pytest.fixture
def ledger(replica_a, replica_b) -> MemoryLedger:
    ledger = MemoryLedger()
    ledger.create_account(ACCOUNT, replica_a.public_key_hex)
    ledger.add_signatory(ACCOUNT, replica_b.public_key_hex, replica_a)
    return ledger


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def local(ledger, replica_a) -> ConsensusCondition:
    return ConsensusCondition(ledger, DOMAIN, replica_a)


@pytest.fixture
def remote(ledger, replica_b) -> ConsensusCondition:
    return ConsensusCondition(ledger, DOMAIN, replica_b)


@pytest.fixture
def no_wait_retry():
    """Result-retrying policy that does not sleep."""
    def build(max_attempts: int = 3, on_retry=None) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay_seconds=0.0,
            backoff_strategy=BackoffStrategy.FIXED,
            retryable_exceptions=(),
            retry_if_result=lambda verdict: verdict.retryable,
            on_retry=on_retry,
            sleep=lambda _: None,
        )
    return build
