import sys
from pathlib import Path

import pytest

# Ensure the src directory and the shared fakes are importable before collection runs.
project_root = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(project_root / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from feeledger.core.attribution import AttributionEngine  # noqa: E402
from feeledger.core.entity_store import AssetRegistry  # noqa: E402
from feeledger.core.history import HistoryLedger  # noqa: E402
from feeledger.core.upstream import GuardedUpstream  # noqa: E402
from feeledger.resilience.retry import RetryPolicy  # noqa: E402

from feeledger_fakes import (  # noqa: E402
    CREATOR,
    DESTINATION_VAULT,
    ORIGIN_VAULT,
    FakeClock,
    FakeVaultDataSource,
    no_sleep,
)


@pytest.fixture
def fake_source():
    return FakeVaultDataSource()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def upstream(fake_source):
    return GuardedUpstream(fake_source, retry_policy=RetryPolicy(max_retries=0), sleep=no_sleep)


@pytest.fixture
def registry():
    return AssetRegistry()


@pytest.fixture
def history_path(tmp_path):
    return str(tmp_path / "history.jsonl")


@pytest.fixture
def ledger(history_path):
    ledger = HistoryLedger(history_path, CREATOR, ORIGIN_VAULT, DESTINATION_VAULT)
    ledger.init()
    yield ledger
    ledger.close()


@pytest.fixture
def make_engine(upstream, registry):
    """Build an AttributionEngine around the shared fake upstream and registry."""

    def _make(ledger=None, clock=None, **kwargs) -> AttributionEngine:
        options = dict(
            creator=CREATOR,
            origin_vault=ORIGIN_VAULT,
            destination_vault=DESTINATION_VAULT,
            ledger=ledger,
        )
        if clock is not None:
            options["clock"] = clock
        options.update(kwargs)
        return AttributionEngine(upstream, registry, **options)

    return _make
