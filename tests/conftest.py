import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import veil`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from veil.config import get_config_manager  # noqa: E402
from veil.coordinator import AssetLifecycleCoordinator  # noqa: E402
from veil.events import EventBus, EventRecorder  # noqa: E402
from veil.fhe import MockFheService  # noqa: E402
from veil.ledger import InMemoryLedger  # noqa: E402
from veil.session import SessionContext  # noqa: E402

ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow concurrency tests (skipped unless VEIL_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('VEIL_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set VEIL_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def reset_config():
    manager = get_config_manager()
    manager.reset()
    yield manager
    manager.reset()


@pytest.fixture
def fhe() -> MockFheService:
    service = MockFheService()
    service.initialize()
    return service


@pytest.fixture
def ledger(fhe) -> InMemoryLedger:
    return InMemoryLedger(proof_verifier=fhe, sender=ALICE)


@pytest.fixture
def session() -> SessionContext:
    return SessionContext.connected_as(ALICE)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def coordinator(ledger, fhe, bus) -> AssetLifecycleCoordinator:
    return AssetLifecycleCoordinator(ledger, fhe, fhe, event_bus=bus)
