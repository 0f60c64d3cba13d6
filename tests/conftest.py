import sys
from pathlib import Path

import pytest

# Ensure project root is importable (tests run from repo root).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from stablepay.application.lifecycle import LifecycleEngine  # noqa: E402
from stablepay.domain.clock import ManualClock  # noqa: E402
from stablepay.infrastructure.notifications.hub import NotificationHub  # noqa: E402
from stablepay.infrastructure.store.memory import InMemoryRequestStore  # noqa: E402


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return InMemoryRequestStore()


@pytest.fixture
def hub():
    return NotificationHub()


@pytest.fixture
def engine(store, hub, clock):
    return LifecycleEngine(store, hub, clock)
