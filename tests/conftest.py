import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# Add the project root to the import path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import HydrationConfig
from hydration_session import HydrationSession
from hydration_state import make_default_state
from notification_service import NotificationService
from persistent_storage import PersistentStorage
from time_service import TimeService

# Tuesday, wake 08:00 / sleep 22:00 puts this at 32% of the window
NOON_THIRTY = datetime(2026, 3, 10, 12, 30)


@pytest.fixture
def clock():
    """A pinned clock at 12:30 on a regular day."""
    return TimeService(NOON_THIRTY)


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


@pytest.fixture
def storage(data_dir):
    return PersistentStorage(data_dir)


@pytest.fixture
def config(data_dir):
    return HydrationConfig(data_dir=data_dir)


@pytest.fixture
def state(clock):
    return make_default_state(clock.now())


@pytest.fixture
def notifier():
    """Notification service double that grants permission."""
    mock = AsyncMock(spec=NotificationService)
    mock.request_permission.return_value = True
    return mock


@pytest.fixture
def session(config, storage, clock):
    return HydrationSession(config=config, storage=storage, time_service=clock)
