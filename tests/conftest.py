"""
Pytest configuration shared by the unit, integration and end-to-end suites.
"""
import pytest

from herd.cluster import ClusterManager
from tests.fakes import FakeLauncher


TEST_CONFIG = {
    "WORKER_COMMAND": "unused",
    "MIN_WORKERS": 0,
    "MAX_WORKERS": 8,
    "SPAWN_RETRY_LIMIT": 3,
    "RELOAD_TIMEOUT_SECONDS": 30,
    "DRAIN_TIMEOUT_SECONDS": 0.2,
    "KILL_TIMEOUT_SECONDS": 0.2,
    "CRASH_LOOP_WINDOW_SECONDS": 5,
}


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "slow: spawns real processes")


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def make_manager(launcher):
    """Builds a ClusterManager wired to the fake launcher, with optional config overrides."""
    def _make(**overrides) -> ClusterManager:
        manager = ClusterManager(config={**TEST_CONFIG, **overrides}, launcher=launcher)
        launcher.notify = manager.submit
        return manager
    return _make


@pytest.fixture
def manager(make_manager) -> ClusterManager:
    return make_manager()
