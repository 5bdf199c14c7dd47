"""
Pytest configuration and fixtures
"""

import os
import pytest
import sys
from pathlib import Path

# Test overrides from config/test.yaml must be in place before config_loader is imported
os.environ.setdefault("ARENA_ENV", "test")

# Add parent directory to path so we can import modules
parent_dir = Path(__file__).parent.parent
sys.path.insert(0, str(parent_dir))


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class StaticHistoryProvider:
    """History provider returning a fixed list and counting calls."""

    def __init__(self, points):
        self.points = list(points)
        self.calls = 0
        self.last_source = "static"

    def fetch_daily_history(self):
        self.calls += 1
        return list(self.points)


@pytest.fixture(scope="session")
def synthetic_history():
    """Full deterministic daily history (same one the service falls back to)"""
    from backend.historical_data import create_synthetic_history
    return create_synthetic_history(42)


@pytest.fixture
def short_history():
    """20 daily points: too short for any stage"""
    from backend.historical_data import DAY_SECONDS, PricePoint
    base = 1_600_000_000
    return [PricePoint(base + i * DAY_SECONDS, 100.0 + i) for i in range(20)]


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "runtime" / "runtime-state.json")


@pytest.fixture
def make_runtime(synthetic_history, fake_clock, store_path):
    """Factory for runtimes sharing one store, one clock and a manual driver"""
    from backend.runtime import ManualDriver, SessionRuntime
    from backend.session_store import SessionStore

    def _make(history=None, clock=None, **kwargs):
        return SessionRuntime(
            store=SessionStore(store_path),
            driver=ManualDriver(),
            history_provider=StaticHistoryProvider(synthetic_history if history is None else history),
            clock=clock or fake_clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def runtime(make_runtime):
    rt = make_runtime()
    rt.initialize()
    return rt
