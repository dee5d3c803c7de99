"""
Pytest configuration and fixtures for lifecycle engine tests.

This conftest.py provides shared fixtures for all tests.
"""
import pytest

from core.config import EngineConfig
from core.lifecycle_engine import LifecycleEngine
from core.opportunity_source import StaticOpportunitySource
from infra.clock import ManualClock
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from tests.helpers import T0


@pytest.fixture
def engine_config():
    """Default policy: 30% APY, $1000, 48h hold, 10 slots, $100 liquidity, $50 volume."""
    return EngineConfig(source_timeout_seconds=2.0)


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def source():
    return StaticOpportunitySource()


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "data" / "engine_state.json"


@pytest.fixture
def store(state_path):
    return StateStore(state_file=str(state_path))


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False)


@pytest.fixture
def engine(engine_config, source, store, clock, metrics):
    eng = LifecycleEngine(engine_config, source, store, clock, metrics=metrics)
    eng.initialize()
    yield eng
    eng.stop()
