"""
Tests for the JSON state store: round trip, fresh start and failure modes.
"""

import json
from datetime import timedelta

import pytest

from core.exceptions import PersistenceError
from core.models import EngineState, Position
from infra.state_store import StateStore, create_state_store_from_config
from tests.helpers import T0, make_opportunity


def _state_with_positions():
    state = EngineState()
    state.add_open(
        Position.open_from(make_opportunity("pool-1"), position_id="pos_a", committed_amount=1000.0, opened_at=T0)
    )
    settled = Position.open_from(
        make_opportunity("pool-2"), position_id="pos_b", committed_amount=1000.0, opened_at=T0
    )
    settled.close(
        closed_at=T0 + timedelta(hours=48),
        exit_yield_rate=0.5,
        exit_price=1.3,
        realized_pnl=111.11,
        realized_pnl_percent=11.11,
        held_duration_hours=48.0,
    )
    state.history.append(settled)
    state.stats.record_entry()
    state.stats.record_entry()
    state.stats.record_settlement(settled, state.history)
    return state


def test_missing_file_loads_none(store, state_path):
    assert not state_path.exists()
    assert store.load() is None


def test_empty_file_loads_none(store, state_path):
    state_path.parent.mkdir(parents=True)
    state_path.write_text("  \n")
    assert store.load() is None


def test_save_and_load_round_trip(store, state_path):
    state = _state_with_positions()
    store.save(state)

    assert state_path.exists()
    assert store.last_saved_at is not None

    loaded = store.load()
    assert loaded.open_positions == state.open_positions
    assert loaded.history == state.history
    assert loaded.stats == state.stats


def test_saved_document_shape(store, state_path):
    store.save(_state_with_positions())
    data = json.loads(state_path.read_text())
    assert data["version"] == 1
    assert "last_updated" in data
    assert set(data["open_positions"]) == {"pool-1"}
    assert data["history"][0]["state"] == "closed"
    assert data["stats"]["total_opened"] == 2


def test_save_leaves_no_temp_files(store, state_path):
    store.save(EngineState())
    store.save(_state_with_positions())
    leftovers = [p.name for p in state_path.parent.iterdir() if p.name.startswith(".engine_state_")]
    assert leftovers == []


def test_invalid_json_raises(store, state_path):
    state_path.parent.mkdir(parents=True)
    state_path.write_text("{not json")
    with pytest.raises(PersistenceError):
        store.load()


def test_invalid_structure_raises(store, state_path):
    state_path.parent.mkdir(parents=True)
    state_path.write_text(json.dumps({"open_positions": {"pool-1": {"state": "open"}}}))
    with pytest.raises(PersistenceError):
        store.load()


def test_unwritable_location_raises(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    store = StateStore(state_file=str(blocker / "engine_state.json"))
    with pytest.raises(PersistenceError):
        store.save(EngineState())
    assert store.last_saved_at is None


def test_env_default_path(monkeypatch, tmp_path):
    target = tmp_path / "env_state.json"
    monkeypatch.setenv("ENGINE_STATE_FILE", str(target))
    assert StateStore().state_file == target


def test_factory():
    store = create_state_store_from_config({"store": "json", "path": "data/x.json"})
    assert store.describe() == "json:data/x.json"
    with pytest.raises(ValueError):
        create_state_store_from_config({"store": "redis"})
