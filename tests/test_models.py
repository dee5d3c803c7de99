"""Tests for positions, stats and the engine state root."""

from datetime import timedelta

import pytest

from core.exceptions import PersistenceError
from core.models import (
    AggregateStats,
    EngineState,
    Opportunity,
    Position,
    PositionState,
    parse_timestamp,
)
from tests.helpers import T0, make_opportunity


def _open(opportunity_id="pool-1", position_id="pos_1", **kwargs):
    return Position.open_from(
        make_opportunity(opportunity_id, **kwargs),
        position_id=position_id,
        committed_amount=1000.0,
        opened_at=T0,
    )


def _closed(position, pnl, hours):
    position.close(
        closed_at=position.opened_at + timedelta(hours=hours),
        exit_yield_rate=0.5,
        exit_price=1.3,
        realized_pnl=pnl,
        realized_pnl_percent=pnl / 10,
        held_duration_hours=hours,
    )
    return position


class TestOpportunity:

    def test_from_pool_cache_record(self):
        raw = {
            "id": "HJPjoWUrhoZzkNfRpHuieeFk9WcZWjwy6PBjZ81ngndJ",
            "name": "SOL/USDC",
            "protocol": "Orca",
            "apy": 0.45,
            "price": 101.5,
            "liquidity": 5000,
            "volume_24h": 200,
            "lastFetched": "2024-03-01T12:00:00.000Z",
        }
        opp = Opportunity.from_mapping(raw)
        assert opp.provenance == "Orca"
        assert opp.yield_rate == pytest.approx(0.45)
        assert opp.volume == 200.0
        assert opp.fetched_at == T0
        assert opp.created_at is None

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            Opportunity.from_mapping({"name": "x", "apy": 0.4})

    def test_non_finite_price_rejected(self):
        with pytest.raises(ValueError, match="price"):
            Opportunity.from_mapping({"id": "pool-1", "apy": 0.4, "price": "nan"})

    def test_age_days(self):
        opp = make_opportunity(created_at=T0 - timedelta(days=3))
        assert opp.age_days(T0) == pytest.approx(3.0)
        assert make_opportunity().age_days(T0) is None

    def test_naive_timestamp_treated_as_utc(self):
        assert parse_timestamp("2024-03-01T12:00:00") == T0


class TestPositionLifecycle:

    def test_open_position_has_no_exit_fields(self):
        position = _open()
        assert position.state is PositionState.OPEN
        assert position.closed_at is None
        assert position.realized_pnl is None
        assert position.held_duration_hours is None

    def test_entry_snapshot_copied(self):
        position = _open(yield_rate=0.45, liquidity=5000, volume=200)
        assert position.entry_yield_rate == 0.45
        assert position.entry_liquidity == 5000
        assert position.entry_volume == 200
        assert position.committed_amount == 1000.0

    def test_close_sets_every_exit_field(self):
        position = _closed(_open(), 111.1, 49)
        assert position.state is PositionState.CLOSED
        assert None not in (
            position.closed_at,
            position.exit_yield_rate,
            position.exit_price,
            position.realized_pnl,
            position.realized_pnl_percent,
            position.held_duration_hours,
        )

    def test_close_is_irreversible(self):
        position = _closed(_open(), 10.0, 48)
        with pytest.raises(ValueError):
            _closed(position, 20.0, 50)
        assert position.realized_pnl == 10.0

    def test_dict_round_trip(self):
        closed = _closed(_open(), -25.0, 50.5)
        assert Position.from_dict(closed.to_dict()) == closed
        fresh = _open()
        assert Position.from_dict(fresh.to_dict()) == fresh

    def test_open_with_exit_fields_is_invalid(self):
        data = _open().to_dict()
        data["realized_pnl"] = 5.0
        with pytest.raises(ValueError):
            Position.from_dict(data)

    def test_closed_missing_exit_fields_is_invalid(self):
        data = _closed(_open(), 5.0, 48).to_dict()
        data["exit_price"] = None
        with pytest.raises(ValueError):
            Position.from_dict(data)


class TestAggregateStats:

    def test_profit_and_loss_split(self):
        stats = AggregateStats()
        history = []
        for idx, (pnl, hours) in enumerate([(100.0, 48), (-40.0, 50), (0.0, 52)]):
            position = _closed(_open(f"pool-{idx}", f"pos_{idx}"), pnl, hours)
            history.append(position)
            stats.record_settlement(position, history)

        assert stats.total_settled == 3
        assert stats.profitable_count == 1
        # zero P&L counts as a loss
        assert stats.loss_count == 2
        assert stats.cumulative_profit == pytest.approx(100.0)
        assert stats.cumulative_loss == pytest.approx(40.0)
        assert stats.avg_hold_hours == pytest.approx(50.0)
        assert stats.net_pnl == pytest.approx(60.0)
        assert stats.win_rate == pytest.approx(1 / 3)

    def test_empty_stats(self):
        stats = AggregateStats()
        assert stats.win_rate == 0.0
        assert stats.to_dict()["net_pnl"] == 0.0


class TestEngineState:

    def test_uniqueness_by_opportunity(self):
        state = EngineState()
        state.add_open(_open("pool-1", "pos_a"))
        with pytest.raises(ValueError):
            state.add_open(_open("pool-1", "pos_b"))
        assert state.open_count == 1

    def test_lookup_by_id_and_archive(self):
        state = EngineState()
        position = _open("pool-1", "pos_a")
        state.add_open(position)
        assert state.get_open("pos_a") is position

        _closed(position, 12.0, 48)
        state.archive(position)
        assert state.get_open("pos_a") is None
        assert not state.has_open("pool-1")
        assert state.history == [position]

    def test_archive_rejects_open_position(self):
        state = EngineState()
        position = _open()
        state.add_open(position)
        with pytest.raises(ValueError):
            state.archive(position)

    def test_round_trip(self):
        state = EngineState()
        state.add_open(_open("pool-1", "pos_a"))
        settled = _closed(_open("pool-2", "pos_b"), 50.0, 48)
        state.history.append(settled)
        state.stats.record_entry()
        state.stats.record_entry()
        state.stats.record_settlement(settled, state.history)

        restored = EngineState.from_dict(state.to_dict())
        assert restored.open_positions == state.open_positions
        assert restored.history == state.history
        assert restored.stats == state.stats
        assert restored.get_open("pos_a") is not None

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"open_positions": ["pos_1"]},
            {"history": {"a": 1}},
            {"open_positions": {"pool-1": {"id": "pos_1"}}},
            {"open_positions": {}, "history": [], "stats": [1, 2]},
            {"stats": "broken"},
            {"history": [7]},
        ],
    )
    def test_invalid_structure_raises_persistence_error(self, payload):
        with pytest.raises(PersistenceError):
            EngineState.from_dict(payload)

    def test_open_position_filed_under_wrong_key(self):
        data = {"open_positions": {"pool-9": _open("pool-1").to_dict()}}
        with pytest.raises(PersistenceError):
            EngineState.from_dict(data)
