"""
Tests for fixed-hold exit eligibility and settlement pricing
"""
import math
from datetime import timedelta

import pytest

from core.config import EngineConfig
from core.models import Position, PositionState
from core.position_manager import PositionManager, compute_pnl
from tests.helpers import T0, make_opportunity


@pytest.fixture
def manager():
    return PositionManager(EngineConfig())


def _position(yield_rate=0.45, price=1.25):
    return Position.open_from(
        make_opportunity("pool-1", yield_rate=yield_rate, price=price),
        position_id="pos_1",
        committed_amount=1000.0,
        opened_at=T0,
    )


class TestComputePnl:

    def test_yield_increase(self):
        pct, pnl = compute_pnl(0.45, 0.50, 1000)
        assert pct == pytest.approx(11.111, abs=1e-3)
        assert pnl == pytest.approx(111.11, abs=1e-2)

    def test_yield_decrease(self):
        pct, pnl = compute_pnl(0.45, 0.30, 1000)
        assert pct == pytest.approx(-33.333, abs=1e-3)
        assert pnl == pytest.approx(-333.33, abs=1e-2)

    def test_unchanged_yield(self):
        assert compute_pnl(0.45, 0.45, 1000) == (0.0, 0.0)

    def test_zero_entry_yield_settles_flat(self):
        assert compute_pnl(0.0, 0.6, 1000) == (0.0, 0.0)


class TestEligibility:

    def test_not_eligible_before_hold(self, manager):
        position = _position()
        assert not manager.is_eligible(position, T0 + timedelta(hours=47, minutes=54))

    def test_eligible_at_exactly_hold(self, manager):
        assert manager.is_eligible(_position(), T0 + timedelta(hours=48))

    def test_closed_positions_never_eligible(self, manager):
        position = _position()
        quote = manager.quote(position, None, T0 + timedelta(hours=48))
        manager.settle(position, quote, T0 + timedelta(hours=48))
        assert not manager.is_eligible(position, T0 + timedelta(hours=100))

    def test_find_eligible_filters(self, manager):
        old = _position()
        young = Position.open_from(
            make_opportunity("pool-2"),
            position_id="pos_2",
            committed_amount=1000.0,
            opened_at=T0 + timedelta(hours=10),
        )
        assert manager.find_eligible([old, young], T0 + timedelta(hours=50)) == [old]


class TestQuoteAndSettle:

    def test_quote_from_current_listing(self, manager):
        position = _position(yield_rate=0.45, price=1.25)
        now = T0 + timedelta(hours=49)
        current = make_opportunity("pool-1", yield_rate=0.50, price=1.40)

        quote = manager.quote(position, current, now)

        assert not quote.degraded
        assert quote.exit_yield_rate == 0.50
        assert quote.exit_price == 1.40
        assert quote.yield_delta == pytest.approx(0.05)
        assert quote.realized_pnl == pytest.approx(111.11, abs=1e-2)
        assert quote.held_hours == pytest.approx(49.0)

    def test_quote_falls_back_to_entry_snapshot(self, manager):
        position = _position(yield_rate=0.45, price=1.25)
        quote = manager.quote(position, None, T0 + timedelta(hours=49))
        assert quote.degraded
        assert quote.exit_yield_rate == 0.45
        assert quote.exit_price == 1.25
        assert quote.realized_pnl == 0.0
        assert quote.pnl_percent == 0.0

    @pytest.mark.parametrize("kwargs", [{"yield_rate": math.nan}, {"price": math.inf}])
    def test_non_finite_listing_falls_back_to_entry_snapshot(self, manager, kwargs):
        position = _position(yield_rate=0.45, price=1.25)
        current = make_opportunity("pool-1", **kwargs)
        quote = manager.quote(position, current, T0 + timedelta(hours=49))
        assert quote.degraded
        assert quote.exit_yield_rate == 0.45
        assert quote.exit_price == 1.25
        assert quote.realized_pnl == 0.0

    def test_malformed_snapshot_rejected(self, manager):
        position = _position()
        position.entry_yield_rate = math.nan
        with pytest.raises(ValueError):
            manager.quote(position, None, T0 + timedelta(hours=49))
        assert position.state is PositionState.OPEN

    def test_settle_closes_with_quote(self, manager):
        position = _position()
        now = T0 + timedelta(hours=49)
        quote = manager.quote(position, make_opportunity("pool-1", yield_rate=0.30, price=1.0), now)

        manager.settle(position, quote, now)

        assert position.state is PositionState.CLOSED
        assert position.closed_at == now
        assert position.exit_yield_rate == 0.30
        assert position.realized_pnl == pytest.approx(-333.33, abs=1e-2)
        assert position.realized_pnl_percent == pytest.approx(quote.pnl_percent)
        assert position.held_duration_hours == pytest.approx(49.0)
