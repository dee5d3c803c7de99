"""
Tests for the entry policy gate.

Automatic entries: capacity, uniqueness, yield, liquidity, volume, age.
Manual entries: yield and liquidity only (plus uniqueness and capacity).
"""

import math
from datetime import timedelta

import pytest

from core.config import EngineConfig
from core.entry_policy import (
    REASON_AGE,
    REASON_AGE_UNKNOWN,
    REASON_ALREADY_OPEN,
    REASON_CAPACITY,
    REASON_LIQUIDITY,
    REASON_VOLUME,
    REASON_YIELD,
    EntryPolicy,
)
from tests.helpers import T0, make_opportunity


@pytest.fixture
def policy():
    return EntryPolicy(EngineConfig())


def _evaluate(policy, opp, open_ids=(), open_count=0):
    return policy.evaluate(opp, open_ids=set(open_ids), open_count=open_count, now=T0)


def test_default_candidate_approved(policy):
    decision = _evaluate(policy, make_opportunity())
    assert decision.approved
    assert decision.reason is None


@pytest.mark.parametrize(
    "kwargs,reason",
    [
        ({"yield_rate": 0.2999}, REASON_YIELD),
        ({"liquidity": 99.99}, REASON_LIQUIDITY),
        ({"volume": 49.5}, REASON_VOLUME),
        ({"created_at": T0 - timedelta(days=7, hours=1)}, REASON_AGE),
    ],
)
def test_single_threshold_rejections(policy, kwargs, reason):
    decision = _evaluate(policy, make_opportunity(**kwargs))
    assert not decision.approved
    assert decision.reason == reason
    assert decision.detail


def test_thresholds_are_inclusive(policy):
    opp = make_opportunity(
        yield_rate=0.30,
        liquidity=100,
        volume=50,
        created_at=T0 - timedelta(days=7),
    )
    assert _evaluate(policy, opp).approved


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
@pytest.mark.parametrize(
    "field,reason",
    [
        ("yield_rate", REASON_YIELD),
        ("liquidity", REASON_LIQUIDITY),
        ("volume", REASON_VOLUME),
    ],
)
def test_non_finite_metrics_rejected(policy, field, reason, value):
    decision = _evaluate(policy, make_opportunity(**{field: value}))
    assert not decision.approved
    assert decision.reason == reason


def test_capacity_checked_first(policy):
    # Fails every other check too; capacity wins
    opp = make_opportunity(yield_rate=0.01, liquidity=0, volume=0)
    decision = _evaluate(policy, opp, open_count=10)
    assert decision.reason == REASON_CAPACITY


def test_already_open_rejected(policy):
    decision = _evaluate(policy, make_opportunity("pool-1"), open_ids={"pool-1"}, open_count=1)
    assert decision.reason == REASON_ALREADY_OPEN


def test_unknown_age_allowed_by_default(policy):
    assert make_opportunity().created_at is None
    assert _evaluate(policy, make_opportunity()).approved


def test_unknown_age_rejected_when_required():
    strict = EntryPolicy(EngineConfig(require_opportunity_age=True))
    decision = _evaluate(strict, make_opportunity())
    assert decision.reason == REASON_AGE_UNKNOWN

    fresh = make_opportunity(created_at=T0 - timedelta(days=1))
    assert _evaluate(strict, fresh).approved


class TestManualEntryChecks:

    def test_volume_and_age_bypassed(self, policy):
        opp = make_opportunity(volume=0, created_at=T0 - timedelta(days=90))
        decision = policy.evaluate_manual(opp, open_ids=set(), open_count=0)
        assert decision.approved

    def test_yield_enforced(self, policy):
        decision = policy.evaluate_manual(make_opportunity(yield_rate=0.1), open_ids=set(), open_count=0)
        assert decision.reason == REASON_YIELD

    def test_liquidity_enforced(self, policy):
        decision = policy.evaluate_manual(make_opportunity(liquidity=10), open_ids=set(), open_count=0)
        assert decision.reason == REASON_LIQUIDITY

    def test_uniqueness_and_capacity_enforced(self, policy):
        opp = make_opportunity("pool-1")
        assert policy.evaluate_manual(opp, open_ids={"pool-1"}, open_count=1).reason == REASON_ALREADY_OPEN
        assert policy.evaluate_manual(opp, open_ids=set(), open_count=10).reason == REASON_CAPACITY

    @pytest.mark.parametrize("field,reason", [("yield_rate", REASON_YIELD), ("liquidity", REASON_LIQUIDITY)])
    def test_nan_metrics_rejected(self, policy, field, reason):
        opp = make_opportunity(**{field: math.nan})
        decision = policy.evaluate_manual(opp, open_ids=set(), open_count=0)
        assert not decision.approved
        assert decision.reason == reason
