"""Tests for the pure income-splitting logic in budget_controller."""

import math
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from budget_controller import (
    DEFAULT_WEIGHTS,
    INCOME_WINDOW_SIZE,
    NEW_BUCKET_WEIGHT,
    IncomeWindow,
    calculate_income,
    compute_effective_weights,
    default_weight,
    is_cap_reached,
    is_wealth_reset,
    redistribute_surplus,
    split_income,
)


# ===========================================================================
# Income / reset detection
# ===========================================================================

class TestIncome:
    def test_positive_delta(self):
        assert calculate_income(1000, 1500, 0) == 500

    def test_purchases_are_subtracted(self):
        assert calculate_income(1000, 1500, 200) == 300

    def test_negative_delta_absorbed(self):
        """Manual spending outside the buckets never yields negative income."""
        assert calculate_income(1000, 400, 0) == 0.0
        assert calculate_income(1000, 1100, 500) == 0.0


class TestReset:
    def test_95_percent_drop_is_reset(self):
        assert is_wealth_reset(1_000_000, 50_000)

    def test_exact_ten_percent_is_not_reset(self):
        assert not is_wealth_reset(1_000_000, 100_000)

    def test_large_but_partial_drop_is_not_reset(self):
        assert not is_wealth_reset(1_000_000, 150_000)

    def test_zero_previous_never_resets(self):
        assert not is_wealth_reset(0, 0)
        assert not is_wealth_reset(0, 10)


class TestIncomeWindow:
    def test_empty_rate_is_zero(self):
        assert IncomeWindow().rate_per_second(2.0) == 0.0

    def test_rate_is_mean_over_interval(self):
        w = IncomeWindow()
        for income in (100, 200, 300):
            w.push(income)
        assert w.rate_per_second(2.0) == pytest.approx(100.0)

    def test_window_is_bounded(self):
        w = IncomeWindow()
        for i in range(INCOME_WINDOW_SIZE + 5):
            w.push(1000 if i < 5 else 10)
        assert len(w) == INCOME_WINDOW_SIZE
        assert w.rate_per_second(1.0) == pytest.approx(10.0)

    def test_clear(self):
        w = IncomeWindow()
        w.push(50)
        w.clear()
        assert len(w) == 0
        assert w.rate_per_second(1.0) == 0.0


# ===========================================================================
# split_income
# ===========================================================================

class TestSplit:
    def test_two_bucket_example(self):
        deltas = split_income(400, {"A": 30, "B": 10}, {"A": True, "B": True}, None)
        assert deltas == {"A": 300.0, "B": 100.0}

    def test_inactive_bucket_gets_nothing(self):
        deltas = split_income(500, {"A": 10, "C": 90}, {"A": True, "C": False}, None)
        assert deltas["A"] == 500.0
        assert deltas.get("C", 0) == 0

    def test_zero_income_is_empty(self):
        assert split_income(0, {"A": 1}, {"A": True}, None) == {}

    def test_no_active_weight_is_empty(self):
        assert split_income(100, {"A": 5}, {"A": False}, None) == {}
        assert split_income(100, {"A": 0, "B": 0}, {"A": True, "B": True}, None) == {}

    def test_rush_takes_everything(self):
        deltas = split_income(
            1234.5, {"A": 90, "B": 10}, {"A": True, "B": True}, "B"
        )
        assert deltas["B"] == 1234.5
        assert deltas["A"] == 0

    def test_rush_on_inactive_bucket_is_ignored(self):
        deltas = split_income(100, {"A": 1, "B": 1}, {"A": True, "B": False}, "B")
        assert deltas == {"A": 100.0, "B": 0.0}

    @pytest.mark.parametrize("income", [0.01, 1, 7, 99, 1000, 123_456.78, 9_876_543_210, 1e300])
    def test_sum_matches_income_without_exceeding(self, income):
        weights = {"a": 3, "b": 7, "c": 11, "d": 0.5, "e": 2}
        active = {"a": True, "b": True, "c": True, "d": True, "e": False}
        deltas = split_income(income, weights, active, None)
        total = math.fsum(deltas.values())
        assert total <= income
        assert total == pytest.approx(income, rel=1e-12)
        assert deltas["e"] == 0

    def test_small_income_not_lost(self):
        deltas = split_income(2, {"A": 1, "B": 1, "C": 1}, {"A": True, "B": True, "C": True}, None)
        assert all(d > 0 for d in deltas.values())
        assert deltas["A"] == pytest.approx(2 / 3)
        assert math.fsum(deltas.values()) <= 2
        assert math.fsum(deltas.values()) == pytest.approx(2)

    def test_zero_weight_active_bucket_gets_nothing(self):
        deltas = split_income(90, {"A": 1, "B": 2, "Z": 0}, {"A": True, "B": True, "Z": True}, None)
        assert deltas["A"] == pytest.approx(30)
        assert deltas["B"] == pytest.approx(60)
        assert deltas["Z"] == pytest.approx(0, abs=1e-9)

    def test_defaults_split_sums_to_income(self):
        active = {b: True for b in DEFAULT_WEIGHTS}
        deltas = split_income(1_200_000, DEFAULT_WEIGHTS, active, None)
        assert math.fsum(deltas.values()) == 1_200_000


class TestEffectiveWeights:
    def test_normalized_over_active(self):
        eff = compute_effective_weights(
            {"A": 30, "B": 10, "C": 60}, {"A": True, "B": True, "C": False}, None
        )
        assert eff == {"A": 0.75, "B": 0.25, "C": 0.0}

    def test_rush(self):
        eff = compute_effective_weights({"A": 30, "B": 10}, {"A": True, "B": True}, "A")
        assert eff == {"A": 1.0, "B": 0.0}

    def test_all_inactive(self):
        eff = compute_effective_weights({"A": 1}, {"A": False}, None)
        assert eff == {"A": 0.0}


# ===========================================================================
# Completion / caps / defaults
# ===========================================================================

class TestRedistribute:
    def test_proportional(self):
        shares = redistribute_surplus(
            100, "X", {"X": 50, "A": 30, "B": 10}, {"X": False, "A": True, "B": True}
        )
        assert shares == {"A": pytest.approx(75.0), "B": pytest.approx(25.0)}

    def test_no_recipient(self):
        assert redistribute_surplus(100, "X", {"X": 1, "A": 1}, {"X": False, "A": False}) == {}

    def test_zero_weight_recipients_skipped(self):
        shares = redistribute_surplus(
            90, "X", {"X": 1, "A": 0, "B": 3}, {"X": False, "A": True, "B": True}
        )
        assert shares == {"B": pytest.approx(90.0)}

    def test_no_surplus(self):
        assert redistribute_surplus(0, "X", {"A": 1}, {"A": True}) == {}


def test_cap_reached():
    assert not is_cap_reached(100, None)
    assert not is_cap_reached(99, 100)
    assert is_cap_reached(100, 100)


def test_default_weight_for_unknown_bucket():
    assert default_weight("stocks") == DEFAULT_WEIGHTS["stocks"]
    assert default_weight("brand-new") == NEW_BUCKET_WEIGHT
