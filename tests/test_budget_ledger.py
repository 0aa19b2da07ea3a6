"""Tests for BucketLedger mutation rules."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from budget_controller import DEFAULT_WEIGHTS, NEW_BUCKET_WEIGHT
from budget_ledger import Bucket, BucketLedger


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ledger(**layout) -> BucketLedger:
    """_ledger(A=(30, True, 0.0), ...) -> weight, active, balance per bucket."""
    buckets = []
    for name, (weight, active, balance) in layout.items():
        buckets.append(Bucket(name=name, weight=weight, active=active, balance=balance))
    return BucketLedger(buckets)


# ===========================================================================
# Creation
# ===========================================================================

def test_with_defaults_creates_zeroed_active_buckets():
    ledger = BucketLedger.with_defaults()
    assert sorted(ledger.names()) == sorted(DEFAULT_WEIGHTS)
    for name, bucket in ledger.buckets.items():
        assert bucket.balance == 0
        assert bucket.lifetime_spent == 0
        assert bucket.active
        assert bucket.cap is None
        assert bucket.weight == DEFAULT_WEIGHTS[name]


def test_ensure_creates_with_documented_defaults():
    ledger = BucketLedger()
    bucket = ledger.ensure("corp")
    assert bucket == Bucket(name="corp", weight=NEW_BUCKET_WEIGHT)
    assert ledger.ensure("corp") is bucket


def test_constructor_drops_rush_on_unknown_or_inactive_bucket():
    assert BucketLedger([], rush_bucket="ghost").rush_bucket is None
    ledger = BucketLedger([Bucket("A", weight=1, active=False)], rush_bucket="A")
    assert ledger.rush_bucket is None


# ===========================================================================
# Credits / debits
# ===========================================================================

class TestCreditsDebits:
    def test_apply_deltas_skips_inactive(self):
        ledger = _ledger(A=(10, True, 0.0), C=(90, False, 5.0))
        ledger.apply_deltas({"A": 500, "C": 100})
        assert ledger.get("A").balance == 500
        assert ledger.get("C").balance == 5.0

    def test_debit_reduces_balance_and_tracks_lifetime(self):
        ledger = _ledger(A=(30, True, 300.0))
        ledger.debit("A", 120)
        assert ledger.get("A").balance == 180
        assert ledger.get("A").lifetime_spent == 120

    def test_overdraw_clamps_to_zero(self):
        ledger = _ledger(A=(30, True, 50.0))
        ledger.debit("A", 80)
        assert ledger.get("A").balance == 0
        assert ledger.get("A").lifetime_spent == 80

    def test_debit_unknown_bucket_creates_it(self):
        ledger = BucketLedger()
        ledger.debit("new", 10)
        assert ledger.get("new").balance == 0
        assert ledger.get("new").lifetime_spent == 10


# ===========================================================================
# Completion
# ===========================================================================

class TestCompletion:
    def test_residual_redistributed_by_weight(self):
        ledger = _ledger(X=(50, True, 100.0), A=(30, True, 0.0), B=(10, True, 0.0))
        assert ledger.complete("X") is True
        assert not ledger.get("X").active
        assert ledger.get("X").balance == 0
        assert ledger.get("X").weight == 50
        assert ledger.get("A").balance == pytest.approx(75.0)
        assert ledger.get("B").balance == pytest.approx(25.0)

    def test_residual_kept_without_recipient(self):
        ledger = _ledger(X=(50, True, 100.0), A=(30, False, 0.0))
        ledger.complete("X")
        assert ledger.get("X").balance == 100.0
        assert ledger.get("A").balance == 0.0

    def test_done_twice_is_noop(self):
        ledger = _ledger(X=(50, True, 100.0), A=(30, True, 0.0))
        ledger.complete("X")
        ledger.get("X").balance = 42.0  # pretend something is left over
        before_a = ledger.get("A").balance
        assert ledger.complete("X") is False
        assert ledger.get("X").balance == 42.0
        assert ledger.get("X").weight == 50
        assert ledger.get("A").balance == before_a

    def test_completion_clears_rush_on_that_bucket(self):
        ledger = _ledger(A=(1, True, 0.0), B=(1, True, 0.0))
        ledger.set_rush("A")
        assert ledger.rush_bucket == "A"
        ledger.complete("A")
        assert ledger.rush_bucket is None

    def test_completion_of_other_bucket_keeps_rush(self):
        ledger = _ledger(A=(1, True, 0.0), B=(1, True, 0.0))
        ledger.set_rush("A")
        ledger.complete("B")
        assert ledger.rush_bucket == "A"


# ===========================================================================
# Control
# ===========================================================================

class TestControl:
    def test_set_cap_adds_lifetime_spent(self):
        ledger = _ledger(A=(1, True, 0.0))
        ledger.debit("A", 250)
        ledger.set_cap("A", 1000)
        assert ledger.get("A").cap == 1250
        assert not ledger.get("A").cap_reached
        ledger.debit("A", 1000)
        assert ledger.get("A").cap_reached

    def test_rush_on_inactive_bucket_is_cleared_immediately(self):
        ledger = _ledger(A=(1, False, 0.0), B=(1, True, 0.0))
        ledger.set_rush("A")
        assert ledger.rush_bucket is None

    def test_rush_creates_bucket(self):
        ledger = BucketLedger()
        ledger.set_rush("gang")
        assert ledger.rush_bucket == "gang"
        assert ledger.get("gang").active

    def test_cancel_rush(self):
        ledger = _ledger(A=(1, True, 0.0))
        ledger.set_rush("A")
        ledger.cancel_rush()
        assert ledger.rush_bucket is None

    def test_reset_weights(self):
        ledger = BucketLedger.with_defaults()
        ledger.set_weight("stocks", 1)
        ledger.set_weight("custom", 77)
        ledger.reset_weights()
        assert ledger.get("stocks").weight == DEFAULT_WEIGHTS["stocks"]
        assert ledger.get("custom").weight == NEW_BUCKET_WEIGHT


def test_full_reset_zeroes_and_reactivates():
    ledger = _ledger(A=(30, True, 500.0), B=(10, False, 20.0))
    ledger.debit("A", 100)
    ledger.set_cap("A", 10)
    ledger.set_rush("A")
    ledger.full_reset()

    for bucket in ledger.buckets.values():
        assert bucket.balance == 0
        assert bucket.lifetime_spent == 0
        assert bucket.active
        assert bucket.cap is None
    assert ledger.rush_bucket is None
    assert ledger.get("A").weight == 30
    assert ledger.get("B").weight == 10


def test_snapshot_shape():
    ledger = _ledger(A=(30, True, 10.0), B=(10, True, 0.0))
    snap = ledger.snapshot()
    assert set(snap) == {"A", "B"}
    assert snap["A"] == {
        "balance": 10.0,
        "weight": 30,
        "effective_weight": 0.75,
        "lifetime_spent": 0.0,
        "active": True,
        "cap": None,
        "cap_reached": False,
    }
