"""Bucket ledger -- owns every bucket and the rush pointer.

All balance / weight / flag mutation goes through BucketLedger. The ledger
never allocates on its own: credits come from the allocator (apply_deltas),
debits from `purchased` messages (debit).

Invariants held after every public method returns:
    - balance >= 0 for every bucket
    - lifetime_spent never decreases (except on full reset)
    - rush_bucket is None or names an ACTIVE bucket
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from budget_controller import (
    DEFAULT_WEIGHTS,
    compute_effective_weights,
    default_weight,
    is_cap_reached,
    redistribute_surplus,
)

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Bucket
# ---------------------------------------------------------------------------

@dataclass
class Bucket:
    """A named accumulator of spendable value."""
    name: str
    balance: float = 0.0
    weight: float = 0.0
    active: bool = True
    lifetime_spent: float = 0.0
    cap: Optional[float] = None  # advisory: lifetime_spent + remaining cost

    @classmethod
    def fresh(cls, name: str) -> "Bucket":
        return cls(name=name, weight=default_weight(name))

    @property
    def cap_reached(self) -> bool:
        return is_cap_reached(self.lifetime_spent, self.cap)


# ---------------------------------------------------------------------------
# BucketLedger
# ---------------------------------------------------------------------------

class BucketLedger:
    """Mutable map of bucket name -> Bucket plus the optional rush bucket."""

    def __init__(self, buckets: Optional[Iterable[Bucket]] = None,
                 rush_bucket: Optional[str] = None):
        self.buckets: Dict[str, Bucket] = {}
        for bucket in buckets or ():
            self.buckets[bucket.name] = bucket
        self.rush_bucket: Optional[str] = rush_bucket
        self._clear_dead_rush()

    @classmethod
    def with_defaults(cls, defaults: Optional[Mapping[str, float]] = None) -> "BucketLedger":
        """Fresh ledger holding one zeroed bucket per default weight."""
        if defaults is None:
            defaults = DEFAULT_WEIGHTS
        return cls(Bucket(name=name, weight=float(w)) for name, w in defaults.items())

    # -- lookup -------------------------------------------------------------

    def __contains__(self, name: str) -> bool:
        return name in self.buckets

    def __len__(self) -> int:
        return len(self.buckets)

    def names(self) -> List[str]:
        return list(self.buckets)

    def get(self, name: str) -> Optional[Bucket]:
        return self.buckets.get(name)

    def ensure(self, name: str) -> Bucket:
        """Return the named bucket, creating it with defaults on first reference."""
        bucket = self.buckets.get(name)
        if bucket is None:
            bucket = Bucket.fresh(name)
            self.buckets[name] = bucket
            _log.info(f"Bucket created: {name} (weight={bucket.weight:g})")
        return bucket

    def weights(self) -> Dict[str, float]:
        return {name: b.weight for name, b in self.buckets.items()}

    def active_flags(self) -> Dict[str, bool]:
        return {name: b.active for name, b in self.buckets.items()}

    def effective_weights(self) -> Dict[str, float]:
        return compute_effective_weights(self.weights(), self.active_flags(), self.rush_bucket)

    def total_balance(self) -> float:
        return sum(b.balance for b in self.buckets.values())

    # -- credits / debits ---------------------------------------------------

    def apply_deltas(self, deltas: Mapping[str, float]) -> None:
        """Credit allocator output. Only active buckets are ever credited."""
        for name, delta in deltas.items():
            if delta <= 0:
                continue
            bucket = self.ensure(name)
            if not bucket.active:
                continue
            bucket.balance += delta

    def debit(self, name: str, amount: float) -> None:
        """Record a completed purchase. Balance is clamped at zero."""
        bucket = self.ensure(name)
        bucket.balance = max(0.0, bucket.balance - amount)
        bucket.lifetime_spent += amount

    # -- control ------------------------------------------------------------

    def complete(self, name: str) -> bool:
        """Deactivate a bucket and hand its residual balance to the others.

        Returns False (and changes nothing) when the bucket is already
        inactive. Residual balance is split over the remaining active buckets
        by weight; with no eligible recipient it stays on the bucket. The
        weight itself is kept so a reset restores the bucket's old share.
        """
        bucket = self.ensure(name)
        if not bucket.active:
            return False

        bucket.active = False
        shares = redistribute_surplus(
            bucket.balance, name, self.weights(), self.active_flags()
        )
        if shares:
            bucket.balance = 0.0
            for recipient, share in shares.items():
                self.buckets[recipient].balance += share
        self._clear_dead_rush()
        return True

    def set_cap(self, name: str, remaining_cost: float) -> None:
        bucket = self.ensure(name)
        bucket.cap = bucket.lifetime_spent + remaining_cost

    def set_weight(self, name: str, weight: float) -> None:
        self.ensure(name).weight = weight

    def reset_weights(self) -> None:
        for name, bucket in self.buckets.items():
            bucket.weight = default_weight(name)

    def set_rush(self, name: str) -> None:
        self.ensure(name)
        self.rush_bucket = name
        self._clear_dead_rush()

    def cancel_rush(self) -> None:
        self.rush_bucket = None

    def _clear_dead_rush(self) -> None:
        if self.rush_bucket is None:
            return
        target = self.buckets.get(self.rush_bucket)
        if target is None or not target.active:
            _log.info(f"Rush cleared: {self.rush_bucket} is inactive")
            self.rush_bucket = None

    # -- reset --------------------------------------------------------------

    def full_reset(self) -> None:
        """Zero every bucket and reactivate it. Weights are left alone."""
        for bucket in self.buckets.values():
            bucket.balance = 0.0
            bucket.lifetime_spent = 0.0
            bucket.active = True
            bucket.cap = None
        self.rush_bucket = None

    # -- snapshot -----------------------------------------------------------

    def snapshot(self) -> Dict[str, dict]:
        """Per-bucket view for the status snapshot."""
        effective = self.effective_weights()
        return {
            name: {
                "balance": round(b.balance, 2),
                "weight": b.weight,
                "effective_weight": round(effective.get(name, 0.0), 6),
                "lifetime_spent": round(b.lifetime_spent, 2),
                "active": b.active,
                "cap": b.cap,
                "cap_reached": b.cap_reached,
            }
            for name, b in sorted(self.buckets.items())
        }
