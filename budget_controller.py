"""Budget controller -- pure income-splitting logic.

No file I/O, no clock, no logging. Everything here is a plain function of its
arguments so the daemon loop and the tests can call it directly.

Income model:
    income = max(0, current - previous - purchases_this_tick)
    reset  = previous > 0 and current < previous * RESET_DROP_RATIO

Allocation:
    rush active     -> 100% of income to the rush bucket
    otherwise       -> income * weight / S per active bucket,
                       S = sum of active weights; the last active bucket
                       takes the remainder so the total never exceeds income
"""

from __future__ import annotations

import math
from collections import deque
from typing import Deque, Dict, Mapping, Optional


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_WEIGHTS: Dict[str, float] = {
    "stocks": 50.0,
    "servers": 25.0,
    "gang": 15.0,
    "home": 10.0,
    "hacknet": 10.0,
    "programs": 5.0,
    "wse-access": 5.0,
}

# Weight given to a bucket that is not in DEFAULT_WEIGHTS when it is first
# referenced (and when weights are reset).
NEW_BUCKET_WEIGHT = 10.0

RESET_DROP_RATIO = 0.10
INCOME_WINDOW_SIZE = 10


def default_weight(bucket: str) -> float:
    """Documented default weight for a bucket name."""
    return DEFAULT_WEIGHTS.get(bucket, NEW_BUCKET_WEIGHT)


# ---------------------------------------------------------------------------
# Income / anomaly detection
# ---------------------------------------------------------------------------

def calculate_income(previous: float, current: float, purchases_this_tick: float) -> float:
    """Income for one tick. Negative raw deltas are absorbed, never negative."""
    return max(0.0, current - previous - purchases_this_tick)


def is_wealth_reset(previous: float, current: float) -> bool:
    """True when the counter dropped by more than ~90% since the last tick.

    A non-positive previous reading can never signal a reset (there is
    nothing to collapse from).
    """
    if previous <= 0:
        return False
    return current < previous * RESET_DROP_RATIO


class IncomeWindow:
    """Bounded trailing window of per-tick income samples (display only)."""

    def __init__(self, size: int = INCOME_WINDOW_SIZE):
        self.size = int(size)
        self._samples: Deque[float] = deque(maxlen=self.size)

    def __len__(self) -> int:
        return len(self._samples)

    def push(self, income: float) -> None:
        self._samples.append(float(income))

    def clear(self) -> None:
        self._samples.clear()

    def rate_per_second(self, interval_seconds: float) -> float:
        """Average income per tick divided by the tick interval."""
        if not self._samples or interval_seconds <= 0:
            return 0.0
        return (sum(self._samples) / len(self._samples)) / interval_seconds


# ---------------------------------------------------------------------------
# Effective weights and income splitting
# ---------------------------------------------------------------------------

def _rush_is_live(rush_bucket: Optional[str], active_flags: Mapping[str, bool]) -> bool:
    return rush_bucket is not None and bool(active_flags.get(rush_bucket, False))


def _active_weight_total(weights: Mapping[str, float], active_flags: Mapping[str, bool]) -> float:
    return sum(w for b, w in weights.items() if active_flags.get(b, False))


def compute_effective_weights(
    weights: Mapping[str, float],
    active_flags: Mapping[str, bool],
    rush_bucket: Optional[str],
) -> Dict[str, float]:
    """Share of income each bucket would receive this tick (0.0 - 1.0)."""
    if _rush_is_live(rush_bucket, active_flags):
        return {b: (1.0 if b == rush_bucket else 0.0) for b in weights}

    total = _active_weight_total(weights, active_flags)
    effective: Dict[str, float] = {}
    for bucket, weight in weights.items():
        if active_flags.get(bucket, False) and total > 0:
            effective[bucket] = weight / total
        else:
            effective[bucket] = 0.0
    return effective


def split_income(
    income: float,
    weights: Mapping[str, float],
    active_flags: Mapping[str, bool],
    rush_bucket: Optional[str],
) -> Dict[str, float]:
    """Split one tick's income into per-bucket deltas.

    Returns an empty dict when there is nothing to distribute (no income, or
    no active weight). Shares are exact floats; the last active bucket gets
    whatever the others left, so the deltas sum to income without ever
    exceeding it.
    """
    if income <= 0:
        return {}

    if _rush_is_live(rush_bucket, active_flags):
        return {
            b: (income if b == rush_bucket else 0.0)
            for b in weights if active_flags.get(b, False)
        }

    total = _active_weight_total(weights, active_flags)
    if total <= 0:
        return {}

    active = [b for b in weights if active_flags.get(b, False)]
    deltas: Dict[str, float] = {b: 0.0 for b in weights}
    for bucket in active[:-1]:
        # multiply first: keeps exact results exact (400 * 30 / 40 == 300)
        deltas[bucket] = income * weights[bucket] / total

    # last active bucket takes the remainder, trimmed so the total never
    # exceeds income
    last = active[-1]
    others = [deltas[b] for b in active[:-1]]
    share = max(0.0, income - math.fsum(others))
    while share > 0 and math.fsum(others + [share]) > income:
        share = math.nextafter(share, 0.0)
    deltas[last] = share
    return deltas


# ---------------------------------------------------------------------------
# Completion and caps
# ---------------------------------------------------------------------------

def redistribute_surplus(
    surplus: float,
    donor: str,
    weights: Mapping[str, float],
    active_flags: Mapping[str, bool],
) -> Dict[str, float]:
    """Proportional share of a completed bucket's balance for each recipient.

    Recipients are the other active buckets with positive weight. Returns an
    empty dict when there is no surplus or no recipient.
    """
    if surplus <= 0:
        return {}
    recipients = [
        b for b in weights
        if b != donor and active_flags.get(b, False) and weights[b] > 0
    ]
    total = sum(weights[b] for b in recipients)
    if total <= 0:
        return {}
    return {b: surplus * weights[b] / total for b in recipients}


def is_cap_reached(lifetime_spent: float, cap: Optional[float]) -> bool:
    """Advisory: has a bucket spent its reported cost ceiling?"""
    if cap is None:
        return False
    return lifetime_spent >= cap
