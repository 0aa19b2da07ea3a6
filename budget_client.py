"""Budget client -- helpers for daemons that spend from buckets.

ISOLATION: This module does NOT import budget_daemon. Consumers only
write control messages / markers and read the published status file.

If the budget daemon is not running (no status, or status older than
STALE_AFTER_S), balance lookups degrade to "unlimited" (math.inf) so
consumers keep working without it.
"""

import json
import math
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from budget_channels import FileInbox, FileMarkerStore
from budget_messages import (
    CancelRush,
    ControlMessage,
    Done,
    Purchased,
    ReportCap,
    ResetWeights,
    Rush,
    UpdateWeight,
    encode_message,
)

STALE_AFTER_S = 30.0


# ---------------------------------------------------------------------------
# Status reading
# ---------------------------------------------------------------------------

@dataclass
class BucketStatus:
    name: str
    balance: float = 0.0
    weight: float = 0.0
    effective_weight: float = 0.0
    lifetime_spent: float = 0.0
    active: bool = True
    cap: Optional[float] = None
    cap_reached: bool = False


@dataclass
class BudgetStatus:
    """Budget daemon status read from status.json."""
    status: str = "UNKNOWN"
    published_at: Optional[float] = None
    tick_count: int = 0
    total_wealth: Optional[float] = None
    income_rate: float = 0.0
    rush_bucket: Optional[str] = None
    buckets: Dict[str, BucketStatus] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == "RUNNING"

    def age_seconds(self, now: Optional[float] = None) -> Optional[float]:
        if self.published_at is None:
            return None
        return (now if now is not None else time.time()) - self.published_at


def _bucket_status(name: str, data: Dict[str, Any]) -> BucketStatus:
    return BucketStatus(
        name=name,
        balance=float(data.get("balance", 0.0)),
        weight=float(data.get("weight", 0.0)),
        effective_weight=float(data.get("effective_weight", 0.0)),
        lifetime_spent=float(data.get("lifetime_spent", 0.0)),
        active=bool(data.get("active", True)),
        cap=data.get("cap"),
        cap_reached=bool(data.get("cap_reached", False)),
    )


def read_status(status_path: str, max_age_s: Optional[float] = None) -> Optional[BudgetStatus]:
    """Read status.json. None if missing, unparseable, or older than max_age_s."""
    try:
        with open(status_path) as f:
            data = json.load(f)
    except (ValueError, RecursionError, OSError):
        return None
    if not isinstance(data, dict):
        return None

    try:
        buckets = {
            name: _bucket_status(name, b)
            for name, b in (data.get("buckets") or {}).items()
            if isinstance(b, dict)
        }
    except (AttributeError, TypeError, ValueError, OverflowError):
        return None

    published_at = data.get("published_at")
    if isinstance(published_at, bool) or not isinstance(published_at, (int, float)):
        published_at = None
    else:
        try:
            published_at = float(published_at)
        except OverflowError:
            published_at = None

    status = BudgetStatus(
        status=data.get("status", "UNKNOWN"),
        published_at=published_at,
        tick_count=data.get("tick_count", 0),
        total_wealth=data.get("total_wealth"),
        income_rate=data.get("income_rate", 0.0),
        rush_bucket=data.get("rush_bucket"),
        buckets=buckets,
        error=data.get("error"),
    )

    if max_age_s is not None:
        age = status.age_seconds()
        if age is None or age > max_age_s:
            return None
    return status


def get_bucket_balance(state_dir: str, bucket: str) -> float:
    """Current balance of a bucket, or math.inf when the daemon is absent."""
    status = read_status(os.path.join(state_dir, "status.json"), STALE_AFTER_S)
    if status is None:
        return math.inf
    bucket_status = status.buckets.get(bucket)
    if bucket_status is None:
        return math.inf
    return bucket_status.balance


def can_afford(state_dir: str, bucket: str, amount: float) -> bool:
    return get_bucket_balance(state_dir, bucket) >= amount


# ---------------------------------------------------------------------------
# Control messages
# ---------------------------------------------------------------------------

def send(state_dir: str, message: ControlMessage) -> str:
    """Enqueue a control message. Returns the inbox file path."""
    return FileInbox(os.path.join(state_dir, "inbox")).post(encode_message(message))


def notify_purchase(state_dir: str, bucket: str, amount: float, reason: str = "") -> str:
    """Call AFTER a successful purchase so the bucket is debited."""
    return send(state_dir, Purchased(bucket=bucket, amount=amount, reason=reason))


def signal_done(state_dir: str, bucket: str) -> str:
    """Mark a bucket finished.

    Writes a durable marker (survives daemon restarts and startup ordering)
    and also enqueues a `done` message for immediate processing.
    """
    FileMarkerStore(os.path.join(state_dir, "done_markers.txt")).append(bucket)
    return send(state_dir, Done(bucket=bucket))


def report_cap(state_dir: str, bucket: str, remaining_cost: float) -> str:
    return send(state_dir, ReportCap(bucket=bucket, cap=remaining_cost))


def request_rush(state_dir: str, bucket: str) -> str:
    return send(state_dir, Rush(bucket=bucket))


def cancel_rush(state_dir: str) -> str:
    return send(state_dir, CancelRush())


def update_weight(state_dir: str, bucket: str, weight: float) -> str:
    return send(state_dir, UpdateWeight(bucket=bucket, weight=weight))


def reset_weights(state_dir: str) -> str:
    return send(state_dir, ResetWeights())


def request_stop(state_dir: str) -> str:
    """Ask a running daemon to exit after its current tick."""
    path = os.path.join(state_dir, "command.json")
    os.makedirs(state_dir, exist_ok=True)
    with open(path, "w") as f:
        json.dump({"command": "stop", "requested_at": time.time()}, f)
    return path
