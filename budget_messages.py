"""Control messages -- one frozen dataclass per action.

Wire format (one JSON object per message):
    {"action": "purchased", "bucket": "servers", "amount": 1.5e6, "reason": "pserv-8"}
    {"action": "done", "bucket": "programs"}
    {"action": "report-cap", "bucket": "home", "cap": 4.2e9}
    {"action": "rush", "bucket": "gang"}
    {"action": "cancel-rush"}
    {"action": "update-weight", "bucket": "stocks", "weight": 40}
    {"action": "reset-weights"}

decode_message() never raises. It returns a DecodeResult carrying either the
decoded message or the reason it was rejected, so the inbox drain can drop a
bad message and keep going.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union


# ---------------------------------------------------------------------------
# Message variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Purchased:
    bucket: str
    amount: float
    reason: str = ""
    action = "purchased"


@dataclass(frozen=True)
class Done:
    bucket: str
    action = "done"


@dataclass(frozen=True)
class ReportCap:
    bucket: str
    cap: float  # remaining cost, added to lifetime_spent on apply
    action = "report-cap"


@dataclass(frozen=True)
class Rush:
    bucket: str
    action = "rush"


@dataclass(frozen=True)
class CancelRush:
    action = "cancel-rush"


@dataclass(frozen=True)
class UpdateWeight:
    bucket: str
    weight: float
    action = "update-weight"


@dataclass(frozen=True)
class ResetWeights:
    action = "reset-weights"


ControlMessage = Union[
    Purchased, Done, ReportCap, Rush, CancelRush, UpdateWeight, ResetWeights,
]


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding one raw inbox entry."""
    message: Optional[ControlMessage] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.message is not None


class _Reject(Exception):
    """Internal: field validation failure. Never escapes decode_message()."""


# ---------------------------------------------------------------------------
# Field validators
# ---------------------------------------------------------------------------

def _bucket(data: Dict[str, Any]) -> str:
    name = data.get("bucket")
    if not isinstance(name, str) or not name.strip():
        raise _Reject("missing or empty 'bucket'")
    return name.strip()


def _number(data: Dict[str, Any], key: str, *, allow_zero: bool) -> float:
    value = data.get(key)
    # bool is an int subclass; true/false are not amounts
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _Reject(f"missing or non-numeric '{key}'")
    try:
        value = float(value)
    except OverflowError:
        raise _Reject(f"out-of-range '{key}': too large")
    if not math.isfinite(value):
        raise _Reject(f"non-finite '{key}'")
    if value < 0 or (value == 0 and not allow_zero):
        raise _Reject(f"out-of-range '{key}': {value}")
    return value


def _decode_purchased(data: Dict[str, Any]) -> ControlMessage:
    reason = data.get("reason", "")
    return Purchased(
        bucket=_bucket(data),
        amount=_number(data, "amount", allow_zero=False),
        reason=reason if isinstance(reason, str) else "",
    )


_DECODERS: Dict[str, Callable[[Dict[str, Any]], ControlMessage]] = {
    "purchased": _decode_purchased,
    "done": lambda d: Done(bucket=_bucket(d)),
    "report-cap": lambda d: ReportCap(bucket=_bucket(d), cap=_number(d, "cap", allow_zero=True)),
    "rush": lambda d: Rush(bucket=_bucket(d)),
    "cancel-rush": lambda d: CancelRush(),
    "update-weight": lambda d: UpdateWeight(
        bucket=_bucket(d), weight=_number(d, "weight", allow_zero=True)
    ),
    "reset-weights": lambda d: ResetWeights(),
}

ACTIONS = tuple(_DECODERS)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def decode_message(raw: Union[str, bytes, Dict[str, Any]]) -> DecodeResult:
    """Decode a raw inbox entry (JSON text or an already-parsed dict)."""
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        # ValueError covers bad JSON, bad UTF-8 and over-long integer literals
        except (ValueError, RecursionError) as e:
            return DecodeResult(error=f"unparseable payload: {e}")
    else:
        data = raw

    if not isinstance(data, dict):
        return DecodeResult(error=f"payload is not an object: {type(data).__name__}")

    action = data.get("action")
    decoder = _DECODERS.get(action) if isinstance(action, str) else None
    if decoder is None:
        return DecodeResult(error=f"unknown action: {action!r}")

    try:
        return DecodeResult(message=decoder(data))
    except _Reject as e:
        return DecodeResult(error=f"{action}: {e}")


def encode_message(message: ControlMessage) -> Dict[str, Any]:
    """Wire dict for a message (inverse of decode_message)."""
    out: Dict[str, Any] = {"action": message.action}
    for key, value in vars(message).items():
        if key == "reason" and not value:
            continue
        out[key] = value
    return out
