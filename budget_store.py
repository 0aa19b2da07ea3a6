"""Ledger persistence -- load/merge at startup, atomic overwrite every tick.

File format (ledger.json):
    {
      "format_version": 1,
      "balances":      {"stocks": 1200.0, ...},
      "lifetimeSpent": {"stocks": 90000.0, ...},
      "weights":       {"stocks": 50.0, ...},
      "activeFlags":   {"stocks": true, ...},
      "caps":          {"stocks": null, ...},
      "rushBucket":    null
    }

Loading never raises. load_ledger() returns a LoadResult whose kind tells the
caller whether the file was absent, corrupt, or loaded. Absent and corrupt
files both produce a fresh default ledger; a corrupt file is never partially
applied.

Saving raises LedgerPersistError on any OS failure. The daemon does not retry
within a tick.
"""

from __future__ import annotations

import json
import logging
import math
import os
import platform
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from budget_controller import DEFAULT_WEIGHTS
from budget_ledger import Bucket, BucketLedger

_log = logging.getLogger(__name__)

FORMAT_VERSION = 1

_MAP_KEYS = ("balances", "lifetimeSpent", "weights", "activeFlags", "caps")


# ---------------------------------------------------------------------------
# Exceptions / results
# ---------------------------------------------------------------------------

class LedgerPersistError(Exception):
    """Raised when the ledger file cannot be written."""


class _CorruptLedger(Exception):
    """Internal: validation failure while decoding a ledger file."""


class LoadKind(Enum):
    OK = "OK"
    ABSENT = "ABSENT"
    CORRUPT = "CORRUPT"


@dataclass
class LoadResult:
    kind: LoadKind
    ledger: BucketLedger
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Atomic write
# ---------------------------------------------------------------------------

def _fsync_directory(dir_path: str) -> None:
    """fsync a directory to ensure rename durability (POSIX only)."""
    if platform.system() == "Windows":
        return
    fd = os.open(dir_path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write(target_path: str, data: bytes, *, fsync_parent: bool = False) -> None:
    """Write to a temp file beside the target, fsync, then os.replace().

    Readers either see the previous complete file or the new complete file.
    """
    parent = os.path.dirname(os.path.abspath(target_path))
    os.makedirs(parent, exist_ok=True)
    tmp_path = os.path.join(parent, f"_tmp_{uuid.uuid4().hex}")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        os.write(fd, data)
        os.fsync(fd)
    finally:
        os.close(fd)
    os.replace(tmp_path, target_path)
    if fsync_parent:
        _fsync_directory(parent)


def atomic_write_json(target_path: str, obj: Any, *, fsync_parent: bool = False) -> None:
    atomic_write(
        target_path,
        json.dumps(obj, indent=2, sort_keys=True).encode("utf-8"),
        fsync_parent=fsync_parent,
    )


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------

def ledger_to_dict(ledger: BucketLedger) -> Dict[str, Any]:
    """Persisted form: parallel per-field maps keyed by bucket name."""
    names = sorted(ledger.names())
    buckets = ledger.buckets
    return {
        "format_version": FORMAT_VERSION,
        "balances": {n: buckets[n].balance for n in names},
        "lifetimeSpent": {n: buckets[n].lifetime_spent for n in names},
        "weights": {n: buckets[n].weight for n in names},
        "activeFlags": {n: buckets[n].active for n in names},
        "caps": {n: buckets[n].cap for n in names},
        "rushBucket": ledger.rush_bucket,
    }


def _non_negative(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _CorruptLedger(f"{where}: expected number, got {type(value).__name__}")
    try:
        value = float(value)
    except OverflowError:
        raise _CorruptLedger(f"{where}: value too large")
    if not math.isfinite(value) or value < 0:
        raise _CorruptLedger(f"{where}: invalid value {value}")
    return value


def ledger_from_dict(
    data: Any,
    defaults: Optional[Mapping[str, float]] = None,
) -> BucketLedger:
    """Decode a persisted ledger and merge it with the default bucket set.

    Merge rules:
        - bucket in defaults, absent from file -> default bucket
        - bucket only in file                  -> kept as-is
        - field missing for a file bucket      -> that field's default

    Raises _CorruptLedger on any structural or value error.
    """
    if defaults is None:
        defaults = DEFAULT_WEIGHTS
    if not isinstance(data, dict):
        raise _CorruptLedger("top level is not an object")

    maps: Dict[str, Dict[str, Any]] = {}
    for key in _MAP_KEYS:
        section = data.get(key, {})
        if section is None:
            section = {}
        if not isinstance(section, dict):
            raise _CorruptLedger(f"'{key}' is not an object")
        maps[key] = section

    names = set(defaults)
    for section in maps.values():
        names.update(section)

    buckets = []
    for name in sorted(names):
        if not isinstance(name, str) or not name:
            raise _CorruptLedger(f"invalid bucket name: {name!r}")
        bucket = Bucket.fresh(name)
        if name in defaults:
            bucket.weight = float(defaults[name])
        if name in maps["balances"]:
            bucket.balance = _non_negative(maps["balances"][name], f"balances.{name}")
        if name in maps["lifetimeSpent"]:
            bucket.lifetime_spent = _non_negative(
                maps["lifetimeSpent"][name], f"lifetimeSpent.{name}"
            )
        if name in maps["weights"]:
            bucket.weight = _non_negative(maps["weights"][name], f"weights.{name}")
        if name in maps["activeFlags"]:
            flag = maps["activeFlags"][name]
            if not isinstance(flag, bool):
                raise _CorruptLedger(f"activeFlags.{name}: expected bool")
            bucket.active = flag
        if maps["caps"].get(name) is not None:
            bucket.cap = _non_negative(maps["caps"][name], f"caps.{name}")
        buckets.append(bucket)

    rush = data.get("rushBucket")
    if rush is not None and not isinstance(rush, str):
        raise _CorruptLedger("rushBucket is not a string")

    return BucketLedger(buckets, rush_bucket=rush)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_ledger(
    path: str,
    defaults: Optional[Mapping[str, float]] = None,
) -> LoadResult:
    """Load ledger.json, falling back to defaults when absent or corrupt."""
    if defaults is None:
        defaults = DEFAULT_WEIGHTS

    try:
        with open(path, "rb") as f:
            raw = f.read()
    except FileNotFoundError:
        return LoadResult(LoadKind.ABSENT, BucketLedger.with_defaults(defaults))
    except OSError as e:
        _log.warning(f"Ledger unreadable ({path}): {e}; starting from defaults")
        return LoadResult(LoadKind.CORRUPT, BucketLedger.with_defaults(defaults), str(e))

    try:
        ledger = ledger_from_dict(json.loads(raw), defaults)
    except (ValueError, RecursionError, _CorruptLedger) as e:
        _log.warning(f"Ledger corrupt ({path}): {e}; starting from defaults")
        return LoadResult(LoadKind.CORRUPT, BucketLedger.with_defaults(defaults), str(e))

    return LoadResult(LoadKind.OK, ledger)


def save_ledger(path: str, ledger: BucketLedger) -> None:
    """Overwrite ledger.json atomically. Raises LedgerPersistError."""
    try:
        atomic_write_json(path, ledger_to_dict(ledger), fsync_parent=True)
    except OSError as e:
        raise LedgerPersistError(f"Failed to persist ledger to {path}: {e}") from e
