"""Daemon configuration -- one state directory, one config.json.

Layout of the state directory:
    config.json        {"interval_ms": 2000}   (written with defaults if absent)
    ledger.json        persisted bucket ledger
    done_markers.txt   completion markers
    inbox/             control messages, one JSON file each
    status.json        latest status snapshot
    command.json       {"command": "stop"} to stop the daemon
    wealth.json        external wealth counter sample
    daemon.log         log file
"""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from budget_store import atomic_write_json

_log = logging.getLogger(__name__)

PROJECT_ROOT = os.path.abspath(os.path.dirname(__file__))
DEFAULT_STATE_DIR = os.path.join(PROJECT_ROOT, "research", "budget")
DEFAULT_INTERVAL_MS = 2000

CONFIG_DEFAULTS: Dict[str, Any] = {
    "interval_ms": DEFAULT_INTERVAL_MS,
}


@dataclass(frozen=True)
class BudgetConfig:
    """Immutable daemon configuration."""
    state_dir: str = DEFAULT_STATE_DIR
    interval_ms: int = DEFAULT_INTERVAL_MS

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    @property
    def config_path(self) -> str:
        return os.path.join(self.state_dir, "config.json")

    @property
    def ledger_path(self) -> str:
        return os.path.join(self.state_dir, "ledger.json")

    @property
    def markers_path(self) -> str:
        return os.path.join(self.state_dir, "done_markers.txt")

    @property
    def inbox_dir(self) -> str:
        return os.path.join(self.state_dir, "inbox")

    @property
    def status_path(self) -> str:
        return os.path.join(self.state_dir, "status.json")

    @property
    def command_path(self) -> str:
        return os.path.join(self.state_dir, "command.json")

    @property
    def wealth_path(self) -> str:
        return os.path.join(self.state_dir, "wealth.json")

    @property
    def log_path(self) -> str:
        return os.path.join(self.state_dir, "daemon.log")


def write_default_config(path: str) -> bool:
    """Write CONFIG_DEFAULTS to path unless a file is already there.

    Never overwrites. Returns True if a file was written.
    """
    if os.path.exists(path):
        return False
    atomic_write_json(path, CONFIG_DEFAULTS)
    return True


def _interval_from(raw: Any) -> Optional[int]:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    try:
        if not math.isfinite(raw) or raw < 0:
            return None
    except OverflowError:
        return None
    return int(raw)


def load_config(
    state_dir: str = DEFAULT_STATE_DIR,
    interval_ms: Optional[int] = None,
) -> BudgetConfig:
    """Build a BudgetConfig from <state_dir>/config.json plus overrides.

    A missing config file is created with defaults. Invalid values fall back
    to the default with a warning. An explicit interval_ms argument wins over
    the file.
    """
    os.makedirs(state_dir, exist_ok=True)
    path = os.path.join(state_dir, "config.json")
    write_default_config(path)

    file_values: Dict[str, Any] = {}
    try:
        with open(path) as f:
            loaded = json.load(f)
        if isinstance(loaded, dict):
            file_values = loaded
        else:
            _log.warning(f"Config {path} is not an object; using defaults")
    except (ValueError, RecursionError, OSError) as e:
        _log.warning(f"Config {path} unreadable: {e}; using defaults")

    interval = DEFAULT_INTERVAL_MS
    if "interval_ms" in file_values:
        parsed = _interval_from(file_values["interval_ms"])
        if parsed is None:
            _log.warning(
                f"Invalid interval_ms {file_values['interval_ms']!r}; "
                f"using {DEFAULT_INTERVAL_MS}"
            )
        else:
            interval = parsed

    if interval_ms is not None:
        parsed = _interval_from(interval_ms)
        if parsed is None:
            raise ValueError(f"interval_ms must be a non-negative number, got {interval_ms!r}")
        interval = parsed

    return BudgetConfig(state_dir=state_dir, interval_ms=interval)
