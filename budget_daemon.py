"""Budget allocation daemon -- runs as a separate process.

Launch: python3 budget_daemon.py [--state-dir DIR] [--interval-ms 2000]
Stop:   write {"command": "stop"} to <state_dir>/command.json

Reads:  <state_dir>/inbox/*.json        (control messages, consumed)
        <state_dir>/done_markers.txt    (completion markers)
        <state_dir>/wealth.json         (external wealth counter)
Writes: <state_dir>/ledger.json         (every tick)
        <state_dir>/status.json         (every tick)

One tick:
    drain inbox -> drain markers -> sample wealth -> reset OR allocate
    -> persist ledger -> publish status -> sleep
Ticks never overlap. The only await is the end-of-tick sleep.
"""

import argparse
import asyncio
import json
import logging
import math
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from budget_channels import (
    FileInbox,
    FileMarkerStore,
    FileStatusChannel,
    Inbox,
    MarkerStore,
    StatusChannel,
)
from budget_config import DEFAULT_STATE_DIR, BudgetConfig, load_config
from budget_controller import (
    DEFAULT_WEIGHTS,
    IncomeWindow,
    calculate_income,
    is_wealth_reset,
    split_income,
)
from budget_ledger import BucketLedger
from budget_messages import (
    CancelRush,
    ControlMessage,
    Done,
    Purchased,
    ReportCap,
    ResetWeights,
    Rush,
    UpdateWeight,
    decode_message,
)
from budget_store import load_ledger, save_ledger

log = logging.getLogger("budget_daemon")

WealthFn = Callable[[], Optional[float]]


def format_uptime(seconds: int) -> str:
    """Compact uptime, largest three non-zero units: '1 day 2 hours 5 mins'."""
    seconds = max(0, int(seconds))
    units = (("day", 86400), ("hour", 3600), ("min", 60), ("sec", 1))
    parts = []
    for label, size in units:
        count, seconds = divmod(seconds, size)
        if count:
            parts.append(f"{count} {label}{'' if count == 1 else 's'}")
    return " ".join(parts[:3]) or "0 secs"


def _utc(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


# ---------------------------------------------------------------------------
# Wealth source
# ---------------------------------------------------------------------------

class FileWealthSource:
    """Reads the external wealth counter from a JSON file.

    Accepts {"wealth": 123.4} or a bare number. Returns None when the file is
    missing or holds anything other than a finite, non-negative number.
    """

    def __init__(self, path: str):
        self.path = path

    def __call__(self) -> Optional[float]:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (ValueError, RecursionError, OSError) as e:
            log.warning(f"Wealth sample unreadable: {e}")
            return None

        if isinstance(data, dict):
            data = data.get("wealth")
        if isinstance(data, bool) or not isinstance(data, (int, float)):
            log.warning(f"Wealth sample is not a number: {data!r}")
            return None
        try:
            value = float(data)
        except OverflowError:
            log.warning("Wealth sample out of range: too large")
            return None
        if not math.isfinite(value) or value < 0:
            log.warning(f"Wealth sample out of range: {value}")
            return None
        return value


# ---------------------------------------------------------------------------
# Tick context / report
# ---------------------------------------------------------------------------

@dataclass
class TickContext:
    """Scheduler-owned state carried from one tick to the next."""
    previous_wealth: Optional[float] = None
    wealth: Optional[float] = None
    income_window: IncomeWindow = field(default_factory=IncomeWindow)
    purchases_this_tick: float = 0.0
    last_income: float = 0.0
    tick_count: int = 0
    resets: int = 0
    last_reset_at: Optional[float] = None


@dataclass
class TickReport:
    """What one tick did. Returned by BudgetDaemon.tick() for callers/tests."""
    tick: int
    applied: int = 0
    dropped: int = 0
    completed: List[str] = field(default_factory=list)
    wealth: Optional[float] = None
    income: float = 0.0
    deltas: Dict[str, float] = field(default_factory=dict)
    reset: bool = False


# ---------------------------------------------------------------------------
# BudgetDaemon
# ---------------------------------------------------------------------------

class BudgetDaemon:
    """Owns the ledger and runs the tick loop."""

    def __init__(
        self,
        config: BudgetConfig,
        ledger: BucketLedger,
        inbox: Inbox,
        markers: MarkerStore,
        status_channel: StatusChannel,
        wealth_fn: WealthFn,
        ledger_path: Optional[str] = None,
        command_path: Optional[str] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.inbox = inbox
        self.markers = markers
        self.status_channel = status_channel
        self.wealth_fn = wealth_fn
        self.ledger_path = ledger_path
        self.command_path = command_path

        self.ctx = TickContext()
        self.status = "STARTING"
        self.error: Optional[str] = None
        self.started_at = time.time()
        self._shutdown = False

    @classmethod
    def from_config(
        cls,
        config: BudgetConfig,
        wealth_fn: Optional[WealthFn] = None,
        defaults: Optional[Mapping[str, float]] = None,
    ) -> "BudgetDaemon":
        """File-backed daemon rooted at config.state_dir."""
        os.makedirs(config.state_dir, exist_ok=True)
        result = load_ledger(config.ledger_path, defaults if defaults is not None else DEFAULT_WEIGHTS)
        log.info(f"Ledger load: {result.kind.value} ({len(result.ledger)} buckets)")
        return cls(
            config=config,
            ledger=result.ledger,
            inbox=FileInbox(config.inbox_dir),
            markers=FileMarkerStore(config.markers_path),
            status_channel=FileStatusChannel(config.status_path),
            wealth_fn=wealth_fn or FileWealthSource(config.wealth_path),
            ledger_path=config.ledger_path,
            command_path=config.command_path,
        )

    # -- loop ---------------------------------------------------------------

    async def run(self, max_ticks: Optional[int] = None):
        """Tick until stopped. Persist errors propagate after status=ERROR."""
        log.info(f"Budget daemon starting (interval: {self.config.interval_ms}ms, "
                 f"buckets: {len(self.ledger)})")
        self.status = "RUNNING"
        try:
            while not self._shutdown:
                self.tick()
                if max_ticks is not None and self.ctx.tick_count >= max_ticks:
                    break
                if self._shutdown:
                    break
                await asyncio.sleep(self.config.interval_seconds)
        except Exception as e:
            self.status = "ERROR"
            self.error = str(e)
            log.exception(f"Daemon error: {e}")
            raise
        finally:
            if self.status != "ERROR":
                self.status = "STOPPED"
            self._publish_final()
            log.info("Budget daemon stopped")

    def request_stop(self) -> None:
        self._shutdown = True

    def tick(self) -> TickReport:
        """Run one full tick synchronously."""
        ctx = self.ctx
        report = TickReport(tick=ctx.tick_count + 1)
        ctx.purchases_this_tick = 0.0

        self._drain_inbox(report)
        self._drain_markers(report)
        self._sample_and_allocate(report)

        if self.ledger_path is not None:
            save_ledger(self.ledger_path, self.ledger)

        ctx.tick_count += 1
        self.status_channel.publish(self.build_status_dict())
        self._check_stop_command()

        log.debug(
            f"Tick {report.tick}: applied={report.applied} dropped={report.dropped} "
            f"income={report.income:,.0f} reset={report.reset}"
        )
        return report

    # -- inbox / markers ----------------------------------------------------

    def _drain_inbox(self, report: TickReport) -> None:
        for raw in self.inbox.drain():
            decoded = decode_message(raw)
            if not decoded.ok:
                report.dropped += 1
                log.warning(f"Dropped control message: {decoded.error}")
                continue
            self.apply_message(decoded.message, report)
            report.applied += 1

    def _drain_markers(self, report: TickReport) -> None:
        for bucket in self.markers.read():
            if self.ledger.complete(bucket):
                report.completed.append(bucket)
                log.info(f"Bucket done (marker): {bucket}")

    def apply_message(self, msg: ControlMessage, report: Optional[TickReport] = None) -> None:
        """Apply one decoded control message to the ledger."""
        ledger = self.ledger
        if isinstance(msg, Purchased):
            ledger.debit(msg.bucket, msg.amount)
            self.ctx.purchases_this_tick += msg.amount
            log.info(f"BUY {msg.bucket}: {msg.amount:,.0f}"
                     + (f" ({msg.reason})" if msg.reason else ""))
        elif isinstance(msg, Done):
            if ledger.complete(msg.bucket):
                if report is not None:
                    report.completed.append(msg.bucket)
                log.info(f"Bucket done: {msg.bucket}")
        elif isinstance(msg, ReportCap):
            ledger.set_cap(msg.bucket, msg.cap)
        elif isinstance(msg, Rush):
            ledger.set_rush(msg.bucket)
            log.info(f"Rush: {ledger.rush_bucket}")
        elif isinstance(msg, CancelRush):
            ledger.cancel_rush()
            log.info("Rush cancelled")
        elif isinstance(msg, UpdateWeight):
            ledger.set_weight(msg.bucket, msg.weight)
            log.info(f"Weight {msg.bucket} -> {msg.weight:g}")
        elif isinstance(msg, ResetWeights):
            ledger.reset_weights()
            log.info("Weights reset to defaults")
        else:
            raise TypeError(f"Unhandled control message: {msg!r}")

    # -- wealth -------------------------------------------------------------

    def _sample_and_allocate(self, report: TickReport) -> None:
        ctx = self.ctx
        current = self.wealth_fn()
        report.wealth = current
        if current is None:
            return

        previous = ctx.previous_wealth
        ctx.wealth = current
        ctx.previous_wealth = current
        if previous is None:
            return

        if is_wealth_reset(previous, current):
            self._full_reset(previous, current)
            report.reset = True
            return

        income = calculate_income(previous, current, ctx.purchases_this_tick)
        deltas = split_income(
            income,
            self.ledger.weights(),
            self.ledger.active_flags(),
            self.ledger.rush_bucket,
        )
        self.ledger.apply_deltas(deltas)
        ctx.income_window.push(income)
        ctx.last_income = income
        report.income = income
        report.deltas = deltas

    def _full_reset(self, previous: float, current: float) -> None:
        log.warning(f"Wealth reset detected: {previous:,.0f} -> {current:,.0f}; "
                    f"zeroing all buckets")
        self.ledger.full_reset()
        self.ctx.income_window.clear()
        self.ctx.last_income = 0.0
        self.ctx.resets += 1
        self.ctx.last_reset_at = time.time()
        self.markers.clear()

    # -- stop command -------------------------------------------------------

    def _check_stop_command(self) -> None:
        if self.command_path is None or not os.path.exists(self.command_path):
            return
        try:
            with open(self.command_path) as f:
                cmd = json.load(f)
        except (ValueError, RecursionError, OSError):
            return
        if isinstance(cmd, dict) and cmd.get("command") == "stop":
            log.info("Stop command received")
            self._shutdown = True
            try:
                os.remove(self.command_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                log.warning(f"Could not remove stop command: {e}")

    # -- status -------------------------------------------------------------

    def build_status_dict(self) -> Dict[str, Any]:
        now = time.time()
        uptime = int(now - self.started_at)
        ctx = self.ctx
        return {
            "status": self.status,
            "error": self.error,
            "pid": os.getpid(),
            "started_at": self.started_at,
            "started_at_utc": _utc(self.started_at),
            "uptime_seconds": uptime,
            "uptime_str": format_uptime(uptime),
            "published_at": now,
            "published_at_utc": _utc(now),
            "interval_ms": self.config.interval_ms,
            "tick_count": ctx.tick_count,
            "total_wealth": ctx.wealth,
            "income_rate": round(
                ctx.income_window.rate_per_second(self.config.interval_seconds), 2
            ),
            "last_income": ctx.last_income,
            "resets": ctx.resets,
            "last_reset_at": ctx.last_reset_at,
            "rush_bucket": self.ledger.rush_bucket,
            "total_balance": round(self.ledger.total_balance(), 2),
            "buckets": self.ledger.snapshot(),
        }

    def _publish_final(self) -> None:
        try:
            self.status_channel.publish(self.build_status_dict())
        except OSError as e:
            log.warning(f"Failed to write final status: {e}")


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def setup_logging(config: BudgetConfig, level: int = logging.INFO) -> None:
    os.makedirs(config.state_dir, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[
            logging.FileHandler(config.log_path),
            logging.StreamHandler(),
        ],
    )


def run_daemon(config: BudgetConfig) -> None:
    daemon = BudgetDaemon.from_config(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        log.info("Interrupted")


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Budget allocation daemon")
    parser.add_argument("--state-dir", default=DEFAULT_STATE_DIR,
                        help="Directory holding ledger, inbox, markers and status")
    parser.add_argument("--interval-ms", type=int, default=None,
                        help="Tick interval in milliseconds (default: config.json, 2000)")
    parser.add_argument("--verbose", action="store_true", help="Log every tick")
    args = parser.parse_args(argv)

    config = load_config(args.state_dir, args.interval_ms)
    setup_logging(config, logging.DEBUG if args.verbose else logging.INFO)
    run_daemon(config)


if __name__ == "__main__":
    main()
