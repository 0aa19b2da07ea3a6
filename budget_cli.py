"""
Budget CLI -- operator front end for the budget daemon.

Commands: run, status, purchased, done, cap, rush, cancel-rush, weight,
reset-weights, stop. Everything except `run` prints a JSON envelope.

Control commands only enqueue messages; the running daemon applies them on
its next tick.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, List, Optional

import budget_client
from budget_config import DEFAULT_STATE_DIR, load_config


# ---------------------------------------------------------------------------
# JSON envelope helper
# ---------------------------------------------------------------------------

def _envelope(command: str, state_dir: str, result: Any) -> str:
    """Format standard JSON output envelope."""
    d = {
        "command": command,
        "state_dir": state_dir,
        "timestamp": datetime.now(timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%S.%f"
        )[:-3] + "Z",
        "result": result,
    }
    return json.dumps(d, indent=2, sort_keys=False)


def _queued(args: argparse.Namespace, path: str) -> str:
    return _envelope(args.command, args.state_dir, {"queued": path})


# ---------------------------------------------------------------------------
# Command implementations
# ---------------------------------------------------------------------------

def cmd_run(args: argparse.Namespace) -> str:
    """run [--interval-ms N] -- blocks until the daemon stops."""
    from budget_daemon import run_daemon, setup_logging

    config = load_config(args.state_dir, args.interval_ms)
    setup_logging(config)
    run_daemon(config)
    return _envelope("run", args.state_dir, {"message": "daemon stopped"})


def cmd_status(args: argparse.Namespace) -> str:
    status = budget_client.read_status(os.path.join(args.state_dir, "status.json"))
    if status is None:
        return _envelope("status", args.state_dir, {"error": "no status published"})
    result = asdict(status)
    result["age_seconds"] = status.age_seconds()
    return _envelope("status", args.state_dir, result)


def cmd_purchased(args: argparse.Namespace) -> str:
    return _queued(args, budget_client.notify_purchase(
        args.state_dir, args.bucket, args.amount, args.reason
    ))


def cmd_done(args: argparse.Namespace) -> str:
    return _queued(args, budget_client.signal_done(args.state_dir, args.bucket))


def cmd_cap(args: argparse.Namespace) -> str:
    return _queued(args, budget_client.report_cap(args.state_dir, args.bucket, args.remaining))


def cmd_rush(args: argparse.Namespace) -> str:
    return _queued(args, budget_client.request_rush(args.state_dir, args.bucket))


def cmd_cancel_rush(args: argparse.Namespace) -> str:
    return _queued(args, budget_client.cancel_rush(args.state_dir))


def cmd_weight(args: argparse.Namespace) -> str:
    return _queued(args, budget_client.update_weight(args.state_dir, args.bucket, args.weight))


def cmd_reset_weights(args: argparse.Namespace) -> str:
    return _queued(args, budget_client.reset_weights(args.state_dir))


def cmd_stop(args: argparse.Namespace) -> str:
    return _envelope("stop", args.state_dir,
                     {"command_file": budget_client.request_stop(args.state_dir)})


# ---------------------------------------------------------------------------
# CLI parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="budget_cli",
        description="Budget allocation daemon CLI",
    )
    parser.add_argument("--state-dir", default=DEFAULT_STATE_DIR)
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_run = subparsers.add_parser("run", help="Run the daemon in the foreground")
    p_run.add_argument("--interval-ms", type=int, default=None)

    subparsers.add_parser("status", help="Show the latest published snapshot")

    p_buy = subparsers.add_parser("purchased", help="Debit a bucket after a purchase")
    p_buy.add_argument("bucket")
    p_buy.add_argument("amount", type=float)
    p_buy.add_argument("--reason", default="")

    p_done = subparsers.add_parser("done", help="Deactivate a bucket")
    p_done.add_argument("bucket")

    p_cap = subparsers.add_parser("cap", help="Report remaining cost for a bucket")
    p_cap.add_argument("bucket")
    p_cap.add_argument("remaining", type=float)

    p_rush = subparsers.add_parser("rush", help="Route all income to one bucket")
    p_rush.add_argument("bucket")

    subparsers.add_parser("cancel-rush", help="Return to weighted allocation")

    p_weight = subparsers.add_parser("weight", help="Set a bucket's weight")
    p_weight.add_argument("bucket")
    p_weight.add_argument("weight", type=float)

    subparsers.add_parser("reset-weights", help="Restore default weights")
    subparsers.add_parser("stop", help="Ask the running daemon to stop")

    return parser


# ---------------------------------------------------------------------------
# Main dispatch
# ---------------------------------------------------------------------------

COMMAND_HANDLERS = {
    "run": cmd_run,
    "status": cmd_status,
    "purchased": cmd_purchased,
    "done": cmd_done,
    "cap": cmd_cap,
    "rush": cmd_rush,
    "cancel-rush": cmd_cancel_rush,
    "weight": cmd_weight,
    "reset-weights": cmd_reset_weights,
    "stop": cmd_stop,
}


def main(argv: Optional[List[str]] = None) -> str:
    """Parse args and dispatch to handler. Returns JSON output."""
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = COMMAND_HANDLERS[args.command]
    return handler(args)


def cli() -> None:
    logging.basicConfig(level=logging.WARNING)
    print(main())


if __name__ == "__main__":
    cli()
