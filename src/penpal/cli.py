"""Pen-pal CLI: operator commands for the letter-exchange workflow.

Usage:
    python -m penpal.cli status
    python -m penpal.cli sweep
    python -m penpal.cli reputation --user alice
    python -m penpal.cli approve-match --admin admin --match match-1a2b3c
    python -m penpal.cli reject-match --admin admin --match match-1a2b3c --reason "..."
    python -m penpal.cli resolve-dispute --admin admin --proof proof-1a2b3c --approve
    python -m penpal.cli resolve-cancel --admin admin --request cancel-1a2b3c --reject --reason "..."
    python -m penpal.cli list-disputes
    python -m penpal.cli list-cancel-requests
    python -m penpal.cli check-policy

Environment (read from .env at the project root):
    PENPAL_CONFIG_DIR   config directory (default: config/)
    PENPAL_DATA_DIR     state and event log directory (default: data/)
    PENPAL_LOG_LEVEL    logging level (default: INFO)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from penpal.persistence.codec import encode
from penpal.persistence.event_log import EventLog
from penpal.persistence.store import RecordStore
from penpal.policy import PenpalPolicy
from penpal.service import PenpalService, ServiceResult


ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG = ROOT / "config"
DEFAULT_DATA = ROOT / "data"


def _make_service(config_dir: Path, data_dir: Path) -> PenpalService:
    """Create a PenpalService with durable persistence."""
    data_dir.mkdir(parents=True, exist_ok=True)
    policy = PenpalPolicy.from_config_dir(config_dir)
    store = RecordStore(
        storage_path=data_dir / "state.json",
        max_retries=policy.store_max_retries,
    )
    event_log = EventLog(storage_path=data_dir / "events.jsonl")
    return PenpalService(policy, store=store, event_log=event_log)


def _report(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def _parse_now(value: str | None) -> datetime | None:
    """Parse an ISO timestamp or date. Values without an offset are UTC."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Run one escalation pass (schedule this daily)."""
    service = _make_service(args.config, args.data)
    return _report(service.run_escalation_sweep(now=_parse_now(args.now)))


def cmd_reputation(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    print(json.dumps(encode(service.get_reputation(args.user)), indent=2))
    return 0


def cmd_approve_match(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.admin_approve_match(args.match, admin_id=args.admin))


def cmd_reject_match(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.admin_reject_match(args.match, admin_id=args.admin, reason=args.reason))


def cmd_resolve_dispute(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.admin_resolve_dispute(
        args.proof, approve=args.approve, admin_id=args.admin,
    ))


def cmd_resolve_cancel(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.admin_resolve_cancellation(
        args.request,
        approve=args.approve,
        admin_id=args.admin,
        reason=args.reason,
        penalty_points=args.penalty,
    ))


def cmd_list_disputes(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    print(json.dumps([encode(p) for p in service.list_disputed_proofs()], indent=2))
    return 0


def cmd_list_cancel_requests(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    print(json.dumps([encode(r) for r in service.list_pending_cancel_requests()], indent=2))
    return 0


def cmd_check_policy(args: argparse.Namespace) -> int:
    """Validate the policy file and the fixed domain rules."""
    tools_dir = ROOT / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_policy import check
    return check(args.config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="penpal",
        description="Pen-pal letter exchange: operator CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.getenv("PENPAL_CONFIG_DIR") or DEFAULT_CONFIG),
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=Path(os.getenv("PENPAL_DATA_DIR") or DEFAULT_DATA),
        help="Path to data directory (default: data/)",
    )
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show workflow status")

    # sweep
    p_sweep = sub.add_parser("sweep", help="Run the escalation sweep")
    p_sweep.add_argument("--now", help="ISO timestamp to evaluate at (default: current time)")

    # reputation
    p_rep = sub.add_parser("reputation", help="Show a user's reputation")
    p_rep.add_argument("--user", required=True, help="User ID")

    # approve-match / reject-match
    p_approve = sub.add_parser("approve-match", help="Approve a match in admin review")
    p_approve.add_argument("--admin", required=True, help="Admin user ID")
    p_approve.add_argument("--match", required=True, help="Match ID")

    p_reject = sub.add_parser("reject-match", help="Reject a match in admin review")
    p_reject.add_argument("--admin", required=True, help="Admin user ID")
    p_reject.add_argument("--match", required=True, help="Match ID")
    p_reject.add_argument("--reason", required=True, help="Reason sent to both families")

    # resolve-dispute
    p_dispute = sub.add_parser("resolve-dispute", help="Resolve a disputed letter")
    p_dispute.add_argument("--admin", required=True, help="Admin user ID")
    p_dispute.add_argument("--proof", required=True, help="Letter proof ID")
    decision = p_dispute.add_mutually_exclusive_group(required=True)
    decision.add_argument(
        "--approve", dest="approve", action="store_true",
        help="Letter was not delivered; sender resends",
    )
    decision.add_argument(
        "--reject", dest="approve", action="store_false",
        help="Letter was delivered; mission advances",
    )

    # resolve-cancel
    p_cancel = sub.add_parser("resolve-cancel", help="Resolve a cancellation request")
    p_cancel.add_argument("--admin", required=True, help="Admin user ID")
    p_cancel.add_argument("--request", required=True, help="Cancel request ID")
    cancel_decision = p_cancel.add_mutually_exclusive_group(required=True)
    cancel_decision.add_argument("--approve", dest="approve", action="store_true")
    cancel_decision.add_argument("--reject", dest="approve", action="store_false")
    p_cancel.add_argument("--reason", help="Rejection reason (required with --reject)")
    p_cancel.add_argument("--penalty", type=int, help="Penalty points for the requester (default: 10)")

    # admin queues
    sub.add_parser("list-disputes", help="List disputed letters")
    sub.add_parser("list-cancel-requests", help="List pending cancellation requests")

    # check-policy
    sub.add_parser("check-policy", help="Validate the policy configuration")

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv(ROOT / ".env")
    logging.basicConfig(
        level=os.getenv("PENPAL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "sweep": cmd_sweep,
        "reputation": cmd_reputation,
        "approve-match": cmd_approve_match,
        "reject-match": cmd_reject_match,
        "resolve-dispute": cmd_resolve_dispute,
        "resolve-cancel": cmd_resolve_cancel,
        "list-disputes": cmd_list_disputes,
        "list-cancel-requests": cmd_list_cancel_requests,
        "check-policy": cmd_check_policy,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
