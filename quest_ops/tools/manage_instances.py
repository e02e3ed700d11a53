"""Instance lifecycle management from the command line."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from ..backend import MutationError
from ..lifecycle import allowed_transitions
from ..models import InstanceStatus, to_jsonable
from ..service import ConsoleService
from ..services.instances import TransitionResult, transition_notice


def _service() -> ConsoleService:
    return ConsoleService()


def _report(result: TransitionResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps(to_jsonable(result), indent=2))
    else:
        print(transition_notice(result))


def cmd_transition(args: argparse.Namespace) -> TransitionResult:
    return _service().transition_instance(
        args.instance_id,
        args.status,
        reason=args.reason,
        notify_users=args.notify,
        admin_id=args.admin,
    )


def cmd_pause(args: argparse.Namespace) -> TransitionResult:
    return _service().pause_instance(args.instance_id, args.reason, admin_id=args.admin)


def cmd_resume(args: argparse.Namespace) -> TransitionResult:
    return _service().resume_instance(args.instance_id, admin_id=args.admin)


def cmd_cancel(args: argparse.Namespace) -> TransitionResult:
    return _service().cancel_instance(args.instance_id, args.reason, admin_id=args.admin)


def cmd_archive(args: argparse.Namespace) -> TransitionResult:
    return _service().archive_instance(args.instance_id, admin_id=args.admin)


def cmd_bulk(args: argparse.Namespace) -> int:
    result = _service().bulk_update_instance_status(
        args.instance_ids, args.status, reason=args.reason, admin_id=args.admin
    )
    if args.json:
        print(json.dumps(to_jsonable(result), indent=2))
    else:
        print(f"Moved {len(result.succeeded)} instances to {result.status.value}.")
        for instance_id, message in sorted(result.failed.items()):
            print(f"  ! {instance_id}: {message}")
    return 0 if result.ok else 1


def cmd_options(args: argparse.Namespace) -> int:
    current = InstanceStatus(args.status)
    targets = [status.value for status in allowed_transitions(current)]
    if args.json:
        print(json.dumps({"status": current.value, "allowed": targets}))
    else:
        print(f"{current.value} -> {', '.join(targets) or '(terminal)'}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    statuses = [status.value for status in InstanceStatus]
    parser = argparse.ArgumentParser(description="Manage quest instance lifecycle.")
    parser.add_argument("--admin", type=str, help="Admin user id recorded in the audit log.")
    parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable info logging.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    transition = subparsers.add_parser("transition", help="Move an instance to a new status.")
    transition.add_argument("instance_id")
    transition.add_argument("status", choices=statuses)
    transition.add_argument("--reason", type=str, help="Required for paused/cancelled.")
    transition.add_argument("--notify", action="store_true", help="Notify signed-up users.")
    transition.set_defaults(func=cmd_transition)

    pause = subparsers.add_parser("pause", help="Pause an instance and notify users.")
    pause.add_argument("instance_id")
    pause.add_argument("--reason", required=True)
    pause.set_defaults(func=cmd_pause)

    resume = subparsers.add_parser("resume", help="Resume a paused instance.")
    resume.add_argument("instance_id")
    resume.set_defaults(func=cmd_resume)

    cancel = subparsers.add_parser("cancel", help="Cancel an instance and notify users.")
    cancel.add_argument("instance_id")
    cancel.add_argument("--reason", required=True)
    cancel.set_defaults(func=cmd_cancel)

    archive = subparsers.add_parser("archive", help="Archive a completed or cancelled instance.")
    archive.add_argument("instance_id")
    archive.set_defaults(func=cmd_archive)

    bulk = subparsers.add_parser("bulk", help="Apply one status to many instances.")
    bulk.add_argument("status", choices=statuses)
    bulk.add_argument("instance_ids", nargs="+")
    bulk.add_argument("--reason", type=str)
    bulk.set_defaults(func=cmd_bulk)

    options = subparsers.add_parser("options", help="List the transitions allowed from a status.")
    options.add_argument("status", choices=statuses)
    options.set_defaults(func=cmd_options)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        outcome = args.func(args)
    except MutationError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    if isinstance(outcome, TransitionResult):
        _report(outcome, args.json)
        return 0
    return outcome


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
