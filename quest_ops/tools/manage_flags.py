"""List and toggle feature flags."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from ..backend import BackendError
from ..service import ConsoleService
from ..services.flags import summarize_flags


def _service() -> ConsoleService:
    return ConsoleService()


def cmd_list(args: argparse.Namespace) -> int:
    rows = summarize_flags(_service().feature_flags(refresh=True))
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    if not rows:
        print("No feature flags defined.")
    for row in rows:
        state = "on " if row["enabled"] else "off"
        extra = " targeted" if row["targeted"] else ""
        print(f"[{state}] {row['key']} rollout={row['rollout']}%{extra}")
    return 0


def _update(args: argparse.Namespace, **changes) -> int:
    flag = _service().set_feature_flag(args.flag_id, admin_id=args.admin, **changes)
    if args.json:
        print(json.dumps(summarize_flags([flag])[0], indent=2))
    else:
        print(
            f"{flag.key}: {'enabled' if flag.is_enabled else 'disabled'}, "
            f"rollout {flag.rollout_percentage}%"
        )
    return 0


def cmd_enable(args: argparse.Namespace) -> int:
    return _update(args, is_enabled=True)


def cmd_disable(args: argparse.Namespace) -> int:
    return _update(args, is_enabled=False)


def cmd_rollout(args: argparse.Namespace) -> int:
    return _update(args, rollout_percentage=args.percentage)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage feature flags.")
    parser.add_argument("--admin", type=str, help="Admin user id recorded in the audit log.")
    parser.add_argument("--json", action="store_true", help="Emit JSON output.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    listing = subparsers.add_parser("list", help="List feature flags.")
    listing.set_defaults(func=cmd_list)

    for name, func, help_text in (
        ("enable", cmd_enable, "Enable a flag."),
        ("disable", cmd_disable, "Disable a flag."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("flag_id")
        sub.set_defaults(func=func)

    rollout = subparsers.add_parser("rollout", help="Set the rollout percentage (0-100).")
    rollout.add_argument("flag_id")
    rollout.add_argument("percentage", type=int)
    rollout.set_defaults(func=cmd_rollout)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING)
    try:
        return args.func(args)
    except (BackendError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
