"""Print Flow Debugger, ops alert, attention and warm-up reports."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from ..anomalies import AnomalyReport
from ..models import to_jsonable
from ..service import ConsoleService, PanelResult


def _service() -> ConsoleService:
    return ConsoleService()


def _emit_json(payload: Any) -> None:
    print(json.dumps(to_jsonable(payload), indent=2, default=str))


def _report_lines(report: AnomalyReport) -> List[str]:
    lines = [f"[{report.panel}] severity={report.severity.value} issues={report.issue_count}"]
    for name, value in sorted(report.totals.items()):
        lines.append(f"  {name}: {value}")
    for bucket in report.buckets:
        lines.append(f"  - {bucket.title}: {bucket.count} ({bucket.effective_severity.value})")
        for item in bucket.items[:10]:
            label = getattr(item, "display_name", None)
            if callable(label):
                label = label()
            lines.append(f"      {item.id} {label or ''}".rstrip())
    if report.is_clear:
        lines.append("  All clear.")
    return lines


def cmd_summary(args: argparse.Namespace) -> int:
    results: Dict[str, PanelResult] = _service().flow_report(refresh=args.refresh)
    failed = [result for result in results.values() if not result.ok]
    if args.json:
        _emit_json(
            {name: {"data": result.data, "error": result.error} for name, result in results.items()}
        )
    else:
        lines: List[str] = []
        for result in results.values():
            if result.ok:
                lines.extend(_report_lines(result.data))
            else:
                lines.append(f"[{result.name}] failed to load: {result.error}")
        print("\n".join(lines))
    return 1 if failed else 0


def _panel_or_fail(result: PanelResult) -> Optional[Any]:
    if result.ok:
        return result.data
    print(f"{result.name} failed to load: {result.error}", file=sys.stderr)
    return None


def cmd_alerts(args: argparse.Namespace) -> int:
    service = _service()
    alerts = _panel_or_fail(service.load_panel("ops_alerts", refresh=args.refresh))
    if alerts is None:
        return 1
    breaches = []
    if args.sla:
        breaches = _panel_or_fail(service.load_panel("sla", refresh=args.refresh))
        if breaches is None:
            return 1
    if args.json:
        _emit_json({"alerts": alerts, "sla_breaches": breaches})
        return 0
    if not alerts:
        print("No ops alerts.")
    for alert in alerts:
        print(f"[{alert.severity.value.upper()}] {alert.title}: {alert.description}")
    for breach in breaches:
        print(
            f"[SLA] ticket {breach.ticket.id} {breach.breach_type} "
            f"breached ({breach.hours_elapsed}h elapsed)"
        )
    return 0


def cmd_attention(args: argparse.Namespace) -> int:
    service = _service()
    if args.instance:
        try:
            results = [service.instance_attention(args.instance, refresh=args.refresh)]
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 1
        summary = None
    else:
        overview = _panel_or_fail(service.load_panel("attention", refresh=args.refresh))
        if overview is None:
            return 1
        results, summary = overview.results, overview.summary

    if args.json:
        _emit_json({"results": results, "summary": summary})
        return 0
    if summary:
        print(", ".join(f"{name}: {count}" for name, count in summary.items()))
    for result in results:
        flag = result.flag.short_label if result.flag else "-"
        print(
            f"{result.instance.id} {result.instance.title!r} "
            f"[{result.severity.value}] flag={flag} issues={result.issue_count}"
        )
    return 0


def cmd_warmup(args: argparse.Namespace) -> int:
    service = _service()
    if args.squad:
        try:
            warmup = service.squad_warmup(args.squad, refresh=args.refresh)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 1
        if args.json:
            _emit_json(warmup)
            return 0
        progress = warmup.progress
        print(
            f"{warmup.squad.display_name()}: {progress.ready_members}/{progress.total_members} ready "
            f"({progress.percentage}%){' complete' if progress.is_complete else ''}"
        )
        return 0

    report = _panel_or_fail(service.load_panel("warmup", refresh=args.refresh))
    if report is None:
        return 1
    if args.json:
        _emit_json(report)
        return 0
    print(f"Ready for review: {len(report.ready_for_review)}")
    for squad in report.ready_for_review:
        print(f"  - {squad.display_name()} ({squad.id})")
    print(f"Stalled: {len(report.stalled)}")
    for stalled in report.stalled:
        print(f"  - {stalled.squad.display_name()} stalled {stalled.hours_stalled}h")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect operational anomalies.")
    parser.add_argument("--refresh", action="store_true", help="Bypass cached snapshots.")
    parser.add_argument("--json", action="store_true", help="Output JSON for automation.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    summary = subparsers.add_parser("summary", help="Flow Debugger buckets for all panels.")
    summary.set_defaults(func=cmd_summary)

    alerts = subparsers.add_parser("alerts", help="Control-room ops alerts.")
    alerts.add_argument("--sla", action="store_true", help="Include support SLA breaches.")
    alerts.set_defaults(func=cmd_alerts)

    attention = subparsers.add_parser("attention", help="Instance attention flags.")
    attention.add_argument("--instance", type=str, help="Only report a single instance.")
    attention.set_defaults(func=cmd_attention)

    warmup = subparsers.add_parser("warmup", help="Squad warm-up status.")
    warmup.add_argument("--squad", type=str, help="Show progress for one squad.")
    warmup.set_defaults(func=cmd_warmup)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
