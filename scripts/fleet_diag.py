"""Fleet scheduler diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from collections import Counter

from fleet_scheduler.config import FleetSettings
from fleet_scheduler.registry import SessionRecord, SessionRegistry
from fleet_scheduler.storage import ChromaJournal, ChromaUnavailableError


def load_journal(settings: FleetSettings) -> ChromaJournal:
    journal = ChromaJournal(settings.chroma_persist_path)
    try:
        journal.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return journal


def load_registry(settings: FleetSettings) -> SessionRegistry:
    registry = SessionRegistry(settings.registry_path)
    registry.load()
    return registry


def _session_line(record: SessionRecord) -> str:
    state = "alive" if record.alive else "dead"
    line = (
        f"{record.task_key} [{state}] {record.backend}:{record.session_id} "
        f"turns={record.turn_count} last_used={record.last_used_at.isoformat()}"
    )
    if record.last_error:
        line += f" error={record.last_error}"
    return line


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = FleetSettings()
    registry = load_registry(settings)
    records = sorted(registry.all(), key=lambda record: record.task_key)
    if args.task_key:
        records = [record for record in records if record.task_key == args.task_key]
    if args.json:
        print(json.dumps([record.model_dump(mode="json") for record in records], indent=2))
    else:
        for record in records:
            print(_session_line(record))


def cmd_decisions(args: argparse.Namespace) -> None:
    settings = FleetSettings()
    journal = load_journal(settings)
    try:
        entries = journal.list_assessments(args.task_id, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    payload = [
        {
            "task_id": entry.task_id,
            "trigger": entry.trigger,
            "action": entry.action,
            "reason": entry.reason,
            "success": entry.success,
            "source": entry.source,
            "recorded_at": entry.recorded_at.isoformat(),
        }
        for entry in entries
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = FleetSettings()
    registry = load_registry(settings)
    records = registry.all()

    backend_counts = Counter(record.backend for record in records)
    metrics: dict[str, object] = {
        "sessions_total": len(records),
        "sessions_alive": sum(1 for record in records if record.alive),
        "sessions_with_errors": sum(1 for record in records if record.last_error),
        "backend_counts": dict(backend_counts),
        "turns_total": sum(record.turn_count for record in records),
    }

    if args.with_journal:
        journal = load_journal(settings)
        try:
            assessments = journal.list_assessments()
            sessions = journal.list_sessions()
        except ChromaUnavailableError as exc:
            print(f"Chroma unavailable: {exc}")
            raise SystemExit(1)
        metrics["decisions_total"] = len(assessments)
        metrics["decision_action_counts"] = dict(Counter(entry.action for entry in assessments))
        metrics["decision_failures"] = sum(1 for entry in assessments if not entry.success)
        metrics["session_calls_total"] = len(sessions)
        metrics["session_call_failures"] = sum(1 for entry in sessions if not entry.success)
        metrics["session_resumes"] = sum(1 for entry in sessions if entry.resumed)
        metrics["failovers"] = sum(1 for entry in sessions if entry.failover_from)

    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fleet scheduler diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List session registry records")
    p_sessions.add_argument("--task-key")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_decisions = sub.add_parser("decisions", help="List journaled assessment decisions")
    p_decisions.add_argument("--task-id")
    p_decisions.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N decisions",
    )
    p_decisions.set_defaults(func=cmd_decisions)

    p_metrics = sub.add_parser("metrics", help="Show session and decision counts")
    p_metrics.add_argument(
        "--with-journal",
        action="store_true",
        help="Include decision and session-call counts from the Chroma journal",
    )
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
