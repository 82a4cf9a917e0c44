"""
inboxq command-line entry point.

Maintenance commands that need no network collaborators:

    inboxq init-db
    inboxq sweep --user USER_ID
    inboxq status --user USER_ID
    inboxq events --user USER_ID [--child NAME] [--from DATE] [--to DATE]
    inboxq delete-event --user USER_ID EVENT_ID
    inboxq backoff --max-retries 5

Pipeline runs need the Gmail/Calendar/AI clients and are started from the
library API (EmailProcessor.process_emails and
DeliveryEngine.sync_pending_events_for_user).
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence

from dotenv import load_dotenv

from inboxq.observability.logging import configure_logging


def _cmd_init_db(args: argparse.Namespace) -> int:
    from inboxq.infrastructure.database import init_database, validate_schema

    db_path = init_database()
    validate_schema()
    print(f"Database ready: {db_path}")
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    from inboxq.config import SWEEP_THRESHOLD_HOURS
    from inboxq.events.sweeper import cleanup_past_items

    hours = args.hours if args.hours is not None else SWEEP_THRESHOLD_HOURS
    cleanup = cleanup_past_items(args.user, threshold_hours=hours)
    print(cleanup.model_dump_json(indent=2))
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    from inboxq.config import DELIVERY_MAX_RETRIES
    from inboxq.events.repository import EventRepository
    from inboxq.infrastructure.idempotency import ProcessedEmailLedger

    stats = ProcessedEmailLedger.get_stats(args.user)
    exhausted = EventRepository.list_exhausted(args.user, DELIVERY_MAX_RETRIES)
    payload = {
        "user_id": args.user,
        "processing": stats.model_dump(mode="json"),
        "events": EventRepository.count_by_status(args.user),
        "exhausted": [
            {"id": event.id, "title": event.title, "error": event.sync_error}
            for event in exhausted
        ],
    }
    print(json.dumps(payload, indent=2))
    return 0


def _cmd_events(args: argparse.Namespace) -> int:
    from inboxq.events.models import coerce_datetime
    from inboxq.events.repository import EventRepository

    events = EventRepository.list_by_user(
        args.user,
        child_name=args.child,
        date_from=coerce_datetime(args.date_from),
        date_to=coerce_datetime(args.date_to),
    )
    print(json.dumps([event.model_dump(mode="json") for event in events], indent=2))
    return 0


def _cmd_delete_event(args: argparse.Namespace) -> int:
    from inboxq.events.repository import EventRepository

    if not EventRepository.delete(args.user, args.event_id):
        print(f"No event {args.event_id} for user {args.user}", file=sys.stderr)
        return 1
    print(f"Deleted event {args.event_id}")
    return 0


def _cmd_backoff(args: argparse.Namespace) -> int:
    from inboxq.infrastructure.retry import BackoffPolicy

    policy = BackoffPolicy()
    for retry_count in range(args.max_retries):
        delay = policy.delay(retry_count)
        print(f"retry {retry_count}: {delay:>6.0f}s  ({policy.describe(retry_count)})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="inboxq", description="inboxq maintenance commands")
    parser.add_argument(
        "--log-level", default=None, help="DEBUG, INFO, WARNING... (default: INBOXQ_LOG_LEVEL)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create the database schema (idempotent)")
    init_db.set_defaults(func=_cmd_init_db)

    sweep = sub.add_parser("sweep", help="Remove past events and auto-complete past todos")
    sweep.add_argument("--user", required=True, help="User id to sweep")
    sweep.add_argument("--hours", type=int, default=None, help="Staleness threshold in hours")
    sweep.set_defaults(func=_cmd_sweep)

    status = sub.add_parser("status", help="Show ledger and delivery statistics for a user")
    status.add_argument("--user", required=True, help="User id to report on")
    status.set_defaults(func=_cmd_status)

    events = sub.add_parser("events", help="List a user's stored events")
    events.add_argument("--user", required=True, help="User id to list")
    events.add_argument("--child", default=None, help="Only events for this child")
    events.add_argument("--from", dest="date_from", default=None, help="Earliest start (ISO)")
    events.add_argument("--to", dest="date_to", default=None, help="Start before (ISO)")
    events.set_defaults(func=_cmd_events)

    delete_event = sub.add_parser("delete-event", help="Delete one stored event")
    delete_event.add_argument("--user", required=True, help="Owner of the event")
    delete_event.add_argument("event_id")
    delete_event.set_defaults(func=_cmd_delete_event)

    backoff = sub.add_parser("backoff", help="Print the delivery retry schedule")
    backoff.add_argument("--max-retries", type=int, default=5)
    backoff.set_defaults(func=_cmd_backoff)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    # .env must be loaded before inboxq.config reads the environment
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
