"""Operator CLI for the webhook pipeline.

Usage:
    clientflow-admin init-db
    clientflow-admin dead-letters list --limit 20
    clientflow-admin dead-letters replay 42
    clientflow-admin check-services
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from clientflow.app import build_dispatcher
from clientflow.config import get_settings
from clientflow.db import Database, init_schema
from clientflow.logging_config import configure_logging
from clientflow.onboarding.health import check_onboarding_services
from clientflow.webhooks.dead_letter import PostgresDeadLetterRecorder, replay_dead_letter
from clientflow.webhooks.idempotency import PostgresIdempotencyLedger


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the pipeline tables."""
    db = Database(get_settings().database_url)
    asyncio.run(init_schema(db))
    print("Schema ready")


def cmd_dead_letters_list(args: argparse.Namespace) -> None:
    """Print the most recent dead letters."""
    recorder = PostgresDeadLetterRecorder(Database(get_settings().database_url))
    records = asyncio.run(recorder.list_recent(args.limit))
    if not records:
        print("No dead letters")
        return
    for rec in records:
        print(
            f"{rec.id:>6}  {rec.recorded_at:%Y-%m-%d %H:%M:%S}  "
            f"{rec.event_type:36s}  {rec.event_id}  {rec.error_message}"
        )


async def _replay(record_id: int) -> int:
    settings = get_settings()
    db = Database(settings.database_url)
    recorder = PostgresDeadLetterRecorder(db)
    record = await recorder.get(record_id)
    if record is None:
        print(f"ERROR: dead letter not found: {record_id}", file=sys.stderr)
        return 1
    result = await replay_dead_letter(
        record, build_dispatcher(settings, db), recorder, PostgresIdempotencyLedger(db)
    )
    status = "OK" if result.success else "FAILED"
    print(f"{status}: {record.event_type} {record.event_id} - {result.message}")
    return 0 if result.success else 2


def cmd_dead_letters_replay(args: argparse.Namespace) -> None:
    """Re-run the handler for one dead letter."""
    code = asyncio.run(_replay(args.record_id))
    if code:
        sys.exit(code)


def cmd_check_services(args: argparse.Namespace) -> None:
    """Report which provisioning services are configured."""
    report = check_onboarding_services(get_settings())
    print(json.dumps(report.to_dict(), indent=2))
    if not report.ready:
        sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="clientflow-admin",
        description="Clientflow webhook and onboarding operations",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # init-db
    p_init = sub.add_parser("init-db", help="Create database tables")
    p_init.set_defaults(func=cmd_init_db)

    # dead-letters
    p_dl = sub.add_parser("dead-letters", help="Inspect or replay failed events")
    dl_sub = p_dl.add_subparsers(dest="dl_command", required=True)
    p_list = dl_sub.add_parser("list", help="List recent dead letters")
    p_list.add_argument("--limit", type=int, default=20, help="Maximum rows (default 20)")
    p_list.set_defaults(func=cmd_dead_letters_list)
    p_replay = dl_sub.add_parser("replay", help="Replay one dead letter by id")
    p_replay.add_argument("record_id", type=int, help="Dead letter id")
    p_replay.set_defaults(func=cmd_dead_letters_replay)

    # check-services
    p_check = sub.add_parser("check-services", help="Check provisioning configuration")
    p_check.set_defaults(func=cmd_check_services)

    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, "console")
    args.func(args)


if __name__ == "__main__":
    main()
