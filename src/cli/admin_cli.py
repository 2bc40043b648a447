"""
Admin CLI for operating the activity warehouse sync.

Usage:
    python -m src.cli.admin_cli init-schema
    python -m src.cli.admin_cli status --event-id <event_id>
    python -m src.cli.admin_cli processing-log --event-id <event_id> [--limit N]
    python -m src.cli.admin_cli dlq-list [--status pending] [--limit N]
    python -m src.cli.admin_cli dlq-stats
    python -m src.cli.admin_cli dlq-reprocess --event-id <event_id>
    python -m src.cli.admin_cli dlq-sweep
    python -m src.cli.admin_cli dlq-abandon --event-id <event_id> --note <text>
    python -m src.cli.admin_cli erase-owner --owner-id <owner_id>
    python -m src.cli.admin_cli warehouse-stats

Settings are read from the environment; ``--env-file`` loads a .env file first.
"""

import argparse
import json
import sys
from datetime import datetime

import psycopg

from src.core.config import PipelineSettings, load_secret_key
from src.core.errors import SyncError
from src.delivery.runtime import SyncRuntime
from src.observability.logger import get_logger
from src.utils.validation import (
    ValidationError,
    validate_event_id,
    validate_limit,
    validate_operator_note,
    validate_owner_id,
)
from src.warehouse.audit import get_processing_summary, query_processing_logs
from src.warehouse.connection import DatabaseConnectionPool
from src.warehouse.schema_mgmt import SchemaManager

logger = get_logger(__name__)

OPERATOR_ACTOR = "operator"


def format_timestamp(ts: datetime | str | None) -> str:
    """Format timestamp for display."""
    if isinstance(ts, str):
        return ts
    return ts.strftime("%Y-%m-%d %H:%M:%S") if ts else "N/A"


def build_runtime(args) -> SyncRuntime:
    settings = PipelineSettings.from_env(args.env_file)
    return SyncRuntime.from_settings(settings, load_secret_key())


def init_schema_command(args):
    """
    Create the state and warehouse tables.

    Args:
        args: Command line arguments
    """
    settings = PipelineSettings.from_env(args.env_file)
    state_pool = DatabaseConnectionPool.from_settings(settings.state_db, name="state")
    warehouse_pool = DatabaseConnectionPool.from_settings(settings.warehouse_db, name="warehouse")

    try:
        state_pool.open()
        warehouse_pool.open()

        manager = SchemaManager(state_pool, warehouse_pool, settings.warehouse_table)
        manager.create_all()

        missing = manager.missing_tables()
        if missing:
            print(f"\nSchema incomplete, missing tables: {', '.join(missing)}")
            sys.exit(1)
        print("\nSchema is up to date.")

    finally:
        warehouse_pool.close()
        state_pool.close()


def status_command(args):
    """
    Show where an event is: done, retrying, dead lettered, abandoned or unknown.

    Args:
        args: Command line arguments
    """
    event_id = validate_event_id(args.event_id)
    runtime = build_runtime(args)

    try:
        details = runtime.status.describe(event_id)

        print(f"\n{'=' * 80}")
        print(f"EVENT {event_id}")
        print(f"{'=' * 80}\n")
        print(f"Status: {details['status']}")
        if "applied_at" in details:
            print(f"Applied at: {details['applied_at']}")
        if "attempt_count" in details:
            print(f"Attempts so far: {details['attempt_count']}")
            print(f"Next attempt at: {details['next_attempt_at']}")
            print(f"Last error: {details['last_error']}")
        if "dead_letter" in details:
            print("\nDead letter entry:")
            print(json.dumps(details["dead_letter"], indent=2))
        print()

    finally:
        runtime.close()


def processing_log_command(args):
    """
    Print the processing log of one event, newest first.

    Args:
        args: Command line arguments
    """
    event_id = validate_event_id(args.event_id)
    limit = validate_limit(args.limit)
    settings = PipelineSettings.from_env(args.env_file)
    pool = DatabaseConnectionPool.from_settings(settings.state_db, name="state")

    try:
        pool.open()
        entries = query_processing_logs(pool, event_id, limit=limit)

        if not entries:
            print(f"\nNo processing log found for event {event_id}")
            return

        print(f"\n{'Started':<20} {'Status':<14} {'Attempts':<9} {'Error'}")
        print(f"{'-' * 80}")
        for entry in entries:
            print(
                f"{format_timestamp(entry['started_at']):<20} "
                f"{entry['status']:<14} {entry['attempt_count']:<9} "
                f"{entry['error_message'] or '-'}"
            )

        print("\nAll events by status:")
        for status, count in sorted(get_processing_summary(pool).items()):
            print(f"  - {status}: {count}")
        print()

    finally:
        pool.close()


def dlq_list_command(args):
    """
    List dead letter entries.

    Args:
        args: Command line arguments
    """
    limit = validate_limit(args.limit)
    runtime = build_runtime(args)

    try:
        entries = runtime.dead_letters.list_entries(status=args.status, limit=limit)

        if not entries:
            print("\nNo dead letter entries found.")
            return

        print(f"\n{'Event ID':<18} {'Status':<10} {'Kind':<10} {'Tries':<6} {'Sweeps':<7} {'First failed':<20} Reason")
        print(f"{'-' * 110}")
        for entry in entries:
            print(
                f"{entry.event_id[:16]:<18} {entry.status:<10} {entry.failure_kind:<10} "
                f"{entry.attempt_count:<6} {entry.reprocess_count:<7} "
                f"{format_timestamp(entry.first_failed_at):<20} {entry.failure_reason[:60]}"
            )
        print(f"\nShowing {len(entries)} entries\n")

    finally:
        runtime.close()


def dlq_stats_command(args):
    """
    Show dead letter counts by status.

    Args:
        args: Command line arguments
    """
    runtime = build_runtime(args)

    try:
        stats = runtime.dead_letters.statistics()

        print(f"\n{'=' * 40}")
        print("DEAD LETTER STATISTICS")
        print(f"{'=' * 40}")
        for status in ("pending", "resolved", "abandoned"):
            print(f"  {status:<12} {stats.get(status, 0):>8}")
        print(f"  {'total':<12} {sum(stats.values()):>8}\n")

    finally:
        runtime.close()


def dlq_reprocess_command(args):
    """
    Force reprocessing of one dead letter entry.

    Args:
        args: Command line arguments
    """
    event_id = validate_event_id(args.event_id)
    runtime = build_runtime(args)

    try:
        outcome = runtime.reprocessor.reprocess_one(event_id)
        print(f"\nReprocess of {event_id}: {outcome}\n")
        if outcome == "failed":
            sys.exit(2)

    finally:
        runtime.close()


def dlq_sweep_command(args):
    """
    Run a single reprocessing sweep now.

    Args:
        args: Command line arguments
    """
    runtime = build_runtime(args)

    try:
        report = runtime.reprocessor.sweep()
        if not report.acquired:
            print("\nAnother reprocessor holds the sweep lease; nothing done.\n")
            return
        print(json.dumps(report.to_dict(), indent=2))

    finally:
        runtime.close()


def dlq_abandon_command(args):
    """
    Abandon a dead letter entry with an operator note.

    Args:
        args: Command line arguments
    """
    event_id = validate_event_id(args.event_id)
    note = validate_operator_note(args.note)
    runtime = build_runtime(args)

    try:
        entry = runtime.dead_letters.mark_abandoned(event_id, note, actor=args.actor)
        print(f"\nEntry {event_id} is {entry.status} (by {entry.abandoned_by})\n")

    finally:
        runtime.close()


def erase_owner_command(args):
    """
    Erase an owner's pseudonymized data.

    Args:
        args: Command line arguments
    """
    owner_id = validate_owner_id(args.owner_id)
    runtime = build_runtime(args)

    try:
        report = runtime.erasure.erase(owner_id)
        print(json.dumps(report.to_dict(), indent=2))

    finally:
        runtime.close()


def warehouse_stats_command(args):
    """
    Show row counts of the warehouse table.

    Args:
        args: Command line arguments
    """
    runtime = build_runtime(args)

    try:
        stats = runtime.writer.statistics()

        print(f"\n{'=' * 40}")
        print(f"WAREHOUSE TABLE {runtime.writer.table}")
        print(f"{'=' * 40}")
        print(f"  Rows: {stats['total_rows']}")
        print(f"  Distinct identities: {stats['distinct_identities']}")
        if stats.get("rows_by_category"):
            print("\n  Rows by category:")
            for category, count in stats["rows_by_category"].items():
                print(f"    - {category}: {count}")
        print()

    finally:
        runtime.close()


COMMANDS = {
    "init-schema": init_schema_command,
    "status": status_command,
    "processing-log": processing_log_command,
    "dlq-list": dlq_list_command,
    "dlq-stats": dlq_stats_command,
    "dlq-reprocess": dlq_reprocess_command,
    "dlq-sweep": dlq_sweep_command,
    "dlq-abandon": dlq_abandon_command,
    "erase-owner": erase_owner_command,
    "warehouse-stats": warehouse_stats_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Admin CLI for the activity warehouse sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optional .env file loaded before reading settings"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("init-schema", help="Create state and warehouse tables")

    status_parser = subparsers.add_parser("status", help="Show the processing status of an event")
    status_parser.add_argument("--event-id", required=True, help="Canonical event ID")

    log_parser = subparsers.add_parser("processing-log", help="Show the processing log of an event")
    log_parser.add_argument("--event-id", required=True, help="Canonical event ID")
    log_parser.add_argument("--limit", type=int, default=50, help="Maximum entries (default: 50)")

    list_parser = subparsers.add_parser("dlq-list", help="List dead letter entries")
    list_parser.add_argument(
        "--status",
        choices=["pending", "resolved", "abandoned"],
        default="pending",
        help="Entry status (default: pending)"
    )
    list_parser.add_argument("--limit", type=int, default=100, help="Maximum entries (default: 100)")

    subparsers.add_parser("dlq-stats", help="Dead letter counts by status")

    reprocess_parser = subparsers.add_parser("dlq-reprocess", help="Force reprocessing of one entry")
    reprocess_parser.add_argument("--event-id", required=True, help="Canonical event ID")

    subparsers.add_parser("dlq-sweep", help="Run one reprocessing sweep now")

    abandon_parser = subparsers.add_parser("dlq-abandon", help="Abandon a dead letter entry")
    abandon_parser.add_argument("--event-id", required=True, help="Canonical event ID")
    abandon_parser.add_argument("--note", required=True, help="Reason for abandoning the entry")
    abandon_parser.add_argument(
        "--actor",
        default=OPERATOR_ACTOR,
        help=f"Who abandons the entry (default: {OPERATOR_ACTOR})"
    )

    erase_parser = subparsers.add_parser("erase-owner", help="Erase an owner's pseudonymized data")
    erase_parser.add_argument("--owner-id", required=True, help="Owner identity reference")

    subparsers.add_parser("warehouse-stats", help="Row counts of the warehouse table")

    return parser


def main(argv: list[str] | None = None):
    """Main entry point for admin CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        COMMANDS[args.command](args)

    except ValidationError as e:
        print(f"\nInvalid input: {e}")
        sys.exit(2)

    except (SyncError, psycopg.Error, OSError) as e:
        logger.error(f"Command {args.command} failed: {e}", exc_info=True)
        print(f"\nError: {e}")
        sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
