"""
CLI for the long-running sync processes.

Usage:
    python -m src.cli.worker_cli workers [--partitions N]
    python -m src.cli.worker_cli reprocessor
    python -m src.cli.worker_cli publish --notification-file <path>

``workers`` runs the partitioned delivery workers, ``reprocessor`` runs the
scheduled dead letter sweep and ``publish`` enqueues completion notifications
read from a JSON file (one object or a list).
"""

import argparse
import json
import signal
import sys
import threading
from pathlib import Path

import psycopg
from pydantic import ValidationError

from src.core.config import PipelineSettings, load_secret_key
from src.core.errors import PublishError, SyncError
from src.core.models import CompletionNotification
from src.delivery.runtime import SyncRuntime
from src.observability.logger import get_logger
from src.observability.metrics import start_metrics_server

logger = get_logger(__name__)

_shutdown = threading.Event()


def signal_handler(signum, frame):  # type: ignore[no-untyped-def]
    """
    Handle shutdown signals (SIGINT, SIGTERM) for graceful termination.

    Args:
        signum: Signal number
        frame: Current stack frame
    """
    signal_name = signal.Signals(signum).name
    logger.info(f"Received {signal_name} signal, initiating graceful shutdown...")
    _shutdown.set()


def _install_signal_handlers() -> None:
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def _load_runtime(args: argparse.Namespace) -> tuple[PipelineSettings, SyncRuntime]:
    settings = PipelineSettings.from_env(args.env_file)
    if getattr(args, "partitions", None):
        settings.worker.partitions = args.partitions
    runtime = SyncRuntime.from_settings(settings, load_secret_key())
    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)
        logger.info(f"Metrics endpoint listening on port {settings.metrics_port}")
    return settings, runtime


def run_workers(args: argparse.Namespace) -> int:
    """
    Run the delivery worker pool until a shutdown signal arrives.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    _install_signal_handlers()
    settings, runtime = _load_runtime(args)
    pool = runtime.worker_pool()

    try:
        pool.start()
        logger.info(
            f"Delivering from '{settings.worker.transport}' with {settings.worker.partitions} partitions"
        )
        while not _shutdown.wait(1.0):
            pass

        summary = pool.stop(timeout_seconds=args.shutdown_timeout)
        print(json.dumps(summary, indent=2))
        return 0

    finally:
        runtime.close()


def run_reprocessor(args: argparse.Namespace) -> int:
    """
    Run the dead letter reprocessor on its schedule until a shutdown signal arrives.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    _install_signal_handlers()
    settings, runtime = _load_runtime(args)

    try:
        logger.info(
            f"Dead letter reprocessor running every {settings.reprocess.interval_seconds}s"
        )
        runtime.reprocessor.run_forever(stop=_shutdown.is_set, wait=_shutdown.wait)
        return 0

    finally:
        runtime.close()


def publish_notifications(args: argparse.Namespace) -> int:
    """
    Publish completion notifications from a JSON file.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 when every notification was enqueued)
    """
    raw = json.loads(Path(args.notification_file).read_text())
    items = raw if isinstance(raw, list) else [raw]
    notifications = [CompletionNotification.model_validate(item) for item in items]

    _, runtime = _load_runtime(args)
    failures = 0

    try:
        for notification in notifications:
            try:
                event = runtime.publisher.handle_created(notification)
            except PublishError as e:
                failures += 1
                print(f"FAILED {e.event_id}: {e}")
                continue
            if event is None:
                print(f"SKIPPED record {notification.record_id} (status {notification.status})")
            else:
                print(f"QUEUED {event.event_id}")
        return 1 if failures else 0

    finally:
        runtime.close()


def main() -> int:
    """Main entry point for worker CLI."""
    parser = argparse.ArgumentParser(description="Activity warehouse sync processes")
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optional .env file loaded before reading settings"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    workers_parser = subparsers.add_parser("workers", help="Run the delivery worker pool")
    workers_parser.add_argument(
        "--partitions",
        type=int,
        default=None,
        help="Number of hash partitions / workers (default: WORKER_PARTITIONS)"
    )
    workers_parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=60.0,
        help="Seconds to wait for in-flight batches on shutdown (default: 60)"
    )

    subparsers.add_parser("reprocessor", help="Run the scheduled dead letter reprocessor")

    publish_parser = subparsers.add_parser("publish", help="Publish completion notifications")
    publish_parser.add_argument(
        "--notification-file",
        required=True,
        help="JSON file holding one notification or a list of them"
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "workers":
            return run_workers(args)
        elif args.command == "reprocessor":
            return run_reprocessor(args)
        elif args.command == "publish":
            return publish_notifications(args)
        else:
            parser.print_help()
            return 1

    except (ValidationError, json.JSONDecodeError) as e:
        print(f"\nInvalid notification file: {e}")
        return 2

    except (SyncError, psycopg.Error, OSError) as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        print(f"\nError: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
