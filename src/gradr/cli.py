from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import TextIO

from .app_logging import LOGGER_NAME, log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .coordinator import Coordinator
from .errors import GradrError
from .executor import CommandExecutor
from .models import BuildRequest, EntryStatus, QueueEntry
from .notifications import (
    ChannelNotificationSource,
    StreamNotificationSource,
    feed_channel,
    run_producer,
)
from .store import SqliteQueue
from .worker import Worker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gradr", description="Push-triggered build queue")
    parser.add_argument("--config", required=True, help="Path to gradr YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the worker pool")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Drain the queue with a single worker, then exit",
    )
    run_parser.add_argument(
        "--input",
        help="Feed JSON push payloads from this file (`-` for stdin) through the notification channel",
    )

    enqueue = subparsers.add_parser("enqueue", help="Queue one build request")
    enqueue.add_argument("--clone-url", required=True, help="Repository clone URL")
    enqueue.add_argument("--branch", required=True, help="Branch to build")
    enqueue.add_argument("--commit", help="Commit the push pointed at")

    listen = subparsers.add_parser("listen", help="Queue push payloads read as JSON lines")
    listen.add_argument("--input", default="-", help="File of JSON push payloads, `-` for stdin")

    subparsers.add_parser("status", help="Show queue counts")

    stuck = subparsers.add_parser("stuck", help="List in-progress entries")
    stuck.add_argument(
        "--older-than",
        type=float,
        default=0.0,
        help="Only entries claimed at least this many seconds ago",
    )

    show = subparsers.add_parser("show", help="Show one entry and its history")
    show.add_argument("--entry-id", type=int, required=True, help="Entry id")

    reset = subparsers.add_parser("reset", help="Return a stuck entry to pending")
    reset.add_argument("--entry-id", type=int, required=True, help="Entry id to reset")
    return parser


def _open_store(config: AppConfig) -> SqliteQueue:
    ensure_local_paths(config)
    store = SqliteQueue(config.paths.db)
    store.init_schema()
    return store


def _format_entry(entry: QueueEntry) -> str:
    request = entry.request
    line = f"#{entry.entry_id} {entry.status.name.lower():12} {request.clone_url}@{request.branch}"
    if entry.claimed_by:
        line += f" worker={entry.claimed_by}"
    if entry.claimed_at:
        line += f" claimed={entry.claimed_at}"
    if entry.last_error:
        line += f" error={entry.last_error}"
    return line


def _start_channel_feed(
    config: AppConfig,
    input_path: str,
    logger: logging.Logger,
) -> tuple[ChannelNotificationSource, TextIO]:
    stream = sys.stdin if input_path == "-" else Path(input_path).open(encoding="utf-8")
    source = ChannelNotificationSource(config.notifications.channel_capacity)
    feeder = threading.Thread(
        target=feed_channel,
        args=(stream, source, logger),
        name="channel-feed",
        daemon=True,
    )
    feeder.start()
    return source, stream


def cmd_run(config: AppConfig, *, once: bool = False, input_path: str | None = None) -> int:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    store = _open_store(config)
    executor = CommandExecutor(config.build)
    source: ChannelNotificationSource | None = None
    stream: TextIO | None = None
    try:
        if input_path is not None:
            source, stream = _start_channel_feed(config, input_path, logger)
        if once:
            if source is not None:
                run_producer(source, store, logger)
            worker = Worker(config.workers.names()[0], store, executor, config.poll, logger)
            outcomes = worker.run_until_idle()
            log_with_fields(logger, logging.INFO, "drained", builds=len(outcomes))
            return 0
        coordinator = Coordinator(
            store,
            executor,
            config.workers.names(),
            config.poll,
            sources=[source] if source is not None else None,
            logger=logger,
        )
        coordinator.start()
        try:
            coordinator.wait()
        except KeyboardInterrupt:
            log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
            coordinator.stop()
            coordinator.join(timeout=config.poll.interval_seconds + 1)
        failed = coordinator.failed_workers()
        if failed:
            print(f"worker(s) crashed: {', '.join(worker.name for worker in failed)}", file=sys.stderr)
            return 1
        return 0
    finally:
        if stream is not None and stream is not sys.stdin:
            stream.close()
        store.close()


def cmd_enqueue(config: AppConfig, request: BuildRequest) -> int:
    store = _open_store(config)
    try:
        entry = store.add_pending(request)
        print(f"queued #{entry.entry_id} {request.clone_url}@{request.branch}")
        return 0
    finally:
        store.close()


def cmd_listen(config: AppConfig, input_path: str) -> int:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    store = _open_store(config)
    try:
        if input_path == "-":
            enqueued = run_producer(StreamNotificationSource(sys.stdin, logger), store, logger)
        else:
            with Path(input_path).open(encoding="utf-8") as handle:
                enqueued = run_producer(StreamNotificationSource(handle, logger), store, logger)
        print(f"queued {enqueued} build(s)")
        return 0
    finally:
        store.close()


def cmd_status(config: AppConfig) -> int:
    store = _open_store(config)
    try:
        counts = store.summary_counts()
        print("Builds:")
        for status in EntryStatus:
            name = status.name.lower()
            print(f"  {name:12} {counts.get(name, 0)}")
        return 0
    finally:
        store.close()


def cmd_stuck(config: AppConfig, older_than: float) -> int:
    store = _open_store(config)
    try:
        entries = store.list_stuck(older_than)
        if not entries:
            print("(no in-progress builds)")
        for entry in entries:
            print(_format_entry(entry))
        return 0
    finally:
        store.close()


def cmd_show(config: AppConfig, entry_id: int) -> int:
    store = _open_store(config)
    try:
        entry = store.get_entry(entry_id)
        if entry is None:
            print(f"entry not found: {entry_id}", file=sys.stderr)
            return 2
        print(_format_entry(entry))
        result = entry.build_result()
        if result is not None:
            print(f"  result: {'pass' if result.passed else 'fail'} (exit {result.returncode})")
            if result.output:
                print(result.output.rstrip())
        print("\nHistory:")
        for event in store.list_events(entry_id):
            details = json.dumps(event["details"], sort_keys=True)
            print(f"  {event['timestamp']} {event['event_type']} worker={event['worker_name']} {details}")
        return 0
    finally:
        store.close()


def cmd_reset(config: AppConfig, entry_id: int) -> int:
    store = _open_store(config)
    try:
        entry = store.reset_entry(entry_id)
        print(f"reset #{entry.entry_id} -> {entry.status.name.lower()}")
        return 0
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    try:
        if args.command == "run":
            return cmd_run(config, once=bool(args.once), input_path=args.input)
        if args.command == "enqueue":
            request = BuildRequest(clone_url=args.clone_url, branch=args.branch, commit=args.commit)
            return cmd_enqueue(config, request)
        if args.command == "listen":
            return cmd_listen(config, args.input)
        if args.command == "status":
            return cmd_status(config)
        if args.command == "stuck":
            return cmd_stuck(config, args.older_than)
        if args.command == "show":
            return cmd_show(config, args.entry_id)
        if args.command == "reset":
            return cmd_reset(config, args.entry_id)
    except GradrError as exc:
        log_with_fields(logging.getLogger(LOGGER_NAME), logging.ERROR, "command_failed", error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return 2
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
