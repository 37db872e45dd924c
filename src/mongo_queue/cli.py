#!/usr/bin/env python
"""
Command-line interface for managing a message queue.

Examples:
  mongo-queue ensure-indexes --before-sort type --after-sort created_by:-1
  mongo-queue send '{"type": "resize", "image": "a.png"}' --priority 0.5
  mongo-queue get --query '{"type": "resize"}' --reset-duration 60
  mongo-queue ack 65a0c0ffee0123456789abcd
  mongo-queue status
  mongo-queue work --handler myapp.tasks:resize --query '{"type": "resize"}'
"""

import argparse
import logging
import os
import sys
from importlib import import_module
from typing import Callable, List, Optional, Tuple

from bson import ObjectId
from bson import json_util
from bson.errors import InvalidId

from .config import Config
from .errors import InvalidArgumentError
from .message import add_seconds, utcnow
from .worker import QueueWorker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def parse_field_spec(spec: str) -> Tuple[str, int]:
    """Parse FIELD or FIELD:DIRECTION into a (field, direction) pair."""
    field, sep, direction = spec.rpartition(":")
    if not sep:
        return spec, 1
    if direction not in ("1", "-1"):
        raise InvalidArgumentError(f"direction must be 1 or -1 in '{spec}'")
    return field, int(direction)


def parse_json_object(text: Optional[str], argument: str) -> dict:
    """Parse (extended) JSON text that must hold an object."""
    if not text:
        return {}
    try:
        value = json_util.loads(text)
    except ValueError as e:
        raise InvalidArgumentError(f"{argument} is not valid JSON: {e}")
    if not isinstance(value, dict):
        raise InvalidArgumentError(f"{argument} must be a JSON object")
    return value


def load_handler(spec: str) -> Callable:
    """Import a handler given as MODULE:FUNCTION."""
    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name or not attribute:
        raise InvalidArgumentError(f"handler must be MODULE:FUNCTION, got '{spec}'")
    try:
        module = import_module(module_name)
    except ImportError as e:
        raise InvalidArgumentError(f"cannot import handler module '{module_name}': {e}")

    handler = getattr(module, attribute, None)
    if not callable(handler):
        raise InvalidArgumentError(f"'{spec}' is not a callable handler")
    return handler


def _open_queue(args):
    config = Config(args.config)
    return config, config.get_queue()


def cmd_ensure_indexes(args):
    """Create the indexes used by get() and, optionally, count()."""
    before_sort = [parse_field_spec(spec) for spec in args.before_sort]
    after_sort = [parse_field_spec(spec) for spec in args.after_sort]
    count_fields = [parse_field_spec(spec) for spec in args.count_field]

    config, queue = _open_queue(args)
    try:
        queue.ensure_get_index(before_sort, after_sort)
        logger.info("Get indexes ensured")

        if count_fields or args.count_running:
            queue.ensure_count_index(count_fields, args.count_running)
            logger.info("Count index ensured")
    finally:
        config.close()
    return 0


def cmd_send(args):
    """Send a message."""
    payload = parse_json_object(args.payload, "payload")
    config, queue = _open_queue(args)
    try:
        earliest_get = add_seconds(utcnow(), args.delay) if args.delay else None
        message_id = queue.send(payload, earliest_get=earliest_get, priority=args.priority)
    finally:
        config.close()

    print(str(message_id))
    return 0


def cmd_get(args):
    """Claim a message and print it."""
    query = parse_json_object(args.query, "query")
    config, queue = _open_queue(args)
    try:
        settings = config.queue_settings
        reset_duration = args.reset_duration if args.reset_duration is not None \
            else settings["reset_duration"]
        wait_duration = args.wait if args.wait is not None else settings["wait_duration"]

        message = queue.get(query, reset_duration, wait_duration=wait_duration,
                            poll_duration=settings["poll_duration"])
        if message is None:
            logger.info("No message available")
            return 1

        if args.ack:
            queue.ack(message)
    finally:
        config.close()

    print(json_util.dumps(message))
    return 0


def cmd_ack(args):
    """Acknowledge a message by id."""
    try:
        message_id = ObjectId(args.id)
    except InvalidId as e:
        raise InvalidArgumentError(str(e))

    config, queue = _open_queue(args)
    try:
        queue.ack({"id": message_id})
    finally:
        config.close()

    print(f"Acked {message_id}")
    return 0


def cmd_count(args):
    """Count messages."""
    query = parse_json_object(args.query, "query")
    config, queue = _open_queue(args)
    try:
        count = queue.count(query, args.running)
    finally:
        config.close()

    print(count)
    return 0


def cmd_status(args):
    """Show queue depth."""
    query = parse_json_object(args.query, "query")
    config, queue = _open_queue(args)
    try:
        total = queue.count(query)
        running = queue.count(query, True)
    finally:
        config.close()

    print(f"Total:   {total}")
    print(f"Running: {running}")
    print(f"Waiting: {total - running}")
    return 0


def cmd_work(args):
    """Run a worker that hands each message to a handler function."""
    handler = load_handler(args.handler)
    query = parse_json_object(args.query, "query")

    config, queue = _open_queue(args)
    try:
        settings = config.queue_settings
        worker = QueueWorker(
            queue,
            handler,
            query=query,
            reset_duration=settings["reset_duration"],
            wait_duration=settings["wait_duration"],
            poll_duration=settings["poll_duration"],
            retry_delay=settings["retry_delay"],
            max_messages=args.max_messages,
            stop_when_empty=args.stop_when_empty,
            worker_id=args.worker_id
        )
        worker.install_signal_handlers()

        logger.info(f"Starting worker {worker.worker_id} with handler {args.handler}")
        stats = worker.run()
    finally:
        config.close()

    print(f"Worker ID: {worker.worker_id}")
    print(f"Processed: {stats['messages_processed']}")
    print(f"Forwarded: {stats['messages_forwarded']}")
    print(f"Failed:    {stats['messages_failed']}")
    if stats["start_time"] and stats["end_time"]:
        print(f"Runtime:   {stats['end_time'] - stats['start_time']:.1f} seconds")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mongo-queue",
        description="MongoDB Message Queue Management",
        epilog="Environment Variables:\n  MONGO_QUEUE_CONFIG_PATH: Path to configuration file "
               "(default: ./config.yaml)",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--config", "-c",
                        help="Configuration file path (overrides MONGO_QUEUE_CONFIG_PATH)")
    parser.add_argument("--log-level", "-l",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        default=os.environ.get("LOG_LEVEL", "INFO").upper(),
                        help="Logging level (default: INFO)")
    parser.add_argument("--log-file", help="Log to file instead of stderr")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    index_parser = subparsers.add_parser("ensure-indexes", help="Create queue indexes")
    index_parser.add_argument("--before-sort", action="append", default=[], metavar="FIELD[:DIR]",
                              help="Payload field placed before the sort fields")
    index_parser.add_argument("--after-sort", action="append", default=[], metavar="FIELD[:DIR]",
                              help="Payload field placed after the sort fields")
    index_parser.add_argument("--count-field", action="append", default=[], metavar="FIELD[:DIR]",
                              help="Payload field for the count index")
    index_parser.add_argument("--count-running", action="store_true",
                              help="Include running in the count index")

    send_parser = subparsers.add_parser("send", help="Send a message")
    send_parser.add_argument("payload", help="JSON payload")
    send_parser.add_argument("--priority", type=float, default=0.0,
                             help="Priority, lower is served first (default: 0.0)")
    send_parser.add_argument("--delay", type=float, default=0.0,
                             help="Seconds before the message becomes available")

    get_parser = subparsers.add_parser("get", help="Claim a message")
    get_parser.add_argument("--query", help="JSON query over payload fields")
    get_parser.add_argument("--reset-duration", type=float,
                            help="Seconds before the claim is considered abandoned")
    get_parser.add_argument("--wait", type=float, help="Seconds to wait for a message")
    get_parser.add_argument("--ack", action="store_true", help="Ack the message once printed")

    ack_parser = subparsers.add_parser("ack", help="Acknowledge a message")
    ack_parser.add_argument("id", help="Message id")

    count_parser = subparsers.add_parser("count", help="Count messages")
    count_parser.add_argument("--query", help="JSON query over payload fields")
    running_group = count_parser.add_mutually_exclusive_group()
    running_group.add_argument("--running", dest="running", action="store_const", const=True,
                               help="Count running messages only")
    running_group.add_argument("--not-running", dest="running", action="store_const", const=False,
                               help="Count waiting messages only")

    status_parser = subparsers.add_parser("status", help="Show queue depth")
    status_parser.add_argument("--query", help="JSON query over payload fields")

    work_parser = subparsers.add_parser("work", help="Process messages with a handler")
    work_parser.add_argument("--handler", required=True, metavar="MODULE:FUNCTION",
                             help="Function called with each payload")
    work_parser.add_argument("--query", help="JSON query over payload fields")
    work_parser.add_argument("--max-messages", type=int,
                             help="Stop after this many messages (default: unlimited)")
    work_parser.add_argument("--stop-when-empty", action="store_true",
                             help="Stop once no message is available")
    work_parser.add_argument("--worker-id", help="Worker ID (generated if not provided)")

    return parser


COMMANDS = {
    "ensure-indexes": cmd_ensure_indexes,
    "send": cmd_send,
    "get": cmd_get,
    "ack": cmd_ack,
    "count": cmd_count,
    "status": cmd_status,
    "work": cmd_work,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_file:
        logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT,
                            filename=args.log_file, filemode="a")
    else:
        logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return COMMANDS[args.command](args)
    except InvalidArgumentError as e:
        logger.error(f"Invalid argument: {e}")
        return 1
    except Exception as e:
        logger.error(f"Command failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
