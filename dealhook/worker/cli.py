"""Worker process entry point.

Usage:
    python -m dealhook.worker                    # run the pool (same as `run`)
    python -m dealhook.worker run --concurrency 10
    python -m dealhook.worker status             # queue depth and receipt counts
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys

from dealhook.config import Settings
from dealhook.logging_config import setup_logging
from dealhook.services import build_services

logger = logging.getLogger(__name__)


def cmd_run(args: argparse.Namespace) -> int:
    settings = Settings()
    setup_logging(args.log_level or settings.log_level)
    services = build_services(settings)
    pool = services.worker_pool(args.concurrency)

    def _shutdown(signum: int, _frame: object) -> None:
        logger.info("Received %s, stopping workers", signal.Signals(signum).name)
        pool.request_stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    pool.start()
    try:
        pool.wait()
    finally:
        pool.stop()
        services.close()
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    settings = Settings()
    setup_logging(args.log_level or "WARNING")
    services = build_services(settings)
    try:
        status = {
            "queue": services.queue.name,
            "jobs": services.queue.counts().as_dict(),
            "receipts": services.receipts.count_by_status(),
        }
    finally:
        services.close()
    print(json.dumps(status, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dealhook-worker",
        description="dealhook CRM webhook worker",
    )
    parser.add_argument("--log-level", help="Override DEALHOOK_LOG_LEVEL")
    parser.set_defaults(func=cmd_run, concurrency=None)
    sub = parser.add_subparsers(dest="command")

    p_run = sub.add_parser("run", help="Consume the CRM webhook queue")
    p_run.add_argument(
        "-c", "--concurrency", type=int, help="Worker threads (default DEALHOOK_WORKER_CONCURRENCY)"
    )
    p_run.set_defaults(func=cmd_run)

    p_status = sub.add_parser("status", help="Print queue and receipt counts as JSON")
    p_status.set_defaults(func=cmd_status)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.concurrency is not None and args.concurrency < 1:
        print("ERROR: --concurrency must be >= 1", file=sys.stderr)
        return 2
    return args.func(args)
