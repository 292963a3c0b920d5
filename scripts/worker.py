#!/usr/bin/env python3
"""Analysis worker CLI.

Runs the cascade outside the HTTP server: either as a long-lived queue poller
or once for a single request.

Usage:
    python scripts/worker.py poll
    python scripts/worker.py poll --interval 10 --batch-size 3
    python scripts/worker.py process REQUEST_ID

Requires env var: HUGGINGFACE_API_KEY (OPENAI_API_KEY with GENERATION_BACKEND=openai)
"""

import argparse
import asyncio
import os
import sys

# Add project root to path for botcheck imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _load_dotenv():
    """Load .env file into os.environ if it exists."""
    env_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env")
    if os.path.exists(env_path):
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    os.environ.setdefault(key.strip(), value.strip())

_load_dotenv()

from botcheck.backend.db.connection import init_schema
from botcheck.backend.utils.logging_config import get_logger, setup_logging
from botcheck.config import load_settings
from botcheck.orchestrator import ProcessOutcome, build_orchestrator
from botcheck.poller import QueuePoller


async def cmd_poll(args) -> int:
    settings = load_settings()
    init_schema(settings.db_path)
    orchestrator = build_orchestrator(settings)
    poller = QueuePoller(
        orchestrator.store,
        orchestrator,
        interval_seconds=args.interval if args.interval is not None else settings.poll_interval_seconds,
        batch_size=args.batch_size if args.batch_size is not None else settings.poll_batch_size,
    )
    try:
        await poller.run_forever()
    finally:
        await orchestrator.aclose()
    return 0


async def cmd_process(args) -> int:
    settings = load_settings()
    init_schema(settings.db_path)
    orchestrator = build_orchestrator(settings)
    try:
        outcome = await orchestrator.process_request(args.request_id)
    finally:
        await orchestrator.aclose()

    print(f"{args.request_id}: {outcome.value}")
    if outcome is ProcessOutcome.DONE:
        result = orchestrator.store.get_result(args.request_id)
        if result is not None:
            print(
                f"  user_score={result.user_score:.3f} "
                f"confidence={result.overall_confidence:.3f} "
                f"analyzed={result.analyzed_count}/{result.total_count} "
                f"stages={result.stage_counts}"
            )
    elif outcome is ProcessOutcome.ERROR:
        request = orchestrator.store.get_request(args.request_id)
        if request is not None and request.error_message:
            print(f"  error: {request.error_message}")

    return 0 if outcome in (ProcessOutcome.DONE, ProcessOutcome.SKIPPED) else 1


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Bot-likelihood analysis worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s poll
  %(prog)s poll --interval 10
  %(prog)s process 3f2a9c0e5b7d4e1f
        """)
    subparsers = parser.add_subparsers(dest="command", required=True)

    poll = subparsers.add_parser("poll", help="Poll the queue until interrupted")
    poll.add_argument("--interval", type=float, help="Seconds between polls (default: POLL_INTERVAL_SECONDS or 5)")
    poll.add_argument("--batch-size", type=int, help="Requests per poll (default: POLL_BATCH_SIZE or 5)")

    process = subparsers.add_parser("process", help="Process one request and exit")
    process.add_argument("request_id", help="ID of a queued analysis request")

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(log_dir="logs", log_filename="worker.log")
    logger = get_logger(__name__)

    command = cmd_poll if args.command == "poll" else cmd_process
    try:
        exit_code = asyncio.run(command(args))
    except KeyboardInterrupt:
        logger.info("worker_interrupted")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
