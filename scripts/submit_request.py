#!/usr/bin/env python3
"""Queue an analysis request.

Usage:
    python scripts/submit_request.py spez
    python scripts/submit_request.py spez --max-items 50 --include-parent
    python scripts/submit_request.py spez --db data/test.db
"""

import argparse
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
from botcheck.storage import RequestStore


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Queue a bot-likelihood analysis request")
    parser.add_argument("user_id", help="Username on the platform")
    parser.add_argument("--platform", default="reddit", help="Platform identifier (default: reddit)")
    parser.add_argument("--max-items", type=int, help="Maximum items to analyze (1-100, default 100)")
    parser.add_argument("--include-parent", action="store_true",
                        help="Allow parent-context escalation for uncertain items")
    parser.add_argument("--db", default=os.environ.get("DB_PATH", "./data/botcheck.db"),
                        help="Database path (default: DB_PATH or ./data/botcheck.db)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    init_schema(args.db)

    store = RequestStore(args.db)
    try:
        request_id = store.create_request(
            platform=args.platform,
            user_id=args.user_id,
            max_items=args.max_items,
            include_parent=args.include_parent,
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(request_id)


if __name__ == "__main__":
    main()
