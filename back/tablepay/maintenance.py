#!/usr/bin/env python3
"""
Maintenance commands.

Usage:
    python -m tablepay.maintenance prune-attempts            # retention from settings
    python -m tablepay.maintenance prune-attempts --days 1
"""
import argparse
import logging
import sys
from datetime import datetime, timedelta, timezone

from sqlmodel import Session

from tablepay.db import engine
from tablepay.rate_limiter import prune_attempts
from tablepay.settings import settings

logger = logging.getLogger(__name__)


def prune_checkout_attempts(days: int) -> int:
    before = datetime.now(timezone.utc) - timedelta(days=days)
    with Session(engine) as session:
        removed = prune_attempts(session, before)
    logger.info(f"Removed {removed} checkout attempt(s) older than {before.isoformat()}")
    return removed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Payment service maintenance")
    subparsers = parser.add_subparsers(dest="command", required=True)

    prune = subparsers.add_parser("prune-attempts", help="Delete old rate-limit attempts")
    prune.add_argument(
        "--days",
        type=int,
        default=settings.checkout_attempt_retention_days,
        help="Keep attempts newer than this many days",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    if args.command == "prune-attempts":
        if args.days < 1:
            parser.error("--days must be at least 1")
        prune_checkout_attempts(args.days)
    return 0


if __name__ == "__main__":
    sys.exit(main())
