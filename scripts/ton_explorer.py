"""
TON transaction export entrypoint.

Usage:
    python -m scripts.ton_explorer <wallet address>
"""

from __future__ import annotations

import argparse

import requests

from scripts.worker_config import CSV_DIR, LOG_DIR, ensure_directories
from utils.logger import configure_file_logging, get_logger
from workers.ton_explorer import (
    DEFAULT_TRANSACTION_LIMIT,
    export_transactions,
    fetch_transactions,
)

logger = get_logger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Export recent TON wallet transactions to CSV_Files."
    )
    parser.add_argument("address", help="TON wallet address (workchain 0).")
    parser.add_argument("--limit", type=int, default=DEFAULT_TRANSACTION_LIMIT)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    ensure_directories(CSV_DIR, LOG_DIR)
    configure_file_logging(LOG_DIR)

    try:
        transactions = fetch_transactions(args.address, limit=args.limit)
    except (requests.RequestException, ValueError) as exc:
        logger.error(f"API request failed: {exc}")
        return 1

    export_transactions(args.address, transactions, CSV_DIR)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
