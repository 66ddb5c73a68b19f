"""
Report N/A backfill entrypoint.

캐시에 가격이 생긴 날짜의 보고서 N/A 셀을 채운다.
"""

from __future__ import annotations

import argparse

from scripts.worker_config import CACHE_DIR, LOG_DIR, REPORT_DIR, ensure_directories
from utils.chain_registry import profile_for_chain
from utils.config import BACKLOG_CHAIN, FMV_CURRENCY
from utils.logger import configure_file_logging, get_logger
from utils.rate_store import RateStoreRepository
from workers.fmv_backlog import fill_report_values, find_latest_report_files

logger = get_logger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replace N/A FMV values in reports with cached rates."
    )
    parser.add_argument("--chain", default=BACKLOG_CHAIN)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    try:
        profile = profile_for_chain(args.chain, currency=FMV_CURRENCY)
    except ValueError as exc:
        logger.error(f"invalid argument: {exc}")
        return 2

    ensure_directories(LOG_DIR)
    configure_file_logging(LOG_DIR)

    repo = RateStoreRepository(CACHE_DIR)
    if not repo.rates_path(profile).exists():
        logger.error(f"{repo.rates_path(profile).name} not found!")
        return 1
    if not REPORT_DIR.is_dir():
        logger.error(f"Report folder '{REPORT_DIR}' not found!")
        return 1

    fill_report_values(
        find_latest_report_files(REPORT_DIR),
        repo.load(profile).rates,
        currency=profile.currency,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
