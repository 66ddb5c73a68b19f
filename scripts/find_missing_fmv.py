"""
Missing FMV backlog reconciler entrypoint.

보고서 폴더의 최신 `cra_fmv_*.csv`에서 N/A 가격 날짜를 모아 backlog 파일을 갱신한다.
"""

from __future__ import annotations

import argparse

from scripts.worker_config import (
    BACKLOG_FILE,
    CACHE_DIR,
    LOG_DIR,
    REPORT_DIR,
    ensure_directories,
)
from utils.chain_registry import profile_for_chain
from utils.config import BACKLOG_CHAIN, FMV_CURRENCY
from utils.logger import configure_file_logging, get_logger
from utils.missing_backlog import MissingBacklog
from utils.rate_store import RateStoreRepository
from workers.fmv_backlog import find_latest_report_files, reconcile_backlog

logger = get_logger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Collect N/A FMV dates from reports into the missing backlog."
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

    if not REPORT_DIR.is_dir():
        logger.error(f"Report folder '{REPORT_DIR}' not found!")
        return 1

    store = RateStoreRepository(CACHE_DIR).load(profile)
    result = reconcile_backlog(
        find_latest_report_files(REPORT_DIR),
        store.rates,
        MissingBacklog(BACKLOG_FILE),
        currency=profile.currency,
    )
    logger.info(
        f"Reconcile summary: files={result.files_checked}, added={len(result.added)}, "
        f"removed={len(result.removed)}, backlog={len(result.backlog)}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
