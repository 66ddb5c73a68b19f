"""
Historical FMV worker entrypoint.

Why this file exists:
- 실행 모드 선택(requester/backlog), 경로, 알림, run summary 저장 같은
  운영 제어면만 여기 두고, 실제 처리 규칙은 workers/*에 둔다.
- 모든 sleep(rate limiter, backoff)을 같은 halt 이벤트에 묶어
  인증 fatal 시 대기 중인 worker까지 즉시 멈추게 한다.

Exit codes:
- 0: 완료
- 1: halt(인증 fatal) 또는 일부 파일 실패
- 2: 잘못된 인자
"""

from __future__ import annotations

import argparse
import threading
from datetime import date, datetime, timezone

import requests

from scripts.worker_config import (
    ALERT_TITLE,
    BACKLOG_FILE,
    CACHE_DIR,
    CSV_DIR,
    DISCORD_WEBHOOK_URL,
    LOG_DIR,
    RUN_SUMMARY_FILE,
    ensure_directories,
)
from utils.chain_registry import profile_for_chain
from utils.config import (
    BACKLOG_CHAIN,
    FMV_CURRENCY,
    MAX_HISTORY_DAYS,
    MAX_WORKERS,
    MIN_API_INTERVAL_SECONDS,
    VERBOSE_LOGGING,
)
from utils.file_io import atomic_write_json
from utils.fmv_contracts import FetchHaltedError, FmvRunSummary, HistoryWindow
from utils.logger import configure_file_logging, get_logger, set_verbose
from utils.missing_backlog import MissingBacklog
from utils.processed_markers import ProcessedFileMarkers
from utils.rate_limiter import RateLimiter
from utils.rate_store import RateStoreRepository
from workers.fmv_backlog import BacklogFetchResult, run_backlog_fetch
from workers.fmv_ingest import FmvIngestCoordinator, discover_input_files
from workers.price_fetch import PriceFetcher

logger = get_logger(__name__)

VALID_MODES = ("requester", "backlog")


def send_alert(message):
    """
    디스코드 webhook으로 알림 전송. URL이 없으면 경고 로그만 남긴다.
    """
    if not DISCORD_WEBHOOK_URL:
        logger.warning(f"[Alert Ignored] {message}")
        return

    try:
        payload = {"content": f"**{ALERT_TITLE}**\n```{message}```"}
        requests.post(DISCORD_WEBHOOK_URL, json=payload, timeout=5)
    except requests.RequestException as e:
        logger.error(f"Failed to send alert: {e}")


def parse_today(raw: str | None) -> date:
    if not raw:
        return date.today()
    try:
        return datetime.strptime(raw.strip(), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError(f"--today must be YYYY-MM-DD, got {raw!r}") from exc


def build_fetch_stack(
    halt_event: threading.Event | None = None, *, session=None
) -> PriceFetcher:
    """
    process 전역 RateLimiter 1개와 PriceFetcher를 묶어 만든다.

    Called from:
    - `run_requester`
    - `run_backlog`
    """
    event = halt_event or threading.Event()
    limiter = RateLimiter(MIN_API_INTERVAL_SECONDS, sleep=event.wait)
    return PriceFetcher(rate_limiter=limiter, session=session, halt_event=event)


def write_run_summary(summary: FmvRunSummary, *, today: date, mode: str) -> None:
    payload = summary.to_payload()
    payload["mode"] = mode
    payload["today"] = today.isoformat()
    payload["generated_at"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    atomic_write_json(RUN_SUMMARY_FILE, payload, indent=2)


def run_requester(
    *,
    today: date,
    max_workers: int = MAX_WORKERS,
    retry_exhausted: bool = False,
    fetcher: PriceFetcher | None = None,
) -> FmvRunSummary:
    """
    CSV_Files의 미처리 입력 파일 전체에 대해 FMV gap을 채운다.
    """
    coordinator = FmvIngestCoordinator(
        fetcher=fetcher or build_fetch_stack(),
        store_repo=RateStoreRepository(CACHE_DIR),
        markers=ProcessedFileMarkers(CACHE_DIR),
        window=HistoryWindow(today=today, max_history_days=MAX_HISTORY_DAYS),
        max_workers=max_workers,
        currency=FMV_CURRENCY,
        retry_exhausted=retry_exhausted,
    )
    files = discover_input_files(CSV_DIR)
    logger.info(
        f"Requester run: {len(files)} input files, workers={max_workers}, "
        f"currency={FMV_CURRENCY}, today={today.isoformat()}"
    )
    summary = coordinator.run(files)
    write_run_summary(summary, today=today, mode="requester")
    return summary


def run_backlog(
    *,
    today: date,
    chain: str = BACKLOG_CHAIN,
    fetcher: PriceFetcher | None = None,
) -> BacklogFetchResult:
    profile = profile_for_chain(chain, currency=FMV_CURRENCY)
    logger.info(f"[{profile.name}] Backlog run from {BACKLOG_FILE.name}")
    return run_backlog_fetch(
        fetcher=fetcher or build_fetch_stack(),
        store_repo=RateStoreRepository(CACHE_DIR),
        backlog=MissingBacklog(BACKLOG_FILE),
        profile=profile,
        window=HistoryWindow(today=today, max_history_days=MAX_HISTORY_DAYS),
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fetch and cache historical FMV rates for transaction exports."
    )
    parser.add_argument(
        "--mode",
        choices=VALID_MODES,
        default="requester",
        help="requester: scan CSV_Files. backlog: retry dates in the missing backlog.",
    )
    parser.add_argument(
        "--today",
        default=None,
        help="Override current date (YYYY-MM-DD) for the history window.",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=MAX_WORKERS,
        help=f"Worker pool size (default: {MAX_WORKERS}).",
    )
    parser.add_argument(
        "--retry-exhausted",
        action="store_true",
        help="Clear 'exhausted' markers for each file's dates before computing gaps.",
    )
    parser.add_argument(
        "--chain",
        default=BACKLOG_CHAIN,
        help=f"Chain for backlog mode (default: {BACKLOG_CHAIN}).",
    )
    parser.add_argument("--verbose", action="store_true", default=VERBOSE_LOGGING)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    try:
        today = parse_today(args.today)
        if args.max_workers < 1:
            raise ValueError("--max-workers must be at least 1")
        if args.mode == "backlog":
            profile_for_chain(args.chain)
    except ValueError as exc:
        logger.error(f"invalid argument: {exc}")
        return 2

    ensure_directories()
    set_verbose(args.verbose)
    log_path = configure_file_logging(LOG_DIR, today)
    logger.info(f"[{args.mode}] start (log={log_path.name})")

    try:
        if args.mode == "backlog":
            result = run_backlog(today=today, chain=args.chain)
            send_alert(
                f"FMV backlog run completed: fetched={len(result.fetched)}, "
                f"remaining={len(result.remaining)}"
            )
            return 0

        summary = run_requester(
            today=today,
            max_workers=args.max_workers,
            retry_exhausted=args.retry_exhausted,
        )
    except FetchHaltedError as exc:
        logger.error(f"[{args.mode}] halted: {exc}")
        send_alert(f"FMV {args.mode} run halted: {exc}")
        return 1

    send_alert(
        f"FMV requester run completed: {summary.files_completed} files, "
        f"{summary.files_failed} failed, {summary.outbound_calls} API calls"
    )
    if summary.files_failed > 0:
        logger.warning("[requester] completed_with_partial_failures")
        return 1
    logger.info("[requester] completed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
