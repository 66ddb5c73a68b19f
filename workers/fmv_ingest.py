"""
FMV ingest domain logic (requester run).

Why this module exists:
- `scripts.fmv_worker`는 경로/CLI/알림만 다루고, 파일 1개를
  "이미 처리됨 확인 -> 체인 판정 -> 날짜 추출 -> gap 계산 -> 조회 -> 저장 -> marker"
  순서로 끝까지 처리하는 규칙은 여기로 모은다.
- 파일 단위 실패는 해당 파일만 unmarked로 남기고 run을 계속한다.
  단, halt(인증 fatal)는 파일 경계에서 삼키지 않는다.
"""

from __future__ import annotations

import threading
from concurrent.futures import Executor, ThreadPoolExecutor, as_completed
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterable

from utils.chain_registry import detect_chain
from utils.config import FMV_CURRENCY, MAX_WORKERS
from utils.date_extraction import extract_transaction_dates
from utils.fmv_contracts import (
    EXHAUSTED_MARKER,
    MISSING_MARKER,
    ChainProfile,
    FetchHaltedError,
    FileOutcome,
    FileProcessingState,
    FmvRunSummary,
    HistoryWindow,
    PriceResult,
    SkipReason,
)
from utils.logger import get_logger
from utils.processed_markers import ProcessedFileMarkers, file_content_digest
from utils.rate_store import RateStoreRepository
from workers.inflight import InFlightDeduplicator
from workers.price_fetch import PriceFetcher

logger = get_logger(__name__)


def discover_input_files(csv_dir: str | Path) -> list[Path]:
    """
    입력 디렉터리의 `*.csv`를 이름순으로 반환한다. 디렉터리가 없으면 빈 목록.
    """
    directory = Path(csv_dir)
    if not directory.is_dir():
        logger.warning(f"Input directory not found: {directory}")
        return []
    return sorted(path for path in directory.glob("*.csv") if path.is_file())


class FmvIngestCoordinator:
    def __init__(
        self,
        *,
        fetcher: PriceFetcher,
        store_repo: RateStoreRepository,
        markers: ProcessedFileMarkers,
        window: HistoryWindow,
        deduplicator: InFlightDeduplicator | None = None,
        max_workers: int = MAX_WORKERS,
        currency: str = FMV_CURRENCY,
        retry_exhausted: bool = False,
    ):
        """
        Called from:
        - `scripts.fmv_worker.run_requester`

        Note:
        - file pool과 date pool은 같은 크기를 쓴다. file worker는 date future를
          기다리기만 하므로 두 pool을 분리해야 서로를 굶기지 않는다.
        """
        self._fetcher = fetcher
        self._store_repo = store_repo
        self._markers = markers
        self._window = window
        self._dedup = deduplicator or InFlightDeduplicator()
        self._max_workers = max(1, int(max_workers))
        self._currency = currency
        self._retry_exhausted = retry_exhausted
        self._halt_event: threading.Event = fetcher.halt_event
        self._date_pool: Executor | None = None

    @property
    def deduplicator(self) -> InFlightDeduplicator:
        return self._dedup

    def _fetch_one(self, profile: ChainProfile, day: date) -> PriceResult:
        key = (profile.feed_id, day, profile.currency)
        return self._dedup.resolve(
            key, lambda: self._fetcher.fetch(profile.feed_id, day, profile.currency)
        )

    def _collect_fetches(
        self,
        pool: Executor,
        profile: ChainProfile,
        days: list[date],
        new_rates: dict[date, Decimal],
        new_missing: dict[date, str],
    ) -> None:
        futures = {pool.submit(self._fetch_one, profile, day): day for day in days}
        try:
            for future in as_completed(futures):
                day = futures[future]
                result = future.result()
                if result.is_found:
                    new_rates[day] = result.price
                else:
                    new_missing[day] = result.missing_marker
        except FetchHaltedError:
            for future in futures:
                future.cancel()
            raise

    def _fetch_gap(
        self,
        profile: ChainProfile,
        days: list[date],
        new_rates: dict[date, Decimal],
        new_missing: dict[date, str],
    ) -> None:
        if not days:
            return
        if self._date_pool is not None:
            self._collect_fetches(self._date_pool, profile, days, new_rates, new_missing)
            return
        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="fmv-date"
        ) as pool:
            self._collect_fetches(pool, profile, days, new_rates, new_missing)

    def _persist_results(
        self,
        profile: ChainProfile,
        new_rates: dict[date, Decimal],
        new_missing: dict[date, str],
    ) -> tuple[int, int]:
        # 같은 체인의 다른 파일이 먼저 저장했을 수 있으므로 lock 안에서 다시 읽는다.
        with self._store_repo.locked(profile):
            latest = self._store_repo.load(profile)
            added = self._store_repo.merge(latest, new_rates, new_missing)
            self._store_repo.persist(latest, profile)
        return added

    def _clear_exhausted(self, profile: ChainProfile, dates: list[date]) -> None:
        with self._store_repo.locked(profile):
            store = self._store_repo.load(profile)
            cleared = self._store_repo.clear_missing(
                store, dates, markers={EXHAUSTED_MARKER}
            )
            if cleared:
                self._store_repo.persist(store, profile)
        if cleared:
            logger.info(
                f"[{profile.name}] cleared {len(cleared)} exhausted markers for retry"
            )

    def process_file(self, path: str | Path) -> FileOutcome:
        """
        입력 파일 1개를 terminal 상태까지 처리한다.

        Returns:
          - FileOutcome (marked_processed / skipped / failed)
        Raises:
          - FetchHaltedError: halt 이후에는 파일 경계에서 삼키지 않는다.
        """
        file_path = Path(path)
        outcome = FileOutcome(path=file_path)
        new_rates: dict[date, Decimal] = {}
        new_missing: dict[date, str] = {}

        try:
            digest = file_content_digest(file_path)
            if self._markers.is_processed(digest):
                logger.info(f"[{file_path.name}] Skipping already processed file")
                outcome.state = FileProcessingState.SKIPPED
                outcome.skip_reason = SkipReason.ALREADY_PROCESSED
                return outcome

            profile = detect_chain(file_path.name, currency=self._currency)
            if profile is None:
                outcome.state = FileProcessingState.SKIPPED
                outcome.skip_reason = SkipReason.UNDETECTED_CHAIN
                return outcome
            outcome.chain = profile
            outcome.state = FileProcessingState.CLASSIFIED

            dates = extract_transaction_dates(file_path)
            if self._retry_exhausted and dates:
                self._clear_exhausted(profile, dates)

            store = self._store_repo.load(profile)
            gap = self._store_repo.partition(store, dates, self._window)
            outcome.cached = len(gap.cached)
            outcome.known_missing = len(gap.known_missing)
            outcome.state = FileProcessingState.GAP_COMPUTED
            logger.info(
                f"[{profile.name}] {file_path.name}: {len(gap.cached)} cached, "
                f"{len(gap.known_missing)} known missing, {len(gap.to_fetch)} to fetch"
                + (
                    f", {gap.too_old} older than {self._window.max_history_days} days"
                    if gap.too_old
                    else ""
                )
            )

            outcome.state = FileProcessingState.FETCHING
            try:
                self._fetch_gap(profile, gap.to_fetch, new_rates, new_missing)
            except FetchHaltedError:
                if new_rates or new_missing:
                    self._persist_results(profile, new_rates, new_missing)
                raise

            if new_rates or new_missing:
                self._persist_results(profile, new_rates, new_missing)
            outcome.rates_found = len(new_rates)
            outcome.missing_marked = sum(
                1 for marker in new_missing.values() if marker == MISSING_MARKER
            )
            outcome.exhausted_marked = sum(
                1 for marker in new_missing.values() if marker == EXHAUSTED_MARKER
            )
            outcome.state = FileProcessingState.PERSISTED

            self._markers.mark_processed(digest)
            outcome.state = FileProcessingState.MARKED_PROCESSED
            logger.info(
                f"[{profile.name}] {file_path.name}: done "
                f"({outcome.rates_found} new rates, {outcome.missing_marked} missing, "
                f"{outcome.exhausted_marked} exhausted)"
            )
            return outcome

        except FetchHaltedError:
            raise
        except Exception as e:
            outcome.failed_at = outcome.state
            outcome.state = FileProcessingState.FAILED
            outcome.error = str(e)
            logger.error(
                f"[{file_path.name}] processing failed at {outcome.failed_at.value}: {e}"
            )
            return outcome

    def run(self, files: Iterable[str | Path]) -> FmvRunSummary:
        """
        파일들을 file pool에 분배하고 outcome을 main thread에서 합산한다.

        Raises:
          - FetchHaltedError: 대기 중인 작업을 취소한 뒤 그대로 올린다.
        """
        paths = [Path(path) for path in files]
        summary = FmvRunSummary()
        if not paths:
            logger.info("No input CSV files found.")
            return summary

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="fmv-date"
        ) as date_pool:
            self._date_pool = date_pool
            try:
                with ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="fmv-file"
                ) as file_pool:
                    futures = {
                        file_pool.submit(self.process_file, path): path
                        for path in paths
                    }
                    try:
                        for future in as_completed(futures):
                            summary.record(future.result())
                    except FetchHaltedError:
                        self._halt_event.set()
                        file_pool.shutdown(wait=False, cancel_futures=True)
                        date_pool.shutdown(wait=False, cancel_futures=True)
                        raise
            finally:
                self._date_pool = None

        summary.outbound_calls = self._fetcher.outbound_calls
        summary.dedup_hits = self._dedup.hits
        log_run_summary(summary)
        return summary


def log_run_summary(summary: FmvRunSummary) -> None:
    for name, counters in sorted(summary.chains.items()):
        logger.info(
            f"[{name}] Summary: {counters.rates} rates found, "
            f"{counters.missing} missing, {counters.exhausted} exhausted"
        )
    logger.info(
        f"Files: {summary.files_completed} completed, {summary.files_skipped} skipped, "
        f"{summary.files_failed} failed "
        f"(outbound calls={summary.outbound_calls}, dedup hits={summary.dedup_hits})"
    )
