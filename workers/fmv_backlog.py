"""
Missing FMV backlog domain logic.

Why this module exists:
- 보고서(`cra_fmv_*.csv`)의 "N/A" 가격 셀 -> backlog 파일 -> backlog 조회 -> 보고서 N/A 채우기
  순환을 requester run과 독립적으로 돌리기 위함이다.
- backlog 조회도 requester와 같은 PriceFetcher/RateStoreRepository를 써서
  rate limit, 재시도, 체인 lock 규칙을 공유한다.

Source code examples:
- reconcile: `2023-06-15`의 CAD Value가 N/A이고 rates에 없음 -> backlog에 추가
- reconcile: backlog의 `2023-06-15`가 이제 rates에 있음 -> backlog에서 제거
- fill: N/A 셀을 캐시 가격(소수 4자리)으로 교체하고 파일을 원자적으로 다시 쓴다
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Iterable, Mapping

from utils.config import FMV_CURRENCY
from utils.date_extraction import parse_transaction_date, read_transaction_rows
from utils.file_io import atomic_write_text
from utils.fmv_contracts import (
    ChainProfile,
    FetchHaltedError,
    HistoryWindow,
    format_calendar_date,
    parse_calendar_date,
)
from utils.logger import get_logger
from utils.missing_backlog import MissingBacklog
from utils.rate_store import RateStoreRepository
from workers.price_fetch import PriceFetcher

logger = get_logger(__name__)

REPORT_FILE_PATTERN = re.compile(r"cra_fmv_(.+?)_(\d{8}_\d{6})\.csv$")
REPORT_DATE_COLUMN = "Date (UTC)"
NA_SENTINEL = "N/A"
REPORT_VALUE_QUANTUM = Decimal("0.0001")


def value_column(currency: str = FMV_CURRENCY) -> str:
    return f"{currency.upper()} Value"


def is_na_value(raw) -> bool:
    return str(raw if raw is not None else "").strip().upper() == NA_SENTINEL


def format_report_value(price: Decimal) -> str:
    """
    가격을 소수 4자리로 반올림한 보고서 문자열. `3.0`, `2.1235` 형태.
    """
    text = format(price.quantize(REPORT_VALUE_QUANTUM, rounding=ROUND_HALF_UP), "f")
    if "." in text:
        text = text.rstrip("0")
        if text.endswith("."):
            text = f"{text}0"
    return text


def find_latest_report_files(report_dir: str | Path) -> list[Path]:
    """
    wallet별로 파일명에 박힌 timestamp가 가장 최신인 보고서만 고른다.

    Called from:
    - `scripts.find_missing_fmv`
    - `scripts.fill_report_fmv`
    """
    directory = Path(report_dir)
    if not directory.is_dir():
        logger.error(f"Report folder not found: {directory}")
        return []

    latest: dict[str, tuple[str, Path]] = {}
    for path in directory.glob("cra_fmv_*_*.csv"):
        match = REPORT_FILE_PATTERN.search(path.name)
        if not match:
            continue
        wallet_id, timestamp = match.group(1), match.group(2)
        current = latest.get(wallet_id)
        if current is None or timestamp > current[0]:
            latest[wallet_id] = (timestamp, path)
    return [latest[wallet_id][1] for wallet_id in sorted(latest)]


@dataclass
class ReconcileResult:
    files_checked: int = 0
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    backlog: list[str] = field(default_factory=list)


def reconcile_backlog(
    report_files: Iterable[str | Path],
    rates: Mapping[date, Decimal],
    backlog: MissingBacklog,
    *,
    currency: str = FMV_CURRENCY,
) -> ReconcileResult:
    """
    보고서의 N/A 셀 날짜를 backlog에 더하고, 이미 가격이 생긴 backlog 날짜는 뺀다.

    Note:
    - history window와 무관하게 추가한다. 오래된 날짜는 backlog run이 skip하며 남겨 둔다.
    - backlog가 비면 MissingBacklog.save가 파일을 지운다.
    """
    result = ReconcileResult()
    existing = backlog.load()
    entries = set(existing)
    column = value_column(currency)

    for report_path in report_files:
        path = Path(report_path)
        result.files_checked += 1
        logger.info(f"Processing latest wallet file: {path.name}")
        try:
            frame = read_transaction_rows(path)
        except (OSError, ValueError) as e:
            logger.error(f"Error processing {path.name}: {e}")
            continue

        if REPORT_DATE_COLUMN not in frame.columns or column not in frame.columns:
            logger.warning(f"Required columns not found in {path.name}")
            continue

        for raw_date, raw_value in zip(frame[REPORT_DATE_COLUMN], frame[column]):
            if not is_na_value(raw_value):
                continue
            parsed = parse_transaction_date(raw_date)
            if not parsed.found:
                continue
            key = format_calendar_date(parsed.value)
            if parsed.value in rates or key in entries:
                continue
            entries.add(key)
            result.added.append(key)
            logger.info(f"Found missing FMV for {key}")

    for key in sorted(entries):
        day = parse_calendar_date(key)
        if day is not None and day in rates:
            entries.discard(key)
            result.removed.append(key)
            logger.info(f"Rate now available for {key}; removing from backlog")

    result.backlog = backlog.save(entries)
    if result.backlog:
        logger.info(
            f"{len(result.backlog)} missing FMV dates saved to {backlog.path.name}"
        )
    elif not existing and not result.added:
        logger.info("No missing FMV dates found in any report files.")
    return result


@dataclass
class BacklogFetchResult:
    fetched: list[str] = field(default_factory=list)
    already_cached: list[str] = field(default_factory=list)
    skipped_too_old: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)


def _persist_backlog_results(
    store_repo: RateStoreRepository,
    profile: ChainProfile,
    resolved: list[date],
    new_rates: dict[date, Decimal],
) -> None:
    with store_repo.locked(profile):
        store = store_repo.load(profile)
        # 가격을 찾은 날짜는 missing 쪽 entry를 먼저 지워야 merge가 rate를 넣는다.
        store_repo.clear_missing(store, resolved)
        store_repo.merge(store, new_rates, {})
        store_repo.persist(store, profile)


def run_backlog_fetch(
    *,
    fetcher: PriceFetcher,
    store_repo: RateStoreRepository,
    backlog: MissingBacklog,
    profile: ChainProfile,
    window: HistoryWindow,
) -> BacklogFetchResult:
    """
    backlog 날짜를 순서대로 조회해 rate store에 반영하고, 남은 날짜만 backlog에 다시 쓴다.

    Called from:
    - `scripts.fmv_worker.run_backlog`

    Raises:
      - FetchHaltedError: 그때까지 찾은 가격과 backlog를 저장한 뒤 그대로 올린다.
    """
    result = BacklogFetchResult()
    entries = backlog.load()
    if not entries:
        logger.info("No missing dates in backlog. Nothing to do.")
        return result

    store = store_repo.load(profile)
    new_rates: dict[date, Decimal] = {}
    resolved: list[date] = []
    halted: FetchHaltedError | None = None

    for key in entries:
        day = parse_calendar_date(key)
        if day is None:
            continue
        if day in store.rates:
            resolved.append(day)
            result.already_cached.append(key)
            continue
        if not window.is_within(day):
            logger.info(
                f"Skipping date older than {window.max_history_days} days: {key}"
            )
            result.skipped_too_old.append(key)
            continue

        try:
            price_result = fetcher.fetch(profile.feed_id, day, profile.currency)
        except FetchHaltedError as e:
            halted = e
            break

        if price_result.is_found:
            new_rates[day] = price_result.price
            resolved.append(day)
            result.fetched.append(key)
        else:
            logger.warning(
                f"[{profile.name}] price not available for {key} "
                f"({price_result.outcome.value})"
            )
            result.failed.append(key)

    if resolved:
        _persist_backlog_results(store_repo, profile, resolved, new_rates)
        if new_rates:
            logger.info(
                f"[{profile.name}] Updated {len(new_rates)} FMV entries in "
                f"{store_repo.rates_path(profile).name}"
            )

    resolved_keys = {format_calendar_date(day) for day in resolved}
    result.remaining = backlog.save(key for key in entries if key not in resolved_keys)
    if result.remaining:
        logger.info(
            f"{len(result.remaining)} dates remain unresolved in {backlog.path.name}"
        )

    logger.info(
        f"Backlog summary: fetched={len(result.fetched)}, "
        f"already cached={len(result.already_cached)}, "
        f"skipped (older than {window.max_history_days} days)={len(result.skipped_too_old)}, "
        f"failed={len(result.failed)}"
    )
    if halted is not None:
        raise halted
    return result


@dataclass
class ReportFillResult:
    files_checked: int = 0
    files_updated: int = 0
    na_found: int = 0
    values_updated: int = 0


def fill_report_values(
    report_files: Iterable[str | Path],
    rates: Mapping[date, Decimal],
    *,
    currency: str = FMV_CURRENCY,
) -> ReportFillResult:
    """
    보고서 N/A 가격 셀을 캐시 가격으로 채운다. 바뀐 파일만 원자적으로 다시 쓴다.
    """
    result = ReportFillResult()
    column = value_column(currency)

    for report_path in report_files:
        path = Path(report_path)
        result.files_checked += 1
        logger.info(f"Processing: {path.name}")
        try:
            frame = read_transaction_rows(path)
        except (OSError, ValueError) as e:
            logger.error(f"Error processing {path.name}: {e}")
            continue

        if REPORT_DATE_COLUMN not in frame.columns or column not in frame.columns:
            logger.warning(f"Required columns not found in {path.name}")
            continue

        file_na = 0
        file_updates = 0
        for index, raw_date, raw_value in zip(
            frame.index, frame[REPORT_DATE_COLUMN], frame[column]
        ):
            if not is_na_value(raw_value):
                continue
            file_na += 1
            parsed = parse_transaction_date(raw_date)
            if not parsed.found:
                continue
            price = rates.get(parsed.value)
            if price is None:
                logger.warning(f"No FMV data for {parsed.value.isoformat()}")
                continue
            frame.at[index, column] = format_report_value(price)
            file_updates += 1

        result.na_found += file_na
        if file_updates:
            atomic_write_text(path, frame.to_csv(index=False))
            result.files_updated += 1
            result.values_updated += file_updates
            logger.info(f"Updated {file_updates}/{file_na} N/A values in {path.name}")
        elif file_na:
            logger.warning(
                f"Found {file_na} N/A values in {path.name} but no matching FMV data"
            )

    logger.info(
        f"Update summary: files checked={result.files_checked}, "
        f"N/A found={result.na_found}, files updated={result.files_updated}, "
        f"values updated={result.values_updated}"
    )
    if result.na_found and not result.values_updated:
        logger.warning(
            f"Found {result.na_found} N/A values but couldn't update any. "
            "Check that the rate cache covers these dates."
        )
    return result
