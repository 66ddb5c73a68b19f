"""
Transaction date extraction.

Why this module exists:
- 지갑/익스플로러마다 날짜 컬럼 이름과 포맷(epoch, ISO 8601, 자유 형식)이 달라
  fetch 대상 날짜 계산 전에 단일 규칙으로 정규화해야 한다.
- 파싱 실패는 예외가 아니라 `DateParseResult`로 돌려줘 행 단위로만 버린다.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from pathlib import Path

import pandas as pd

from utils.fmv_contracts import DateParseResult, DateParseStatus
from utils.logger import get_logger

logger = get_logger(__name__)

# 우선순위 순서. 행마다 처음으로 비어 있지 않은 컬럼 값을 쓴다.
DATE_COLUMNS = ("Date (UTC)", "DateTime (UTC)", "Block Time", "Human Time")

_EPOCH_PATTERN = re.compile(r"^\d+$")


def parse_transaction_date(value) -> DateParseResult:
    """
    단일 셀 값을 calendar date로 파싱한다.

    순서:
    1) 숫자만 -> unix epoch seconds (UTC 기준 날짜)
    2) ISO 8601 -> 표기된 날짜 그대로(시간/offset 무시)
    3) 자유 형식 -> pandas 파서
    """
    if value is None:
        return DateParseResult(status=DateParseStatus.EMPTY)
    if isinstance(value, datetime):
        return DateParseResult(status=DateParseStatus.FOUND, value=value.date())
    if isinstance(value, date):
        return DateParseResult(status=DateParseStatus.FOUND, value=value)

    text = str(value).strip()
    if not text:
        return DateParseResult(status=DateParseStatus.EMPTY, raw=text)

    if _EPOCH_PATTERN.fullmatch(text):
        try:
            parsed = datetime.fromtimestamp(int(text), tz=timezone.utc)
            return DateParseResult(
                status=DateParseStatus.FOUND, value=parsed.date(), raw=text
            )
        except (OverflowError, OSError, ValueError):
            pass

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return DateParseResult(
            status=DateParseStatus.FOUND, value=parsed.date(), raw=text
        )
    except ValueError:
        pass

    try:
        timestamp = pd.to_datetime(text)
    except (ValueError, TypeError, OverflowError):
        logger.warning(f"Failed to parse date: {text}")
        return DateParseResult(status=DateParseStatus.INVALID, raw=text)

    if pd.isna(timestamp):
        return DateParseResult(status=DateParseStatus.INVALID, raw=text)
    return DateParseResult(
        status=DateParseStatus.FOUND, value=timestamp.date(), raw=text
    )


def pick_row_date_value(row: dict, columns: tuple[str, ...] = DATE_COLUMNS):
    for column in columns:
        raw = row.get(column)
        if raw is None:
            continue
        if isinstance(raw, str) and not raw.strip():
            continue
        return raw
    return None


def read_transaction_rows(path: str | Path) -> pd.DataFrame:
    # 모든 셀을 문자열로 읽어 "0012" 같은 값이 숫자로 바뀌지 않게 한다.
    return pd.read_csv(path, dtype=str, keep_default_na=False)


def extract_transaction_dates(path: str | Path) -> list[date]:
    """
    CSV 파일에서 가격이 필요한 distinct date 목록을 등장 순서대로 반환한다.

    Called from:
    - `workers.fmv_ingest.FmvIngestCoordinator.process_file`

    Note:
    - 날짜 컬럼이 하나도 없거나 파싱 불가한 행은 fetch 계산에서만 제외한다.
    """
    try:
        frame = read_transaction_rows(path)
    except pd.errors.EmptyDataError:
        logger.warning(f"[{Path(path).name}] empty file, no transactions to price")
        return []
    columns = tuple(column for column in DATE_COLUMNS if column in frame.columns)
    if not columns:
        logger.warning(
            f"[{Path(path).name}] no recognized date column "
            f"(expected one of {', '.join(DATE_COLUMNS)})"
        )
        return []

    seen: set[date] = set()
    ordered: list[date] = []
    valid_rows = 0
    for row in frame[list(columns)].to_dict(orient="records"):
        result = parse_transaction_date(pick_row_date_value(row, columns))
        if not result.found:
            continue
        valid_rows += 1
        if result.value in seen:
            continue
        seen.add(result.value)
        ordered.append(result.value)

    logger.info(
        f"[{Path(path).name}] found {valid_rows} valid transactions, "
        f"{len(ordered)} distinct dates"
    )
    return ordered
