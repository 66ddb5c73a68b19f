"""
Per-wallet, per-year TON transaction tax summaries.

Why this module exists:
- explorer export(`ton_transactions_{wallet}_{ts}.csv`)에서 연도별 입출금/수수료 합계를
  뽑아 신고용 CSV와 사람이 읽는 리포트를 같은 값으로 만든다.
- 금액 합계는 Decimal로 계산하고 소수 9자리(nanoton)로 반올림한다.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path

import pandas as pd

from utils.date_extraction import parse_transaction_date, read_transaction_rows
from utils.file_io import atomic_write_text
from utils.logger import get_logger

logger = get_logger(__name__)

TRANSACTION_FILE_PATTERN = re.compile(r"^ton_transactions_(.+)_(\d{8}_\d{6})\.csv$")
TON_QUANTUM = Decimal("0.000000001")
LARGE_TRANSACTION_THRESHOLD = Decimal("1")
SUMMARY_COLUMNS = [
    "wallet_id",
    "year",
    "total_txs",
    "incoming_ton",
    "outgoing_ton",
    "fees_ton",
    "net_movement",
    "large_txs",
]


def _to_decimal(raw) -> Decimal:
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return value if value.is_finite() else Decimal("0")


def format_ton(value: Decimal) -> str:
    text = format(value.quantize(TON_QUANTUM, rounding=ROUND_HALF_UP), "f")
    text = text.rstrip("0")
    return f"{text}0" if text.endswith(".") else text


@dataclass(frozen=True)
class YearSummary:
    wallet_id: str
    year: int
    total: int
    incoming: Decimal
    outgoing: Decimal
    fees: Decimal
    large_tx: int

    @property
    def net_movement(self) -> Decimal:
        return (self.incoming - self.outgoing).quantize(
            TON_QUANTUM, rounding=ROUND_HALF_UP
        )

    def to_row(self) -> list:
        return [
            self.wallet_id,
            self.year,
            self.total,
            format_ton(self.incoming),
            format_ton(self.outgoing),
            format_ton(self.fees),
            format_ton(self.net_movement),
            self.large_tx,
        ]


def find_latest_transaction_files(csv_dir: str | Path) -> dict[str, Path]:
    """
    wallet별 최신 export 파일(파일명 timestamp 기준)을 고른다.
    """
    latest: dict[str, tuple[str, Path]] = {}
    for path in Path(csv_dir).glob("ton_transactions_*.csv"):
        match = TRANSACTION_FILE_PATTERN.match(path.name)
        if not match:
            logger.warning(f"Skipping export with unexpected name: {path.name}")
            continue
        wallet_id, timestamp = match.group(1), match.group(2)
        current = latest.get(wallet_id)
        if current is None or timestamp > current[0]:
            latest[wallet_id] = (timestamp, path)
    return {wallet_id: latest[wallet_id][1] for wallet_id in sorted(latest)}


def summarize_transactions(
    wallet_id: str, frame: pd.DataFrame, *, today: date | None = None
) -> list[YearSummary]:
    """
    거래를 `Date (UTC)` 연도별로 묶어 합계를 낸다.

    Note:
    - 날짜를 읽을 수 없는 행은 올해로 묶는다.
    """
    fallback_year = (today or date.today()).year
    buckets: dict[int, list[dict]] = {}
    for row in frame.to_dict(orient="records"):
        parsed = parse_transaction_date(row.get("Date (UTC)"))
        year = parsed.value.year if parsed.found else fallback_year
        buckets.setdefault(year, []).append(row)

    summaries = []
    for year in sorted(buckets):
        rows = buckets[year]
        incoming = Decimal("0")
        outgoing = Decimal("0")
        fees = Decimal("0")
        large_tx = 0
        for row in rows:
            amount = _to_decimal(row.get("Amount (TON)"))
            tx_type = str(row.get("Type", "")).strip().upper()
            if tx_type == "IN":
                incoming += amount
            elif tx_type == "OUT":
                outgoing += amount
            fees += _to_decimal(row.get("Fee (TON)"))
            if amount >= LARGE_TRANSACTION_THRESHOLD:
                large_tx += 1

        summaries.append(
            YearSummary(
                wallet_id=wallet_id,
                year=year,
                total=len(rows),
                incoming=incoming.quantize(TON_QUANTUM, rounding=ROUND_HALF_UP),
                outgoing=outgoing.quantize(TON_QUANTUM, rounding=ROUND_HALF_UP),
                fees=fees.quantize(TON_QUANTUM, rounding=ROUND_HALF_UP),
                large_tx=large_tx,
            )
        )
    return summaries


def render_human_report(summary: YearSummary, generated_at: datetime) -> str:
    rule = "=" * 46
    sub_rule = "-" * 28
    return "\n".join(
        [
            rule,
            f"TON TRANSACTION TAX REPORT - {summary.year}",
            rule,
            f"Wallet: {summary.wallet_id}",
            f"Report Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            sub_rule,
            "TRANSACTION SUMMARY",
            sub_rule,
            f"Total Transactions: {str(summary.total).rjust(12)}",
            f"Incoming TON:      {format_ton(summary.incoming).rjust(12)}",
            f"Outgoing TON:      {format_ton(summary.outgoing).rjust(12)}",
            f"Fees Paid:         {format_ton(summary.fees).rjust(12)}",
            f"Net Movement:      {format_ton(summary.net_movement).rjust(12)}",
            "",
            f"Large Transactions (>=1 TON): {str(summary.large_tx).rjust(6)}",
            rule,
            "",
        ]
    )


def generate_tax_reports(
    csv_dir: str | Path,
    report_dir: str | Path,
    log_dir: str | Path,
    *,
    now: datetime | None = None,
) -> list[YearSummary]:
    """
    Called from:
    - `scripts.tax_report.main`
    """
    generated_at = now or datetime.now()
    report_path = Path(report_dir)
    log_path = Path(log_dir)
    written: list[YearSummary] = []

    for wallet_id, source in find_latest_transaction_files(csv_dir).items():
        logger.info(f"[{wallet_id}] Processing {source.name}")
        try:
            frame = read_transaction_rows(source)
        except (OSError, ValueError) as e:
            logger.error(f"[{wallet_id}] failed to read {source.name}: {e}")
            continue

        for summary in summarize_transactions(
            wallet_id, frame, today=generated_at.date()
        ):
            table = pd.DataFrame([summary.to_row()], columns=SUMMARY_COLUMNS)
            atomic_write_text(
                report_path / f"cra_{wallet_id}_{summary.year}.csv",
                table.to_csv(index=False),
            )
            atomic_write_text(
                log_path / f"report_{wallet_id}_{summary.year}.txt",
                render_human_report(summary, generated_at),
            )
            logger.info(
                f"[{wallet_id}] {summary.year}: {summary.total} txs, "
                f"net {format_ton(summary.net_movement)} TON"
            )
            written.append(summary)

    logger.info(f"Tax reports complete: {len(written)} wallet-year summaries")
    return written
