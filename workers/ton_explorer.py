"""
TON wallet transaction export (anton.tools explorer API).

Why this module exists:
- FMV requester와 tax report가 읽는 `ton_transactions_{address}_{ts}.csv`를 만든다.
- nanoton 정수 금액을 TON(소수 9자리)으로 바꾸고 방향(IN/OUT/UNKNOWN)을 정한다.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path

import pandas as pd
import requests

from utils.config import REQUEST_TIMEOUT_SECONDS, TON_EXPLORER_URL
from utils.file_io import atomic_write_text
from utils.logger import get_logger

logger = get_logger(__name__)

NANOTONS_PER_TON = Decimal("1000000000")
TON_QUANTUM = Decimal("0.000000001")
DEFAULT_TRANSACTION_LIMIT = 100
EXPORT_COLUMNS = [
    "Date (UTC)",
    "Tx Hash",
    "Type",
    "Amount (TON)",
    "Fee (TON)",
    "Counterparty Address",
]


def nanotons_to_ton(raw) -> Decimal:
    try:
        value = Decimal(str(raw if raw is not None else 0))
    except InvalidOperation:
        return Decimal("0")
    if not value.is_finite():
        return Decimal("0")
    return (value / NANOTONS_PER_TON).quantize(TON_QUANTUM, rounding=ROUND_HALF_UP)


def _format_created_at(raw) -> str:
    if not raw:
        return "N/A"
    try:
        timestamp = pd.to_datetime(raw, utc=True)
    except (ValueError, TypeError):
        return "N/A"
    if pd.isna(timestamp):
        return "N/A"
    return timestamp.strftime("%Y-%m-%d %H:%M:%S")


def _format_amount(value: Decimal) -> str:
    if value == 0:
        return "0"
    text = format(value, "f").rstrip("0")
    return f"{text}0" if text.endswith(".") else text


def transaction_to_row(tx: dict) -> list[str]:
    """
    explorer 응답 1건을 export CSV 행으로 바꾼다.

    Rules:
    - in_amount > 0 -> IN, 상대방은 in_msg_hash
    - out_amount > 0 -> OUT, 상대방은 out_msg
    - 둘 다 0 -> UNKNOWN, 금액 0
    """
    fee = nanotons_to_ton(tx.get("total_fees"))
    in_amount = nanotons_to_ton(tx.get("in_amount"))
    out_amount = nanotons_to_ton(tx.get("out_amount"))

    if in_amount > 0:
        tx_type, amount = "IN", in_amount
        counterparty = tx.get("in_msg_hash") or "Unknown"
    elif out_amount > 0:
        tx_type, amount = "OUT", out_amount
        counterparty = tx.get("out_msg") or "Unknown"
    else:
        tx_type, amount, counterparty = "UNKNOWN", Decimal("0"), "N/A"

    return [
        _format_created_at(tx.get("created_at")),
        tx.get("hash") or "N/A",
        tx_type,
        _format_amount(amount),
        _format_amount(fee),
        str(counterparty),
    ]


def fetch_transactions(
    address: str,
    *,
    session=None,
    base_url: str = TON_EXPLORER_URL,
    limit: int = DEFAULT_TRANSACTION_LIMIT,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> list[dict]:
    """
    최신순으로 최대 limit건을 가져온다.

    Raises:
      - requests.RequestException: HTTP 오류/연결 실패
    """
    client = session or requests
    response = client.get(
        f"{base_url.rstrip('/')}/transactions",
        params={
            "address": address,
            "workchain": 0,
            "order": "DESC",
            "limit": limit,
        },
        timeout=timeout,
    )
    response.raise_for_status()
    payload = response.json()
    results = payload.get("results") if isinstance(payload, dict) else None
    transactions = [tx for tx in results or [] if isinstance(tx, dict)]
    logger.info(f"Fetched {len(transactions)} transactions for {address}")
    return transactions


def export_transactions(
    address: str,
    transactions: list[dict],
    output_dir: str | Path,
    *,
    now: datetime | None = None,
) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    path = Path(output_dir) / f"ton_transactions_{address}_{stamp}.csv"
    frame = pd.DataFrame(
        [transaction_to_row(tx) for tx in transactions], columns=EXPORT_COLUMNS
    )
    atomic_write_text(path, frame.to_csv(index=False))
    logger.info(f"Saved {len(transactions)} transactions to {path.name}")
    return path
