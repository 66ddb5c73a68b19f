"""
Worker path/configuration constants.

Why this module exists:
- 엔트리포인트(fmv_worker/find_missing_fmv/fill_report_fmv/tax_report/ton_explorer)가
  같은 data lake 레이아웃을 보도록 경로를 한곳에 모은다.
- 디렉터리 생성은 import 시점이 아니라 `ensure_directories()` 호출 시점에 한다.

Layout (FMV_DATA_DIR 기준):
    CSV_Files/                         입력 export
    CRA_Reports/                       enriched report / tax summary
    cache/                             rate store, processed marker, run summary
    logs/                              processing_{day}.log, report_*.txt
    missing_historical_fmv_dates.yaml  backlog
"""

import os
from pathlib import Path

from utils.config import DISCORD_WEBHOOK_URL

# ── Paths ──
DATA_DIR = Path(os.getenv("FMV_DATA_DIR") or Path.cwd()).resolve()
CSV_DIR = DATA_DIR / "CSV_Files"
REPORT_DIR = DATA_DIR / "CRA_Reports"
CACHE_DIR = DATA_DIR / "cache"
LOG_DIR = DATA_DIR / "logs"

# ── State file paths ──
BACKLOG_FILE = DATA_DIR / "missing_historical_fmv_dates.yaml"
RUN_SUMMARY_FILE = CACHE_DIR / "fmv_run_summary.json"

# ── Alerting ──
# DISCORD_WEBHOOK_URL은 utils.config 값을 그대로 재노출한다.
ALERT_TITLE = "Historical FMV Worker Alert"


def ensure_directories(*directories: Path) -> None:
    for directory in directories or (CSV_DIR, REPORT_DIR, CACHE_DIR, LOG_DIR):
        directory.mkdir(parents=True, exist_ok=True)
